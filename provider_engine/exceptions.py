"""
Exception hierarchy for the provider engine.

Splits failures into configuration, transport, circuit-open, parse and
provider business errors so callers can route each category differently
(fail the call, retry, try the next provider, or show a static message).
"""

from typing import Any, Dict, Optional

from .results import UniversalErrorKind


class ProviderEngineError(Exception):
    """Base exception for all provider engine errors"""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class ConfigurationError(ProviderEngineError):
    """Raised when provider or service configuration is missing or invalid"""

    def __init__(self, config_field: str, reason: str, provider: Optional[str] = None):
        message = f"Configuration error in {config_field}: {reason}"
        super().__init__(message, provider=provider)
        self.config_field = config_field
        self.reason = reason


class CredentialError(ProviderEngineError):
    """Raised when a stored credential cannot be decrypted"""


class TransportError(ProviderEngineError):
    """Raised when a provider could not be reached after all retries"""


class ProviderTimeoutError(TransportError):
    """Raised when every attempt hit the request timeout"""

    def __init__(self, provider: str, timeout_seconds: float, url: Optional[str] = None):
        message = f"Provider {provider} timed out after {timeout_seconds}s"
        super().__init__(message, provider=provider)
        self.timeout_seconds = timeout_seconds
        self.url = url


class ProviderApiError(TransportError):
    """Raised when a provider answers with a non-success HTTP status"""

    def __init__(
        self,
        message: str,
        status: int,
        status_text: str = "",
        url: str = "",
        response_body: Any = None,
        request_headers: Optional[Dict[str, str]] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message, provider=provider)
        self.status = status
        self.status_text = status_text
        self.url = url
        self.response_body = response_body
        self.request_headers = request_headers or {}


class CircuitOpenError(ProviderEngineError):
    """
    Raised when the circuit breaker for a provider is open.

    Deliberately not a TransportError: no network I/O was attempted, so
    callers should route to another provider instead of retrying.
    """

    def __init__(self, provider: str, retry_after_seconds: float = 0.0):
        message = f"Circuit breaker open for provider {provider}"
        if retry_after_seconds:
            message += f" (retry in {retry_after_seconds:.0f}s)"
        super().__init__(message, provider=provider)
        self.retry_after_seconds = retry_after_seconds


class ParseError(ProviderEngineError):
    """Raised when required canonical fields are missing after mapping"""

    def __init__(self, message: str, raw_response: Any = None, provider: Optional[str] = None):
        super().__init__(message, provider=provider)
        self.raw_response = raw_response


class ProviderError(ProviderEngineError):
    """A classified provider business error"""

    def __init__(self, kind: UniversalErrorKind, raw: Any = None, provider: Optional[str] = None):
        raw_text = raw if isinstance(raw, str) else str(raw)
        super().__init__(f"{kind.value}: {raw_text[:200]}", provider=provider)
        self.kind = kind
        self.raw = raw

    @property
    def is_retryable(self) -> bool:
        return self.kind.is_retryable

    @property
    def is_permanent(self) -> bool:
        return self.kind.is_permanent

    @property
    def is_lifecycle_terminal(self) -> bool:
        return self.kind.is_lifecycle_terminal

    @property
    def is_no_stock(self) -> bool:
        return self.kind is UniversalErrorKind.NO_NUMBERS

    @property
    def is_status(self) -> bool:
        return self.kind in (UniversalErrorKind.WAITING, UniversalErrorKind.RECEIVED)
