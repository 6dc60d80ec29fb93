"""
Abstract collaborators injected into the provider engine.

Concrete implementations live beside their concern (circuit_breakers/,
rate_limiter.py, cache.py, credentials.py, provider_store.py); tests swap in
fakes through these seams.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional


class CircuitBreaker(ABC):
    """Per-provider circuit breaker registry"""

    @abstractmethod
    async def allow_request(self, service_name: str) -> bool:
        """Return False while the circuit is open; may move it to half-open"""

    @abstractmethod
    async def record_success(self, service_name: str) -> None:
        ...

    @abstractmethod
    async def record_failure(self, service_name: str) -> None:
        ...

    @abstractmethod
    async def release_trial(self, service_name: str) -> None:
        """Hand back a half-open trial slot for a call that never reached a verdict"""

    @abstractmethod
    async def force_open(self, service_name: str, reason: str) -> None:
        """Open immediately, regardless of the failure count"""

    @abstractmethod
    async def retry_after(self, service_name: str) -> float:
        """Seconds until an open circuit admits a trial request"""

    @abstractmethod
    async def get_status(self, service_name: str) -> dict:
        ...

    @abstractmethod
    async def reset(self, service_name: str) -> None:
        ...


class RateLimiter(ABC):
    """Distributed per-provider request spacing"""

    @abstractmethod
    async def reserve_slot(self, provider_id: str, min_interval_ms: int) -> int:
        """Reserve the next slot and return how long to wait (ms) before using it"""


class Cache(ABC):
    """Read-through cache for list endpoints"""

    @abstractmethod
    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]], ttl_seconds: int) -> Any:
        ...

    @abstractmethod
    async def bust(self, key: str) -> None:
        ...


class CredentialDecryptor(ABC):

    @abstractmethod
    def decrypt(self, value: str) -> str:
        ...


class ProviderConfigStore(ABC):
    """Read access to provider records plus idempotent side-effect upserts"""

    @abstractmethod
    async def get(self, name: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_active(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def record_balance(self, name: str, balance: float) -> None:
        ...

    @abstractmethod
    async def record_health(self, name: str, payload: Dict[str, Any]) -> None:
        ...

    async def refresh(self) -> None:
        """Re-read the backing source; stores that always read live need not override"""
