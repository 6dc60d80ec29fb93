"""
Resilient HTTP execution for provider calls.

Each call passes through the provider's circuit breaker, reserves a
distributed rate-limit slot, then runs up to ``max_retries`` sequential
attempts:

- HTTP 429: honors ``Retry-After`` (+1s), otherwise exponential backoff;
  the final 429 is surfaced as a ProviderApiError
- HTTP >= 500: linear backoff
- timeouts and connection failures: linear backoff; each attempt is
  bounded by an absolute ``timeout_seconds`` ceiling
- other httpx errors (redirect loops, bad encodings): no retry

Every attempt's latency feeds the latency monitor, which may force the
breaker open before the failure threshold is reached.
"""

import asyncio
import json
import logging
import time
from typing import Callable, Optional

import httpx

from .exceptions import CircuitOpenError, ProviderApiError, ProviderTimeoutError, TransportError
from .interfaces import CircuitBreaker, RateLimiter
from .circuit_breakers.latency_monitor import LatencyMonitor
from .models.canonical import ProviderResponse, RequestTrace
from .models.provider_config import ProviderConfig
from .request_builder import BuiltRequest

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RATE_LIMIT_INTERVAL_MS = 1000


def decode_body(response: httpx.Response) -> ProviderResponse:
    """JSON when declared or when the body looks like a JSON document, text otherwise"""
    headers = dict(response.headers)
    content_type = response.headers.get('content-type', '').lower()
    text = response.text

    if 'json' in content_type or text.lstrip().startswith(('{', '[')):
        try:
            return ProviderResponse(kind='json', data=json.loads(text), status=response.status_code, headers=headers)
        except ValueError:
            pass
    return ProviderResponse(kind='text', data=text, status=response.status_code, headers=headers)


def retry_after_ms(response: httpx.Response, attempt: int) -> int:
    header = response.headers.get('retry-after')
    if header:
        try:
            return (int(float(header)) + 1) * 1000
        except ValueError:
            logger.debug(f"Ignoring non-numeric Retry-After: {header}")
    return 1000 * (2 ** attempt)


class RequestExecutor:
    """
    Sends built requests for one engine instance.

    The breaker, latency monitor and rate limiter are shared registries
    injected by the container; the executor itself only keeps the last
    request trace.
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        latency_monitor: Optional[LatencyMonitor] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        default_interval_ms: int = DEFAULT_RATE_LIMIT_INTERVAL_MS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.circuit_breaker = circuit_breaker
        self.latency_monitor = latency_monitor
        self.rate_limiter = rate_limiter
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.default_interval_ms = default_interval_ms
        self._client = client
        self._owns_client = client is None
        self.last_trace: Optional[RequestTrace] = None
        self.last_raw_response: Optional[str] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy initialization of HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True)
        return self._client

    async def execute(
        self,
        provider: ProviderConfig,
        request: BuiltRequest,
        is_fault: Optional[Callable[[ProviderResponse], bool]] = None,
    ) -> ProviderResponse:
        """
        Run a request through breaker, rate limiter and retry loop.

        Args:
            provider: Provider the request targets
            request: Output of ``build_request``
            is_fault: Optional check on a successful response; True counts the
                response against the breaker (e.g. a classified server error)

        Raises:
            CircuitOpenError: breaker is open, no I/O attempted
            ProviderTimeoutError: every attempt timed out
            ProviderApiError: non-success HTTP status after retries
            TransportError: connection failures after retries, or any other httpx error
        """
        name = provider.name
        if not await self.circuit_breaker.allow_request(name):
            raise CircuitOpenError(name, await self.circuit_breaker.retry_after(name))

        try:
            await self._acquire_slot(provider)
            result = await self._send_with_retries(provider, request)
            faulty = is_fault is not None and is_fault(result)
        except ProviderApiError as e:
            if e.status == 429 or e.status >= 500:
                await self.circuit_breaker.record_failure(name)
            else:
                # The provider answered; a client error says nothing about its health
                await self.circuit_breaker.record_success(name)
            raise
        except TransportError:
            await self.circuit_breaker.record_failure(name)
            raise
        except BaseException:
            # Cancelled or failed before a verdict; a held trial slot would wedge half-open
            await self.circuit_breaker.release_trial(name)
            raise

        if faulty:
            await self.circuit_breaker.record_failure(name)
        else:
            await self.circuit_breaker.record_success(name)
        return result

    async def _acquire_slot(self, provider: ProviderConfig) -> None:
        if self.rate_limiter is None:
            return
        interval = provider.rate_limit_delay_ms if provider.rate_limit_delay_ms is not None else self.default_interval_ms
        wait_ms = await self.rate_limiter.reserve_slot(provider.identity, interval)
        if wait_ms > 0:
            logger.debug(f"Rate limit: waiting {wait_ms}ms for {provider.name}", extra={'provider': provider.name})
            await asyncio.sleep(wait_ms / 1000)

    async def _observe_latency(self, provider: ProviderConfig, latency_ms: float) -> bool:
        """Feed the latency window; True when the provider was just quarantined"""
        if self.latency_monitor is None:
            return False
        if await self.latency_monitor.record(provider.name, latency_ms):
            await self.circuit_breaker.force_open(provider.name, "latency quarantine")
            return True
        return False

    async def _send_with_retries(self, provider: ProviderConfig, request: BuiltRequest) -> ProviderResponse:
        name = provider.name
        timeout_ms = self.timeout_seconds * 1000

        for attempt in range(1, self.max_retries + 1):
            last_attempt = attempt == self.max_retries
            started = time.perf_counter()
            try:
                # httpx times each phase separately; wait_for bounds the whole attempt
                response = await asyncio.wait_for(
                    self.client.request(
                        request.method,
                        request.url,
                        headers=request.headers,
                        json=request.body,
                        timeout=self.timeout_seconds,
                    ),
                    timeout=self.timeout_seconds,
                )
            except (httpx.TimeoutException, asyncio.TimeoutError) as e:
                quarantined = await self._observe_latency(provider, timeout_ms)
                logger.warning(
                    f"Timeout calling {name} (attempt {attempt}/{self.max_retries}): {e}",
                    extra={'provider': name, 'attempt': attempt, 'latency_ms': timeout_ms}
                )
                self._trace(request, 0, None, timeout_ms)
                if last_attempt or quarantined:
                    raise ProviderTimeoutError(name, self.timeout_seconds, request.url) from e
                await asyncio.sleep(attempt)  # linear: 1s, 2s, ...
                continue
            except httpx.TransportError as e:
                elapsed_ms = (time.perf_counter() - started) * 1000
                quarantined = await self._observe_latency(provider, elapsed_ms)
                logger.warning(
                    f"Network error calling {name} (attempt {attempt}/{self.max_retries}): {e}",
                    extra={'provider': name, 'attempt': attempt}
                )
                self._trace(request, 0, None, elapsed_ms)
                if last_attempt or quarantined:
                    raise TransportError(f"Network error calling {name}: {e}", provider=name) from e
                await asyncio.sleep(attempt)  # linear: 1s, 2s, ...
                continue
            except httpx.HTTPError as e:
                # Redirect loops and undecodable bodies; retrying will not help
                elapsed_ms = (time.perf_counter() - started) * 1000
                logger.warning(
                    f"Request to {name} failed: {e.__class__.__name__}: {e}",
                    extra={'provider': name, 'attempt': attempt}
                )
                self._trace(request, 0, None, elapsed_ms)
                raise TransportError(f"Request to {name} failed: {e}", provider=name) from e

            elapsed_ms = (time.perf_counter() - started) * 1000
            quarantined = await self._observe_latency(provider, elapsed_ms)
            self.last_raw_response = response.text
            self._trace(request, response.status_code, response.text, elapsed_ms)

            status = response.status_code
            logger.debug(
                f"{request.method} {name} -> {status} in {elapsed_ms:.0f}ms",
                extra={'provider': name, 'status_code': status, 'latency_ms': elapsed_ms, 'attempt': attempt}
            )

            retryable = status == 429 or status >= 500
            if retryable and not last_attempt and not quarantined:
                delay_ms = retry_after_ms(response, attempt) if status == 429 else 1000 * attempt
                logger.warning(
                    f"{name} returned {status}, retrying in {delay_ms}ms (attempt {attempt}/{self.max_retries})",
                    extra={'provider': name, 'status_code': status, 'attempt': attempt}
                )
                await asyncio.sleep(delay_ms / 1000)
                continue

            if not response.is_success:
                body = decode_body(response).data
                raise ProviderApiError(
                    f"{name} API error: {status} {response.reason_phrase}",
                    status=status,
                    status_text=response.reason_phrase,
                    url=request.url,
                    response_body=body,
                    request_headers=request.masked_headers,
                    provider=name,
                )
            return decode_body(response)

        # max_retries >= 1 so the loop always returns or raises
        raise TransportError(f"Retries exhausted for {name}", provider=name)

    def _trace(self, request: BuiltRequest, status: int, body, elapsed_ms: float) -> None:
        self.last_trace = RequestTrace(
            method=request.method,
            url=request.url,
            headers=request.masked_headers,
            response_status=status,
            response_body=body,
            request_time_ms=round(elapsed_ms, 1),
        )

    async def close(self):
        """Close the HTTP client"""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
