"""
In-memory circuit breaker registry.

Tracks closed -> open -> half-open -> closed per provider. Counts only
transport failures; callers decide what counts as one.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Dict

from ..interfaces import CircuitBreaker

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class InMemoryCircuitBreaker(CircuitBreaker):
    """
    Process-wide breaker registry keyed by provider name.

    State is not shared between worker processes; each process protects
    itself independently.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30,
        half_open_max_calls: int = 1
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._states: Dict[str, CircuitState] = {}
        self._failures: Dict[str, int] = {}
        self._opened_times: Dict[str, float] = {}
        self._open_reasons: Dict[str, str] = {}
        self._half_open_calls: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _state(self, service_name: str) -> CircuitState:
        return self._states.get(service_name, CircuitState.CLOSED)

    async def allow_request(self, service_name: str) -> bool:
        """
        Check whether a request may go out.

        An open circuit whose recovery timeout has elapsed moves to half-open
        and admits up to ``half_open_max_calls`` trial requests.
        """
        async with self._lock:
            state = self._state(service_name)
            if state is CircuitState.CLOSED:
                return True

            if state is CircuitState.OPEN:
                elapsed = time.monotonic() - self._opened_times.get(service_name, 0)
                if elapsed < self.recovery_timeout:
                    return False
                self._states[service_name] = CircuitState.HALF_OPEN
                self._half_open_calls[service_name] = 0
                logger.info(f"Circuit breaker HALF-OPEN for {service_name} - testing")

            trials = self._half_open_calls.get(service_name, 0)
            if trials >= self.half_open_max_calls:
                return False
            self._half_open_calls[service_name] = trials + 1
            return True

    async def is_open(self, service_name: str) -> bool:
        return not await self.allow_request(service_name)

    async def record_success(self, service_name: str) -> None:
        """Record successful operation and close circuit breaker if half-open."""
        async with self._lock:
            self._failures[service_name] = 0
            # An OPEN circuit only closes through a half-open trial
            if self._state(service_name) is CircuitState.HALF_OPEN:
                self._close_circuit(service_name)

    async def record_failure(self, service_name: str) -> None:
        """Record failed operation and open circuit breaker if threshold exceeded."""
        async with self._lock:
            failure_count = self._failures.get(service_name, 0) + 1
            self._failures[service_name] = failure_count

            if self._state(service_name) is CircuitState.HALF_OPEN:
                self._open_circuit(service_name, "trial request failed")
            elif failure_count >= self.failure_threshold and self._state(service_name) is CircuitState.CLOSED:
                self._open_circuit(service_name, f"failures: {failure_count}/{self.failure_threshold}")
            else:
                logger.debug(
                    f"Circuit breaker failure recorded for {service_name} "
                    f"({failure_count}/{self.failure_threshold})"
                )

    async def release_trial(self, service_name: str) -> None:
        """Free a half-open trial slot taken by a call that was abandoned."""
        async with self._lock:
            if self._state(service_name) is not CircuitState.HALF_OPEN:
                return
            trials = self._half_open_calls.get(service_name, 0)
            self._half_open_calls[service_name] = max(0, trials - 1)

    async def force_open(self, service_name: str, reason: str) -> None:
        async with self._lock:
            self._open_circuit(service_name, reason)

    async def retry_after(self, service_name: str) -> float:
        async with self._lock:
            if self._state(service_name) is not CircuitState.OPEN:
                return 0.0
            elapsed = time.monotonic() - self._opened_times.get(service_name, 0)
            return max(0.0, self.recovery_timeout - elapsed)

    async def get_state(self, service_name: str) -> CircuitState:
        async with self._lock:
            return self._state(service_name)

    async def get_failure_count(self, service_name: str) -> int:
        async with self._lock:
            return self._failures.get(service_name, 0)

    def _open_circuit(self, service_name: str, reason: str) -> None:
        self._states[service_name] = CircuitState.OPEN
        self._opened_times[service_name] = time.monotonic()
        self._open_reasons[service_name] = reason
        self._half_open_calls.pop(service_name, None)
        logger.warning(
            f"Circuit breaker OPEN for {service_name} ({reason}) - failing fast "
            f"for {self.recovery_timeout}s",
            extra={'provider': service_name}
        )

    def _close_circuit(self, service_name: str) -> None:
        self._states[service_name] = CircuitState.CLOSED
        self._failures[service_name] = 0
        self._opened_times.pop(service_name, None)
        self._open_reasons.pop(service_name, None)
        self._half_open_calls.pop(service_name, None)
        logger.info(f"Circuit breaker CLOSED for {service_name} - recovered", extra={'provider': service_name})

    def _status(self, service_name: str) -> dict:
        state = self._state(service_name)
        status = {
            'service_name': service_name,
            'state': state.value,
            'is_open': state is CircuitState.OPEN,
            'failure_count': self._failures.get(service_name, 0),
            'failure_threshold': self.failure_threshold,
            'recovery_timeout': self.recovery_timeout,
        }
        if state is CircuitState.OPEN:
            elapsed = time.monotonic() - self._opened_times[service_name]
            status['open_reason'] = self._open_reasons.get(service_name)
            status['recovery_in_seconds'] = max(0.0, self.recovery_timeout - elapsed)
        return status

    async def get_status(self, service_name: str) -> dict:
        """Get detailed circuit breaker status for monitoring."""
        async with self._lock:
            return self._status(service_name)

    async def reset(self, service_name: str) -> None:
        """Reset circuit breaker for service (admin operation)."""
        async with self._lock:
            self._close_circuit(service_name)
            logger.info(f"Circuit breaker reset for {service_name}")

    async def get_all_statuses(self) -> dict:
        async with self._lock:
            return {name: self._status(name) for name in self.get_tracked_services()}

    def get_tracked_services(self) -> list:
        return sorted(set(self._states) | set(self._failures))
