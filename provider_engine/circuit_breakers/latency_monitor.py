"""
Latency anomaly quarantine.

Keeps a bounded window of recent request latencies per provider. Once the
window holds enough history, each new sample is flagged slow when it exceeds
``max(average * factor, floor_ms)`` where the average is taken over the
samples before it. When the window holds ``slow_sample_limit`` flagged
samples the provider is quarantined (its breaker forced open) and the window
starts over.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List

logger = logging.getLogger(__name__)


@dataclass
class LatencySample:
    latency_ms: float
    slow: bool


class LatencyMonitor:
    """Per-provider latency ring buffers"""

    def __init__(
        self,
        window_size: int = 10,
        min_samples: int = 5,
        factor: float = 1.5,
        floor_ms: float = 2000.0,
        slow_sample_limit: int = 3
    ):
        self.window_size = window_size
        self.min_samples = min_samples
        self.factor = factor
        self.floor_ms = floor_ms
        self.slow_sample_limit = slow_sample_limit

        self._windows: Dict[str, Deque[LatencySample]] = {}
        self._lock = asyncio.Lock()

    def _window(self, provider: str) -> Deque[LatencySample]:
        if provider not in self._windows:
            self._windows[provider] = deque(maxlen=self.window_size)
        return self._windows[provider]

    def threshold_for(self, samples: List[LatencySample]) -> float:
        average = sum(s.latency_ms for s in samples) / len(samples)
        return max(average * self.factor, self.floor_ms)

    async def record(self, provider: str, latency_ms: float) -> bool:
        """Record one attempt's latency; True means the provider should be quarantined"""
        async with self._lock:
            window = self._window(provider)
            slow = False
            if len(window) >= self.min_samples:
                threshold = self.threshold_for(list(window))
                slow = latency_ms > threshold
                if slow:
                    logger.warning(
                        f"Slow request for {provider}: {latency_ms:.0f}ms (threshold: {threshold:.0f}ms)",
                        extra={'provider': provider, 'latency_ms': latency_ms}
                    )
            window.append(LatencySample(latency_ms=latency_ms, slow=slow))

            slow_count = sum(1 for s in window if s.slow)
            if slow_count >= self.slow_sample_limit:
                window.clear()
                return True
            return False

    async def get_latencies(self, provider: str) -> List[float]:
        async with self._lock:
            return [s.latency_ms for s in self._windows.get(provider, ())]

    async def average_latency(self, provider: str) -> float:
        latencies = await self.get_latencies(provider)
        return sum(latencies) / len(latencies) if latencies else 0.0

    async def reset(self, provider: str) -> None:
        async with self._lock:
            self._windows.pop(provider, None)
