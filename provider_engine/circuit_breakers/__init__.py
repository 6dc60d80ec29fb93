"""
Circuit breaker implementations for the provider engine.

One breaker state per provider, shared across every call in the process, plus
the latency monitor that can force a breaker open on latency volatility.
"""

from .memory_circuit_breaker import CircuitState, InMemoryCircuitBreaker
from .latency_monitor import LatencyMonitor

__all__ = ['CircuitState', 'InMemoryCircuitBreaker', 'LatencyMonitor']
