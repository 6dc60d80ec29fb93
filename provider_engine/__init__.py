"""
Dynamic provider integration engine.

Configuration-driven adapters for virtual-number SMS providers: declarative
endpoint templates, an interpreted response-mapping language, and a
resilience runtime (retry, distributed rate limiting, circuit breaking).
"""

__version__ = "1.0.0"
