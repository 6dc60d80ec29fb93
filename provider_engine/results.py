"""
Discriminated result type for the mapping pipeline.

The classifier and parsers thread ``Ok(records)`` / ``Err(kind, raw)`` through
the pipeline instead of raising mid-parse; domain operations unwrap the
result at their boundary.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Union


class UniversalErrorKind(str, Enum):
    """Provider-independent business error taxonomy"""
    NO_NUMBERS = "NO_NUMBERS"
    NO_BALANCE = "NO_BALANCE"
    BAD_KEY = "BAD_KEY"
    BAD_SERVICE = "BAD_SERVICE"
    BAD_COUNTRY = "BAD_COUNTRY"
    NO_ACTIVATION = "NO_ACTIVATION"
    ACTIVATION_EXPIRED = "ACTIVATION_EXPIRED"
    ACTIVATION_CANCELLED = "ACTIVATION_CANCELLED"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    WAITING = "WAITING"
    RECEIVED = "RECEIVED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @classmethod
    def parse(cls, value: str) -> "UniversalErrorKind":
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.UNKNOWN_ERROR

    @property
    def is_retryable(self) -> bool:
        return self in _RETRYABLE

    @property
    def is_permanent(self) -> bool:
        return self in _PERMANENT

    @property
    def is_lifecycle_terminal(self) -> bool:
        return self in _LIFECYCLE_TERMINAL


_RETRYABLE = frozenset({
    UniversalErrorKind.NO_NUMBERS,
    UniversalErrorKind.RATE_LIMITED,
    UniversalErrorKind.SERVER_ERROR,
})

_PERMANENT = frozenset({
    UniversalErrorKind.BAD_KEY,
    UniversalErrorKind.BAD_SERVICE,
    UniversalErrorKind.BAD_COUNTRY,
    UniversalErrorKind.NO_ACTIVATION,
    UniversalErrorKind.ACTIVATION_EXPIRED,
})

_LIFECYCLE_TERMINAL = frozenset({
    UniversalErrorKind.NO_ACTIVATION,
    UniversalErrorKind.ACTIVATION_EXPIRED,
    UniversalErrorKind.ACTIVATION_CANCELLED,
})


@dataclass
class Ok:
    """Successful parse: a flat list of generic records"""
    records: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> List[Dict[str, Any]]:
        return self.records


@dataclass
class Err:
    """Classified provider business error"""
    kind: UniversalErrorKind
    raw: Any = None

    @property
    def is_ok(self) -> bool:
        return False

    @property
    def is_retryable(self) -> bool:
        return self.kind.is_retryable

    @property
    def is_permanent(self) -> bool:
        return self.kind.is_permanent

    @property
    def is_lifecycle_terminal(self) -> bool:
        return self.kind.is_lifecycle_terminal

    def to_exception(self, provider: str = None):
        from .exceptions import ProviderError
        return ProviderError(self.kind, self.raw, provider=provider)

    def unwrap(self):
        raise self.to_exception()


ParseResult = Union[Ok, Err]
