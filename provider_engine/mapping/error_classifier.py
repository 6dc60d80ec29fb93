"""
Error classifier.

Detects provider business errors in a decoded response before it is parsed.
Patterns declared on the endpoint mapping are checked before the provider's
global patterns. There is no catch-all: an unrecognized response is treated
as success.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from ..models.provider_config import ErrorConfig, MappingConfig
from ..results import Err, UniversalErrorKind
from .path_expression import evaluate, to_text

logger = logging.getLogger(__name__)

MAX_CHECK_LENGTH = 500

_KIND_NAMES = frozenset(kind.value for kind in UniversalErrorKind)


def matches_error_pattern(text: str, pattern: str) -> bool:
    """``/regex/`` patterns match case-insensitively; anything else is a case-insensitive substring"""
    if len(pattern) >= 2 and pattern.startswith('/') and pattern.endswith('/'):
        try:
            return re.search(pattern[1:-1], text, re.IGNORECASE) is not None
        except re.error as e:
            logger.warning(f"Invalid error pattern {pattern!r}: {e}")
            return False
    return pattern.lower() in text.lower()


def normalize_patterns(patterns: Dict[str, str]) -> List[Tuple[str, str]]:
    """
    Return (kind, pattern) pairs in declaration order.

    Tables may be written either as kind -> pattern or pattern -> kind; an
    entry is read as kind -> pattern when its key names a known kind.
    """
    pairs = []
    for key, value in patterns.items():
        if str(key).upper() in _KIND_NAMES:
            pairs.append((str(key), str(value)))
        elif str(value).upper() in _KIND_NAMES:
            pairs.append((str(value), str(key)))
        else:
            logger.warning(f"Ignoring error pattern {key!r}: {value!r} names no known error kind")
    return pairs


class ErrorClassifier:
    """Classifies responses for one provider into ``UniversalErrorKind`` values"""

    def __init__(self, error_config: Optional[ErrorConfig] = None, provider_name: str = ""):
        self.error_config = error_config or ErrorConfig()
        self.provider_name = provider_name

    def check_string(self, data: Any, mapping: Optional[MappingConfig] = None) -> str:
        """Extract the short string that error patterns are matched against"""
        error_field = (mapping.error_field if mapping else None) or self.error_config.error_field

        if error_field and isinstance(data, (dict, list)):
            value = evaluate(data, error_field)
            return to_text(value) if value else ''
        if isinstance(data, str):
            return data
        if isinstance(data, dict):
            for key in ('error', 'message', 'status'):
                if data.get(key):
                    return to_text(data[key])
            return ''
        if isinstance(data, list) or data is None:
            return ''
        return to_text(data)

    def classify(self, data: Any, mapping: Optional[MappingConfig] = None) -> Optional[Err]:
        """Return ``Err`` for the first matching pattern, or None when the response looks fine"""
        text = self.check_string(data, mapping).strip()
        if not text or len(text) > MAX_CHECK_LENGTH:
            return None

        layers = (mapping.error_patterns if mapping else {}, self.error_config.patterns)
        for patterns in layers:
            for kind_name, pattern in normalize_patterns(patterns):
                if matches_error_pattern(text, pattern):
                    kind = UniversalErrorKind.parse(kind_name)
                    logger.info(
                        f"Provider {self.provider_name} returned {kind.value}: {text[:120]}",
                        extra={'provider': self.provider_name, 'error_kind': kind.value}
                    )
                    return Err(kind=kind, raw=text)
        return None

