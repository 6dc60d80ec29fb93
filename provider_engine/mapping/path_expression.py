"""
Path expression evaluator.

A path is a ``|``-separated list of alternatives; each alternative is a
``.``-separated list of segments. A segment is a literal key, a context
reference (``$key``, ``$parentKey``, ...) or a transform accessor applied to
the current value (``$first``, ``$sum``, ``$replace:old:new``, ...).

Paths are compiled once into tuples of ``Segment`` and cached, so the
accessor syntax is not re-parsed on every evaluation. Evaluation is total:
malformed accessor arguments degrade to identity instead of raising.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class SegmentKind(Enum):
    LITERAL = "literal"
    CONTEXT = "context"
    TRANSFORM = "transform"


@dataclass(frozen=True)
class Segment:
    kind: SegmentKind
    name: str
    args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TraversalContext:
    """Where the current item sits inside the response being parsed"""
    key: Any = None
    value: Any = None
    index: Optional[int] = None
    parent_key: Any = None
    grandparent_key: Any = None
    operator_key: Any = None
    depth: int = 0
    ancestors: Tuple[str, ...] = field(default=())

    def child(self, **changes) -> "TraversalContext":
        return replace(self, **changes)


_CONTEXT_REFS = {
    '$key': 'key',
    '$value': 'value',
    '$index': 'index',
    '$parentKey': 'parent_key',
    '$grandParentKey': 'grandparent_key',
    '$grandparentKey': 'grandparent_key',
    '$operatorKey': 'operator_key',
    '$depth': 'depth',
}

# Accessors that run even when the current value is None
_NONE_TOLERANT = frozenset({'default', 'ifEmpty', 'exists', 'type'})


# ---------------------------------------------------------------------------
# Value helpers (JSON-flavoured coercions)
# ---------------------------------------------------------------------------

def to_text(value: Any) -> str:
    """Stringify a decoded JSON value the way it would appear on the wire"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(',', ':'), default=str)
    return str(value)


def to_number(value: Any) -> float:
    """Coerce to a number; unparseable input yields NaN"""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return math.nan
    if value is None:
        return 0
    return math.nan


def _finite_or_zero(value: Any) -> float:
    number = to_number(value)
    if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
        return 0
    return number


def _parse_int(text: str, default: Optional[int] = None) -> Optional[int]:
    match = re.match(r'^\s*(-?\d+)', text or '')
    return int(match.group(1)) if match else default


def _type_name(value: Any) -> str:
    if value is None:
        return 'null'
    if isinstance(value, list):
        return 'array'
    if isinstance(value, dict):
        return 'object'
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    return 'undefined'


def _keys(value: Any) -> list:
    if isinstance(value, dict):
        return [str(k) for k in value.keys()]
    if isinstance(value, (list, str)):
        return [str(i) for i in range(len(value))]
    return []


def _values(value: Any) -> list:
    if isinstance(value, dict):
        return list(value.values())
    if isinstance(value, list):
        return list(value)
    if isinstance(value, str):
        return list(value)
    return []


def _flatten(items: list) -> list:
    flat = []
    for item in items:
        if isinstance(item, list):
            flat.extend(_flatten(item))
        else:
            flat.append(item)
    return flat


def _pad(value: Any, args: Tuple[str, ...], at_start: bool) -> str:
    text = to_text(value)
    length = _parse_int(args[0] if args else '', 0)
    fill = args[1] if len(args) > 1 and args[1] else ' '
    missing = length - len(text)
    if missing <= 0:
        return text
    padding = (fill * missing)[:missing]
    return padding + text if at_start else text + padding


def _substring(value: Any, args: Tuple[str, ...]) -> str:
    text = to_text(value)
    start = max(0, min(len(text), _parse_int(args[0] if args else '', 0)))
    end_arg = _parse_int(args[1], None) if len(args) > 1 and args[1] else None
    end = len(text) if end_arg is None else max(0, min(len(text), end_arg))
    if start > end:
        start, end = end, start
    return text[start:end]


def _slice(value: Any, args: Tuple[str, ...]) -> Any:
    if not isinstance(value, list):
        return value
    start = _parse_int(args[0] if args else '', 0)
    end = _parse_int(args[1], None) if len(args) > 1 and args[1] else None
    return value[start:end]


def _replace(value: Any, args: Tuple[str, ...]) -> Any:
    if not isinstance(value, str):
        return value
    pattern = args[0] if args else ''
    replacement = args[1] if len(args) > 1 else ''
    return re.sub(pattern, lambda _m: replacement, value)


def _split(value: Any, args: Tuple[str, ...]) -> list:
    if not isinstance(value, str):
        return [value]
    separator = ':'.join(args)
    if separator == '':
        return list(value)
    return value.split(separator)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ('true', '1', 'yes')
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def _parse_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def _min_max(value: Any, pick: Callable) -> Any:
    if not isinstance(value, list) or not value:
        return None
    numbers = [n for n in (to_number(v) for v in value) if not (isinstance(n, float) and math.isnan(n))]
    return pick(numbers) if numbers else None


def _unique(value: Any) -> Any:
    if not isinstance(value, list):
        return value
    seen = []
    for item in value:
        if item not in seen:
            seen.append(item)
    return seen


def _key_list(args: Tuple[str, ...]) -> list:
    return [k.strip() for k in ':'.join(args).split(',') if k.strip()]


def _pick(value: Any, args: Tuple[str, ...]) -> Any:
    if not isinstance(value, dict):
        return value
    return {k: value[k] for k in _key_list(args) if k in value}


def _omit(value: Any, args: Tuple[str, ...]) -> Any:
    if not isinstance(value, dict):
        return value
    omitted = set(_key_list(args))
    return {k: v for k, v in value.items() if k not in omitted}


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    if isinstance(value, dict):
        return next(iter(value.values()), None)
    return value


def _last(value: Any) -> Any:
    if isinstance(value, list):
        return value[-1] if value else None
    if isinstance(value, dict):
        return list(value.values())[-1] if value else None
    return value


def _int(value: Any) -> int:
    number = to_number(value)
    if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
        return 0
    return math.floor(number)


def _avg(value: Any) -> float:
    if not isinstance(value, list) or not value:
        return 0
    return sum(_finite_or_zero(v) for v in value) / len(value)


_TRANSFORMS: Dict[str, Callable[[Any, Tuple[str, ...]], Any]] = {
    # selection
    'first': lambda v, a: _first(v),
    'last': lambda v, a: _last(v),
    'firstKey': lambda v, a: next(iter(_keys(v)), None),
    'lastKey': lambda v, a: (_keys(v) or [None])[-1],
    'firstValue': lambda v, a: next(iter(_values(v)), None) if isinstance(v, (dict, list)) else None,
    'lastValue': lambda v, a: (_values(v) or [None])[-1] if isinstance(v, (dict, list)) else None,
    'values': lambda v, a: _values(v),
    'keys': lambda v, a: _keys(v),
    # aggregation
    'length': lambda v, a: len(v) if isinstance(v, (list, dict, str)) else 0,
    'count': lambda v, a: len(v) if isinstance(v, (list, dict, str)) else 0,
    'sum': lambda v, a: sum(_finite_or_zero(x) for x in v) if isinstance(v, list) else 0,
    'avg': lambda v, a: _avg(v),
    'average': lambda v, a: _avg(v),
    'min': lambda v, a: _min_max(v, min),
    'max': lambda v, a: _min_max(v, max),
    'unique': lambda v, a: _unique(v),
    'flatten': lambda v, a: _flatten(v) if isinstance(v, list) else v,
    'reverse': lambda v, a: list(reversed(v)) if isinstance(v, list) else v,
    'sort': lambda v, a: sorted(v, key=to_text) if isinstance(v, list) else v,
    'slice': _slice,
    'join': lambda v, a: ':'.join(a).join(to_text(x) for x in v) if isinstance(v, list) else v,
    # strings
    'lower': lambda v, a: to_text(v).lower(),
    'lowercase': lambda v, a: to_text(v).lower(),
    'upper': lambda v, a: to_text(v).upper(),
    'uppercase': lambda v, a: to_text(v).upper(),
    'trim': lambda v, a: to_text(v).strip(),
    'split': _split,
    'replace': _replace,
    'substring': _substring,
    'padStart': lambda v, a: _pad(v, a, at_start=True),
    'padEnd': lambda v, a: _pad(v, a, at_start=False),
    # coercion
    'number': lambda v, a: _finite_or_zero(v),
    'float': lambda v, a: _finite_or_zero(v),
    'int': lambda v, a: _int(v),
    'string': lambda v, a: to_text(v),
    'str': lambda v, a: to_text(v),
    'boolean': lambda v, a: _to_bool(v),
    'bool': lambda v, a: _to_bool(v),
    'json': lambda v, a: _parse_json(v),
    'stringify': lambda v, a: json.dumps(v, separators=(',', ':'), default=str),
    # conditionals
    'default': lambda v, a: ':'.join(a) if v is None else v,
    'ifEmpty': lambda v, a: ':'.join(a) if v is None or v == '' else v,
    'exists': lambda v, a: v is not None,
    # object shaping
    'entries': lambda v, a: [[k, x] for k, x in zip(_keys(v), _values(v))] if isinstance(v, (dict, list)) else [],
    'pick': _pick,
    'omit': _omit,
    'type': lambda v, a: _type_name(v),
}

# Accessors that take ``:``-separated arguments
_ARG_TRANSFORMS = frozenset({
    'slice', 'join', 'split', 'replace', 'substring', 'padStart', 'padEnd',
    'default', 'ifEmpty', 'pick', 'omit',
})


def _compile_segment(raw: str) -> Segment:
    if raw in _CONTEXT_REFS:
        return Segment(SegmentKind.CONTEXT, _CONTEXT_REFS[raw])
    if raw.startswith('$') and len(raw) > 1:
        name, _, arg_text = raw[1:].partition(':')
        if name in _TRANSFORMS:
            if name in _ARG_TRANSFORMS:
                args = tuple(arg_text.split(':')) if arg_text or raw.endswith(':') else ()
                return Segment(SegmentKind.TRANSFORM, name, args)
            if not arg_text:
                return Segment(SegmentKind.TRANSFORM, name)
    return Segment(SegmentKind.LITERAL, raw)


@lru_cache(maxsize=4096)
def compile_path(path: str) -> Tuple[Tuple[Segment, ...], ...]:
    """Compile a path string into its alternatives, each a tuple of segments"""
    alternatives = []
    for alternative in path.split('|'):
        alternative = alternative.strip()
        segments = tuple(
            _compile_segment(part)
            for part in alternative.split('.')
            if part != '$'
        ) if alternative and alternative != '$' else ()
        alternatives.append(segments)
    return tuple(alternatives)


def _lookup(current: Any, key: str) -> Any:
    if isinstance(current, dict):
        return current.get(key)
    if isinstance(current, list):
        try:
            index = int(key)
        except ValueError:
            return len(current) if key == 'length' else None
        return current[index] if 0 <= index < len(current) else None
    if isinstance(current, str) and key == 'length':
        return len(current)
    return None


def _apply(current: Any, segment: Segment, context: TraversalContext) -> Any:
    if segment.kind is SegmentKind.CONTEXT:
        return getattr(context, segment.name)
    if current is None and not (segment.kind is SegmentKind.TRANSFORM and segment.name in _NONE_TOLERANT):
        return None
    if segment.kind is SegmentKind.LITERAL:
        return _lookup(current, segment.name)
    try:
        return _TRANSFORMS[segment.name](current, segment.args)
    except (TypeError, ValueError, re.error, RecursionError, OverflowError) as e:
        logger.debug(f"Accessor ${segment.name} degraded to identity: {e}")
        return current


def _evaluate_segments(value: Any, segments: Tuple[Segment, ...], context: TraversalContext) -> Any:
    current = value
    for segment in segments:
        current = _apply(current, segment, context)
    return current


def evaluate(value: Any, path: Optional[str], context: Optional[TraversalContext] = None) -> Any:
    """
    Resolve ``path`` against ``value``.

    Returns the resolved value or None. With a fallback chain (``a|b|c``),
    the first alternative that resolves to a non-None value wins.
    """
    if not path or path == '$':
        return value
    if context is None:
        context = TraversalContext()

    alternatives = compile_path(path)
    if len(alternatives) == 1:
        return _evaluate_segments(value, alternatives[0], context)

    for segments in alternatives:
        if not segments:
            continue
        result = _evaluate_segments(value, segments, context)
        if result is not None:
            return result
    return None


def is_truthy(value: Any) -> bool:
    """Truthiness as used by conditional field guards"""
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ''
    return True


_CONTEXT_NAMES = {ref[1:]: attr for ref, attr in _CONTEXT_REFS.items()}


def context_value(context: Optional[TraversalContext], name: str) -> Any:
    """Look up a context attribute by its path-language name (``parentKey``, ...)"""
    if context is None or name not in _CONTEXT_NAMES:
        return None
    return getattr(context, _CONTEXT_NAMES[name])
