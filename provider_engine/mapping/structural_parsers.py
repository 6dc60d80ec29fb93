"""
Structural parsers.

Each strategy turns one decoded payload shape into a flat list of generic
records, using ``map_fields`` for field extraction. All parsers are pure
functions of ``(root, mapping, context)``.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..models.provider_config import MappingConfig, ResponseType
from .field_mapper import map_fields, resolve_effective_fields
from .path_expression import TraversalContext, evaluate

logger = logging.getLogger(__name__)

# Field names whose presence (as primitives) marks a dictionary node as a data leaf
DEFAULT_LEAF_FIELDS: Tuple[str, ...] = (
    'cost', 'price', 'amount', 'value', 'balance',
    'count', 'qty', 'stock', 'quantity', 'available', 'physicalCount',
    'rate', 'rate720', 'rate168', 'rate72', 'rate24', 'rate1',
    'id', 'code', 'name', 'provider_id', 'activation', 'phone', 'status',
)

_VALUE_WRAPPER_KEYS = ('balance', 'amount', 'result', 'data', 'value', 'status')
_AUTO_WRAPPER_KEYS = ('data', 'countries', 'services', 'items', 'result', 'list')

Records = List[Dict[str, Any]]


def is_primitive(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def is_container(value: Any) -> bool:
    return isinstance(value, (dict, list))


def _entries(node: Any) -> Iterable[Tuple[str, Any]]:
    if isinstance(node, dict):
        return ((str(k), v) for k, v in node.items())
    if isinstance(node, list):
        return ((str(i), v) for i, v in enumerate(node))
    return ()


def has_data_fields(node: Any, leaf_fields: Sequence[str] = DEFAULT_LEAF_FIELDS) -> bool:
    """True if any vocabulary field is present on ``node`` as a primitive"""
    if not isinstance(node, dict):
        return False
    return any(is_primitive(node.get(name)) for name in leaf_fields)


def looks_like_dictionary(node: Any) -> bool:
    """An object whose first value is itself an object or array"""
    if not isinstance(node, dict) or not node:
        return False
    return is_container(next(iter(node.values())))


def values_by_path(data: Any, path: str) -> List[Any]:
    """Resolve a dotted path where ``*`` fans out over every child value"""
    current = [data]
    for part in path.split('.'):
        if part == '$':
            continue
        following = []
        for node in current:
            if node is None:
                continue
            if part == '*':
                following.extend(value for _, value in _entries(node))
            else:
                found = evaluate(node, part)
                if found is not None:
                    following.append(found)
        current = following
    return current


def parse_json_array(items: Any, mapping: MappingConfig, context: Optional[TraversalContext] = None) -> Records:
    if not isinstance(items, list):
        return []
    base = context or TraversalContext()
    records = []
    for index, item in enumerate(items):
        item_context = base.child(index=index, value=item)
        fields = resolve_effective_fields(item, mapping)
        records.append(map_fields(item, fields, item_context, mapping))
    return records


def parse_json_value(value: Any, mapping: MappingConfig, context: Optional[TraversalContext] = None) -> Records:
    field_name = mapping.value_field or 'value'
    if isinstance(value, dict):
        for key in _VALUE_WRAPPER_KEYS:
            if value.get(key) is not None:
                return [{field_name: value[key]}]
        if mapping.fields:
            return [map_fields(value, resolve_effective_fields(value, mapping), context, mapping)]
        return [value]
    return [{field_name: value}]


def parse_json_array_positional(data: Any, mapping: MappingConfig, context: Optional[TraversalContext] = None) -> Records:
    if isinstance(data, list):
        rows = data if data and isinstance(data[0], list) else [data]
    else:
        rows = [[data]]

    field_map = mapping.position_fields or mapping.fields
    records = []
    for row in rows:
        if not isinstance(row, list):
            records.append({'value': row})
            continue
        record = {}
        for index_text, field_name in field_map.items():
            match = re.match(r'^\s*(\d+)', str(index_text))
            if match is None:
                continue
            index = int(match.group(1))
            if index < len(row) and row[index] is not None:
                record[field_name] = row[index]
        if record:
            records.append(record)
    return records


def parse_json_keyed_value(data: Any, mapping: MappingConfig, context: Optional[TraversalContext] = None) -> Records:
    if not isinstance(data, dict):
        return []
    base = context or TraversalContext()
    key_field = mapping.key_field or 'id'
    value_field = mapping.value_field or 'value'

    records = []
    for key, value in data.items():
        if is_container(value):
            record = map_fields(value, resolve_effective_fields(value, mapping), base.child(key=key, value=value), mapping)
            record[key_field] = key
        else:
            record = {key_field: key, value_field: value}
        records.append(record)
    return records


def parse_json_nested_array(data: Any, mapping: MappingConfig, context: Optional[TraversalContext] = None) -> Records:
    if not isinstance(data, list) or not data:
        return []
    if not isinstance(data[0], list):
        return parse_json_array_positional(data, mapping, context)

    if mapping.header_row:
        headers = [str(h) for h in data[0]]
        rows = data[1:]
    elif mapping.position_fields:
        indexed = {}
        for index_text, name in mapping.position_fields.items():
            if str(index_text).strip().isdigit():
                indexed[int(index_text)] = name
        headers = [indexed.get(i, '') for i in range(max(indexed) + 1)] if indexed else []
        rows = data
    else:
        headers = [f'col_{i}' for i in range(len(data[0]))]
        rows = data

    records = []
    for row in rows:
        if not isinstance(row, list):
            continue
        record = {headers[i]: value for i, value in enumerate(row) if i < len(headers) and headers[i]}
        if record:
            records.append(record)
    return records


def parse_json_dictionary(
    node: Any,
    mapping: MappingConfig,
    context: Optional[TraversalContext] = None,
    leaf_fields: Sequence[str] = DEFAULT_LEAF_FIELDS,
) -> Records:
    """
    Recursive descent over a nested dictionary.

    Nodes that carry leaf vocabulary fields are mapped; others are descended
    into with ``parentKey``/``grandParentKey`` shifted down one level. A node
    holding the configured providers key fans out into one record per
    operator entry, skipping entries that lack the required field.
    """
    context = context or TraversalContext()
    nesting = mapping.nesting_levels
    providers_key = nesting.providers_key if nesting else None
    required_field = nesting.effective_required_field if nesting else None
    max_depth = nesting.depth if nesting else None

    records: Records = []
    for key, value in _entries(node):
        if not is_container(value):
            wrapped = {'value': value}
            records.append(map_fields(
                wrapped, resolve_effective_fields(wrapped, mapping), context.child(key=key, value=value), mapping
            ))
            continue

        if providers_key and isinstance(value, dict) and value.get(providers_key):
            records.extend(_fan_out_operators(key, value[providers_key], mapping, context, required_field))
            continue

        at_depth_limit = max_depth is not None and context.depth >= max_depth
        if has_data_fields(value, leaf_fields) or at_depth_limit:
            records.append(map_fields(
                value, resolve_effective_fields(value, mapping), context.child(key=key, value=value), mapping
            ))
        else:
            records.extend(parse_json_dictionary(
                value,
                mapping,
                context.child(
                    grandparent_key=context.key or context.parent_key,
                    parent_key=key,
                    depth=context.depth + 1,
                    ancestors=context.ancestors + (key,),
                ),
                leaf_fields,
            ))
    return records


def _fan_out_operators(
    service_key: str,
    operators: Any,
    mapping: MappingConfig,
    context: TraversalContext,
    required_field: Optional[str],
) -> Records:
    records = []
    for operator_key, operator_data in _entries(operators):
        if not isinstance(operator_data, dict):
            continue
        if required_field and required_field not in operator_data:
            logger.debug(f"Skipping operator {operator_key} under {service_key}: missing {required_field}")
            continue
        record = map_fields(
            operator_data,
            resolve_effective_fields(operator_data, mapping),
            context.child(
                key=service_key,
                operator_key=operator_key,
                value=operator_data,
                parent_key=context.parent_key or context.key,
            ),
            mapping,
        )
        record['service'] = service_key
        if not record.get('operator'):
            record['operator'] = operator_key
        records.append(record)
    return records


def parse_text_regex(text: str, mapping: MappingConfig) -> Records:
    try:
        pattern = re.compile(mapping.regex, re.MULTILINE)
    except re.error as e:
        logger.error(f"Invalid text_regex pattern {mapping.regex!r}: {e}")
        return []

    records = []
    for match in pattern.finditer(text):
        named = match.groupdict()
        source = dict(named)
        source.update({str(i): match.group(i) for i in range(pattern.groups + 1)})
        fields = resolve_effective_fields(source, mapping)

        record = {}
        if named and not mapping.fields:
            record.update(named)
        else:
            for target, group_ref in fields.items():
                for group in (g.strip() for g in group_ref.split('|')):
                    value = source.get(group)
                    if value is not None and (named or value != ''):
                        record[target] = value
                        break
        records.append(record)
    return records


def parse_text_lines(text: str, mapping: MappingConfig) -> Records:
    separator = mapping.separator or ':'
    records = []
    for line in text.strip().split('\n'):
        parts = line.split(separator)
        record = {}
        for target, index_text in mapping.fields.items():
            match = re.match(r'^\s*(\d+)', str(index_text))
            if match is None:
                continue
            index = int(match.group(1))
            if index < len(parts) and parts[index]:
                record[target] = parts[index].strip()
        if record:
            records.append(record)
    return records


def parse_text_response(text: str, mapping: MappingConfig) -> Records:
    if mapping.type is ResponseType.TEXT_REGEX and mapping.regex:
        return parse_text_regex(text, mapping)
    if mapping.type is ResponseType.TEXT_LINES:
        return parse_text_lines(text, mapping)
    return []


def auto_parse_response(data: Any) -> Records:
    """Best-effort records for endpoints without a mapping"""
    if isinstance(data, list):
        return [item if isinstance(item, dict) else {'id': i, 'value': item} for i, item in enumerate(data)]

    if isinstance(data, dict):
        for wrapper in _AUTO_WRAPPER_KEYS:
            if data.get(wrapper):
                return auto_parse_response(data[wrapper])
        if looks_like_dictionary(data):
            return [
                {'id': key, **value} if isinstance(value, dict) else {'id': key, 'value': value}
                for key, value in data.items()
            ]
        return [data]

    return []
