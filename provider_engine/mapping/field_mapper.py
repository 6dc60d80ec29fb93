"""
Field mapping: runs a ``fields`` map through the path evaluator for one item.
"""

import re
from typing import Any, Dict, List, Optional

from ..models.provider_config import MappingConfig
from .path_expression import TraversalContext, context_value, evaluate, is_truthy, to_number, to_text

# Target fields with well-known source names, tried in order when the
# configured path resolves to nothing
DEFAULT_FIELD_FALLBACKS: Dict[str, List[str]] = {
    'name': ['name', 'eng', 'title', 'text', 'label', 'rus', 'chn'],
    'countryName': ['name', 'eng', 'title', 'country_name', 'rus'],
    'serviceName': ['name', 'title', 'service', 'service_name'],
    'id': ['id', 'code', 'key', 'value'],
    'code': ['code', 'id', 'short_name', 'iso'],
    'countryId': ['id', 'code', 'country_id', 'country_code'],
    'countryISO': ['iso', 'iso2', 'code', 'country_code'],
    'serviceId': ['id', 'code', 'service_id', 'service_code'],
}

_ICON_PLACEHOLDER = re.compile(r'\{\{([^}]+)\}\}')


def resolve_effective_fields(item: Any, mapping: MappingConfig) -> Dict[str, str]:
    """Merge in every conditional field block whose guard path is truthy on ``item``"""
    fields = dict(mapping.fields)
    for guard_path, extra_fields in mapping.conditional_fields.items():
        if is_truthy(evaluate(item, guard_path)):
            fields.update(extra_fields)
    return fields


def _fallback_value(item: Any, target: str, context: TraversalContext, mapping: Optional[MappingConfig]) -> Any:
    candidates = list(mapping.field_fallbacks.get(target, [])) if mapping else []
    candidates += DEFAULT_FIELD_FALLBACKS.get(target, [])
    for name in candidates:
        if isinstance(item, dict) and item.get(name) is not None:
            return item[name]
        if isinstance(context.value, dict) and context.value.get(name) is not None:
            return context.value[name]
    return None


def _smart_unwrap(value: Any, target: str) -> Any:
    # A path pointing at a wrapper like {"cost": 10.5} yields the wrapped value
    if isinstance(value, dict):
        for key in value:
            if str(key).lower() == target.lower():
                return value[key]
    return value


def apply_transform(value: Any, rule: str) -> Any:
    if rule == 'number':
        number = to_number(value)
        return None if number != number else number
    if rule == 'string':
        return to_text(value)
    if rule == 'boolean':
        return is_truthy(value)
    if rule == 'uppercase':
        return to_text(value).upper()
    if rule == 'lowercase':
        return to_text(value).lower()
    if '{value}' in rule:
        return rule.replace('{value}', to_text(value), 1)
    return value


def _render_icon_url(template: str, result: Dict[str, Any], item: Any, context: TraversalContext) -> str:
    def substitute(match):
        name = match.group(1).strip()
        for source in (result, item if isinstance(item, dict) else {}):
            if source.get(name) is not None:
                return to_text(source[name])
        found = context_value(context, name)
        if found is not None:
            return to_text(found)
        return match.group(0)

    return _ICON_PLACEHOLDER.sub(substitute, template)


def map_fields(
    item: Any,
    fields: Dict[str, str],
    context: Optional[TraversalContext] = None,
    mapping: Optional[MappingConfig] = None,
) -> Dict[str, Any]:
    """Build one generic record from ``item``"""
    if context is None:
        context = TraversalContext()

    result: Dict[str, Any] = {}
    for target, source_path in fields.items():
        value = evaluate(item, source_path, context)
        if value is None:
            value = _fallback_value(item, target, context, mapping)
        result[target] = _smart_unwrap(value, target)

    if mapping is None:
        return result

    for target, rule in mapping.transform.items():
        if result.get(target) is not None:
            result[target] = apply_transform(result[target], rule)

    if mapping.icon_url_template:
        current = result.get('iconUrl')
        if not (isinstance(current, str) and current.startswith('http')):
            result['iconUrl'] = _render_icon_url(mapping.icon_url_template, result, item, context)

    return result
