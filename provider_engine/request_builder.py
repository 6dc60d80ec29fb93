"""
Request construction from endpoint templates.

Builds the final URL (path-token substitution, query resolution with
``$var|fallback`` templates), browser-like default headers and credential
injection per the provider's auth mode.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import urlsplit

import httpx

from .exceptions import ConfigurationError
from .models.provider_config import AuthType, EndpointTemplate, ProviderConfig

DEFAULT_HEADERS = {
    'Accept': 'application/json, text/plain, */*',
    'Accept-Language': 'en-US,en;q=0.9',
    'Cache-Control': 'no-cache',
    'User-Agent': (
        'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
        '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
    ),
}

_SENSITIVE_HEADER = re.compile(r'auth|key|token|secret|signature|cookie|password|session', re.IGNORECASE)
_PATH_TOKEN = re.compile(r'\{([^}]+)\}')
_OPTIONAL_SEGMENT = re.compile(r'/\{[^}]*\}')


@dataclass
class BuiltRequest:
    method: str
    url: str
    headers: Dict[str, str]
    masked_headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None


def mask_value(value: str) -> str:
    """Truncate a credential to a 4-char head/tail preview"""
    if len(value) <= 8:
        return '****'
    return f"{value[:4]}...{value[-4:]}"


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {
        name: mask_value(str(value)) if _SENSITIVE_HEADER.search(name) else str(value)
        for name, value in headers.items()
    }


def _param_text(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (list, tuple)):
        return ','.join(_param_text(v) for v in value)
    return str(value)


def build_url(base_url: str, path: str, params: Dict[str, Any], auth_key: str = '') -> str:
    if path and path.startswith(('http://', 'https://')):
        url = path
    else:
        base = (base_url or '').rstrip('/')
        path = path or ''
        url = base + (path if not path or path.startswith(('/', '?')) else '/' + path)

    substitutions = {k: v for k, v in params.items() if v is not None}
    substitutions['authKey'] = auth_key or ''
    for name, value in substitutions.items():
        url = url.replace(f'{{{name}}}', _param_text(value))

    url = url.replace('{operator}', 'any')

    missing = [token for token in _PATH_TOKEN.findall(url) if '?' not in token]
    if missing:
        raise ConfigurationError(
            'endpoint.path',
            f"Missing required parameters: {', '.join('{' + t + '}' for t in missing)} (base URL: {base_url})"
        )

    url = _OPTIONAL_SEGMENT.sub('', url)
    return _PATH_TOKEN.sub('', url)


def resolve_query_params(
    template: Dict[str, Any],
    params: Dict[str, Any],
    auth_key: str,
    auth_type: AuthType,
    auth_query_param: Optional[str],
    method: str = 'GET',
) -> List[Tuple[str, str]]:
    """Resolve configured query params, then auth, then (GET only) leftover call arguments"""
    query: List[Tuple[str, str]] = []
    handled: Set[str] = set()

    for name, value in template.items():
        if value is None:
            continue
        if isinstance(value, str) and value.startswith('$'):
            for variable in (v.strip() for v in value[1:].split('|')):
                if params.get(variable) is not None:
                    query.append((name, _param_text(params[variable])))
                    handled.add(variable)
                    break
        else:
            query.append((name, _param_text(value)))

    if auth_type is AuthType.QUERY_PARAM and auth_query_param and auth_key:
        query.append((auth_query_param, auth_key))

    if method == 'GET':
        present = {name for name, _ in query}
        for name, value in params.items():
            if name in handled or name in present or value is None:
                continue
            query.append((name, _param_text(value)))

    return query


def resolve_body(template: Optional[Dict[str, Any]], params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if template is None:
        return None
    body = {}
    for name, value in template.items():
        if isinstance(value, str) and value.startswith('$'):
            resolved = next(
                (params[v.strip()] for v in value[1:].split('|') if params.get(v.strip()) is not None),
                None
            )
            if resolved is not None:
                body[name] = resolved
        else:
            body[name] = value
    return body


def build_headers(
    configured: Dict[str, str],
    auth_type: AuthType,
    auth_key: str,
    auth_header: Optional[str],
    origin: str = 'http://localhost',
) -> Dict[str, str]:
    headers = dict(DEFAULT_HEADERS)
    headers['Referer'] = origin
    headers.update(configured or {})

    if auth_type is AuthType.BEARER and auth_key:
        headers['Authorization'] = f'Bearer {auth_key}'
    elif auth_type is AuthType.HEADER and auth_header and auth_key:
        headers[auth_header] = auth_key
    return headers


def build_request(
    provider: ProviderConfig,
    endpoint: EndpointTemplate,
    params: Dict[str, Any],
    auth_key: str = '',
) -> BuiltRequest:
    url = build_url(provider.base_url, endpoint.path, params, auth_key)
    query = resolve_query_params(
        endpoint.query_params, params, auth_key, provider.auth_type, provider.auth_query_param, endpoint.method
    )
    if query:
        url = str(httpx.URL(url).copy_merge_params(query))

    parts = urlsplit(url)
    origin = f"{parts.scheme}://{parts.netloc}" if parts.scheme else 'http://localhost'
    headers = build_headers(endpoint.headers, provider.auth_type, auth_key, provider.auth_header, origin)

    return BuiltRequest(
        method=endpoint.method,
        url=url,
        headers=headers,
        masked_headers=mask_headers(headers),
        body=resolve_body(endpoint.body, params) if endpoint.method != 'GET' else None,
    )
