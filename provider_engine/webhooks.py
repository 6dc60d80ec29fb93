"""
Inbound webhook verification and parsing.

Verification strategies come from the provider's webhook block:
``ip_whitelist``, ``hmac`` (hex digest of the raw body), ``custom_header``
(static token) or ``none``. Parsing resolves each canonical field through
configured dotted paths first, then common provider field names.
"""

import hmac
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from .exceptions import ParseError
from .models.canonical import WebhookPayload, WebhookSms, WebhookVerificationResult, utcnow
from .models.provider_config import ProviderConfig, WebhookConfig, WebhookStrategy

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_FIELDS: Dict[str, List[str]] = {
    'activationId': ['activationId', 'id', 'activation_id', 'order_id', 'orderId'],
    'text': ['text', 'smsText', 'message', 'content', 'sms_text', 'msg'],
    'code': ['code', 'smsCode', 'verification_code', 'pin', 'otp'],
    'sender': ['sender', 'from', 'service', 'app', 'origin'],
    'receivedAt': ['receivedAt', 'received_at', 'timestamp', 'dateTime', 'time'],
}


def _webhook_config(config: ProviderConfig) -> WebhookConfig:
    return config.webhook or WebhookConfig()


def resolve_secret(webhook: WebhookConfig) -> Optional[str]:
    if webhook.secret_env_var:
        secret = os.getenv(webhook.secret_env_var)
        if secret:
            return secret
    return webhook.secret


def _header(headers: Mapping[str, Any], name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            if isinstance(value, (list, tuple)):
                return str(value[0]) if value else None
            return str(value)
    return None


def verify_webhook(
    config: ProviderConfig,
    body: Union[bytes, str],
    headers: Mapping[str, Any],
    source_ip: str,
) -> WebhookVerificationResult:
    webhook = _webhook_config(config)
    strategy = webhook.strategy

    if strategy is WebhookStrategy.IP_WHITELIST:
        if source_ip in webhook.ip_whitelist:
            return WebhookVerificationResult(valid=True)
        return WebhookVerificationResult(valid=False, error=f"IP not allowed: {source_ip}")

    if strategy is WebhookStrategy.HMAC:
        secret = resolve_secret(webhook)
        if not secret:
            return WebhookVerificationResult(valid=False, error="Webhook secret not configured")
        header_name = webhook.signature_header or 'x-signature'
        signature = _header(headers, header_name)
        if not signature:
            return WebhookVerificationResult(valid=False, error=f"Missing signature header: {header_name}")

        payload = body.encode('utf-8') if isinstance(body, str) else body
        try:
            expected = hmac.new(secret.encode('utf-8'), payload, webhook.algorithm).hexdigest()
        except ValueError as e:
            logger.error(f"HMAC verification error for {config.name}: {e}", extra={'provider': config.name})
            return WebhookVerificationResult(valid=False, error=f"Unsupported algorithm: {webhook.algorithm}")

        if not hmac.compare_digest(expected.encode('utf-8'), signature.strip().lower().encode('utf-8')):
            return WebhookVerificationResult(valid=False, error="Signature mismatch")
        return WebhookVerificationResult(valid=True)

    if strategy is WebhookStrategy.CUSTOM_HEADER:
        secret = resolve_secret(webhook)
        if not secret:
            return WebhookVerificationResult(valid=False, error="Webhook secret not configured")
        token = _header(headers, webhook.signature_header or 'x-token')
        if token is None or not hmac.compare_digest(token.encode('utf-8'), secret.encode('utf-8')):
            return WebhookVerificationResult(valid=False, error="Invalid token")
        return WebhookVerificationResult(valid=True)

    return WebhookVerificationResult(valid=True)


def get_any(payload: Any, paths: List[Optional[str]]) -> Any:
    """First non-empty value among dotted paths"""
    for path in paths:
        if not path:
            continue
        value = payload
        for part in path.split('.'):
            value = value.get(part) if isinstance(value, dict) else None
            if value is None:
                break
        if value is not None and value != '':
            return value
    return None


def parse_timestamp(value: Any) -> datetime:
    """ISO-8601 strings or epoch seconds/milliseconds; now when unparseable"""
    if value is None:
        return utcnow()
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        seconds = float(value)
        if seconds > 1e12:
            seconds /= 1000
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    except ValueError:
        logger.debug(f"Unparseable webhook timestamp: {value}")
        return utcnow()
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_webhook(config: ProviderConfig, payload: Any) -> WebhookPayload:
    """
    Map an inbound webhook body to the canonical payload.

    Raises:
        ParseError: when no activation id can be found
    """
    fields = _webhook_config(config).fields

    def lookup(name: str) -> Any:
        return get_any(payload, [fields.get(name)] + DEFAULT_WEBHOOK_FIELDS[name])

    activation_id = lookup('activationId')
    if activation_id is None:
        raise ParseError("Webhook payload has no activation id", raw_response=payload, provider=config.name)

    code = lookup('code')
    return WebhookPayload(
        provider=config.name,
        activation_id=str(activation_id),
        sms=WebhookSms(
            text=str(lookup('text') or ''),
            sender=str(lookup('sender') or 'Unknown'),
            received_at=parse_timestamp(lookup('receivedAt')),
            code=str(code) if code is not None else None,
        ),
        raw_payload=payload,
    )
