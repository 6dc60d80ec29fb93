import json
import logging
from typing import Any, Dict, List
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from ...config import get_settings
from ...dependencies import ServiceContainer, get_service_container
from ...exceptions import ConfigurationError, ParseError

logger = logging.getLogger(__name__)

# Create rate limiter for endpoints
limiter = Limiter(key_func=get_remote_address)

router = APIRouter(prefix="/v1", tags=["providers"])


def webhook_rate_limit() -> str:
    return get_settings().WEBHOOK_RATE_LIMIT


def decode_webhook_body(raw: bytes, content_type: str) -> Any:
    """JSON bodies are decoded as JSON, form posts as a flat dict"""
    text = raw.decode('utf-8', errors='replace')
    if 'application/x-www-form-urlencoded' in content_type:
        return dict(parse_qsl(text))
    try:
        return json.loads(text)
    except ValueError:
        return dict(parse_qsl(text)) if '=' in text else {'text': text}


@router.post("/webhooks/{provider_name}", summary="Receive an inbound SMS webhook")
@limiter.limit(webhook_rate_limit)
async def receive_webhook(
    request: Request,
    provider_name: str,
    container: ServiceContainer = Depends(get_service_container)
) -> Dict[str, Any]:
    """Verify the webhook against the provider's strategy, then map it to the canonical payload."""
    try:
        provider = await container.get_provider(provider_name)
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=e.message)

    body = await request.body()
    source_ip = request.client.host if request.client else ""
    verification = provider.verify_webhook(body, dict(request.headers), source_ip)
    if not verification.valid:
        logger.warning(
            f"Rejected webhook for {provider_name} from {source_ip}: {verification.error}",
            extra={'provider': provider_name}
        )
        raise HTTPException(status_code=401, detail=verification.error)

    payload = decode_webhook_body(body, request.headers.get('content-type', ''))
    try:
        parsed = provider.parse_webhook(payload)
    except ParseError as e:
        raise HTTPException(status_code=422, detail=e.message)

    logger.info(
        f"Webhook accepted for {provider_name}: activation {parsed.activation_id}",
        extra={'provider': provider_name}
    )
    return parsed.to_dict()


@router.get("/providers", summary="List active providers")
async def list_providers(container: ServiceContainer = Depends(get_service_container)) -> List[Dict[str, Any]]:
    return [
        {
            "name": config.name,
            "displayName": config.display_name or config.name,
            "authType": config.auth_type.value,
            "endpoints": sorted(config.endpoints),
            "currency": config.currency,
            "normalizationMode": config.normalization_mode.value,
        }
        for config in await container.list_providers()
    ]


@router.get("/providers/{provider_name}/circuit", summary="Circuit breaker and latency state")
async def get_circuit_status(
    provider_name: str,
    container: ServiceContainer = Depends(get_service_container)
) -> Dict[str, Any]:
    status = await container.circuit_breaker.get_status(provider_name)
    status["latencies_ms"] = await container.latency_monitor.get_latencies(provider_name)
    return status


@router.post("/providers/{provider_name}/circuit/reset", summary="Close the circuit and clear latency history")
async def reset_circuit(
    provider_name: str,
    container: ServiceContainer = Depends(get_service_container)
) -> Dict[str, Any]:
    await container.circuit_breaker.reset(provider_name)
    await container.latency_monitor.reset(provider_name)
    logger.info(f"Circuit reset by admin request for {provider_name}", extra={'provider': provider_name})
    return await container.circuit_breaker.get_status(provider_name)


@router.post("/providers/{provider_name}/reload", summary="Re-read a provider record and rebuild its engine")
async def reload_provider(
    provider_name: str,
    container: ServiceContainer = Depends(get_service_container)
) -> Dict[str, Any]:
    try:
        provider = await container.reload_provider(provider_name)
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=e.message)
    logger.info(f"Provider {provider_name} reloaded by admin request", extra={'provider': provider_name})
    return {"name": provider.name, "endpoints": sorted(provider.config.endpoints)}
