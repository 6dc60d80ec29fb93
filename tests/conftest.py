"""
Shared test fixtures for the provider engine test suite.
Provides provider records, mock HTTP transports and engine builders.
"""
import copy
import logging

import httpx
import pytest

from provider_engine.circuit_breakers import InMemoryCircuitBreaker, LatencyMonitor
from provider_engine.dynamic_provider import DynamicProvider
from provider_engine.models.provider_config import ProviderConfig
from provider_engine.request_executor import RequestExecutor


class TestSecrets:
    """Test secrets and keys for consistent testing."""
    API_KEY = "test-api-key-0123456789"
    ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
    WRONG_ENCRYPTION_KEY = "ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100"
    WEBHOOK_SECRET = "test-webhook-secret"


ACME_RECORD = {
    "id": "prov_acme",
    "name": "acme",
    "displayName": "Acme SMS",
    "apiBaseUrl": "https://api.acme.test/v1",
    "authType": "query_param",
    "authQueryParam": "api_key",
    "authKey": TestSecrets.API_KEY,
    "rateLimitDelay": 0,
    "currency": "RUB",
    "normalizationMode": "MANUAL",
    "normalizationRate": 90,
    "priceMultiplier": 1.2,
    "fixedMarkup": 0.1,
    "errorConfig": {
        "patterns": {
            "NO_BALANCE": "NO_BALANCE",
            "BAD_KEY": "BAD_KEY",
            "SERVER_ERROR": "ERROR_SQL",
            "NO_NUMBERS": "/no (free )?numbers/",
        }
    },
    "endpoints": {
        "getCountries": {"path": "/countries"},
        "getServices": {"path": "/services", "queryParams": {"country": "$country"}},
        "getNumber": {
            "path": "/numbers/buy",
            "queryParams": {"country": "$country", "service": "$service", "operator": "$operator"},
        },
        "getStatus": {"path": "/activations/{id}"},
        "cancelNumber": {"method": "post", "path": "/activations/{id}/cancel"},
        "nextSms": {"method": "post", "path": "/activations/{id}/next"},
        "setStatus": {"path": "/activations/{id}/status", "queryParams": {"status": "$status"}},
        "getBalance": {"path": "/balance"},
        "getPrices": {"path": "/prices"},
    },
    "mappings": {
        "getCountries": {"type": "json_array", "fields": {"id": "id", "name": "name", "code": "iso"}},
        "getServices": {"type": "json_dictionary", "fields": {"id": "$key", "name": "name"}},
        "getNumber": {"type": "json_object", "rootPath": "activation", "fields": {"id": "id", "phone": "phone", "price": "cost"}},
        "getStatus": {
            "type": "json_object",
            "fields": {"status": "state", "code": "sms.0.code", "text": "sms.0.text"},
            "statusMapping": {"WAIT_CODE": "pending", "OK": "RECEIVED", "CANCEL": "cancelled"},
            "errorPatterns": {"NO_ACTIVATION": "NO_ACTIVATION"},
        },
        "cancelNumber": {"type": "json_value", "errorPatterns": {"ACTIVATION_CANCELLED": "/already cancel/"}},
        "setStatus": {"type": "json_object", "fields": {"result": "state"}},
        "getBalance": {"type": "json_value", "valueField": "balance"},
        "getPrices": {
            "type": "json_dictionary",
            "fields": {
                "country": "$grandParentKey",
                "service": "$parentKey",
                "operator": "$key",
                "cost": "cost",
                "count": "count",
            },
        },
        "webhook": {
            "strategy": "hmac",
            "secret": TestSecrets.WEBHOOK_SECRET,
            "signatureHeader": "X-Acme-Signature",
            "fields": {"activationId": "data.activation_id", "text": "data.sms.body"},
        },
    },
}


@pytest.fixture(autouse=True)
def suppress_logging():
    """Keep engine logging quiet during tests."""
    logging.getLogger("provider_engine").setLevel(logging.CRITICAL)
    yield
    logging.getLogger("provider_engine").setLevel(logging.NOTSET)


@pytest.fixture
def test_secrets():
    return TestSecrets()


@pytest.fixture
def acme_record():
    """A fresh copy so tests can tweak the record freely."""
    return copy.deepcopy(ACME_RECORD)


@pytest.fixture
def acme_config(acme_record):
    return ProviderConfig.model_validate(acme_record)


@pytest.fixture
def breaker():
    return InMemoryCircuitBreaker(failure_threshold=5, recovery_timeout=30)


def fresh(response: httpx.Response) -> httpx.Response:
    """Copy a canned response; a Response instance cannot be sent twice"""
    return httpx.Response(response.status_code, headers=response.headers, content=response.content)


class FakeProviderApi:
    """MockTransport handler routing (method, path) to canned responses."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(route):
            return route(request)
        return fresh(route)

    def calls_to(self, path: str) -> list:
        return [r for r in self.requests if r.url.path == path]


def make_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_executor(handler, breaker=None, latency_monitor=None, **kwargs) -> RequestExecutor:
    return RequestExecutor(
        circuit_breaker=breaker or InMemoryCircuitBreaker(),
        latency_monitor=latency_monitor or LatencyMonitor(),
        client=make_client(handler),
        **kwargs
    )


def make_provider(record, handler, breaker=None, **kwargs) -> DynamicProvider:
    config = record if isinstance(record, ProviderConfig) else ProviderConfig.model_validate(record)
    return DynamicProvider(config, make_executor(handler, breaker=breaker), **kwargs)


@pytest.fixture
def provider_factory():
    """Build a DynamicProvider whose HTTP calls go to a MockTransport handler."""
    return make_provider


@pytest.fixture
def executor_factory():
    return make_executor
