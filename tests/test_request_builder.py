"""
Test suite for request construction: URL tokens, query templates, auth and masking.
"""
import httpx
import pytest

from provider_engine.exceptions import ConfigurationError
from provider_engine.models.provider_config import AuthType, EndpointTemplate, ProviderConfig
from provider_engine.request_builder import (
    build_headers,
    build_request,
    build_url,
    mask_headers,
    mask_value,
    resolve_body,
    resolve_query_params,
)


class TestBuildUrl:

    def test_path_token_substitution(self):
        assert build_url("https://x.test/api/", "items/{id}", {"id": 5}) == "https://x.test/api/items/5"

    def test_operator_defaults_to_any(self):
        assert build_url("https://x.test", "/buy/{country}/{operator}", {"country": "ru"}) == "https://x.test/buy/ru/any"

    def test_missing_required_token_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            build_url("https://x.test", "/activations/{id}", {})

        assert exc_info.value.config_field == "endpoint.path"
        assert "{id}" in exc_info.value.reason

    def test_optional_token_is_stripped(self):
        assert build_url("https://x.test", "/prices/{page?}", {}) == "https://x.test/prices"

    def test_full_url_path_overrides_base(self):
        assert build_url("https://x.test", "https://other.test/q", {}) == "https://other.test/q"

    def test_auth_key_token(self):
        assert build_url("https://x.test", "/{authKey}/balance", {}, "k123") == "https://x.test/k123/balance"


class TestQueryParams:

    def test_template_fallbacks_auth_and_leftovers(self):
        query = resolve_query_params(
            {"country": "$country|countryId", "v": 2},
            {"countryId": "ru", "extra": "1"},
            "k",
            AuthType.QUERY_PARAM,
            "api_key",
        )
        assert query == [("country", "ru"), ("v", "2"), ("api_key", "k"), ("extra", "1")]

    def test_unresolved_template_is_skipped(self):
        query = resolve_query_params({"operator": "$operator"}, {}, "", AuthType.NONE, None)
        assert query == []

    def test_post_does_not_append_leftovers(self):
        query = resolve_query_params({}, {"id": "7"}, "", AuthType.NONE, None, method="POST")
        assert query == []

    def test_list_values_are_joined(self):
        query = resolve_query_params({"ids": "$ids"}, {"ids": ["1", "2"]}, "", AuthType.NONE, None, method="POST")
        assert query == [("ids", "1,2")]

    def test_body_templates(self):
        body = resolve_body({"id": "$id", "status": "$status|code", "source": "api"}, {"id": "7", "code": 8})
        assert body == {"id": "7", "status": 8, "source": "api"}
        assert resolve_body(None, {"id": "7"}) is None


class TestHeaders:

    def test_bearer_auth(self):
        headers = build_headers({}, AuthType.BEARER, "k", None)
        assert headers["Authorization"] == "Bearer k"
        assert "User-Agent" in headers

    def test_header_auth(self):
        headers = build_headers({"X-Extra": "1"}, AuthType.HEADER, "k", "X-Api-Key", origin="https://x.test")
        assert headers["X-Api-Key"] == "k"
        assert headers["X-Extra"] == "1"
        assert headers["Referer"] == "https://x.test"

    def test_masking(self):
        assert mask_value("short") == "****"
        assert mask_value("Bearer secret-token-xyz") == "Bear...-xyz"

        masked = mask_headers({"X-Api-Key": "abcdefghijkl", "Accept": "application/json"})
        assert masked == {"X-Api-Key": "abcd...ijkl", "Accept": "application/json"}


class TestBuildRequest:

    def test_get_request_with_query_auth(self, acme_config, test_secrets):
        endpoint = acme_config.endpoints["getServices"]
        built = build_request(acme_config, endpoint, {"country": "ru"}, test_secrets.API_KEY)

        url = httpx.URL(built.url)
        assert built.method == "GET"
        assert url.path == "/v1/services"
        assert url.params["country"] == "ru"
        assert url.params["api_key"] == test_secrets.API_KEY
        assert built.headers["Referer"] == "https://api.acme.test"
        assert built.body is None

    def test_post_body(self):
        config = ProviderConfig.model_validate({"name": "p", "apiBaseUrl": "https://p.test", "authType": "bearer"})
        endpoint = EndpointTemplate.model_validate({"method": "post", "path": "/orders", "body": {"service": "$service"}})

        built = build_request(config, endpoint, {"service": "tg"}, "secret-token-value")

        assert built.method == "POST"
        assert built.body == {"service": "tg"}
        assert built.masked_headers["Authorization"] == "Bear...alue"
