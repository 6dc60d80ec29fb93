"""
Test suite for inbound webhook verification and parsing.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone

import pytest

from provider_engine.exceptions import ParseError
from provider_engine.models.provider_config import ProviderConfig
from provider_engine.webhooks import get_any, parse_timestamp, parse_webhook, verify_webhook


def provider_with_webhook(**webhook) -> ProviderConfig:
    return ProviderConfig.model_validate({"name": "hooked", "webhook": webhook})


def sign(secret: str, body: bytes, algorithm=hashlib.sha256) -> str:
    return hmac.new(secret.encode(), body, algorithm).hexdigest()


@pytest.fixture
def sms_body():
    return json.dumps({
        "data": {"activation_id": "A1", "sms": {"body": "Your code 1234"}},
        "code": "1234",
    }).encode()


class TestHmacVerification:

    def test_valid_signature(self, acme_config, test_secrets, sms_body):
        headers = {"x-acme-signature": sign(test_secrets.WEBHOOK_SECRET, sms_body)}
        result = verify_webhook(acme_config, sms_body, headers, "10.0.0.1")
        assert result.valid
        assert result.error is None

    def test_uppercase_hex_signature_accepted(self, acme_config, test_secrets, sms_body):
        headers = {"X-Acme-Signature": sign(test_secrets.WEBHOOK_SECRET, sms_body).upper()}
        assert verify_webhook(acme_config, sms_body, headers, "10.0.0.1").valid

    def test_signature_mismatch(self, acme_config, sms_body):
        headers = {"x-acme-signature": sign("wrong-secret", sms_body)}
        result = verify_webhook(acme_config, sms_body, headers, "10.0.0.1")
        assert not result.valid
        assert result.error == "Signature mismatch"

    def test_tampered_body(self, acme_config, test_secrets, sms_body):
        headers = {"x-acme-signature": sign(test_secrets.WEBHOOK_SECRET, sms_body)}
        assert not verify_webhook(acme_config, sms_body + b" ", headers, "10.0.0.1").valid

    def test_missing_header(self, acme_config, sms_body):
        result = verify_webhook(acme_config, sms_body, {}, "10.0.0.1")
        assert not result.valid
        assert "X-Acme-Signature" in result.error

    def test_non_ascii_signature_is_rejected(self, acme_config, sms_body):
        assert not verify_webhook(acme_config, sms_body, {"x-acme-signature": "ü" * 64}, "").valid

    def test_secret_from_environment_wins(self, monkeypatch, sms_body):
        monkeypatch.setenv("HOOK_SECRET", "from-env")
        config = provider_with_webhook(strategy="hmac", secret="inline", secretEnvVar="HOOK_SECRET")

        assert verify_webhook(config, sms_body, {"x-signature": sign("from-env", sms_body)}, "").valid
        assert not verify_webhook(config, sms_body, {"x-signature": sign("inline", sms_body)}, "").valid

    def test_inline_secret_when_env_unset(self, monkeypatch, sms_body):
        monkeypatch.delenv("HOOK_SECRET", raising=False)
        config = provider_with_webhook(strategy="hmac", secret="inline", secretEnvVar="HOOK_SECRET")
        assert verify_webhook(config, sms_body, {"x-signature": sign("inline", sms_body)}, "").valid

    def test_sha512(self, sms_body):
        config = provider_with_webhook(strategy="hmac", secret="s", algorithm="sha512")
        headers = {"x-signature": sign("s", sms_body, hashlib.sha512)}
        assert verify_webhook(config, sms_body, headers, "").valid

    def test_unsupported_algorithm(self, sms_body):
        config = provider_with_webhook(strategy="hmac", secret="s", algorithm="nope256")
        result = verify_webhook(config, sms_body, {"x-signature": "00"}, "")
        assert not result.valid
        assert "nope256" in result.error

    def test_unconfigured_secret(self, sms_body):
        config = provider_with_webhook(strategy="hmac")
        assert verify_webhook(config, sms_body, {"x-signature": "00"}, "").error == "Webhook secret not configured"


class TestOtherStrategies:

    def test_ip_whitelist(self):
        config = provider_with_webhook(strategy="ip_whitelist", ipWhitelist=["203.0.113.7"])
        assert verify_webhook(config, b"{}", {}, "203.0.113.7").valid
        result = verify_webhook(config, b"{}", {}, "198.51.100.1")
        assert not result.valid
        assert "198.51.100.1" in result.error

    def test_custom_header(self):
        config = provider_with_webhook(strategy="custom_header", secret="tok-123")
        assert verify_webhook(config, b"{}", {"X-Token": "tok-123"}, "").valid
        assert not verify_webhook(config, b"{}", {"X-Token": "tok-999"}, "").valid
        assert not verify_webhook(config, b"{}", {}, "").valid

    def test_custom_header_name(self):
        config = provider_with_webhook(strategy="custom_header", secret="tok", signatureHeader="X-Hook-Key")
        assert verify_webhook(config, b"{}", {"x-hook-key": "tok"}, "").valid

    def test_none_strategy_and_missing_block(self):
        assert verify_webhook(provider_with_webhook(strategy="none"), b"", {}, "").valid
        assert verify_webhook(ProviderConfig(name="bare"), b"", {}, "").valid


class TestParsing:

    def test_configured_paths(self, acme_config, sms_body):
        payload = parse_webhook(acme_config, json.loads(sms_body))

        assert payload.provider == "acme"
        assert payload.activation_id == "A1"
        assert payload.sms.text == "Your code 1234"
        assert payload.sms.code == "1234"
        assert payload.sms.sender == "Unknown"
        assert payload.event_type == "sms.received"

    def test_default_field_names(self):
        config = ProviderConfig(name="bare")
        payload = parse_webhook(config, {
            "id": 77, "message": "hi", "from": "WhatsApp", "timestamp": 1700000000,
        })

        assert payload.activation_id == "77"
        assert payload.sms.text == "hi"
        assert payload.sms.sender == "WhatsApp"
        assert payload.sms.code is None
        assert payload.sms.received_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_missing_activation_id(self):
        with pytest.raises(ParseError):
            parse_webhook(ProviderConfig(name="bare"), {"text": "orphan"})

    def test_to_dict(self, acme_config, sms_body):
        data = parse_webhook(acme_config, json.loads(sms_body)).to_dict()
        assert data["activationId"] == "A1"
        assert data["sms"]["code"] == "1234"
        assert data["eventType"] == "sms.received"


class TestHelpers:

    def test_get_any(self):
        payload = {"a": {"b": ""}, "c": 0}
        assert get_any(payload, ["a.b", "c"]) == 0
        assert get_any(payload, [None, "x.y"]) is None

    def test_parse_timestamp(self):
        expected = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        assert parse_timestamp(1700000000) == expected
        assert parse_timestamp(1700000000000) == expected
        assert parse_timestamp("1700000000") == expected
        assert parse_timestamp("2023-11-14T22:13:20Z") == expected
        assert parse_timestamp("2023-11-14T22:13:20") == expected

    def test_unparseable_timestamp_is_now(self):
        before = datetime.now(timezone.utc)
        assert parse_timestamp("yesterday-ish") >= before
