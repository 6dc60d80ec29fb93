"""
Test suite for the service container: engine caching, reloads and wiring
of settings into each provider engine.
"""
import asyncio
import json

import pytest

from provider_engine.config import Settings
from provider_engine.dependencies import ServiceContainer
from provider_engine.exceptions import ConfigurationError
from provider_engine.provider_store import JsonProviderStore


def write_records(path, *records):
    path.write_text(json.dumps(list(records)), encoding="utf-8")
    return path


@pytest.fixture
def providers_file(tmp_path, acme_record):
    return write_records(tmp_path / "providers.json", acme_record)


def container_for(path, **settings) -> ServiceContainer:
    return ServiceContainer(Settings(**settings), store=JsonProviderStore(str(path)))


@pytest.mark.asyncio
class TestProviderLifecycle:

    async def test_engine_is_reused(self, providers_file):
        container = container_for(providers_file)

        first = await container.get_provider("acme")
        second = await container.get_provider("acme")

        assert first is second
        await container.close()

    async def test_unknown_provider(self, providers_file):
        container = container_for(providers_file)

        with pytest.raises(ConfigurationError):
            await container.get_provider("nobody")

    async def test_reload_picks_up_edited_record(self, providers_file, acme_record):
        container = container_for(providers_file)
        before = await container.get_provider("acme")
        write_records(providers_file, dict(acme_record, apiBaseUrl="https://api2.acme.test/v1"))

        assert (await container.get_provider("acme")) is before
        after = await container.reload_provider("acme")

        assert after is not before
        assert after.config.base_url == "https://api2.acme.test/v1"
        assert (await container.get_provider("acme")) is after
        await container.close()

    async def test_evicted_engine_is_rebuilt(self, providers_file):
        container = container_for(providers_file)
        before = await container.get_provider("acme")

        assert container.evict_provider("acme")
        assert not container.evict_provider("acme")
        assert (await container.get_provider("acme")) is not before
        await container.close()

    async def test_expired_engine_is_rebuilt_from_store(self, providers_file, acme_record):
        container = container_for(providers_file, PROVIDER_REFRESH_SECONDS=0.01)
        before = await container.get_provider("acme")
        write_records(providers_file, dict(acme_record, authKey="rotated-key"))

        await asyncio.sleep(0.05)
        after = await container.get_provider("acme")

        assert after is not before
        assert after.config.auth_key == "rotated-key"
        await container.close()

    async def test_zero_refresh_keeps_engine_until_evicted(self, providers_file):
        container = container_for(providers_file, PROVIDER_REFRESH_SECONDS=0)
        before = await container.get_provider("acme")

        await asyncio.sleep(0.01)

        assert (await container.get_provider("acme")) is before
        await container.close()


@pytest.mark.asyncio
class TestProviderWiring:

    async def test_cache_ttls_come_from_settings(self, providers_file):
        container = container_for(
            providers_file, CACHE_TTL_COUNTRIES=120, CACHE_TTL_SERVICES=240, CACHE_TTL_PRICES=15
        )

        provider = await container.get_provider("acme")

        assert provider.cache_ttls == {"countries": 120, "services": 240, "prices": 15}
        await container.close()

    async def test_executor_uses_request_settings(self, providers_file):
        container = container_for(providers_file, REQUEST_TIMEOUT_SECONDS=12.5, MAX_RETRIES=2)

        provider = await container.get_provider("acme")

        assert provider.executor.timeout_seconds == 12.5
        assert provider.executor.max_retries == 2
        assert provider.executor.circuit_breaker is container.circuit_breaker
        await container.close()
