"""
Test suite for the JSON-file provider record store.
"""
import json

import pytest

from provider_engine.exceptions import ConfigurationError
from provider_engine.provider_store import JsonProviderStore


def write_json(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.mark.asyncio
class TestJsonProviderStore:

    async def test_loads_record_list(self, tmp_path, acme_record):
        path = write_json(tmp_path / "providers.json", [acme_record])

        store = JsonProviderStore(str(path))

        assert (await store.get("acme"))["apiBaseUrl"] == "https://api.acme.test/v1"
        assert await store.get("missing") is None

    async def test_loads_wrapped_records(self, tmp_path, acme_record):
        path = write_json(tmp_path / "providers.json", {"providers": [acme_record]})
        assert await JsonProviderStore(str(path)).get("acme") is not None

    async def test_list_active_filters_inactive(self, acme_record):
        retired = dict(acme_record, name="retired", isActive=False)
        legacy = dict(acme_record, name="legacy", is_active=False)
        store = JsonProviderStore(records=[acme_record, retired, legacy])

        names = [r["name"] for r in await store.list_active()]

        assert names == ["acme"]

    async def test_missing_file_yields_empty_store(self, tmp_path):
        store = JsonProviderStore(str(tmp_path / "absent.json"))
        assert await store.list_active() == []

    async def test_record_balance_persists_state(self, tmp_path, acme_record):
        path = write_json(tmp_path / "providers.json", [acme_record])
        store = JsonProviderStore(str(path))

        await store.record_balance("acme", 42.5)

        assert store.state_path == tmp_path / "providers.state.json"
        on_disk = json.loads(store.state_path.read_text(encoding="utf-8"))
        assert on_disk["acme"]["balance"] == 42.5
        assert "lastBalanceSync" in on_disk["acme"]

        reloaded = JsonProviderStore(str(path))
        assert (await reloaded.get_state("acme"))["balance"] == 42.5

    async def test_record_health_upserts(self, acme_record):
        store = JsonProviderStore(records=[acme_record])

        await store.record_balance("acme", 1.0)
        await store.record_health("acme", {"status": "ok"})
        await store.record_health("acme", {"status": "degraded"})

        state = await store.get_state("acme")
        assert state["health"] == {"status": "degraded"}
        assert state["balance"] == 1.0

    async def test_in_memory_store_has_no_state_file(self, acme_record):
        store = JsonProviderStore(records=[acme_record])
        await store.record_balance("acme", 3.0)
        assert store.state_path is None

    async def test_record_without_name(self):
        with pytest.raises(ConfigurationError):
            JsonProviderStore(records=[{"id": "nameless"}])

    async def test_invalid_json(self, tmp_path):
        path = tmp_path / "providers.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            JsonProviderStore(str(path))

    async def test_non_list_payload(self, tmp_path):
        path = write_json(tmp_path / "providers.json", {"providers": {"acme": {}}})

        with pytest.raises(ConfigurationError):
            JsonProviderStore(str(path))

    async def test_refresh_rereads_file(self, tmp_path, acme_record):
        path = write_json(tmp_path / "providers.json", [acme_record])
        store = JsonProviderStore(str(path))
        write_json(path, [dict(acme_record, apiBaseUrl="https://api2.acme.test/v1")])

        await store.refresh()

        assert (await store.get("acme"))["apiBaseUrl"] == "https://api2.acme.test/v1"

    async def test_refresh_keeps_in_memory_records(self, acme_record):
        store = JsonProviderStore(records=[acme_record])

        await store.refresh()

        assert await store.get("acme") is not None
