"""
Provider record store backed by a JSON file.

The file holds either a list of provider records or ``{"providers": [...]}``.
Records are looked up by provider name. Balance and health side effects are
idempotent upserts kept alongside the records in memory and, when a path is
configured, written to a sibling ``<name>.state.json`` file.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import ConfigurationError
from .interfaces import ProviderConfigStore

logger = logging.getLogger(__name__)


class JsonProviderStore(ProviderConfigStore):

    def __init__(self, path: Optional[str] = None, records: Optional[List[Dict[str, Any]]] = None):
        self.path = Path(path) if path else None
        self._records: Dict[str, Dict[str, Any]] = {}
        self._state: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

        if records is not None:
            self._index(records)
        elif self.path is not None:
            self.load()

    @property
    def state_path(self) -> Optional[Path]:
        if self.path is None:
            return None
        return self.path.with_suffix('.state.json')

    def _index(self, records: List[Dict[str, Any]]) -> None:
        self._records = {}
        for record in records:
            name = record.get('name')
            if not name:
                raise ConfigurationError("providers", f"Provider record without a name: {record.get('id')}")
            self._records[name] = record

    def load(self) -> None:
        """(Re)read provider records from disk"""
        if self.path is None or not self.path.exists():
            logger.warning(f"Provider config file not found: {self.path}")
            self._records = {}
            return

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError("providers", f"Cannot read {self.path}: {e}")

        records = data.get('providers', []) if isinstance(data, dict) else data
        if not isinstance(records, list):
            raise ConfigurationError("providers", f"{self.path} must hold a list of provider records")
        self._index(records)

        state_path = self.state_path
        if state_path is not None and state_path.exists():
            with open(state_path, 'r', encoding='utf-8') as f:
                self._state = json.load(f)

        logger.info(f"Loaded {len(self._records)} provider records from {self.path}")

    async def refresh(self) -> None:
        if self.path is not None:
            self.load()

    async def get(self, name: str) -> Optional[Dict[str, Any]]:
        return self._records.get(name)

    async def list_active(self) -> List[Dict[str, Any]]:
        return [r for r in self._records.values() if r.get('isActive', r.get('is_active', True))]

    async def get_state(self, name: str) -> Dict[str, Any]:
        async with self._lock:
            return dict(self._state.get(name, {}))

    async def record_balance(self, name: str, balance: float) -> None:
        await self._upsert(name, {
            'balance': balance,
            'lastBalanceSync': datetime.now(timezone.utc).isoformat(),
        })

    async def record_health(self, name: str, payload: Dict[str, Any]) -> None:
        await self._upsert(name, {'health': payload})

    async def _upsert(self, name: str, values: Dict[str, Any]) -> None:
        async with self._lock:
            self._state.setdefault(name, {}).update(values)
            state_path = self.state_path
            if state_path is None:
                return
            try:
                with open(state_path, 'w', encoding='utf-8') as f:
                    json.dump(self._state, f, indent=2)
            except OSError as e:
                logger.error(f"Failed to persist provider state to {state_path}: {e}")
