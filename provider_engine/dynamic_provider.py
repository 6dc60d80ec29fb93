"""
Configuration-driven provider engine.

One ``DynamicProvider`` per provider record. Every domain operation runs the
same pipeline: build the request from the endpoint template, execute it
through the resilience layer, classify business errors, parse the body
with the endpoint's mapping, then coerce the generic records into canonical
results. List endpoints go through the cache-aside layer.
"""

import asyncio
import math
import time
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from .currency_service import CurrencyService
from .exceptions import ConfigurationError, ParseError, ProviderApiError, ProviderEngineError
from .interfaces import Cache, CredentialDecryptor, ProviderConfigStore
from .logging_config import get_provider_logger
from .mapping.error_classifier import ErrorClassifier
from .mapping.path_expression import to_number, to_text
from .mapping.response_parser import ResponseParser
from .models.canonical import (
    Country,
    NumberResult,
    PriceData,
    ProviderResponse,
    RequestTrace,
    Service,
    SetStatusResult,
    SmsMessage,
    StatusResult,
    WebhookPayload,
    WebhookVerificationResult,
    utcnow,
)
from .models.provider_config import NumberStatus, ProviderConfig
from .price_optimizer import PriceOptimizer
from .request_builder import build_request
from .request_executor import RequestExecutor
from .results import Err, UniversalErrorKind
from .webhooks import parse_webhook, verify_webhook

NUMBER_LIFETIME = timedelta(minutes=15)

DEFAULT_CACHE_TTLS = {
    'countries': 3600,
    'services': 3600,
    'prices': 60,
}


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    """First value that is not None"""
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def _first_truthy(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value:
            return value
    return None


def _as_float(value: Any, default: float = 0.0) -> float:
    number = to_number(value)
    if isinstance(number, float) and math.isnan(number):
        return default
    return float(number)


class DynamicProvider:
    """
    Provider engine driven entirely by its configuration record.

    Collaborators (executor, cache, decryptor, currency service, store) are
    injected; the breaker and latency registries they wrap are shared across
    engines.
    """

    def __init__(
        self,
        config: ProviderConfig,
        executor: RequestExecutor,
        cache: Optional[Cache] = None,
        decryptor: Optional[CredentialDecryptor] = None,
        currency: Optional[CurrencyService] = None,
        store: Optional[ProviderConfigStore] = None,
        optimizer: Optional[PriceOptimizer] = None,
        cache_ttls: Optional[Dict[str, int]] = None,
        status_batch_concurrency: int = 10,
    ):
        self.config = config
        self.executor = executor
        self.cache = cache
        self.decryptor = decryptor
        self.currency = currency
        self.store = store
        self.optimizer = optimizer or PriceOptimizer()
        self.cache_ttls = {**DEFAULT_CACHE_TTLS, **(cache_ttls or {})}
        self.status_batch_concurrency = status_batch_concurrency

        self.parser = ResponseParser(
            config.name,
            config.mappings,
            ErrorClassifier(config.error_config, config.name),
            leaf_fields=config.leaf_fields,
        )
        self.logger = get_provider_logger(__name__, config.name)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def last_request_trace(self) -> Optional[RequestTrace]:
        return self.executor.last_trace

    @property
    def last_raw_response(self) -> Optional[str]:
        return self.executor.last_raw_response

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def auth_key(self) -> str:
        """Decrypted credential, resolved afresh for every request"""
        raw = self.config.auth_key or ''
        return self.decryptor.decrypt(raw) if (self.decryptor and raw) else raw

    async def request(self, endpoint_key: str, params: Optional[Dict[str, Any]] = None) -> ProviderResponse:
        endpoint = self.config.endpoints.get(endpoint_key)
        if endpoint is None:
            raise ConfigurationError(
                f"endpoints.{endpoint_key}", f"Endpoint {endpoint_key} not configured", provider=self.name
            )

        built = build_request(self.config, endpoint, params or {}, self.auth_key())
        self.logger.debug(f"{built.method} {endpoint_key}", extra={'endpoint': endpoint_key})
        return await self.executor.execute(
            self.config,
            built,
            is_fault=lambda response: self._is_server_error(response, endpoint_key),
        )

    def _is_server_error(self, response: ProviderResponse, mapping_key: str) -> bool:
        result = self.parser.classify(response, mapping_key)
        return isinstance(result, Err) and result.kind is UniversalErrorKind.SERVER_ERROR

    def parse(self, response: ProviderResponse, mapping_key: str) -> List[Dict[str, Any]]:
        """Parse or raise the classified ProviderError"""
        result = self.parser.parse(response, mapping_key)
        if isinstance(result, Err):
            raise result.to_exception(self.name)
        return result.records

    def check_for_errors(self, response: ProviderResponse, mapping_key: str) -> None:
        result = self.parser.classify(response, mapping_key)
        if isinstance(result, Err):
            raise result.to_exception(self.name)

    async def _cached(self, key: str, loader: Callable[[], Awaitable[Any]], ttl_kind: str) -> Any:
        if self.cache is None:
            return await loader()
        return await self.cache.get_or_load(key, loader, self.cache_ttls[ttl_kind])

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------

    async def get_countries(self) -> List[Country]:
        async def load():
            response = await self.request('getCountries')
            records = self.parse(response, 'getCountries')
            return [asdict(self._to_country(record, idx)) for idx, record in enumerate(records)]

        rows = await self._cached(f"cache:countries:{self.name}", load, 'countries')
        return [Country(**row) for row in rows]

    @staticmethod
    def _to_country(record: Dict[str, Any], idx: int) -> Country:
        raw_id = _first(record, 'id')
        country_id = to_text(raw_id if raw_id is not None else idx)
        code = to_text(_first(record, 'code', 'id')).lower()
        return Country(
            id=country_id,
            name=to_text(_first(record, 'name', 'country') or 'Unknown'),
            code=code if code and code != country_id else None,
            flag_url=_first(record, 'flagUrl', 'flag', 'icon'),
        )

    async def get_services(self, country: str) -> List[Service]:
        async def load():
            response = await self.request('getServices', {'country': country})
            records = self.parse(response, 'getServices')
            return [asdict(self._to_service(record, idx)) for idx, record in enumerate(records)]

        rows = await self._cached(f"cache:services:{self.name}:{country}", load, 'services')
        return [Service(**row) for row in rows]

    @staticmethod
    def _to_service(record: Dict[str, Any], idx: int) -> Service:
        raw_id = _first(record, 'id', 'code')
        service_id = to_text(raw_id if raw_id is not None else idx)
        code = to_text(_first(record, 'code', 'id'))
        return Service(
            id=service_id,
            name=to_text(_first(record, 'name') or 'Unknown'),
            code=code if code and code != service_id else None,
            icon_url=_first(record, 'iconUrl', 'icon'),
        )

    async def get_prices(self, country: Optional[str] = None, service: Optional[str] = None) -> List[PriceData]:
        async def load():
            params = {}
            if country:
                params['country'] = country
            if service:
                params['service'] = service
            response = await self.request('getPrices', params)
            prices = [self._to_price(record, country, service) for record in self.parse(response, 'getPrices')]
            if self.config.use_price_optimizer:
                prices = self.optimizer.best_per_group(prices)
            return [asdict(p) for p in prices]

        key = f"provider:prices:{self.name}:{country or 'all'}:{service or 'all'}"
        rows = await self._cached(key, load, 'prices')
        return [PriceData(**row) for row in rows]

    @staticmethod
    def _to_price(record: Dict[str, Any], country: Optional[str], service: Optional[str]) -> PriceData:
        operator = record.get('operator')
        return PriceData(
            country=to_text(record.get('country') or country or ''),
            service=to_text(record.get('service') or service or ''),
            cost=_as_float(_first(record, 'cost', 'price')),
            count=int(_as_float(_first(record, 'count', 'qty'))),
            operator=to_text(operator) if operator not in (None, '') else None,
        )

    # ------------------------------------------------------------------
    # Activation lifecycle
    # ------------------------------------------------------------------

    async def get_number(
        self,
        country: str,
        service: str,
        operator: Optional[str] = None,
        max_price: Optional[Union[str, float]] = None,
    ) -> NumberResult:
        """
        Order a number.

        Raises:
            ParseError: when the mapped record lacks an activation id or phone number
        """
        params: Dict[str, Any] = {'country': country, 'service': service}
        if operator:
            params['operator'] = operator
        if max_price:
            params['maxPrice'] = to_text(max_price)

        response = await self.request('getNumber', params)
        records = self.parse(response, 'getNumber')
        mapped = records[0] if records else {}

        activation_id = _first_truthy(mapped, 'id', 'activationId', 'orderId')
        phone = _first_truthy(mapped, 'phone', 'phoneNumber', 'number')
        if not activation_id or not phone:
            missing = [label for label, value in (('activationId', activation_id), ('phoneNumber', phone)) if not value]
            raise ParseError(
                f"Number response missing {', '.join(missing)}",
                raw_response=response.data,
                provider=self.name,
            )

        raw_price = _first(mapped, 'price', 'cost')
        price = None
        if raw_price is not None:
            raw_price = _as_float(raw_price)
            price = raw_price
            if self.currency is not None:
                await self.currency.ensure_rates()
                price = self.currency.final_price(raw_price, self.config)

        mapped_operator = mapped.get('operator')
        return NumberResult(
            activation_id=to_text(activation_id),
            phone_number=to_text(phone),
            country_code=country,
            service_code=service,
            price=price,
            raw_price=raw_price,
            expires_at=utcnow() + NUMBER_LIFETIME,
            operator=to_text(mapped_operator) if mapped_operator else operator,
        )

    def map_status(self, raw_status: Any, mapping_key: str = 'getStatus') -> str:
        """Translate a provider status via the configured table; unmapped stays pending"""
        table = None
        for key in (mapping_key, 'getStatus'):
            mapping = self.config.mappings.get(key)
            if mapping is not None and mapping.status_mapping:
                table = mapping.status_mapping
                break
        if table is None or raw_status is None:
            return NumberStatus.PENDING.value

        raw = to_text(raw_status).strip()
        status = table.get(raw.upper()) or table.get(raw.lower()) or table.get(raw)
        return NumberStatus(status).value if status else NumberStatus.PENDING.value

    @staticmethod
    def extract_messages(record: Dict[str, Any], activation_id: str) -> List[SmsMessage]:
        if not (record.get('sms') or record.get('code') or record.get('message')):
            return []

        sms = record.get('sms')
        entries = sms if isinstance(sms, list) else [sms or record]
        messages = []
        for entry in entries:
            if not entry:
                continue
            if not isinstance(entry, dict):
                entry = {'text': entry}
            code = _first_truthy(entry, 'code', 'text', 'message') or ''
            entry_code = entry.get('code')
            messages.append(SmsMessage(
                id=to_text(entry.get('id') or f"sms_{activation_id}_{to_text(code)}"),
                sender=to_text(_first_truthy(entry, 'sender', 'from') or 'System'),
                content=to_text(_first_truthy(entry, 'text', 'content', 'message') or ''),
                code=to_text(entry_code) if entry_code not in (None, '') else None,
            ))
        return messages

    async def get_status(self, activation_id: str) -> StatusResult:
        response = await self.request('getStatus', {'id': activation_id})
        records = self.parse(response, 'getStatus')
        mapped = records[0] if records else {}
        return StatusResult(
            status=self.map_status(mapped.get('status'), 'getStatus'),
            messages=self.extract_messages(mapped, activation_id),
        )

    async def get_status_batch(self, activation_ids: List[str]) -> Dict[str, StatusResult]:
        """
        Status for many activations.

        Uses the provider's batch endpoint when configured, otherwise fans
        out individual calls with bounded concurrency. Ids that fail or are
        absent from the answer come back as pending.
        """
        if not activation_ids:
            return {}

        if 'getStatusBatch' in self.config.endpoints:
            try:
                return await self._batch_status(activation_ids)
            except ProviderEngineError as e:
                self.logger.warning(f"Batch status failed, falling back to individual calls: {e}")

        semaphore = asyncio.Semaphore(self.status_batch_concurrency)

        async def one(activation_id: str) -> StatusResult:
            async with semaphore:
                try:
                    return await self.get_status(activation_id)
                except ProviderEngineError as e:
                    self.logger.warning(f"Status check failed for {activation_id}: {e}")
                    return StatusResult()

        results = await asyncio.gather(*(one(i) for i in activation_ids))
        return dict(zip(activation_ids, results))

    async def _batch_status(self, activation_ids: List[str]) -> Dict[str, StatusResult]:
        response = await self.request('getStatusBatch', {
            'ids': ','.join(activation_ids),
            'activationIds': activation_ids,
        })
        wanted = set(activation_ids)
        results: Dict[str, StatusResult] = {}
        for record in self.parse(response, 'getStatusBatch'):
            record_id = to_text(_first_truthy(record, 'id', 'activationId'))
            if record_id in wanted:
                results[record_id] = StatusResult(
                    status=self.map_status(record.get('status'), 'getStatusBatch'),
                    messages=self.extract_messages(record, record_id),
                )
        return {i: results.get(i, StatusResult()) for i in activation_ids}

    async def cancel_number(self, activation_id: str) -> None:
        response = await self.request('cancelNumber', {'id': activation_id})
        self.check_for_errors(response, 'cancelNumber')

    set_cancel = cancel_number

    async def next_sms(self, activation_id: str) -> None:
        response = await self.request('nextSms', {'id': activation_id})
        self.check_for_errors(response, 'nextSms')

    async def set_status(self, activation_id: str, status: Union[str, int]) -> SetStatusResult:
        try:
            response = await self.request('setStatus', {'id': activation_id, 'status': to_text(status)})
        except ProviderApiError as e:
            if e.status == 404:
                return SetStatusResult(success=False, error=str(e))
            raise
        records = self.parse(response, 'setStatus')
        return SetStatusResult(success=True, raw=response.data, parsed=records[0] if records else {})

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_balance(self) -> float:
        response = await self.request('getBalance')
        records = self.parse(response, 'getBalance')
        mapped = records[0] if records else {}
        return _as_float(_first_truthy(mapped, 'balance', 'amount', 'value') or 0)

    async def sync_balance(self) -> float:
        """Fetch and store the balance; never raises, returns 0 on failure"""
        try:
            balance = await self.get_balance()
            if self.store is not None:
                await self.store.record_balance(self.name, balance)
            return balance
        except Exception as e:
            # Runs on a background schedule across all providers
            self.logger.error(f"Failed to sync balance: {e}", exc_info=True)
            return 0.0

    async def test_connection(self) -> Dict[str, Any]:
        """Balance round-trip used by admin tooling; reports instead of raising"""
        started = time.perf_counter()
        try:
            balance = await self.get_balance()
            result = {'success': True, 'balance': balance}
        except ProviderEngineError as e:
            result = {'success': False, 'error': str(e), 'errorType': type(e).__name__}
        result['latencyMs'] = round((time.perf_counter() - started) * 1000, 1)
        trace = self.last_request_trace
        result['trace'] = trace.to_dict() if trace else None
        if self.store is not None:
            await self.store.record_health(self.name, {
                'success': result['success'],
                'latencyMs': result['latencyMs'],
                'checkedAt': utcnow().isoformat(),
            })
        return result

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, body: Union[bytes, str], headers: Mapping[str, Any], source_ip: str) -> WebhookVerificationResult:
        return verify_webhook(self.config, body, headers, source_ip)

    def parse_webhook(self, payload: Any) -> WebhookPayload:
        return parse_webhook(self.config, payload)
