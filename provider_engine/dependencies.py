"""
Dependency injection container for the provider engine.

Builds the shared registries (circuit breakers, latency windows, rate
limiter, cache) once per process and hands out one ``DynamicProvider`` per
provider record, all wired to the same registries.
"""

import logging
import time
from typing import Dict, List, Optional, Tuple

import httpx

from .cache import CacheAside
from .circuit_breakers import InMemoryCircuitBreaker, LatencyMonitor
from .config import Settings
from .credentials import AesGcmDecryptor
from .currency_service import CurrencyService
from .dynamic_provider import DynamicProvider
from .exceptions import ConfigurationError
from .interfaces import ProviderConfigStore
from .models.provider_config import ProviderConfig
from .price_optimizer import PriceOptimizer
from .provider_store import JsonProviderStore
from .rate_limiter import DistributedRateLimiter
from .request_executor import RequestExecutor

logger = logging.getLogger(__name__)


class ServiceContainer:
    """
    Manages service lifecycle and dependencies.

    Every collaborator is created lazily on first access so tests can
    pre-seed any of them (e.g. an in-memory store) before use.
    """

    def __init__(self, settings: Settings, store: Optional[ProviderConfigStore] = None):
        self.settings = settings
        self._store = store
        self._circuit_breaker: Optional[InMemoryCircuitBreaker] = None
        self._latency_monitor: Optional[LatencyMonitor] = None
        self._rate_limiter: Optional[DistributedRateLimiter] = None
        self._cache: Optional[CacheAside] = None
        self._decryptor: Optional[AesGcmDecryptor] = None
        self._currency: Optional[CurrencyService] = None
        self._http_client: Optional[httpx.AsyncClient] = None
        self._providers: Dict[str, Tuple[DynamicProvider, float]] = {}

        logger.info(f"ServiceContainer initialized (env: {settings.APP_ENV}, redis: {bool(settings.REDIS_URL)})")

    @property
    def store(self) -> ProviderConfigStore:
        if self._store is None:
            self._store = JsonProviderStore(self.settings.PROVIDERS_CONFIG_PATH)
        return self._store

    @property
    def circuit_breaker(self) -> InMemoryCircuitBreaker:
        if self._circuit_breaker is None:
            self._circuit_breaker = InMemoryCircuitBreaker(
                failure_threshold=self.settings.CIRCUIT_FAILURE_THRESHOLD,
                recovery_timeout=self.settings.CIRCUIT_OPEN_SECONDS,
            )
        return self._circuit_breaker

    @property
    def latency_monitor(self) -> LatencyMonitor:
        if self._latency_monitor is None:
            self._latency_monitor = LatencyMonitor(
                window_size=self.settings.LATENCY_WINDOW_SIZE,
                min_samples=self.settings.LATENCY_MIN_SAMPLES,
                factor=self.settings.LATENCY_FACTOR,
                floor_ms=self.settings.LATENCY_FLOOR_MS,
                slow_sample_limit=self.settings.LATENCY_SLOW_SAMPLE_LIMIT,
            )
        return self._latency_monitor

    @property
    def rate_limiter(self) -> DistributedRateLimiter:
        if self._rate_limiter is None:
            # Production without Redis cannot coordinate workers; spacing per process is the best available
            self._rate_limiter = DistributedRateLimiter(
                redis_url=self.settings.REDIS_URL,
                fallback_mode="local",
                key_prefix=self.settings.REDIS_PREFIX,
            )
        return self._rate_limiter

    @property
    def cache(self) -> CacheAside:
        if self._cache is None:
            self._cache = CacheAside(
                redis_url=self.settings.REDIS_URL,
                local_maxsize=self.settings.LOCAL_CACHE_SIZE,
                key_prefix=self.settings.REDIS_PREFIX,
            )
        return self._cache

    @property
    def decryptor(self) -> AesGcmDecryptor:
        if self._decryptor is None:
            self._decryptor = AesGcmDecryptor(self.settings.ENCRYPTION_KEY)
        return self._decryptor

    @property
    def currency(self) -> CurrencyService:
        if self._currency is None:
            self._currency = CurrencyService(
                fx_rates=self.settings.FX_RATES,
                points_rate=self.settings.POINTS_RATE,
                cache=self.cache,
                cache_ttl_seconds=self.settings.FX_CACHE_TTL_SECONDS,
            )
        return self._currency

    @property
    def http_client(self) -> httpx.AsyncClient:
        """One connection pool shared by every provider engine"""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
                follow_redirects=True,
            )
        return self._http_client

    def build_provider(self, config: ProviderConfig) -> DynamicProvider:
        executor = RequestExecutor(
            circuit_breaker=self.circuit_breaker,
            latency_monitor=self.latency_monitor,
            rate_limiter=self.rate_limiter,
            timeout_seconds=self.settings.REQUEST_TIMEOUT_SECONDS,
            max_retries=self.settings.MAX_RETRIES,
            default_interval_ms=self.settings.DEFAULT_RATE_LIMIT_INTERVAL_MS,
            client=self.http_client,
        )
        return DynamicProvider(
            config,
            executor,
            cache=self.cache,
            decryptor=self.decryptor,
            currency=self.currency,
            store=self.store,
            optimizer=PriceOptimizer(),
            cache_ttls={
                'countries': self.settings.CACHE_TTL_COUNTRIES,
                'services': self.settings.CACHE_TTL_SERVICES,
                'prices': self.settings.CACHE_TTL_PRICES,
            },
            status_batch_concurrency=self.settings.STATUS_BATCH_CONCURRENCY,
        )

    async def get_provider(self, name: str) -> DynamicProvider:
        """
        Engine for a provider.

        Engines are cached and rebuilt from a refreshed store once they are
        older than PROVIDER_REFRESH_SECONDS, so edited records and rotated
        credentials take effect without a restart.

        Raises:
            ConfigurationError: unknown or inactive provider, or an invalid record
        """
        cached = self._providers.get(name)
        if cached is not None:
            provider, built_at = cached
            max_age = self.settings.PROVIDER_REFRESH_SECONDS
            if not max_age or time.monotonic() - built_at < max_age:
                return provider
            logger.info(f"Provider engine for {name} expired, reloading record", extra={'provider': name})
            self._providers.pop(name, None)
            await self.store.refresh()

        record = await self.store.get(name)
        if record is None:
            raise ConfigurationError("provider", f"Unknown provider: {name}", provider=name)

        try:
            config = ProviderConfig.model_validate(record)
        except ValueError as e:
            raise ConfigurationError("provider", f"Invalid configuration: {e}", provider=name)
        if not config.is_active:
            raise ConfigurationError("provider", f"Provider {name} is inactive", provider=name)

        provider = self.build_provider(config)
        self._providers[name] = (provider, time.monotonic())
        logger.info(f"DynamicProvider created for {name}", extra={'provider': name})
        return provider

    def evict_provider(self, name: str) -> bool:
        """Drop a cached engine; the next get_provider builds a new one"""
        return self._providers.pop(name, None) is not None

    async def reload_provider(self, name: str) -> DynamicProvider:
        """Re-read provider records and rebuild the engine for ``name``"""
        await self.store.refresh()
        self.evict_provider(name)
        return await self.get_provider(name)

    async def list_providers(self) -> List[ProviderConfig]:
        configs = []
        for record in await self.store.list_active():
            try:
                configs.append(ProviderConfig.model_validate(record))
            except ValueError as e:
                logger.warning(f"Skipping invalid provider record {record.get('name')}: {e}")
        return configs

    async def close(self):
        """Close all managed services and clean up resources."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
            logger.info("Closed http_client")

        for service_name, service in (("rate_limiter", self._rate_limiter), ("cache", self._cache)):
            if service is not None:
                await service.close()
                logger.info(f"Closed {service_name}")

        self._providers.clear()
        logger.info("ServiceContainer closed all managed services")


# Global container instance (initialized at startup)
_service_container: Optional[ServiceContainer] = None


def get_service_container() -> ServiceContainer:
    """Get the global service container instance."""
    if _service_container is None:
        raise RuntimeError("Service container not initialized. Call init_service_container() first.")
    return _service_container


def init_service_container(settings: Settings, store: Optional[ProviderConfigStore] = None) -> ServiceContainer:
    """Initialize the global service container."""
    global _service_container
    _service_container = ServiceContainer(settings, store=store)
    logger.info("Service container initialized successfully")
    return _service_container


async def close_service_container():
    """Close the global service container and clean up all resources."""
    global _service_container
    if _service_container:
        await _service_container.close()
        _service_container = None
        logger.info("Service container closed and reset")

