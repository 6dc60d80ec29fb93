"""
Price normalization into internal points.

All FX rates are expressed as "currency units per 1 USD"; every conversion
goes through USD. Provider prices are normalized according to the
provider's normalization mode, then expressed in points at ``points_rate``.
"""

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Dict, Optional

from .interfaces import Cache
from .models.provider_config import NormalizationMode, ProviderConfig

logger = logging.getLogger(__name__)

USD = "USD"
POINTS = "POINTS"
FX_CACHE_KEY = "cache:fx:rates"


class CurrencyService:
    """
    USD-anchored converter with a periodically refreshed rate table.

    Args:
        fx_rates: Static rates (units per USD) used until a refresh succeeds
        points_rate: Internal points per 1 USD
        rate_loader: Optional coroutine returning fresh rates
        cache: Optional shared cache for loaded rates
        cache_ttl_seconds: Refresh interval
    """

    def __init__(
        self,
        fx_rates: Optional[Dict[str, float]] = None,
        points_rate: float = 100.0,
        rate_loader: Optional[Callable[[], Awaitable[Dict[str, float]]]] = None,
        cache: Optional[Cache] = None,
        cache_ttl_seconds: int = 600,
    ):
        self.points_rate = points_rate
        self.rate_loader = rate_loader
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds
        self._rates: Dict[str, float] = {USD: 1.0}
        self._rates.update({code.upper(): float(rate) for code, rate in (fx_rates or {}).items()})
        self._refreshed_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def rate_for(self, currency: str) -> float:
        """Units of ``currency`` per 1 USD (1.0 when unknown)"""
        rate = self._rates.get((currency or USD).upper())
        if not rate:
            logger.debug(f"No FX rate for {currency}, assuming parity with USD")
            return 1.0
        return rate

    async def ensure_rates(self) -> None:
        """Refresh the rate table when a loader is configured and the TTL has lapsed"""
        if self.rate_loader is None:
            return
        async with self._lock:
            if self._refreshed_at is not None and time.monotonic() - self._refreshed_at < self.cache_ttl_seconds:
                return
            if self.cache is not None:
                rates = await self.cache.get_or_load(FX_CACHE_KEY, self.rate_loader, self.cache_ttl_seconds)
            else:
                rates = await self.rate_loader()
            self._rates.update({code.upper(): float(rate) for code, rate in rates.items() if rate})
            self._refreshed_at = time.monotonic()
            logger.info(f"FX rates refreshed ({len(self._rates)} currencies)")

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        from_currency = (from_currency or USD).upper()
        to_currency = (to_currency or USD).upper()
        if from_currency == to_currency:
            return amount

        if from_currency == USD:
            usd = amount
        elif from_currency == POINTS:
            usd = amount / self.points_rate
        else:
            usd = amount / self.rate_for(from_currency)

        if to_currency == USD:
            return usd
        if to_currency == POINTS:
            return usd * self.points_rate
        return usd * self.rate_for(to_currency)

    def effective_rate(self, config: ProviderConfig) -> float:
        """Provider units per 1 USD under the provider's normalization mode"""
        mode = config.normalization_mode

        if mode is NormalizationMode.MANUAL:
            return config.normalization_rate or 1.0

        if mode is NormalizationMode.SMART_AUTO:
            if config.deposit_spent and config.deposit_received and config.deposit_spent > 0:
                spent_usd = self.convert(config.deposit_spent, config.deposit_currency, USD)
                return config.deposit_received / (spent_usd or 1.0)
            logger.debug(f"{config.name}: deposit figures missing, SMART_AUTO falls back to FX rate")

        return self.rate_for(config.currency)

    def normalize(self, amount: float, config: ProviderConfig) -> float:
        """Raw provider price -> internal points"""
        rate = self.effective_rate(config) or 1.0
        return (amount / rate) * self.points_rate

    def denormalize(self, points: float, config: ProviderConfig) -> float:
        """Internal points -> raw provider price"""
        rate = self.effective_rate(config) or 1.0
        return (points / self.points_rate) * rate

    def final_price(self, amount: float, config: ProviderConfig) -> float:
        """User-facing price in points: multiplier and USD markup applied, rounded up to 0.01"""
        points = self.normalize(amount, config) * config.price_multiplier
        points += self.convert(config.fixed_markup, USD, POINTS)
        # round() first so binary noise (e.g. 1.1 * 100) does not push ceil up a cent
        return math.ceil(round(points * 100, 6)) / 100
