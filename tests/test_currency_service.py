"""
Test suite for price normalization and operator selection.
"""
from unittest.mock import AsyncMock

import pytest

from provider_engine.currency_service import FX_CACHE_KEY, CurrencyService
from provider_engine.models.canonical import PriceData
from provider_engine.models.provider_config import ProviderConfig
from provider_engine.price_optimizer import PriceOptimizer


def provider(**overrides) -> ProviderConfig:
    record = {"name": "p", "currency": "USD", "normalizationMode": "AUTO"}
    record.update(overrides)
    return ProviderConfig.model_validate(record)


@pytest.fixture
def currency():
    return CurrencyService(fx_rates={"RUB": 90, "EUR": 0.9}, points_rate=100)


class TestNormalization:

    def test_manual_rate(self, currency, acme_config):
        assert currency.effective_rate(acme_config) == 90
        assert currency.normalize(18, acme_config) == pytest.approx(20.0)
        assert currency.denormalize(20, acme_config) == pytest.approx(18.0)

    def test_manual_without_rate_uses_parity(self, currency):
        config = provider(normalizationMode="MANUAL", currency="RUB")
        assert currency.effective_rate(config) == 1.0

    def test_smart_auto_from_deposit(self, currency):
        config = provider(
            normalizationMode="SMART_AUTO", currency="RUB",
            depositSpent=100, depositReceived=9000, depositCurrency="EUR",
        )
        # 100 EUR = 111.11 USD bought 9000 provider units
        assert currency.effective_rate(config) == pytest.approx(81.0)
        assert currency.normalize(81, config) == pytest.approx(100.0)

    def test_smart_auto_falls_back_to_fx(self, currency):
        config = provider(normalizationMode="SMART_AUTO", currency="RUB")
        assert currency.effective_rate(config) == 90

    def test_auto_with_unknown_currency(self, currency):
        config = provider(currency="XYZ")
        assert currency.normalize(5, config) == pytest.approx(500.0)

    def test_round_trip(self, currency, acme_config):
        for amount in (0.5, 18, 123.45):
            points = currency.normalize(amount, acme_config)
            assert currency.denormalize(points, acme_config) == pytest.approx(amount)


class TestFinalPrice:

    def test_multiplier_and_markup(self, currency, acme_config):
        # 18 RUB -> 20 pts, x1.2 -> 24 pts, +0.10 USD markup -> 34 pts
        assert currency.final_price(18, acme_config) == 34.0

    def test_rounds_up_to_cent(self, currency):
        assert currency.final_price(0.240001, provider()) == 24.01

    def test_binary_noise_does_not_round_up(self, currency):
        assert currency.final_price(0.011, provider()) == 1.1


class TestConversion:

    def test_convert_via_usd(self, currency):
        assert currency.convert(1, "USD", "POINTS") == 100
        assert currency.convert(100, "POINTS", "RUB") == pytest.approx(90)
        assert currency.convert(180, "rub", "EUR") == pytest.approx(1.8)
        assert currency.convert(7, "EUR", "EUR") == 7

    def test_unknown_rate_is_parity(self, currency):
        assert currency.rate_for("XYZ") == 1.0
        assert currency.rate_for(None) == 1.0


@pytest.mark.asyncio
class TestRateRefresh:

    async def test_loader_runs_once_per_ttl(self):
        loader = AsyncMock(return_value={"RUB": 95})
        currency = CurrencyService(fx_rates={"RUB": 90}, rate_loader=loader, cache_ttl_seconds=600)

        await currency.ensure_rates()
        await currency.ensure_rates()

        loader.assert_awaited_once()
        assert currency.rate_for("RUB") == 95

    async def test_loaded_rates_go_through_cache(self):
        cache = AsyncMock()
        cache.get_or_load.return_value = {"rub": 80}
        loader = AsyncMock()
        currency = CurrencyService(rate_loader=loader, cache=cache, cache_ttl_seconds=600)

        await currency.ensure_rates()

        cache.get_or_load.assert_awaited_once_with(FX_CACHE_KEY, loader, 600)
        assert currency.rate_for("RUB") == 80

    async def test_no_loader_is_noop(self):
        currency = CurrencyService(fx_rates={"RUB": 90})
        await currency.ensure_rates()
        assert currency.rate_for("RUB") == 90


class TestPriceOptimizer:

    @pytest.fixture
    def options(self):
        return [
            PriceData(country="ru", service="tg", cost=10, count=100, operator="a"),
            PriceData(country="ru", service="tg", cost=8, count=0, operator="b"),
            PriceData(country="ru", service="tg", cost=12, count=500, operator="c"),
        ]

    def test_out_of_stock_options_are_excluded(self, options):
        best = PriceOptimizer().select_best(options)
        assert best.operator == "a"

    def test_ranking_scores(self, options):
        ranked = PriceOptimizer().rank_options(options)
        assert [s.option.operator for s in ranked] == ["a", "c"]
        assert ranked[0].score == pytest.approx(0.6)
        assert ranked[1].score == pytest.approx(0.4)

    def test_all_out_of_stock_ranks_everything(self):
        options = [
            PriceData(country="ru", service="tg", cost=8, count=0, operator="b"),
            PriceData(country="ru", service="tg", cost=9, count=0, operator="d"),
        ]
        assert PriceOptimizer().select_best(options).operator == "b"

    def test_weights_are_normalized(self):
        optimizer = PriceOptimizer(cost_weight=3, stock_weight=1)
        assert optimizer.cost_weight == pytest.approx(0.75)
        assert optimizer.stock_weight == pytest.approx(0.25)

    def test_best_per_group_keeps_first_seen_order(self, options):
        others = [
            PriceData(country="kz", service="wa", cost=5, count=3, operator="x"),
            PriceData(country="kz", service="wa", cost=4, count=3, operator="y"),
        ]
        best = PriceOptimizer().best_per_group(others + options)
        assert [(p.country, p.operator) for p in best] == [("kz", "y"), ("ru", "a")]

    def test_empty(self):
        assert PriceOptimizer().select_best([]) is None
        assert PriceOptimizer().best_per_group([]) == []
