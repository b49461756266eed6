"""Tests for the read interface used by the HTTP layer."""

import pytest

from cache import MemoryStorage, TTLCache
from errors import InvalidInput, UnknownMarket
from models import Denomination, Metal, SourceTag
from resolver import SimulatedStrategy
from service import PriceService
from shanghai import ShanghaiEstimator


class Clock:
    def __init__(self, value=0.0):
        self.value = value

    def __call__(self):
        return self.value


@pytest.fixture
def cache_clock():
    return Clock()


@pytest.fixture
def remote(remote_history):
    return remote_history()


@pytest.fixture
def make_service(tmp_path, pricing, remote, cache_clock, clock):
    def _make(strategies):
        service = PriceService(
            pricing,
            cache=TTLCache(MemoryStorage(), ttl_seconds=3600, clock=cache_clock),
            remote_history=remote,
            history_dir=tmp_path / "history",
            extremes_dir=tmp_path / "extremes",
            clock=clock,
        )
        service.resolver.strategies = strategies
        return service
    return _make


class TestCurrentPrice:
    """Cached resolution per metal and market."""

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, make_service, fixed_strategy, cache_clock):
        strategy = fixed_strategy({Metal.silver: 95.0})
        service = make_service([strategy])

        first = await service.get_current_price(Metal.silver, "india")
        cache_clock.value = 3599
        second = await service.get_current_price(Metal.silver, "india")

        assert strategy.calls == 1
        assert second == first

    @pytest.mark.asyncio
    async def test_expired_entry_resolves_again(self, make_service, fixed_strategy, cache_clock):
        strategy = fixed_strategy({Metal.silver: 95.0})
        service = make_service([strategy])

        await service.get_current_price(Metal.silver, "india")
        cache_clock.value = 3600
        await service.get_current_price(Metal.silver, "india")

        assert strategy.calls == 2

    @pytest.mark.asyncio
    async def test_placeholder_prices_not_cached(self, make_service, pricing):
        service = make_service([SimulatedStrategy(pricing)])

        record = await service.get_current_price(Metal.gold, "india")

        assert record.is_simulated
        assert service.cache.get("price:gold:india") is None

    @pytest.mark.asyncio
    async def test_formula_revision_invalidates_cache(self, make_service, fixed_strategy, make_record):
        strategy = fixed_strategy({Metal.silver: 95.0})
        service = make_service([strategy])
        stale = make_record(80.0, formula_version="2023-01-01")
        service.cache.set("price:silver:india", stale.model_dump(mode="json"))

        record = await service.get_current_price(Metal.silver, "india")

        assert record.prices.per_gram == 95.0
        assert strategy.calls == 1

    @pytest.mark.asyncio
    async def test_unreadable_cached_record_is_a_miss(self, make_service, fixed_strategy):
        strategy = fixed_strategy({Metal.silver: 95.0})
        service = make_service([strategy])
        service.cache.set("price:silver:india", {"metal": "platinum"})

        record = await service.get_current_price(Metal.silver, "india")

        assert record.prices.per_gram == 95.0

    @pytest.mark.asyncio
    async def test_unknown_market(self, make_service):
        with pytest.raises(UnknownMarket):
            await make_service([]).get_current_price(Metal.silver, "atlantis")


class TestHistoricalRange:
    """Local ledger first, remote series to fill gaps, simulated last."""

    @pytest.mark.asyncio
    async def test_local_coverage_sufficient(self, make_service, fixed_strategy, seed_history, remote, india):
        service = make_service([fixed_strategy({Metal.silver: 95.0})])
        seed_history(service.history_for(Metal.silver, india), [90.0 + i for i in range(8)])

        history = await service.get_historical_range(Metal.silver, "india", 10)

        assert len(history) == 8
        assert remote.calls == 0

    @pytest.mark.asyncio
    async def test_sparse_local_merged_with_remote(self, make_service, fixed_strategy, seed_history, remote, entry, india):
        service = make_service([fixed_strategy({Metal.silver: 95.0})])
        seed_history(service.history_for(Metal.silver, india), [91.0, 92.0])
        remote.entries = [entry(f"2026-03-{day:02d}", 80.0 + day) for day in range(1, 10)]

        history = await service.get_historical_range(Metal.silver, "india", 10)

        assert remote.calls == 1
        assert [e.date for e in history][-2:] == ["2026-03-08", "2026-03-09"]
        assert history[-1].price_per_gram == 92.0
        assert history[-1].source == "computed"
        assert history[0].source == "remote_series"
        assert len(history) == 9

    @pytest.mark.asyncio
    async def test_simulated_only_when_nothing_else(self, make_service, fixed_strategy):
        service = make_service([fixed_strategy({Metal.silver: 95.0})])

        history = await service.get_historical_range(Metal.silver, "india", 5)

        assert len(history) == 5
        assert all(e.source == "simulated" for e in history)
        assert history[-1].date == "2026-03-10"


class TestDailyRecording:
    """Once-per-day capture of real prices."""

    @pytest.mark.asyncio
    async def test_records_once_per_day(self, make_service, fixed_strategy):
        strategy = fixed_strategy({Metal.silver: 95.0})
        service = make_service([strategy])

        saved, entry = await service.record_daily_price(Metal.silver, "india")
        again, existing = await service.record_daily_price(Metal.silver, "india")

        assert saved and entry.date == "2026-03-10"
        assert not again
        assert existing.price_per_gram == 95.0
        assert strategy.calls == 1

    @pytest.mark.asyncio
    async def test_force_overwrites(self, make_service, fixed_strategy):
        strategy = fixed_strategy({Metal.silver: 95.0})
        service = make_service([strategy])

        await service.record_daily_price(Metal.silver, "india")
        strategy.prices[Metal.silver] = 96.0
        saved, entry = await service.record_daily_price(Metal.silver, "india", force=True)

        assert saved
        assert entry.price_per_gram == 96.0

    @pytest.mark.asyncio
    async def test_placeholder_prices_never_recorded(self, make_service, pricing, india):
        service = make_service([SimulatedStrategy(pricing)])

        saved, entry = await service.record_daily_price(Metal.silver, "india")

        assert not saved and entry is None
        assert service.history_for(Metal.silver, india).count() == 0

    @pytest.mark.asyncio
    async def test_history_file_per_series(self, make_service, fixed_strategy, tmp_path):
        service = make_service([fixed_strategy({Metal.silver: 95.0, Metal.gold: 7000.0})])

        await service.record_daily_price(Metal.silver, "india")
        await service.record_daily_price(Metal.gold, "uae")

        assert (tmp_path / "history" / "silver-inr.json").exists()
        assert (tmp_path / "history" / "gold-aed.json").exists()


class TestDerivedReads:
    @pytest.mark.asyncio
    async def test_variant_prices(self, make_service, fixed_strategy):
        service = make_service([fixed_strategy({Metal.silver: 95.0})])

        variants = await service.get_variant_prices(Metal.silver, "india", sort_by="price")

        assert len(variants) == 20
        assert variants[0].name == "Mumbai"
        assert variants[0].per_gram == 95.0
        assert variants[-1].name == "Thiruvananthapuram"

    @pytest.mark.asyncio
    async def test_gold_silver_ratio(self, make_service, fixed_strategy):
        service = make_service([fixed_strategy({Metal.gold: (7000.0, 2650.0), Metal.silver: (95.0, 31.5)})])

        ratio = await service.get_gold_silver_ratio("india")

        assert ratio.ratio == 84.13
        assert ratio.interpretation == "silver_undervalued"
        assert ratio.currency == "INR"

    @pytest.mark.asyncio
    async def test_ratio_unavailable_without_quotes(self, make_service, fixed_strategy):
        service = make_service([fixed_strategy({Metal.gold: 7000.0, Metal.silver: 95.0})])

        assert await service.get_gold_silver_ratio("india") is None

    @pytest.mark.asyncio
    async def test_last_resort_source(self, make_service):
        record = await make_service([]).get_current_price(Metal.silver, "kuwait")
        assert record.source == SourceTag.fallback
        assert record.currency == "KWD"

    @pytest.mark.asyncio
    async def test_international_market_is_unmarked(self, make_service, fixed_strategy):
        service = make_service([fixed_strategy({Metal.gold: (85.2, 2650.0), Metal.silver: (1.01, 31.5)})])

        combined = await service.get_combined_prices("usd")

        assert combined.currency == "USD"
        assert combined.gold.formula_name == "international"
        assert combined.silver.prices.per_gram == 1.01
        assert combined.ratio.ratio == 84.13


class TestCacheFreshness:
    """Only fresh upstream prices are pinned in the cache."""

    @pytest.mark.asyncio
    async def test_stale_recorded_price_not_cached(self, make_service, fixed_strategy):
        stale = fixed_strategy({Metal.silver: 90.0}, source=SourceTag.last_known, name="last_known", live=False)
        service = make_service([stale])

        record = await service.get_current_price(Metal.silver, "india")
        await service.get_current_price(Metal.silver, "india")

        assert record.source == SourceTag.last_known
        assert service.cache.get("price:silver:india") is None
        assert stale.calls == 2

    @pytest.mark.asyncio
    async def test_stale_recorded_price_not_written_to_history(self, make_service, fixed_strategy, india):
        stale = fixed_strategy({Metal.silver: 90.0}, source=SourceTag.last_known, name="last_known", live=False)
        service = make_service([stale])

        saved, entry = await service.record_daily_price(Metal.silver, "india")

        assert not saved and entry is None
        assert service.history_for(Metal.silver, india).count() == 0

    @pytest.mark.asyncio
    async def test_cached_age(self, make_service, fixed_strategy, cache_clock):
        service = make_service([fixed_strategy({Metal.silver: 95.0})])
        assert service.cached_age_seconds(Metal.silver, "india") is None

        await service.get_current_price(Metal.silver, "india")
        cache_clock.value = 120

        assert service.cached_age_seconds(Metal.silver, "india") == 120


class TestWeightValuation:
    @pytest.mark.asyncio
    async def test_tola_valued_at_purity_grade(self, make_service, fixed_strategy):
        service = make_service([fixed_strategy({Metal.gold: 7000.0})])

        valuation = await service.value_weight(Metal.gold, "india", 1, Denomination.tola, Denomination.gram, purity="22K")

        assert valuation.converted_amount == 11.6638
        assert valuation.purity == "22K"
        assert valuation.price_per_gram < 7000.0
        assert valuation.value == round(11.6638 * valuation.price_per_gram, 2)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -2.0])
    async def test_non_positive_amount_rejected(self, make_service, fixed_strategy, amount):
        strategy = fixed_strategy({Metal.gold: 7000.0})
        service = make_service([strategy])

        with pytest.raises(InvalidInput) as excinfo:
            await service.value_weight(Metal.gold, "india", amount, Denomination.gram, Denomination.tola)

        assert excinfo.value.field == "amount"
        assert strategy.calls == 0

    @pytest.mark.asyncio
    async def test_unknown_purity_rejected(self, make_service, fixed_strategy):
        service = make_service([fixed_strategy({Metal.silver: 95.0})])

        with pytest.raises(InvalidInput) as excinfo:
            await service.value_weight(Metal.silver, "india", 1, Denomination.gram, Denomination.gram, purity="9K")

        assert excinfo.value.field == "purity"


class TestShanghai:
    @pytest.mark.asyncio
    async def test_estimate_is_cached(self, make_service, static_adapter, india, clock):
        futures = static_adapter({"SI=F": 30.0})
        rates = static_adapter({"USD/CNY": 7.2, "USD/INR": 85.0})
        service = make_service([])
        service.shanghai = ShanghaiEstimator(futures, rates, india_market=india, clock=clock)

        first = await service.get_shanghai_price()
        second = await service.get_shanghai_price()

        assert first.usd_cny == 7.2
        assert second == first
        assert futures.calls == ["SI=F"]

    @pytest.mark.asyncio
    async def test_missing_rate_is_unavailable(self, make_service, static_adapter, clock):
        service = make_service([])
        service.shanghai = ShanghaiEstimator(static_adapter({"SI=F": 30.0}), static_adapter({"USD/CNY": 7.2}), clock=clock)

        assert await service.get_shanghai_price() is None
        assert service.cache.get("shanghai:silver") is None
