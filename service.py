"""
Read interface consumed by the HTTP layer.

Presentation code asks for "the current price" or "a historical range" and
never touches adapters or strategies directly.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import ValidationError

from cache import NullCache, PriceCache
from calculator import GRAMS_PER_UNIT, CannotCompute, convert_amount, gold_silver_ratio
from config import (
    ALLOW_SIMULATED_PRICES,
    EXTREMES_DIR,
    FUTURES_SYMBOLS,
    HISTORY_COVERAGE_THRESHOLD,
    HISTORY_DIR,
    Market,
    PricingConfig,
)
from errors import InvalidInput, UnknownMarket
from history import DailyExtremesTracker, HistoricalPriceStore, merge_series, simulate_series
from models import (
    CombinedPrices,
    Denomination,
    GoldSilverRatio,
    HistoricalEntry,
    Metal,
    PriceRecord,
    ShanghaiSilverPrice,
    SourceTag,
    VariantPrice,
    WeightValuation,
)
from resolver import FallbackResolver, build_default_strategies
from shanghai import ShanghaiEstimator
from sources import FrankfurterRateAdapter, RemoteHistory, YahooFuturesAdapter, YahooHistoryAdapter
from variants import expand

SHANGHAI_CACHE_KEY = "shanghai:silver"


def is_live(record: PriceRecord) -> bool:
    """Fresh upstream data, as opposed to a placeholder or a stale recorded price."""
    return not record.is_simulated and record.source != SourceTag.last_known


class PriceService:
    def __init__(
        self,
        pricing: PricingConfig,
        resolver: Optional[FallbackResolver] = None,
        cache: Optional[PriceCache] = None,
        remote_history: Optional[RemoteHistory] = None,
        shanghai: Optional[ShanghaiEstimator] = None,
        history_dir=HISTORY_DIR,
        extremes_dir=EXTREMES_DIR,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.pricing = pricing
        self.cache = cache or NullCache()
        self._history_dir = history_dir
        self._extremes_dir = extremes_dir
        self._clock = clock
        self._stores: dict[str, HistoricalPriceStore] = {}
        self._trackers: dict[str, DailyExtremesTracker] = {}
        self.remote_history = remote_history or RemoteHistory(YahooHistoryAdapter(), FrankfurterRateAdapter())
        self.resolver = resolver or FallbackResolver(
            build_default_strategies(pricing, self.history_for, allow_simulated=ALLOW_SIMULATED_PRICES),
            pricing,
            history_for=self.history_for,
            extremes_for=self.extremes_for,
            remote_history=self.remote_history,
            clock=clock,
        )
        self.shanghai = shanghai or ShanghaiEstimator(
            YahooFuturesAdapter(),
            FrankfurterRateAdapter(),
            india_market=pricing.get_market("india"),
            clock=clock,
        )

    # ──────────────────────────────────────────────────────────────────────────
    # Wiring
    # ──────────────────────────────────────────────────────────────────────────

    def market(self, key: str) -> Market:
        market = self.pricing.get_market(key)
        if market is None:
            raise UnknownMarket(f"Market '{key}' not supported. Use one of: {sorted(self.pricing.markets)}")
        return market

    @staticmethod
    def series_key(metal: Metal, market: Market) -> str:
        return f"{metal.value}-{market.currency.lower()}"

    def history_for(self, metal: Metal, market: Market) -> HistoricalPriceStore:
        key = self.series_key(metal, market)
        if key not in self._stores:
            self._stores[key] = HistoricalPriceStore(
                self._history_dir / f"{key}.json",
                series=key,
                utc_offset_minutes=market.utc_offset_minutes,
                clock=self._clock,
            )
        return self._stores[key]

    def extremes_for(self, metal: Metal, market: Market) -> DailyExtremesTracker:
        key = self.series_key(metal, market)
        if key not in self._trackers:
            self._trackers[key] = DailyExtremesTracker(
                self._extremes_dir / f"{key}.json",
                utc_offset_minutes=market.utc_offset_minutes,
                clock=self._clock,
            )
        return self._trackers[key]

    # ──────────────────────────────────────────────────────────────────────────
    # Read operations
    # ──────────────────────────────────────────────────────────────────────────

    @staticmethod
    def price_cache_key(metal: Metal, market: Market) -> str:
        return f"price:{metal.value}:{market.key}"

    def cached_age_seconds(self, metal: Metal, market_key: str) -> Optional[int]:
        return self.cache.age_seconds(self.price_cache_key(metal, self.market(market_key)))

    async def get_current_price(self, metal: Metal, market_key: str) -> PriceRecord:
        market = self.market(market_key)
        cache_key = self.price_cache_key(metal, market)

        cached = self.cache.get(cache_key)
        if cached is not None:
            try:
                record = PriceRecord.model_validate(cached)
            except ValidationError:
                logging.warning(f"Cached record for {cache_key} failed validation; refreshing")
            else:
                # A formula revision invalidates anything priced under the old one
                if record.formula_version == market.formula.version:
                    return record

        record = await self.resolver.resolve(metal, market)
        # Placeholder and stale values are not worth pinning for a whole TTL
        if is_live(record):
            self.cache.set(cache_key, record.model_dump(mode="json"))
        return record

    async def get_historical_range(self, metal: Metal, market_key: str, days: int) -> list[HistoricalEntry]:
        """
        Daily prices for the last `days` days, oldest first.

        Local entries are used as-is when they cover enough of the range;
        otherwise the remote series fills the gaps (local still wins per day).
        A simulated series is returned only when there is nothing else.
        """
        market = self.market(market_key)
        store = self.history_for(metal, market)
        local = store.get_range(days)

        if len(local) >= days * HISTORY_COVERAGE_THRESHOLD:
            return local

        remote = await self.remote_history.fetch(FUTURES_SYMBOLS[metal], market, days)
        merged = merge_series(local, remote)[-days:] if remote else local
        if merged:
            return merged

        logging.warning(f"No history for {metal.value}/{market.key}; returning a simulated series")
        current = await self.get_current_price(metal, market_key)
        return simulate_series(current.prices.per_gram, days, store.today())

    async def get_variant_prices(self, metal: Metal, market_key: str, sort_by: Optional[str] = None) -> list[VariantPrice]:
        market = self.market(market_key)
        record = await self.get_current_price(metal, market_key)
        return expand(record, self.pricing.get_variants(market.key, metal), sort_by=sort_by)

    async def record_daily_price(self, metal: Metal, market_key: str, force: bool = False) -> tuple[bool, Optional[HistoricalEntry]]:
        """Capture today's price once per day. Placeholder prices are never recorded."""
        market = self.market(market_key)
        store = self.history_for(metal, market)
        if store.is_recorded() and not force:
            return False, store.get_entry(store.today())

        record = await self.resolver.resolve(metal, market)
        if not is_live(record):
            logging.warning(f"Not recording {record.source.value} price for {metal.value}/{market.key}")
            return False, None
        return True, store.record_today(record)

    async def get_gold_silver_ratio(self, market_key: str) -> Optional[GoldSilverRatio]:
        gold, silver = await asyncio.gather(
            self.get_current_price(Metal.gold, market_key),
            self.get_current_price(Metal.silver, market_key),
        )
        return self._ratio(gold, silver)

    def _ratio(self, gold: PriceRecord, silver: PriceRecord) -> Optional[GoldSilverRatio]:
        if not gold.international_price or not silver.international_price:
            return None
        result = gold_silver_ratio(gold.international_price, silver.international_price)
        if isinstance(result, CannotCompute):
            return None
        ratio, interpretation = result
        return GoldSilverRatio(
            ratio=ratio,
            interpretation=interpretation,
            gold_usd_per_oz=gold.international_price,
            silver_usd_per_oz=silver.international_price,
            gold_per_gram=gold.prices.per_gram,
            silver_per_gram=silver.prices.per_gram,
            currency=gold.currency,
            timestamp=self._clock(),
        )

    async def get_combined_prices(self, market_key: str) -> CombinedPrices:
        """Gold and silver together, with the ratio when international quotes exist."""
        market = self.market(market_key)
        gold, silver = await asyncio.gather(
            self.get_current_price(Metal.gold, market_key),
            self.get_current_price(Metal.silver, market_key),
        )
        return CombinedPrices(
            market=market.key,
            currency=market.currency,
            gold=gold,
            silver=silver,
            ratio=self._ratio(gold, silver),
            timestamp=self._clock(),
        )

    async def value_weight(
        self,
        metal: Metal,
        market_key: str,
        amount: float,
        from_unit: Denomination,
        to_unit: Denomination,
        purity: Optional[str] = None,
    ) -> WeightValuation:
        """Convert a weight between units and value it at the current local price."""
        converted = convert_amount(amount, from_unit, to_unit)
        if isinstance(converted, CannotCompute):
            raise converted.as_error()

        record = await self.get_current_price(metal, market_key)
        grade = purity or record.purity
        if grade == record.purity:
            per_gram = record.prices.per_gram
        elif grade in record.purity_prices:
            per_gram = record.purity_prices[grade].per_gram
        else:
            raise InvalidInput("purity", f"'{grade}' not supported for {metal.value}; use one of {[record.purity, *record.purity_prices]}")

        return WeightValuation(
            metal=metal,
            purity=grade,
            amount=amount,
            from_unit=from_unit,
            converted_amount=round(converted, 4),
            to_unit=to_unit,
            value=round(amount * GRAMS_PER_UNIT[from_unit] * per_gram, 2),
            currency=record.currency,
            price_per_gram=per_gram,
            source=record.source,
            is_simulated=record.is_simulated,
        )

    async def get_shanghai_price(self) -> Optional[ShanghaiSilverPrice]:
        cached = self.cache.get(SHANGHAI_CACHE_KEY)
        if cached is not None:
            try:
                return ShanghaiSilverPrice.model_validate(cached)
            except ValidationError:
                logging.warning("Cached Shanghai estimate failed validation; refreshing")

        estimate = await self.shanghai.estimate()
        if estimate is not None:
            self.cache.set(SHANGHAI_CACHE_KEY, estimate.model_dump(mode="json"))
        return estimate
