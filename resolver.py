"""
Source fallback resolver.

An ordered list of strategies is tried until one yields a complete price.
Partial data from one strategy is never combined with another's. When every
strategy comes back empty the resolver still returns a record, built from
the static last-resort table and tagged as such.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from calculator import CannotCompute, build_purity_prices, build_unit_prices, estimate_range, localize
from config import FUTURES_SYMBOLS, ISO_CODES, PURITIES, Market, PricingConfig
from errors import AllStrategiesExhausted
from history import DailyExtremesTracker, HistoricalPriceStore, compute_change, local_date
from models import Metal, PriceRecord, Quote, ResolverState, SourceTag, UnitPrices
from sources import (
    FrankfurterRateAdapter,
    GoldApiAdapter,
    MetalpriceApiAdapter,
    QuoteAdapter,
    RemoteHistory,
    YahooFuturesAdapter,
)

REMOTE_CHANGE_WINDOW_DAYS = 7


@dataclass(frozen=True)
class PriceRequest:
    metal: Metal
    market: Market

    @property
    def key(self) -> str:
        return f"{self.metal.value}:{self.market.key}"


@dataclass(frozen=True)
class Resolution:
    """What a strategy produced: an unrounded per-gram price and its provenance."""

    price_per_gram: float
    source: SourceTag
    strategy: str
    formula_name: str
    formula_version: str
    live: bool = True
    simulated: bool = False
    international_price: Optional[float] = None
    exchange_rate: Optional[float] = None
    quotes: tuple[Quote, ...] = ()


# ══════════════════════════════════════════════════════════════════════════════
# Strategies
# ══════════════════════════════════════════════════════════════════════════════

class Strategy(ABC):
    name: str = "strategy"
    source: SourceTag

    @abstractmethod
    async def attempt(self, request: PriceRequest) -> Optional[Resolution]:
        raise NotImplementedError


class ComputedStrategy(Strategy):
    """Futures quote x FX rate, marked up with the market formula."""

    name = "computed"
    source = SourceTag.computed

    def __init__(self, futures: QuoteAdapter, rates: QuoteAdapter):
        self.futures = futures
        self.rates = rates

    async def attempt(self, request: PriceRequest) -> Optional[Resolution]:
        market = request.market
        quote, rate = await asyncio.gather(
            self.futures.fetch(FUTURES_SYMBOLS[request.metal]),
            self.rates.fetch(f"USD/{market.currency}"),
        )
        if quote is None or rate is None:
            logging.info(f"{self.name}: missing data for {request.key} (quote={quote is not None}, rate={rate is not None})")
            return None

        per_gram = localize(quote.value, rate.value, market.formula)
        if isinstance(per_gram, CannotCompute):
            logging.warning(f"{self.name}: cannot compute {request.key}: {per_gram.field} {per_gram.reason}")
            return None

        logging.info(
            f"{self.name}: {request.metal.value} ${quote.value}/oz x {rate.value} {market.currency} "
            f"-> {per_gram:.2f}/gram ({market.formula.name}@{market.formula.version})"
        )
        return Resolution(
            price_per_gram=per_gram,
            source=self.source,
            strategy=self.name,
            formula_name=market.formula.name,
            formula_version=market.formula.version,
            international_price=quote.value,
            exchange_rate=rate.value,
            quotes=(quote, rate),
        )


class AggregatorStrategy(Strategy):
    """
    A paid aggregator quoting local currency per troy ounce.

    The quote runs through the same markup as the computed path so every
    record reflects the market formula, whichever strategy produced it.
    """

    def __init__(self, adapter: QuoteAdapter, source: SourceTag):
        self.adapter = adapter
        self.source = source
        self.name = f"aggregator:{adapter.provider_name}"

    async def attempt(self, request: PriceRequest) -> Optional[Resolution]:
        market = request.market
        quote = await self.adapter.fetch(f"{ISO_CODES[request.metal]}/{market.currency}")
        if quote is None:
            return None

        per_gram = localize(quote.value, 1.0, market.formula)
        if isinstance(per_gram, CannotCompute):
            logging.warning(f"{self.name}: cannot compute {request.key}: {per_gram.field} {per_gram.reason}")
            return None

        return Resolution(
            price_per_gram=per_gram,
            source=self.source,
            strategy=self.name,
            formula_name=market.formula.name,
            formula_version=market.formula.version,
            quotes=(quote,),
        )


class LastKnownStrategy(Strategy):
    """Most recent locally recorded price: stale, but real."""

    name = "last_known"
    source = SourceTag.last_known

    def __init__(self, history_for: Callable[[Metal, Market], Optional[HistoricalPriceStore]]):
        self.history_for = history_for

    async def attempt(self, request: PriceRequest) -> Optional[Resolution]:
        store = self.history_for(request.metal, request.market)
        entry = store.latest_entry() if store is not None else None
        if entry is None:
            return None

        logging.warning(f"{self.name}: serving {request.key} from {entry.date} ({entry.source})")
        return Resolution(
            price_per_gram=entry.price_per_gram,
            source=self.source,
            strategy=self.name,
            formula_name=request.market.formula.name,
            formula_version=entry.formula_version or request.market.formula.version,
            live=False,
            international_price=entry.international_price,
            exchange_rate=entry.exchange_rate,
        )


class SimulatedStrategy(Strategy):
    """Configured placeholder quotes, for demonstration when nothing else works."""

    name = "simulated"
    source = SourceTag.simulated

    def __init__(self, pricing: PricingConfig):
        self.pricing = pricing

    async def attempt(self, request: PriceRequest) -> Optional[Resolution]:
        resolution = _from_table(self.pricing.simulated, request, self.source, self.name)
        if resolution is not None:
            logging.warning(f"{self.name}: serving placeholder price for {request.key}")
        return resolution


def _from_table(table: dict, request: PriceRequest, source: SourceTag, strategy: str) -> Optional[Resolution]:
    market = request.market
    usd_per_oz = table.get("quotes_usd_per_oz", {}).get(request.metal.value)
    rate = table.get("exchange_rates", {}).get(market.currency)
    if usd_per_oz is None or rate is None:
        return None
    per_gram = localize(usd_per_oz, rate, market.formula)
    if isinstance(per_gram, CannotCompute):
        return None
    return Resolution(
        price_per_gram=per_gram,
        source=source,
        strategy=strategy,
        formula_name=market.formula.name,
        formula_version=market.formula.version,
        live=False,
        simulated=True,
        international_price=usd_per_oz,
        exchange_rate=rate,
    )


# ══════════════════════════════════════════════════════════════════════════════
# Resolver
# ══════════════════════════════════════════════════════════════════════════════

class FallbackResolver:
    """
    Tries strategies in order and turns the winner into a PriceRecord.

    Holds no per-call state beyond the informational `states` map, so
    concurrent resolutions are independent (and may each hit upstream).
    """

    def __init__(
        self,
        strategies: list[Strategy],
        pricing: PricingConfig,
        history_for: Optional[Callable[[Metal, Market], Optional[HistoricalPriceStore]]] = None,
        extremes_for: Optional[Callable[[Metal, Market], Optional[DailyExtremesTracker]]] = None,
        remote_history: Optional[RemoteHistory] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.strategies = strategies
        self.pricing = pricing
        self.history_for = history_for
        self.extremes_for = extremes_for
        self.remote_history = remote_history
        self._clock = clock
        self.states: dict[str, ResolverState] = {}
        self.state = ResolverState.idle

    def _set_state(self, request: PriceRequest, state: ResolverState) -> None:
        self.states[request.key] = state
        self.state = state

    async def _run_chain(self, request: PriceRequest) -> tuple[Resolution, UnitPrices]:
        attempted = []
        for strategy in self.strategies:
            attempted.append(strategy.name)
            try:
                resolution = await strategy.attempt(request)
            except Exception as e:
                logging.error(f"Strategy {strategy.name} failed for {request.key}: {str(e)}")
                continue
            if resolution is None:
                continue
            prices = build_unit_prices(resolution.price_per_gram)
            if isinstance(prices, CannotCompute):
                logging.warning(f"Strategy {strategy.name} produced an unusable price for {request.key}: {prices.reason}")
                continue
            logging.info(f"Resolved {request.key} via {strategy.name}")
            return resolution, prices
        raise AllStrategiesExhausted(attempted)

    def _last_resort(self, request: PriceRequest) -> tuple[Resolution, UnitPrices]:
        resolution = _from_table(self.pricing.last_resort, request, SourceTag.fallback, "last_resort")
        # PricingConfig guarantees a quote for every metal and a rate for every market
        if resolution is None:
            raise ValueError(f"Last-resort table cannot price {request.key}")
        return resolution, build_unit_prices(resolution.price_per_gram)

    async def resolve(self, metal: Metal, market: Market) -> PriceRecord:
        request = PriceRequest(metal=metal, market=market)
        self._set_state(request, ResolverState.resolving)

        try:
            resolution, prices = await self._run_chain(request)
        except AllStrategiesExhausted as e:
            logging.error(f"{e}; substituting last-resort value for {request.key}")
            resolution, prices = self._last_resort(request)

        record = await self._build_record(request, resolution, prices)
        self._set_state(request, ResolverState.resolved if resolution.live else ResolverState.degraded)
        return record

    async def _build_record(self, request: PriceRequest, resolution: Resolution, prices: UnitPrices) -> PriceRecord:
        metal, market = request.metal, request.market
        now = self._clock()
        today = local_date(now, market.utc_offset_minutes)

        store = self.history_for(metal, market) if self.history_for else None
        remote = None
        prior_day_missing = store is None or store.get_entry(today - timedelta(days=1)) is None
        if prior_day_missing and self.remote_history is not None:
            remote = await self.remote_history.fetch(FUTURES_SYMBOLS[metal], market, REMOTE_CHANGE_WINDOW_DAYS)
        change = compute_change(prices.per_gram, today, store, remote)

        high, low = estimate_range(prices.per_gram)
        today_open = None
        tracker = self.extremes_for(metal, market) if self.extremes_for else None
        if tracker is not None and resolution.live:
            extremes = tracker.update(prices.per_gram)
            today_open = extremes.open
            if extremes.high > extremes.low:
                high, low = extremes.high, extremes.low

        return PriceRecord(
            metal=metal,
            market=market.key,
            currency=market.currency,
            purity=next(iter(PURITIES[metal])),
            prices=prices,
            purity_prices=build_purity_prices(resolution.price_per_gram, PURITIES[metal]),
            change_24h=change,
            high_24h=high,
            low_24h=low,
            today_open=today_open,
            source=resolution.source,
            strategy=resolution.strategy,
            is_simulated=resolution.simulated,
            formula_name=resolution.formula_name,
            formula_version=resolution.formula_version,
            international_price=round(resolution.international_price, 2) if resolution.international_price else None,
            exchange_rate=resolution.exchange_rate,
            timestamp=now,
        )


def build_default_strategies(
    pricing: PricingConfig,
    history_for: Callable[[Metal, Market], Optional[HistoricalPriceStore]],
    allow_simulated: bool = True,
    client=None,
) -> list[Strategy]:
    strategies: list[Strategy] = [
        ComputedStrategy(YahooFuturesAdapter(client=client), FrankfurterRateAdapter(client=client)),
        AggregatorStrategy(MetalpriceApiAdapter(client=client), SourceTag.metalpriceapi),
        AggregatorStrategy(GoldApiAdapter(client=client), SourceTag.goldapi),
        LastKnownStrategy(history_for),
    ]
    if allow_simulated:
        strategies.append(SimulatedStrategy(pricing))
    return strategies
