"""Shared fixtures for the metal rates test suite."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from calculator import build_unit_prices
from config import DEFAULT_PRICING, PricingConfig
from history import HistoricalPriceStore
from models import HistoricalEntry, Metal, PriceRecord, Quote, SourceTag
from resolver import Resolution, Strategy
from sources import utc_now

# 12:00 in India
FIXED_NOW = datetime(2026, 3, 10, 6, 30, tzinfo=timezone.utc)


class StaticAdapter:
    """Quote adapter double answering from a dict and recording every instrument asked for."""

    def __init__(self, values=None, provider_name="static"):
        self.values = values or {}
        self.provider_name = provider_name
        self.calls = []

    async def fetch(self, instrument):
        self.calls.append(instrument)
        value = self.values.get(instrument)
        if value is None:
            return None
        return Quote(instrument=instrument, value=value, unit="test", provider=self.provider_name, timestamp=utc_now())


class FixedStrategy(Strategy):
    """Strategy double returning a fixed per-gram price per metal."""

    def __init__(self, prices, source=SourceTag.computed, name="computed", live=True, simulated=False):
        self.prices = prices
        self.source = source
        self.name = name
        self.live = live
        self.simulated = simulated
        self.calls = 0

    async def attempt(self, request):
        self.calls += 1
        value = self.prices.get(request.metal)
        if value is None:
            return None
        per_gram, international = value if isinstance(value, tuple) else (value, None)
        return Resolution(
            price_per_gram=per_gram,
            source=self.source,
            strategy=self.name,
            formula_name=request.market.formula.name,
            formula_version=request.market.formula.version,
            live=self.live,
            simulated=self.simulated,
            international_price=international,
        )


class StaticRemoteHistory:
    """RemoteHistory double serving a canned series."""

    def __init__(self, entries=None):
        self.entries = entries or []
        self.calls = 0

    async def fetch(self, symbol, market, days):
        self.calls += 1
        return list(self.entries)[-days:]


def history_entry(day, price, source="remote_series"):
    return HistoricalEntry(
        date=day,
        price_per_gram=price,
        price_per_kilogram=round(price * 1000, 2),
        source=source,
        recorded_at=FIXED_NOW,
    )


@pytest.fixture
def pricing():
    return PricingConfig(json.loads(json.dumps(DEFAULT_PRICING)))


@pytest.fixture
def india(pricing):
    return pricing.get_market("india")


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def make_record():
    def _make(per_gram=100.0, timestamp=FIXED_NOW, metal=Metal.silver, source=SourceTag.computed,
              is_simulated=False, formula_version="2024-07-23"):
        return PriceRecord(
            metal=metal,
            market="india",
            currency="INR",
            purity="999" if metal == Metal.silver else "24K",
            prices=build_unit_prices(per_gram),
            high_24h=per_gram,
            low_24h=per_gram,
            source=source,
            strategy=source.value,
            is_simulated=is_simulated,
            formula_name="india-bullion",
            formula_version=formula_version,
            international_price=31.0,
            exchange_rate=85.0,
            timestamp=timestamp,
        )
    return _make


@pytest.fixture
def store(tmp_path, clock):
    return HistoricalPriceStore(tmp_path / "silver-inr.json", series="silver-inr", utc_offset_minutes=330, clock=clock)


@pytest.fixture
def seed_history(make_record):
    """Record `prices` into a store on consecutive days ending `days_back_to` days ago."""
    def _seed(target, prices, days_back_to=1):
        for offset, price in enumerate(reversed(prices)):
            target.record_today(make_record(price, timestamp=FIXED_NOW - timedelta(days=days_back_to + offset)))
    return _seed


@pytest.fixture
def static_adapter():
    return StaticAdapter


@pytest.fixture
def fixed_strategy():
    return FixedStrategy


@pytest.fixture
def remote_history():
    return StaticRemoteHistory


@pytest.fixture
def entry():
    return history_entry


@pytest.fixture
def now():
    return FIXED_NOW
