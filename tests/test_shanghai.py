"""Tests for the Shanghai silver estimate."""

import math
from datetime import datetime, timezone

import pytest

from calculator import localize
from shanghai import ShanghaiEstimator, estimate_shanghai_silver, sge_market_status, shanghai_premium


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestMarketStatus:
    """SGE sessions in Beijing time (UTC+8)."""

    @pytest.mark.parametrize(
        "moment, expected",
        [
            (utc(2026, 3, 10, 2, 0), ("open", "Day Session (Morning)")),
            (utc(2026, 3, 10, 6, 30), ("open", "Day Session (Afternoon)")),
            (utc(2026, 3, 10, 14, 0), ("open", "Night Session")),
            (utc(2026, 3, 10, 17, 0), ("open", "Night Session")),
            (utc(2026, 3, 10, 0, 45), ("pre-market", "Pre-Market (Day)")),
            (utc(2026, 3, 10, 12, 45), ("pre-market", "Pre-Market (Night)")),
            (utc(2026, 3, 10, 4, 0), ("closed", "Between Sessions")),
            (utc(2026, 3, 14, 4, 0), ("closed", "Weekend")),
        ],
    )
    def test_sessions(self, moment, expected):
        assert sge_market_status(moment) == expected


class TestPremium:
    def test_asian_hours_add_to_base(self):
        assert shanghai_premium(utc(2026, 3, 10, 6, 0)) == pytest.approx(0.05 + math.sin(1.8) * 0.01)

    def test_weekend_uses_base(self):
        assert shanghai_premium(utc(2026, 3, 14, 6, 0)) == pytest.approx(0.04 + math.sin(1.8) * 0.01)

    @pytest.mark.parametrize("hour", range(24))
    def test_bounded(self, hour):
        assert 0.02 <= shanghai_premium(utc(2026, 3, 10, hour, 0)) <= 0.08


class TestEstimate:
    def test_prices_in_three_currencies(self, india, now):
        premium = shanghai_premium(now)
        estimate = estimate_shanghai_silver(30.0, 7.2, 85.0, now, india_market=india)

        shanghai_usd = 30.0 * (1 + premium)
        assert estimate.price_per_oz_usd == round(shanghai_usd, 2)
        assert estimate.price_per_kg_cny == round(shanghai_usd * 7.2 / 31.1035 * 1000, 2)
        assert estimate.price_per_gram_inr == round(shanghai_usd / 31.1035 * 85.0, 2)
        assert estimate.premium_percent == round(premium * 100, 2)
        assert estimate.premium_usd == round(shanghai_usd - 30.0, 2)
        assert estimate.cny_inr == round(85.0 / 7.2, 4)
        assert estimate.india_rate_per_gram == round(localize(30.0, 85.0, india.formula), 2)
        assert estimate.is_estimate
        assert estimate.market_status == "open"

    def test_without_india_market(self, now):
        assert estimate_shanghai_silver(30.0, 7.2, 85.0, now).india_rate_per_gram is None


class TestEstimator:
    @pytest.mark.asyncio
    async def test_uses_comex_silver_and_two_rates(self, static_adapter, clock):
        futures = static_adapter({"SI=F": 30.0})
        rates = static_adapter({"USD/CNY": 7.2, "USD/INR": 85.0})

        estimate = await ShanghaiEstimator(futures, rates, clock=clock).estimate()

        assert estimate.comex_usd == 30.0
        assert sorted(rates.calls) == ["USD/CNY", "USD/INR"]

    @pytest.mark.asyncio
    async def test_missing_comex_is_none(self, static_adapter, clock):
        rates = static_adapter({"USD/CNY": 7.2, "USD/INR": 85.0})
        assert await ShanghaiEstimator(static_adapter({}), rates, clock=clock).estimate() is None
