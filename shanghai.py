"""
Shanghai silver estimate.

The Shanghai Gold Exchange quotes silver in CNY per kilogram. No free feed
publishes it, so the price is estimated from the COMEX silver future plus a
premium that follows Asian trading hours.
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from calculator import CannotCompute, localize
from config import (
    FUTURES_SYMBOLS,
    GRAMS_PER_TROY_OUNCE,
    SGE_OFFICIAL_URL,
    SHANGHAI_PREMIUM_ASIAN_HOURS,
    SHANGHAI_PREMIUM_BASE,
    SHANGHAI_PREMIUM_BOUNDS,
    SHANGHAI_UTC_OFFSET_MINUTES,
    Market,
)
from models import Metal, ShanghaiSilverPrice
from sources import QuoteAdapter

# Beijing hours, fractional; the night session runs past midnight
SGE_DAY_SESSIONS = ((9.0, 11.5, "Day Session (Morning)"), (13.5, 15.5, "Day Session (Afternoon)"))
SGE_NIGHT_SESSION = (21.0, 2.5)


def _beijing(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc) + timedelta(minutes=SHANGHAI_UTC_OFFSET_MINUTES)


def sge_market_status(moment: datetime) -> tuple[str, str]:
    """('open' | 'closed' | 'pre-market', session name) at the given instant."""
    beijing = _beijing(moment)
    if beijing.weekday() >= 5:
        return "closed", "Weekend"

    hour = beijing.hour + beijing.minute / 60
    for start, end, session in SGE_DAY_SESSIONS:
        if start <= hour < end:
            return "open", session
    night_start, night_end = SGE_NIGHT_SESSION
    if hour >= night_start or hour < night_end:
        return "open", "Night Session"

    if 8.5 <= hour < SGE_DAY_SESSIONS[0][0]:
        return "pre-market", "Pre-Market (Day)"
    if 20.5 <= hour < night_start:
        return "pre-market", "Pre-Market (Night)"
    return "closed", "Between Sessions"


def shanghai_premium(moment: datetime) -> float:
    """Estimated SGE premium over COMEX as a fraction, bounded to a sane band."""
    utc = moment.astimezone(timezone.utc) if moment.tzinfo else moment
    premium = SHANGHAI_PREMIUM_BASE
    asian_hours = 1 <= utc.hour <= 10 or 13 <= utc.hour <= 19
    if asian_hours and utc.weekday() < 5:
        premium += SHANGHAI_PREMIUM_ASIAN_HOURS
    premium += math.sin(utc.hour * 0.3) * 0.01
    low, high = SHANGHAI_PREMIUM_BOUNDS
    return max(low, min(high, premium))


def estimate_shanghai_silver(
    comex_usd: float,
    usd_cny: float,
    usd_inr: float,
    moment: datetime,
    india_market: Optional[Market] = None,
) -> ShanghaiSilverPrice:
    premium = shanghai_premium(moment)
    shanghai_usd_per_oz = comex_usd * (1 + premium)

    per_oz_cny = shanghai_usd_per_oz * usd_cny
    per_gram_cny = per_oz_cny / GRAMS_PER_TROY_OUNCE
    per_gram_usd = shanghai_usd_per_oz / GRAMS_PER_TROY_OUNCE
    per_gram_inr = per_gram_usd * usd_inr

    india_rate = None
    if india_market is not None:
        local = localize(comex_usd, usd_inr, india_market.formula)
        if not isinstance(local, CannotCompute):
            india_rate = round(local, 2)

    status, session = sge_market_status(moment)
    return ShanghaiSilverPrice(
        price_per_kg_cny=round(per_gram_cny * 1000, 2),
        price_per_gram_cny=round(per_gram_cny, 2),
        price_per_oz_cny=round(per_oz_cny, 2),
        price_per_oz_usd=round(shanghai_usd_per_oz, 2),
        price_per_gram_usd=round(per_gram_usd, 2),
        price_per_kg_usd=round(per_gram_usd * 1000, 2),
        price_per_gram_inr=round(per_gram_inr, 2),
        price_per_kg_inr=round(per_gram_inr * 1000, 2),
        india_rate_per_gram=india_rate,
        comex_usd=round(comex_usd, 2),
        premium_percent=round(premium * 100, 2),
        premium_usd=round(shanghai_usd_per_oz - comex_usd, 2),
        usd_cny=round(usd_cny, 4),
        usd_inr=round(usd_inr, 2),
        cny_inr=round(usd_inr / usd_cny, 4),
        market_status=status,
        market_session=session,
        official_url=SGE_OFFICIAL_URL,
        timestamp=moment,
    )


class ShanghaiEstimator:
    """COMEX silver and two FX rates in, a Shanghai estimate (or None) out."""

    def __init__(
        self,
        futures: QuoteAdapter,
        rates: QuoteAdapter,
        india_market: Optional[Market] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.futures = futures
        self.rates = rates
        self.india_market = india_market
        self._clock = clock

    async def estimate(self) -> Optional[ShanghaiSilverPrice]:
        comex, usd_cny, usd_inr = await asyncio.gather(
            self.futures.fetch(FUTURES_SYMBOLS[Metal.silver]),
            self.rates.fetch("USD/CNY"),
            self.rates.fetch("USD/INR"),
        )
        if comex is None or usd_cny is None or usd_inr is None:
            logging.warning(
                f"Shanghai estimate unavailable (comex={comex is not None}, "
                f"usd_cny={usd_cny is not None}, usd_inr={usd_inr is not None})"
            )
            return None
        return estimate_shanghai_silver(comex.value, usd_cny.value, usd_inr.value, self._clock(), self.india_market)
