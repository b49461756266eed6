"""
Data models for resolved metal prices.

Quotes and records are frozen: a refresh produces a new object, it never
edits an old one.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Metal(str, Enum):
    gold = "gold"
    silver = "silver"


class Denomination(str, Enum):
    gram = "gram"
    ten_gram = "ten_gram"
    kilogram = "kilogram"
    tola = "tola"
    sovereign = "sovereign"
    troy_ounce = "troy_ounce"


class SourceTag(str, Enum):
    computed = "computed"
    metalpriceapi = "metalpriceapi"
    goldapi = "goldapi"
    last_known = "last_known"
    simulated = "simulated"
    fallback = "fallback"


class ChangeBasis(str, Enum):
    local_history = "local_history"
    remote_series = "remote_series"
    no_baseline = "no_baseline"


class ResolverState(str, Enum):
    idle = "idle"
    resolving = "resolving"
    resolved = "resolved"
    degraded = "degraded"


class PremiumKind(str, Enum):
    additive = "additive"
    multiplicative = "multiplicative"


# ══════════════════════════════════════════════════════════════════════════════
# Upstream observations
# ══════════════════════════════════════════════════════════════════════════════

class Quote(BaseModel):
    """One upstream numeric observation (instrument price or FX rate)."""

    model_config = ConfigDict(frozen=True)

    instrument: str
    value: float = Field(gt=0)
    unit: str
    provider: str
    timestamp: datetime


# ══════════════════════════════════════════════════════════════════════════════
# Configuration records
# ══════════════════════════════════════════════════════════════════════════════

class MarkupFormula(BaseModel):
    """
    Versioned set of percentage steps turning an international price into a
    local retail-equivalent price.

    Steps are applied in the fixed order import_duty, tax, local_premium.
    The version is the "last updated" marker and must change whenever a rate
    changes, because stored history is only comparable within one version.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    import_duty: float = Field(ge=0, lt=1)
    tax: float = Field(ge=0, lt=1)
    local_premium: float = Field(ge=0, lt=1)

    @field_validator("version")
    @classmethod
    def _version_is_date(cls, value: str) -> str:
        date.fromisoformat(value)
        return value

    @property
    def steps(self) -> tuple[tuple[str, float], ...]:
        return (
            ("import_duty", self.import_duty),
            ("tax", self.tax),
            ("local_premium", self.local_premium),
        )

    @property
    def multiplier(self) -> float:
        result = 1.0
        for _, rate in self.steps:
            result = result * (1 + rate)
        return result


class VariantOffset(BaseModel):
    """Static per-location adjustment applied to a resolved base price."""

    model_config = ConfigDict(frozen=True)

    name: str
    region: str = ""
    premium: float = 0.0
    premium_kind: PremiumKind = PremiumKind.additive
    making_charges_pct: float = Field(default=0.0, ge=0)
    tax_pct: float = Field(default=3.0, ge=0)


# ══════════════════════════════════════════════════════════════════════════════
# Resolved prices
# ══════════════════════════════════════════════════════════════════════════════

class UnitPrices(BaseModel):
    model_config = ConfigDict(frozen=True)

    per_gram: float
    per_ten_gram: float
    per_kilogram: float
    per_tola: float
    per_sovereign: float
    per_troy_ounce: float


class PriceChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    absolute: float = 0.0
    percent: float = 0.0
    basis: ChangeBasis = ChangeBasis.no_baseline


class DailyExtremes(BaseModel):
    """Open/high/low seen so far on one local calendar day."""

    date: str
    open: float
    high: float
    high_time: datetime
    low: float
    low_time: datetime
    last_updated: datetime


class PriceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    metal: Metal
    market: str
    currency: str
    purity: str
    prices: UnitPrices
    purity_prices: dict[str, UnitPrices] = Field(default_factory=dict)
    change_24h: PriceChange = Field(default_factory=PriceChange)
    high_24h: float
    low_24h: float
    today_open: Optional[float] = None
    source: SourceTag
    strategy: str
    is_simulated: bool = False
    formula_name: str
    formula_version: str
    international_price: Optional[float] = None
    exchange_rate: Optional[float] = None
    timestamp: datetime


class HistoricalEntry(BaseModel):
    """One day's price in a local series, keyed by ISO date."""

    model_config = ConfigDict(frozen=True)

    date: str
    price_per_gram: float
    price_per_kilogram: float
    international_price: Optional[float] = None
    exchange_rate: Optional[float] = None
    source: str
    formula_version: Optional[str] = None
    recorded_at: datetime


class VariantPrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    region: str
    per_gram: float
    per_ten_gram: float
    per_kilogram: float
    making_charges_pct: float
    tax_pct: float


class GoldSilverRatio(BaseModel):
    ratio: float
    interpretation: str
    gold_usd_per_oz: float
    silver_usd_per_oz: float
    gold_per_gram: float
    silver_per_gram: float
    currency: str
    timestamp: datetime


class CombinedPrices(BaseModel):
    """Both metals for one market, e.g. the international USD board."""

    market: str
    currency: str
    gold: PriceRecord
    silver: PriceRecord
    ratio: Optional[GoldSilverRatio] = None
    timestamp: datetime


class WeightValuation(BaseModel):
    metal: Metal
    purity: str
    amount: float
    from_unit: Denomination
    converted_amount: float
    to_unit: Denomination
    value: float
    currency: str
    price_per_gram: float
    source: SourceTag
    is_simulated: bool


class ShanghaiSilverPrice(BaseModel):
    """
    Estimated Shanghai Gold Exchange silver price.

    Derived from COMEX plus a premium; never a live SGE quote, so
    `is_estimate` is always true.
    """

    price_per_kg_cny: float
    price_per_gram_cny: float
    price_per_oz_cny: float
    price_per_oz_usd: float
    price_per_gram_usd: float
    price_per_kg_usd: float
    price_per_gram_inr: float
    price_per_kg_inr: float
    india_rate_per_gram: Optional[float] = None
    comex_usd: float
    premium_percent: float
    premium_usd: float
    usd_cny: float
    usd_inr: float
    cny_inr: float
    market_status: str
    market_session: str
    is_estimate: bool = True
    official_url: str
    timestamp: datetime


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    cache_ttl_seconds: int
    cached_price_age_seconds: dict[str, Optional[int]] = Field(default_factory=dict)
    resolver_states: dict[str, ResolverState] = Field(default_factory=dict)
