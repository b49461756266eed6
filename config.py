"""
Configuration for the Local Metal Rates API.

Constants, environment overrides, and the pricing tables (markup formulas,
markets, city offsets) that every PriceRecord is computed from.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from models import MarkupFormula, Metal, VariantOffset

load_dotenv(dotenv_path=Path(__file__).parent / ".env")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# ══════════════════════════════════════════════════════════════════════════════
# Runtime settings
# ══════════════════════════════════════════════════════════════════════════════

DATA_DIR = Path(os.getenv("METALRATES_DATA_DIR", str(Path(__file__).parent / "data")))
HISTORY_DIR = DATA_DIR / "history"
EXTREMES_DIR = DATA_DIR / "extremes"

CACHE_TTL_SECONDS = _env_float("METALRATES_CACHE_TTL_SECONDS", 3600)  # 1 hour, bounds upstream calls
# Persist the price cache across restarts; empty keeps it in memory
CACHE_FILE = os.getenv("METALRATES_CACHE_FILE", "").strip()
HTTP_TIMEOUT_SECONDS = _env_float("METALRATES_HTTP_TIMEOUT", 5.0)
ADAPTER_TIMEOUT_SECONDS = _env_float("METALRATES_ADAPTER_TIMEOUT", 5.0)
# Background cache warming for the default market; 0 disables it
REFRESH_INTERVAL_SECONDS = _env_float("METALRATES_REFRESH_INTERVAL", 0)
DEFAULT_MARKET = os.getenv("METALRATES_DEFAULT_MARKET", "india").strip().lower()

METALPRICE_API_KEY = os.getenv("METALPRICE_API_KEY", "")
GOLDAPI_KEY = os.getenv("GOLDAPI_KEY", "")
CRON_SECRET = os.getenv("CRON_SECRET", "")

ALLOW_SIMULATED_PRICES = _env_flag("METALRATES_ALLOW_SIMULATED", True)
LOG_LEVEL = os.getenv("METALRATES_LOG_LEVEL", "INFO").upper()
PRICING_FILE = os.getenv("METALRATES_PRICING_FILE", "").strip()

# Local coverage below this share of the requested days pulls in the remote series
HISTORY_COVERAGE_THRESHOLD = 0.8
MAX_HISTORY_DAYS = 365

YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart"
FRANKFURTER_URL = "https://api.frankfurter.app/latest"
METALPRICE_API_URL = "https://api.metalpriceapi.com/v1/latest"
GOLDAPI_URL = "https://www.goldapi.io/api"

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

# Shanghai (SGE) silver is estimated as COMEX plus a premium and quoted in CNY per kg
SHANGHAI_PREMIUM_BASE = 0.04
SHANGHAI_PREMIUM_ASIAN_HOURS = 0.01
SHANGHAI_PREMIUM_BOUNDS = (0.02, 0.08)
SHANGHAI_UTC_OFFSET_MINUTES = 480
SGE_OFFICIAL_URL = "https://en.sge.com.cn/data_SilverBenchmarkPrice"


# ══════════════════════════════════════════════════════════════════════════════
# Unit constants
# ══════════════════════════════════════════════════════════════════════════════

GRAMS_PER_TROY_OUNCE = 31.1035
GRAMS_PER_TOLA = 11.6638
GRAMS_PER_SOVEREIGN = 8.0

FUTURES_SYMBOLS = {
    Metal.gold: "GC=F",
    Metal.silver: "SI=F",
}

ISO_CODES = {
    Metal.gold: "XAU",
    Metal.silver: "XAG",
}

# Fineness relative to the reference (first) grade of each metal
PURITIES = {
    Metal.gold: {"24K": 0.999, "22K": 0.916, "18K": 0.750, "14K": 0.585},
    Metal.silver: {"999": 0.999, "925": 0.925, "800": 0.800},
}

# Currencies pegged to USD, answered without a network call
PEGGED_RATES = {
    "USD": 1.0,
    "QAR": 3.64,
    "AED": 3.6725,
    "SAR": 3.75,
    "BHD": 0.376,
    "OMR": 0.385,
    "KWD": 0.307,
}


# ══════════════════════════════════════════════════════════════════════════════
# Pricing tables
# ══════════════════════════════════════════════════════════════════════════════

DEFAULT_PRICING = {
    "formulas": {
        # 5% basic customs + 1% AIDC, 3% IGST, ~3% MCX premium over COMEX
        "india-bullion": {"version": "2024-07-23", "import_duty": 0.06, "tax": 0.03, "local_premium": 0.03},
        "qatar-bullion": {"version": "2026-01-23", "import_duty": 0.05, "tax": 0.0, "local_premium": 0.02},
        "uae-bullion": {"version": "2026-01-23", "import_duty": 0.05, "tax": 0.05, "local_premium": 0.02},
        "saudi-bullion": {"version": "2026-01-23", "import_duty": 0.05, "tax": 0.15, "local_premium": 0.02},
        "kuwait-bullion": {"version": "2026-01-23", "import_duty": 0.05, "tax": 0.0, "local_premium": 0.02},
        # Exchange reference price, no local costs
        "international": {"version": "2026-01-23", "import_duty": 0.0, "tax": 0.0, "local_premium": 0.0},
    },
    "markets": {
        "india": {"name": "India", "currency": "INR", "formula": "india-bullion", "utc_offset_minutes": 330},
        "qatar": {"name": "Qatar", "currency": "QAR", "formula": "qatar-bullion", "utc_offset_minutes": 180},
        "uae": {"name": "UAE (Dubai)", "currency": "AED", "formula": "uae-bullion", "utc_offset_minutes": 240},
        "saudi-arabia": {"name": "Saudi Arabia", "currency": "SAR", "formula": "saudi-bullion", "utc_offset_minutes": 180},
        "kuwait": {"name": "Kuwait", "currency": "KWD", "formula": "kuwait-bullion", "utc_offset_minutes": 180},
        "usd": {"name": "International (USD)", "currency": "USD", "formula": "international", "utc_offset_minutes": 0},
    },
    # Premium per gram over the Mumbai base price; transport and local demand
    "variants": {
        "india": {
            "silver": [
                {"name": "Mumbai", "region": "Maharashtra", "premium": 0.0, "making_charges_pct": 8},
                {"name": "Delhi", "region": "Delhi", "premium": 0.20, "making_charges_pct": 10},
                {"name": "Ahmedabad", "region": "Gujarat", "premium": 0.30, "making_charges_pct": 7},
                {"name": "Pune", "region": "Maharashtra", "premium": 0.40, "making_charges_pct": 9},
                {"name": "Surat", "region": "Gujarat", "premium": 0.35, "making_charges_pct": 7},
                {"name": "Jaipur", "region": "Rajasthan", "premium": 0.50, "making_charges_pct": 6},
                {"name": "Bangalore", "region": "Karnataka", "premium": 0.60, "making_charges_pct": 10},
                {"name": "Hyderabad", "region": "Telangana", "premium": 0.55, "making_charges_pct": 10},
                {"name": "Kolkata", "region": "West Bengal", "premium": 0.70, "making_charges_pct": 8},
                {"name": "Chennai", "region": "Tamil Nadu", "premium": 0.80, "making_charges_pct": 12},
                {"name": "Lucknow", "region": "Uttar Pradesh", "premium": 0.65, "making_charges_pct": 8},
                {"name": "Chandigarh", "region": "Punjab", "premium": 0.55, "making_charges_pct": 9},
                {"name": "Indore", "region": "Madhya Pradesh", "premium": 0.60, "making_charges_pct": 8},
                {"name": "Bhopal", "region": "Madhya Pradesh", "premium": 0.70, "making_charges_pct": 8},
                {"name": "Nagpur", "region": "Maharashtra", "premium": 0.50, "making_charges_pct": 8},
                {"name": "Patna", "region": "Bihar", "premium": 0.90, "making_charges_pct": 9},
                {"name": "Visakhapatnam", "region": "Andhra Pradesh", "premium": 0.85, "making_charges_pct": 10},
                {"name": "Kochi", "region": "Kerala", "premium": 1.20, "making_charges_pct": 11},
                {"name": "Coimbatore", "region": "Tamil Nadu", "premium": 1.00, "making_charges_pct": 11},
                {"name": "Thiruvananthapuram", "region": "Kerala", "premium": 1.40, "making_charges_pct": 12},
            ],
            # Gold is standardised, so the city spread is a small percentage
            "gold": [
                {"name": "Mumbai", "region": "Maharashtra", "premium": 0.0, "premium_kind": "multiplicative", "making_charges_pct": 10},
                {"name": "Ahmedabad", "region": "Gujarat", "premium": 0.0002, "premium_kind": "multiplicative", "making_charges_pct": 8},
                {"name": "Surat", "region": "Gujarat", "premium": 0.0003, "premium_kind": "multiplicative", "making_charges_pct": 7},
                {"name": "Delhi", "region": "Delhi", "premium": 0.0005, "premium_kind": "multiplicative", "making_charges_pct": 12},
                {"name": "Jaipur", "region": "Rajasthan", "premium": 0.0006, "premium_kind": "multiplicative", "making_charges_pct": 8},
                {"name": "Chandigarh", "region": "Punjab", "premium": 0.0007, "premium_kind": "multiplicative", "making_charges_pct": 11},
                {"name": "Lucknow", "region": "Uttar Pradesh", "premium": 0.0008, "premium_kind": "multiplicative", "making_charges_pct": 10},
                {"name": "Pune", "region": "Maharashtra", "premium": 0.0004, "premium_kind": "multiplicative", "making_charges_pct": 11},
                {"name": "Nagpur", "region": "Maharashtra", "premium": 0.0005, "premium_kind": "multiplicative", "making_charges_pct": 10},
                {"name": "Indore", "region": "Madhya Pradesh", "premium": 0.0007, "premium_kind": "multiplicative", "making_charges_pct": 10},
                {"name": "Kolkata", "region": "West Bengal", "premium": 0.0008, "premium_kind": "multiplicative", "making_charges_pct": 10},
                {"name": "Patna", "region": "Bihar", "premium": 0.0010, "premium_kind": "multiplicative", "making_charges_pct": 11},
                {"name": "Bangalore", "region": "Karnataka", "premium": 0.0008, "premium_kind": "multiplicative", "making_charges_pct": 12},
                {"name": "Hyderabad", "region": "Telangana", "premium": 0.0009, "premium_kind": "multiplicative", "making_charges_pct": 11},
                {"name": "Chennai", "region": "Tamil Nadu", "premium": 0.0010, "premium_kind": "multiplicative", "making_charges_pct": 14},
                {"name": "Coimbatore", "region": "Tamil Nadu", "premium": 0.0011, "premium_kind": "multiplicative", "making_charges_pct": 13},
                {"name": "Madurai", "region": "Tamil Nadu", "premium": 0.0012, "premium_kind": "multiplicative", "making_charges_pct": 13},
                {"name": "Visakhapatnam", "region": "Andhra Pradesh", "premium": 0.0010, "premium_kind": "multiplicative", "making_charges_pct": 12},
                {"name": "Kochi", "region": "Kerala", "premium": 0.0013, "premium_kind": "multiplicative", "making_charges_pct": 13},
                {"name": "Thiruvananthapuram", "region": "Kerala", "premium": 0.0015, "premium_kind": "multiplicative", "making_charges_pct": 14},
            ],
        },
    },
    # Placeholder quotes for demonstration when every live source is down
    "simulated": {
        "quotes_usd_per_oz": {"gold": 2650.00, "silver": 31.50},
        "exchange_rates": {"USD": 1.0, "INR": 83.50, "QAR": 3.64, "AED": 3.6725, "SAR": 3.75, "KWD": 0.307},
    },
    # Static last-resort values, USD per troy ounce
    "last_resort": {
        "quotes_usd_per_oz": {"gold": 2050.00, "silver": 30.50},
        "exchange_rates": {"USD": 1.0, "INR": 83.50, "QAR": 3.64, "AED": 3.6725, "SAR": 3.75, "KWD": 0.307},
    },
}


class Market:
    """A pricing geography: its currency, markup formula and local clock."""

    def __init__(self, key: str, name: str, currency: str, formula: MarkupFormula, utc_offset_minutes: int = 0):
        self.key = key
        self.name = name
        self.currency = currency
        self.formula = formula
        self.utc_offset_minutes = utc_offset_minutes

    def __repr__(self) -> str:
        return f"Market({self.key!r}, {self.currency}, {self.formula.name}@{self.formula.version})"


def _with_pegged_rates(table: dict, markets: dict[str, Market]) -> dict:
    """Fill in rates for dollar-pegged market currencies the table leaves out."""
    rates = dict(table.get("exchange_rates", {}))
    for market in markets.values():
        if market.currency not in rates and market.currency in PEGGED_RATES:
            rates[market.currency] = PEGGED_RATES[market.currency]
    return {**table, "quotes_usd_per_oz": dict(table.get("quotes_usd_per_oz", {})), "exchange_rates": rates}


class PricingConfig:
    """Validated pricing tables, loaded once at startup."""

    def __init__(self, raw: dict):
        self.formulas: dict[str, MarkupFormula] = {
            name: MarkupFormula(name=name, **values) for name, values in raw["formulas"].items()
        }
        self.markets: dict[str, Market] = {}
        for key, values in raw["markets"].items():
            formula_name = values["formula"]
            if formula_name not in self.formulas:
                raise ValueError(f"Market '{key}' references unknown formula '{formula_name}'")
            self.markets[key] = Market(
                key=key,
                name=values["name"],
                currency=values["currency"].upper(),
                formula=self.formulas[formula_name],
                utc_offset_minutes=int(values.get("utc_offset_minutes", 0)),
            )
        self.variants: dict[tuple[str, str], list[VariantOffset]] = {}
        for market_key, by_metal in raw.get("variants", {}).items():
            for metal, offsets in by_metal.items():
                self.variants[(market_key, metal)] = [VariantOffset(**offset) for offset in offsets]
        self.simulated = _with_pegged_rates(raw["simulated"], self.markets)
        self.last_resort = _with_pegged_rates(raw["last_resort"], self.markets)
        for key, market in self.markets.items():
            if market.currency not in self.last_resort["exchange_rates"]:
                raise ValueError(f"Market '{key}' has no last-resort rate for {market.currency}")
        missing = [metal.value for metal in Metal if metal.value not in self.last_resort["quotes_usd_per_oz"]]
        if missing:
            raise ValueError(f"Last-resort table has no quote for {', '.join(missing)}")

    def get_market(self, key: str) -> Optional[Market]:
        return self.markets.get(key.lower())

    def get_variants(self, market: str, metal: Metal) -> list[VariantOffset]:
        return self.variants.get((market, metal.value), [])


def load_pricing_config(path: Optional[str] = None) -> PricingConfig:
    """Load pricing tables, optionally overlaying a JSON file on the defaults."""
    raw = json.loads(json.dumps(DEFAULT_PRICING))
    target = path or PRICING_FILE
    if target:
        with open(target, "r") as f:
            overrides = json.load(f)
        for section, value in overrides.items():
            if isinstance(value, dict) and isinstance(raw.get(section), dict):
                raw[section].update(value)
            else:
                raw[section] = value
        logging.info(f"Loaded pricing overrides from {target}")
    return PricingConfig(raw)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
