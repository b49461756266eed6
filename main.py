"""
Local Metal Rates API
Gold and silver prices localized to a market: converted, marked up with the
market's duty/tax/premium formula, and expressed in local weight units.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import asyncio
import logging

from cache import FileStorage, MemoryStorage, PriceRefresher, TTLCache
from config import (
    CACHE_FILE,
    CACHE_TTL_SECONDS,
    CRON_SECRET,
    DEFAULT_MARKET,
    MAX_HISTORY_DAYS,
    REFRESH_INTERVAL_SECONDS,
    configure_logging,
    load_pricing_config,
)
from errors import InvalidInput, UnknownMarket
from models import Denomination, HealthResponse, Metal
from service import PriceService
from sources import close_http_client

API_VERSION = "1.0.0"

configure_logging()

# ══════════════════════════════════════════════════════════════════════════════
# Service wiring
# ══════════════════════════════════════════════════════════════════════════════

price_service = PriceService(
    load_pricing_config(),
    cache=TTLCache(FileStorage(Path(CACHE_FILE)) if CACHE_FILE else MemoryStorage(), ttl_seconds=CACHE_TTL_SECONDS),
)


def get_service() -> PriceService:
    return price_service


async def warm_default_market() -> list:
    return await asyncio.gather(
        *(price_service.get_current_price(metal, DEFAULT_MARKET) for metal in Metal)
    )


def log_refresh(records) -> None:
    for record in records:
        logging.info(f"Refreshed {record.metal.value}/{record.market}: {record.prices.per_gram} {record.currency}/gram ({record.source.value})")


@asynccontextmanager
async def lifespan(app: FastAPI):
    refresher = None
    if REFRESH_INTERVAL_SECONDS > 0:
        refresher = PriceRefresher(warm_default_market, log_refresh, REFRESH_INTERVAL_SECONDS)
        refresher.start()
    yield
    if refresher is not None:
        await refresher.stop()
    await close_http_client()


# ══════════════════════════════════════════════════════════════════════════════
# FastAPI Application
# ══════════════════════════════════════════════════════════════════════════════

app = FastAPI(
    title="Local Metal Rates API",
    description="""
## Gold & silver rates, localized

International futures quotes converted to local currency and marked up with
each market's import duty, tax and local premium, then expressed per gram,
10 grams, kilogram, tola and sovereign.

### Features
- **Source fallback** - live futures + FX first, paid aggregators next, then the last recorded price
- **Provenance on every price** - `source`, `strategy`, `is_simulated` and the formula version it was computed with
- **Daily history** - one recorded price per day, backfilled from a remote series when sparse
- **City variants** - per-city premiums over the base price
- **International & Shanghai** - USD reference prices and an estimated SGE silver price with its premium over COMEX
- **CORS enabled** - Use from any frontend

### Quick Start
```bash
curl https://your-api.com/api/v1/prices/silver?market=india
curl https://your-api.com/api/v1/prices/gold/history?market=india&days=30
```
    """,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def parse_metal(metal: str) -> Metal:
    try:
        return Metal(metal.lower())
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Metal '{metal}' not supported. Use one of: {[m.value for m in Metal]}",
        )


def parse_unit(unit: str) -> Denomination:
    try:
        return Denomination(unit.lower())
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Unit '{unit}' not supported. Use: {[d.value for d in Denomination]}",
        )


def check_market(service: PriceService, market: str):
    try:
        return service.market(market)
    except UnknownMarket as e:
        raise HTTPException(status_code=400, detail=str(e))


# ══════════════════════════════════════════════════════════════════════════════
# API Endpoints
# ══════════════════════════════════════════════════════════════════════════════

@app.get("/", tags=["Root"])
async def root():
    """Welcome endpoint with API information."""
    return {
        "name": "Local Metal Rates API",
        "version": API_VERSION,
        "description": "Localized gold and silver prices with daily history",
        "documentation": "/docs",
        "endpoints": {
            "price": "/api/v1/prices/{metal}?market=india",
            "history": "/api/v1/prices/{metal}/history?market=india&days=30",
            "variants": "/api/v1/prices/{metal}/variants?market=india",
            "ratio": "/api/v1/ratio",
            "combined": "/api/v1/combined?market=india",
            "international": "/api/v1/international",
            "shanghai": "/api/v1/shanghai/silver",
            "convert": "/api/v1/convert",
            "markets": "/api/v1/markets",
            "health": "/api/v1/health",
        },
    }


@app.get("/api/v1/health", response_model=HealthResponse, tags=["System"])
async def health_check(service: PriceService = Depends(get_service)):
    """Check API health, cache TTL and age, and the last resolver state per series."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        cache_ttl_seconds=int(CACHE_TTL_SECONDS),
        cached_price_age_seconds={
            f"{metal.value}:{DEFAULT_MARKET}": service.cached_age_seconds(metal, DEFAULT_MARKET) for metal in Metal
        },
        resolver_states=dict(service.resolver.states),
    )


@app.get("/api/v1/markets", tags=["Reference"])
async def get_markets(service: PriceService = Depends(get_service)):
    """Supported markets with their currency and current formula version."""
    return {
        "default": DEFAULT_MARKET,
        "markets": [
            {
                "key": market.key,
                "name": market.name,
                "currency": market.currency,
                "formula": market.formula.name,
                "formula_version": market.formula.version,
                "markup": {name: rate for name, rate in market.formula.steps},
            }
            for market in service.pricing.markets.values()
        ],
    }


@app.get("/api/v1/prices/{metal}", tags=["Prices"])
async def get_price(
    metal: str,
    market: str = Query(default=DEFAULT_MARKET, description="Market key", examples=["india", "uae"]),
    service: PriceService = Depends(get_service),
):
    """
    Current localized price for `gold` or `silver`.

    Prices are per gram, 10 grams, kilogram, tola (11.6638 g), sovereign (8 g)
    and troy ounce, for the reference purity plus every other configured grade.
    `source` tells where the number came from; `is_simulated` is true only for
    placeholder values served when no real data was reachable.
    """
    parsed = parse_metal(metal)
    check_market(service, market)
    record = await service.get_current_price(parsed, market)
    return record.model_dump(mode="json")


@app.get("/api/v1/prices/{metal}/history", tags=["Prices"])
async def get_price_history(
    metal: str,
    market: str = Query(default=DEFAULT_MARKET, description="Market key"),
    days: int = Query(default=30, ge=1, le=MAX_HISTORY_DAYS, description="Days of history (1-365)"),
    service: PriceService = Depends(get_service),
):
    """
    Daily prices, oldest first.

    Recorded daily prices are used when they cover the range; otherwise a
    remote futures series fills in the missing days.
    """
    parsed = parse_metal(metal)
    resolved_market = check_market(service, market)
    history = await service.get_historical_range(parsed, market, days)
    return {
        "status": "success",
        "metal": parsed.value,
        "market": resolved_market.key,
        "currency": resolved_market.currency,
        "days": days,
        "data_points": len(history),
        "history": [entry.model_dump(mode="json") for entry in history],
    }


@app.get("/api/v1/prices/{metal}/variants", tags=["Prices"])
async def get_price_variants(
    metal: str,
    market: str = Query(default=DEFAULT_MARKET, description="Market key"),
    sort: Optional[str] = Query(default=None, description="Sort by 'price' or 'name'"),
    service: PriceService = Depends(get_service),
):
    """City prices derived from the market base price."""
    parsed = parse_metal(metal)
    resolved_market = check_market(service, market)
    try:
        variants = await service.get_variant_prices(parsed, market, sort_by=sort)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "metal": parsed.value,
        "market": resolved_market.key,
        "currency": resolved_market.currency,
        "count": len(variants),
        "variants": [variant.model_dump(mode="json") for variant in variants],
    }


@app.get("/api/v1/ratio", tags=["Prices"])
async def get_ratio(
    market: str = Query(default=DEFAULT_MARKET, description="Market key"),
    service: PriceService = Depends(get_service),
):
    """Gold/silver ratio from the international quotes behind the current prices."""
    check_market(service, market)
    ratio = await service.get_gold_silver_ratio(market)
    if ratio is None:
        raise HTTPException(status_code=503, detail="International quotes unavailable for the ratio")
    return ratio.model_dump(mode="json")


@app.get("/api/v1/convert", tags=["Utilities"])
async def convert_weight(
    metal: str,
    amount: float = Query(..., description="Amount of metal", gt=0),
    from_unit: str = Query(default="tola", description="Source unit"),
    to_unit: str = Query(default="gram", description="Target unit"),
    market: str = Query(default=DEFAULT_MARKET, description="Market key"),
    purity: Optional[str] = Query(default=None, description="Grade, e.g. 22K or 925"),
    service: PriceService = Depends(get_service),
):
    """
    Convert metal weight between units and value it at the current local price.

    **Supported units:** `gram`, `ten_gram`, `kilogram`, `tola`, `sovereign`, `troy_ounce`
    """
    parsed = parse_metal(metal)
    source = parse_unit(from_unit)
    target = parse_unit(to_unit)
    check_market(service, market)

    try:
        valuation = await service.value_weight(parsed, market, amount, source, target, purity=purity)
    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "metal": valuation.metal.value,
        "purity": valuation.purity,
        "input": {"amount": valuation.amount, "unit": valuation.from_unit.value},
        "output": {"amount": valuation.converted_amount, "unit": valuation.to_unit.value},
        "value": {"amount": valuation.value, "currency": valuation.currency},
        "price_per_gram": valuation.price_per_gram,
        "source": valuation.source.value,
        "is_simulated": valuation.is_simulated,
    }


@app.get("/api/v1/combined", tags=["Prices"])
async def get_combined(
    market: str = Query(default=DEFAULT_MARKET, description="Market key"),
    service: PriceService = Depends(get_service),
):
    """Gold and silver for one market in a single response, with the gold/silver ratio."""
    check_market(service, market)
    combined = await service.get_combined_prices(market)
    return combined.model_dump(mode="json")


@app.get("/api/v1/international", tags=["Prices"])
async def get_international(service: PriceService = Depends(get_service)):
    """COMEX reference prices in USD, with no local duty, tax or premium."""
    check_market(service, "usd")
    combined = await service.get_combined_prices("usd")
    return combined.model_dump(mode="json")


@app.get("/api/v1/shanghai/silver", tags=["Prices"])
async def get_shanghai_silver(service: PriceService = Depends(get_service)):
    """
    Estimated Shanghai Gold Exchange silver price.

    Calculated as COMEX plus an estimated premium and quoted in CNY, USD and
    INR. Actual SGE Ag(T+D) prices may differ; `official_url` points to the
    exchange's published benchmark.
    """
    estimate = await service.get_shanghai_price()
    if estimate is None:
        raise HTTPException(status_code=503, detail="Shanghai estimate unavailable: COMEX or FX quotes missing")
    return estimate.model_dump(mode="json")


@app.api_route("/api/v1/cron/save-daily-price", methods=["GET", "POST"], tags=["System"])
async def save_daily_price(
    metal: Optional[str] = Query(default=None, description="Metal to record; both when omitted"),
    market: str = Query(default=DEFAULT_MARKET, description="Market key"),
    force: bool = Query(default=False, description="Overwrite today's entry"),
    authorization: Optional[str] = Header(default=None),
    service: PriceService = Depends(get_service),
):
    """Daily-close job: record today's price once per day."""
    if CRON_SECRET and authorization != f"Bearer {CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")

    metals = [parse_metal(metal)] if metal else list(Metal)
    check_market(service, market)

    results = {}
    for item in metals:
        saved, entry = await service.record_daily_price(item, market, force=force)
        results[item.value] = {
            "saved": saved,
            "entry": entry.model_dump(mode="json") if entry else None,
        }
        if saved:
            logging.info(f"Recorded daily {item.value}/{market} price: {entry.price_per_gram}")

    return {
        "success": True,
        "market": market,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "results": results,
    }


# ══════════════════════════════════════════════════════════════════════════════
# Error Handlers
# ══════════════════════════════════════════════════════════════════════════════

@app.exception_handler(404)
async def not_found_handler(request, exc):
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "message": "The requested endpoint does not exist.",
            "available_endpoints": ["/api/v1/prices/{metal}", "/api/v1/markets", "/api/v1/health", "/docs"],
        },
    )


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    import traceback
    error_details = traceback.format_exc()
    logging.error(f"Unhandled exception in {request.url.path}: {error_details}")

    # Don't override FastAPI's built-in HTTP exceptions
    if isinstance(exc, StarletteHTTPException):
        raise exc

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "Something went wrong. Please try again.",
            "detail": str(exc) if exc else "Unknown error",
        },
    )


# ══════════════════════════════════════════════════════════════════════════════
# Run Server
# ══════════════════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn

    logging.info("Starting Local Metal Rates API on http://localhost:8000 (docs at /docs)")
    uvicorn.run(app, host="0.0.0.0", port=8000)
