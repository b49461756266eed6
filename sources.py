"""
Upstream quote adapters.

Each adapter wraps exactly one provider and answers "a Quote, or None".
Network errors, timeouts, bad JSON and missing or non-numeric fields are all
logged and reported as None; nothing escapes fetch().
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from calculator import CannotCompute, localize
from config import (
    ADAPTER_TIMEOUT_SECONDS,
    FRANKFURTER_URL,
    GOLDAPI_KEY,
    GOLDAPI_URL,
    HTTP_TIMEOUT_SECONDS,
    METALPRICE_API_KEY,
    METALPRICE_API_URL,
    PEGGED_RATES,
    USER_AGENT,
    YAHOO_CHART_URL,
    Market,
)
from errors import UpstreamUnavailable
from models import HistoricalEntry, Quote

# Shared HTTP client for connection pooling
_http_client: Optional[httpx.AsyncClient] = None


async def get_http_client() -> httpx.AsyncClient:
    """Get or create the shared HTTP client."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=HTTP_TIMEOUT_SECONDS,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=30),
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_price(provider: str, field: str, raw: Any) -> float:
    """Re-validate an upstream numeric field on every call."""
    if raw is None:
        raise UpstreamUnavailable(provider, f"missing field '{field}'")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise UpstreamUnavailable(provider, f"field '{field}' is not numeric: {raw!r}")
    value = float(raw)
    if not math.isfinite(value) or value <= 0:
        raise UpstreamUnavailable(provider, f"field '{field}' out of range: {raw!r}")
    return value


class QuoteAdapter(ABC):
    """One upstream integration behind a "Quote or None" contract."""

    provider_name: str = "unknown"

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout_seconds: float = ADAPTER_TIMEOUT_SECONDS):
        self._client = client
        self.timeout_seconds = timeout_seconds

    async def fetch(self, instrument: str) -> Optional[Quote]:
        try:
            return await asyncio.wait_for(self._fetch(instrument), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logging.warning(f"{self.provider_name} timed out after {self.timeout_seconds}s for {instrument}")
        except UpstreamUnavailable as e:
            logging.warning(f"{self.provider_name} unavailable for {instrument}: {e.reason}")
        except httpx.TimeoutException:
            logging.warning(f"Timeout fetching {instrument} from {self.provider_name}")
        except httpx.HTTPStatusError as e:
            logging.warning(f"HTTP error fetching {instrument} from {self.provider_name}: {e.response.status_code}")
        except Exception as e:
            logging.warning(f"Error fetching {instrument} from {self.provider_name}: {str(e)}")
        return None

    @abstractmethod
    async def _fetch(self, instrument: str) -> Quote:
        raise NotImplementedError

    async def _get_json(self, url: str, params: Optional[dict] = None, headers: Optional[dict] = None) -> dict:
        client = self._client or await get_http_client()
        response = await client.get(url, params=params, headers=headers, timeout=self.timeout_seconds)
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError:
            raise UpstreamUnavailable(self.provider_name, "invalid JSON response")
        if not isinstance(payload, dict):
            raise UpstreamUnavailable(self.provider_name, f"unexpected payload type {type(payload).__name__}")
        return payload


# ══════════════════════════════════════════════════════════════════════════════
# Free feeds (used by the self-computed strategy)
# ══════════════════════════════════════════════════════════════════════════════

class YahooFuturesAdapter(QuoteAdapter):
    """
    Latest traded futures price from Yahoo Finance (GC=F, SI=F).

    Futures closely track spot and the chart endpoint needs no API key.
    Value is USD per troy ounce.
    """

    provider_name = "yahoo_finance"

    async def _fetch(self, instrument: str) -> Quote:
        data = await self._get_json(
            f"{YAHOO_CHART_URL}/{instrument}",
            params={"interval": "1d", "range": "1d"},
        )
        result = (data.get("chart") or {}).get("result") or []
        if not result:
            raise UpstreamUnavailable(self.provider_name, "no chart result")
        meta = result[0].get("meta") or {}
        price = _as_price(self.provider_name, "regularMarketPrice", meta.get("regularMarketPrice"))
        return Quote(instrument=instrument, value=price, unit="USD/oz", provider=self.provider_name, timestamp=utc_now())


class FrankfurterRateAdapter(QuoteAdapter):
    """
    USD exchange rates from the Frankfurter API (ECB data).

    Instruments are currency pairs such as "USD/INR". Currencies pegged to the
    dollar are answered from PEGGED_RATES without a request.
    """

    provider_name = "frankfurter"

    async def _fetch(self, instrument: str) -> Quote:
        base, _, target = instrument.upper().partition("/")
        if base != "USD" or not target:
            raise UpstreamUnavailable(self.provider_name, f"unsupported pair {instrument}")

        if target in PEGGED_RATES:
            return Quote(instrument=instrument, value=PEGGED_RATES[target], unit=instrument, provider="pegged", timestamp=utc_now())

        data = await self._get_json(FRANKFURTER_URL, params={"from": "USD", "to": target})
        rates = data.get("rates")
        if not isinstance(rates, dict):
            raise UpstreamUnavailable(self.provider_name, "missing rates map")
        rate = _as_price(self.provider_name, f"rates.{target}", rates.get(target))
        return Quote(instrument=instrument, value=rate, unit=instrument, provider=self.provider_name, timestamp=utc_now())


# ══════════════════════════════════════════════════════════════════════════════
# Paid aggregators (local currency per troy ounce)
# ══════════════════════════════════════════════════════════════════════════════

class MetalpriceApiAdapter(QuoteAdapter):
    """metalpriceapi.com; instruments look like "XAG/INR"."""

    provider_name = "metalpriceapi"

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = METALPRICE_API_KEY if api_key is None else api_key

    async def fetch(self, instrument: str) -> Optional[Quote]:
        if not self.api_key:
            logging.debug(f"{self.provider_name} skipped: no API key configured")
            return None
        return await super().fetch(instrument)

    async def _fetch(self, instrument: str) -> Quote:
        metal_code, _, currency = instrument.upper().partition("/")
        data = await self._get_json(
            METALPRICE_API_URL,
            params={"api_key": self.api_key, "base": metal_code, "currencies": currency},
        )
        if data.get("success") is False:
            raise UpstreamUnavailable(self.provider_name, str(data.get("error", "unsuccessful response")))
        rates = data.get("rates")
        if not isinstance(rates, dict):
            raise UpstreamUnavailable(self.provider_name, "missing rates map")
        price = _as_price(self.provider_name, f"rates.{currency}", rates.get(currency))
        return Quote(instrument=instrument, value=price, unit=f"{currency}/oz", provider=self.provider_name, timestamp=utc_now())


class GoldApiAdapter(QuoteAdapter):
    """goldapi.io; instruments look like "XAU/INR"."""

    provider_name = "goldapi"

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = GOLDAPI_KEY if api_key is None else api_key

    async def fetch(self, instrument: str) -> Optional[Quote]:
        if not self.api_key:
            logging.debug(f"{self.provider_name} skipped: no API key configured")
            return None
        return await super().fetch(instrument)

    async def _fetch(self, instrument: str) -> Quote:
        metal_code, _, currency = instrument.upper().partition("/")
        data = await self._get_json(
            f"{GOLDAPI_URL}/{metal_code}/{currency}",
            headers={"x-access-token": self.api_key},
        )
        price = _as_price(self.provider_name, "price", data.get("price"))
        return Quote(instrument=instrument, value=price, unit=f"{currency}/oz", provider=self.provider_name, timestamp=utc_now())


# ══════════════════════════════════════════════════════════════════════════════
# Historical series
# ══════════════════════════════════════════════════════════════════════════════

def _range_for_days(days: int) -> str:
    if days <= 7:
        return "5d"
    elif days <= 30:
        return "1mo"
    elif days <= 90:
        return "3mo"
    elif days <= 180:
        return "6mo"
    elif days <= 365:
        return "1y"
    return "2y"


class YahooHistoryAdapter:
    """Daily closes from the Yahoo chart endpoint, oldest first."""

    provider_name = "yahoo_finance_history"

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout_seconds: float = ADAPTER_TIMEOUT_SECONDS):
        self._client = client
        self.timeout_seconds = timeout_seconds

    async def fetch_series(self, symbol: str, days: int) -> list[tuple[str, float]]:
        if days <= 0:
            return []
        try:
            return await asyncio.wait_for(self._fetch_series(symbol, days), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logging.warning(f"Timeout fetching historical data for {symbol} ({days}d)")
        except httpx.HTTPStatusError as e:
            logging.warning(f"HTTP error fetching historical data for {symbol}: {e.response.status_code}")
        except Exception as e:
            logging.warning(f"Error fetching historical data for {symbol}: {str(e)}")
        return []

    async def _fetch_series(self, symbol: str, days: int) -> list[tuple[str, float]]:
        client = self._client or await get_http_client()
        response = await client.get(
            f"{YAHOO_CHART_URL}/{symbol}",
            params={"interval": "1d", "range": _range_for_days(days)},
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError as e:
            logging.warning(f"Invalid JSON response for historical data {symbol}: {str(e)}")
            return []

        result = (data.get("chart") or {}).get("result") or []
        if not result:
            logging.warning(f"No result data for historical data {symbol}")
            return []

        timestamps = result[0].get("timestamp") or []
        quotes = (result[0].get("indicators") or {}).get("quote") or []
        if not timestamps or not quotes:
            logging.warning(f"Missing timestamp or quote data for historical data {symbol}")
            return []

        closes = quotes[0].get("close") or []
        if len(timestamps) != len(closes):
            logging.warning(f"Mismatched timestamp/close data lengths for historical data {symbol}")
            return []

        by_date: dict[str, float] = {}
        for ts, close in zip(timestamps, closes):
            if ts is None or close is None or isinstance(close, bool):
                continue
            try:
                price = float(close)
                day = datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()
            except (ValueError, TypeError, OSError):
                continue
            if math.isfinite(price) and price > 0:
                by_date[day] = price

        return sorted(by_date.items())[-days:]


class RemoteHistory:
    """Remote futures closes localized with today's FX rate and a market formula."""

    def __init__(self, history_adapter: YahooHistoryAdapter, rate_adapter: FrankfurterRateAdapter):
        self.history_adapter = history_adapter
        self.rate_adapter = rate_adapter

    async def fetch(self, symbol: str, market: Market, days: int) -> list[HistoricalEntry]:
        series, rate_quote = await asyncio.gather(
            self.history_adapter.fetch_series(symbol, days),
            self.rate_adapter.fetch(f"USD/{market.currency}"),
        )
        if not series or rate_quote is None:
            return []

        recorded_at = utc_now()
        entries = []
        for day, close in series:
            per_gram = localize(close, rate_quote.value, market.formula)
            if isinstance(per_gram, CannotCompute):
                continue
            entries.append(
                HistoricalEntry(
                    date=day,
                    price_per_gram=round(per_gram, 2),
                    price_per_kilogram=round(per_gram * 1000, 2),
                    international_price=round(close, 2),
                    exchange_rate=rate_quote.value,
                    source="remote_series",
                    formula_version=market.formula.version,
                    recorded_at=recorded_at,
                )
            )
        return entries
