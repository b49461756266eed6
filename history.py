"""
Historical price store.

One JSON file per series (e.g. silver-inr) holding at most one entry per
calendar day. Local entries are ground truth once captured; a remote series
only fills the gaps.
"""

import json
import logging
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from calculator import calculate_change
from errors import StorageUnavailable
from models import ChangeBasis, DailyExtremes, HistoricalEntry, PriceChange, PriceRecord


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_date(moment: datetime, utc_offset_minutes: int = 0) -> date:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment.astimezone(timezone.utc) + timedelta(minutes=utc_offset_minutes)).date()


# ══════════════════════════════════════════════════════════════════════════════
# Daily ledger
# ══════════════════════════════════════════════════════════════════════════════

class HistoricalPriceStore:
    """Persistent one-price-per-day ledger for a single series."""

    def __init__(
        self,
        file_path: Path,
        series: str,
        utc_offset_minutes: int = 0,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._file_path = Path(file_path)
        self.series = series
        self.utc_offset_minutes = utc_offset_minutes
        self._clock = clock
        self._entries: dict[str, HistoricalEntry] = {}
        self._memory_only = False
        self._load_history()

    @property
    def memory_only(self) -> bool:
        return self._memory_only

    def today(self) -> date:
        return local_date(self._clock(), self.utc_offset_minutes)

    def _load_history(self):
        try:
            self._entries = self._read()
        except StorageUnavailable as e:
            logging.warning(f"History store {self.series} unreadable, running memory-only: {e}")
            self._memory_only = True

    def _read(self) -> dict[str, HistoricalEntry]:
        if not self._file_path.exists():
            return {}
        try:
            with open(self._file_path, "r") as f:
                data = json.load(f)
            raw_entries = data.get("entries", {})
            return {day: HistoricalEntry(**entry) for day, entry in raw_entries.items()}
        except (OSError, ValueError, TypeError, AttributeError) as e:
            raise StorageUnavailable(f"cannot read {self._file_path}: {e}") from e

    def _write(self):
        payload = {
            "_metadata": {
                "series": self.series,
                "format": "YYYY-MM-DD keys, one entry per day",
                "last_updated": _utc_now().isoformat(),
            },
            "entries": {day: entry.model_dump(mode="json") for day, entry in sorted(self._entries.items())},
        }
        try:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._file_path.with_suffix(".tmp")
            with open(tmp_path, "w") as f:
                json.dump(payload, f, indent=2)
            tmp_path.replace(self._file_path)
        except OSError as e:
            raise StorageUnavailable(f"cannot write {self._file_path}: {e}") from e

    def record_today(self, record: PriceRecord) -> HistoricalEntry:
        """Store today's price, replacing any earlier write for the same day."""
        day = local_date(record.timestamp, self.utc_offset_minutes).isoformat()
        entry = HistoricalEntry(
            date=day,
            price_per_gram=record.prices.per_gram,
            price_per_kilogram=record.prices.per_kilogram,
            international_price=record.international_price,
            exchange_rate=record.exchange_rate,
            source=record.source.value,
            formula_version=record.formula_version,
            recorded_at=_utc_now(),
        )
        self._entries[day] = entry

        # A file that failed to load is never overwritten
        if not self._memory_only:
            try:
                self._write()
            except StorageUnavailable as e:
                logging.warning(f"History store {self.series} not writable, {day} kept in memory until the next write: {e}")
        return entry

    def get_entry(self, day: date | str) -> Optional[HistoricalEntry]:
        key = day.isoformat() if isinstance(day, date) else day
        return self._entries.get(key)

    def is_recorded(self, day: Optional[date] = None) -> bool:
        return self.get_entry(day or self.today()) is not None

    def get_range(self, days: int) -> list[HistoricalEntry]:
        """The most recent `days` entries, most recent last."""
        if days <= 0:
            return []
        return [self._entries[day] for day in sorted(self._entries)][-days:]

    def latest_entry(self) -> Optional[HistoricalEntry]:
        if not self._entries:
            return None
        return self._entries[max(self._entries)]

    def count(self) -> int:
        return len(self._entries)


# ══════════════════════════════════════════════════════════════════════════════
# Change & merge
# ══════════════════════════════════════════════════════════════════════════════

def merge_series(local: list[HistoricalEntry], remote: list[HistoricalEntry]) -> list[HistoricalEntry]:
    """Merge by date; a local entry always wins over a remote one for the same day."""
    merged = {entry.date: entry for entry in remote}
    merged.update({entry.date: entry for entry in local})
    return [merged[day] for day in sorted(merged)]


def compute_change(
    current_price: float,
    today: date,
    store: Optional[HistoricalPriceStore],
    remote_series: Optional[list[HistoricalEntry]] = None,
) -> PriceChange:
    """
    24h change for today's price.

    Yesterday's local entry is preferred. Without one, the last two points of
    the remote series are used. Without either the change is zero and marked
    as having no baseline.
    """
    prior = store.get_entry(today - timedelta(days=1)) if store is not None else None
    if prior is not None:
        change, percent = calculate_change(current_price, prior.price_per_gram)
        return PriceChange(absolute=change, percent=percent, basis=ChangeBasis.local_history)

    if remote_series and len(remote_series) >= 2:
        previous, last = remote_series[-2], remote_series[-1]
        change, percent = calculate_change(last.price_per_gram, previous.price_per_gram)
        return PriceChange(absolute=change, percent=percent, basis=ChangeBasis.remote_series)

    return PriceChange(absolute=0.0, percent=0.0, basis=ChangeBasis.no_baseline)


def simulate_series(current_price: float, days: int, today: date) -> list[HistoricalEntry]:
    """Deterministic placeholder series, used only when no real history exists."""
    entries = []
    recorded_at = _utc_now()
    for days_ago in range(days - 1, -1, -1):
        day = today - timedelta(days=days_ago)
        noise = (((day.day * 17 + (day.month - 1) * 31) % 100) - 50) / 10
        price = max(current_price * 0.90, current_price - days_ago * 0.5 + noise)
        entries.append(
            HistoricalEntry(
                date=day.isoformat(),
                price_per_gram=round(price, 2),
                price_per_kilogram=round(price * 1000, 2),
                source="simulated",
                recorded_at=recorded_at,
            )
        )
    return entries


# ══════════════════════════════════════════════════════════════════════════════
# Intraday extremes
# ══════════════════════════════════════════════════════════════════════════════

class DailyExtremesTracker:
    """
    Open/high/low for the current local day.

    Held in memory and mirrored to a file on a best-effort basis so a restart
    on the same day keeps the range. The high never drops and the low never
    rises within a day.
    """

    def __init__(self, file_path: Path, utc_offset_minutes: int = 0, clock: Callable[[], datetime] = _utc_now):
        self._file_path = Path(file_path)
        self.utc_offset_minutes = utc_offset_minutes
        self._clock = clock
        self._current: Optional[DailyExtremes] = None

    def _today(self) -> str:
        return local_date(self._clock(), self.utc_offset_minutes).isoformat()

    def read(self) -> Optional[DailyExtremes]:
        today = self._today()
        if self._current is not None and self._current.date == today:
            return self._current
        try:
            if self._file_path.exists():
                with open(self._file_path, "r") as f:
                    stored = DailyExtremes(**json.load(f))
                if stored.date == today:
                    self._current = stored
                    return stored
        except (OSError, ValueError, TypeError) as e:
            logging.warning(f"Ignoring unreadable extremes file {self._file_path}: {e}")
        return None

    def update(self, price: float) -> DailyExtremes:
        now = self._clock()
        extremes = self.read()
        if extremes is None:
            extremes = DailyExtremes(
                date=self._today(),
                open=price,
                high=price,
                high_time=now,
                low=price,
                low_time=now,
                last_updated=now,
            )
        else:
            changes: dict = {"last_updated": now}
            if price > extremes.high:
                changes.update(high=price, high_time=now)
            if price < extremes.low:
                changes.update(low=price, low_time=now)
            extremes = extremes.model_copy(update=changes)

        self._current = extremes
        try:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._file_path, "w") as f:
                json.dump(extremes.model_dump(mode="json"), f, indent=2)
        except OSError as e:
            logging.debug(f"Extremes kept in memory only: {e}")
        return extremes
