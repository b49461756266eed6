"""
Time-boxed price cache.

Entries live in a plain string key-value storage as JSON envelopes
{"data": ..., "timestamp": ...}. Expiry is lazy: an entry older than the TTL
is dropped when read. Anything unparseable is a miss, never an error.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional


# ══════════════════════════════════════════════════════════════════════════════
# Storage backends
# ══════════════════════════════════════════════════════════════════════════════

class KeyValueStorage(ABC):
    """String-to-string storage, the shape of a browser's localStorage."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove_item(self, key: str) -> None:
        raise NotImplementedError


class MemoryStorage(KeyValueStorage):
    def __init__(self):
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage(KeyValueStorage):
    """
    Single JSON file of key -> string, rewritten on every change.

    An unreadable file counts as empty, so the next write replaces it.
    """

    def __init__(self, file_path: Path):
        self._file_path = Path(file_path)

    def _load(self) -> dict[str, str]:
        if not self._file_path.exists():
            return {}
        try:
            with open(self._file_path, "r") as f:
                data = json.load(f)
        except ValueError as e:
            logging.warning(f"Cache file {self._file_path} is corrupt, treating as empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, items: dict[str, str]) -> None:
        self._file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._file_path, "w") as f:
            json.dump(items, f)

    def get_item(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = value
        self._save(items)

    def remove_item(self, key: str) -> None:
        items = self._load()
        if items.pop(key, None) is not None:
            self._save(items)


# ══════════════════════════════════════════════════════════════════════════════
# Caches
# ══════════════════════════════════════════════════════════════════════════════

class PriceCache(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    @abstractmethod
    def age_seconds(self, key: str) -> Optional[int]:
        raise NotImplementedError


class NullCache(PriceCache):
    """Never stores anything."""

    def get(self, key: str) -> Optional[Any]:
        return None

    def set(self, key: str, value: Any) -> None:
        return None

    def age_seconds(self, key: str) -> Optional[int]:
        return None


def _is_timestamp(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TTLCache(PriceCache):
    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
        namespace: str = "metalrates",
    ):
        self._storage = storage or MemoryStorage()
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def _read_envelope(self, key: str) -> Optional[dict]:
        try:
            raw = self._storage.get_item(self._key(key))
        except (OSError, ValueError) as e:
            logging.warning(f"Cache storage read failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
        except ValueError:
            logging.warning(f"Discarding corrupt cache entry {key}")
            self._remove(key)
            return None
        if not isinstance(envelope, dict) or "data" not in envelope or not _is_timestamp(envelope.get("timestamp")):
            logging.warning(f"Discarding malformed cache entry {key}")
            self._remove(key)
            return None
        return envelope

    def _remove(self, key: str) -> None:
        try:
            self._storage.remove_item(self._key(key))
        except (OSError, ValueError) as e:
            logging.warning(f"Cache storage remove failed for {key}: {e}")

    def get(self, key: str) -> Optional[Any]:
        envelope = self._read_envelope(key)
        if envelope is None:
            return None
        if self._clock() - envelope["timestamp"] >= self.ttl_seconds:
            self._remove(key)
            return None
        return envelope["data"]

    def set(self, key: str, value: Any) -> None:
        try:
            self._storage.set_item(self._key(key), json.dumps({"data": value, "timestamp": self._clock()}))
        except (OSError, TypeError, ValueError) as e:
            logging.warning(f"Cache storage write failed for {key}: {e}")

    def age_seconds(self, key: str) -> Optional[int]:
        """Seconds since a live entry was stored; None when absent or expired."""
        envelope = self._read_envelope(key)
        if envelope is None:
            return None
        age = self._clock() - envelope["timestamp"]
        if age >= self.ttl_seconds:
            return None
        return int(age)


# ══════════════════════════════════════════════════════════════════════════════
# Periodic refresh
# ══════════════════════════════════════════════════════════════════════════════

class PriceRefresher:
    """
    Repeating refresh timer for a long-lived consumer.

    stop() cancels the loop; a fetch that completes after stop() is dropped
    instead of being delivered.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Any]],
        on_update: Callable[[Any], None],
        interval_seconds: float,
    ):
        self._fetch = fetch
        self._on_update = on_update
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stopped = True

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while not self._stopped:
            try:
                result = await self._fetch()
            except Exception as e:
                logging.warning(f"Price refresh failed: {str(e)}")
            else:
                if not self._stopped:
                    try:
                        self._on_update(result)
                    except Exception as e:
                        logging.error(f"Price refresh callback failed: {str(e)}")
            await asyncio.sleep(self.interval_seconds)

    async def stop(self) -> None:
        self._stopped = True
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
