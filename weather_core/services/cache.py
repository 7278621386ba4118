import asyncio
import json
import logging
import sys
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Optional

import redis
import redis.asyncio as aioredis

from weather_core.errors import StorageUnreadable

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 10 * 60 * 1000
MAX_AGE_MINUTES = sys.maxsize


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    payload: str
    stored_at: int

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        """Decode a stored slot; any malformed document raises ``StorageUnreadable``."""
        try:
            obj = json.loads(raw)
            fingerprint, payload, stored_at = obj["fingerprint"], obj["payload"], obj["stored_at"]
            if not isinstance(fingerprint, str) or not isinstance(payload, str):
                raise TypeError("fingerprint and payload must be strings")
            if isinstance(stored_at, bool) or not isinstance(stored_at, (int, float)):
                raise TypeError(f"stored_at must be a number, got {type(stored_at).__name__}")
            stored_at = int(stored_at)
        except (ValueError, KeyError, TypeError, OverflowError, RecursionError) as exc:
            raise StorageUnreadable(f"Corrupt cache slot: {exc}") from exc
        return cls(fingerprint=fingerprint, payload=payload, stored_at=stored_at)


class SlotStore:
    """Durable home of the single cache slot.

    Implementations raise ``StorageUnreadable`` for any I/O or decode fault.
    """

    async def read(self) -> Optional[CacheEntry]:
        raise NotImplementedError

    async def write(self, entry: CacheEntry) -> None:
        raise NotImplementedError

    async def delete(self) -> None:
        raise NotImplementedError


class MemorySlotStore(SlotStore):
    def __init__(self):
        self._entry: Optional[CacheEntry] = None

    async def read(self) -> Optional[CacheEntry]:
        return self._entry

    async def write(self, entry: CacheEntry) -> None:
        self._entry = entry

    async def delete(self) -> None:
        self._entry = None


class FileSlotStore(SlotStore):
    """Keeps the slot as a small JSON document on local disk."""

    def __init__(self, path: str):
        self.path = Path(path)

    def _read(self) -> Optional[CacheEntry]:
        if not self.path.exists():
            return None
        return CacheEntry.from_json(self.path.read_text(encoding="utf-8"))

    def _write(self, entry: CacheEntry) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(entry.to_json(), encoding="utf-8")
        tmp.replace(self.path)

    async def read(self) -> Optional[CacheEntry]:
        try:
            return await asyncio.to_thread(self._read)
        except (OSError, ValueError) as exc:
            raise StorageUnreadable(f"Cannot read {self.path}: {exc}") from exc

    async def write(self, entry: CacheEntry) -> None:
        try:
            await asyncio.to_thread(self._write, entry)
        except OSError as exc:
            raise StorageUnreadable(f"Cannot write {self.path}: {exc}") from exc

    async def delete(self) -> None:
        try:
            await asyncio.to_thread(self.path.unlink, missing_ok=True)
        except OSError as exc:
            raise StorageUnreadable(f"Cannot delete {self.path}: {exc}") from exc


class RedisSlotStore(SlotStore):
    """
    Stores the slot as JSON under a single key:
      key -> {"fingerprint": ..., "payload": ..., "stored_at": <ms>}
    """

    def __init__(self, redis_url: str, key: str = "weather_cache:slot", client=None):
        self.client = client or aioredis.from_url(redis_url, decode_responses=True)
        self.key = key

    async def read(self) -> Optional[CacheEntry]:
        try:
            raw = await self.client.get(self.key)
        except redis.RedisError as exc:
            raise StorageUnreadable(f"Redis read failed: {exc}") from exc
        if not raw:
            return None
        return CacheEntry.from_json(raw)

    async def write(self, entry: CacheEntry) -> None:
        try:
            await self.client.set(self.key, entry.to_json())
        except redis.RedisError as exc:
            raise StorageUnreadable(f"Redis write failed: {exc}") from exc

    async def delete(self) -> None:
        try:
            await self.client.delete(self.key)
        except redis.RedisError as exc:
            raise StorageUnreadable(f"Redis delete failed: {exc}") from exc


def build_slot_store(
    backend: str,
    *,
    path: str = ".weather_cache.json",
    redis_url: str = "redis://localhost:6379/0",
    key: str = "weather_cache:slot",
) -> SlotStore:
    if backend == "memory":
        return MemorySlotStore()
    if backend == "file":
        return FileSlotStore(path)
    if backend == "redis":
        return RedisSlotStore(redis_url, key=key)
    raise ValueError(f"Unknown cache backend: {backend!r}")


class WeatherCache:
    """Single-slot, time-boxed cache of one weather payload.

    A ``put`` replaces whatever was stored, so only the most recent query is
    ever cached. Nothing here raises on storage faults: reads degrade to a
    miss and writes are logged and dropped.

    The cache does no locking of its own; callers running several tasks
    must serialize access.
    """

    def __init__(
        self,
        store: Optional[SlotStore] = None,
        ttl_ms: int = DEFAULT_TTL_MS,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.store = store or MemorySlotStore()
        self.ttl_ms = ttl_ms
        self._clock = clock

    async def _read(self) -> Optional[CacheEntry]:
        try:
            return await self.store.read()
        except StorageUnreadable as exc:
            logger.warning("Weather cache unreadable, treating as empty: %s", exc)
            return None

    def now_ms(self) -> int:
        return self._clock()

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return self.now_ms() - entry.stored_at < self.ttl_ms

    async def put(self, fingerprint: str, payload: str) -> None:
        entry = CacheEntry(fingerprint=fingerprint, payload=payload, stored_at=self.now_ms())
        try:
            await self.store.write(entry)
        except StorageUnreadable as exc:
            logger.warning("Failed to store weather for %s: %s", fingerprint, exc)
            return
        logger.debug("Cached weather for %s", fingerprint)

    async def get_entry(self, fingerprint: str, allow_stale: bool = False) -> Optional[CacheEntry]:
        entry = await self._read()
        if entry is None or entry.fingerprint != fingerprint:
            return None
        if not allow_stale and not self._is_fresh(entry):
            return None
        return entry

    async def get(self, fingerprint: str) -> Optional[str]:
        entry = await self.get_entry(fingerprint)
        return entry.payload if entry is not None else None

    async def is_valid(self, fingerprint: str) -> bool:
        return await self.get_entry(fingerprint) is not None

    async def clear(self) -> None:
        try:
            await self.store.delete()
        except StorageUnreadable as exc:
            logger.warning("Failed to clear weather cache: %s", exc)

    async def age_minutes(self) -> int:
        entry = await self._read()
        if entry is None:
            return MAX_AGE_MINUTES
        return max(0, self.now_ms() - entry.stored_at) // 60_000
