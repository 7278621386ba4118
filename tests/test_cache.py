"""
Tests for the single-slot weather cache and its slot stores.
Time is driven by a fake millisecond clock; Redis is mocked.
"""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis

from weather_core.errors import StorageUnreadable
from weather_core.services.cache import (
    MAX_AGE_MINUTES,
    CacheEntry,
    FileSlotStore,
    MemorySlotStore,
    RedisSlotStore,
    WeatherCache,
    build_slot_store,
)

TTL = 600_000
START = 1_700_000_000_000
PAYLOAD = json.dumps({"name": "London", "main": {"temp": 15.0}})


class FakeClock:
    def __init__(self, now: int = START):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class BrokenStore(MemorySlotStore):
    async def read(self):
        raise StorageUnreadable("disk gone")

    async def write(self, entry):
        raise StorageUnreadable("disk full")

    async def delete(self):
        raise StorageUnreadable("read-only")


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def cache(clock):
    return WeatherCache(MemorySlotStore(), ttl_ms=TTL, clock=clock)


# ---------------------------------------------------------------------------
# Freshness window
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_get_right_after_put(cache):
    await cache.put("london:metric", PAYLOAD)
    assert await cache.get("london:metric") == PAYLOAD
    assert await cache.is_valid("london:metric") is True


@pytest.mark.asyncio
async def test_entry_valid_one_ms_before_ttl(cache, clock):
    await cache.put("london:metric", PAYLOAD)
    clock.advance(TTL - 1)
    assert await cache.get("london:metric") == PAYLOAD


@pytest.mark.asyncio
async def test_entry_expired_at_ttl_boundary(cache, clock):
    await cache.put("london:metric", PAYLOAD)
    clock.advance(TTL)
    assert await cache.get("london:metric") is None
    assert await cache.is_valid("london:metric") is False


@pytest.mark.asyncio
async def test_entry_expired_after_ttl(cache, clock):
    await cache.put("london:metric", PAYLOAD)
    clock.advance(TTL * 3)
    assert await cache.get("london:metric") is None


def test_default_ttl_is_ten_minutes():
    assert WeatherCache().ttl_ms == 600_000


# ---------------------------------------------------------------------------
# Fingerprint matching and the single slot
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_other_fingerprint_misses_within_ttl(cache):
    await cache.put("citya:metric", PAYLOAD)
    assert await cache.get("cityb:metric") is None
    assert await cache.is_valid("cityb:metric") is False


@pytest.mark.asyncio
async def test_put_replaces_previous_entry(cache):
    await cache.put("citya:metric", "v1")
    await cache.put("cityb:metric", "v2")
    assert await cache.get("citya:metric") is None
    assert await cache.get("cityb:metric") == "v2"


@pytest.mark.asyncio
async def test_put_same_fingerprint_restarts_window(cache, clock):
    await cache.put("london:metric", "old")
    clock.advance(TTL - 10)
    await cache.put("london:metric", "new")
    clock.advance(TTL - 10)
    assert await cache.get("london:metric") == "new"


@pytest.mark.asyncio
async def test_get_entry_allow_stale_ignores_ttl(cache, clock):
    await cache.put("london:metric", PAYLOAD)
    clock.advance(TTL + 1)
    assert await cache.get_entry("london:metric") is None
    stale = await cache.get_entry("london:metric", allow_stale=True)
    assert stale == CacheEntry("london:metric", PAYLOAD, START)


@pytest.mark.asyncio
async def test_get_entry_allow_stale_still_checks_fingerprint(cache):
    await cache.put("london:metric", PAYLOAD)
    assert await cache.get_entry("paris:metric", allow_stale=True) is None


# ---------------------------------------------------------------------------
# Clear and age
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_clear_resets_state(cache):
    await cache.put("london:metric", PAYLOAD)
    await cache.clear()
    assert await cache.is_valid("london:metric") is False
    assert await cache.get("london:metric") is None
    assert await cache.age_minutes() == MAX_AGE_MINUTES


@pytest.mark.asyncio
async def test_age_minutes_on_empty_cache(cache):
    assert await cache.age_minutes() == MAX_AGE_MINUTES


@pytest.mark.asyncio
async def test_age_minutes_counts_whole_minutes(cache, clock):
    await cache.put("london:metric", PAYLOAD)
    assert await cache.age_minutes() == 0
    clock.advance(59_999)
    assert await cache.age_minutes() == 0
    clock.advance(1)
    assert await cache.age_minutes() == 1
    clock.advance(4 * 60_000 + 30_000)
    assert await cache.age_minutes() == 5


# ---------------------------------------------------------------------------
# Storage faults never escape
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unreadable_store_behaves_as_empty(clock):
    cache = WeatherCache(BrokenStore(), ttl_ms=TTL, clock=clock)
    await cache.put("london:metric", PAYLOAD)
    assert await cache.get("london:metric") is None
    assert await cache.is_valid("london:metric") is False
    assert await cache.age_minutes() == MAX_AGE_MINUTES
    await cache.clear()


# ---------------------------------------------------------------------------
# File slot store
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_file_store_survives_new_cache_instance(tmp_path, clock):
    path = str(tmp_path / "slot.json")
    await WeatherCache(FileSlotStore(path), ttl_ms=TTL, clock=clock).put("london:metric", PAYLOAD)

    reopened = WeatherCache(FileSlotStore(path), ttl_ms=TTL, clock=clock)
    assert await reopened.get("london:metric") == PAYLOAD


@pytest.mark.asyncio
async def test_file_store_read_missing_file(tmp_path):
    assert await FileSlotStore(str(tmp_path / "absent.json")).read() is None


@pytest.mark.asyncio
async def test_file_store_corrupt_file_raises_unreadable(tmp_path):
    path = tmp_path / "slot.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageUnreadable):
        await FileSlotStore(str(path)).read()


@pytest.mark.asyncio
async def test_file_store_corrupt_file_is_a_cache_miss(tmp_path, clock):
    path = tmp_path / "slot.json"
    path.write_text('{"fingerprint": "london:metric"}', encoding="utf-8")
    cache = WeatherCache(FileSlotStore(str(path)), ttl_ms=TTL, clock=clock)
    assert await cache.get("london:metric") is None


# Well-formed JSON (or JSON-like text) that still is not a usable slot.
MALFORMED_SLOTS = [
    pytest.param('{"fingerprint": "london:metric", "payload": "x", "stored_at": Infinity}', id="infinite-stored-at"),
    pytest.param('{"fingerprint": "london:metric", "payload": "x", "stored_at": NaN}', id="nan-stored-at"),
    pytest.param('{"fingerprint": "london:metric", "payload": "x", "stored_at": "soon"}', id="text-stored-at"),
    pytest.param(
        '{"fingerprint": "london:metric", "payload": {"temp": 15}, "stored_at": 1700000000000}', id="object-payload"
    ),
    pytest.param('{"fingerprint": "london:metric", "payload": 42, "stored_at": 1700000000000}', id="number-payload"),
    pytest.param('{"fingerprint": ["london"], "payload": "x", "stored_at": 1700000000000}', id="list-fingerprint"),
    pytest.param('["london:metric", "x", 1700000000000]', id="top-level-list"),
    pytest.param("[" * 200_000, id="deeply-nested"),
]


@pytest.mark.parametrize("raw", MALFORMED_SLOTS)
def test_malformed_slot_decodes_to_unreadable(raw):
    with pytest.raises(StorageUnreadable):
        CacheEntry.from_json(raw)


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", MALFORMED_SLOTS)
async def test_file_store_malformed_slot_is_a_cache_miss(tmp_path, clock, raw):
    path = tmp_path / "slot.json"
    path.write_text(raw, encoding="utf-8")
    cache = WeatherCache(FileSlotStore(str(path)), ttl_ms=TTL, clock=clock)

    assert await cache.get("london:metric") is None
    assert await cache.is_valid("london:metric") is False
    assert await cache.age_minutes() == MAX_AGE_MINUTES


@pytest.mark.asyncio
async def test_file_store_delete(tmp_path):
    store = FileSlotStore(str(tmp_path / "slot.json"))
    await store.write(CacheEntry("london:metric", PAYLOAD, START))
    await store.delete()
    assert await store.read() is None
    await store.delete()


# ---------------------------------------------------------------------------
# Redis slot store
# ---------------------------------------------------------------------------

def _redis_client(raw=None):
    client = MagicMock()
    client.get = AsyncMock(return_value=raw)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    return client


@pytest.mark.asyncio
async def test_redis_store_writes_json_slot():
    client = _redis_client()
    store = RedisSlotStore("redis://unused", key="slot", client=client)
    await store.write(CacheEntry("london:metric", PAYLOAD, START))

    key, raw = client.set.await_args.args
    assert key == "slot"
    assert json.loads(raw) == {"fingerprint": "london:metric", "payload": PAYLOAD, "stored_at": START}


@pytest.mark.asyncio
async def test_redis_store_reads_slot():
    raw = CacheEntry("london:metric", PAYLOAD, START).to_json()
    store = RedisSlotStore("redis://unused", client=_redis_client(raw))
    assert await store.read() == CacheEntry("london:metric", PAYLOAD, START)


@pytest.mark.asyncio
async def test_redis_store_empty_key():
    store = RedisSlotStore("redis://unused", client=_redis_client(None))
    assert await store.read() is None


@pytest.mark.asyncio
async def test_redis_connection_error_is_a_cache_miss(clock):
    client = _redis_client()
    client.get.side_effect = redis.ConnectionError("refused")
    client.set.side_effect = redis.ConnectionError("refused")
    cache = WeatherCache(RedisSlotStore("redis://unused", client=client), ttl_ms=TTL, clock=clock)

    await cache.put("london:metric", PAYLOAD)
    assert await cache.get("london:metric") is None
    assert await cache.age_minutes() == MAX_AGE_MINUTES


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", MALFORMED_SLOTS)
async def test_redis_malformed_slot_is_a_cache_miss(clock, raw):
    store = RedisSlotStore("redis://unused", client=_redis_client(raw))
    with pytest.raises(StorageUnreadable):
        await store.read()

    cache = WeatherCache(store, ttl_ms=TTL, clock=clock)
    assert await cache.get("london:metric") is None
    assert await cache.is_valid("london:metric") is False


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------

def test_build_slot_store(tmp_path):
    assert isinstance(build_slot_store("memory"), MemorySlotStore)
    file_store = build_slot_store("file", path=str(tmp_path / "x.json"))
    assert isinstance(file_store, FileSlotStore)
    assert isinstance(build_slot_store("redis"), RedisSlotStore)


def test_build_slot_store_unknown_backend():
    with pytest.raises(ValueError):
        build_slot_store("sqlite")
