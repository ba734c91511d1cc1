#!/usr/bin/env python3
"""
Tests for the result cache: entry serialization, freshness classification,
timestamp ordering and best-effort writes
"""

import asyncio
import sys
from datetime import datetime, timezone

from cheapmatch.models.schemas import Currency, MatchResult
from cheapmatch.services.result_cache import (
    CacheEntry,
    CacheState,
    InMemoryResultStore,
    ResultCache
)
from fakes import FailingStore, FakeClock

HOUR = 3600


def sample_match(**overrides) -> MatchResult:
    values = dict(
        title="Sony WH-1000XM4 Wireless Headphones",
        price=80.0,
        currency=Currency.USD,
        savings=20.0,
        destination_url="https://shop.test/item/A1",
        image_url="https://img.test/a1.jpg",
        candidate_id="A1",
        confidence=92.5,
    )
    values.update(overrides)
    return MatchResult(**values)


def test_entry_round_trip():
    """Stored and reloaded entries keep every field; timestamps move forward."""
    print("Testing cache entry round trip...")

    clock = FakeClock()
    store = InMemoryResultStore()
    cache = ResultCache(store, clock=clock)

    async def run():
        written = await cache.store_match("X123", Currency.USD, sample_match())
        loaded = await store.get("X123", Currency.USD)

        rewritten = await cache.store_match("X123", Currency.USD, sample_match(), previous=loaded)
        reloaded = await store.get("X123", Currency.USD)

        negative = await cache.store_no_match("Y999", Currency.CAD)
        negative_loaded = await store.get("Y999", Currency.CAD)
        return written, loaded, rewritten, reloaded, negative, negative_loaded

    written, loaded, rewritten, reloaded, negative, negative_loaded = asyncio.run(run())

    assert loaded == written
    assert loaded.match == sample_match()
    assert loaded.found
    print("  ✓ Positive entry round trip")

    # The clock did not move, timestamps still strictly increase
    assert reloaded.match == loaded.match
    assert reloaded.last_checked > loaded.last_checked
    assert reloaded.updated_at > loaded.updated_at
    assert rewritten == reloaded
    print("  ✓ Timestamps strictly increase on rewrite")

    assert negative_loaded == negative
    assert not negative_loaded.found
    assert negative_loaded.match is None
    assert negative_loaded.currency == Currency.CAD
    print("  ✓ Negative entry round trip")
    print("✓ Round trip tests passed\n")


def test_row_format():
    print("Testing row format...")

    clock = FakeClock()
    entry = CacheEntry(
        source_item_id="X123",
        currency=Currency.USD,
        match=sample_match(),
        last_checked=clock(),
        updated_at=clock(),
    )
    row = entry.to_row()

    assert row["source_item_id"] == "X123"
    assert row["currency"] == "USD"
    assert row["found"] is True
    assert row["match"]["candidate_id"] == "A1"
    assert row["match"]["currency"] == "USD"
    assert CacheEntry.from_row(row) == entry

    # Database timestamps come back with a Z suffix
    row["last_checked"] = "2025-01-01T12:00:00Z"
    assert CacheEntry.from_row(row).last_checked == clock()

    broken = dict(row, match=None)
    try:
        CacheEntry.from_row(broken)
        assert False, "positive row without payload should be rejected"
    except ValueError:
        pass
    print("✓ Row format tests passed\n")


def test_freshness_windows():
    """Positive entries are fresh for 12h, negative ones for 24h."""
    print("Testing freshness windows...")

    clock = FakeClock()
    cache = ResultCache(InMemoryResultStore(), clock=clock)

    async def lookup_states():
        await cache.store_match("P", Currency.USD, sample_match())
        await cache.store_no_match("N", Currency.USD)

        states = []
        for hours in (1, 11, 1, 11, 1):
            clock.advance(hours=hours)
            positive = await cache.lookup("P", Currency.USD)
            negative = await cache.lookup("N", Currency.USD)
            states.append((positive.state, negative.state))
        missing = await cache.lookup("P", Currency.CAD)
        return states, missing

    states, missing = asyncio.run(lookup_states())

    # Ages: 1h, 12h, 13h, 24h, 25h
    assert states[0] == (CacheState.FRESH_POSITIVE, CacheState.FRESH_NEGATIVE)
    assert states[1] == (CacheState.STALE_POSITIVE, CacheState.FRESH_NEGATIVE)
    assert states[2] == (CacheState.STALE_POSITIVE, CacheState.FRESH_NEGATIVE)
    assert states[3] == (CacheState.STALE_POSITIVE, CacheState.STALE_NEGATIVE)
    assert states[4] == (CacheState.STALE_POSITIVE, CacheState.STALE_NEGATIVE)
    print("  ✓ Windows honored")

    # Currency is part of the key
    assert missing.state == CacheState.MISS
    assert missing.entry is None
    print("✓ Freshness window tests passed\n")


def test_write_failure_is_absorbed():
    """A failing store never fails the caller."""
    print("Testing write failures...")

    cache = ResultCache(FailingStore(), clock=FakeClock())

    async def run():
        entry = await cache.store_match("X123", Currency.USD, sample_match())
        lookup = await cache.lookup("X123", Currency.USD)
        return entry, lookup

    entry, lookup = asyncio.run(run())
    assert entry.match == sample_match()
    assert lookup.state == CacheState.MISS
    assert cache.write_failures == 1
    print("✓ Write failure tests passed\n")


def test_database_timestamp_precision():
    """Trimmed fractional seconds from Postgres parse like full ones."""
    print("Testing database timestamp precision...")

    row = CacheEntry(
        source_item_id="X123",
        currency=Currency.USD,
        match=None,
        last_checked=FakeClock()(),
        updated_at=FakeClock()(),
    ).to_row()

    expected = datetime(2025, 1, 1, 12, 0, 0, 123450, tzinfo=timezone.utc)
    for value in (
        "2025-01-01T12:00:00.12345+00:00",
        "2025-01-01 12:00:00.12345+00:00",
        "2025-01-01T12:00:00.12345Z",
        "2025-01-01T12:00:00.12345",
    ):
        entry = CacheEntry.from_row(dict(row, last_checked=value, updated_at=value))
        assert entry.last_checked == expected, value
        assert entry.last_checked.tzinfo is not None
    print("  ✓ Five-digit fractions")

    entry = CacheEntry.from_row(dict(row, last_checked="2025-01-01T12:00:00.1+00:00"))
    assert entry.last_checked == datetime(2025, 1, 1, 12, 0, 0, 100000, tzinfo=timezone.utc)
    entry = CacheEntry.from_row(dict(row, last_checked="2025-01-01T12:00:00+00:00"))
    assert entry.last_checked == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    print("  ✓ One-digit and whole-second values")

    try:
        CacheEntry.from_row(dict(row, last_checked="yesterday"))
        assert False, "unparseable timestamp should be rejected"
    except ValueError:
        pass
    print("✓ Timestamp precision tests passed\n")


def test_recent_keys_are_bounded():
    """Per-key timestamp floors are kept for a bounded number of keys."""
    print("Testing recent key bound...")

    clock = FakeClock()
    cache = ResultCache(InMemoryResultStore(), clock=clock, recent_key_capacity=3)

    async def run():
        for i in range(50):
            await cache.store_no_match(f"K{i}", Currency.USD)
        first = await cache.store_no_match("K49", Currency.USD)
        second = await cache.store_no_match("K49", Currency.USD)
        return first, second

    first, second = asyncio.run(run())

    assert len(cache._last_written) == 3
    assert list(cache._last_written) == [("K47", "USD"), ("K48", "USD"), ("K49", "USD")]
    # Recently written keys still get strictly increasing timestamps
    assert second.updated_at > first.updated_at
    print("✓ Recent key bound tests passed\n")


def run_all_tests():
    """Run all result cache tests."""
    print("=" * 60)
    print("RESULT CACHE - UNIT TESTS")
    print("=" * 60)
    print()

    try:
        test_entry_round_trip()
        test_row_format()
        test_freshness_windows()
        test_write_failure_is_absorbed()
        test_database_timestamp_precision()
        test_recent_keys_are_bounded()

        print("=" * 60)
        print("ALL TESTS PASSED!")
        print("=" * 60)
        return 0

    except AssertionError as e:
        print(f"\n✗ TEST FAILED: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(run_all_tests())
