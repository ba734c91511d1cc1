"""
Freshness-aware cache of comparison outcomes.

One entry per (source_item_id, currency). An entry is either positive (a
MatchResult) or negative (a confirmed "no match"), and carries two
timestamps: `last_checked` (when the outcome was last confirmed) and
`updated_at` (when the row was last written).

Freshness windows:
    - positive: 12 hours, then a single-item refresh is attempted
    - negative: 24 hours, then the full waterfall runs again

Writes are best-effort: a CacheWriteError from the store is logged and the
caller still gets its in-memory result.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from pydantic import TypeAdapter

from cheapmatch.models.schemas import Currency, MatchResult
from cheapmatch.services.errors import CacheWriteError

logger = logging.getLogger(__name__)

TIMESTAMP_STEP = timedelta(microseconds=1)

_DATETIME = TypeAdapter(datetime)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    """
    Database timestamps as aware datetimes.

    Postgres trims trailing zeros from fractional seconds, so any precision
    from 0 to 6 digits must be accepted. Naive values are taken as UTC.
    """
    parsed = _DATETIME.validate_python(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class CacheState(str, Enum):
    """Classification of a lookup against the freshness windows."""
    MISS = "miss"
    FRESH_POSITIVE = "fresh_positive"
    STALE_POSITIVE = "stale_positive"
    FRESH_NEGATIVE = "fresh_negative"
    STALE_NEGATIVE = "stale_negative"


@dataclass
class CacheEntry:
    """Cached outcome for one (source_item_id, currency) key."""
    source_item_id: str
    currency: Currency
    match: Optional[MatchResult]
    last_checked: datetime
    updated_at: datetime

    @property
    def found(self) -> bool:
        return self.match is not None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source_item_id, self.currency.value)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.last_checked).total_seconds()

    def to_row(self) -> Dict[str, Any]:
        """Serialize for the `match_cache` table."""
        return {
            "source_item_id": self.source_item_id,
            "currency": self.currency.value,
            "found": self.found,
            "match": self.match.model_dump(mode="json") if self.match else None,
            "last_checked": self.last_checked.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CacheEntry":
        """Parse a `match_cache` row; a positive row without a payload is invalid."""
        found = bool(row.get("found"))
        payload = row.get("match")
        if found and not payload:
            raise ValueError(f"positive cache row for {row.get('source_item_id')} has no match payload")

        return cls(
            source_item_id=str(row["source_item_id"]),
            currency=Currency(row["currency"]),
            match=MatchResult.model_validate(payload) if found else None,
            last_checked=_parse_timestamp(row["last_checked"]),
            updated_at=_parse_timestamp(row["updated_at"]),
        )


class ResultStore(Protocol):
    """Persistence for cache entries; upserts must be atomic per key."""
    name: str

    async def get(self, source_item_id: str, currency: Currency) -> Optional[CacheEntry]:
        ...

    async def upsert(self, entry: CacheEntry) -> None:
        ...

    def is_connected(self) -> bool:
        ...


class InMemoryResultStore:
    """
    Process-local store used when no database is configured.

    Rows are kept in their serialized form so reads go through the same
    parsing path as the database store.
    """

    name = "memory"

    def __init__(self):
        self._rows: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, source_item_id: str, currency: Currency) -> Optional[CacheEntry]:
        row = self._rows.get((source_item_id, currency.value))
        return CacheEntry.from_row(row) if row else None

    async def upsert(self, entry: CacheEntry) -> None:
        async with self._lock:
            self._rows[entry.key] = entry.to_row()

    def is_connected(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._rows)


@dataclass
class CacheLookup:
    state: CacheState
    entry: Optional[CacheEntry] = None


class ResultCache:
    """
    Freshness logic on top of a ResultStore.

    Usage:
        lookup = await cache.lookup("B08N5WRWNW", Currency.USD)
        if lookup.state == CacheState.FRESH_POSITIVE:
            return lookup.entry.match
    """

    def __init__(
        self,
        store: ResultStore,
        positive_ttl_seconds: int = 12 * 3600,
        negative_ttl_seconds: int = 24 * 3600,
        clock: Callable[[], datetime] = utc_now,
        recent_key_capacity: int = 10_000
    ):
        self.store = store
        self.positive_ttl_seconds = positive_ttl_seconds
        self.negative_ttl_seconds = negative_ttl_seconds
        self._clock = clock
        # Last timestamp handed out per key, LRU-bounded
        self.recent_key_capacity = recent_key_capacity
        self._last_written: "OrderedDict[Tuple[str, str], datetime]" = OrderedDict()
        self.write_failures = 0

    def classify(self, entry: Optional[CacheEntry], now: Optional[datetime] = None) -> CacheState:
        """Place an entry in its freshness bucket."""
        if entry is None:
            return CacheState.MISS

        age = entry.age_seconds(now or self._clock())
        if entry.found:
            return CacheState.FRESH_POSITIVE if age < self.positive_ttl_seconds else CacheState.STALE_POSITIVE
        return CacheState.FRESH_NEGATIVE if age < self.negative_ttl_seconds else CacheState.STALE_NEGATIVE

    async def lookup(self, source_item_id: str, currency: Currency) -> CacheLookup:
        entry = await self.store.get(source_item_id, currency)
        state = self.classify(entry)
        logger.debug(f"[Cache] {source_item_id}/{currency.value}: {state.value}")
        return CacheLookup(state=state, entry=entry)

    def _next_timestamp(self, key: Tuple[str, str], previous: Optional[CacheEntry]) -> datetime:
        """Current time, bumped past every earlier write for this key."""
        now = self._clock()
        floors = [self._last_written.get(key)]
        if previous is not None:
            floors += [previous.last_checked, previous.updated_at]
        floor = max((f for f in floors if f is not None), default=None)
        if floor is not None and now <= floor:
            now = floor + TIMESTAMP_STEP
        self._last_written[key] = now
        self._last_written.move_to_end(key)
        while len(self._last_written) > self.recent_key_capacity:
            self._last_written.popitem(last=False)
        return now

    async def _write(
        self,
        source_item_id: str,
        currency: Currency,
        match: Optional[MatchResult],
        previous: Optional[CacheEntry]
    ) -> CacheEntry:
        timestamp = self._next_timestamp((source_item_id, currency.value), previous)
        entry = CacheEntry(
            source_item_id=source_item_id,
            currency=currency,
            match=match,
            last_checked=timestamp,
            updated_at=timestamp,
        )
        try:
            await self.store.upsert(entry)
        except CacheWriteError as e:
            self.write_failures += 1
            logger.error(f"Cache write failed for {source_item_id}/{currency.value}: {e}")
        return entry

    async def store_match(
        self,
        source_item_id: str,
        currency: Currency,
        match: MatchResult,
        previous: Optional[CacheEntry] = None
    ) -> CacheEntry:
        """Write (or overwrite) a positive entry."""
        return await self._write(source_item_id, currency, match, previous)

    async def store_no_match(
        self,
        source_item_id: str,
        currency: Currency,
        previous: Optional[CacheEntry] = None
    ) -> CacheEntry:
        """Write (or overwrite) a negative entry."""
        return await self._write(source_item_id, currency, None, previous)
