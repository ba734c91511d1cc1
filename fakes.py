"""
In-memory stand-ins for the external collaborators of the match engine.
Shared by the test modules; no network access.
"""

import io
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from PIL import Image

from cheapmatch.config import Settings
from cheapmatch.models.schemas import Candidate, Currency, SourceItem
from cheapmatch.services.ai_validator import SemanticVerdict
from cheapmatch.services.errors import CacheWriteError
from cheapmatch.services.keyword_extractor import KeywordExtractor
from cheapmatch.services.match_engine import MatchEngine
from cheapmatch.services.result_cache import InMemoryResultStore, ResultCache
from cheapmatch.services.scoring import LocalScorer


def make_settings(**overrides) -> Settings:
    values = dict(
        catalog_app_key="app-key",
        catalog_app_secret="app-secret",
        catalog_tracking_id="tracking-id",
        catalog_gateway_url="https://gateway.test/sync",
    )
    values.update(overrides)
    return Settings(**values)


def make_source(**overrides) -> SourceItem:
    values = dict(
        id="X123",
        title="Sony WH-1000XM4 Wireless Headphones Black",
        price=100.0,
        currency=Currency.USD,
        image_url="https://img.test/source.jpg",
    )
    values.update(overrides)
    return SourceItem(**values)


def make_candidate(id: str, title: str, price: float, image_url: str = "", **overrides) -> Candidate:
    values = dict(
        id=id,
        title=title,
        price=price,
        currency=Currency.USD,
        image_url=image_url,
        destination_url=f"https://shop.test/item/{id}",
    )
    values.update(overrides)
    return Candidate(**values)


def half_image_bytes(inverted: bool = False, size: int = 64) -> bytes:
    """PNG that is black on the left half and white on the right (or the reverse)."""
    img = Image.new("L", (size, size), color=255 if inverted else 0)
    img.paste(0 if inverted else 255, (size // 2, 0, size, size))
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


class FakeClock:
    """Controllable UTC clock for result cache tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float = 0, seconds: float = 0):
        self.now = self.now + timedelta(hours=hours, seconds=seconds)


class FakeImageMatcher:
    """Serves precomputed fingerprints by URL."""

    def __init__(self, fingerprints: Optional[Dict[str, str]] = None):
        self.fingerprints = fingerprints or {}
        self.requested: List[Optional[str]] = []

    async def get_fingerprints(self, urls):
        self.requested.extend(urls)
        return [self.fingerprints.get(url) if url else None for url in urls]

    def get_status(self):
        return {"cache": {"size": len(self.fingerprints)}}

    async def close(self):
        pass


class FakeCatalog:
    """Catalog that returns canned results and records every call."""

    def __init__(
        self,
        candidates: Optional[List[Candidate]] = None,
        details: Optional[Dict[str, Candidate]] = None,
        configured: bool = True
    ):
        self.candidates = list(candidates or [])
        self.details = details or {}
        self.is_configured = configured
        self.queries = []
        self.detail_calls = []
        self.metrics = {"queries": 0, "detail_lookups": 0, "errors": 0}

    @property
    def call_count(self) -> int:
        return len(self.queries) + len(self.detail_calls)

    async def query(self, keywords, currency, page_size=40):
        self.queries.append((keywords, currency, page_size))
        return list(self.candidates)

    async def get_details(self, candidate_id, currency):
        self.detail_calls.append((candidate_id, currency))
        return self.details.get(candidate_id)

    async def close(self):
        pass


class FakeSemanticVerifier:
    """
    Returns verdicts in call order (`sequence`), else per candidate title,
    else a default. Records every call.
    """

    def __init__(
        self,
        verdicts: Optional[Dict[str, SemanticVerdict]] = None,
        default: Optional[SemanticVerdict] = None,
        sequence: Optional[List[SemanticVerdict]] = None
    ):
        self.verdicts = verdicts or {}
        self.default = default or SemanticVerdict(is_match=True, confidence=90)
        self.sequence = list(sequence or [])
        self.calls = []
        self.enabled = True

    async def validate(self, source_title, candidate_title, price_ratio):
        self.calls.append((source_title, candidate_title, price_ratio))
        if self.sequence:
            return self.sequence.pop(0)
        return self.verdicts.get(candidate_title, self.default)

    def get_metrics(self):
        return {"total_validations": len(self.calls)}


class FakeVisualVerifier:
    def __init__(self, selection: Optional[str] = None):
        self.selection = selection
        self.calls = []
        self.enabled = True

    async def select_best(self, source_image_url, candidates):
        self.calls.append((source_image_url, [c.id for c in candidates]))
        return self.selection

    def get_metrics(self):
        return {"total_selections": len(self.calls)}


class FailingStore(InMemoryResultStore):
    """Store whose writes always fail."""

    name = "failing"

    async def upsert(self, entry):
        raise CacheWriteError("database unavailable")

    def is_connected(self) -> bool:
        return False


def make_engine(
    catalog: Optional[FakeCatalog] = None,
    semantic: Optional[FakeSemanticVerifier] = None,
    visual: Optional[FakeVisualVerifier] = None,
    fingerprints: Optional[Dict[str, str]] = None,
    store=None,
    clock: Optional[FakeClock] = None,
    settings: Optional[Settings] = None
) -> MatchEngine:
    settings = settings or make_settings()
    return MatchEngine(
        settings=settings,
        catalog=catalog or FakeCatalog(),
        keyword_extractor=KeywordExtractor(None, settings.fallback_keyword_count),
        scorer=LocalScorer(FakeImageMatcher(fingerprints)),
        semantic_verifier=semantic or FakeSemanticVerifier(),
        visual_verifier=visual or FakeVisualVerifier(),
        result_cache=ResultCache(
            store if store is not None else InMemoryResultStore(),
            positive_ttl_seconds=settings.positive_ttl_seconds,
            negative_ttl_seconds=settings.negative_ttl_seconds,
            clock=clock or FakeClock()
        )
    )
