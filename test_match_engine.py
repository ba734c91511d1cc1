#!/usr/bin/env python3
"""
Tests for the match engine: the matching waterfall and its use of the
result cache, driven entirely by in-memory fakes
"""

import asyncio
import sys

from cheapmatch.models.schemas import Currency
from cheapmatch.services.ai_validator import SemanticVerdict
from cheapmatch.services.result_cache import CacheState
from fakes import (
    FailingStore,
    FakeCatalog,
    FakeClock,
    FakeSemanticVerifier,
    FakeVisualVerifier,
    make_candidate,
    make_engine,
    make_source
)

HASH = "0f0f0f0f0f0f0f0f"
SOURCE_IMAGE = "https://img.test/source.jpg"
TITLE = "Sony WH-1000XM4 Wireless Headphones Black"
# Close but not identical: lands in the VERIFY bucket with a matching image
VARIANT_TITLE = "Sony WH-1000XM4 Wireless Headphones Silver"


def image(candidate_id: str) -> str:
    return f"https://img.test/{candidate_id}.jpg"


def same_images(*candidate_ids):
    fingerprints = {SOURCE_IMAGE: HASH}
    fingerprints.update({image(cid): HASH for cid in candidate_ids})
    return fingerprints


# =============================================================================
# Waterfall
# =============================================================================

def test_fast_pass_skips_semantic_verifier():
    """Identical title and image at 80% of the price wins without verification."""
    print("Testing fast pass...")

    catalog = FakeCatalog([
        make_candidate("V1", VARIANT_TITLE, 75.0, image_url=image("V1")),
        make_candidate("A1", TITLE, 80.0, image_url=image("A1")),
    ])
    semantic = FakeSemanticVerifier()
    engine = make_engine(catalog, semantic=semantic, fingerprints=same_images("A1", "V1"))

    response = asyncio.run(engine.compare(make_source(price=100.0)))

    assert response.found
    assert response.match.candidate_id == "A1"
    assert response.match.savings == 20.0
    assert response.match.confidence == 100.0
    assert response.match.currency == Currency.USD
    assert semantic.calls == []
    assert engine.metrics["fast_pass_wins"] == 1
    print("✓ Fast pass tests passed\n")


def test_verify_bucket_uses_semantic_verifier():
    print("Testing verify bucket...")

    catalog = FakeCatalog([make_candidate("V1", VARIANT_TITLE, 80.0, image_url=image("V1"))])
    semantic = FakeSemanticVerifier(default=SemanticVerdict(is_match=True, confidence=85))
    engine = make_engine(catalog, semantic=semantic, fingerprints=same_images("V1"))

    response = asyncio.run(engine.compare(make_source()))

    assert response.found
    assert response.match.candidate_id == "V1"
    assert response.match.confidence == 85
    assert semantic.calls == [(TITLE, VARIANT_TITLE, 0.8)]
    print("  ✓ Accepted verdict wins")

    for verdict in (
        SemanticVerdict(is_match=True, confidence=50),   # neutral fail-open
        SemanticVerdict(is_match=True, confidence=70),   # must be strictly above 70
        SemanticVerdict(is_match=False, confidence=99),
    ):
        engine = make_engine(
            FakeCatalog([make_candidate("V1", VARIANT_TITLE, 80.0, image_url=image("V1"))]),
            semantic=FakeSemanticVerifier(default=verdict),
            fingerprints=same_images("V1")
        )
        assert not asyncio.run(engine.compare(make_source())).found
    print("  ✓ Rejected and neutral verdicts yield no match")
    print("✓ Verify bucket tests passed\n")


class InFlightVerifier(FakeSemanticVerifier):
    """Semantic verifier that takes a while and records how many calls overlap."""

    def __init__(self, delay: float = 0.05, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def validate(self, source_title, candidate_title, price_ratio):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            return await super().validate(source_title, candidate_title, price_ratio)
        finally:
            self.in_flight -= 1


def test_verify_bucket_is_checked_concurrently():
    """Every VERIFY candidate is sent to the semantic verifier at once."""
    print("Testing concurrent verification...")

    ids = ["V1", "V2", "V3", "V4"]
    catalog = FakeCatalog([
        make_candidate(cid, VARIANT_TITLE, 80.0 - i, image_url=image(cid))
        for i, cid in enumerate(ids)
    ])
    semantic = InFlightVerifier(default=SemanticVerdict(is_match=True, confidence=90))
    engine = make_engine(
        catalog,
        semantic=semantic,
        visual=FakeVisualVerifier(selection=None),
        fingerprints=same_images(*ids)
    )

    response = asyncio.run(engine.compare(make_source()))

    assert response.found
    assert len(semantic.calls) == len(ids)
    assert semantic.max_in_flight == len(ids)
    print("✓ Concurrent verification tests passed\n")


def test_verified_ties_break_on_confidence():
    print("Testing verifier confidence tie-break...")

    catalog = FakeCatalog([
        make_candidate("V1", VARIANT_TITLE, 80.0, image_url=image("V1")),
        make_candidate("V2", VARIANT_TITLE, 80.0, image_url=image("V2")),
    ])
    semantic = FakeSemanticVerifier(sequence=[
        SemanticVerdict(is_match=True, confidence=80),
        SemanticVerdict(is_match=True, confidence=95),
    ])
    visual = FakeVisualVerifier(selection=None)
    engine = make_engine(
        catalog, semantic=semantic, visual=visual, fingerprints=same_images("V1", "V2")
    )

    response = asyncio.run(engine.compare(make_source()))

    assert len(semantic.calls) == 2
    # Visual verifier sees survivors in rank order and makes no pick
    assert visual.calls == [(SOURCE_IMAGE, ["V2", "V1"])]
    assert response.match.candidate_id == "V2"
    assert response.match.confidence == 95
    print("✓ Confidence tie-break tests passed\n")


def test_visual_verifier_disambiguates():
    print("Testing visual disambiguation...")

    def build(visual, second_price=70.0):
        catalog = FakeCatalog([
            make_candidate("A1", TITLE, 80.0, image_url=image("A1")),
            make_candidate("A2", TITLE, second_price, image_url=image("A2")),
        ])
        engine = make_engine(catalog, visual=visual, fingerprints=same_images("A1", "A2"))
        return asyncio.run(engine.compare(make_source()))

    visual = FakeVisualVerifier(selection="A2")
    response = build(visual)
    assert response.match.candidate_id == "A2"
    assert response.match.savings == 30.0
    assert visual.calls == [(SOURCE_IMAGE, ["A1", "A2"])]
    print("  ✓ Named candidate wins")

    # Unknown id falls back to the highest-ranked survivor (catalog order on a full tie)
    response = build(FakeVisualVerifier(selection="ZZZ"))
    assert response.match.candidate_id == "A1"

    # A2 is filtered out as not cheaper: a single survivor needs no visual call
    visual = FakeVisualVerifier(selection="A2")
    response = build(visual, second_price=120.0)
    assert visual.calls == []
    assert response.match.candidate_id == "A1"
    print("  ✓ Single survivor, no visual call")
    print("✓ Visual disambiguation tests passed\n")


def test_no_survivors_is_no_match():
    print("Testing empty outcomes...")

    catalog = FakeCatalog([
        make_candidate("C1", "Silicone Case for " + TITLE, 80.0),
        make_candidate("C2", TITLE, 120.0),
        make_candidate("C3", TITLE, 5.0),
    ])
    engine = make_engine(catalog)
    assert not asyncio.run(engine.compare(make_source())).found

    # All survivors rejected by the local score
    catalog = FakeCatalog([make_candidate("R1", "Kitchen Knife Block Set", 80.0)])
    semantic = FakeSemanticVerifier()
    engine = make_engine(catalog, semantic=semantic)
    assert not asyncio.run(engine.compare(make_source())).found
    assert semantic.calls == []
    print("✓ Empty outcome tests passed\n")


def test_long_titles_are_shortened():
    print("Testing query keywords...")

    long_title = "Sony WH-1000XM4 Wireless Noise Cancelling Overhead Headphones with Mic and Alexa"
    catalog = FakeCatalog()
    engine = make_engine(catalog)

    asyncio.run(engine.compare(make_source(title=long_title)))
    asyncio.run(engine.compare(make_source(id="SHORT", title="Sony WH-1000XM4")))

    assert catalog.queries[0] == ("Sony WH-1000XM4 Wireless Noise Cancelling", Currency.USD, 40)
    assert catalog.queries[1][0] == "Sony WH-1000XM4"
    print("✓ Query keyword tests passed\n")


# =============================================================================
# Result cache interplay
# =============================================================================

def test_fresh_positive_served_without_calls():
    """A 1h-old positive entry is returned with zero catalog calls."""
    print("Testing fresh positive cache hit...")

    clock = FakeClock()
    catalog = FakeCatalog([make_candidate("A1", TITLE, 80.0, image_url=image("A1"))])
    engine = make_engine(catalog, fingerprints=same_images("A1"), clock=clock)
    source = make_source()

    first = asyncio.run(engine.compare(source))
    calls_after_first = catalog.call_count

    clock.advance(hours=1)
    second = asyncio.run(engine.compare(source))

    assert first.found
    assert second == first
    assert catalog.call_count == calls_after_first == 1
    assert engine.metrics["cache_hits"] == 1
    print("✓ Fresh positive tests passed\n")


def test_negative_entries():
    print("Testing negative cache entries...")

    clock = FakeClock()
    catalog = FakeCatalog()
    engine = make_engine(catalog, clock=clock)
    source = make_source()

    assert not asyncio.run(engine.compare(source)).found
    assert len(catalog.queries) == 1

    clock.advance(hours=1)
    assert not asyncio.run(engine.compare(source)).found
    assert len(catalog.queries) == 1
    print("  ✓ Fresh negative served from cache")

    clock.advance(hours=24)  # entry is now 25h old
    catalog.candidates = [make_candidate("A1", TITLE, 80.0, image_url=image("A1"))]
    engine.scorer.image_matcher.fingerprints.update(same_images("A1"))

    response = asyncio.run(engine.compare(source))
    assert len(catalog.queries) == 2
    assert response.found
    lookup = asyncio.run(engine.result_cache.lookup(source.id, source.currency))
    assert lookup.state == CacheState.FRESH_POSITIVE
    print("  ✓ Stale negative reruns the waterfall and is overwritten")
    print("✓ Negative entry tests passed\n")


def test_stale_positive_refresh():
    print("Testing stale positive refresh...")

    clock = FakeClock()
    catalog = FakeCatalog([make_candidate("A1", TITLE, 80.0, image_url=image("A1"))])
    engine = make_engine(catalog, fingerprints=same_images("A1"), clock=clock)
    source = make_source()

    asyncio.run(engine.compare(source))
    before = asyncio.run(engine.result_cache.lookup(source.id, source.currency)).entry

    clock.advance(hours=13)
    catalog.details["A1"] = make_candidate("A1", TITLE, 70.0, image_url=image("A1"))
    response = asyncio.run(engine.compare(source))

    assert response.found
    assert response.match.price == 70.0
    assert response.match.savings == 30.0
    assert len(catalog.queries) == 1
    assert catalog.detail_calls == [("A1", Currency.USD)]

    after = asyncio.run(engine.result_cache.lookup(source.id, source.currency))
    assert after.state == CacheState.FRESH_POSITIVE
    assert after.entry.match == response.match
    assert after.entry.last_checked > before.last_checked
    print("  ✓ Refresh re-prices without a search")

    # Price went up: refresh fails, waterfall reruns
    clock.advance(hours=13)
    catalog.details["A1"] = make_candidate("A1", TITLE, 120.0)
    asyncio.run(engine.compare(source))
    assert len(catalog.queries) == 2
    print("  ✓ Not-cheaper refresh falls back to full match")

    # Listing gone and nothing else found: entry becomes negative
    clock.advance(hours=13)
    del catalog.details["A1"]
    catalog.candidates = []
    assert not asyncio.run(engine.compare(source)).found
    assert len(catalog.queries) == 3
    lookup = asyncio.run(engine.result_cache.lookup(source.id, source.currency))
    assert lookup.state == CacheState.FRESH_NEGATIVE
    print("  ✓ Failed refresh overwritten by waterfall outcome")
    print("✓ Stale positive tests passed\n")


def test_currency_is_part_of_key():
    print("Testing currency keys...")

    catalog = FakeCatalog([make_candidate("A1", TITLE, 80.0, image_url=image("A1"))])
    engine = make_engine(catalog, fingerprints=same_images("A1"))

    asyncio.run(engine.compare(make_source(currency=Currency.USD)))
    catalog.candidates = []
    response = asyncio.run(engine.compare(make_source(currency=Currency.CAD)))

    assert not response.found
    assert [q[1] for q in catalog.queries] == [Currency.USD, Currency.CAD]
    print("✓ Currency key tests passed\n")


def test_missing_configuration():
    """Unconfigured catalog: no calls, no cache writes, no match."""
    print("Testing missing configuration...")

    catalog = FakeCatalog([make_candidate("A1", TITLE, 80.0)], configured=False)
    engine = make_engine(catalog)

    for _ in range(2):
        assert not asyncio.run(engine.compare(make_source())).found

    assert catalog.call_count == 0
    assert len(engine.result_cache.store) == 0
    print("✓ Missing configuration tests passed\n")


def test_cache_write_failure_still_returns_match():
    print("Testing cache write failure...")

    catalog = FakeCatalog([make_candidate("A1", TITLE, 80.0, image_url=image("A1"))])
    engine = make_engine(catalog, fingerprints=same_images("A1"), store=FailingStore())

    response = asyncio.run(engine.compare(make_source()))
    assert response.found
    assert response.match.candidate_id == "A1"
    assert engine.result_cache.write_failures == 1
    print("✓ Cache write failure tests passed\n")


def run_all_tests():
    """Run all match engine tests."""
    print("=" * 60)
    print("MATCH ENGINE - UNIT TESTS")
    print("=" * 60)
    print()

    try:
        test_fast_pass_skips_semantic_verifier()
        test_verify_bucket_uses_semantic_verifier()
        test_verify_bucket_is_checked_concurrently()
        test_verified_ties_break_on_confidence()
        test_visual_verifier_disambiguates()
        test_no_survivors_is_no_match()
        test_long_titles_are_shortened()
        test_fresh_positive_served_without_calls()
        test_negative_entries()
        test_stale_positive_refresh()
        test_currency_is_part_of_key()
        test_missing_configuration()
        test_cache_write_failure_still_returns_match()

        print("=" * 60)
        print("ALL TESTS PASSED!")
        print("=" * 60)
        return 0

    except AssertionError as e:
        print(f"\n✗ TEST FAILED: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(run_all_tests())
