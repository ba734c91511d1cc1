"""
Match Engine
Finds the cheapest equivalent listing for a source item.

Waterfall (cheap checks first, expensive checks only when needed):
1. Candidate filter (price cut, suspicious price, accessory keywords)
2. Local scoring of all survivors (text + image, fingerprints fetched concurrently)
3. Bucket by decision: FAST_PASS / VERIFY / REJECT
4. FAST_PASS non-empty -> winner is the best FAST_PASS candidate, no semantic verifier calls
5. Otherwise every VERIFY candidate goes to the semantic verifier concurrently;
   keep is_match with confidence > 70
6. Several survivors and a source image -> one visual verifier call to pick
7. Savings must still be positive
8. MatchResult or no match

Ranking among survivors: composite score, then verifier confidence, then text
similarity, then catalog order.

compare() wraps the waterfall with the result cache: fresh entries are served
without external calls, stale positives get a single-item refresh, and stale
negatives or misses rerun the waterfall.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from cheapmatch.config import Settings, get_settings
from cheapmatch.models.schemas import Candidate, CompareResponse, MatchResult, SourceItem
from cheapmatch.services.ai_validator import SemanticVerifier, SemanticVerdict
from cheapmatch.services.candidate_filter import filter_candidates
from cheapmatch.services.catalog_search import CatalogSearch
from cheapmatch.services.errors import ConfigurationError
from cheapmatch.services.image_matcher import ImageMatcher, ImageMatcherConfig, FingerprintCache
from cheapmatch.services.keyword_extractor import KeywordExtractor
from cheapmatch.services.llm_client import LLMClient
from cheapmatch.services.result_cache import CacheEntry, CacheState, ResultCache
from cheapmatch.services.scoring import Decision, LocalScorer, ScoredCandidate
from cheapmatch.services.supabase import create_result_store
from cheapmatch.services.visual_verifier import VisualVerifier

logger = logging.getLogger(__name__)

NO_MATCH = CompareResponse(found=False)


def compute_savings(source_price: float, candidate_price: float) -> float:
    return round(source_price - candidate_price, 2)


class MatchEngine:
    """
    Orchestrates the result cache, the catalog and the matching waterfall.

    All collaborators are passed in explicitly so tests can substitute fakes.
    """

    def __init__(
        self,
        settings: Settings,
        catalog: CatalogSearch,
        keyword_extractor: KeywordExtractor,
        scorer: LocalScorer,
        semantic_verifier: SemanticVerifier,
        visual_verifier: VisualVerifier,
        result_cache: ResultCache
    ):
        self.settings = settings
        self.catalog = catalog
        self.keyword_extractor = keyword_extractor
        self.scorer = scorer
        self.semantic_verifier = semantic_verifier
        self.visual_verifier = visual_verifier
        self.result_cache = result_cache
        self._config_error_logged = False

        self.metrics = {
            "compares": 0,
            "cache_hits": 0,
            "refreshes": 0,
            "refresh_failures": 0,
            "waterfalls": 0,
            "matches": 0,
            "fast_pass_wins": 0,
            "verified_wins": 0
        }

    # =========================================================================
    # Inbound operation
    # =========================================================================

    async def compare(self, source: SourceItem) -> CompareResponse:
        """
        Cheapest equivalent listing for `source`, honoring the result cache.

        Repeated calls inside the freshness windows return the same answer
        without any external calls.
        """
        self.metrics["compares"] += 1
        lookup = await self.result_cache.lookup(source.id, source.currency)

        if lookup.state == CacheState.FRESH_POSITIVE:
            self.metrics["cache_hits"] += 1
            logger.info(f"[Cache Hit] {source.id}/{source.currency.value}: cached match")
            return CompareResponse(found=True, match=lookup.entry.match)

        if lookup.state == CacheState.FRESH_NEGATIVE:
            self.metrics["cache_hits"] += 1
            logger.info(f"[Cache Hit] {source.id}/{source.currency.value}: cached no-match")
            return NO_MATCH

        try:
            self.ensure_configured()
        except ConfigurationError as e:
            if not self._config_error_logged:
                logger.error(f"Matching disabled: {e}")
                self._config_error_logged = True
            return NO_MATCH

        if lookup.state == CacheState.STALE_POSITIVE:
            refreshed = await self.refresh(source, lookup.entry)
            if refreshed is not None:
                await self.result_cache.store_match(
                    source.id, source.currency, refreshed, previous=lookup.entry
                )
                return CompareResponse(found=True, match=refreshed)

        logger.info(f"[Cache {lookup.state.value}] Running full match for {source.id}/{source.currency.value}")
        match = await self.find_match(source)

        if match is not None:
            await self.result_cache.store_match(source.id, source.currency, match, previous=lookup.entry)
            return CompareResponse(found=True, match=match)

        await self.result_cache.store_no_match(source.id, source.currency, previous=lookup.entry)
        return NO_MATCH

    def ensure_configured(self) -> None:
        if not self.catalog.is_configured:
            raise ConfigurationError(
                "catalog credentials missing (CATALOG_APP_KEY, CATALOG_APP_SECRET, CATALOG_TRACKING_ID)"
            )

    # =========================================================================
    # Stale positive refresh
    # =========================================================================

    async def refresh(self, source: SourceItem, entry: CacheEntry) -> Optional[MatchResult]:
        """
        Re-price a stale cached match with a single detail lookup.

        Returns:
            The updated MatchResult, or None if the listing is gone, the
            lookup failed, or it is no longer cheaper
        """
        cached = entry.match
        self.metrics["refreshes"] += 1

        fresh = await self.catalog.get_details(cached.candidate_id, source.currency)
        if fresh is None:
            self.metrics["refresh_failures"] += 1
            logger.info(f"[Refresh] {cached.candidate_id} unavailable, rerunning full match")
            return None

        savings = compute_savings(source.price, fresh.price)
        if savings <= 0:
            self.metrics["refresh_failures"] += 1
            logger.info(f"[Refresh] {cached.candidate_id} no longer cheaper ({fresh.price} vs {source.price})")
            return None

        logger.info(f"[Refresh] {cached.candidate_id} re-priced at {fresh.price} (savings {savings})")
        return cached.model_copy(update={
            "title": fresh.title or cached.title,
            "price": fresh.price,
            "currency": source.currency,
            "savings": savings,
            "destination_url": fresh.destination_url or cached.destination_url,
            "image_url": fresh.image_url or cached.image_url,
        })

    # =========================================================================
    # Full waterfall
    # =========================================================================

    async def build_keywords(self, title: str) -> str:
        """Long titles are shortened before searching."""
        if len(title) > self.settings.keyword_title_threshold:
            return await self.keyword_extractor.extract(title)
        return title

    async def find_match(self, source: SourceItem) -> Optional[MatchResult]:
        """Search the catalog and run the waterfall over the results."""
        self.metrics["waterfalls"] += 1
        keywords = await self.build_keywords(source.title)
        candidates = await self.catalog.query(keywords, source.currency, self.settings.catalog_page_size)
        return await self.select_winner(source, candidates)

    async def select_winner(
        self,
        source: SourceItem,
        candidates: Sequence[Candidate]
    ) -> Optional[MatchResult]:
        """Steps 1-8 of the waterfall over an already-fetched candidate list."""
        # Step 1: filter
        outcome = filter_candidates(source, candidates, self.settings.candidate_limit)
        if outcome.is_empty:
            logger.info(f"No candidates survived filtering for {source.id}")
            return None

        # Steps 2-3: score and bucket
        scored = await self.scorer.score_all(source, outcome.survivors)
        buckets: Dict[Decision, List[ScoredCandidate]] = {d: [] for d in Decision}
        for item in scored:
            buckets[item.score.decision].append(item)

        logger.info(
            f"Buckets for {source.id}: fast_pass={len(buckets[Decision.FAST_PASS])} "
            f"verify={len(buckets[Decision.VERIFY])} reject={len(buckets[Decision.REJECT])}"
        )

        # Steps 4-5: fast pass short-circuits the semantic verifier
        confidences: Dict[int, float] = {}
        if buckets[Decision.FAST_PASS]:
            survivors = buckets[Decision.FAST_PASS]
            for item in survivors:
                confidences[item.order] = item.score.composite_score
            verified = False
        elif buckets[Decision.VERIFY]:
            survivors = await self._verify(source, buckets[Decision.VERIFY], confidences)
            if not survivors:
                logger.info(f"Semantic verifier accepted no candidates for {source.id}")
                return None
            verified = True
        else:
            return None

        ranked = sorted(survivors, key=lambda s: self._rank_key(s, confidences), reverse=True)

        # Step 6: disambiguation
        winner = ranked[0]
        if len(ranked) > 1 and source.image_url:
            selected_id = await self.visual_verifier.select_best(
                source.image_url, [s.candidate for s in ranked]
            )
            for item in ranked:
                if item.candidate.id == selected_id:
                    winner = item
                    break

        # Step 7: late price check
        savings = compute_savings(source.price, winner.candidate.price)
        if savings <= 0:
            logger.info(f"Winner {winner.candidate.id} is not cheaper than {source.id}")
            return None

        # Step 8
        self.metrics["matches"] += 1
        self.metrics["verified_wins" if verified else "fast_pass_wins"] += 1
        logger.info(
            f"[MATCH] {source.id} -> {winner.candidate.id} "
            f"(score {winner.score.composite_score}, savings {savings})"
        )
        return self._to_result(source, winner.candidate, savings, confidences[winner.order])

    async def _verify(
        self,
        source: SourceItem,
        pending: List[ScoredCandidate],
        confidences: Dict[int, float]
    ) -> List[ScoredCandidate]:
        """Run the semantic verifier over every pending candidate concurrently."""
        verdicts: List[SemanticVerdict] = list(await asyncio.gather(*(
            self.semantic_verifier.validate(
                source.title,
                item.candidate.title,
                item.candidate.price / source.price
            )
            for item in pending
        )))

        accepted = []
        for item, verdict in zip(pending, verdicts):
            if verdict.accepted:
                confidences[item.order] = float(verdict.confidence)
                accepted.append(item)
        return accepted

    @staticmethod
    def _rank_key(item: ScoredCandidate, confidences: Dict[int, float]) -> Tuple[float, float, float, int]:
        return (
            item.score.composite_score,
            confidences.get(item.order, 0.0),
            item.score.text_sim,
            -item.order,
        )

    @staticmethod
    def _to_result(
        source: SourceItem,
        candidate: Candidate,
        savings: float,
        confidence: float
    ) -> MatchResult:
        return MatchResult(
            title=candidate.title,
            price=candidate.price,
            currency=source.currency,
            savings=savings,
            destination_url=candidate.destination_url,
            image_url=candidate.image_url,
            candidate_id=candidate.id,
            confidence=max(0.0, min(100.0, confidence))
        )

    async def close(self):
        """Clean up resources."""
        await self.catalog.close()
        await self.scorer.image_matcher.close()


# Singleton instance
_engine: Optional[MatchEngine] = None


def build_match_engine(settings: Settings) -> MatchEngine:
    """Wire a MatchEngine from settings."""
    llm = LLMClient(
        api_key=settings.anthropic_api_key,
        model=settings.llm_model,
        timeout=settings.verifier_timeout
    )
    image_config = ImageMatcherConfig(
        request_timeout=settings.image_timeout,
        max_image_size=settings.max_image_size,
        cache_ttl_seconds=settings.fingerprint_ttl_seconds,
        cache_capacity=settings.fingerprint_cache_capacity
    )
    image_matcher = ImageMatcher(
        image_config,
        FingerprintCache(image_config.cache_ttl_seconds, image_config.cache_capacity)
    )

    return MatchEngine(
        settings=settings,
        catalog=CatalogSearch(settings),
        keyword_extractor=KeywordExtractor(llm, settings.fallback_keyword_count),
        scorer=LocalScorer(image_matcher),
        semantic_verifier=SemanticVerifier(llm),
        visual_verifier=VisualVerifier(llm),
        result_cache=ResultCache(
            create_result_store(settings),
            positive_ttl_seconds=settings.positive_ttl_seconds,
            negative_ttl_seconds=settings.negative_ttl_seconds
        )
    )


def get_match_engine() -> MatchEngine:
    """Get the singleton match engine."""
    global _engine
    if _engine is None:
        _engine = build_match_engine(get_settings())
    return _engine


async def cleanup_match_engine():
    """Clean up the singleton match engine."""
    global _engine
    if _engine is not None:
        await _engine.close()
        _engine = None
