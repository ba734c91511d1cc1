"""
Local similarity scoring (the fast-pass layer).

Composite Score = round(text_sim x 60 + image_sim x 40, 1), on a 0-100 scale.
Text carries more weight because image downloads may fail.

Decision thresholds:
    - >= 88:   FAST_PASS (accept without the semantic verifier)
    - 70-88:   VERIFY    (ask the semantic verifier)
    - < 70:    REJECT    (drop without further calls)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from cheapmatch.models.schemas import Candidate, SourceItem
from cheapmatch.services.image_matcher import ImageMatcher, image_similarity
from cheapmatch.services.text_similarity import text_similarity

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """Routing decision for a scored candidate."""
    FAST_PASS = "fast_pass"
    VERIFY = "verify"
    REJECT = "reject"


@dataclass
class SimilarityScore:
    """Local similarity of one candidate against the source."""
    text_sim: float
    image_sim: float
    composite_score: float
    decision: Decision


@dataclass
class ScoredCandidate:
    """A candidate with its score and its position in the catalog results."""
    candidate: Candidate
    score: SimilarityScore
    order: int


TEXT_WEIGHT = 60
IMAGE_WEIGHT = 40
FAST_PASS_THRESHOLD = 88.0
VERIFY_THRESHOLD = 70.0


def composite_score(text_sim: float, image_sim: float) -> float:
    """Weighted 0-100 score rounded to one decimal place."""
    text_sim = max(0.0, min(1.0, text_sim))
    image_sim = max(0.0, min(1.0, image_sim))
    return round(text_sim * TEXT_WEIGHT + image_sim * IMAGE_WEIGHT, 1)


def decide(score: float) -> Decision:
    """Map a composite score to its bucket."""
    if score >= FAST_PASS_THRESHOLD:
        return Decision.FAST_PASS
    if score >= VERIFY_THRESHOLD:
        return Decision.VERIFY
    return Decision.REJECT


def build_score(text_sim: float, image_sim: float) -> SimilarityScore:
    score = composite_score(text_sim, image_sim)
    return SimilarityScore(
        text_sim=text_sim,
        image_sim=image_sim,
        composite_score=score,
        decision=decide(score)
    )


class LocalScorer:
    """
    Scores candidates against a source listing with text and image signals.

    Image fingerprints for the source and every candidate are fetched
    concurrently through the shared ImageMatcher (and its fingerprint cache).
    """

    def __init__(self, image_matcher: ImageMatcher):
        self.image_matcher = image_matcher

    async def score(self, source: SourceItem, candidate: Candidate) -> SimilarityScore:
        """Score a single candidate."""
        scored = await self.score_all(source, [candidate])
        return scored[0].score

    async def score_all(
        self,
        source: SourceItem,
        candidates: Sequence[Candidate]
    ) -> List[ScoredCandidate]:
        """
        Score every candidate; the result order matches the input order.

        Args:
            source: The listing being compared
            candidates: Filter survivors

        Returns:
            One ScoredCandidate per input candidate
        """
        if not candidates:
            return []

        urls: List[Optional[str]] = [source.image_url] + [c.image_url for c in candidates]
        fingerprints = await self.image_matcher.get_fingerprints(urls)
        source_hash = fingerprints[0]

        if source.image_url and source_hash is None:
            logger.warning(f"No fingerprint for source image of {source.id}; image signal is 0")

        results = []
        for index, (candidate, candidate_hash) in enumerate(zip(candidates, fingerprints[1:])):
            text_sim = text_similarity(source.title, candidate.title)
            image_sim = image_similarity(source_hash, candidate_hash)
            score = build_score(text_sim, image_sim)

            logger.debug(
                f"[Score] {candidate.id}: text={text_sim:.3f} image={image_sim:.3f} "
                f"-> {score.composite_score} ({score.decision.value})"
            )
            results.append(ScoredCandidate(candidate=candidate, score=score, order=index))

        return results
