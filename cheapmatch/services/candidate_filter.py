"""
Cheap deterministic pre-filters applied before any scoring.

Rules (checked in order, first hit rejects):
    - price-cut:        candidate is not cheaper than the source
    - suspicious-price: candidate costs less than 30% of the source, which
                        usually means an accessory or spare part
    - accessory:        an accessory keyword appears in the candidate title
                        but not in the source title

Survivors keep the catalog's relevance order.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from cheapmatch.models.schemas import Candidate, SourceItem

logger = logging.getLogger(__name__)

MIN_PRICE_RATIO = 0.3
DEFAULT_CANDIDATE_LIMIT = 20

ACCESSORY_KEYWORDS = (
    "case", "cover", "glass", "film", "strap", "band", "stand", "holder",
    "part", "replacement", "battery",
)


class FilterReason(str, Enum):
    """Why a candidate was dropped."""
    NOT_CHEAPER = "price_cut"
    SUSPICIOUS_PRICE = "suspicious_price"
    ACCESSORY = "accessory_keyword"


@dataclass
class FilterOutcome:
    """Filter survivors plus a tally of rejections by reason."""
    survivors: List[Candidate]
    rejected: Dict[FilterReason, int] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.survivors


def accessory_keyword(source_title: str, candidate_title: str) -> Optional[str]:
    """Return the first accessory keyword found only in the candidate title."""
    source_lower = source_title.lower()
    candidate_lower = candidate_title.lower()
    for keyword in ACCESSORY_KEYWORDS:
        if keyword in candidate_lower and keyword not in source_lower:
            return keyword
    return None


def rejection_reason(source: SourceItem, candidate: Candidate) -> Optional[FilterReason]:
    """Return the first rule a candidate fails, or None if it passes."""
    ratio = candidate.price / source.price

    if ratio >= 1:
        return FilterReason.NOT_CHEAPER
    if ratio < MIN_PRICE_RATIO:
        return FilterReason.SUSPICIOUS_PRICE
    if accessory_keyword(source.title, candidate.title):
        return FilterReason.ACCESSORY
    return None


def filter_candidates(
    source: SourceItem,
    candidates: Sequence[Candidate],
    limit: int = DEFAULT_CANDIDATE_LIMIT
) -> FilterOutcome:
    """
    Drop candidates that cannot be a cheaper equivalent of the source.

    Args:
        source: The listing being compared
        candidates: Catalog results in relevance order
        limit: Only the first `limit` candidates are considered

    Returns:
        FilterOutcome whose survivors preserve the input order
    """
    survivors: List[Candidate] = []
    rejected: Dict[FilterReason, int] = {}

    for candidate in list(candidates)[:max(0, limit)]:
        reason = rejection_reason(source, candidate)
        if reason is None:
            survivors.append(candidate)
            continue

        rejected[reason] = rejected.get(reason, 0) + 1
        logger.debug(
            f"[Filter] {reason.value}: {candidate.title[:40]}... "
            f"({candidate.price} vs {source.price})"
        )

    tally = {r.value: n for r, n in rejected.items()}
    logger.info(
        f"Filter kept {len(survivors)}/{min(len(candidates), max(0, limit))} candidates "
        f"for {source.id} (rejected: {tally})"
    )
    return FilterOutcome(survivors=survivors, rejected=rejected)
