"""
Semantic Verifier Service
Uses Claude to decide whether a VERIFY-bucket candidate is the same product
as the source listing.

The verifier is only consulted for inconclusive local scores (70-88). Its
answer is an untrusted signal: the match engine keeps a candidate only when
the verdict says is_match and the confidence is above 70.

Failure behaviour:
    - No API key, timeout, transport error, or a reply with no JSON object:
      fail open with a neutral verdict (is_match=True, confidence=50). A
      neutral verdict never clears the 70 confidence bar on its own.
    - A JSON reply with missing or garbled fields: is_match=False,
      confidence=0.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cheapmatch.services.llm_client import LLMClient

logger = logging.getLogger(__name__)

NEUTRAL_CONFIDENCE = 50
ACCEPT_CONFIDENCE = 70

_JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)
_TRUE_STRINGS = {"true", "yes", "y", "1", "match", "same"}
_FALSE_STRINGS = {"false", "no", "n", "0", "different"}


@dataclass
class SemanticVerdict:
    """Normalized verifier answer."""
    is_match: bool
    confidence: int  # 0-100

    @property
    def accepted(self) -> bool:
        return self.is_match and self.confidence > ACCEPT_CONFIDENCE


NEUTRAL_VERDICT = SemanticVerdict(is_match=True, confidence=NEUTRAL_CONFIDENCE)
MALFORMED_VERDICT = SemanticVerdict(is_match=False, confidence=0)


# =============================================================================
# Response normalization
# =============================================================================

def _normalize_key(key: Any) -> str:
    return re.sub(r"[^a-z]", "", str(key).lower())


def parse_bool(value: Any) -> Optional[bool]:
    """Accept the boolean encodings verifiers actually return."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def parse_confidence(value: Any) -> Optional[int]:
    """Numeric or numeric-string confidence, clamped to 0-100."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().rstrip("%")
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return int(round(max(0.0, min(100.0, number))))


def normalize_verdict(payload: Dict[str, Any]) -> SemanticVerdict:
    """
    Map a loosely-shaped verdict object onto SemanticVerdict.

    Keys are matched case-insensitively with separators ignored, so
    "isMatch", "is_match" and "IS-MATCH" are the same field.
    """
    fields = {_normalize_key(k): v for k, v in payload.items()}

    is_match = parse_bool(fields.get("ismatch", fields.get("match")))
    confidence = parse_confidence(fields.get("confidence"))

    return SemanticVerdict(
        is_match=bool(is_match) if is_match is not None else MALFORMED_VERDICT.is_match,
        confidence=confidence if confidence is not None else MALFORMED_VERDICT.confidence
    )


def parse_verdict(text: Optional[str]) -> SemanticVerdict:
    """Parse raw model output; see module docstring for the fallbacks."""
    if not text:
        return NEUTRAL_VERDICT

    found = _JSON_OBJECT_PATTERN.search(text)
    if not found:
        logger.warning(f"Verifier reply has no JSON object: {text[:80]!r}")
        return NEUTRAL_VERDICT

    try:
        payload = json.loads(found.group(0))
    except json.JSONDecodeError:
        logger.warning(f"Verifier reply is not valid JSON: {text[:80]!r}")
        return NEUTRAL_VERDICT

    if not isinstance(payload, dict):
        return MALFORMED_VERDICT

    return normalize_verdict(payload)


# =============================================================================
# Semantic Verifier
# =============================================================================

class SemanticVerifier:
    """
    LLM check that two listing titles describe the same product.

    Cost Tracking:
        - Uses Claude 3 Haiku by default
        - Only VERIFY-bucket candidates are sent; FAST_PASS wins never call it
    """

    def __init__(self, llm: LLMClient):
        self.llm = llm

        # Metrics tracking
        self.metrics = {
            "total_validations": 0,
            "confirmed": 0,
            "rejected": 0,
            "neutral": 0
        }

        if not self.llm.enabled:
            logger.warning(
                "Semantic verifier disabled - no API key configured. "
                "Inconclusive candidates will receive a neutral verdict."
            )

    @property
    def enabled(self) -> bool:
        return self.llm.enabled

    def _build_prompt(self, source_title: str, candidate_title: str, price_ratio: float) -> str:
        return f"""You are a strict e-commerce validation bot.
Determine if these two listings refer to the SAME product (same brand, model and type).

Context:
- We are looking for a cheaper listing of the source product.
- The candidate price is {round(price_ratio * 100)}% of the source price.

Source: "{source_title}"
Candidate: "{candidate_title}"

Rules:
- If one is a case, cover, screen protector or other accessory and the other is the main device, it is NOT a match.
- If they are different items (e.g. mouse vs graphics card), it is NOT a match.
- If they are the same product, it is a match.

Respond with JSON only, in this exact shape:
{{"is_match": true or false, "confidence": 0-100}}"""

    async def validate(
        self,
        source_title: str,
        candidate_title: str,
        price_ratio: float
    ) -> SemanticVerdict:
        """
        Ask the model whether the candidate is the same product.

        Args:
            source_title: Title of the listing being compared
            candidate_title: Title of the cheaper candidate
            price_ratio: candidate price / source price

        Returns:
            SemanticVerdict, never raises
        """
        self.metrics["total_validations"] += 1

        if not self.llm.enabled:
            self.metrics["neutral"] += 1
            return NEUTRAL_VERDICT

        prompt = self._build_prompt(source_title, candidate_title, price_ratio)
        reply = await self.llm.complete(prompt, max_tokens=64)
        verdict = parse_verdict(reply)

        if verdict is NEUTRAL_VERDICT:
            self.metrics["neutral"] += 1
        elif verdict.accepted:
            self.metrics["confirmed"] += 1
        else:
            self.metrics["rejected"] += 1

        logger.info(
            f"Semantic verdict: match={verdict.is_match} confidence={verdict.confidence} | "
            f"{source_title[:40]} vs {candidate_title[:40]}"
        )
        return verdict

    def get_metrics(self) -> Dict[str, Any]:
        """Verdict counts plus token usage."""
        return {**self.metrics, **self.llm.get_usage_stats()}
