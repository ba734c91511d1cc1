"""
Visual Verifier Service
Asks a vision-capable Claude model which of several surviving candidates
looks like the source product.

Best-effort: any failure, an unknown id, or "none" yields None, and the
match engine falls back to the highest-ranked survivor.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from cheapmatch.models.schemas import Candidate
from cheapmatch.services.llm_client import LLMClient

logger = logging.getLogger(__name__)

_JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


def _image_block(url: str) -> Dict[str, Any]:
    return {"type": "image", "source": {"type": "url", "url": url}}


class VisualVerifier:
    """Picks the candidate whose image best matches the source image."""

    def __init__(self, llm: LLMClient):
        self.llm = llm
        self.metrics = {
            "total_selections": 0,
            "selected": 0,
            "no_selection": 0
        }

    @property
    def enabled(self) -> bool:
        return self.llm.enabled

    def _build_content(self, source_image_url: str, candidates: Sequence[Candidate]) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": "Source product image:"},
            _image_block(source_image_url),
        ]
        for index, candidate in enumerate(candidates, start=1):
            content.append({
                "type": "text",
                "text": f"Candidate {index} (id: {candidate.id}): {candidate.title}"
            })
            if candidate.image_url:
                content.append(_image_block(candidate.image_url))

        content.append({
            "type": "text",
            "text": (
                "Which candidate is the SAME product as the source image? "
                "Ignore background, lighting and watermarks; compare the product itself. "
                'Respond with JSON only: {"candidate_id": "<id>"} or {"candidate_id": null} '
                "if none of them is the same product."
            )
        })
        return content

    def _parse_selection(self, text: Optional[str], candidates: Sequence[Candidate]) -> Optional[str]:
        if not text:
            return None

        known_ids = {c.id for c in candidates}
        found = _JSON_OBJECT_PATTERN.search(text)
        if found:
            try:
                payload = json.loads(found.group(0))
            except json.JSONDecodeError:
                payload = None
            if isinstance(payload, dict):
                fields = {str(k).lower().replace("_", ""): v for k, v in payload.items()}
                selected = fields.get("candidateid", fields.get("id"))
                if selected is not None and str(selected) in known_ids:
                    return str(selected)
                return None

        # Bare id in free text
        stripped = text.strip().strip('"')
        return stripped if stripped in known_ids else None

    async def select_best(
        self,
        source_image_url: Optional[str],
        candidates: Sequence[Candidate]
    ) -> Optional[str]:
        """
        Pick the best-looking candidate.

        Args:
            source_image_url: Image of the listing being compared
            candidates: Surviving candidates (id, image_url, title)

        Returns:
            The id of one of `candidates`, or None
        """
        if not source_image_url or not candidates or not self.llm.enabled:
            return None

        self.metrics["total_selections"] += 1
        reply = await self.llm.complete(self._build_content(source_image_url, candidates), max_tokens=64)
        selected = self._parse_selection(reply, candidates)

        if selected is None:
            self.metrics["no_selection"] += 1
            logger.info(f"Visual verifier made no selection among {len(candidates)} candidates")
        else:
            self.metrics["selected"] += 1
            logger.info(f"Visual verifier selected {selected} among {len(candidates)} candidates")

        return selected

    def get_metrics(self) -> Dict[str, Any]:
        return dict(self.metrics)
