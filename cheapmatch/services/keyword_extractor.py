"""
Search keyword extraction for long listing titles.

Catalog search works poorly with 150-character marketplace titles, so long
titles are shortened to a handful of keywords (core model + product type)
before the query. When the model is unavailable the first few words of the
title are used instead.
"""

import logging
from typing import Optional

from cheapmatch.services.llm_client import LLMClient

logger = logging.getLogger(__name__)

MAX_KEYWORD_LENGTH = 120


def naive_keywords(title: str, word_count: int = 5) -> str:
    """First `word_count` words of the title."""
    return " ".join(title.split()[:word_count])


class KeywordExtractor:
    """Shortens listing titles into catalog search keywords."""

    def __init__(self, llm: Optional[LLMClient], fallback_word_count: int = 5):
        self.llm = llm
        self.fallback_word_count = fallback_word_count

    def _build_prompt(self, title: str) -> str:
        return f"""You are an expert e-commerce search optimizer.
Extract the most relevant search keywords from a long product title to find the EXACT same item in another marketplace.

Rules:
1. Drop generic or house brands; keep major brands (Nike, Samsung).
2. Focus on the core model number and product type.
3. Remove adjectives like "Premium" or "High Quality".
4. Return ONLY the keywords, 6 words or less, on one line.

Title: "{title}\""""

    async def extract(self, title: str) -> str:
        """
        Keywords for a long title; never raises.

        An empty, overlong, or failed reply falls back to the first words of
        the title.
        """
        fallback = naive_keywords(title, self.fallback_word_count)

        if self.llm is None or not self.llm.enabled:
            logger.debug("Keyword extractor unavailable, using first words of title")
            return fallback

        reply = await self.llm.complete(self._build_prompt(title), max_tokens=32)
        lines = (reply or "").strip().splitlines()
        keywords = lines[0].strip().strip('"') if lines else ""

        if not keywords or len(keywords) > MAX_KEYWORD_LENGTH:
            logger.warning(f"Keyword extraction returned nothing usable for {title[:40]}..., using fallback")
            return fallback

        logger.info(f"Extracted keywords: {keywords!r}")
        return keywords
