"""
Title normalization and text similarity for product matching.

Score = 0.3 x normalized Levenshtein + 0.7 x token overlap (Jaccard).
Token overlap carries most of the weight because catalogs rarely agree on
word order.
"""

import re
from typing import Set

from rapidfuzz.distance import Levenshtein

LEVENSHTEIN_WEIGHT = 0.3
TOKEN_WEIGHT = 0.7
MIN_TOKEN_LENGTH = 3

MARKETING_TERMS = (
    "hot sale", "limited", "new arrival", "free shipping", "best seller",
    "amazon's choice", "premium", "upgraded", "professional", "high quality",
    "gift for", "pack of", "set of", "new",
)

GLOBAL_BRANDS = (
    "Samsung", "Apple", "Sony", "LG", "Dell", "HP", "Lenovo", "Asus",
    "Acer", "Microsoft", "Google", "Nike", "Adidas", "Canon", "Nikon",
    "Panasonic", "Philips", "Bosch", "Tesla", "Xiaomi", "Huawei", "OnePlus",
    "Logitech", "Razer", "Corsair", "SteelSeries", "Bose", "JBL", "Beats",
    "GoPro", "DJI", "Anker", "Aukey", "RAVPower", "Belkin", "TP-Link",
    "Netgear", "Seagate", "Western Digital", "SanDisk", "Kingston", "Crucial",
    "Intel", "AMD", "NVIDIA", "Gigabyte", "MSI", "EVGA", "Roku", "Fitbit",
)

# Spellings seen across catalogs -> canonical (lowercase) brand
BRAND_ALIASES = {
    "tp link": "tp-link",
    "tplink": "tp-link",
    "western-digital": "western digital",
    "one plus": "oneplus",
    "steel series": "steelseries",
    "go pro": "gopro",
    "rav power": "ravpower",
}

_MARKETING_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(t) for t in MARKETING_TERMS) + r")\b"
)
_YEAR_PATTERN = re.compile(r"\b20[12]\d\b")
_PUNCTUATION_PATTERN = re.compile(r"[^\w\s-]")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_BRAND_PATTERNS = [
    (re.compile(r"\b" + re.escape(alias) + r"\b"), canonical)
    for alias, canonical in BRAND_ALIASES.items()
] + [
    (re.compile(r"\b" + re.escape(brand.lower()) + r"\b"), brand.lower())
    for brand in GLOBAL_BRANDS
]


def clean_title(title: str) -> str:
    """Normalize a product title for comparison."""
    if not title:
        return ""

    cleaned = title.lower()

    # Marketing noise and model-year tokens
    cleaned = _MARKETING_PATTERN.sub(" ", cleaned)
    cleaned = _YEAR_PATTERN.sub(" ", cleaned)

    # Punctuation except hyphens (keeps "tp-link", "wh-1000xm4")
    cleaned = _PUNCTUATION_PATTERN.sub(" ", cleaned)
    cleaned = _WHITESPACE_PATTERN.sub(" ", cleaned)

    for pattern, canonical in _BRAND_PATTERNS:
        cleaned = pattern.sub(canonical, cleaned)

    return _WHITESPACE_PATTERN.sub(" ", cleaned).strip()


def tokenize(cleaned: str) -> Set[str]:
    """Whitespace tokens long enough to carry meaning."""
    return {t for t in cleaned.split() if len(t) >= MIN_TOKEN_LENGTH}


def levenshtein_score(a: str, b: str) -> float:
    """1 - edit distance / longer length; 0 when both strings are empty."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 0.0
    return 1.0 - Levenshtein.distance(a, b) / max_len


def token_overlap_score(a: str, b: str) -> float:
    """Jaccard similarity between the token sets of two cleaned titles."""
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    union = len(tokens_a | tokens_b)
    if union == 0:
        return 0.0
    return len(tokens_a & tokens_b) / union


def text_similarity(title_a: str, title_b: str) -> float:
    """
    Compute title similarity between 0 and 1.

    Args:
        title_a: Source listing title
        title_b: Candidate listing title

    Returns:
        Weighted similarity. Identical non-empty titles (ignoring case and
        surrounding whitespace) score 1.0 even when they normalize to nothing,
        e.g. "New!"; otherwise 0.0 if either title normalizes to nothing.
    """
    raw_a = (title_a or "").strip().lower()
    if raw_a and raw_a == (title_b or "").strip().lower():
        return 1.0

    clean_a = clean_title(title_a)
    clean_b = clean_title(title_b)

    if not clean_a or not clean_b:
        return 0.0
    if clean_a == clean_b:
        return 1.0

    score = (
        LEVENSHTEIN_WEIGHT * levenshtein_score(clean_a, clean_b) +
        TOKEN_WEIGHT * token_overlap_score(clean_a, clean_b)
    )
    return max(0.0, min(1.0, score))
