"""
Image Matcher Service
Perceptual fingerprints and visual similarity for product matching.

Each product image is reduced to a 64-bit average hash:
1. Download the image (bounded timeout, bounded size)
2. Convert to grayscale and resample to an 8x8 grid
3. Set bit i when pixel i is at or above the mean intensity
4. Pack the 64 bits into a 16-character hex string

Similarity between two fingerprints is 1 - hamming_distance / 64. A missing
fingerprint (download or decode failure) contributes 0 similarity instead of
an error, so the image signal fails closed.

Fingerprints are memoized per URL in a process-wide FingerprintCache
(TTL + LRU capacity) shared across requests.
"""

import asyncio
import io
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Any

import httpx
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

HASH_SIZE = 8
HASH_BITS = HASH_SIZE * HASH_SIZE


@dataclass
class ImageMatcherConfig:
    """Configuration for image matcher."""
    request_timeout: float = 5.0  # Per-download deadline
    max_image_size: int = 10 * 1024 * 1024  # 10MB max image size
    cache_ttl_seconds: int = 7 * 24 * 3600  # Fingerprints stay valid for 7 days
    cache_capacity: int = 10_000
    enable_caching: bool = True


# =============================================================================
# Fingerprint primitives
# =============================================================================

def compute_fingerprint(image_bytes: bytes) -> Optional[str]:
    """
    Compute the 64-bit average hash of an image.

    Args:
        image_bytes: Raw encoded image bytes

    Returns:
        16-character lowercase hex string, or None if the bytes cannot be decoded
    """
    if not image_bytes:
        return None

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            grid = img.convert("L").resize((HASH_SIZE, HASH_SIZE), Image.Resampling.BOX)
            pixels = np.asarray(grid, dtype=np.float64).flatten()
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        logger.warning(f"Failed to decode image for fingerprint: {e}")
        return None

    bits = pixels >= pixels.mean()
    return np.packbits(bits).tobytes().hex()


def hamming_distance(hash_a: str, hash_b: str) -> int:
    """Number of differing bits between two hex fingerprints."""
    return bin(int(hash_a, 16) ^ int(hash_b, 16)).count("1")


def image_similarity(hash_a: Optional[str], hash_b: Optional[str]) -> float:
    """
    Similarity between two fingerprints, 0 to 1.

    Returns 0.0 when either fingerprint is missing or malformed.
    """
    if not hash_a or not hash_b:
        return 0.0

    try:
        distance = hamming_distance(hash_a, hash_b)
    except ValueError:
        logger.warning(f"Malformed fingerprint comparison: {hash_a!r} vs {hash_b!r}")
        return 0.0

    return max(0.0, 1.0 - distance / HASH_BITS)


# =============================================================================
# Fingerprint Cache
# =============================================================================

class FingerprintCache:
    """
    URL -> fingerprint memo with per-entry TTL and LRU eviction.

    Only dictionary operations happen under the lock; callers compute the
    fingerprint outside of it and store the result afterwards.
    """

    def __init__(
        self,
        ttl_seconds: int = 7 * 24 * 3600,
        capacity: int = 10_000,
        clock: Callable[[], float] = time.monotonic
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.ttl_seconds = ttl_seconds
        self.capacity = capacity
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[str, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, url: str) -> Optional[str]:
        """Return the cached fingerprint if present and unexpired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                self.misses += 1
                return None

            fingerprint, stored_at = entry
            if now - stored_at >= self.ttl_seconds:
                del self._entries[url]
                self.misses += 1
                return None

            self._entries.move_to_end(url)
            self.hits += 1
            return fingerprint

    def set(self, url: str, fingerprint: str) -> None:
        """Store a fingerprint, evicting the least recently used entry when full."""
        now = self._clock()
        with self._lock:
            self._entries[url] = (fingerprint, now)
            self._entries.move_to_end(url)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, int]:
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses
        }


# =============================================================================
# Image Matcher
# =============================================================================

class ImageMatcher:
    """
    Downloads product images and turns them into cached fingerprints.

    Usage:
        matcher = ImageMatcher(ImageMatcherConfig(request_timeout=5.0))
        source_hash, candidate_hash = await matcher.get_fingerprints([url_a, url_b])
        similarity = image_similarity(source_hash, candidate_hash)
    """

    def __init__(
        self,
        config: Optional[ImageMatcherConfig] = None,
        cache: Optional[FingerprintCache] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the image matcher.

        Args:
            config: Optional configuration for the matcher
            cache: Fingerprint cache to use (a private one is created if omitted)
            http_client: Optional pre-built HTTP client (tests inject a mock transport)
        """
        self.config = config or ImageMatcherConfig()
        self.cache = cache or FingerprintCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            capacity=self.config.cache_capacity
        )
        self._http_client = http_client

    def get_status(self) -> Dict[str, Any]:
        """Get the current status of the image matcher."""
        return {
            "request_timeout": self.config.request_timeout,
            "caching_enabled": self.config.enable_caching,
            "cache": self.cache.stats()
        }

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client for image downloads."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.request_timeout,
                follow_redirects=True,
                headers={
                    "User-Agent": "Mozilla/5.0 (compatible; Cheapmatch/1.0)"
                }
            )
        return self._http_client

    async def download_image(self, image_url: str) -> Optional[bytes]:
        """
        Download image from URL.

        Args:
            image_url: URL of the image to download

        Returns:
            Image bytes or None if download failed
        """
        if not image_url:
            return None

        try:
            client = self._get_http_client()
            response = await client.get(image_url, timeout=self.config.request_timeout)
            response.raise_for_status()

            # Check content length
            content_length = int(response.headers.get('content-length', 0) or 0)
            if content_length > self.config.max_image_size:
                logger.warning(f"Image too large ({content_length} bytes): {image_url[:50]}...")
                return None

            image_bytes = response.content

            # Double check actual size
            if len(image_bytes) > self.config.max_image_size:
                logger.warning(f"Image too large ({len(image_bytes)} bytes): {image_url[:50]}...")
                return None

            return image_bytes

        except httpx.TimeoutException:
            logger.warning(f"Image download timed out: {image_url[:50]}...")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to download image {image_url[:50]}...: {e}")
            return None

    async def get_fingerprint(self, image_url: Optional[str]) -> Optional[str]:
        """
        Fingerprint for an image URL, served from cache when fresh.

        Failed downloads are not cached, so the next request retries them.
        """
        if not image_url:
            return None

        if self.config.enable_caching:
            cached = self.cache.get(image_url)
            if cached is not None:
                logger.debug(f"Fingerprint cache hit for {image_url[:50]}...")
                return cached

        image_bytes = await self.download_image(image_url)
        if image_bytes is None:
            return None

        fingerprint = await asyncio.to_thread(compute_fingerprint, image_bytes)
        if fingerprint is not None and self.config.enable_caching:
            self.cache.set(image_url, fingerprint)

        return fingerprint

    async def get_fingerprints(self, image_urls: List[Optional[str]]) -> List[Optional[str]]:
        """Fingerprint several URLs concurrently; result order matches input order."""
        return list(await asyncio.gather(
            *(self.get_fingerprint(url) for url in image_urls)
        ))

    def clear_cache(self):
        """Clear the fingerprint cache."""
        self.cache.clear()
        logger.info("Fingerprint cache cleared")

    async def close(self):
        """Clean up resources."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("ImageMatcher resources cleaned up")
