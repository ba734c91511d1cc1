"""
Catalog Search Service
Signed requests against the affiliate product gateway.

Every request carries an HMAC-SHA256 signature (uppercase hex) computed over
the sorted parameters concatenated as key1value1key2value2...; the `sign`
parameter itself is excluded.

Errors never reach the caller: a failed search is an empty list and a failed
detail lookup is None.
"""

import asyncio
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from cheapmatch.config import Settings
from cheapmatch.models.schemas import Candidate, Currency

logger = logging.getLogger(__name__)

QUERY_METHOD = "aliexpress.affiliate.product.query"
DETAIL_METHOD = "aliexpress.affiliate.productdetail.get"
API_VERSION = "2.0"
SIGN_METHOD = "sha256"
TARGET_LANGUAGE = "EN"


def sign_params(params: Dict[str, str], secret: str) -> str:
    """Uppercase hex HMAC-SHA256 over the sorted key+value concatenation."""
    payload = "".join(f"{key}{params[key]}" for key in sorted(params) if key != "sign")
    digest = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest().upper()


def _dig(data: Any, *path: str) -> Any:
    """Walk nested dicts, returning None at the first missing level."""
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _parse_price(value: Any) -> Optional[float]:
    try:
        price = float(str(value).replace(",", "").strip())
    except (TypeError, ValueError):
        return None
    if price != price or price < 0:  # NaN or negative
        return None
    return price


def parse_product(item: Any, currency: Currency) -> Optional[Candidate]:
    """Map one gateway product onto a Candidate; None if required fields are unusable."""
    if not isinstance(item, dict):
        return None

    product_id = item.get("product_id")
    title = item.get("product_title")
    price = _parse_price(item.get("target_sale_price"))
    if product_id in (None, "") or not title or price is None:
        return None

    currency_code = str(item.get("target_sale_price_currency") or currency.value).upper()
    if currency_code != currency.value:
        logger.debug(f"Skipping product {product_id}: priced in {currency_code}, wanted {currency.value}")
        return None

    return Candidate(
        id=str(product_id),
        title=str(title),
        price=price,
        currency=currency,
        image_url=str(item.get("product_main_image_url") or ""),
        destination_url=str(item.get("promotion_link") or item.get("product_detail_url") or "")
    )


def parse_products(data: Any, response_key: str, currency: Currency) -> List[Candidate]:
    """Extract candidates from a gateway response body, in relevance order."""
    if not isinstance(data, dict):
        logger.warning("Catalog response is not a JSON object")
        return []

    if "error_response" in data:
        logger.warning(f"Catalog API error: {data['error_response']}")
        return []

    resp_result = _dig(data, response_key, "resp_result")
    if resp_result is None:
        logger.warning(f"Catalog response missing {response_key}.resp_result")
        return []

    resp_code = resp_result.get("resp_code") if isinstance(resp_result, dict) else None
    if resp_code is not None and str(resp_code) != "200":
        logger.info(f"Catalog returned resp_code={resp_code}: {resp_result.get('resp_msg')}")
        return []

    products = _dig(resp_result, "result", "products", "product")
    if isinstance(products, dict):
        products = [products]
    if not isinstance(products, list):
        return []

    candidates = [c for c in (parse_product(item, currency) for item in products) if c is not None]
    if len(candidates) < len(products):
        logger.debug(f"Dropped {len(products) - len(candidates)} malformed products")
    return candidates


class CatalogSearch:
    """
    Async client for the affiliate catalog gateway.

    Usage:
        catalog = CatalogSearch(settings)
        candidates = await catalog.query("sony wh-1000xm4", Currency.USD, 40)
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._http_client = http_client
        self._semaphore = asyncio.Semaphore(max(1, settings.catalog_max_concurrency))
        self.metrics = {
            "queries": 0,
            "detail_lookups": 0,
            "errors": 0
        }

    @property
    def is_configured(self) -> bool:
        return self.settings.has_catalog_credentials

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.settings.catalog_timeout)
        return self._http_client

    def _build_params(self, method: str, currency: Currency, extra: Dict[str, str]) -> Dict[str, str]:
        params = {
            "app_key": self.settings.catalog_app_key or "",
            "timestamp": str(int(time.time() * 1000)),
            "sign_method": SIGN_METHOD,
            "method": method,
            "v": API_VERSION,
            "target_currency": currency.value,
            "target_language": TARGET_LANGUAGE,
            "tracking_id": self.settings.catalog_tracking_id or "",
            **extra,
        }
        params["sign"] = sign_params(params, self.settings.catalog_app_secret or "")
        return params

    async def _post(self, params: Dict[str, str]) -> Optional[Any]:
        """POST signed form parameters; None on any transport or decode failure."""
        async with self._semaphore:
            try:
                response = await self._get_http_client().post(
                    self.settings.catalog_gateway_url,
                    data=params,
                    headers={"Content-Type": "application/x-www-form-urlencoded;charset=utf-8"},
                    timeout=self.settings.catalog_timeout
                )
                response.raise_for_status()
                return response.json()
            except httpx.TimeoutException:
                self.metrics["errors"] += 1
                logger.warning(f"Catalog request timed out ({params.get('method')})")
                return None
            except (httpx.HTTPError, ValueError) as e:
                self.metrics["errors"] += 1
                logger.warning(f"Catalog request failed ({params.get('method')}): {e}")
                return None

    async def query(self, keywords: str, currency: Currency, page_size: int = 40) -> List[Candidate]:
        """
        Search the catalog.

        Args:
            keywords: Search keywords
            currency: Currency to price results in
            page_size: Maximum number of results

        Returns:
            Candidates in relevance order; empty on any error
        """
        if not self.is_configured:
            logger.warning("Catalog search called without credentials")
            return []

        self.metrics["queries"] += 1
        params = self._build_params(QUERY_METHOD, currency, {
            "keywords": keywords,
            "page_size": str(page_size),
        })

        data = await self._post(params)
        if data is None:
            return []

        candidates = parse_products(data, "aliexpress_affiliate_product_query_response", currency)
        logger.info(f"Catalog search '{keywords}' ({currency.value}) returned {len(candidates)} candidates")
        return candidates[:page_size]

    async def get_details(self, candidate_id: str, currency: Currency) -> Optional[Candidate]:
        """
        Fresh details for one listing.

        Returns:
            The candidate, or None if it is gone or the lookup failed
        """
        if not self.is_configured:
            return None

        self.metrics["detail_lookups"] += 1
        params = self._build_params(DETAIL_METHOD, currency, {"product_ids": candidate_id})

        data = await self._post(params)
        if data is None:
            return None

        for candidate in parse_products(data, "aliexpress_affiliate_productdetail_get_response", currency):
            if candidate.id == candidate_id:
                return candidate

        logger.info(f"Catalog has no details for {candidate_id} in {currency.value}")
        return None

    async def close(self):
        """Clean up resources."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
