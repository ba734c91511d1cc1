"""
Compare Router
Finds the cheapest equivalent listing for one source item.
"""

import logging

from fastapi import APIRouter, Depends

from cheapmatch.models.schemas import CompareResponse, ErrorResponse, SourceItem
from cheapmatch.services.match_engine import MatchEngine, get_match_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Compare"])


@router.post(
    "/compare",
    response_model=CompareResponse,
    responses={422: {"model": ErrorResponse}, 500: {"model": ErrorResponse}}
)
async def compare(
    source: SourceItem,
    engine: MatchEngine = Depends(get_match_engine)
):
    """
    Look up a cheaper listing of the same product.

    Served from the result cache while the previous outcome is fresh
    (12 hours for a match, 24 hours for no match).
    """
    logger.info(f"Compare request: {source.id} ({source.currency.value} {source.price})")
    return await engine.compare(source)
