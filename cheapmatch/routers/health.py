"""
Health Router for the Cheapmatch API
System health checks and status endpoints
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from cheapmatch import __version__
from cheapmatch.models.schemas import HealthResponse
from cheapmatch.services.match_engine import MatchEngine, get_match_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Health"])


def _store_connected(engine: MatchEngine) -> bool:
    store = engine.result_cache.store
    try:
        return store.is_connected()
    except Exception as e:
        logger.warning(f"Result store health check failed: {e}")
        return False


@router.get("/health", response_model=HealthResponse)
async def health_check(engine: MatchEngine = Depends(get_match_engine)):
    """
    Health check endpoint for monitoring and load balancers.

    Returns the status of:
    - Result store connection
    - Catalog credentials
    - Semantic verifier availability
    """
    store_connected = _store_connected(engine)
    catalog_configured = engine.catalog.is_configured

    if store_connected and catalog_configured:
        status = "healthy"
    else:
        status = "degraded"

    return HealthResponse(
        status=status,
        version=__version__,
        result_store=engine.result_cache.store.name,
        result_store_connected=store_connected,
        catalog_configured=catalog_configured,
        verifier_enabled=engine.semantic_verifier.enabled,
        timestamp=datetime.now(timezone.utc)
    )


@router.get("/health/ready")
async def readiness_check(engine: MatchEngine = Depends(get_match_engine)):
    """
    Readiness probe endpoint.

    Returns 200 if the service can serve compare requests, 503 otherwise.
    """
    if not engine.catalog.is_configured:
        return JSONResponse(status_code=503, content={"ready": False, "reason": "Catalog not configured"})
    if not _store_connected(engine):
        return JSONResponse(status_code=503, content={"ready": False, "reason": "Result store not connected"})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """
    Liveness probe endpoint.

    Returns 200 if the service is alive.
    """
    return {"alive": True, "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/health/detailed")
async def detailed_health(engine: MatchEngine = Depends(get_match_engine)):
    """
    Detailed health check with component status.
    """
    components = {}

    store_connected = _store_connected(engine)
    components["result_store"] = {
        "status": "healthy" if store_connected else "unhealthy",
        "backend": engine.result_cache.store.name,
        "connected": store_connected,
        "write_failures": engine.result_cache.write_failures
    }

    components["catalog"] = {
        "status": "healthy" if engine.catalog.is_configured else "unconfigured",
        **engine.catalog.metrics
    }

    components["fingerprints"] = {
        "status": "healthy",
        **engine.scorer.image_matcher.get_status()
    }

    components["semantic_verifier"] = {
        "status": "healthy" if engine.semantic_verifier.enabled else "disabled",
        **engine.semantic_verifier.get_metrics()
    }

    components["visual_verifier"] = {
        "status": "healthy" if engine.visual_verifier.enabled else "disabled",
        **engine.visual_verifier.get_metrics()
    }

    components["environment"] = {
        "python_env": engine.settings.environment,
        "has_supabase_key": engine.settings.has_supabase_credentials
    }

    # Overall status
    all_healthy = all(
        c.get("status") == "healthy"
        for c in components.values()
        if "status" in c
    )

    return {
        "status": "healthy" if all_healthy else "degraded",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "engine": engine.metrics,
        "components": components
    }
