"""
Cheapmatch API
FastAPI entry point for cheapest-equivalent-listing lookups
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from cheapmatch import __version__
from cheapmatch.config import get_settings
from cheapmatch.routers.compare import router as compare_router
from cheapmatch.routers.health import router as health_router
from cheapmatch.services.match_engine import cleanup_match_engine, get_match_engine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

settings = get_settings()


# =============================================================================
# Application Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info("CHEAPMATCH API")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.environment}")

    # Verify critical configuration
    if not settings.has_catalog_credentials:
        logger.warning("Catalog credentials not set - compare requests will return no match")
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY not set - verifiers run in fail-open mode")
    if not settings.has_supabase_credentials:
        logger.warning("SUPABASE_URL/SUPABASE_KEY not set - results cached in memory only")
    else:
        logger.info("Supabase result store configured")

    get_match_engine()
    logger.info("API started successfully")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("Shutting down API...")
    await cleanup_match_engine()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Cheapmatch API",
    description="""
    ## Cheapest Equivalent Listing API

    Given a product listing, finds the cheapest listing of the same product
    in a third-party catalog.

    ### Pipeline
    - Price and accessory pre-filters
    - Local text + perceptual image scoring
    - LLM verification only for inconclusive scores
    - Result caching per item and currency (12h matches, 24h no-match)
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)


# =============================================================================
# CORS Middleware
# =============================================================================

if settings.cors_origins and settings.cors_origins != ("*",):
    # Use explicitly configured origins
    CORS_ORIGINS = list(settings.cors_origins)
elif settings.is_production:
    # Production without explicit config - browser extensions call with their own origin
    CORS_ORIGINS = []
    logger.warning("CORS: No origins configured for production. Set CORS_ORIGINS.")
else:
    # Development - allow all
    CORS_ORIGINS = ["*"]
    logger.info("CORS: Development mode - allowing all origins")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ORIGINS != ["*"],  # Can't use credentials with "*"
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept"],
)


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with detailed messages."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"]
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Validation error",
            "errors": errors
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors."""
    # Details stay in the log; the response body is always generic
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"}
    )


# =============================================================================
# Include Routers
# =============================================================================

app.include_router(health_router)
app.include_router(compare_router)


@app.get("/", include_in_schema=False)
async def root():
    """API information."""
    return {
        "name": "Cheapmatch API",
        "version": __version__,
        "documentation": "/docs",
        "health": "/api/health"
    }


# =============================================================================
# Run with Uvicorn (for local development)
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    host = os.environ.get("HOST", "0.0.0.0")

    uvicorn.run(
        "cheapmatch.main:app",
        host=host,
        port=port,
        reload=not settings.is_production,
        log_level="info"
    )
