"""
Pydantic models for the Cheapmatch comparison API
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class Currency(str, Enum):
    USD = "USD"
    CAD = "CAD"


# =============================================================================
# Listings
# =============================================================================

class SourceItem(BaseModel):
    """The listing a shopper is looking at; immutable for one request."""
    id: str = Field(..., min_length=1, description="Stable catalog identifier (e.g. ASIN)")
    title: str = Field(..., min_length=1, description="Listing title")
    price: float = Field(..., gt=0, description="Listing price in `currency`")
    currency: Currency
    image_url: Optional[str] = None

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title must not be blank")
        return v

    class Config:
        frozen = True


class Candidate(BaseModel):
    """A listing returned by the catalog search."""
    id: str
    title: str
    price: float = Field(..., ge=0)
    currency: Currency
    image_url: str = ""
    destination_url: str = ""

    class Config:
        frozen = True


# =============================================================================
# Match Results
# =============================================================================

class MatchResult(BaseModel):
    """The accepted cheaper listing for a source item."""
    title: str
    price: float
    currency: Currency
    savings: float = Field(..., description="Source price minus match price")
    destination_url: str
    image_url: str = ""
    candidate_id: str
    confidence: float = Field(..., ge=0, le=100)


class CompareResponse(BaseModel):
    """Response for the compare operation."""
    found: bool
    match: Optional[MatchResult] = None


# =============================================================================
# Service Schemas
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    result_store: str
    result_store_connected: bool
    catalog_configured: bool
    verifier_enabled: bool
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response"""
    detail: str
    errors: List[dict] = Field(default_factory=list)
