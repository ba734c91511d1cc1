# Models package
from .schemas import (
    Currency,
    SourceItem,
    Candidate,
    MatchResult,
    CompareResponse,
    HealthResponse,
    ErrorResponse
)
