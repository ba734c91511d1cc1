# Services package
from .errors import ConfigurationError, CacheWriteError
from .text_similarity import text_similarity, clean_title
from .image_matcher import (
    ImageMatcher,
    ImageMatcherConfig,
    FingerprintCache,
    compute_fingerprint,
    image_similarity
)
from .candidate_filter import FilterReason, FilterOutcome, filter_candidates
from .scoring import Decision, SimilarityScore, ScoredCandidate, LocalScorer
from .llm_client import LLMClient
from .ai_validator import SemanticVerifier, SemanticVerdict
from .visual_verifier import VisualVerifier
from .keyword_extractor import KeywordExtractor
from .catalog_search import CatalogSearch, sign_params
from .result_cache import (
    CacheEntry,
    CacheState,
    InMemoryResultStore,
    ResultCache
)
from .supabase import SupabaseResultStore, create_result_store
from .match_engine import (
    MatchEngine,
    build_match_engine,
    get_match_engine,
    cleanup_match_engine
)
