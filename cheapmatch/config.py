"""
Runtime configuration for the Cheapmatch API.

All credentials and tunables live on a single Settings object that is built
once (usually from the environment) and handed to the services that need it.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


SUPPORTED_CURRENCIES: Tuple[str, ...] = ("USD", "CAD")


@dataclass
class Settings:
    """Configuration for the matching pipeline and its collaborators."""
    # Catalog search (signed affiliate gateway)
    catalog_app_key: Optional[str] = None
    catalog_app_secret: Optional[str] = None
    catalog_tracking_id: Optional[str] = None
    catalog_gateway_url: str = "https://api-sg.aliexpress.com/sync"
    catalog_page_size: int = 40
    catalog_timeout: float = 10.0
    catalog_max_concurrency: int = 4

    # Candidate filter
    candidate_limit: int = 20

    # LLM collaborators (semantic verifier, visual verifier, keyword extractor)
    anthropic_api_key: Optional[str] = None
    llm_model: str = "claude-3-haiku-20240307"
    verifier_timeout: float = 15.0
    keyword_title_threshold: int = 50  # Titles longer than this are shortened
    fallback_keyword_count: int = 5

    # Image fingerprints
    image_timeout: float = 5.0
    max_image_size: int = 10 * 1024 * 1024  # 10MB
    fingerprint_ttl_seconds: int = 7 * 24 * 3600
    fingerprint_cache_capacity: int = 10_000

    # Result cache freshness windows
    positive_ttl_seconds: int = 12 * 3600
    negative_ttl_seconds: int = 24 * 3600

    # Persistence
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    cache_table: str = "match_cache"

    environment: str = "development"
    cors_origins: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        cors_env = os.environ.get("CORS_ORIGINS", "")
        return cls(
            catalog_app_key=os.environ.get("CATALOG_APP_KEY"),
            catalog_app_secret=os.environ.get("CATALOG_APP_SECRET"),
            catalog_tracking_id=os.environ.get("CATALOG_TRACKING_ID"),
            catalog_gateway_url=os.environ.get(
                "CATALOG_GATEWAY_URL",
                "https://api-sg.aliexpress.com/sync"
            ),
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY"),
            llm_model=os.environ.get("LLM_MODEL", "claude-3-haiku-20240307"),
            supabase_url=os.environ.get("SUPABASE_URL"),
            supabase_key=os.environ.get("SUPABASE_KEY") or os.environ.get("SUPABASE_SERVICE_KEY"),
            cache_table=os.environ.get("MATCH_CACHE_TABLE", "match_cache"),
            environment=os.environ.get("PYTHON_ENV", "development").lower(),
            cors_origins=tuple(
                origin.strip() for origin in cors_env.split(",") if origin.strip()
            ),
        )

    @property
    def has_catalog_credentials(self) -> bool:
        return bool(self.catalog_app_key and self.catalog_app_secret and self.catalog_tracking_id)

    @property
    def has_supabase_credentials(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def is_production(self) -> bool:
        return self.environment in ("production", "prod")


# Global instance for dependency injection
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
