"""
Supabase Service for the Cheapmatch result cache
Persists cache entries in the `match_cache` table.
"""

import asyncio
import logging
from typing import Optional

from supabase import create_client, Client

from cheapmatch.config import Settings
from cheapmatch.models.schemas import Currency
from cheapmatch.services.errors import CacheWriteError
from cheapmatch.services.result_cache import CacheEntry, InMemoryResultStore, ResultStore

logger = logging.getLogger(__name__)


class SupabaseResultStore:
    """
    Result store backed by a Supabase table.

    The supabase client is synchronous, so every call runs in a worker
    thread. Upserts target the (source_item_id, currency) primary key and are
    atomic per key.
    """

    name = "supabase"

    def __init__(self, settings: Settings, client: Optional[Client] = None):
        """Initialize Supabase store."""
        self.settings = settings
        self.table_name = settings.cache_table
        self._client = client

    @property
    def client(self) -> Client:
        """Get or create Supabase client."""
        if self._client is None:
            if not self.settings.has_supabase_credentials:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY (or SUPABASE_SERVICE_KEY) are required")

            self._client = create_client(self.settings.supabase_url, self.settings.supabase_key)
            logger.info(f"Supabase client initialized for {self.settings.supabase_url}")

        return self._client

    def is_connected(self) -> bool:
        """Check if Supabase is reachable."""
        try:
            self.client.table(self.table_name).select("source_item_id").limit(1).execute()
            return True
        except Exception as e:
            logger.error(f"Supabase connection check failed: {e}")
            return False

    # =========================================================================
    # Cache Entry Operations
    # =========================================================================

    def _select(self, source_item_id: str, currency: Currency):
        return (
            self.client.table(self.table_name)
            .select("*")
            .eq("source_item_id", source_item_id)
            .eq("currency", currency.value)
            .limit(1)
            .execute()
        )

    async def get(self, source_item_id: str, currency: Currency) -> Optional[CacheEntry]:
        """Fetch the entry for a key; read failures are treated as a miss."""
        try:
            result = await asyncio.to_thread(self._select, source_item_id, currency)
        except Exception as e:
            logger.warning(f"Error reading cache entry {source_item_id}/{currency.value}: {e}")
            return None

        if not result.data:
            return None

        try:
            return CacheEntry.from_row(result.data[0])
        except (KeyError, ValueError) as e:
            logger.warning(f"Ignoring malformed cache row {source_item_id}/{currency.value}: {e}")
            return None

    def _upsert(self, entry: CacheEntry):
        return (
            self.client.table(self.table_name)
            .upsert(entry.to_row(), on_conflict="source_item_id,currency")
            .execute()
        )

    async def upsert(self, entry: CacheEntry) -> None:
        """Insert or replace the entry for its key."""
        try:
            await asyncio.to_thread(self._upsert, entry)
        except Exception as e:
            raise CacheWriteError(f"upsert into {self.table_name} failed: {e}") from e


def create_result_store(settings: Settings) -> ResultStore:
    """Supabase store when credentials are configured, otherwise in-memory."""
    if settings.has_supabase_credentials:
        return SupabaseResultStore(settings)

    logger.warning("Supabase not configured; match results are cached in memory only")
    return InMemoryResultStore()
