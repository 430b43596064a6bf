"""Service-role Supabase client singleton and avatar store factory."""

from supabase import create_client, Client
from avatar_pipeline.config import settings
from avatar_pipeline.db.avatar_store import (
    AvatarRecordStore,
    InMemoryAvatarStore,
    SupabaseAvatarStore,
)

_client: Client | None = None


def get_supabase() -> Client:
    """Get or create the Supabase client using service role key."""
    global _client
    if _client is None:
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set"
            )
        _client = create_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
        )
    return _client


def build_avatar_store() -> AvatarRecordStore:
    """Pick the record store from ``settings.avatar_store_backend``."""
    if settings.avatar_store_backend == "supabase":
        return SupabaseAvatarStore(get_supabase(), table=settings.avatars_table)
    if settings.avatar_store_backend == "memory":
        return InMemoryAvatarStore()
    raise RuntimeError(f"Unknown avatar store backend: {settings.avatar_store_backend}")
