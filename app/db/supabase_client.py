"""Service-role Supabase client singleton.

Used by the Supabase job store and by processors that invoke edge functions.
"""

from supabase import create_client, Client
import structlog

from app.config import settings

logger = structlog.get_logger(__name__)

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
        logger.info("supabase_client_created", url=settings.supabase_url)
    return _client


def set_supabase(client: Client | None) -> None:
    """Replace the shared client (None resets it to lazy creation)."""
    global _client
    _client = client
