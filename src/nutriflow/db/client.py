"""
NutriFlow - Supabase Client.

Low-level database access for the Supabase progress backend.
"""

from supabase import Client, create_client

from nutriflow.config import settings

# Singleton client instance
_client: Client | None = None


def get_client() -> Client:
    """
    Get the Supabase client.

    Uses singleton pattern to reuse connection.
    """
    global _client

    if _client is None:
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _client = create_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
        )

    return _client
