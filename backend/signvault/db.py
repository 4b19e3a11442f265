"""
Database client configuration.
Uses Supabase for PostgreSQL + Storage.

The admin client is constructed exactly once at process start (see
signvault.dependencies.build_services) and handed to the repository and the content
store. It is a shared handle; nothing needs tearing down beyond process exit.
"""

from supabase import Client, ClientOptions, create_client

from signvault.config import Settings


def build_supabase_client(settings: Settings) -> Client:
    """
    Create the service-role Supabase client (bypasses RLS).

    PostgREST and Storage calls are bounded by settings.db_timeout_seconds so
    no database or upload call can block indefinitely.
    """
    options = ClientOptions(
        postgrest_client_timeout=settings.db_timeout_seconds,
        storage_client_timeout=settings.db_timeout_seconds,
    )
    return create_client(settings.supabase_url, settings.supabase_service_key, options)
