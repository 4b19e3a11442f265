"""
Supabase table access for the vaulting pipeline.

Tables (see backend/migrations/001_vault_pipeline.sql):
  oauth_states       — one-time OAuth state tokens
  connections        — provider OAuth connections (all providers, one table)
  vaulted_documents  — one row per (provider, external_document_id)
  webhook_events     — best-effort log of every received webhook event
  audit_log          — document lifecycle events (vaulted, failed)

Every method is a thin wrapper around one PostgREST call. Failures are
re-raised as PersistenceError so callers never see client-library types,
except for the unique-constraint violation on vaulted_documents which is
surfaced as DuplicateKey because the ingestion claim depends on it.

Row ids are uuid columns. Lookups by an id that is not a UUID return
"not found" without a query; PostgREST would reject the filter (22P02).
"""

import logging
import uuid
from typing import Any, Optional

from postgrest.exceptions import APIError
from supabase import Client

from signvault.errors import PersistenceError

logger = logging.getLogger(__name__)

# Postgres SQLSTATE for unique_violation
_UNIQUE_VIOLATION = "23505"


class DuplicateKey(PersistenceError):
    """An insert hit a unique constraint."""


def is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class VaultRepository:
    def __init__(self, client: Client):
        self._client = client

    # ------------------------------------------------------------------
    # oauth_states
    # ------------------------------------------------------------------

    def insert_oauth_state(self, row: dict) -> None:
        try:
            self._client.table("oauth_states").insert(row).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to store OAuth state: {e}")

    def consume_oauth_state(self, state: str) -> Optional[dict]:
        """
        Delete the state row and return it, or None if it did not exist.

        DELETE ... RETURNING makes redemption atomic: of two concurrent
        callbacks carrying the same state, exactly one gets the row back.
        """
        try:
            result = self._client.table("oauth_states").delete().eq("state", state).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to consume OAuth state: {e}")
        return result.data[0] if result.data else None

    # ------------------------------------------------------------------
    # connections
    # ------------------------------------------------------------------

    def insert_connection(self, row: dict) -> dict:
        try:
            result = self._client.table("connections").insert(row).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to save connection: {e}")
        if not result.data:
            raise PersistenceError("connections insert returned no data")
        return result.data[0]

    def get_connection(self, connection_id: str) -> Optional[dict]:
        if not is_uuid(connection_id):
            return None
        try:
            result = (
                self._client.table("connections")
                .select("*")
                .eq("id", connection_id)
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to load connection {connection_id!r}: {e}")
        return result.data[0] if result.data else None

    def find_connections(
        self,
        provider: str,
        external_account_id: Optional[str] = None,
    ) -> list[dict]:
        """Connections for a provider, most recently updated first."""
        try:
            query = self._client.table("connections").select("*").eq("provider", provider)
            if external_account_id is not None:
                query = query.eq("external_account_id", external_account_id)
            result = query.order("updated_at", desc=True).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to look up {provider} connections: {e}")
        return result.data or []

    def list_user_connections(self, user_id: str) -> list[dict]:
        try:
            result = (
                self._client.table("connections")
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to list connections: {e}")
        return result.data or []

    def update_connection(self, connection_id: str, fields: dict) -> dict:
        try:
            result = (
                self._client.table("connections")
                .update(fields)
                .eq("id", connection_id)
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to update connection {connection_id!r}: {e}")
        if not result.data:
            raise PersistenceError(f"Connection {connection_id!r} not found for update")
        return result.data[0]

    def delete_connection(self, connection_id: str, user_id: str) -> bool:
        if not is_uuid(connection_id):
            return False
        try:
            result = (
                self._client.table("connections")
                .delete()
                .eq("id", connection_id)
                .eq("user_id", user_id)
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to delete connection {connection_id!r}: {e}")
        return bool(result.data)

    # ------------------------------------------------------------------
    # vaulted_documents
    # ------------------------------------------------------------------

    def insert_document(self, row: dict) -> dict:
        """
        Insert a new vaulted_documents row.

        Raises:
            DuplicateKey: a row for (provider, external_document_id) exists.
            PersistenceError: any other failure.
        """
        try:
            result = self._client.table("vaulted_documents").insert(row).execute()
        except APIError as e:
            if e.code == _UNIQUE_VIOLATION:
                raise DuplicateKey(
                    f"Document {row.get('provider')}/{row.get('external_document_id')} already exists"
                )
            raise PersistenceError(f"Failed to insert document: {e.message}")
        except Exception as e:
            raise PersistenceError(f"Failed to insert document: {e}")
        if not result.data:
            raise PersistenceError("vaulted_documents insert returned no data")
        return result.data[0]

    def get_document(self, document_id: str) -> Optional[dict]:
        if not is_uuid(document_id):
            return None
        try:
            result = (
                self._client.table("vaulted_documents")
                .select("*")
                .eq("id", document_id)
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to load document {document_id!r}: {e}")
        return result.data[0] if result.data else None

    def get_document_by_key(self, provider: str, external_document_id: str) -> Optional[dict]:
        try:
            result = (
                self._client.table("vaulted_documents")
                .select("*")
                .eq("provider", provider)
                .eq("external_document_id", external_document_id)
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to load document {provider}/{external_document_id}: {e}")
        return result.data[0] if result.data else None

    def update_document(self, document_id: str, fields: dict) -> Optional[dict]:
        """
        Update a document that is not yet registered.

        Returns the updated row, or None when the row is registered (or gone),
        in which case nothing was written.
        """
        try:
            result = (
                self._client.table("vaulted_documents")
                .update(fields)
                .eq("id", document_id)
                .neq("status", "registered")
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to update document {document_id!r}: {e}")
        return result.data[0] if result.data else None

    def reclaim_document(self, document_id: str, stale_before: str, fields: dict) -> Optional[dict]:
        """
        Compare-and-set claim on an existing row.

        Succeeds only if the row is 'failed', or is in flight but has not
        been touched since ``stale_before`` (its worker died). Returns the
        claimed row or None if another worker owns it or it is registered.
        """
        try:
            result = (
                self._client.table("vaulted_documents")
                .update(fields)
                .eq("id", document_id)
                .neq("status", "registered")
                .or_(f"status.eq.failed,updated_at.lt.{stale_before}")
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to reclaim document {document_id!r}: {e}")
        return result.data[0] if result.data else None

    def find_registered_by_hash(self, content_hash: str) -> Optional[dict]:
        """Earliest registered document carrying exactly this hash."""
        try:
            result = (
                self._client.table("vaulted_documents")
                .select("*")
                .eq("content_hash", content_hash)
                .eq("status", "registered")
                .order("registered_at")
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to look up hash: {e}")
        return result.data[0] if result.data else None

    def list_documents(
        self,
        status: Optional[str] = None,
        provider: Optional[str] = None,
        limit: int = 100,
    ) -> list[dict]:
        try:
            query = self._client.table("vaulted_documents").select("*")
            if status:
                query = query.eq("status", status)
            if provider:
                query = query.eq("provider", provider)
            result = query.order("updated_at", desc=True).limit(limit).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to list documents: {e}")
        return result.data or []

    # ------------------------------------------------------------------
    # webhook_events
    # ------------------------------------------------------------------

    def insert_webhook_event(self, row: dict[str, Any]) -> None:
        try:
            self._client.table("webhook_events").insert(row).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to record webhook event: {e}")

    # ------------------------------------------------------------------
    # audit_log
    # ------------------------------------------------------------------

    def insert_audit_event(self, row: dict[str, Any]) -> None:
        try:
            self._client.table("audit_log").insert(row).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to record audit event: {e}")

    def list_audit_events(self, document_id: str) -> list[dict]:
        """Audit rows for one document, oldest first."""
        if not is_uuid(document_id):
            return []
        try:
            result = (
                self._client.table("audit_log")
                .select("*")
                .eq("document_id", document_id)
                .order("created_at")
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to list audit events for {document_id!r}: {e}")
        return result.data or []

    # ------------------------------------------------------------------
    # health
    # ------------------------------------------------------------------

    def ping(self) -> None:
        """Run the cheapest possible query; raises PersistenceError on failure."""
        try:
            self._client.table("vaulted_documents").select("id").limit(1).execute()
        except Exception as e:
            raise PersistenceError(f"Database unreachable: {e}")
