"""
Shared test doubles.

Tests mock ALL external calls: Supabase tables and storage are replaced by
in-memory fakes, and provider HTTP APIs by an httpx.MockTransport so the
real adapters run against canned responses. No network, no database.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

import httpx
import pytest

from signvault.config import ProviderSettings, Settings
from signvault.dependencies import VaultServices
from signvault.errors import PersistenceError, StorageError
from signvault.repository import DuplicateKey, is_uuid
from signvault.services.ingestion import IngestionPipeline
from signvault.services.locks import KeyedLocks
from signvault.services.oauth import OAuthConnectionManager
from signvault.services.providers import build_adapters
from signvault.services.storage import storage_path_for
from signvault.services.verification import VerificationService
from signvault.services.webhooks import WebhookReceiver

TEST_API_KEY = "test-api-key"
DOCUSIGN_SECRET = "docusign-hmac-key"
SIGNNOW_SECRET = "signnow-hmac-key"
PANDADOC_SECRET = "pandadoc-shared-key"


def _ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# In-memory Supabase stand-ins
# ---------------------------------------------------------------------------

class FakeRepository:
    """Same interface and filter semantics as VaultRepository, backed by dicts."""

    def __init__(self):
        self.oauth_states: dict[str, dict] = {}
        self.connections: dict[str, dict] = {}
        self.documents: dict[str, dict] = {}
        self.webhook_events: list[dict] = []
        self.audit_events: list[dict] = []
        # Method names that raise PersistenceError
        self.fail_methods: set[str] = set()
        # update_document raises when asked to move a row into one of these statuses
        self.fail_statuses: set[str] = set()
        # Every update_document call that actually wrote: (id, fields)
        self.document_writes: list[tuple[str, dict]] = []

    def _check(self, method: str) -> None:
        if method in self.fail_methods:
            raise PersistenceError(f"{method} failed")

    # oauth_states
    def insert_oauth_state(self, row: dict) -> None:
        self._check("insert_oauth_state")
        self.oauth_states[row["state"]] = dict(row)

    def consume_oauth_state(self, state: str) -> Optional[dict]:
        self._check("consume_oauth_state")
        return self.oauth_states.pop(state, None)

    # connections
    def insert_connection(self, row: dict) -> dict:
        self._check("insert_connection")
        row = dict(row)
        row.setdefault("id", str(uuid4()))
        self.connections[row["id"]] = row
        return dict(row)

    def get_connection(self, connection_id: str) -> Optional[dict]:
        if not is_uuid(connection_id):
            return None
        row = self.connections.get(connection_id)
        return dict(row) if row else None

    def find_connections(self, provider: str, external_account_id: Optional[str] = None) -> list[dict]:
        rows = [
            dict(r) for r in self.connections.values()
            if r["provider"] == provider
            and (external_account_id is None or r["external_account_id"] == external_account_id)
        ]
        return sorted(rows, key=lambda r: r.get("updated_at") or "", reverse=True)

    def list_user_connections(self, user_id: str) -> list[dict]:
        return [dict(r) for r in self.connections.values() if r["user_id"] == user_id]

    def update_connection(self, connection_id: str, fields: dict) -> dict:
        self._check("update_connection")
        if connection_id not in self.connections:
            raise PersistenceError(f"Connection {connection_id!r} not found for update")
        self.connections[connection_id].update(fields)
        return dict(self.connections[connection_id])

    def delete_connection(self, connection_id: str, user_id: str) -> bool:
        if not is_uuid(connection_id):
            return False
        row = self.connections.get(connection_id)
        if row is None or row["user_id"] != user_id:
            return False
        del self.connections[connection_id]
        return True

    # vaulted_documents
    def insert_document(self, row: dict) -> dict:
        self._check("insert_document")
        for existing in self.documents.values():
            if (existing["provider"], existing["external_document_id"]) == (
                row["provider"],
                row["external_document_id"],
            ):
                raise DuplicateKey("duplicate key value violates unique constraint")
        row = {"failure_reason": None, "content_hash": None, "registered_at": None,
               "anchor_ref": None, **row}
        self.documents[row["id"]] = row
        return dict(row)

    def get_document(self, document_id: str) -> Optional[dict]:
        if not is_uuid(document_id):
            return None
        row = self.documents.get(document_id)
        return dict(row) if row else None

    def get_document_by_key(self, provider: str, external_document_id: str) -> Optional[dict]:
        for row in self.documents.values():
            if row["provider"] == provider and row["external_document_id"] == external_document_id:
                return dict(row)
        return None

    def update_document(self, document_id: str, fields: dict) -> Optional[dict]:
        self._check("update_document")
        if fields.get("status") in self.fail_statuses:
            raise PersistenceError(f"could not set status {fields['status']}")
        row = self.documents.get(document_id)
        if row is None or row["status"] == "registered":
            return None
        row.update(fields)
        self.document_writes.append((document_id, dict(fields)))
        return dict(row)

    def reclaim_document(self, document_id: str, stale_before: str, fields: dict) -> Optional[dict]:
        row = self.documents.get(document_id)
        if row is None or row["status"] == "registered":
            return None
        if row["status"] != "failed" and not _ts(row["updated_at"]) < _ts(stale_before):
            return None
        row.update(fields)
        self.document_writes.append((document_id, dict(fields)))
        return dict(row)

    def find_registered_by_hash(self, content_hash: str) -> Optional[dict]:
        rows = [
            r for r in self.documents.values()
            if r["status"] == "registered" and r.get("content_hash") == content_hash
        ]
        rows.sort(key=lambda r: r["registered_at"])
        return dict(rows[0]) if rows else None

    def list_documents(self, status=None, provider=None, limit: int = 100) -> list[dict]:
        rows = [
            dict(r) for r in self.documents.values()
            if (status is None or r["status"] == status)
            and (provider is None or r["provider"] == provider)
        ]
        rows.sort(key=lambda r: r["updated_at"], reverse=True)
        return rows[:limit]

    # webhook_events
    def insert_webhook_event(self, row: dict) -> None:
        self._check("insert_webhook_event")
        self.webhook_events.append(dict(row))

    # audit_log
    def insert_audit_event(self, row: dict) -> None:
        self._check("insert_audit_event")
        self.audit_events.append(dict(row))

    def list_audit_events(self, document_id: str) -> list[dict]:
        self._check("list_audit_events")
        return [dict(r) for r in self.audit_events if r["document_id"] == document_id]

    def ping(self) -> None:
        self._check("ping")


class FakeStore:
    bucket = "vault"

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.uploads: list[str] = []
        self.deleted: list[str] = []
        self.fail_put = False

    def put(self, path: str, data: bytes) -> str:
        if self.fail_put:
            raise StorageError(f"Failed to upload {path}: simulated outage")
        self.objects[path] = data
        self.uploads.append(path)
        return hashlib.sha256(data).hexdigest()

    def get(self, path: str) -> bytes:
        if path not in self.objects:
            raise StorageError(f"Failed to download {path}: Object not found")
        return self.objects[path]

    def delete(self, path: str) -> bool:
        self.deleted.append(path)
        return self.objects.pop(path, None) is not None

    def signed_url(self, path: str, expiry_seconds: int = 3600) -> str:
        return f"https://storage.test/object/sign/vault/{path}?token=signed"

    def ping(self) -> None:
        return None


class RecordingQueue:
    """IngestionQueue stand-in that records jobs instead of running them."""

    def __init__(self):
        self.jobs = []
        self.accept = True
        self.started = False

    def start(self) -> None:
        self.started = True

    def enqueue(self, job) -> bool:
        if not self.accept:
            return False
        self.jobs.append(job)
        return True

    async def shutdown(self, grace_seconds: float) -> None:
        self.started = False


# ---------------------------------------------------------------------------
# Provider HTTP API stand-in
# ---------------------------------------------------------------------------

class ProviderAPI:
    """
    Programmable MockTransport handler keyed by (method, path).

    Each route holds a list of responses; they are served in order and the
    last one repeats.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list] = {}

    def add(self, method: str, path: str, status: int = 200, **kwargs) -> "ProviderAPI":
        self._routes.setdefault((method, path), []).append((status, kwargs))
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": "not_found"})
        status, kwargs = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(status, **kwargs)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://test.supabase.co",
        supabase_service_key="test-service-key",
        internal_api_key=TEST_API_KEY,
        completion_redirect_url="https://app.test/integrations/complete",
        ingestion_stale_after_seconds=900,
        docusign=ProviderSettings(
            client_id="ds-client",
            client_secret="ds-client-secret",
            redirect_uri="https://api.test/oauth/docusign/callback",
            webhook_secret=DOCUSIGN_SECRET,
            base_url="account-d.docusign.com",
        ),
        signnow=ProviderSettings(
            client_id="sn-client",
            client_secret="sn-client-secret",
            redirect_uri="https://api.test/oauth/signnow/callback",
            webhook_secret=SIGNNOW_SECRET,
            base_url="https://api.signnow.com",
        ),
        pandadoc=ProviderSettings(
            client_id="pd-client",
            client_secret="pd-client-secret",
            redirect_uri="https://api.test/oauth/pandadoc/callback",
            webhook_secret=PANDADOC_SECRET,
            base_url="https://api.pandadoc.com",
        ),
    )


@pytest.fixture
def repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def provider_api() -> ProviderAPI:
    return ProviderAPI()


@pytest.fixture
def http(provider_api) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(provider_api.handler))


@pytest.fixture
def adapters(settings, http):
    return build_adapters(settings, http)


@pytest.fixture
def oauth_manager(repo, adapters, settings) -> OAuthConnectionManager:
    return OAuthConnectionManager(repo, adapters, settings, locks=KeyedLocks())


@pytest.fixture
def pipeline(repo, store, oauth_manager, adapters, settings) -> IngestionPipeline:
    return IngestionPipeline(repo, store, oauth_manager, adapters, settings)


@pytest.fixture
def services(settings, repo, store, adapters, oauth_manager, pipeline) -> VaultServices:
    queue = RecordingQueue()
    return VaultServices(
        settings=settings,
        repo=repo,
        store=store,
        adapters=adapters,
        oauth=oauth_manager,
        pipeline=pipeline,
        queue=queue,
        webhooks=WebhookReceiver(repo, adapters, queue),
        verification=VerificationService(repo, store),
    )


@pytest.fixture
def make_connection(repo):
    """Seed a connection row; returns the stored dict."""

    def _make(
        provider: str = "signnow",
        external_account_id: str = "acct-1",
        user_id: str = "user-1",
        access_token: str = "access-1",
        refresh_token: Optional[str] = "refresh-1",
        expires_in: int = 3600,
        base_uri: Optional[str] = None,
    ) -> dict:
        now = datetime.now(timezone.utc)
        return repo.insert_connection(
            {
                "id": str(uuid4()),
                "provider": provider,
                "user_id": user_id,
                "external_account_id": external_account_id,
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_at": (now + timedelta(seconds=expires_in)).isoformat(),
                "email": f"{user_id}@example.com",
                "display_name": "Test User",
                "base_uri": base_uri,
                "created_at": now.isoformat(),
                "updated_at": now.isoformat(),
            }
        )

    return _make


@pytest.fixture
def make_document(repo):
    """Seed a vaulted_documents row; returns the stored dict."""

    def _make(
        provider: str = "signnow",
        external_document_id: str = "doc-1",
        status: str = "pending",
        updated_ago_seconds: int = 0,
        content_hash: Optional[str] = None,
        connection_id: Optional[str] = None,
        attempts: int = 1,
    ) -> dict:
        now = datetime.now(timezone.utc)
        updated = (now - timedelta(seconds=updated_ago_seconds)).isoformat()
        return repo.insert_document(
            {
                "id": str(uuid4()),
                "provider": provider,
                "external_document_id": external_document_id,
                "connection_id": connection_id,
                "storage_path": storage_path_for(provider, external_document_id),
                "status": status,
                "attempts": attempts,
                "content_hash": content_hash,
                "created_at": updated,
                "updated_at": updated,
                "registered_at": updated if status == "registered" else None,
            }
        )

    return _make
