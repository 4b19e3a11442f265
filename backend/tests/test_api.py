"""
HTTP API tests: OAuth start/callback, the operator documents and
connections endpoints, and health checks.

Tests mock ALL external calls. Provider token and profile endpoints are
served by the ProviderAPI MockTransport; Supabase is the in-memory fakes.
"""

import hashlib
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from signvault.main import create_app, get_cors_origins

from conftest import TEST_API_KEY

AUTH = {"X-Api-Key": TEST_API_KEY}


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def _redirect_params(response) -> dict:
    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith("https://app.test/integrations/complete?")
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


def _start(client, provider="signnow", user_id="user-1") -> str:
    response = client.get(f"/oauth/{provider}/start", params={"user_id": user_id}, headers=AUTH)
    assert response.status_code == 200
    return response.json()["state"]


def _callback(client, provider="signnow", **params):
    return client.get(f"/oauth/{provider}/callback", params=params, follow_redirects=False)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------

class TestOAuthStart:
    def test_requires_api_key(self, client):
        response = client.get("/oauth/signnow/start", params={"user_id": "user-1"})

        assert response.status_code == 401

    def test_wrong_api_key(self, client):
        response = client.get(
            "/oauth/signnow/start",
            params={"user_id": "user-1"},
            headers={"X-Api-Key": "nope"},
        )

        assert response.status_code == 401

    def test_returns_consent_url_with_state(self, client, repo):
        response = client.get("/oauth/docusign/start", params={"user_id": "user-1"}, headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        query = parse_qs(urlparse(body["authorization_url"]).query)
        assert query["state"] == [body["state"]]
        assert query["code_challenge_method"] == ["S256"]
        assert body["state"] in repo.oauth_states

    def test_unknown_provider_is_400(self, client):
        response = client.get("/oauth/hellosign/start", params={"user_id": "user-1"}, headers=AUTH)

        assert response.status_code == 400

    def test_state_store_failure_is_500(self, client, repo):
        repo.fail_methods.add("insert_oauth_state")

        response = client.get("/oauth/signnow/start", params={"user_id": "user-1"}, headers=AUTH)

        assert response.status_code == 500


class TestOAuthCallback:
    def test_success_redirect(self, client, repo, provider_api):
        provider_api.add("POST", "/oauth2/token", json={
            "access_token": "sn-access", "refresh_token": "sn-refresh", "expires_in": 3600,
        })
        provider_api.add("GET", "/user", json={"id": "sn-user-9", "primary_email": "signer@example.com"})
        state = _start(client)

        params = _redirect_params(_callback(client, code="auth-code", state=state))

        assert params == {"success": "true", "account": "signer@example.com", "provider": "signnow"}
        stored = next(iter(repo.connections.values()))
        assert stored["external_account_id"] == "sn-user-9"
        assert stored["user_id"] == "user-1"

    def test_tokens_never_in_redirect(self, client, provider_api):
        provider_api.add("POST", "/oauth2/token", json={
            "access_token": "sn-access", "refresh_token": "sn-refresh", "expires_in": 3600,
        })
        provider_api.add("GET", "/user", json={"id": "sn-user-9"})
        state = _start(client)

        location = _callback(client, code="auth-code", state=state).headers["location"]

        assert "sn-access" not in location
        assert "sn-refresh" not in location

    def test_unknown_state(self, client, repo):
        params = _redirect_params(_callback(client, code="auth-code", state="forged"))

        assert params["error"] == "invalid_state"
        assert repo.connections == {}

    def test_state_replay_rejected(self, client, provider_api):
        provider_api.add("POST", "/oauth2/token", json={"access_token": "a", "expires_in": 3600})
        provider_api.add("GET", "/user", json={"id": "sn-user-9"})
        state = _start(client)
        _callback(client, code="auth-code", state=state)

        params = _redirect_params(_callback(client, code="auth-code", state=state))

        assert params["error"] == "invalid_state"

    def test_missing_code(self, client):
        state = _start(client)

        params = _redirect_params(_callback(client, state=state))

        assert params["error"] == "invalid_request"

    def test_missing_state(self, client):
        params = _redirect_params(_callback(client, code="auth-code"))

        assert params["error"] == "invalid_request"

    def test_provider_denied_consent(self, client, repo):
        state = _start(client)

        params = _redirect_params(
            _callback(client, state=state, error="access_denied", error_description="User declined")
        )

        assert params == {"error": "invalid_request", "message": "User declined"}
        assert state not in repo.oauth_states

    def test_token_exchange_failure(self, client, repo, provider_api):
        provider_api.add("POST", "/oauth2/token", 400, json={"error": "invalid_grant"})
        state = _start(client)

        params = _redirect_params(_callback(client, code="bad-code", state=state))

        assert params["error"] == "token_error"
        assert "sn-client-secret" not in params["message"]
        assert repo.connections == {}

    def test_database_failure(self, client, repo, provider_api):
        provider_api.add("POST", "/oauth2/token", json={"access_token": "a", "expires_in": 3600})
        provider_api.add("GET", "/user", json={"id": "sn-user-9"})
        repo.fail_methods.add("insert_connection")
        state = _start(client)

        params = _redirect_params(_callback(client, code="auth-code", state=state))

        assert params["error"] == "database_error"

    def test_unknown_provider_still_redirects(self, client):
        params = _redirect_params(_callback(client, provider="hellosign", code="c", state="s"))

        assert params["error"] == "invalid_request"


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class TestDocuments:
    def test_requires_api_key(self, client):
        assert client.get("/documents/").status_code == 401

    def test_list_filtered_by_status(self, client, make_document):
        make_document(external_document_id="doc-ok", status="registered", content_hash="a" * 64)
        failed = make_document(external_document_id="doc-bad", status="failed")

        response = client.get("/documents/", params={"status": "failed"}, headers=AUTH)

        assert response.status_code == 200
        assert [d["id"] for d in response.json()] == [failed["id"]]

    def test_list_rejects_unknown_status(self, client):
        response = client.get("/documents/", params={"status": "lost"}, headers=AUTH)

        assert response.status_code == 422

    def test_get_registered_includes_download_url(self, client, make_document):
        row = make_document(status="registered", content_hash="a" * 64)

        response = client.get(f"/documents/{row['id']}", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["content_hash"] == "a" * 64
        assert body["download_url"].startswith("https://storage.test/object/sign/vault/signnow/doc-1.pdf")

    def test_get_failed_has_no_download_url(self, client, make_document):
        row = make_document(status="failed")

        body = client.get(f"/documents/{row['id']}", headers=AUTH).json()

        assert body["download_url"] is None

    def test_get_unknown_is_404(self, client):
        assert client.get("/documents/missing", headers=AUTH).status_code == 404

    def test_get_well_formed_unknown_id_is_404(self, client):
        response = client.get("/documents/0b6f1f9e-6c4e-4d8e-9a53-3c1b2f0d7a11", headers=AUTH)

        assert response.status_code == 404

    def test_list_filtered_by_provider(self, client, make_document):
        make_document(external_document_id="doc-1")
        manual = make_document(provider="manual", external_document_id="f" * 64)

        response = client.get("/documents/", params={"provider": "manual"}, headers=AUTH)

        assert [d["id"] for d in response.json()] == [manual["id"]]

    def test_list_rejects_unknown_provider(self, client):
        response = client.get("/documents/", params={"provider": "hellosign"}, headers=AUTH)

        assert response.status_code == 422

    def test_retry_failed_document(self, client, services, make_document):
        row = make_document(status="failed", connection_id="conn-1")

        response = client.post(f"/documents/{row['id']}/retry", headers=AUTH)

        assert response.status_code == 202
        assert response.json() == {"document_id": row["id"], "queued": True}
        assert services.queue.jobs[0].connection_id == "conn-1"

    def test_retry_registered_document_is_400(self, client, services, make_document):
        row = make_document(status="registered", content_hash="a" * 64)

        response = client.post(f"/documents/{row['id']}/retry", headers=AUTH)

        assert response.status_code == 400
        assert services.queue.jobs == []

    def test_verify_stored_copy(self, client, store, make_document):
        data = b"%PDF stored"
        row = make_document(status="registered", content_hash=hashlib.sha256(data).hexdigest())
        store.objects[row["storage_path"]] = data

        response = client.post(f"/documents/{row['id']}/verify-stored", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["valid"] is True

    def test_verify_stored_unknown_is_404(self, client):
        assert client.post("/documents/missing/verify-stored", headers=AUTH).status_code == 404


class TestManualUpload:
    PDF = b"%PDF-1.7 operator copy"

    def _upload(self, client, data=None, name="contract.pdf"):
        data = self.PDF if data is None else data
        return client.post("/documents/", files={"file": (name, data, "application/pdf")}, headers=AUTH)

    def test_requires_api_key(self, client):
        response = client.post("/documents/", files={"file": ("a.pdf", self.PDF, "application/pdf")})

        assert response.status_code == 401

    def test_upload_registers_at_content_address(self, client, repo, store):
        digest = hashlib.sha256(self.PDF).hexdigest()

        response = self._upload(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "registered"
        assert body["provider"] == "manual"
        assert body["content_hash"] == digest
        assert body["storage_path"] == f"manual/{digest}.pdf"
        assert store.objects[f"manual/{digest}.pdf"] == self.PDF

    def test_same_bytes_uploaded_twice(self, client, repo, store):
        first = self._upload(client).json()

        response = self._upload(client, name="renamed.pdf")

        assert response.status_code == 200
        assert response.json()["id"] == first["id"]
        assert len(repo.documents) == 1
        assert len(store.uploads) == 1

    def test_uploaded_document_verifies(self, client):
        self._upload(client)

        response = client.post("/verify", files={"file": ("copy.pdf", self.PDF, "application/pdf")})

        assert response.json()["valid"] is True

    def test_empty_upload_is_400(self, client, repo):
        response = self._upload(client, data=b"")

        assert response.status_code == 400
        assert repo.documents == {}

    def test_storage_failure_records_failed_row(self, client, repo, store):
        store.fail_put = True

        response = self._upload(client)

        assert response.status_code == 500
        row = next(iter(repo.documents.values()))
        assert row["status"] == "failed"
        assert row["failure_reason"].startswith("storage_error:")

    def test_failed_upload_can_be_repeated(self, client, store):
        store.fail_put = True
        self._upload(client)
        store.fail_put = False

        response = self._upload(client)

        assert response.status_code == 201
        assert response.json()["attempts"] == 2

    def test_manual_document_cannot_be_retried(self, client, services, make_document):
        row = make_document(provider="manual", external_document_id="f" * 64, status="failed")

        response = client.post(f"/documents/{row['id']}/retry", headers=AUTH)

        assert response.status_code == 400
        assert services.queue.jobs == []

    def test_audit_trail(self, client):
        document = self._upload(client, name="contract.pdf").json()

        response = client.get(f"/documents/{document['id']}/audit", headers=AUTH)

        assert response.status_code == 200
        events = response.json()
        assert [e["action"] for e in events] == ["document_vaulted"]
        assert events[0]["details"]["source"] == "manual"
        assert events[0]["details"]["file_name"] == "contract.pdf"
        assert events[0]["details"]["content_hash"] == document["content_hash"]

    def test_audit_of_unknown_document_is_404(self, client):
        assert client.get("/documents/abc/audit", headers=AUTH).status_code == 404


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

class TestConnections:
    def test_list_hides_tokens(self, client, make_connection):
        make_connection(access_token="secret-access", refresh_token="secret-refresh")

        response = client.get("/connections/", params={"user_id": "user-1"}, headers=AUTH)

        assert response.status_code == 200
        assert len(response.json()) == 1
        assert "secret-access" not in response.text
        assert "secret-refresh" not in response.text

    def test_list_scoped_to_user(self, client, make_connection):
        make_connection(user_id="someone-else")

        response = client.get("/connections/", params={"user_id": "user-1"}, headers=AUTH)

        assert response.json() == []

    def test_delete(self, client, repo, make_connection):
        connection = make_connection()

        response = client.delete(
            f"/connections/{connection['id']}", params={"user_id": "user-1"}, headers=AUTH
        )

        assert response.status_code == 200
        assert repo.connections == {}

    def test_delete_other_users_connection_is_404(self, client, repo, make_connection):
        connection = make_connection(user_id="owner")

        response = client.delete(
            f"/connections/{connection['id']}", params={"user_id": "user-1"}, headers=AUTH
        )

        assert response.status_code == 404
        assert connection["id"] in repo.connections

    def test_delete_malformed_id_is_404(self, client):
        response = client.delete("/connections/abc", params={"user_id": "user-1"}, headers=AUTH)

        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Health / app wiring
# ---------------------------------------------------------------------------

class TestHealth:
    def test_root(self, client):
        assert client.get("/").json()["message"] == "SignVault API"

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_db_health(self, client):
        assert client.get("/health/db").status_code == 200

    def test_db_health_failure_is_503(self, client, repo):
        repo.fail_methods.add("ping")

        assert client.get("/health/db").status_code == 503

    def test_storage_health(self, client):
        assert client.get("/health/storage").json()["bucket"] == "vault"


class TestCorsOrigins:
    def test_defaults_always_included(self):
        assert get_cors_origins() == ["http://localhost:3000", "http://localhost:3001"]

    def test_extra_origins_deduplicated(self):
        origins = get_cors_origins(["https://vault.example.com", "http://localhost:3000"])

        assert origins == [
            "http://localhost:3000",
            "http://localhost:3001",
            "https://vault.example.com",
        ]
