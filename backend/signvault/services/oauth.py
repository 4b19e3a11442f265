"""
OAuth connection lifecycle for every provider.

  begin_authorization      create a single-use state, build the consent URL
  complete_authorization   redeem the state, exchange the code, fetch the
                           profile, persist one Connection
  get_valid_access_token   cached token, or a serialized refresh near expiry
  force_refresh            refresh after a provider rejected a token (401)

Refreshes for the same connection are serialized with a per-connection lock
and the row is re-read inside the lock, so concurrent callers reuse a
sibling's refresh instead of spending the refresh token twice.

Tokens are never logged and never leave this module except as the bare
access-token string handed to an adapter.
"""

import base64
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from signvault.config import Settings
from signvault.errors import (
    ConnectionNotFound,
    InvalidRequest,
    InvalidState,
    TokenRefreshError,
)
from signvault.models.connection import (
    AuthorizationStart,
    Connection,
    ConnectionPublic,
    OAuthState,
    Provider,
)
from signvault.repository import VaultRepository
from signvault.services.locks import KeyedLocks
from signvault.services.provider_base import ProviderAdapter

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """PostgREST returns timestamptz with an offset; treat naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def pkce_challenge(code_verifier: str) -> str:
    """RFC 7636 S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class OAuthConnectionManager:
    def __init__(
        self,
        repo: VaultRepository,
        adapters: dict[Provider, ProviderAdapter],
        settings: Settings,
        locks: Optional[KeyedLocks] = None,
    ):
        self._repo = repo
        self._adapters = adapters
        self._state_ttl = timedelta(seconds=settings.oauth_state_ttl_seconds)
        self._refresh_skew = timedelta(seconds=settings.token_refresh_skew_seconds)
        self._locks = locks or KeyedLocks()

    # ------------------------------------------------------------------
    # Authorization-code flow
    # ------------------------------------------------------------------

    def begin_authorization(self, provider: Provider, user_id: str) -> AuthorizationStart:
        if not user_id or not user_id.strip():
            raise InvalidRequest("user_id is required")

        adapter = self._adapters[provider]
        state = secrets.token_urlsafe(32)
        code_verifier = secrets.token_urlsafe(64) if adapter.uses_pkce else None

        self._repo.insert_oauth_state(
            {
                "state": state,
                "provider": provider.value,
                "user_id": user_id.strip(),
                "code_verifier": code_verifier,
                "created_at": _utcnow().isoformat(),
            }
        )

        challenge = pkce_challenge(code_verifier) if code_verifier else None
        url = adapter.authorization_url(state, code_challenge=challenge)
        logger.info(f"Started {provider.value} authorization for user {user_id}")
        return AuthorizationStart(authorization_url=url, state=state)

    async def complete_authorization(
        self,
        provider: Provider,
        code: Optional[str],
        state: Optional[str],
    ) -> Connection:
        """
        Finish the OAuth callback and persist the new connection.

        The state row is deleted before anything else happens, whatever the
        outcome, so a state can be redeemed at most once. Nothing is written
        until the final insert: a failure at any step leaves no partial
        Connection behind.

        Raises:
            InvalidRequest: state or code missing.
            InvalidState: unknown, already used, expired, or other provider.
            TokenExchangeError / ProfileFetchError: provider rejected us.
            PersistenceError: the connection could not be saved.
        """
        if not state:
            raise InvalidRequest("Missing state parameter")

        row = self._repo.consume_oauth_state(state)
        if row is None:
            raise InvalidState("Unknown or already used state")

        oauth_state = OAuthState(**row)
        if oauth_state.provider != provider:
            logger.warning(
                f"State issued for {oauth_state.provider.value} redeemed on {provider.value} callback"
            )
            raise InvalidState("State does not belong to this provider")
        if _utcnow() - _as_utc(oauth_state.created_at) > self._state_ttl:
            raise InvalidState("State has expired")
        if not code:
            raise InvalidRequest("Missing authorization code")

        adapter = self._adapters[provider]
        tokens = await adapter.exchange_code(code, code_verifier=oauth_state.code_verifier)
        profile = await adapter.fetch_profile(tokens.access_token.get_secret_value())

        now = _utcnow()
        saved = self._repo.insert_connection(
            {
                "id": str(uuid4()),
                "provider": provider.value,
                "user_id": oauth_state.user_id,
                "external_account_id": profile.external_id,
                "access_token": tokens.access_token.get_secret_value(),
                "refresh_token": (
                    tokens.refresh_token.get_secret_value() if tokens.refresh_token else None
                ),
                "expires_at": (now + timedelta(seconds=tokens.expires_in)).isoformat(),
                "email": profile.email,
                "display_name": profile.display_name,
                "base_uri": profile.base_uri,
                "created_at": now.isoformat(),
                "updated_at": now.isoformat(),
            }
        )
        connection = Connection(**saved)
        logger.info(
            f"Connected {provider.value} account {connection.external_account_id} "
            f"for user {connection.user_id} (connection {connection.id})"
        )
        return connection

    def abandon_authorization(self, state: Optional[str]) -> None:
        """Burn the state of a callback the provider reported as failed (e.g. access_denied)."""
        if state:
            self._repo.consume_oauth_state(state)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _needs_refresh(self, connection: Connection) -> bool:
        return _utcnow() >= _as_utc(connection.expires_at) - self._refresh_skew

    async def get_valid_access_token(self, connection: Connection) -> str:
        if not self._needs_refresh(connection):
            return connection.access_token.get_secret_value()

        async with self._locks.hold(connection.id):
            current = self.get_connection(connection.id)
            if not self._needs_refresh(current):
                return current.access_token.get_secret_value()
            return await self._refresh(current)

    async def force_refresh(self, connection: Connection, stale_token: str) -> str:
        """
        Refresh after the provider rejected ``stale_token``.

        If another coroutine already replaced that token, its result is
        returned instead of refreshing again.
        """
        async with self._locks.hold(connection.id):
            current = self.get_connection(connection.id)
            token = current.access_token.get_secret_value()
            if token != stale_token:
                return token
            return await self._refresh(current)

    async def _refresh(self, connection: Connection) -> str:
        if connection.refresh_token is None:
            raise TokenRefreshError(
                f"Connection {connection.id} has no refresh token; the user must reconnect",
                provider=connection.provider.value,
            )

        adapter = self._adapters[connection.provider]
        tokens = await adapter.refresh_token(connection.refresh_token.get_secret_value())

        now = _utcnow()
        fields = {
            "access_token": tokens.access_token.get_secret_value(),
            "expires_at": (now + timedelta(seconds=tokens.expires_in)).isoformat(),
            "updated_at": now.isoformat(),
        }
        # Providers that do not rotate refresh tokens omit it; keep the old one
        if tokens.refresh_token is not None:
            fields["refresh_token"] = tokens.refresh_token.get_secret_value()
        self._repo.update_connection(connection.id, fields)

        logger.info(f"Refreshed {connection.provider.value} token for connection {connection.id}")
        return tokens.access_token.get_secret_value()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def get_connection(self, connection_id: str) -> Connection:
        row = self._repo.get_connection(connection_id)
        if row is None:
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        return Connection(**row)

    def resolve_connection(
        self,
        provider: Provider,
        external_account_id: Optional[str],
    ) -> Optional[Connection]:
        """
        Find the connection that owns a webhook's document.

        Matches on the external account id when the payload carries one.
        When it is missing or matches nothing (payload ids are not always
        the id the profile endpoint returned), the only unambiguous answer
        is a provider with exactly one connection.
        """
        if external_account_id:
            rows = self._repo.find_connections(provider.value, external_account_id)
            if rows:
                return Connection(**rows[0])

        rows = self._repo.find_connections(provider.value)
        if len(rows) == 1:
            if external_account_id:
                logger.info(
                    f"{provider.value} account {external_account_id} has no connection; "
                    f"using the only {provider.value} connection {rows[0]['id']}"
                )
            return Connection(**rows[0])
        if rows:
            account = external_account_id or "no account id"
            logger.warning(
                f"{provider.value} webhook ({account}) is ambiguous: {len(rows)} connections exist"
            )
        return None

    def list_connections(self, user_id: str) -> list[ConnectionPublic]:
        return [Connection(**row).public() for row in self._repo.list_user_connections(user_id)]

    def delete_connection(self, connection_id: str, user_id: str) -> None:
        if not self._repo.delete_connection(connection_id, user_id):
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        logger.info(f"Deleted connection {connection_id} for user {user_id}")
