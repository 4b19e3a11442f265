"""
PandaDoc adapter.

OAuth: authorization-code grant; client credentials are sent in the form
body. Scope is "read write".

Webhooks: PandaDoc posts a JSON *list* of events (a single object is also
accepted for manual replays):

  [{"event": "document_state_changed",
    "data": {"id": "...", "status": "document.completed",
             "created_by": {"id": "...", "email": "..."}}}]

For state-change events the document status becomes the event type, so the
rest of the pipeline only has to look for "document.completed".

HMAC: hex(HMAC-SHA256(shared key, raw body)) in the ``signature`` query
parameter (``X-PandaDoc-Signature`` header also accepted). Many existing
PandaDoc webhook subscriptions were created without a shared key, so a
missing signature is only logged (warn_if_missing); a wrong one is rejected.
"""

import logging
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

from signvault.errors import (
    DownloadError,
    InvalidPayload,
    ProfileFetchError,
    TokenExchangeError,
    TokenRefreshError,
)
from signvault.models.connection import AccountProfile, Provider, TokenSet
from signvault.models.webhook import SignaturePolicy, WebhookEvent
from signvault.services.provider_base import DocumentRef, ProviderAdapter

logger = logging.getLogger(__name__)

_AUTHORIZE_URL = "https://app.pandadoc.com/oauth2/authorize"
_STATE_CHANGED_EVENT = "document_state_changed"
_COMPLETED_STATUS = "document.completed"
_SCOPE = "read write"


class PandaDocAdapter(ProviderAdapter):
    provider = Provider.PANDADOC
    default_signature_policy = SignaturePolicy.WARN_IF_MISSING

    @property
    def api_base(self) -> str:
        return self.settings.base_url.rstrip("/")

    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        params = {
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.redirect_uri,
            "scope": _SCOPE,
            "response_type": "code",
            "state": state,
        }
        return f"{_AUTHORIZE_URL}?{urlencode(params)}"

    def _client_form(self) -> dict:
        return {
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
            "scope": _SCOPE,
        }

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.redirect_uri,
            **self._client_form(),
        }
        return await self._token_request(
            f"{self.api_base}/oauth2/access_token",
            data,
            TokenExchangeError,
            "token exchange",
        )

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            **self._client_form(),
        }
        return await self._token_request(
            f"{self.api_base}/oauth2/access_token",
            data,
            TokenRefreshError,
            "token refresh",
        )

    async def fetch_profile(self, access_token: str) -> AccountProfile:
        response = await self._request(
            "GET",
            f"{self.api_base}/public/v1/members/current",
            ProfileFetchError,
            "profile fetch",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        info = response.json()
        user_id = info.get("user_id") or info.get("id")
        if not user_id:
            raise ProfileFetchError(
                "PandaDoc profile response missing user_id",
                provider=self.provider.value,
                upstream_status=response.status_code,
            )
        name = " ".join(p for p in (info.get("first_name"), info.get("last_name")) if p)
        return AccountProfile(
            external_id=str(user_id),
            email=info.get("email"),
            display_name=name or info.get("email"),
        )

    async def download_signed_document(self, access_token: str, ref: DocumentRef) -> bytes:
        response = await self._request(
            "GET",
            f"{self.api_base}/public/v1/documents/{ref.external_document_id}/download",
            DownloadError,
            "document download",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/pdf"},
        )
        return response.content

    def parse_webhook(self, payload: Any) -> list[WebhookEvent]:
        items = payload if isinstance(payload, list) else [self._require_dict(payload)]
        if not items:
            raise InvalidPayload("PandaDoc webhook body contains no events")

        events: list[WebhookEvent] = []
        for item in items:
            if not isinstance(item, dict):
                raise InvalidPayload("PandaDoc webhook events must be JSON objects")
            event = item.get("event") or item.get("event_type")
            data = item.get("data") if isinstance(item.get("data"), dict) else {}
            document_id = data.get("id")
            if not event or not document_id:
                raise InvalidPayload("PandaDoc webhook requires 'event' and 'data.id'")

            status = data.get("status")
            event_type = status if event == _STATE_CHANGED_EVENT and status else event
            created_by = data.get("created_by") if isinstance(data.get("created_by"), dict) else {}
            owner_id = created_by.get("id")

            events.append(
                WebhookEvent(
                    provider=self.provider,
                    event_type=str(event_type),
                    external_document_id=str(document_id),
                    external_account_id=str(owner_id) if owner_id else None,
                    raw_payload=item,
                )
            )
        return events

    def is_actionable(self, event: WebhookEvent) -> bool:
        return event.event_type == _COMPLETED_STATUS

    def webhook_signature(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> Optional[str]:
        return query.get("signature") or headers.get("x-pandadoc-signature")
