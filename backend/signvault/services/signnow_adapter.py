"""
SignNow adapter.

OAuth: authorization-code grant; the token endpoint takes the client
credentials as HTTP Basic auth.

Webhooks arrive in two shapes, both accepted:

  legacy (v1):  {"event_type": "document.complete", "document_id": "...", "user_id": "..."}
  v2:           {"meta": {"event": "document.complete"},
                 "content": {"document_id": "...", "user_id": "..."}}

HMAC: ``X-SignNow-Signature`` is hex(HMAC-SHA256(secret, raw body)).
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

_AUTHORIZE_URL = "https://app.signnow.com/authorize"
_COMPLETED_EVENTS = {"document.complete", "document.completed"}
_SIGNATURE_HEADER = "x-signnow-signature"


class SignNowAdapter(ProviderAdapter):
    provider = Provider.SIGNNOW
    default_signature_policy = SignaturePolicy.REJECT

    @property
    def api_base(self) -> str:
        return self.settings.base_url.rstrip("/")

    @property
    def _client_auth(self) -> tuple[str, str]:
        return (self.settings.client_id, self.settings.client_secret)

    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.redirect_uri,
            "state": state,
            "scope": "*",
        }
        return f"{_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        return await self._token_request(
            f"{self.api_base}/oauth2/token",
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.redirect_uri,
                "scope": "*",
            },
            TokenExchangeError,
            "token exchange",
            auth=self._client_auth,
        )

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        return await self._token_request(
            f"{self.api_base}/oauth2/token",
            {"grant_type": "refresh_token", "refresh_token": refresh_token, "scope": "*"},
            TokenRefreshError,
            "token refresh",
            auth=self._client_auth,
        )

    async def fetch_profile(self, access_token: str) -> AccountProfile:
        response = await self._request(
            "GET",
            f"{self.api_base}/user",
            ProfileFetchError,
            "profile fetch",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        info = response.json()
        if not info.get("id"):
            raise ProfileFetchError(
                "SignNow profile response missing user id",
                provider=self.provider.value,
                upstream_status=response.status_code,
            )

        emails = info.get("emails") or []
        email = info.get("primary_email") or (emails[0] if emails else None)
        name = " ".join(p for p in (info.get("first_name"), info.get("last_name")) if p)
        return AccountProfile(
            external_id=str(info["id"]),
            email=email,
            display_name=name or email,
        )

    async def download_signed_document(self, access_token: str, ref: DocumentRef) -> bytes:
        # "collapsed" is the flattened PDF with signatures applied
        response = await self._request(
            "GET",
            f"{self.api_base}/document/{ref.external_document_id}/download",
            DownloadError,
            "document download",
            params={"type": "collapsed"},
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/pdf"},
        )
        return response.content

    def parse_webhook(self, payload: Any) -> list[WebhookEvent]:
        body = self._require_dict(payload)
        meta = body.get("meta") if isinstance(body.get("meta"), dict) else {}
        content = body.get("content") if isinstance(body.get("content"), dict) else {}

        event_type = body.get("event_type") or meta.get("event") or body.get("event")
        document_id = body.get("document_id") or content.get("document_id")
        if not event_type or not document_id:
            raise InvalidPayload("SignNow webhook requires an event type and 'document_id'")

        user_id = body.get("user_id") or content.get("user_id")
        return [
            WebhookEvent(
                provider=self.provider,
                event_type=str(event_type),
                external_document_id=str(document_id),
                external_account_id=str(user_id) if user_id else None,
                raw_payload=payload,
            )
        ]

    def is_actionable(self, event: WebhookEvent) -> bool:
        return event.event_type in _COMPLETED_EVENTS

    def webhook_signature(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> Optional[str]:
        return headers.get(_SIGNATURE_HEADER)
