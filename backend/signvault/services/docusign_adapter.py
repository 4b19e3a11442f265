"""
DocuSign adapter.

OAuth: authorization-code grant with PKCE against the account server
(``account-d.docusign.com`` for the developer sandbox, ``account.docusign.com``
in production), HTTP Basic client authentication on the token endpoint.

Documents: the combined PDF of a completed envelope, fetched from the account's
own REST host (``base_uri`` from /oauth/userinfo, stored on the connection).

Webhooks: DocuSign Connect JSON (SIM / aggregate format):

  {
    "event": "envelope-completed",
    "data": {"accountId": "...", "envelopeId": "...", "envelopeSummary": {...}}
  }

HMAC: ``X-DocuSign-Signature-1`` is base64(HMAC-SHA256(key, raw body)).
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
from signvault.services.provider_base import DocumentRef, ProviderAdapter, b64_hmac_sha256

logger = logging.getLogger(__name__)

_COMPLETED_EVENT = "envelope-completed"
_SIGNATURE_HEADER = "x-docusign-signature-1"


class DocuSignAdapter(ProviderAdapter):
    provider = Provider.DOCUSIGN
    default_signature_policy = SignaturePolicy.REJECT
    uses_pkce = True
    # DocuSign access tokens live 8 hours
    default_expires_in = 28800

    @property
    def auth_base(self) -> str:
        host = self.settings.base_url.rstrip("/")
        if not host.startswith("http"):
            host = f"https://{host}"
        return host

    @property
    def _client_auth(self) -> tuple[str, str]:
        return (self.settings.client_id, self.settings.client_secret)

    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        params = {
            "response_type": "code",
            "scope": "signature",
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.redirect_uri,
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{self.auth_base}/oauth/auth?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return await self._token_request(
            f"{self.auth_base}/oauth/token",
            data,
            TokenExchangeError,
            "token exchange",
            auth=self._client_auth,
        )

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        return await self._token_request(
            f"{self.auth_base}/oauth/token",
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            TokenRefreshError,
            "token refresh",
            auth=self._client_auth,
        )

    async def fetch_profile(self, access_token: str) -> AccountProfile:
        """
        Resolve the user's default DocuSign account.

        /oauth/userinfo lists every account the user belongs to; the one
        flagged ``is_default`` (or the first) is the account whose envelopes
        will be vaulted, and its ``base_uri`` is the REST host for downloads.
        """
        response = await self._request(
            "GET",
            f"{self.auth_base}/oauth/userinfo",
            ProfileFetchError,
            "profile fetch",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        info = response.json()
        accounts = info.get("accounts") or []
        if not accounts:
            raise ProfileFetchError(
                "DocuSign user has no accounts",
                provider=self.provider.value,
                upstream_status=response.status_code,
            )
        account = next((a for a in accounts if a.get("is_default")), accounts[0])

        name = info.get("name") or " ".join(
            p for p in (info.get("given_name"), info.get("family_name")) if p
        )
        return AccountProfile(
            external_id=str(account["account_id"]),
            email=info.get("email"),
            display_name=name or account.get("account_name"),
            base_uri=account.get("base_uri"),
        )

    async def download_signed_document(self, access_token: str, ref: DocumentRef) -> bytes:
        if not ref.base_uri or not ref.external_account_id:
            raise DownloadError(
                "DocuSign download needs the account id and base_uri of the connection",
                provider=self.provider.value,
            )
        url = (
            f"{ref.base_uri.rstrip('/')}/restapi/v2.1/accounts/{ref.external_account_id}"
            f"/envelopes/{ref.external_document_id}/documents/combined"
        )
        response = await self._request(
            "GET",
            url,
            DownloadError,
            "document download",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/pdf"},
        )
        return response.content

    def parse_webhook(self, payload: Any) -> list[WebhookEvent]:
        body = self._require_dict(payload)
        event_type = body.get("event")
        data = body.get("data") or {}
        envelope_id = data.get("envelopeId") if isinstance(data, dict) else None

        if not event_type or not envelope_id:
            raise InvalidPayload("DocuSign webhook requires 'event' and 'data.envelopeId'")

        account_id = data.get("accountId")
        return [
            WebhookEvent(
                provider=self.provider,
                event_type=str(event_type),
                external_document_id=str(envelope_id),
                external_account_id=str(account_id) if account_id else None,
                raw_payload=payload,
            )
        ]

    def is_actionable(self, event: WebhookEvent) -> bool:
        return event.event_type == _COMPLETED_EVENT

    def webhook_signature(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> Optional[str]:
        return headers.get(_SIGNATURE_HEADER)

    def expected_signature(self, secret: str, body: bytes) -> str:
        return b64_hmac_sha256(secret, body)
