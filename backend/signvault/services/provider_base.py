"""
Provider adapter contract shared by DocuSign, SignNow and PandaDoc.

Every provider exposes the same capability set; only wire details differ.
Adding a provider:
  1. Subclass ProviderAdapter in <provider>_adapter.py.
  2. Register it in signvault.services.providers._ADAPTERS.
  3. Add <PROVIDER>_* settings in signvault.config.
"""

import base64
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Type

import httpx

from signvault.config import ProviderSettings
from signvault.errors import DownstreamProviderError, InvalidPayload, redact
from signvault.models.connection import AccountProfile, Provider, TokenSet
from signvault.models.webhook import SignaturePolicy, WebhookEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentRef:
    """Everything a provider needs to locate one signed document."""
    external_document_id: str
    external_account_id: Optional[str] = None
    base_uri: Optional[str] = None


def hmac_sha256(secret: str, body: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()


class ProviderAdapter(ABC):
    """
    Base class for eSignature provider adapters.

    The adapter owns no state besides its configuration and the shared
    httpx.AsyncClient, which is created once per process and injected.
    """

    provider: Provider
    default_signature_policy: SignaturePolicy = SignaturePolicy.REJECT
    # Providers whose authorization-code flow requires PKCE
    uses_pkce: bool = False
    # Used when a token response omits expires_in
    default_expires_in: int = 3600

    def __init__(self, settings: ProviderSettings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    @abstractmethod
    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        """Provider consent URL carrying ``state`` (and a PKCE challenge if used)."""

    @abstractmethod
    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        """Trade an authorization code for tokens. Raises TokenExchangeError."""

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """Trade a refresh token for a new access token. Raises TokenRefreshError."""

    @abstractmethod
    async def fetch_profile(self, access_token: str) -> AccountProfile:
        """Identify the connected external account. Raises ProfileFetchError."""

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @abstractmethod
    async def download_signed_document(self, access_token: str, ref: DocumentRef) -> bytes:
        """
        Fetch the completed, signed PDF exactly as the provider serves it.

        Raises:
            DownloadError: on any non-2xx response. A 401 is reported with
                upstream_status=401 so the caller can refresh and retry once.
        """

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    @abstractmethod
    def parse_webhook(self, payload: Any) -> list[WebhookEvent]:
        """
        Map a provider webhook body onto WebhookEvent(s).

        Raises:
            InvalidPayload: when the event discriminator or document id is missing.
        """

    @abstractmethod
    def is_actionable(self, event: WebhookEvent) -> bool:
        """True only for the provider's completed/finished event."""

    @abstractmethod
    def webhook_signature(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> Optional[str]:
        """Extract the signature the provider attached to the request, if any."""

    def expected_signature(self, secret: str, body: bytes) -> str:
        """Hex HMAC-SHA256 of the raw body. Override for other encodings."""
        return hmac_sha256(secret, body).hex()

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.settings.webhook_secret

    @property
    def signature_policy(self) -> SignaturePolicy:
        if self.settings.signature_policy:
            return SignaturePolicy(self.settings.signature_policy.lower().strip())
        return self.default_signature_policy

    # ------------------------------------------------------------------
    # Shared HTTP helpers
    # ------------------------------------------------------------------

    def _raise_for_status(
        self,
        response: httpx.Response,
        error_cls: Type[DownstreamProviderError],
        action: str,
    ) -> None:
        if response.is_success:
            return
        body = redact(response.text, self.settings.secrets())
        logger.warning(
            f"{self.provider.value} {action} failed: status={response.status_code} body={body!r}"
        )
        raise error_cls(
            f"{self.provider.value} {action} failed",
            provider=self.provider.value,
            upstream_status=response.status_code,
            body=body,
        )

    async def _request(
        self,
        method: str,
        url: str,
        error_cls: Type[DownstreamProviderError],
        action: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request; transport failures and non-2xx become ``error_cls``."""
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{self.provider.value} {action} transport error: {e!r}")
            raise error_cls(
                f"{self.provider.value} {action} failed: {type(e).__name__}",
                provider=self.provider.value,
            )
        self._raise_for_status(response, error_cls, action)
        return response

    async def _token_request(
        self,
        url: str,
        data: dict,
        error_cls: Type[DownstreamProviderError],
        action: str,
        auth: Optional[tuple[str, str]] = None,
    ) -> TokenSet:
        response = await self._request(
            "POST",
            url,
            error_cls,
            action,
            data=data,
            auth=auth,
            headers={"Accept": "application/json"},
        )
        try:
            payload = response.json()
        except ValueError:
            raise error_cls(
                f"{self.provider.value} {action} returned non-JSON body",
                provider=self.provider.value,
                upstream_status=response.status_code,
            )
        if not payload.get("access_token"):
            raise error_cls(
                f"{self.provider.value} {action} response missing access_token",
                provider=self.provider.value,
                upstream_status=response.status_code,
            )
        return TokenSet(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or None,
            expires_in=int(payload.get("expires_in") or self.default_expires_in),
        )

    def _require_dict(self, payload: Any) -> dict:
        if not isinstance(payload, dict):
            raise InvalidPayload(f"{self.provider.value} webhook body must be a JSON object")
        return payload


def b64_hmac_sha256(secret: str, body: bytes) -> str:
    return base64.b64encode(hmac_sha256(secret, body)).decode("ascii")
