"""
Pydantic models for provider OAuth state and connections.

Models:
  Provider          — supported eSignature platforms, plus "manual" for
                      operator uploads
  OAuthState        — DB row from oauth_states (single-use)
  TokenSet          — token endpoint response, provider-agnostic
  AccountProfile    — external account identity returned by a provider
  Connection        — DB row from connections (holds secrets)
  ConnectionPublic  — API response; never includes tokens
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, SecretStr


class Provider(str, Enum):
    DOCUSIGN = "docusign"
    SIGNNOW = "signnow"
    PANDADOC = "pandadoc"
    # Operator uploads; no OAuth, no webhooks, no adapter
    MANUAL = "manual"


class OAuthState(BaseModel):
    """Full oauth_states record from the database."""
    model_config = {"extra": "ignore"}

    state: str
    provider: Provider
    user_id: str
    created_at: datetime
    # PKCE verifier, only stored for providers that use it (DocuSign)
    code_verifier: Optional[str] = None


class TokenSet(BaseModel):
    """
    Result of an authorization-code or refresh-token exchange.

    refresh_token is optional on refresh responses: when a provider does not
    rotate it, the caller keeps the previous one.
    """
    access_token: SecretStr
    refresh_token: Optional[SecretStr] = None
    expires_in: int = 3600


class AccountProfile(BaseModel):
    """Identity of the external account the user connected."""
    external_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    # DocuSign account API host, e.g. "https://demo.docusign.net"
    base_uri: Optional[str] = None


class Connection(BaseModel):
    """Full connections record from the database."""
    model_config = {"extra": "ignore"}

    id: str
    provider: Provider
    user_id: str
    external_account_id: str
    access_token: SecretStr
    refresh_token: Optional[SecretStr] = None
    expires_at: datetime
    email: Optional[str] = None
    display_name: Optional[str] = None
    base_uri: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def public(self) -> "ConnectionPublic":
        return ConnectionPublic(
            id=self.id,
            provider=self.provider,
            user_id=self.user_id,
            external_account_id=self.external_account_id,
            email=self.email,
            display_name=self.display_name,
            expires_at=self.expires_at,
            created_at=self.created_at,
        )


class ConnectionPublic(BaseModel):
    """Connection as returned to API clients. Tokens are deliberately absent."""
    id: str
    provider: Provider
    user_id: str
    external_account_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    expires_at: datetime
    created_at: Optional[datetime] = None


class AuthorizationStart(BaseModel):
    """Response body for GET /oauth/{provider}/start."""
    authorization_url: str
    state: str
