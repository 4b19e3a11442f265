"""
Runtime configuration.

All settings are read from the environment (optionally seeded from a .env
file) once at process start and collected into an immutable Settings object
that is passed to every component that needs it.

Environment variables
---------------------
SUPABASE_URL                      Supabase project URL (required).
SUPABASE_SERVICE_KEY              Service-role key; bypasses RLS (required).
STORAGE_BUCKET                    Bucket holding vaulted PDFs (default: "vault").
SUPABASE_PUBLIC_URL               Browser-facing Supabase origin for signed URLs.
INTERNAL_API_KEY                  Shared key for the operator / dashboard API.
COMPLETION_REDIRECT_URL           Page the OAuth callback redirects to
                                  (default: "/integrations/complete").
OAUTH_STATE_TTL_SECONDS           Max age of an OAuth state row (default: 600).
TOKEN_REFRESH_SKEW_SECONDS        Refresh tokens this long before expiry (default: 300).
HTTP_TIMEOUT_SECONDS              Provider API timeout (default: 30).
DB_TIMEOUT_SECONDS                PostgREST / Storage timeout (default: 20).
INGESTION_WORKERS                 Concurrent ingestion tasks (default: 4).
INGESTION_QUEUE_SIZE              Pending ingestion jobs before shedding (default: 1000).
INGESTION_JOB_TIMEOUT_SECONDS     Hard limit for one ingestion job (default: 120).
INGESTION_STALE_AFTER_SECONDS     In-flight claims older than this are reclaimable (default: 900).
INGESTION_SHUTDOWN_GRACE_SECONDS  Queue drain time on shutdown (default: 20).
CORS_ORIGINS                      Extra comma-separated CORS origins.

Per provider (DOCUSIGN_, SIGNNOW_, PANDADOC_ prefix):
  <P>_CLIENT_ID, <P>_CLIENT_SECRET, <P>_REDIRECT_URI
  <P>_WEBHOOK_SECRET                Shared webhook signing secret.
  <P>_WEBHOOK_SIGNATURE_POLICY      "reject" or "warn_if_missing".
  DOCUSIGN_AUTH_SERVER              (default: "account-d.docusign.com")
  SIGNNOW_API_BASE_URL              (default: "https://api.signnow.com")
  PANDADOC_API_BASE_URL             (default: "https://api.pandadoc.com")
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

# Values of <P>_WEBHOOK_SIGNATURE_POLICY; mirrors models.webhook.SignaturePolicy
SIGNATURE_POLICIES = ("reject", "warn_if_missing")


@dataclass(frozen=True)
class ProviderSettings:
    """OAuth and webhook configuration for one eSignature provider."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    webhook_secret: Optional[str] = None
    signature_policy: Optional[str] = None
    # DocuSign: OAuth host; SignNow / PandaDoc: REST API base URL
    base_url: str = ""

    def secrets(self) -> list[str]:
        """Values that must never appear in logs or error payloads."""
        return [s for s in (self.client_secret, self.webhook_secret) if s]


@dataclass(frozen=True)
class Settings:
    supabase_url: str
    supabase_service_key: str
    storage_bucket: str = "vault"
    supabase_public_url: Optional[str] = None
    internal_api_key: Optional[str] = None
    completion_redirect_url: str = "/integrations/complete"
    oauth_state_ttl_seconds: int = 600
    token_refresh_skew_seconds: int = 300
    http_timeout_seconds: float = 30.0
    db_timeout_seconds: int = 20
    ingestion_workers: int = 4
    ingestion_queue_size: int = 1000
    ingestion_job_timeout_seconds: float = 120.0
    ingestion_stale_after_seconds: int = 900
    ingestion_shutdown_grace_seconds: float = 20.0
    cors_origins: list[str] = field(default_factory=list)
    docusign: ProviderSettings = field(default_factory=ProviderSettings)
    signnow: ProviderSettings = field(default_factory=ProviderSettings)
    pandadoc: ProviderSettings = field(default_factory=ProviderSettings)

    def provider(self, name: str) -> ProviderSettings:
        return getattr(self, name)

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build Settings from os.environ after loading any .env file.

        Raises:
            ValueError: if SUPABASE_URL or SUPABASE_SERVICE_KEY is missing, or a
                <P>_WEBHOOK_SIGNATURE_POLICY is not a known policy.
        """
        load_dotenv()

        supabase_url = os.getenv("SUPABASE_URL")
        service_key = os.getenv("SUPABASE_SERVICE_KEY")
        if not supabase_url or not service_key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in environment variables"
            )

        cors_env = os.getenv("CORS_ORIGINS", "").strip()
        cors_origins = [o.strip() for o in cors_env.split(",") if o.strip()]

        return cls(
            supabase_url=supabase_url,
            supabase_service_key=service_key,
            storage_bucket=os.getenv("STORAGE_BUCKET", "vault"),
            supabase_public_url=os.getenv("SUPABASE_PUBLIC_URL", "").strip() or None,
            internal_api_key=os.getenv("INTERNAL_API_KEY") or None,
            completion_redirect_url=os.getenv(
                "COMPLETION_REDIRECT_URL", "/integrations/complete"
            ),
            oauth_state_ttl_seconds=int(os.getenv("OAUTH_STATE_TTL_SECONDS", "600")),
            token_refresh_skew_seconds=int(os.getenv("TOKEN_REFRESH_SKEW_SECONDS", "300")),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
            db_timeout_seconds=int(os.getenv("DB_TIMEOUT_SECONDS", "20")),
            ingestion_workers=int(os.getenv("INGESTION_WORKERS", "4")),
            ingestion_queue_size=int(os.getenv("INGESTION_QUEUE_SIZE", "1000")),
            ingestion_job_timeout_seconds=float(
                os.getenv("INGESTION_JOB_TIMEOUT_SECONDS", "120")
            ),
            ingestion_stale_after_seconds=int(
                os.getenv("INGESTION_STALE_AFTER_SECONDS", "900")
            ),
            ingestion_shutdown_grace_seconds=float(
                os.getenv("INGESTION_SHUTDOWN_GRACE_SECONDS", "20")
            ),
            cors_origins=cors_origins,
            docusign=_provider_from_env(
                "DOCUSIGN", default_base_url="account-d.docusign.com", base_url_var="AUTH_SERVER"
            ),
            signnow=_provider_from_env("SIGNNOW", default_base_url="https://api.signnow.com"),
            pandadoc=_provider_from_env("PANDADOC", default_base_url="https://api.pandadoc.com"),
        )


def _provider_from_env(
    prefix: str,
    default_base_url: str,
    base_url_var: str = "API_BASE_URL",
) -> ProviderSettings:
    policy = (os.getenv(f"{prefix}_WEBHOOK_SIGNATURE_POLICY") or "").lower().strip() or None
    if policy is not None and policy not in SIGNATURE_POLICIES:
        raise ValueError(
            f"{prefix}_WEBHOOK_SIGNATURE_POLICY must be one of {', '.join(SIGNATURE_POLICIES)}, "
            f"got {policy!r}"
        )
    return ProviderSettings(
        client_id=os.getenv(f"{prefix}_CLIENT_ID", ""),
        client_secret=os.getenv(f"{prefix}_CLIENT_SECRET", ""),
        redirect_uri=os.getenv(f"{prefix}_REDIRECT_URI", ""),
        webhook_secret=os.getenv(f"{prefix}_WEBHOOK_SECRET") or None,
        signature_policy=policy,
        base_url=os.getenv(f"{prefix}_{base_url_var}", default_base_url),
    )
