"""
Service container and FastAPI dependencies.

build_services() wires every component exactly once per process: one
Supabase client, one httpx.AsyncClient shared by all provider adapters,
one repository, one store. main.create_app() stores the result on
app.state.services; tests pass their own VaultServices built from fakes.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Header, HTTPException, Request

from signvault.config import Settings
from signvault.db import build_supabase_client
from signvault.errors import VaultError
from signvault.models.connection import Provider
from signvault.repository import VaultRepository
from signvault.services.ingestion import IngestionPipeline, IngestionQueue
from signvault.services.locks import KeyedLocks
from signvault.services.oauth import OAuthConnectionManager
from signvault.services.provider_base import ProviderAdapter
from signvault.services.providers import build_adapters
from signvault.services.storage import ContentAddressStore
from signvault.services.verification import VerificationService
from signvault.services.webhooks import WebhookReceiver

logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT_SECONDS = 10.0


@dataclass
class VaultServices:
    settings: Settings
    repo: VaultRepository
    store: ContentAddressStore
    adapters: dict[Provider, ProviderAdapter]
    oauth: OAuthConnectionManager
    pipeline: IngestionPipeline
    queue: IngestionQueue
    webhooks: WebhookReceiver
    verification: VerificationService
    http: Optional[httpx.AsyncClient] = None

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()


def build_services(settings: Settings) -> VaultServices:
    client = build_supabase_client(settings)
    http = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.http_timeout_seconds, connect=_CONNECT_TIMEOUT_SECONDS)
    )

    repo = VaultRepository(client)
    store = ContentAddressStore(client, settings.storage_bucket, settings.supabase_public_url)
    adapters = build_adapters(settings, http)
    locks = KeyedLocks()

    oauth = OAuthConnectionManager(repo, adapters, settings, locks=locks)
    pipeline = IngestionPipeline(repo, store, oauth, adapters, settings, locks=locks)
    queue = IngestionQueue.from_settings(pipeline, settings)

    return VaultServices(
        settings=settings,
        repo=repo,
        store=store,
        adapters=adapters,
        oauth=oauth,
        pipeline=pipeline,
        queue=queue,
        webhooks=WebhookReceiver(repo, adapters, queue),
        verification=VerificationService(repo, store),
        http=http,
    )


def get_services(request: Request) -> VaultServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialised")
    return services


def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None),
) -> None:
    """
    Guard the operator API with the shared INTERNAL_API_KEY.

    Raises 401 if the key is missing, unconfigured, or does not match.
    """
    expected = get_services(request).settings.internal_api_key
    if not expected:
        logger.warning("INTERNAL_API_KEY not configured; operator API requests will be rejected")
        raise HTTPException(status_code=401, detail="API key not configured")

    if not x_api_key or not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid API key")


def http_error(error: VaultError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)
