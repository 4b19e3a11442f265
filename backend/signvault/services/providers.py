"""
Provider adapter registry.

Maps each supported Provider to its adapter class. Routers and services look
adapters up by the provider path segment ("docusign", "signnow", "pandadoc")
so adding a provider never touches them.
"""

import logging
from typing import Type

import httpx

from signvault.config import Settings
from signvault.errors import InvalidRequest
from signvault.models.connection import Provider
from signvault.services.docusign_adapter import DocuSignAdapter
from signvault.services.pandadoc_adapter import PandaDocAdapter
from signvault.services.provider_base import ProviderAdapter
from signvault.services.signnow_adapter import SignNowAdapter

logger = logging.getLogger(__name__)

_ADAPTERS: dict[Provider, Type[ProviderAdapter]] = {
    Provider.DOCUSIGN: DocuSignAdapter,
    Provider.SIGNNOW: SignNowAdapter,
    Provider.PANDADOC: PandaDocAdapter,
}


def parse_provider(name: str) -> Provider:
    """
    Resolve a provider name from a URL path.

    Raises:
        InvalidRequest: for names outside the registry, "manual" included.
    """
    try:
        provider = Provider((name or "").lower().strip())
    except ValueError:
        provider = None
    if provider not in _ADAPTERS:
        raise InvalidRequest(
            f"Unknown provider {name!r}. Supported providers: {sorted(p.value for p in _ADAPTERS)}"
        )
    return provider


def build_adapters(settings: Settings, http: httpx.AsyncClient) -> dict[Provider, ProviderAdapter]:
    """Instantiate one adapter per registered provider, sharing ``http``."""
    adapters = {}
    for provider, adapter_cls in _ADAPTERS.items():
        provider_settings = settings.provider(provider.value)
        if not provider_settings.client_id:
            logger.warning(f"{provider.value}: client id not configured; OAuth will fail")
        adapters[provider] = adapter_cls(provider_settings, http)
    return adapters
