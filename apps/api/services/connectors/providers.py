"""Provider registry: one adapter per platform, built once at startup."""

from __future__ import annotations

from typing import Dict, Mapping, Optional

import httpx

from config import Settings
from services.connectors.amazon import AmazonConnectorProvider
from services.connectors.base import BaseConnectorProvider
from services.connectors.meta import FacebookConnectorProvider, InstagramConnectorProvider
from services.connectors.twitter import TwitterConnectorProvider
from services.connectors.types import PLATFORMS, PlatformKey


ProviderRegistry = Mapping[PlatformKey, BaseConnectorProvider]

_PROVIDER_CLASSES = (
    FacebookConnectorProvider,
    InstagramConnectorProvider,
    TwitterConnectorProvider,
    AmazonConnectorProvider,
)


def build_provider_registry(
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    config: Optional[Settings] = None,
) -> Dict[PlatformKey, BaseConnectorProvider]:
    registry: Dict[PlatformKey, BaseConnectorProvider] = {}
    for provider_class in _PROVIDER_CLASSES:
        provider = provider_class(transport=transport, config=config)
        registry[provider.platform] = provider
    missing = [platform for platform in PLATFORMS if platform not in registry]
    if missing:
        raise RuntimeError(f"No connector provider registered for: {', '.join(missing)}")
    return registry


def connector_capabilities(registry: ProviderRegistry) -> Dict[str, bool]:
    return {f"{platform}_oauth_available": registry[platform].is_configured for platform in PLATFORMS}
