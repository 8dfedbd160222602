"""Public connector provider utilities."""

from services.connectors.base import BaseConnectorProvider, normalize_url
from services.connectors.providers import ProviderRegistry, build_provider_registry, connector_capabilities
from services.connectors.types import (
    PLATFORMS,
    AccountIdentity,
    AmazonUserData,
    FacebookUserData,
    InstagramUserData,
    PlatformKey,
    ProviderUserData,
    TokenResult,
    TwitterUserData,
    resolve_platform,
    to_account_identity,
)

__all__ = [
    "PLATFORMS",
    "AccountIdentity",
    "AmazonUserData",
    "BaseConnectorProvider",
    "FacebookUserData",
    "InstagramUserData",
    "PlatformKey",
    "ProviderRegistry",
    "ProviderUserData",
    "TokenResult",
    "TwitterUserData",
    "build_provider_registry",
    "connector_capabilities",
    "normalize_url",
    "resolve_platform",
    "to_account_identity",
]
