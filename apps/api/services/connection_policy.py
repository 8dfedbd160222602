"""Subscription-aware connection policy.

Pure functions of ``(platform, plan, session)``: nothing here performs I/O or
mutates a session, so the same engine backs initiate-time validation and the
status snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from config import settings
from services.connectors.types import PLATFORMS, resolve_platform
from services.errors import PolicyDenied
from services.sessions import PREMIUM_PLANS, Session, SubscriptionPlan, now_ms


PLATFORM_FEATURES: Dict[str, Dict[str, List[str]]] = {
    "amazon": {
        "features": ["Amazon Advertising insights", "Campaign performance data", "Product advertising metrics"],
        "limitations": ["Premium subscription required"],
    },
    "facebook": {
        "features": ["Post analytics", "Page insights", "Engagement metrics"],
        "limitations": ["Ads analytics requires Premium"],
    },
    "instagram": {
        "features": ["Post analytics", "Story insights", "Follower metrics"],
        "limitations": ["Ads analytics requires Premium"],
    },
    "twitter": {
        "features": ["Tweet analytics", "Engagement metrics", "Follower insights"],
        "limitations": ["Ads analytics requires Premium"],
    },
}

FREEMIUM_CAP_MESSAGE = (
    "Freemium plan allows only one platform connection. "
    "Upgrade to Premium for multi-platform connectivity."
)


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    error: Optional[PolicyDenied] = None

    def raise_for_denial(self) -> None:
        if self.error is not None:
            raise self.error


_ALLOWED = PolicyDecision(allowed=True)


class ConnectionPolicy:
    def __init__(
        self,
        premium_platforms: Optional[Iterable[str]] = None,
        freemium_max_connections: Optional[int] = None,
    ) -> None:
        gated = settings.PREMIUM_GATED_PLATFORMS if premium_platforms is None else premium_platforms
        self.premium_platforms = frozenset(
            platform for platform in (resolve_platform(value) for value in gated) if platform
        )
        limit = settings.FREEMIUM_MAX_CONNECTIONS if freemium_max_connections is None else freemium_max_connections
        self.freemium_max_connections = max(int(limit), 0)

    @staticmethod
    def is_premium_plan(plan: Optional[SubscriptionPlan]) -> bool:
        return plan in PREMIUM_PLANS

    def requires_premium(self, platform: str) -> bool:
        return resolve_platform(platform) in self.premium_platforms

    def is_platform_accessible(self, platform: str, plan: Optional[SubscriptionPlan]) -> bool:
        return self.is_premium_plan(plan) or not self.requires_premium(platform)

    def is_platform_connected(self, platform: str, session: Optional[Session]) -> bool:
        key = resolve_platform(platform)
        if session is None or key is None:
            return False
        connection = session.connection(key)
        return connection is not None and connection.is_connected

    def evaluate_additional_connection(
        self,
        platform: str,
        plan: Optional[SubscriptionPlan],
        session: Optional[Session],
    ) -> PolicyDecision:
        key = resolve_platform(platform)
        if key is None:
            return PolicyDecision(allowed=False, error=PolicyDenied(f"Unsupported platform: {platform}"))

        if not self.is_platform_accessible(key, plan):
            return PolicyDecision(
                allowed=False,
                error=PolicyDenied(f"{key} connectivity requires a premium subscription"),
            )

        if self.is_platform_connected(key, session):
            return PolicyDecision(
                allowed=False,
                error=PolicyDenied(f"{key} is already connected to your account"),
            )

        if not self.is_premium_plan(plan):
            if self.get_connected_platform_count(session) >= self.freemium_max_connections:
                return PolicyDecision(allowed=False, error=PolicyDenied(FREEMIUM_CAP_MESSAGE))

        return _ALLOWED

    def validate_additional_connection(
        self,
        platform: str,
        plan: Optional[SubscriptionPlan],
        session: Optional[Session],
    ) -> None:
        """Raise ``PolicyDenied`` when the platform may not be connected right now."""
        self.evaluate_additional_connection(platform, plan, session).raise_for_denial()

    def get_connected_platform_count(self, session: Optional[Session]) -> int:
        return sum(1 for platform in PLATFORMS if self.is_platform_connected(platform, session))

    def is_multi_platform_allowed(self, plan: Optional[SubscriptionPlan]) -> bool:
        return self.is_premium_plan(plan)

    def get_premium_locked_platforms(self, plan: Optional[SubscriptionPlan]) -> List[str]:
        if self.is_premium_plan(plan):
            return []
        return [platform for platform in PLATFORMS if platform in self.premium_platforms]

    def get_platform_requirements(self, platform: str) -> Dict[str, Any]:
        key = resolve_platform(platform)
        if key is None:
            return {"requiresPremium": False, "features": [], "limitations": ["Unknown platform"]}
        metadata = PLATFORM_FEATURES.get(key, {})
        return {
            "requiresPremium": key in self.premium_platforms,
            "features": list(metadata.get("features", [])),
            "limitations": list(metadata.get("limitations", [])),
        }

    def get_available_platforms(
        self,
        plan: Optional[SubscriptionPlan],
        session: Optional[Session],
    ) -> List[Dict[str, Any]]:
        current = now_ms()
        platforms: List[Dict[str, Any]] = []
        for platform in PLATFORMS:
            connection = session.connection(platform) if session is not None else None
            platforms.append(
                {
                    "platform": platform,
                    "isConnected": bool(connection and connection.is_connected),
                    "username": connection.account.username if connection else None,
                    "accountId": connection.account.user_id if connection else None,
                    "connectedAt": connection.connected_at if connection else None,
                    "hasValidToken": bool(connection and connection.has_valid_token(current)),
                    "requiresPremium": platform in self.premium_platforms,
                }
            )
        return platforms

    def connection_limits(self) -> Dict[str, Any]:
        return {
            "freemiumMaxConnections": self.freemium_max_connections,
            "premiumMaxConnections": "unlimited",
        }
