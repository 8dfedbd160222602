"""Two-phase OAuth flow orchestration (initiate -> provider -> callback).

Each operation receives an immutable session snapshot and returns a
``FlowResult`` holding the response payload and the ``SessionPatch`` to commit.
Errors that occur before the session is touched are raised as ``OAuthError``;
failures after the pending state is consumed are returned alongside a patch
that clears it, so the caller can still persist the cleared session.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from config import settings
from services.connection_policy import ConnectionPolicy
from services.connectors import (
    BaseConnectorProvider,
    PlatformKey,
    ProviderRegistry,
    ProviderUserData,
    TokenResult,
    normalize_url,
    resolve_platform,
    to_account_identity,
)
from services.errors import (
    AuthError,
    AuthenticationRequired,
    CsrfViolation,
    InternalError,
    OAuthError,
    ValidationError,
)
from services.oauth_state import generate_pkce_pair, generate_state
from services.sessions import (
    PendingAuthorization,
    Session,
    SessionPatch,
    now_ms,
    tokens_from_result,
)


logger = logging.getLogger(__name__)

CALLBACK_PATH = "/api/auth/oauth/callback"


@dataclass(frozen=True)
class FlowResult:
    data: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    error: Optional[OAuthError] = None
    patch: SessionPatch = field(default_factory=SessionPatch)

    @property
    def ok(self) -> bool:
        return self.error is None


def resolve_base_url(headers: Mapping[str, str], fallback: Optional[str] = None) -> str:
    """Derive the public origin from proxy headers, then ``host``, then ``APP_URL``."""
    forwarded_proto = headers.get("x-forwarded-proto")
    forwarded_host = headers.get("x-forwarded-host")
    if forwarded_proto and forwarded_host:
        return f"{forwarded_proto}://{forwarded_host}"
    host = headers.get("host")
    if host:
        return f"https://{host}"
    return fallback or settings.APP_URL or "http://localhost:3000"


def build_redirect_uri(base_url: str, platform: str) -> str:
    return normalize_url(f"{base_url.rstrip('/')}{CALLBACK_PATH}?platform={platform}")


def _tokens_match(expected: Optional[str], supplied: str) -> bool:
    if not expected:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


class OAuthFlowService:
    def __init__(
        self,
        providers: ProviderRegistry,
        policy: Optional[ConnectionPolicy] = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.providers = providers
        self.policy = policy or ConnectionPolicy()
        self.clock = clock

    @staticmethod
    def _require_session(session: Optional[Session], *, require_plan: bool = True) -> Session:
        if session is None or not session.user_id:
            raise AuthenticationRequired()
        if require_plan and session.plan is None:
            raise AuthenticationRequired()
        return session

    @staticmethod
    def _require_platform(platform: Optional[str], *, unknown_message: Optional[str] = None) -> PlatformKey:
        if not platform:
            raise ValidationError("Platform parameter is required")
        key = resolve_platform(platform)
        if key is None:
            raise ValidationError(unknown_message or f"Unsupported platform: {platform}")
        return key

    def _provider(self, platform: PlatformKey) -> BaseConnectorProvider:
        provider = self.providers.get(platform)
        if provider is None:
            raise AuthError(f"Unsupported platform: {platform}")
        return provider

    async def initiate(self, session: Optional[Session], platform: Optional[str], base_url: str) -> FlowResult:
        session = self._require_session(session)
        key = self._require_platform(platform)
        self.policy.validate_additional_connection(key, session.plan, session)

        provider = self._provider(key)
        state = generate_state()
        code_verifier: Optional[str] = None
        code_challenge: Optional[str] = None
        if provider.uses_pkce:
            code_verifier, code_challenge = generate_pkce_pair()

        redirect_uri = build_redirect_uri(base_url, key)
        auth_url = provider.build_auth_url(state, redirect_uri, code_challenge)
        logger.info("OAuth flow initiated user=%s platform=%s pkce=%s", session.user_id, key, provider.uses_pkce)

        return FlowResult(
            data={
                "authUrl": auth_url,
                "platform": key,
                "requiresPremium": self.policy.get_platform_requirements(key)["requiresPremium"],
            },
            message="OAuth flow initiated successfully",
            patch=SessionPatch(
                pending=PendingAuthorization(
                    state=state,
                    code_verifier=code_verifier,
                    code_challenge=code_challenge,
                )
            ),
        )

    async def callback(
        self,
        session: Optional[Session],
        *,
        platform: Optional[str],
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
        base_url: str,
    ) -> FlowResult:
        session = self._require_session(session)

        if error:
            logger.error("OAuth error received platform=%s error=%s", platform, error)
            raise ValidationError(f"OAuth authentication failed: {error}")

        if not platform or not code or not state:
            raise ValidationError("Missing required OAuth parameters")

        if not _tokens_match(session.state, state):
            logger.error(
                "OAuth state validation failed platform=%s session_state=%s callback_state=%s",
                platform,
                session.state,
                state,
            )
            return FlowResult(error=CsrfViolation(), patch=SessionPatch.clear())

        key = resolve_platform(platform)
        redirect_uri = build_redirect_uri(base_url, key or platform)

        try:
            if key is None:
                raise AuthError(f"Unsupported platform: {platform}")
            user_data, tokens = await self._exchange(key, session, code, redirect_uri)
            identity = to_account_identity(user_data)
            connection = session.build_connection(identity, tokens, at_ms=self.clock())
        except AuthError as exc:
            logger.error(
                "OAuth token exchange failed platform=%s error=%s detail=%s",
                platform,
                exc.message,
                exc.detail,
            )
            return FlowResult(error=exc, patch=SessionPatch.clear())
        except Exception:
            logger.exception("OAuth callback processing failed platform=%s", platform)
            return FlowResult(
                error=InternalError("OAuth callback processing failed"),
                patch=SessionPatch.clear(),
            )

        logger.info(
            "OAuth connection successful user=%s platform=%s account=%s",
            session.user_id,
            key,
            identity.user_id,
        )
        return FlowResult(
            data={
                "platform": key,
                "connected": True,
                "userData": identity.to_public(),
                "message": f"Successfully connected to {key}",
            },
            message=f"{key} authentication successful",
            patch=SessionPatch(clear_pending=True, set_connections={key: connection}),
        )

    async def _exchange(
        self,
        platform: PlatformKey,
        session: Session,
        code: str,
        redirect_uri: str,
    ) -> Tuple[ProviderUserData, TokenResult]:
        provider = self._provider(platform)

        if not self.policy.is_platform_accessible(platform, session.plan):
            raise AuthError(f"{provider.display_name} connectivity requires a premium subscription")
        if provider.uses_pkce and not session.code_verifier:
            raise AuthError(f"Missing code verifier for {provider.display_name} OAuth")

        tokens = await provider.exchange_code(
            code,
            redirect_uri,
            session.code_verifier if provider.uses_pkce else None,
        )
        user_data = await provider.fetch_profile(tokens.access_token)
        return user_data, tokens

    async def disconnect(self, session: Optional[Session], platform: Optional[str]) -> FlowResult:
        session = self._require_session(session, require_plan=False)
        key = self._require_platform(platform, unknown_message="Invalid platform")
        if not self.policy.is_platform_connected(key, session):
            raise ValidationError(f"{key} is not connected")

        logger.info("Platform disconnection user=%s platform=%s", session.user_id, key)
        return FlowResult(
            data={
                "platform": key,
                "disconnected": True,
                "message": f"Successfully disconnected from {key}",
            },
            message=f"{key} disconnection successful",
            patch=SessionPatch(remove_connections=(key,)),
        )

    async def status(self, session: Optional[Session]) -> FlowResult:
        session = self._require_session(session)
        plan = session.plan
        available = self.policy.get_available_platforms(plan, session)
        return FlowResult(
            data={
                "userPlan": plan.value if plan else None,
                "availablePlatforms": available,
                "connectedCount": self.policy.get_connected_platform_count(session),
                "isMultiPlatformAllowed": self.policy.is_multi_platform_allowed(plan),
                "premiumLockedPlatforms": self.policy.get_premium_locked_platforms(plan),
                "platformRequirements": {
                    entry["platform"]: self.policy.get_platform_requirements(entry["platform"])
                    for entry in available
                },
                "limits": self.policy.connection_limits(),
            },
            message="Platform status retrieved successfully",
        )

    async def refresh(self, session: Optional[Session], platform: Optional[str]) -> FlowResult:
        session = self._require_session(session, require_plan=False)
        key = self._require_platform(platform, unknown_message="Invalid platform")
        connection = session.connection(key)
        if connection is None:
            raise ValidationError(f"{key} is not connected")

        provider = self._provider(key)
        tokens = await provider.refresh_tokens(
            access_token=connection.account_tokens.access_token,
            refresh_token=connection.account_tokens.refresh_token,
        )
        refreshed = replace(
            connection,
            account_tokens=tokens_from_result(
                tokens,
                at_ms=self.clock(),
                previous_refresh_token=connection.account_tokens.refresh_token,
            ),
        )
        logger.info("Platform tokens refreshed user=%s platform=%s", session.user_id, key)
        return FlowResult(
            data={
                "platform": key,
                "refreshed": True,
                "expiresAt": refreshed.account_tokens.expires_at,
            },
            message=f"{key} tokens refreshed",
            patch=SessionPatch(set_connections={key: refreshed}),
        )
