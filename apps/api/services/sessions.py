"""Session snapshot, connection record and session patch types.

Handlers never mutate a session. They read an immutable ``Session`` and return a
``SessionPatch``; the session service applies the patch once, when the response
cookie is written.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from services.connectors.types import AccountIdentity, TokenResult


DEFAULT_TOKEN_TTL_MS = 24 * 60 * 60 * 1000


class SubscriptionPlan(str, Enum):
    FREEMIUM = "FREEMIUM"
    PREMIUM_MONTHLY = "PREMIUM_MONTHLY"
    PREMIUM_YEARLY = "PREMIUM_YEARLY"


PREMIUM_PLANS = frozenset({SubscriptionPlan.PREMIUM_MONTHLY, SubscriptionPlan.PREMIUM_YEARLY})


def parse_plan(value: Any) -> Optional[SubscriptionPlan]:
    if isinstance(value, SubscriptionPlan):
        return value
    try:
        return SubscriptionPlan(str(value or "").strip().upper())
    except ValueError:
        return None


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class AccountTokens:
    access_token: str
    refresh_token: str = ""
    expires_at: int = 0


@dataclass(frozen=True)
class AccountCodes:
    code_verifier: str = ""
    code_challenge: str = ""
    state: str = ""


@dataclass(frozen=True)
class PlatformConnection:
    account: AccountIdentity
    account_tokens: AccountTokens
    account_codes: AccountCodes = field(default_factory=AccountCodes)
    connected_at: Optional[int] = None

    @property
    def is_connected(self) -> bool:
        return bool(self.account.user_id)

    def has_valid_token(self, at_ms: Optional[int] = None) -> bool:
        current = now_ms() if at_ms is None else at_ms
        return bool(self.account_tokens.access_token) and self.account_tokens.expires_at > current

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": {
                "userId": self.account.user_id,
                "username": self.account.username,
                "email": self.account.email,
            },
            "account_tokens": {
                "access_token": self.account_tokens.access_token,
                "refresh_token": self.account_tokens.refresh_token,
                "expires_at": self.account_tokens.expires_at,
            },
            "account_codes": {
                "codeVerifier": self.account_codes.code_verifier,
                "codeChallenge": self.account_codes.code_challenge,
                "state": self.account_codes.state,
            },
            "connected_at": self.connected_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PlatformConnection":
        account = payload.get("account") or {}
        tokens = payload.get("account_tokens") or {}
        codes = payload.get("account_codes") or {}
        try:
            expires_at = int(tokens.get("expires_at") or 0)
        except (TypeError, ValueError):
            expires_at = 0
        return cls(
            account=AccountIdentity(
                user_id=str(account.get("userId") or ""),
                username=str(account.get("username") or ""),
                email=str(account.get("email") or ""),
            ),
            account_tokens=AccountTokens(
                access_token=str(tokens.get("access_token") or ""),
                refresh_token=str(tokens.get("refresh_token") or ""),
                expires_at=expires_at,
            ),
            account_codes=AccountCodes(
                code_verifier=str(codes.get("codeVerifier") or ""),
                code_challenge=str(codes.get("codeChallenge") or ""),
                state=str(codes.get("state") or ""),
            ),
            connected_at=payload.get("connected_at"),
        )


def tokens_from_result(
    tokens: TokenResult,
    *,
    at_ms: int,
    default_ttl_ms: int = DEFAULT_TOKEN_TTL_MS,
    previous_refresh_token: str = "",
) -> AccountTokens:
    expires_at = at_ms + tokens.expires_in * 1000 if tokens.expires_in else at_ms + default_ttl_ms
    return AccountTokens(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token or previous_refresh_token,
        expires_at=expires_at,
    )


@dataclass(frozen=True)
class PendingAuthorization:
    state: str
    code_verifier: Optional[str] = None
    code_challenge: Optional[str] = None


@dataclass(frozen=True)
class Session:
    user_id: Optional[str] = None
    plan: Optional[SubscriptionPlan] = None
    state: Optional[str] = None
    code_verifier: Optional[str] = None
    code_challenge: Optional[str] = None
    connected_platforms: Mapping[str, PlatformConnection] = field(default_factory=dict)
    # Claims owned by other subsystems (user profile, login tokens); carried through untouched.
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id) and self.plan is not None

    def connection(self, platform: str) -> Optional[PlatformConnection]:
        return self.connected_platforms.get(platform)

    def build_connection(self, identity: AccountIdentity, tokens: TokenResult, *, at_ms: int) -> PlatformConnection:
        """Snapshot the pending PKCE/CSRF material alongside the new identity and tokens."""
        return PlatformConnection(
            account=identity,
            account_tokens=tokens_from_result(tokens, at_ms=at_ms),
            account_codes=AccountCodes(
                code_verifier=self.code_verifier or "",
                code_challenge=self.code_challenge or "",
                state=self.state or "",
            ),
            connected_at=at_ms,
        )

    def to_claims(self) -> Dict[str, Any]:
        claims: Dict[str, Any] = dict(self.extra)
        claims["userId"] = self.user_id
        if self.plan is not None:
            claims["plan"] = self.plan.value
        for key, value in (
            ("state", self.state),
            ("codeVerifier", self.code_verifier),
            ("codeChallenge", self.code_challenge),
        ):
            if value:
                claims[key] = value
        claims["connectedPlatforms"] = {
            platform: connection.to_dict() for platform, connection in self.connected_platforms.items()
        }
        return claims

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "Session":
        known = {"userId", "plan", "state", "codeVerifier", "codeChallenge", "connectedPlatforms"}
        connected: Dict[str, PlatformConnection] = {}
        for platform, payload in (claims.get("connectedPlatforms") or {}).items():
            if isinstance(payload, Mapping):
                connected[str(platform)] = PlatformConnection.from_dict(payload)
        return cls(
            user_id=str(claims.get("userId") or "") or None,
            plan=parse_plan(claims.get("plan")),
            state=claims.get("state") or None,
            code_verifier=claims.get("codeVerifier") or None,
            code_challenge=claims.get("codeChallenge") or None,
            connected_platforms=connected,
            extra={key: value for key, value in claims.items() if key not in known},
        )


@dataclass(frozen=True)
class SessionPatch:
    pending: Optional[PendingAuthorization] = None
    clear_pending: bool = False
    set_connections: Mapping[str, PlatformConnection] = field(default_factory=dict)
    remove_connections: Tuple[str, ...] = ()

    @classmethod
    def clear(cls) -> "SessionPatch":
        return cls(clear_pending=True)

    @property
    def is_empty(self) -> bool:
        return (
            self.pending is None
            and not self.clear_pending
            and not self.set_connections
            and not self.remove_connections
        )


def apply_patch(session: Session, patch: SessionPatch) -> Session:
    """Return a new session with ``patch`` applied; ``session`` is left as-is."""
    if patch.is_empty:
        return session

    state, code_verifier, code_challenge = session.state, session.code_verifier, session.code_challenge
    if patch.pending is not None:
        state = patch.pending.state
        code_verifier = patch.pending.code_verifier
        code_challenge = patch.pending.code_challenge
    elif patch.clear_pending:
        state = code_verifier = code_challenge = None

    connected = dict(session.connected_platforms)
    for platform in patch.remove_connections:
        connected.pop(platform, None)
    connected.update(patch.set_connections)

    return replace(
        session,
        state=state,
        code_verifier=code_verifier,
        code_challenge=code_challenge,
        connected_platforms=connected,
    )
