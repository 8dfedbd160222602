"""Connector provider contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import singledispatch
from typing import Any, Dict, Literal, Optional, Tuple, Union


PlatformKey = Literal["facebook", "instagram", "twitter", "amazon"]

PLATFORMS: Tuple[PlatformKey, ...] = ("facebook", "instagram", "twitter", "amazon")
PLATFORM_ALIASES: Dict[str, PlatformKey] = {"x": "twitter"}


def resolve_platform(value: Optional[str]) -> Optional[PlatformKey]:
    """Map a query-string platform value (any case, aliases allowed) to its key."""
    text = str(value or "").strip().lower()
    if not text:
        return None
    if text in PLATFORM_ALIASES:
        return PLATFORM_ALIASES[text]
    if text in PLATFORMS:
        return text  # type: ignore[return-value]
    return None


def _coerce_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class TokenResult:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenResult":
        return cls(
            access_token=str(payload.get("access_token") or ""),
            refresh_token=payload.get("refresh_token") or None,
            expires_in=_coerce_int(payload.get("expires_in")),
            scope=payload.get("scope"),
            token_type=payload.get("token_type"),
        )


@dataclass(frozen=True)
class FacebookUserData:
    id: str
    name: str
    email: Optional[str] = None
    picture: Optional[str] = None
    pages: Tuple[Dict[str, Any], ...] = ()
    instagram_accounts: Tuple[Dict[str, Any], ...] = ()
    kind: Literal["facebook"] = field(default="facebook", init=False)


@dataclass(frozen=True)
class InstagramUserData:
    id: str
    username: Optional[str] = None
    name: Optional[str] = None
    profile_picture_url: Optional[str] = None
    page_id: Optional[str] = None
    page_name: Optional[str] = None
    page_access_token: Optional[str] = None
    kind: Literal["instagram"] = field(default="instagram", init=False)


@dataclass(frozen=True)
class TwitterUserData:
    id: str
    username: str
    name: Optional[str] = None
    verified: bool = False
    profile_image_url: Optional[str] = None
    public_metrics: Dict[str, int] = field(default_factory=dict)
    kind: Literal["twitter"] = field(default="twitter", init=False)


@dataclass(frozen=True)
class AmazonUserData:
    id: str
    name: str
    email: Optional[str] = None
    kind: Literal["amazon"] = field(default="amazon", init=False)


ProviderUserData = Union[FacebookUserData, InstagramUserData, TwitterUserData, AmazonUserData]


@dataclass(frozen=True)
class AccountIdentity:
    user_id: str
    username: str
    email: str = ""

    def to_public(self) -> Dict[str, str]:
        return {"id": self.user_id, "username": self.username, "email": self.email}


@singledispatch
def to_account_identity(user_data: Any) -> AccountIdentity:
    raise TypeError(f"Unsupported provider user data: {type(user_data).__name__}")


@to_account_identity.register
def _(user_data: FacebookUserData) -> AccountIdentity:
    return AccountIdentity(
        user_id=user_data.id,
        username=user_data.name or "Unknown",
        email=user_data.email or "",
    )


@to_account_identity.register
def _(user_data: InstagramUserData) -> AccountIdentity:
    return AccountIdentity(
        user_id=user_data.id,
        username=user_data.username or user_data.name or "Unknown",
    )


@to_account_identity.register
def _(user_data: TwitterUserData) -> AccountIdentity:
    return AccountIdentity(
        user_id=user_data.id,
        username=user_data.username or user_data.name or "Unknown",
    )


@to_account_identity.register
def _(user_data: AmazonUserData) -> AccountIdentity:
    return AccountIdentity(
        user_id=user_data.id,
        username=user_data.name or "Unknown",
        email=user_data.email or "",
    )
