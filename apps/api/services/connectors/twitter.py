"""Twitter / X OAuth 2.0 adapter (authorization code with PKCE)."""

from __future__ import annotations

import base64
import logging
from typing import Dict, Optional
from urllib.parse import quote, urlencode

import httpx

from services.connectors.base import BaseConnectorProvider, normalize_url
from services.connectors.types import TokenResult, TwitterUserData
from services.errors import AuthError, ProviderAuthError


logger = logging.getLogger(__name__)

TWITTER_AUTHORIZE_URL = "https://twitter.com/i/oauth2/authorize"
TWITTER_TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
TWITTER_ME_URL = "https://api.twitter.com/2/users/me"
TWITTER_USER_FIELDS = (
    "public_metrics,verified,created_at,description,profile_image_url,location,url,entities,pinned_tweet_id"
)


class TwitterConnectorProvider(BaseConnectorProvider):
    platform = "twitter"
    display_name = "Twitter"
    authorize_url = TWITTER_AUTHORIZE_URL
    uses_pkce = True

    @property
    def client_id(self) -> str:
        return self.settings.TWITTER_CLIENT_ID

    @property
    def client_secret(self) -> str:
        return self.settings.TWITTER_CLIENT_SECRET

    @property
    def scope(self) -> str:
        return self.settings.TWITTER_SCOPES

    def authorization_params(
        self,
        state: str,
        redirect_uri: str,
        code_challenge: Optional[str] = None,
    ) -> Dict[str, str]:
        if not code_challenge:
            raise AuthError("Twitter OAuth requires a PKCE code challenge")
        params = super().authorization_params(state, redirect_uri, code_challenge)
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
        return params

    def encode_query(self, params: Dict[str, str]) -> str:
        # Twitter expects spaces in the scope list as %20, not '+'.
        return urlencode(params, quote_via=quote)

    def _basic_auth_header(self) -> str:
        credentials = f"{self.client_id}:{self.client_secret}".encode()
        return f"Basic {base64.b64encode(credentials).decode()}"

    async def _post_token(self, form: Dict[str, str]) -> TokenResult:
        async with self.http_client() as client:
            try:
                response = await client.post(
                    TWITTER_TOKEN_URL,
                    data=form,
                    headers={"Authorization": self._basic_auth_header()},
                )
            except httpx.TransportError as exc:
                raise self.unavailable(exc) from exc

        if not response.is_success:
            raise self.token_error(response)
        return self.parse_token_response(response)

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenResult:
        self.require_credentials()
        if not code_verifier:
            raise AuthError("Missing code verifier for Twitter OAuth")

        normalized_redirect_uri = normalize_url(redirect_uri)
        logger.info(
            "Twitter token exchange redirect_uri=%s code_length=%s",
            normalized_redirect_uri,
            len(code),
        )
        return await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": normalized_redirect_uri,
                "code_verifier": code_verifier,
                "client_id": self.client_id,
            }
        )

    async def refresh_tokens(self, *, access_token: str, refresh_token: str) -> TokenResult:
        self.require_credentials()
        if not refresh_token:
            raise AuthError("Twitter connection has no refresh token. Reconnect the account.")
        return await self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
            }
        )

    async def fetch_profile(self, access_token: str) -> TwitterUserData:
        async with self.http_client() as client:
            payload = await self.get_json(
                client,
                TWITTER_ME_URL,
                params={"user.fields": TWITTER_USER_FIELDS},
                headers={"Authorization": f"Bearer {access_token}"},
            )

        user = payload.get("data") or {}
        if not user.get("id"):
            raise ProviderAuthError("Failed to retrieve user information", detail=str(payload))

        metrics = user.get("public_metrics") or {}
        return TwitterUserData(
            id=str(user["id"]),
            username=str(user.get("username") or ""),
            name=user.get("name"),
            verified=bool(user.get("verified")),
            profile_image_url=user.get("profile_image_url"),
            public_metrics={
                "followers_count": int(metrics.get("followers_count") or 0),
                "following_count": int(metrics.get("following_count") or 0),
                "tweet_count": int(metrics.get("tweet_count") or 0),
                "listed_count": int(metrics.get("listed_count") or 0),
            },
        )
