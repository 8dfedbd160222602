"""Facebook and Instagram adapters (both authorize through the Facebook Graph API)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from services.connectors.base import BaseConnectorProvider, normalize_url
from services.connectors.types import FacebookUserData, InstagramUserData, TokenResult
from services.errors import AuthError, ProviderAuthError, ProviderUnavailable


logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com/v19.0"
GRAPH_TOKEN_URL = f"{GRAPH_API_BASE}/oauth/access_token"
FACEBOOK_DIALOG_URL = "https://www.facebook.com/v19.0/dialog/oauth"
LONG_LIVED_TOKEN_SECONDS = 60 * 24 * 60 * 60

FACEBOOK_PROFILE_FIELDS = (
    "id,name,email,picture.width(200).height(200),"
    "accounts{id,name,access_token,category,tasks,"
    "instagram_business_account{id,username,name,profile_picture_url,followers_count,media_count}}"
)
INSTAGRAM_ACCOUNT_FIELDS = "instagram_business_account{id,name,username,profile_picture_url}"
INSTAGRAM_PAGE_FIELDS = f"id,name,access_token,{INSTAGRAM_ACCOUNT_FIELDS}"


class _GraphConnectorProvider(BaseConnectorProvider):
    authorize_url = FACEBOOK_DIALOG_URL

    @property
    def client_id(self) -> str:
        return self.settings.FACEBOOK_APP_ID

    @property
    def client_secret(self) -> str:
        return self.settings.FACEBOOK_APP_SECRET

    def code_exchange_form(self, code: str, redirect_uri: str) -> Dict[str, str]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "authorization_code",
            "redirect_uri": normalize_url(redirect_uri),
            "code": code,
        }

    async def refresh_tokens(self, *, access_token: str, refresh_token: str) -> TokenResult:
        """Swap the current token for a long-lived (60 day) one."""
        self.require_credentials()
        form = {
            "grant_type": "fb_exchange_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "fb_exchange_token": access_token,
        }
        async with self.http_client() as client:
            try:
                response = await client.post(GRAPH_TOKEN_URL, data=form)
            except httpx.TransportError as exc:
                raise self.unavailable(exc) from exc

        if not response.is_success:
            raise self.token_error(response)
        tokens = self.parse_token_response(response)
        if tokens.expires_in:
            return tokens
        return TokenResult(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=LONG_LIVED_TOKEN_SECONDS,
            scope=tokens.scope,
            token_type=tokens.token_type,
        )


class FacebookConnectorProvider(_GraphConnectorProvider):
    platform = "facebook"
    display_name = "Facebook"

    @property
    def scope(self) -> str:
        return self.settings.FACEBOOK_SCOPES

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenResult:
        self.require_credentials()
        form = self.code_exchange_form(code, redirect_uri)
        max_attempts = max(int(self.settings.FACEBOOK_TOKEN_MAX_ATTEMPTS), 1)
        base_delay = float(self.settings.FACEBOOK_RETRY_BASE_SECONDS)
        logger.info(
            "Facebook token exchange redirect_uri=%s code_length=%s",
            form["redirect_uri"],
            len(code),
        )

        last_error: Optional[ProviderAuthError] = None
        async with self.http_client() as client:
            for attempt in range(1, max_attempts + 1):
                try:
                    response = await client.post(GRAPH_TOKEN_URL, data=form)
                except httpx.TransportError as exc:
                    last_error = self.unavailable(exc)
                else:
                    if response.is_success:
                        return self.parse_token_response(response)
                    if response.status_code < 500:
                        raise self.token_error(response)
                    logger.warning(
                        "Facebook token exchange attempt %s/%s failed status=%s body=%s",
                        attempt,
                        max_attempts,
                        response.status_code,
                        response.text,
                    )
                    last_error = ProviderUnavailable(
                        f"Facebook authentication failed after {max_attempts} attempts",
                        detail=response.text,
                    )

                if attempt < max_attempts:
                    await asyncio.sleep(base_delay * (2 ** (attempt - 1)))

        raise last_error or ProviderUnavailable("Facebook authentication failed")

    async def fetch_profile(self, access_token: str) -> FacebookUserData:
        async with self.http_client() as client:
            payload = await self.get_json(
                client,
                f"{GRAPH_API_BASE}/me",
                params={"fields": FACEBOOK_PROFILE_FIELDS, "access_token": access_token},
            )

        if not payload.get("id"):
            raise ProviderAuthError("Failed to retrieve user information", detail=str(payload))

        pages: List[Dict[str, Any]] = []
        instagram_accounts: List[Dict[str, Any]] = []
        for account in (payload.get("accounts") or {}).get("data") or []:
            pages.append(
                {
                    "id": account.get("id"),
                    "name": account.get("name"),
                    "category": account.get("category"),
                    "tasks": account.get("tasks") or [],
                }
            )
            business_account = account.get("instagram_business_account")
            if business_account:
                instagram_accounts.append(
                    {
                        "id": business_account.get("id"),
                        "username": business_account.get("username"),
                        "name": business_account.get("name"),
                        "followers_count": business_account.get("followers_count") or 0,
                        "media_count": business_account.get("media_count") or 0,
                        "connected_facebook_page": account.get("id"),
                    }
                )

        logger.info(
            "Facebook profile fetched pages=%s instagram_accounts=%s",
            len(pages),
            len(instagram_accounts),
        )
        return FacebookUserData(
            id=str(payload["id"]),
            name=str(payload.get("name") or ""),
            email=payload.get("email"),
            picture=((payload.get("picture") or {}).get("data") or {}).get("url"),
            pages=tuple(pages),
            instagram_accounts=tuple(instagram_accounts),
        )


class InstagramConnectorProvider(_GraphConnectorProvider):
    platform = "instagram"
    display_name = "Instagram"

    @property
    def scope(self) -> str:
        return self.settings.INSTAGRAM_SCOPES

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenResult:
        self.require_credentials()
        form = self.code_exchange_form(code, redirect_uri)
        logger.info(
            "Instagram token exchange redirect_uri=%s code_length=%s",
            form["redirect_uri"],
            len(code),
        )
        async with self.http_client() as client:
            try:
                response = await client.post(GRAPH_TOKEN_URL, data=form)
            except httpx.TransportError as exc:
                raise self.unavailable(exc) from exc

        if not response.is_success:
            raise self.token_error(response)
        return self.parse_token_response(response)

    async def fetch_profile(self, access_token: str) -> InstagramUserData:
        async with self.http_client() as client:
            payload = await self.get_json(
                client,
                f"{GRAPH_API_BASE}/me/accounts",
                params={"fields": INSTAGRAM_PAGE_FIELDS, "access_token": access_token},
                failure_message="Failed to retrieve Instagram user information",
            )
            pages = [page for page in payload.get("data") or [] if isinstance(page, dict)]
            if not pages:
                logger.warning("No Facebook pages found for Instagram connection")
                raise AuthError(
                    "No Facebook pages found. An Instagram Business account connected to a Facebook page is required"
                )

            for page in pages:
                if page.get("instagram_business_account"):
                    return self._business_account(page, page["instagram_business_account"])

            for page in pages:
                business_account = await self._lookup_business_account(client, page, access_token)
                if business_account:
                    return self._business_account(page, business_account)

        logger.warning("No Instagram business accounts found across %s pages", len(pages))
        raise AuthError(
            "No Instagram business account found. Please connect your Instagram account to a Facebook page"
        )

    async def _lookup_business_account(
        self,
        client: httpx.AsyncClient,
        page: Dict[str, Any],
        access_token: str,
    ) -> Optional[Dict[str, Any]]:
        page_id = page.get("id")
        if not page_id:
            return None
        try:
            response = await client.get(
                f"{GRAPH_API_BASE}/{page_id}",
                params={"fields": INSTAGRAM_ACCOUNT_FIELDS, "access_token": access_token},
            )
        except httpx.TransportError as exc:
            logger.warning("Instagram account lookup failed for page %s: %s", page_id, exc)
            return None
        if not response.is_success:
            logger.warning(
                "Instagram account lookup failed for page %s status=%s",
                page_id,
                response.status_code,
            )
            return None
        try:
            return response.json().get("instagram_business_account")
        except (ValueError, AttributeError):
            return None

    @staticmethod
    def _business_account(page: Dict[str, Any], account: Dict[str, Any]) -> InstagramUserData:
        logger.info(
            "Found Instagram business account page_id=%s instagram_id=%s",
            page.get("id"),
            account.get("id"),
        )
        return InstagramUserData(
            id=str(account.get("id") or ""),
            username=account.get("username"),
            name=account.get("name"),
            profile_picture_url=account.get("profile_picture_url"),
            page_id=page.get("id"),
            page_name=page.get("name"),
            page_access_token=page.get("access_token"),
        )
