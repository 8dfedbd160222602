"""Login with Amazon adapter."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from services.connectors.base import BaseConnectorProvider, normalize_url
from services.connectors.types import AmazonUserData, TokenResult
from services.errors import ProviderAuthError


logger = logging.getLogger(__name__)

AMAZON_AUTHORIZE_URL = "https://www.amazon.com/ap/oa"
AMAZON_TOKEN_URL = "https://api.amazon.com/auth/o2/token"
AMAZON_PROFILE_URL = "https://api.amazon.com/user/profile"


class AmazonConnectorProvider(BaseConnectorProvider):
    platform = "amazon"
    display_name = "Amazon"
    authorize_url = AMAZON_AUTHORIZE_URL

    @property
    def client_id(self) -> str:
        return self.settings.AMAZON_CLIENT_ID

    @property
    def client_secret(self) -> str:
        return self.settings.AMAZON_CLIENT_SECRET

    @property
    def scope(self) -> str:
        return self.settings.AMAZON_SCOPES

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenResult:
        self.require_credentials()
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": normalize_url(redirect_uri),
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        async with self.http_client() as client:
            try:
                response = await client.post(
                    AMAZON_TOKEN_URL,
                    data=form,
                    headers={"Accept": "application/json"},
                )
            except httpx.TransportError as exc:
                raise self.unavailable(exc) from exc

        if not response.is_success:
            raise self.token_error(response)
        return self.parse_token_response(response)

    async def fetch_profile(self, access_token: str) -> AmazonUserData:
        async with self.http_client() as client:
            payload = await self.get_json(
                client,
                AMAZON_PROFILE_URL,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )

        user_id = str(payload.get("user_id") or "")
        if not user_id:
            logger.error("Amazon profile response did not include user_id")
            raise ProviderAuthError("Invalid Amazon user data", detail=str(payload))

        return AmazonUserData(
            id=user_id,
            name=payload.get("name") or f"Amazon User {user_id}",
            email=payload.get("email"),
        )
