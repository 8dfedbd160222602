"""Shared provider adapter behaviour: credentials, HTTP client, token parsing."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from config import Settings, settings as app_settings
from services.connectors.types import PlatformKey, ProviderUserData, TokenResult
from services.errors import AuthError, ProviderAuthError, ProviderUnavailable


logger = logging.getLogger(__name__)

_DOUBLED_SLASHES = re.compile(r"([^:]/)/+")


def normalize_url(url: str) -> str:
    """Collapse doubled slashes after the scheme so redirect URIs match byte-for-byte."""
    return _DOUBLED_SLASHES.sub(r"\1", url)


class BaseConnectorProvider(ABC):
    platform: PlatformKey
    display_name: str
    authorize_url: str
    uses_pkce: bool = False

    def __init__(
        self,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self._transport = transport
        self._config = config

    @property
    def settings(self) -> Settings:
        return self._config or app_settings

    @property
    @abstractmethod
    def client_id(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def client_secret(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def scope(self) -> str:
        raise NotImplementedError

    @property
    def is_configured(self) -> bool:
        return bool((self.client_id or "").strip() and (self.client_secret or "").strip())

    def require_credentials(self) -> None:
        if not self.is_configured:
            logger.error("%s OAuth credentials missing", self.display_name)
            raise AuthError(f"{self.display_name} OAuth credentials not configured")

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.OAUTH_HTTP_TIMEOUT_SECONDS,
            transport=self._transport,
            headers={"User-Agent": self.settings.OAUTH_USER_AGENT},
        )

    def authorization_params(
        self,
        state: str,
        redirect_uri: str,
        code_challenge: Optional[str] = None,
    ) -> Dict[str, str]:
        return {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }

    def encode_query(self, params: Dict[str, str]) -> str:
        return urlencode(params)

    def build_auth_url(self, state: str, redirect_uri: str, code_challenge: Optional[str] = None) -> str:
        self.require_credentials()
        params = self.authorization_params(state, normalize_url(redirect_uri), code_challenge)
        return f"{self.authorize_url}?{self.encode_query(params)}"

    @abstractmethod
    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenResult:
        raise NotImplementedError

    @abstractmethod
    async def fetch_profile(self, access_token: str) -> ProviderUserData:
        raise NotImplementedError

    async def refresh_tokens(self, *, access_token: str, refresh_token: str) -> TokenResult:
        raise AuthError(f"Token refresh is not supported for {self.platform}")

    # Helpers shared by the concrete adapters.

    def unavailable(self, exc: Exception) -> ProviderUnavailable:
        logger.warning("%s request failed: %s", self.display_name, exc)
        return ProviderUnavailable(
            f"{self.display_name} is temporarily unavailable. Please try again.",
            detail=str(exc),
        )

    def token_error(self, response: httpx.Response) -> ProviderAuthError:
        body = response.text
        logger.error(
            "%s token exchange failed status=%s body=%s",
            self.display_name,
            response.status_code,
            body,
        )
        return ProviderAuthError(f"{self.display_name} authentication failed", detail=body)

    def parse_token_response(self, response: httpx.Response) -> TokenResult:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderAuthError(
                f"{self.display_name} authentication failed",
                detail=response.text,
            ) from exc
        tokens = TokenResult.from_payload(payload if isinstance(payload, dict) else {})
        if not tokens.access_token:
            logger.error("%s token response did not include an access token", self.display_name)
            raise ProviderAuthError(
                f"Invalid {self.display_name} token response",
                detail=response.text,
            )
        logger.info(
            "%s token exchange successful has_refresh_token=%s expires_in=%s",
            self.display_name,
            bool(tokens.refresh_token),
            tokens.expires_in,
        )
        return tokens

    async def get_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        failure_message: str = "Failed to retrieve user information",
    ) -> Dict[str, Any]:
        try:
            response = await client.get(url, params=params, headers=headers)
        except httpx.TransportError as exc:
            raise self.unavailable(exc) from exc

        if not response.is_success:
            logger.error(
                "%s profile request failed status=%s body=%s",
                self.display_name,
                response.status_code,
                response.text,
            )
            raise ProviderAuthError(failure_message, detail=response.text)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderAuthError(failure_message, detail=response.text) from exc
        return payload if isinstance(payload, dict) else {}
