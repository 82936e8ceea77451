"""
API Session - credentials and authenticated calls for outgoing API requests.

The session owns:
1. The API base URL and OAuth client credentials
2. An httpx.AsyncClient used for every outgoing request
3. A cached access token from the client-credentials grant
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import urljoin

import httpx
from pydantic import ValidationError

from models.bridge_models import AccessToken

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class ApiSessionError(Exception):
    """Raised when a token cannot be obtained or an API call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApiSession:
    """Resolves credentials and performs authenticated API calls."""

    TOKEN_PATH = "api/oauth/token"
    REVOKE_PATH = "api/oauth/revoke"
    # Refresh tokens this long before they expire
    EXPIRY_SKEW_SECONDS = 60

    def __init__(
        self,
        api_base_url: str,
        api_client_id: str | None = None,
        api_client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        user_agent: str | None = None,
    ) -> None:
        self.api_base_url = api_base_url if api_base_url.endswith("/") else api_base_url + "/"
        self.api_client_id = api_client_id
        self.api_client_secret = api_client_secret

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        self._headers = {"Accept": "application/json"}
        if user_agent:
            self._headers["User-Agent"] = user_agent

        self._token: AccessToken | None = None
        self._token_lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_client_id and self.api_client_secret)

    @property
    def has_token(self) -> bool:
        return self._token is not None and not self._token.is_expired()

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._client

    def url(self, path: str) -> str:
        return urljoin(self.api_base_url, path.lstrip("/"))

    async def get_access_token(self) -> AccessToken:
        """Return a valid access token, requesting a new one when needed."""
        if not self.has_credentials:
            raise ApiSessionError("API client credentials are not configured")

        async with self._token_lock:
            if self._token and not self._token.is_expired(self.EXPIRY_SKEW_SECONDS):
                return self._token

            logger.debug(f"Requesting access token from {self.url(self.TOKEN_PATH)}")
            try:
                response = await self._client.post(
                    self.url(self.TOKEN_PATH),
                    data={"grant_type": "client_credentials"},
                    auth=(self.api_client_id, self.api_client_secret),
                    headers=self._headers,
                )
            except httpx.HTTPError as e:
                raise ApiSessionError(f"Token request failed: {e}") from e

            if response.status_code >= 400:
                raise ApiSessionError(
                    f"Token request rejected with status {response.status_code}",
                    status_code=response.status_code,
                )

            try:
                self._token = AccessToken.model_validate(response.json())
            except (ValueError, ValidationError) as e:
                raise ApiSessionError(f"Invalid token response: {e}") from e

            logger.info(f"Obtained API access token (expires in {self._token.expires_in}s)")
            return self._token

    async def authorization_headers(self) -> dict[str, str]:
        token = await self.get_access_token()
        return {"Authorization": f"{token.token_type} {token.access_token}"}

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request to the API, authenticated when credentials exist."""
        headers = dict(self._headers)
        if self.has_credentials:
            headers.update(await self.authorization_headers())
        headers.update(kwargs.pop("headers", None) or {})

        try:
            response = await self._client.request(method, self.url(path), headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise ApiSessionError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise ApiSessionError(
                f"{method} {path} returned status {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def close(self) -> None:
        """Revoke the cached token and release the HTTP client."""
        token, self._token = self._token, None
        if token is not None and self.has_credentials:
            try:
                await self._client.post(
                    self.url(self.REVOKE_PATH),
                    data={"token": token.access_token, "token_type_hint": "access_token"},
                    auth=(self.api_client_id, self.api_client_secret),
                    headers=self._headers,
                )
            except httpx.HTTPError as e:
                logger.warning(f"Failed to revoke API access token: {e}")

        if self._owns_client:
            await self._client.aclose()
