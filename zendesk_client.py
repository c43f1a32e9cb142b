"""Authenticated client for the Zendesk REST API.

One instance is kept per session by `oauth.context.DownstreamClientPool`;
its credentials are swapped in place when the session's upstream token is
refreshed, so handlers holding a reference always use the live token.
"""

import logging
import time
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class ZendeskAuthError(Exception):
    """No usable access token is set on the client."""


class ZendeskAPIError(Exception):
    def __init__(self, message: str, status: int = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class ZendeskClient:
    def __init__(self, subdomain: str, timeout: float = 30.0, transport: httpx.AsyncBaseTransport = None):
        self.subdomain = subdomain
        self.timeout = timeout
        self._transport = transport
        self.access_token: Optional[str] = None
        self.token_expiry: Optional[float] = None

    @property
    def base_url(self) -> str:
        return f"https://{self.subdomain}.zendesk.com/api/v2"

    def set_access_token(self, access_token: str, expiry: float = None) -> None:
        self.access_token = access_token
        self.token_expiry = expiry

    def clear_access_token(self) -> None:
        self.access_token = None
        self.token_expiry = None

    def is_token_expired(self, now: float = None) -> bool:
        if not self.access_token:
            return True
        if self.token_expiry is None:
            return False
        now = time.time() if now is None else now
        return now >= self.token_expiry

    def auth_header(self) -> str:
        if self.is_token_expired():
            raise ZendeskAuthError("No valid access token. Please re-authorize via /oauth/authorize")
        return f"Bearer {self.access_token}"

    async def request(self, method: str, endpoint: str, params: dict = None, json: dict = None) -> Any:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {
            "Authorization": self.auth_header(),
            "Accept": "application/json",
        }

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            response = await client.request(method, url, params=params, json=json, headers=headers)

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            logger.warning(f"[ZENDESK] {method} {endpoint} failed: {response.status_code}")
            raise ZendeskAPIError(
                f"Zendesk API error: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
                body=body,
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def get_current_user(self) -> dict:
        data = await self.request("GET", "/users/me.json")
        return data.get("user", {}) if data else {}

    async def test_connection(self) -> bool:
        try:
            user = await self.get_current_user()
        except (ZendeskAPIError, ZendeskAuthError, httpx.HTTPError) as e:
            logger.warning(f"[ZENDESK] Connection test failed: {e}")
            return False
        return bool(user.get("id"))
