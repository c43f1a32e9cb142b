"""OAuth client half: talks to Zendesk's authorization server.

Builds the authorize URL, exchanges authorization codes and refreshes tokens.
Failures raise `AuthExchangeError` subclasses carrying the upstream status so
callers can tell permanent rejections from transient outages.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx

from oauth.errors import AuthExchangeError, ConfigurationError, PermanentAuthExchangeError

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["read", "write"]
DEFAULT_EXPIRES_IN = 2 * 60 * 60  # upstream tokens without expires_in


@dataclass
class UpstreamTokens:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    scope: str = ""

    @property
    def scopes(self) -> list[str]:
        return self.scope.split()


class UpstreamExchangeClient:
    """Client for the upstream provider's `/oauth/authorizations/new` and `/oauth/tokens`."""

    def __init__(
        self,
        client_id: str = None,
        client_secret: str = None,
        subdomain: str = None,
        redirect_uri: str = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.subdomain = subdomain
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config, transport: httpx.AsyncBaseTransport = None) -> "UpstreamExchangeClient":
        return cls(
            client_id=config.oauth_client_id,
            client_secret=config.oauth_client_secret,
            subdomain=config.zendesk_subdomain,
            redirect_uri=config.oauth_redirect_uri,
            timeout=config.upstream_timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return f"https://{self.subdomain}.zendesk.com"

    def missing_settings(self) -> list[str]:
        required = {
            "ZENDESK_OAUTH_CLIENT_ID": self.client_id,
            "ZENDESK_OAUTH_CLIENT_SECRET": self.client_secret,
            "ZENDESK_SUBDOMAIN": self.subdomain,
            "ZENDESK_OAUTH_REDIRECT_URI": self.redirect_uri,
        }
        return [name for name, value in required.items() if not value]

    def validate_config(self) -> None:
        """Raise ConfigurationError naming every missing setting."""
        missing = self.missing_settings()
        if missing:
            raise ConfigurationError(
                f"OAuth not configured. Please set {', '.join(missing)}",
                hint="Configure the Zendesk OAuth client on the server",
            )

    def authorization_url(self, state: str, challenge: str, scopes: list[str] = None) -> str:
        self.validate_config()
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(scopes or DEFAULT_SCOPES),
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.base_url}/oauth/authorizations/new?{urlencode(params)}"

    async def exchange_code(self, code: str, verifier: str) -> UpstreamTokens:
        self.validate_config()
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "code_verifier": verifier,
        }, action="Token exchange")

    async def refresh(self, refresh_token: str) -> UpstreamTokens:
        self.validate_config()
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }, action="Token refresh")

    async def _token_request(self, payload: dict, action: str) -> UpstreamTokens:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/oauth/tokens",
                    json=payload,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            logger.warning(f"[OAUTH] {action} timed out: {e}")
            raise AuthExchangeError.from_status(None, f"{action} timed out")
        except httpx.HTTPError as e:
            logger.warning(f"[OAUTH] {action} network error: {e}")
            raise AuthExchangeError.from_status(None, f"{action} failed: network error")

        if response.is_error:
            detail = _error_detail(response)
            logger.warning(f"[OAUTH] {action} failed: {response.status_code} - {detail}")
            raise AuthExchangeError.from_status(
                response.status_code, f"{action} failed: {response.status_code} - {detail}"
            )

        try:
            data = response.json()
        except ValueError:
            raise PermanentAuthExchangeError(f"{action} failed: response is not JSON", response.status_code)

        return _parse_tokens(data, action, response.status_code)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(data, dict):
        return data.get("error_description") or data.get("error") or response.reason_phrase
    return response.reason_phrase


def _parse_tokens(data: dict, action: str, status: int) -> UpstreamTokens:
    if not isinstance(data, dict) or not data.get("access_token"):
        raise PermanentAuthExchangeError(f"{action} failed: missing access_token", status)
    if not isinstance(data["access_token"], str):
        raise PermanentAuthExchangeError(f"{action} failed: access_token is not a string", status)

    token_type = data.get("token_type")
    if token_type and (not isinstance(token_type, str) or token_type.lower() != "bearer"):
        raise PermanentAuthExchangeError(
            f'{action} failed: expected token_type "Bearer", got "{token_type}"', status
        )

    refresh_token = data.get("refresh_token")
    if refresh_token is not None and not isinstance(refresh_token, str):
        raise PermanentAuthExchangeError(f"{action} failed: refresh_token is not a string", status)

    scope = data.get("scope") or ""
    if not isinstance(scope, str):
        raise PermanentAuthExchangeError(f"{action} failed: scope is not a string", status)

    expires_in = data.get("expires_in")
    if not expires_in:
        expires_in = DEFAULT_EXPIRES_IN
    elif isinstance(expires_in, bool):
        raise PermanentAuthExchangeError(f"{action} failed: invalid expires_in {expires_in!r}", status)
    else:
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError, OverflowError):
            raise PermanentAuthExchangeError(f"{action} failed: invalid expires_in {expires_in!r}", status)

    return UpstreamTokens(
        access_token=data["access_token"],
        refresh_token=refresh_token,
        expires_in=expires_in,
        scope=scope,
    )
