"""Config management for zendesk-mcp-server.

Settings come from the process environment, optionally seeded from a `.env`
file in the working directory.
"""
import os
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv


DEFAULT_PORT = 3030
DEFAULT_CALLBACK_PATH = "/zendesk/oauth/callback"


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = data or {}

    def _int(self, key: str, default: int) -> int:
        value = self.data.get(key)
        if value in (None, ""):
            return default
        return int(value)

    def _bool(self, key: str, default: bool) -> bool:
        value = self.data.get(key)
        if value in (None, ""):
            return default
        return str(value).strip().lower() in ("1", "true", "yes", "on")

    @property
    def zendesk_subdomain(self) -> Optional[str]:
        return self.data.get("ZENDESK_SUBDOMAIN") or None

    @property
    def oauth_client_id(self) -> Optional[str]:
        return self.data.get("ZENDESK_OAUTH_CLIENT_ID") or None

    @property
    def oauth_client_secret(self) -> Optional[str]:
        return self.data.get("ZENDESK_OAUTH_CLIENT_SECRET") or None

    @property
    def host(self) -> str:
        return self.data.get("MCP_HOST") or "0.0.0.0"

    @property
    def port(self) -> int:
        return self._int("PORT", DEFAULT_PORT)

    @property
    def server_url(self) -> str:
        url = self.data.get("SERVER_BASE_URL") or f"http://localhost:{self.port}"
        return url.rstrip("/")

    @property
    def oauth_redirect_uri(self) -> str:
        return self.data.get("ZENDESK_OAUTH_REDIRECT_URI") or f"{self.server_url}{DEFAULT_CALLBACK_PATH}"

    @property
    def callback_path(self) -> str:
        """Path component of the upstream redirect URI, served by this app."""
        return urlparse(self.oauth_redirect_uri).path or DEFAULT_CALLBACK_PATH

    @property
    def upstream_timeout(self) -> float:
        return float(self.data.get("UPSTREAM_TIMEOUT_SECONDS") or 30)

    @property
    def refresh_buffer_seconds(self) -> int:
        return self._int("TOKEN_REFRESH_BUFFER_SECONDS", 60)

    @property
    def refresh_max_attempts(self) -> int:
        return self._int("REFRESH_MAX_ATTEMPTS", 2)

    @property
    def sweep_interval_seconds(self) -> int:
        return self._int("SESSION_SWEEP_INTERVAL_SECONDS", 3600)

    @property
    def required_scopes(self) -> list[str]:
        return (self.data.get("OAUTH_REQUIRED_SCOPES") or "").split()

    @property
    def require_pkce(self) -> bool:
        return self._bool("OAUTH_REQUIRE_PKCE", True)

    @property
    def log_level(self) -> str:
        return (self.data.get("LOG_LEVEL") or "INFO").upper()

    @property
    def log_format(self) -> str:
        return (self.data.get("LOG_FORMAT") or "plain").lower()

    def missing_oauth_settings(self) -> list[str]:
        """Names of the upstream OAuth settings that are not configured."""
        required = {
            "ZENDESK_OAUTH_CLIENT_ID": self.oauth_client_id,
            "ZENDESK_OAUTH_CLIENT_SECRET": self.oauth_client_secret,
            "ZENDESK_SUBDOMAIN": self.zendesk_subdomain,
        }
        return [name for name, value in required.items() if not value]

    def is_valid(self) -> bool:
        """Check if config has the settings the OAuth flow needs."""
        return not self.missing_oauth_settings()


def load_config(environ: dict = None) -> Config:
    """Load config from the environment (and `.env`, when present)."""
    if environ is None:
        load_dotenv()
        environ = os.environ
    return Config(dict(environ))
