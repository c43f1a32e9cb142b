"""Error taxonomy for the authorization flow.

Every error carries a machine-readable `error` code, the HTTP status it maps to,
a human message and a hint telling the caller how to recover. Endpoints and the
bearer middleware convert them to JSON with `to_dict()`; nothing else about the
exception reaches the caller.
"""

from typing import Optional

REAUTHORIZE_HINT = "Visit /oauth/authorize to get a new access token"


class OAuthError(Exception):
    """Base class for errors surfaced to OAuth callers."""

    error = "server_error"
    status_code = 500
    hint: Optional[str] = None

    def __init__(self, message: str, hint: str = None):
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint

    def to_dict(self) -> dict:
        body = {"error": self.error, "message": self.message}
        if self.hint:
            body["hint"] = self.hint
        return body


class ConfigurationError(OAuthError):
    """Upstream OAuth credentials are missing; fatal to the authorize flow."""

    error = "server_error"
    status_code = 500


class CsrfError(OAuthError):
    """Unknown, expired or already consumed `state`."""

    error = "invalid_request"
    status_code = 400
    hint = "Start the authorization again at /oauth/authorize"


class GrantError(OAuthError):
    """Invalid, expired or reused authorization code, or a verifier mismatch.

    The description is fixed so callers cannot tell the failure modes apart.
    """

    error = "invalid_grant"
    status_code = 400
    description = "The authorization code is invalid, expired, or has already been used"

    def __init__(self):
        super().__init__(self.description)

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class AuthExchangeError(OAuthError):
    """A token call against the upstream provider failed."""

    error = "upstream_error"
    status_code = 502
    hint = REAUTHORIZE_HINT
    permanent = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @classmethod
    def from_status(cls, status: Optional[int], message: str) -> "AuthExchangeError":
        """Pick the permanent or transient subclass for an upstream status.

        4xx means the credentials were rejected; no status (network failure,
        timeout) or 5xx means the provider may recover.
        """
        if status is not None and 400 <= status < 500:
            return PermanentAuthExchangeError(message, status)
        return TransientAuthExchangeError(message, status)


class PermanentAuthExchangeError(AuthExchangeError):
    """Upstream rejected the grant (revoked or invalid); never retried."""

    permanent = True


class TransientAuthExchangeError(AuthExchangeError):
    """Network failure, timeout or upstream 5xx; eligible for retry."""

    permanent = False


class SessionExpiredError(OAuthError):
    """The locally issued token is past its TTL or its session is gone."""

    error = "unauthorized"
    status_code = 401
    hint = REAUTHORIZE_HINT
