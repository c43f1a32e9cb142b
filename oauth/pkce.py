"""PKCE (RFC 7636) verifier/challenge pairs and CSRF state tokens."""

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass

CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PKCEPair:
    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD


def compute_challenge(verifier: str) -> str:
    """Unpadded base64url of SHA-256(verifier)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_challenge(verifier: str, challenge: str) -> bool:
    """Constant-time check that `verifier` hashes to `challenge`."""
    if not verifier or not challenge:
        return False
    try:
        computed = compute_challenge(verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed, challenge)


def generate_pkce() -> PKCEPair:
    # 32 random bytes encode to exactly 43 unpadded base64url characters
    verifier = secrets.token_urlsafe(32)
    return PKCEPair(verifier=verifier, challenge=compute_challenge(verifier))


def generate_state() -> str:
    return secrets.token_urlsafe(32)
