"""Proof Key for Code Exchange (RFC 7636) helpers."""

import base64
import hashlib
import secrets

from pydantic import BaseModel


class PkcePair(BaseModel):
    code_verifier: str
    code_challenge: str
    code_challenge_method: str = "S256"


def s256_challenge(code_verifier: str) -> str:
    """Return the unpadded base64url SHA-256 digest of a verifier."""
    hashed = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(hashed).decode("ascii").rstrip("=")


def generate_pkce() -> PkcePair:
    """
    Generate a PKCE verifier and its S256 challenge.

    64 random bytes encode to an 86 character URL-safe verifier, inside the
    43-128 character range RFC 7636 section 4.1 requires.
    """
    code_verifier = secrets.token_urlsafe(64)
    return PkcePair(
        code_verifier=code_verifier,
        code_challenge=s256_challenge(code_verifier),
    )
