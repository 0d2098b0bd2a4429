"""
JWT and DPoP utilities for AT Protocol authentication.

Provides helper functions for creating DPoP (Demonstrating Proof of Possession) JWTs
as specified in RFC 9449, and for storing the per-session DPoP key.
"""

import base64
import hashlib
import json
import secrets
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from cryptography.fernet import Fernet
from jwcrypto import jwt, jwk
from ulid import ULID


def generate_dpop_key() -> Tuple[jwk.JWK, Dict[str, Any]]:
    """Generate a new DPoP key pair for token binding.

    Creates an ECDSA P-256 key pair suitable for DPoP JWT signing with a unique
    key identifier.

    Returns:
        Tuple[jwk.JWK, Dict[str, Any]]: A tuple containing:
            - dpop_key: The complete JWK including private key for signing
            - public_key_dict: The public key portion as a dictionary for JWT headers
    """
    dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    public_key_dict = dpop_key.export_public(as_dict=True)
    return dpop_key, public_key_dict


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key."""
    return {
        "typ": "dpop+jwt",
        "alg": "ES256",
        "jwk": public_key_dict,
    }


def access_token_hash(access_token: str) -> str:
    """Compute the ``ath`` claim: unpadded base64url SHA-256 of the access token."""
    hashed = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(hashed).decode("ascii").rstrip("=")


def normalize_htu(url: str) -> str:
    """Strip query and fragment, which RFC 9449 excludes from ``htu``."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Args:
        http_method: HTTP method (e.g., "POST", "GET")
        http_uri: Target HTTP URI for the request
        issued_at: Token issuance time (defaults to current UTC time)
        nonce: Server-issued nonce, echoed back when present
        access_token: Access token the proof accompanies; adds ``ath`` for
            resource requests. Token endpoint requests leave this unset.

    Returns:
        Dict[str, Any]: DPoP JWT claims ready for use with jwcrypto
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims: Dict[str, Any] = {
        "jti": secrets.token_urlsafe(16),
        "htm": http_method.upper(),
        "htu": normalize_htu(http_uri),
        "iat": int(issued_at.timestamp()),
    }

    if nonce:
        claims["nonce"] = nonce

    if access_token:
        claims["ath"] = access_token_hash(access_token)

    return claims


def create_dpop_proof(
    dpop_key: jwk.JWK,
    public_key_dict: Optional[Dict[str, Any]],
    http_method: str,
    http_uri: str,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
    issued_at: Optional[datetime] = None,
) -> str:
    """Create a complete DPoP proof for one HTTP request.

    Every call produces a fresh ``jti``; proofs must never be reused.

    Usage:
        ```python
        dpop_key, public_key = generate_dpop_key()
        headers["DPoP"] = create_dpop_proof(
            dpop_key, public_key, "POST", "https://auth.example.com/token"
        )
        ```
    """
    if public_key_dict is None:
        public_key_dict = dpop_key.export_public(as_dict=True)

    header = create_dpop_header(public_key_dict)
    claims = create_dpop_claims(
        http_method,
        http_uri,
        issued_at=issued_at,
        nonce=nonce,
        access_token=access_token,
    )

    dpop_jwt = jwt.JWT(header=header, claims=claims)
    dpop_jwt.make_signed_token(dpop_key)
    return dpop_jwt.serialize()


def export_dpop_key(dpop_key: jwk.JWK, encryption_key: Optional[Fernet] = None) -> str:
    """Serialize the private DPoP key, encrypting it when a Fernet key is given."""
    serialized = json.dumps(dpop_key.export(private_key=True, as_dict=True))
    if encryption_key is None:
        return serialized
    return encryption_key.encrypt(serialized.encode("utf-8")).decode("ascii")


def import_dpop_key(value: str, encryption_key: Optional[Fernet] = None) -> jwk.JWK:
    """Inverse of :func:`export_dpop_key`."""
    if encryption_key is not None:
        value = encryption_key.decrypt(value.encode("ascii")).decode("utf-8")
    return jwk.JWK(**json.loads(value))
