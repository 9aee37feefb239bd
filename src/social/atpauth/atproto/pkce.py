"""PKCE (RFC 7636) verifier/challenge and CSRF state generation.

Only the S256 challenge method is produced. Generated values are single-use
secrets and must never be logged.
"""

import base64
import hashlib
import secrets
from typing import Tuple

# 32 random bytes encode to 43 base64url characters, the RFC 7636 minimum.
ENTROPY_BYTES = 32

CODE_CHALLENGE_METHOD = "S256"


def base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(ENTROPY_BYTES)


def compute_code_challenge(code_verifier: str) -> str:
    """Compute the S256 challenge, `BASE64URL(SHA256(verifier))`."""
    return base64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_state() -> str:
    return secrets.token_urlsafe(ENTROPY_BYTES)


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate PKCE (Proof Key for Code Exchange) verifier and challenge.

    Returns:
        Tuple[str, str]: A tuple containing (pkce_verifier, pkce_challenge)
        - pkce_verifier: The secret verifier sent in the token request
        - pkce_challenge: The S256 challenge sent in the authorization request
    """
    pkce_verifier = generate_code_verifier()
    return (pkce_verifier, compute_code_challenge(pkce_verifier))
