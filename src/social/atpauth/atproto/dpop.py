"""
DPoP (Demonstrating Proof of Possession, RFC 9449) proof generation.

A `DpopProofGenerator` owns one ECDSA P-256 key for the lifetime of a single
OAuth session. It signs proof JWTs bound to an HTTP method and URL (and,
optionally, a server nonce and an access token hash) and exposes the RFC 7638
thumbprint of its public key.

The private key never leaves the generator unless the caller explicitly asks
for it with `export_private_key()`. The exported PEM is unencrypted; encrypting
it at rest is the caller's responsibility.
"""

import hashlib
import secrets
from datetime import datetime, timezone
from types import TracebackType
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse
from aiohttp.typedefs import StrOrURL
from jwcrypto import jwk, jwt
from ulid import ULID

from social.atpauth.atproto.pkce import base64url

DPOP_ALGORITHM = "ES256"
DPOP_CURVE = "P-256"


class DpopKeyDisposedError(RuntimeError):
    """Raised when a disposed DPoP key is used."""


class DpopKeyFormatError(ValueError):
    """Raised when exported key material cannot be loaded as a P-256 key."""


def htu_for(url: StrOrURL) -> str:
    """The DPoP `htu` value: the request URL without query and fragment."""
    parsed = urlparse(str(url))
    return urlunparse(parsed._replace(query="", fragment=""))


def access_token_hash(access_token: str) -> str:
    """Compute the `ath` claim, `BASE64URL(SHA256(access_token))`."""
    return base64url(hashlib.sha256(access_token.encode("ascii")).digest())


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key.

    Args:
        public_key_dict: Public key members of the DPoP key

    Returns:
        Dict[str, Any]: DPoP JWT header ready for use with jwcrypto
    """
    return {
        "typ": "dpop+jwt",
        "alg": DPOP_ALGORITHM,
        "jwk": public_key_dict,
    }


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Constructs the claims of a DPoP JWT, binding it to a specific HTTP request
    method and URI. Every call produces a fresh `jti`, so proofs are single-use.

    Args:
        http_method: HTTP method (e.g., "POST", "GET"), uppercased in the claim
        http_uri: Target HTTP URI for the request
        issued_at: Token issuance time (defaults to current UTC time)
        nonce: Server-provided DPoP nonce, omitted when not yet known
        access_token: Access token to bind via the `ath` claim

    Returns:
        Dict[str, Any]: DPoP JWT claims ready for use with jwcrypto
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims: Dict[str, Any] = {
        "jti": secrets.token_urlsafe(32),
        "htm": http_method.upper(),
        "htu": http_uri,
        "iat": int(issued_at.timestamp()),
    }

    if nonce is not None:
        claims["nonce"] = nonce

    if access_token is not None:
        claims["ath"] = access_token_hash(access_token)

    return claims


class DpopProofGenerator:
    """
    Owner of one DPoP key pair and signer of DPoP proofs.

    Instances are created fresh for every authorization attempt and are never
    shared between sessions. `dispose()` releases the key; every later
    operation raises `DpopKeyDisposedError`. The generator is also a context
    manager that disposes on exit.
    """

    def __init__(self, key: Optional[jwk.JWK] = None) -> None:
        if key is None:
            key = jwk.JWK.generate(
                kty="EC", crv=DPOP_CURVE, kid=str(ULID()), alg=DPOP_ALGORITHM
            )
        self._key: Optional[jwk.JWK] = key
        self._public_key_dict: Dict[str, Any] = key.export_public(as_dict=True)
        self._thumbprint: str = key.thumbprint()

    @staticmethod
    def from_private_key(private_key_pem: bytes) -> "DpopProofGenerator":
        """
        Restore a generator from key material produced by `export_private_key()`.

        Raises:
            DpopKeyFormatError: If the bytes are not a P-256 private key
        """
        try:
            loaded = jwk.JWK.from_pem(private_key_pem)
            key_dict = loaded.export(private_key=True, as_dict=True)
        except Exception as e:
            raise DpopKeyFormatError("Unable to load DPoP private key") from e

        if key_dict.get("kty") != "EC" or key_dict.get("crv") != DPOP_CURVE:
            raise DpopKeyFormatError("DPoP private key must be an EC P-256 key")

        key_dict["alg"] = DPOP_ALGORITHM
        key_dict["kid"] = loaded.thumbprint()
        return DpopProofGenerator(jwk.JWK(**key_dict))

    @property
    def disposed(self) -> bool:
        return self._key is None

    @property
    def thumbprint(self) -> str:
        """RFC 7638 SHA-256 thumbprint of the public key, base64url encoded."""
        self._ensure_key()
        return self._thumbprint

    @property
    def public_jwk(self) -> Dict[str, Any]:
        self._ensure_key()
        return dict(self._public_key_dict)

    def generate_proof(
        self, http_method: str, url: str, nonce: Optional[str] = None
    ) -> str:
        """Sign a DPoP proof for an authorization server request."""
        return self._sign(create_dpop_claims(http_method, url, nonce=nonce))

    def generate_proof_with_access_token(
        self,
        http_method: str,
        url: str,
        nonce: Optional[str],
        access_token: str,
    ) -> str:
        """Sign a DPoP proof for a resource server request carrying `ath`."""
        return self._sign(
            create_dpop_claims(http_method, url, nonce=nonce, access_token=access_token)
        )

    def export_private_key(self) -> bytes:
        """Export the private key as an unencrypted PKCS#8 PEM."""
        key = self._ensure_key()
        return key.export_to_pem(private_key=True, password=None)

    def dispose(self) -> None:
        self._key = None

    def _ensure_key(self) -> jwk.JWK:
        if self._key is None:
            raise DpopKeyDisposedError("DPoP key has been disposed")
        return self._key

    def _sign(self, claims: Dict[str, Any]) -> str:
        key = self._ensure_key()
        dpop_jwt = jwt.JWT(
            header=create_dpop_header(self._public_key_dict), claims=claims
        )
        dpop_jwt.make_signed_token(key)
        return dpop_jwt.serialize()

    def __enter__(self) -> "DpopProofGenerator":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.dispose()
