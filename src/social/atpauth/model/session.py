"""Authorization flow records that own a live DPoP key.

`PendingAuthorization` lives in the pending store between PAR and callback.
`OAuthSessionResult` is the finished session handed to the caller; it takes
over ownership of the DPoP key and disposes it on teardown. `TokenData` is the
plaintext, serializable bundle used at the persistence boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import TracebackType
from typing import Dict, Optional
from pydantic import BaseModel

from social.atpauth.atproto.dpop import DpopProofGenerator, htu_for


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(repr=False, eq=False)
class PendingAuthorization:
    """
    In-flight authorization between the pushed authorization request and the callback.

    Attributes:
        state: CSRF state token, the store key
        code_verifier: PKCE verifier (secret)
        expected_did: DID resolved at discovery, None when started from a server URL
        issuer: Authorization server issuer captured at discovery
        token_endpoint: Token endpoint of that issuer
        pds_url: Resource server (PDS) URL
        dpop: DPoP key owned by this entry until completion
        redirect_uri: Redirect URI sent in the PAR
        client_id: Client identifier sent in the PAR
        auth_server_nonce: Last DPoP nonce issued by the authorization server
        created_at: Creation time used for the expiry window
    """

    state: str
    code_verifier: str
    expected_did: Optional[str]
    issuer: str
    token_endpoint: str
    pds_url: str
    dpop: DpopProofGenerator
    redirect_uri: str
    client_id: str
    auth_server_nonce: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)


class PendingAuthorizationState(BaseModel):
    """Public view of a pending authorization, without key material.

    Contains the PKCE code verifier, which is a secret.
    """

    state: str
    code_verifier: str
    expected_did: Optional[str] = None
    issuer: str
    token_endpoint: str
    pds_url: str
    dpop_key_id: str
    created_at: datetime
    redirect_uri: str
    client_id: str

    @staticmethod
    def from_pending(pending: PendingAuthorization) -> "PendingAuthorizationState":
        return PendingAuthorizationState(
            state=pending.state,
            code_verifier=pending.code_verifier,
            expected_did=pending.expected_did,
            issuer=pending.issuer,
            token_endpoint=pending.token_endpoint,
            pds_url=pending.pds_url,
            dpop_key_id=pending.dpop.thumbprint,
            created_at=pending.created_at,
            redirect_uri=pending.redirect_uri,
            client_id=pending.client_id,
        )


class TokenData(BaseModel):
    """
    Serializable session bundle for storage keyed by DID.

    Contains secrets (tokens and the unencrypted DPoP private key). Stores
    must encrypt it at rest.
    """

    did: str
    handle: str
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "DPoP"
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    pds_url: str
    issuer: str
    token_endpoint: str
    dpop_private_key: str
    auth_server_nonce: Optional[str] = None
    resource_server_nonce: Optional[str] = None
    token_obtained_at: datetime


@dataclass(repr=False, eq=False)
class OAuthSessionResult:
    """
    Result of a completed authorization.

    Owns the DPoP key bound to its tokens. Refresh mutates the tokens and the
    authorization server nonce in place; the API-calling layer updates the
    resource server nonce the same way.
    """

    did: str
    handle: str
    access_token: str
    token_type: str
    pds_url: str
    issuer: str
    token_endpoint: str
    dpop: DpopProofGenerator
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    auth_server_nonce: Optional[str] = None
    resource_server_nonce: Optional[str] = None
    token_obtained_at: datetime = field(default_factory=utc_now)

    @property
    def dpop_key_id(self) -> str:
        return self.dpop.thumbprint

    def authorization_headers(self, http_method: str, url: str) -> Dict[str, str]:
        """Headers for a resource server request: `Authorization: DPoP` plus a fresh proof."""
        return {
            "Authorization": f"DPoP {self.access_token}",
            "DPoP": self.dpop.generate_proof_with_access_token(
                http_method,
                htu_for(url),
                self.resource_server_nonce,
                self.access_token,
            ),
        }

    def update_resource_server_nonce(self, nonce: str) -> None:
        self.resource_server_nonce = nonce

    def update_auth_server_nonce(self, nonce: str) -> None:
        self.auth_server_nonce = nonce

    def to_token_data(self) -> TokenData:
        return TokenData(
            did=self.did,
            handle=self.handle,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            token_type=self.token_type,
            expires_in=self.expires_in,
            scope=self.scope,
            pds_url=self.pds_url,
            issuer=self.issuer,
            token_endpoint=self.token_endpoint,
            dpop_private_key=self.dpop.export_private_key().decode("ascii"),
            auth_server_nonce=self.auth_server_nonce,
            resource_server_nonce=self.resource_server_nonce,
            token_obtained_at=self.token_obtained_at,
        )

    @staticmethod
    def from_token_data(data: TokenData) -> "OAuthSessionResult":
        return OAuthSessionResult(
            did=data.did,
            handle=data.handle,
            access_token=data.access_token,
            refresh_token=data.refresh_token,
            token_type=data.token_type,
            expires_in=data.expires_in,
            scope=data.scope,
            pds_url=data.pds_url,
            issuer=data.issuer,
            token_endpoint=data.token_endpoint,
            dpop=DpopProofGenerator.from_private_key(
                data.dpop_private_key.encode("ascii")
            ),
            auth_server_nonce=data.auth_server_nonce,
            resource_server_nonce=data.resource_server_nonce,
            token_obtained_at=data.token_obtained_at,
        )

    def dispose(self) -> None:
        self.dpop.dispose()

    def __enter__(self) -> "OAuthSessionResult":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.dispose()
