"""OAuth 2.0 and identity document shapes for AT Protocol authorization.

Plain pydantic records for everything read from, or sent to, the network:
discovery metadata, DID documents, PAR/token responses and the client
metadata document. Validation failures on these shapes are reported as
metadata shape mismatches by the callers that parse them.
"""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class AuthorizationServerMetadata(BaseModel):
    """Authorization server metadata (RFC 8414).

    Fetched from `/.well-known/oauth-authorization-server` for every
    resolution and never cached across users.
    """

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    pushed_authorization_request_endpoint: str
    response_types_supported: List[str] = Field(default_factory=list)
    grant_types_supported: List[str] = Field(default_factory=list)
    code_challenge_methods_supported: List[str] = Field(default_factory=list)
    token_endpoint_auth_methods_supported: List[str] = Field(default_factory=list)
    scopes_supported: List[str] = Field(default_factory=list)
    dpop_signing_alg_values_supported: List[str] = Field(default_factory=list)
    authorization_response_iss_parameter_supported: bool = False
    require_pushed_authorization_requests: bool = False
    client_id_metadata_document_supported: bool = False
    revocation_endpoint: Optional[str] = None


class ProtectedResourceMetadata(BaseModel):
    """Protected resource (PDS) metadata from `/.well-known/oauth-protected-resource`."""

    resource: Optional[str] = None
    authorization_servers: List[str] = Field(default_factory=list)


class DidService(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    type: str = ""
    service_endpoint: str = Field(alias="serviceEndpoint")


class DidDocument(BaseModel):
    """DID document, reduced to the fields needed for PDS and handle discovery."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    also_known_as: List[str] = Field(default_factory=list, alias="alsoKnownAs")
    service: List[DidService] = Field(default_factory=list)

    def pds_endpoint(self) -> Optional[str]:
        pds = next(
            filter(
                lambda s: s.id.endswith("#atproto_pds")
                or s.type == "AtprotoPersonalDataServer",
                self.service,
            ),
            None,
        )
        if pds is None:
            return None
        return pds.service_endpoint

    def handle(self) -> Optional[str]:
        handle = next(
            filter(lambda aka: aka.lower().startswith("at://"), self.also_known_as),
            None,
        )
        if handle is None:
            return None
        return handle[len("at://") :]


class PushedAuthorizationResponse(BaseModel):
    request_uri: str
    expires_in: int = 60


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "DPoP"
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    sub: Optional[str] = None


class OAuthErrorResponse(BaseModel):
    error: str = ""
    error_description: Optional[str] = None


class OAuthClientMetadata(BaseModel):
    """
    OAuth 2.0 Client Metadata for AT Protocol integration.

    Served at the `client_id` URL so that authorization servers can fetch and
    validate this public client.
    """

    client_id: str
    application_type: str = "web"
    client_name: Optional[str] = None
    client_uri: Optional[str] = None
    dpop_bound_access_tokens: bool = True
    grant_types: List[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    redirect_uris: List[str] = Field(default_factory=list)
    response_types: List[str] = Field(default_factory=lambda: ["code"])
    scope: str = "atproto transition:generic"
    token_endpoint_auth_method: str = "none"
