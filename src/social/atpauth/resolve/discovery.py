import logging
from typing import NamedTuple, Optional
from aiohttp import ClientSession, ClientTimeout

from social.atpauth.atproto.errors import OAuthException
from social.atpauth.atproto.pds import (
    normalize_url,
    oauth_authorization_server,
    oauth_protected_resource,
)
from social.atpauth.model.oauth import AuthorizationServerMetadata, DidDocument
from social.atpauth.resolve.handle import (
    SubjectType,
    parse_input,
    resolve_did_document,
    resolve_handle,
)

logger = logging.getLogger(__name__)


class ResolvedIdentity(NamedTuple):
    pds_url: str
    metadata: AuthorizationServerMetadata
    did: str


class AuthorizationServerDiscovery:
    """
    Resolve an account identifier to its PDS and authorization server.

    The chain is handle -> DID -> DID document -> PDS -> protected resource
    metadata -> authorization server metadata. Nothing is cached: every call
    re-fetches, so two users on the same PDS never share discovered state.
    """

    def __init__(
        self,
        http_session: ClientSession,
        plc_hostname: str = "plc.directory",
        timeout: Optional[ClientTimeout] = None,
    ) -> None:
        self.http_session = http_session
        self.plc_hostname = plc_hostname
        self.timeout = timeout

    async def resolve_handle_to_did(self, handle: str) -> str:
        return await resolve_handle(self.http_session, handle, self.timeout)

    async def fetch_did_document(self, did: str) -> DidDocument:
        logger.debug("Fetching DID document for %s", did)
        return await resolve_did_document(
            self.http_session, self.plc_hostname, did, self.timeout
        )

    async def resolve_pds_from_did(self, did: str) -> str:
        document = await self.fetch_did_document(did)
        pds = document.pds_endpoint()
        if pds is None:
            raise OAuthException.discovery_error(
                f"DID document for '{did}' does not contain an atproto PDS service"
            )
        return pds

    async def resolve_authorization_server(
        self, pds_url: str
    ) -> AuthorizationServerMetadata:
        pds_url = normalize_url(pds_url)
        resource = await oauth_protected_resource(
            self.http_session, pds_url, self.timeout
        )
        if len(resource.authorization_servers) == 0:
            raise OAuthException.discovery_error(
                f"PDS '{pds_url}' does not list any authorization servers"
            )

        authorization_server = resource.authorization_servers[0]
        logger.debug(
            "PDS %s points to authorization server %s", pds_url, authorization_server
        )
        return await oauth_authorization_server(
            self.http_session, authorization_server, self.timeout
        )

    async def resolve_from_identifier(self, identifier: str) -> ResolvedIdentity:
        logger.info("Resolving identity %s", identifier)

        parsed = parse_input(identifier)
        if parsed is None:
            raise OAuthException.invalid_handle(identifier, "cannot be empty")

        if parsed.subject_type == SubjectType.hostname:
            did = await self.resolve_handle_to_did(parsed.subject)
            logger.debug("Resolved handle %s to %s", parsed.subject, did)
        else:
            did = parsed.subject

        pds_url = await self.resolve_pds_from_did(did)
        logger.debug("Resolved %s to PDS %s", did, pds_url)

        metadata = await self.resolve_authorization_server(pds_url)
        return ResolvedIdentity(pds_url=normalize_url(pds_url), metadata=metadata, did=did)
