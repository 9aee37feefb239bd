"""
AT Protocol OAuth Client Implementation

This module implements the authorization flow of an AT Protocol OAuth 2.0
public client: discovery of the user's authorization server, the pushed
authorization request, the authorization code exchange with its post-exchange
verification, and token refresh.

The implementation follows these OAuth 2.0 standards and specifications:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 Demonstrating Proof of Possession (DPoP) (RFC 9449)
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126)

The flow is implemented in three stages:
1. Initialization (`OAuthClient.start_authorization`): resolve the identity,
   prepare PKCE and a DPoP key, push the authorization request and remember
   it under a fresh state
2. Completion (`OAuthClient.complete_authorization`): consume the state,
   exchange the code for tokens and verify who they were issued for and by
3. Refresh (`OAuthClient.refresh_tokens`): obtain new tokens bound to the same
   DPoP key

Every DPoP POST goes through the request middleware chain, which performs the
nonce handshake with at most one resubmission.
"""

import asyncio
from datetime import timedelta
import ipaddress
import logging
import re
from typing import Any, Callable, Dict, NamedTuple, Optional, Tuple
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse
from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import ValidationError
import sentry_sdk

from social.atpauth.app.config import Settings
from social.atpauth.atproto.chain import (
    ChainMiddlewareClient,
    ChainResponse,
    DpopNonceMiddleware,
    NonceCallback,
)
from social.atpauth.atproto.dpop import DpopProofGenerator
from social.atpauth.atproto.errors import OAuthException
from social.atpauth.atproto.pds import normalize_url
from social.atpauth.atproto.pkce import (
    CODE_CHALLENGE_METHOD,
    generate_pkce_verifier,
    generate_state,
)
from social.atpauth.model.oauth import (
    AuthorizationServerMetadata,
    DidDocument,
    OAuthErrorResponse,
    PushedAuthorizationResponse,
    TokenResponse,
)
from social.atpauth.model.session import (
    OAuthSessionResult,
    PendingAuthorization,
    PendingAuthorizationState,
    TokenData,
    utc_now,
)
from social.atpauth.resolve.discovery import AuthorizationServerDiscovery
from social.atpauth.store.pending import PendingAuthorizationStore

logger = logging.getLogger(__name__)

DID_PATTERN = re.compile(r"^did:[a-z]+:[a-zA-Z0-9._:%-]+$")

ErrorFactory = Callable[[str, Optional[str], Optional[str]], OAuthException]


class AuthorizationStart(NamedTuple):
    authorization_url: str
    state: str


def validate_redirect_uri(redirect_uri: str) -> None:
    """
    Require an absolute HTTPS redirect URI, or plain HTTP on a loopback host.

    Raises:
        ValueError: when the redirect URI is not acceptable
    """
    if redirect_uri is None or len(redirect_uri.strip()) == 0:
        raise ValueError("redirect_uri is required")

    parsed = urlparse(redirect_uri)
    if len(parsed.scheme) == 0 or not parsed.hostname:
        raise ValueError("redirect_uri must be an absolute URL")

    if parsed.scheme == "https":
        return

    if parsed.scheme == "http" and is_loopback_host(parsed.hostname):
        return

    raise ValueError("redirect_uri must use HTTPS unless it targets a loopback host")


def is_loopback_host(hostname: str) -> bool:
    if hostname.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(hostname).is_loopback
    except ValueError:
        return False


def is_server_url(value: str) -> bool:
    """
    Classify an identifier as a server URL rather than a handle or DID.

    Anything with an http(s) scheme is a URL. A bare value is a URL only when it
    contains both a dot and a path separator and has no `@` or `:`, so
    `pds.example.com/` is a server while `alice.example.com` is a handle.
    """
    lowered = value.lower()
    if lowered.startswith("http://") or lowered.startswith("https://"):
        return True
    return (
        "." in value
        and "/" in value
        and "@" not in value
        and ":" not in value
        and not lowered.startswith("did:")
    )


def scope_contains_atproto(scope: Optional[str]) -> bool:
    """True when `atproto` is one of the whitespace-delimited scope tokens."""
    return scope is not None and "atproto" in scope.split()


def build_authorization_url(
    authorization_endpoint: str, client_id: str, request_uri: str
) -> str:
    parsed_authorization_endpoint = urlparse(authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update({"client_id": client_id, "request_uri": request_uri})
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return str(urlunparse(parsed_authorization_endpoint))


def _error_fields(chain_response: ChainResponse) -> Tuple[Optional[str], Optional[str]]:
    try:
        error_response = OAuthErrorResponse.model_validate(chain_response.json_body())
    except ValidationError:
        return None, None
    return error_response.error or None, error_response.error_description


class OAuthClient:
    """
    AT Protocol OAuth 2.0 client.

    One instance serves many concurrent authorizations. In-flight requests are
    held in a `PendingAuthorizationStore`; completed sessions are handed to the
    caller, who owns them (and their DPoP key) from then on.
    """

    def __init__(
        self,
        settings: Settings,
        http_session: ClientSession,
        discovery: Optional[AuthorizationServerDiscovery] = None,
        pending_store: Optional[PendingAuthorizationStore] = None,
    ) -> None:
        self.settings = settings
        self.http_session = http_session
        self.timeout = ClientTimeout(total=settings.request_timeout)
        if discovery is None:
            discovery = AuthorizationServerDiscovery(
                http_session, settings.plc_hostname, self.timeout
            )
        self.discovery = discovery
        if pending_store is None:
            pending_store = PendingAuthorizationStore(
                ttl=timedelta(seconds=settings.pending_authorization_ttl),
                max_entries=settings.max_pending_authorizations,
            )
        self.pending_store = pending_store
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("OAuthClient is closed")

    async def start_authorization(
        self,
        identifier: str,
        redirect_uri: str,
        pds_url: Optional[str] = None,
    ) -> AuthorizationStart:
        """Start an authorization and return the URL to send the user to.

        Args:
            identifier: Handle, DID, or PDS URL of the account
            redirect_uri: Callback URL registered in the client metadata
            pds_url: Known PDS for the account, skips identity resolution

        Raises:
            ValueError: for an unacceptable redirect URI
            OAuthException: on resolution or PAR failure, or a full pending store
        """
        self._ensure_open()
        validate_redirect_uri(redirect_uri)

        logger.info("Starting authorization for %s", identifier)

        expected_did: Optional[str] = None
        login_hint: Optional[str] = None

        if pds_url is not None and len(pds_url.strip()) > 0:
            resolved_pds_url = normalize_url(pds_url)
            metadata = await self.discovery.resolve_authorization_server(pds_url)
            login_hint = identifier
        elif is_server_url(identifier):
            resolved_pds_url = normalize_url(identifier)
            metadata = await self.discovery.resolve_authorization_server(identifier)
        else:
            resolved = await self.discovery.resolve_from_identifier(identifier)
            resolved_pds_url = resolved.pds_url
            metadata = resolved.metadata
            expected_did = resolved.did
            login_hint = identifier

        (code_verifier, code_challenge) = generate_pkce_verifier()
        state = generate_state()
        dpop = DpopProofGenerator()

        stored = False
        try:
            request_uri, nonce = await self._pushed_authorization_request(
                metadata, dpop, state, code_challenge, redirect_uri, login_hint
            )

            self.pending_store.add(
                PendingAuthorization(
                    state=state,
                    code_verifier=code_verifier,
                    expected_did=expected_did,
                    issuer=metadata.issuer,
                    token_endpoint=metadata.token_endpoint,
                    pds_url=resolved_pds_url,
                    dpop=dpop,
                    redirect_uri=redirect_uri,
                    client_id=self.settings.client_id,
                    auth_server_nonce=nonce,
                )
            )
            stored = True
        finally:
            if not stored:
                dpop.dispose()

        logger.debug("Pending authorization %s for issuer %s", state, metadata.issuer)

        return AuthorizationStart(
            authorization_url=build_authorization_url(
                metadata.authorization_endpoint, self.settings.client_id, request_uri
            ),
            state=state,
        )

    async def complete_authorization(
        self, code: str, state: str, issuer: Optional[str]
    ) -> OAuthSessionResult:
        """
        Complete an authorization from the callback parameters.

        The pending entry is consumed before anything else, so a state can be
        completed at most once. On any failure its DPoP key is disposed.

        Raises:
            OAuthException: see the verification steps below
        """
        self._ensure_open()

        pending = self.pending_store.take(state)
        if pending is None:
            raise OAuthException.invalid_state()

        completed = False
        try:
            if issuer is None or pending.issuer.lower() != issuer.lower():
                raise OAuthException.issuer_mismatch(pending.issuer, issuer or "")

            if self.pending_store.is_expired(pending):
                raise OAuthException.state_expired()

            def record_nonce(nonce: str) -> None:
                pending.auth_server_nonce = nonce

            token_response = await self._token_request(
                pending.token_endpoint,
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": pending.redirect_uri,
                    "client_id": pending.client_id,
                    "code_verifier": pending.code_verifier,
                },
                pending.dpop,
                pending.auth_server_nonce,
                record_nonce,
            )

            sub = token_response.sub
            if sub is None or len(sub) == 0:
                raise OAuthException.missing_sub()
            if DID_PATTERN.match(sub) is None:
                raise OAuthException.invalid_sub(sub)
            if pending.expected_did is not None and pending.expected_did != sub:
                raise OAuthException.did_mismatch(pending.expected_did, sub)
            if not scope_contains_atproto(token_response.scope):
                raise OAuthException.invalid_scope(token_response.scope)

            document: Optional[DidDocument] = None
            if pending.expected_did is None:
                document = await self._verify_authorization_server(sub, pending.issuer)

            handle = await self._resolve_handle(sub, document)

            result = OAuthSessionResult(
                did=sub,
                handle=handle,
                access_token=token_response.access_token,
                refresh_token=token_response.refresh_token,
                token_type=token_response.token_type,
                expires_in=token_response.expires_in,
                scope=token_response.scope,
                pds_url=pending.pds_url,
                issuer=pending.issuer,
                token_endpoint=pending.token_endpoint,
                dpop=pending.dpop,
                auth_server_nonce=pending.auth_server_nonce,
            )
            completed = True
        finally:
            if not completed:
                pending.dpop.dispose()

        logger.info("Authorization completed for %s (%s)", result.did, result.handle)
        return result

    async def refresh_tokens(self, session: OAuthSessionResult) -> TokenResponse:
        """
        Refresh a session's tokens in place, keeping its DPoP key.

        Raises:
            OAuthException: `no_refresh_token`, `token_error`, or `did_mismatch`
                when the server answers for a different account
        """
        self._ensure_open()

        if not session.refresh_token:
            raise OAuthException.no_refresh_token()

        logger.debug("Refreshing tokens for %s", session.did)

        token_response = await self._token_request(
            session.token_endpoint,
            {
                "grant_type": "refresh_token",
                "refresh_token": session.refresh_token,
                "client_id": self.settings.client_id,
            },
            session.dpop,
            session.auth_server_nonce,
            session.update_auth_server_nonce,
        )

        if token_response.sub is not None and token_response.sub != session.did:
            raise OAuthException.did_mismatch(session.did, token_response.sub)

        session.access_token = token_response.access_token
        if token_response.refresh_token is not None:
            session.refresh_token = token_response.refresh_token
        session.token_type = token_response.token_type
        session.expires_in = token_response.expires_in
        if token_response.scope is not None:
            session.scope = token_response.scope
        session.token_obtained_at = utc_now()

        return token_response

    def get_pending_authorization_state(
        self, state: str
    ) -> Optional[PendingAuthorizationState]:
        pending = self.pending_store.peek(state)
        if pending is None or self.pending_store.is_expired(pending):
            return None
        return PendingAuthorizationState.from_pending(pending)

    def restore_session(self, token_data: TokenData) -> OAuthSessionResult:
        return OAuthSessionResult.from_token_data(token_data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.pending_store.dispose_all()

    async def __aenter__(self) -> "OAuthClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    async def _pushed_authorization_request(
        self,
        metadata: AuthorizationServerMetadata,
        dpop: DpopProofGenerator,
        state: str,
        code_challenge: str,
        redirect_uri: str,
        login_hint: Optional[str],
    ) -> Tuple[str, Optional[str]]:
        data = {
            "response_type": "code",
            "client_id": self.settings.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "scope": self.settings.scope,
            "code_challenge": code_challenge,
            "code_challenge_method": CODE_CHALLENGE_METHOD,
        }
        if login_hint is not None:
            data["login_hint"] = login_hint

        chain_response, nonce = await self._dpop_post(
            metadata.pushed_authorization_request_endpoint,
            data,
            dpop,
            None,
            None,
            OAuthException.par_error,
        )

        if chain_response.status not in (200, 201):
            error, error_description = _error_fields(chain_response)
            logger.error(
                "Pushed authorization request to %s failed: %s %s",
                metadata.issuer,
                chain_response.status,
                error,
            )
            raise OAuthException.par_error(
                f"Pushed authorization request failed with status {chain_response.status}",
                error,
                error_description,
            )

        try:
            par_response = PushedAuthorizationResponse.model_validate(
                chain_response.json_body()
            )
        except ValidationError as e:
            raise OAuthException.par_error(
                "Invalid pushed authorization response"
            ) from e

        return par_response.request_uri, nonce

    async def _token_request(
        self,
        token_endpoint: str,
        data: Dict[str, str],
        dpop: DpopProofGenerator,
        nonce: Optional[str],
        on_nonce: Optional[NonceCallback],
    ) -> TokenResponse:
        chain_response, _ = await self._dpop_post(
            token_endpoint, data, dpop, nonce, on_nonce, OAuthException.token_error
        )

        if chain_response.status != 200:
            error, error_description = _error_fields(chain_response)
            logger.error(
                "Token request to %s failed: %s %s",
                token_endpoint,
                chain_response.status,
                error,
            )
            raise OAuthException.token_error(
                f"Token request failed with status {chain_response.status}",
                error,
                error_description,
            )

        try:
            return TokenResponse.model_validate(chain_response.json_body())
        except ValidationError as e:
            raise OAuthException.token_error("Invalid token response") from e

    async def _dpop_post(
        self,
        url: str,
        data: Dict[str, str],
        dpop: DpopProofGenerator,
        nonce: Optional[str],
        on_nonce: Optional[NonceCallback],
        error_factory: ErrorFactory,
    ) -> Tuple[ChainResponse, Optional[str]]:
        """POST a form with a DPoP proof, performing the nonce handshake."""
        dpop_middleware = DpopNonceMiddleware(
            dpop.generate_proof, nonce=nonce, on_nonce=on_nonce
        )
        chain_client = ChainMiddlewareClient(
            client_session=self.http_session,
            raise_for_status=False,
            middleware=[dpop_middleware],
        )

        try:
            async with chain_client.post(url, data=data, timeout=self.timeout) as (
                _,
                chain_response,
            ):
                return chain_response, dpop_middleware.nonce
        except (ClientError, asyncio.TimeoutError) as e:
            raise error_factory(f"Request to {url} failed", None, None) from e

    async def _verify_authorization_server(
        self, did: str, issuer: str
    ) -> DidDocument:
        """
        Confirm that the account's own PDS delegates to the issuer that minted
        the tokens. Needed when the flow started from a server URL, where no
        DID was known up front.
        """
        document = await self.discovery.fetch_did_document(did)
        pds_url = document.pds_endpoint()
        if pds_url is None:
            raise OAuthException.discovery_error(
                f"DID document for '{did}' does not contain an atproto PDS service"
            )

        metadata = await self.discovery.resolve_authorization_server(pds_url)
        if metadata.issuer.lower() != issuer.lower():
            raise OAuthException.auth_server_mismatch(did, metadata.issuer, issuer)
        return document

    async def _resolve_handle(self, did: str, document: Optional[DidDocument]) -> str:
        if document is None:
            try:
                document = await self.discovery.fetch_did_document(did)
            except OAuthException as e:
                logger.warning("Could not resolve handle for %s: %s", did, e)
                sentry_sdk.capture_exception(e)
                return did
        return document.handle() or did
