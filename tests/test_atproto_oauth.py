"""
Unit tests for the authorization flow in social.atpauth.atproto.oauth

Covers starting an authorization (identity resolution, PAR with the DPoP nonce
handshake, the pending store), completing it (state, issuer, expiry and
subject checks, verification of the authorization server for flows started
from a server URL), refresh, and client teardown.
"""

import asyncio
import json
from datetime import timedelta
from typing import List
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from jwcrypto import jwk, jwt

from social.atpauth.atproto.dpop import DpopProofGenerator
from social.atpauth.atproto.errors import OAuthException
from social.atpauth.atproto.oauth import (
    OAuthClient,
    build_authorization_url,
    is_server_url,
    scope_contains_atproto,
    validate_redirect_uri,
)
from social.atpauth.model.session import (
    OAuthSessionResult,
    PendingAuthorization,
    utc_now,
)
from social.atpauth.store.pending import PendingAuthorizationStore
from tests.test_helpers import (
    ALICE_DID,
    ALICE_HANDLE,
    CLIENT_ID,
    ISSUER,
    PDS_URL,
    REDIRECT_URI,
    authorization_server_metadata,
    create_mock_response,
    create_mock_session,
    did_document,
    discovery_routes,
    protected_resource_metadata,
    request_call_urls,
)

MALLORY_DID = "did:plc:mallory1234567890abcdef"
PAR_ENDPOINT = f"{ISSUER}/oauth/par"
TOKEN_ENDPOINT = f"{ISSUER}/oauth/token"


def use_dpop_nonce_response(nonce: str, status: int = 400):
    return create_mock_response(
        status=status,
        headers={"DPoP-Nonce": nonce},
        body={"error": "use_dpop_nonce", "error_description": "nonce required"},
    )


def par_response(request_uri: str = "urn:ietf:params:oauth:request_uri:abc"):
    return create_mock_response(
        status=201, body={"request_uri": request_uri, "expires_in": 60}
    )


def token_response(
    sub=ALICE_DID,
    scope="atproto transition:generic",
    nonce=None,
    access_token="access-1",
    refresh_token="refresh-1",
):
    body = {
        "access_token": access_token,
        "token_type": "DPoP",
        "expires_in": 3600,
        "refresh_token": refresh_token,
    }
    if sub is not None:
        body["sub"] = sub
    if scope is not None:
        body["scope"] = scope
    headers = {"DPoP-Nonce": nonce} if nonce is not None else None
    return create_mock_response(status=200, headers=headers, body=body)


def sent_form(session, index: int) -> dict:
    return session.request.call_args_list[index].kwargs["data"]


def sent_proof_claims(session, index: int, dpop: DpopProofGenerator) -> dict:
    proof = session.request.call_args_list[index].kwargs["headers"]["DPoP"]
    token = jwt.JWT(jwt=proof, key=jwk.JWK(**dpop.public_jwk))
    return json.loads(token.claims)


def add_pending(
    client: OAuthClient,
    state: str = "state-1",
    expected_did=ALICE_DID,
    created_at=None,
    auth_server_nonce=None,
) -> PendingAuthorization:
    pending = PendingAuthorization(
        state=state,
        code_verifier="verifier",
        expected_did=expected_did,
        issuer=ISSUER,
        token_endpoint=TOKEN_ENDPOINT,
        pds_url=PDS_URL,
        dpop=DpopProofGenerator(),
        redirect_uri=REDIRECT_URI,
        client_id=CLIENT_ID,
        auth_server_nonce=auth_server_nonce,
    )
    if created_at is not None:
        pending.created_at = created_at
    client.pending_store.add(pending)
    return pending


def make_session(**overrides) -> OAuthSessionResult:
    values = dict(
        did=ALICE_DID,
        handle=ALICE_HANDLE,
        access_token="access-1",
        refresh_token="refresh-1",
        token_type="DPoP",
        expires_in=3600,
        scope="atproto transition:generic",
        pds_url=PDS_URL,
        issuer=ISSUER,
        token_endpoint=TOKEN_ENDPOINT,
        dpop=DpopProofGenerator(),
        auth_server_nonce="as-nonce",
    )
    values.update(overrides)
    return OAuthSessionResult(**values)


class KeyRecorder:
    """Create real DPoP keys while remembering them, to check disposal."""

    def __init__(self) -> None:
        self.created: List[DpopProofGenerator] = []

    def __call__(self) -> DpopProofGenerator:
        dpop = DpopProofGenerator()
        self.created.append(dpop)
        return dpop


class TestHelpers:
    def test_is_server_url(self):
        assert is_server_url("https://pds.example.com")
        assert is_server_url("http://localhost:2583")
        assert is_server_url("pds.example.com/")
        assert not is_server_url("alice.example.com")
        assert not is_server_url("did:web:example.com")
        assert not is_server_url("did:plc:abc")
        assert not is_server_url("alice@example.com/")

    def test_scope_contains_atproto(self):
        assert scope_contains_atproto("atproto")
        assert scope_contains_atproto("transition:generic atproto")
        assert not scope_contains_atproto("atproto:extra transition:generic")
        assert not scope_contains_atproto(None)

    def test_validate_redirect_uri(self):
        validate_redirect_uri("https://app.example.com/callback")
        validate_redirect_uri("http://127.0.0.1:8080/callback")
        validate_redirect_uri("http://localhost/callback")
        for value in [
            "",
            "/callback",
            "http://app.example.com/callback",
            "ftp://app.example.com/callback",
        ]:
            with pytest.raises(ValueError):
                validate_redirect_uri(value)

    def test_build_authorization_url_keeps_existing_query(self):
        url = build_authorization_url(
            "https://auth.example.com/oauth/authorize?prompt=login",
            CLIENT_ID,
            "urn:ietf:params:oauth:request_uri:abc",
        )
        query = parse_qs(urlparse(url).query)
        assert query["prompt"] == ["login"]
        assert query["client_id"] == [CLIENT_ID]
        assert query["request_uri"] == ["urn:ietf:params:oauth:request_uri:abc"]


class TestStartAuthorization:
    @pytest.mark.asyncio
    async def test_handle_happy_path(self, settings):
        """Test handle resolution, PAR nonce retry and the pending entry."""
        session = create_mock_session(
            get_routes=discovery_routes(),
            post_responses=[use_dpop_nonce_response("nonce-1"), par_response()],
        )
        client = OAuthClient(settings, session)

        start = await client.start_authorization(ALICE_HANDLE, REDIRECT_URI)

        parsed = urlparse(start.authorization_url)
        query = parse_qs(parsed.query)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            f"{ISSUER}/oauth/authorize"
        )
        assert query["client_id"] == [CLIENT_ID]
        assert query["request_uri"] == ["urn:ietf:params:oauth:request_uri:abc"]

        assert request_call_urls(session) == [PAR_ENDPOINT, PAR_ENDPOINT]
        form = sent_form(session, 1)
        assert form["state"] == start.state
        assert form["login_hint"] == ALICE_HANDLE
        assert form["code_challenge_method"] == "S256"
        assert form["client_id"] == CLIENT_ID
        assert form["redirect_uri"] == REDIRECT_URI
        assert "atproto" in form["scope"].split()

        pending = client.pending_store.peek(start.state)
        assert pending.expected_did == ALICE_DID
        assert pending.issuer == ISSUER
        assert pending.pds_url == PDS_URL
        assert pending.auth_server_nonce == "nonce-1"

        assert "nonce" not in sent_proof_claims(session, 0, pending.dpop)
        assert sent_proof_claims(session, 1, pending.dpop)["nonce"] == "nonce-1"
        client.close()

    @pytest.mark.asyncio
    async def test_server_url_has_no_login_hint(self, settings):
        session = create_mock_session(
            get_routes=discovery_routes(), post_responses=[par_response()]
        )
        client = OAuthClient(settings, session)

        start = await client.start_authorization(PDS_URL, REDIRECT_URI)

        assert "login_hint" not in sent_form(session, 0)
        pending = client.pending_store.peek(start.state)
        assert pending.expected_did is None
        assert pending.pds_url == PDS_URL
        client.close()

    @pytest.mark.asyncio
    async def test_known_pds_skips_identity_resolution(self, settings):
        session = create_mock_session(
            get_routes=discovery_routes(), post_responses=[par_response()]
        )
        client = OAuthClient(settings, session)

        await client.start_authorization(
            ALICE_HANDLE, REDIRECT_URI, pds_url="pds.example.com"
        )

        urls = [str(call.args[0]) for call in session.get.call_args_list]
        assert urls == [
            f"{PDS_URL}/.well-known/oauth-protected-resource",
            f"{ISSUER}/.well-known/oauth-authorization-server",
        ]
        assert sent_form(session, 0)["login_hint"] == ALICE_HANDLE
        client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "identifier",
        [
            "did:web:localhost",
            "did:web:127.0.0.1",
            "did:web:10.0.0.1",
            "did:web:127.1",
            "did:web:2130706433",
            "did:web:0x7f000001",
            "did:web:10.1",
        ],
    )
    async def test_private_did_web_makes_no_requests(self, settings, identifier):
        session = create_mock_session(get_routes=discovery_routes())
        client = OAuthClient(settings, session)

        with pytest.raises(OAuthException) as exc_info:
            await client.start_authorization(identifier, REDIRECT_URI)

        assert exc_info.value.code == "invalid_did"
        assert session.get.call_count == 0
        assert session.request.call_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("identifier", ["alice_example.com", "127.0.0.1", "10.1.2.3"])
    async def test_invalid_handle_makes_no_requests(self, settings, identifier):
        session = create_mock_session(get_routes=discovery_routes())
        client = OAuthClient(settings, session)

        with pytest.raises(OAuthException) as exc_info:
            await client.start_authorization(identifier, REDIRECT_URI)

        assert exc_info.value.code == "invalid_handle"
        assert session.get.call_count == 0

    @pytest.mark.asyncio
    async def test_insecure_redirect_uri(self, settings):
        session = create_mock_session(get_routes=discovery_routes())
        client = OAuthClient(settings, session)

        with pytest.raises(ValueError):
            await client.start_authorization(
                ALICE_HANDLE, "http://app.example.com/callback"
            )
        assert session.get.call_count == 0

    @pytest.mark.asyncio
    async def test_par_error_keeps_server_fields(self, settings):
        session = create_mock_session(
            get_routes=discovery_routes(),
            post_responses=[
                create_mock_response(
                    status=400,
                    body={
                        "error": "invalid_request",
                        "error_description": "Invalid redirect_uri",
                    },
                )
            ],
        )
        client = OAuthClient(settings, session)
        recorder = KeyRecorder()

        with patch(
            "social.atpauth.atproto.oauth.DpopProofGenerator", side_effect=recorder
        ):
            with pytest.raises(OAuthException) as exc_info:
                await client.start_authorization(ALICE_HANDLE, REDIRECT_URI)

        assert exc_info.value.code == "par_error"
        assert exc_info.value.error == "invalid_request"
        assert exc_info.value.error_description == "Invalid redirect_uri"
        assert len(client.pending_store) == 0
        assert [dpop.disposed for dpop in recorder.created] == [True]

    @pytest.mark.asyncio
    async def test_full_store_rejects_and_disposes_key(self, settings):
        """Test a start beyond the cap fails with server_error."""
        session = create_mock_session(
            get_routes=discovery_routes(), post_responses=[par_response()]
        )
        client = OAuthClient(
            settings, session, pending_store=PendingAuthorizationStore(max_entries=1)
        )
        existing = add_pending(client, state="existing")
        recorder = KeyRecorder()

        with patch(
            "social.atpauth.atproto.oauth.DpopProofGenerator", side_effect=recorder
        ):
            with pytest.raises(OAuthException) as exc_info:
                await client.start_authorization(PDS_URL, REDIRECT_URI)

        assert exc_info.value.code == "server_error"
        assert [dpop.disposed for dpop in recorder.created] == [True]
        assert len(client.pending_store) == 1
        assert not existing.dpop.disposed
        client.close()

    @pytest.mark.asyncio
    async def test_fresh_discovery_per_call(self, settings):
        """Test two starts for the same PDS both fetch metadata."""
        session = create_mock_session(
            get_routes=discovery_routes(),
            post_responses=[par_response("urn:1"), par_response("urn:2")],
        )
        client = OAuthClient(settings, session)

        first = await client.start_authorization(PDS_URL, REDIRECT_URI)
        second = await client.start_authorization(PDS_URL, REDIRECT_URI)

        assert first.state != second.state
        assert session.get.call_count == 4
        client.close()

    @pytest.mark.asyncio
    async def test_cancelled_par_stores_nothing_and_disposes_key(self, settings):
        """Test cancellation during the PAR leaves the store empty."""
        session = create_mock_session(
            get_routes=discovery_routes(), post_responses=[asyncio.CancelledError()]
        )
        client = OAuthClient(settings, session)
        recorder = KeyRecorder()

        with patch(
            "social.atpauth.atproto.oauth.DpopProofGenerator", side_effect=recorder
        ):
            with pytest.raises(asyncio.CancelledError):
                await client.start_authorization(ALICE_HANDLE, REDIRECT_URI)

        assert len(client.pending_store) == 0
        assert [dpop.disposed for dpop in recorder.created] == [True]


class TestCompleteAuthorization:
    @pytest.mark.asyncio
    async def test_unknown_state(self, settings):
        session = create_mock_session()
        client = OAuthClient(settings, session)

        with pytest.raises(OAuthException) as exc_info:
            await client.complete_authorization("code", "unknown", ISSUER)

        assert exc_info.value.code == "invalid_state"
        assert session.get.call_count == 0
        assert session.request.call_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("issuer", [None, "https://evil.example.com"])
    async def test_issuer_mismatch(self, settings, issuer):
        session = create_mock_session()
        client = OAuthClient(settings, session)
        pending = add_pending(client)

        with pytest.raises(OAuthException) as exc_info:
            await client.complete_authorization("code", pending.state, issuer)

        assert exc_info.value.code == "issuer_mismatch"
        assert session.request.call_count == 0
        assert pending.dpop.disposed
        assert client.pending_store.peek(pending.state) is None

    @pytest.mark.asyncio
    async def test_issuer_compared_case_insensitively(self, settings):
        session = create_mock_session(
            get_routes=discovery_routes(), post_responses=[token_response()]
        )
        client = OAuthClient(settings, session)
        pending = add_pending(client)

        with await client.complete_authorization(
            "code", pending.state, ISSUER.upper()
        ) as result:
            assert result.did == ALICE_DID

    @pytest.mark.asyncio
    async def test_state_expired(self, settings):
        session = create_mock_session()
        client = OAuthClient(settings, session)
        pending = add_pending(client, created_at=utc_now() - timedelta(minutes=11))

        with pytest.raises(OAuthException) as exc_info:
            await client.complete_authorization("code", pending.state, ISSUER)

        assert exc_info.value.code == "state_expired"
        assert session.request.call_count == 0
        assert pending.dpop.disposed

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, settings):
        session = create_mock_session(
            get_routes=discovery_routes(), post_responses=[token_response()]
        )
        client = OAuthClient(settings, session)
        pending = add_pending(client)

        result = await client.complete_authorization("code", pending.state, ISSUER)
        result.dispose()

        with pytest.raises(OAuthException) as exc_info:
            await client.complete_authorization("code", pending.state, ISSUER)
        assert exc_info.value.code == "invalid_state"

    @pytest.mark.asyncio
    async def test_happy_path(self, settings):
        """Test the code exchange with a nonce handshake at the token endpoint."""
        session = create_mock_session(
            get_routes=discovery_routes(),
            post_responses=[
                use_dpop_nonce_response("nonce-2"),
                token_response(nonce="nonce-3"),
            ],
        )
        client = OAuthClient(settings, session)
        pending = add_pending(client, auth_server_nonce="nonce-1")
        thumbprint = pending.dpop.thumbprint

        result = await client.complete_authorization("the-code", pending.state, ISSUER)

        assert result.did == ALICE_DID
        assert result.handle == ALICE_HANDLE
        assert result.access_token == "access-1"
        assert result.refresh_token == "refresh-1"
        assert result.pds_url == PDS_URL
        assert result.issuer == ISSUER
        assert result.dpop_key_id == thumbprint
        assert result.auth_server_nonce == "nonce-3"
        assert not result.dpop.disposed

        assert request_call_urls(session) == [TOKEN_ENDPOINT, TOKEN_ENDPOINT]
        form = sent_form(session, 0)
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "the-code"
        assert form["code_verifier"] == "verifier"
        assert form["redirect_uri"] == REDIRECT_URI
        assert sent_proof_claims(session, 0, result.dpop)["nonce"] == "nonce-1"
        assert sent_proof_claims(session, 1, result.dpop)["nonce"] == "nonce-2"
        assert len(client.pending_store) == 0
        result.dispose()

    @pytest.mark.asyncio
    async def test_handle_falls_back_to_did(self, settings):
        session = create_mock_session(get_routes={}, post_responses=[token_response()])
        client = OAuthClient(settings, session)
        pending = add_pending(client)

        with await client.complete_authorization(
            "code", pending.state, ISSUER
        ) as result:
            assert result.handle == ALICE_DID

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response,code",
        [
            (token_response(sub=None), "missing_sub"),
            (token_response(sub="alice"), "invalid_sub"),
            (token_response(sub=MALLORY_DID), "did_mismatch"),
            (token_response(scope="transition:generic"), "invalid_scope"),
            (token_response(scope=None), "invalid_scope"),
        ],
    )
    async def test_token_response_checks(self, settings, response, code):
        session = create_mock_session(
            get_routes=discovery_routes(), post_responses=[response]
        )
        client = OAuthClient(settings, session)
        pending = add_pending(client)

        with pytest.raises(OAuthException) as exc_info:
            await client.complete_authorization("code", pending.state, ISSUER)

        assert exc_info.value.code == code
        assert pending.dpop.disposed

    @pytest.mark.asyncio
    async def test_token_error_keeps_server_fields(self, settings):
        session = create_mock_session(
            post_responses=[
                create_mock_response(
                    status=400,
                    body={"error": "invalid_grant", "error_description": "Code expired"},
                )
            ]
        )
        client = OAuthClient(settings, session)
        pending = add_pending(client)

        with pytest.raises(OAuthException) as exc_info:
            await client.complete_authorization("code", pending.state, ISSUER)

        assert exc_info.value.code == "token_error"
        assert exc_info.value.error == "invalid_grant"
        assert exc_info.value.error_description == "Code expired"
        assert pending.dpop.disposed

    @pytest.mark.asyncio
    async def test_rejected_code_is_sent_once(self, settings):
        """Test a rejected code is not resubmitted when the nonce rotates."""
        session = create_mock_session(
            post_responses=[
                create_mock_response(
                    status=400,
                    headers={"DPoP-Nonce": "rotated"},
                    body={"error": "invalid_grant", "error_description": "Code used"},
                ),
                token_response(),
            ]
        )
        client = OAuthClient(settings, session)
        pending = add_pending(client, auth_server_nonce="nonce-1")

        with pytest.raises(OAuthException) as exc_info:
            await client.complete_authorization("code", pending.state, ISSUER)

        assert exc_info.value.code == "token_error"
        assert exc_info.value.error == "invalid_grant"
        assert session.request.call_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_exchange_consumes_entry_and_disposes_key(self, settings):
        """Test cancellation during the token request leaves no live entry or key."""
        request_started = asyncio.Event()

        async def hang(*args, **kwargs):
            request_started.set()
            await asyncio.Event().wait()

        session = create_mock_session()
        session.request = AsyncMock(side_effect=hang)
        client = OAuthClient(settings, session)
        pending = add_pending(client)

        task = asyncio.create_task(
            client.complete_authorization("code", pending.state, ISSUER)
        )
        await request_started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert pending.dpop.disposed
        assert len(client.pending_store) == 0
        assert client.get_pending_authorization_state(pending.state) is None

    @pytest.mark.asyncio
    async def test_server_url_flow_verifies_authorization_server(self, settings):
        session = create_mock_session(
            get_routes=discovery_routes(),
            post_responses=[par_response(), token_response()],
        )
        client = OAuthClient(settings, session)

        start = await client.start_authorization(PDS_URL, REDIRECT_URI)
        with await client.complete_authorization(
            "code", start.state, ISSUER
        ) as result:
            assert result.did == ALICE_DID
            assert result.handle == ALICE_HANDLE

    @pytest.mark.asyncio
    async def test_server_url_flow_rejects_foreign_account(self, settings):
        """Test tokens for an account served by a different authorization server."""
        other_pds = "https://other-pds.example.com"
        other_issuer = "https://other-auth.example.com"
        routes = discovery_routes()
        routes.update(
            {
                f"https://plc.directory/{MALLORY_DID}": create_mock_response(
                    body=did_document(MALLORY_DID, "mallory.example.com", other_pds)
                ),
                f"{other_pds}/.well-known/oauth-protected-resource": create_mock_response(
                    body=protected_resource_metadata(other_pds, other_issuer)
                ),
                f"{other_issuer}/.well-known/oauth-authorization-server": create_mock_response(
                    body=authorization_server_metadata(other_issuer)
                ),
            }
        )
        session = create_mock_session(
            get_routes=routes,
            post_responses=[par_response(), token_response(sub=MALLORY_DID)],
        )
        client = OAuthClient(settings, session)
        recorder = KeyRecorder()

        with patch(
            "social.atpauth.atproto.oauth.DpopProofGenerator", side_effect=recorder
        ):
            start = await client.start_authorization(PDS_URL, REDIRECT_URI)

        with pytest.raises(OAuthException) as exc_info:
            await client.complete_authorization("code", start.state, ISSUER)

        assert exc_info.value.code == "auth_server_mismatch"
        assert [dpop.disposed for dpop in recorder.created] == [True]


class TestRefreshTokens:
    @pytest.mark.asyncio
    async def test_refresh_keeps_key_and_updates_nonce(self, settings):
        session = create_mock_session(
            post_responses=[
                use_dpop_nonce_response("nonce-9", status=401),
                token_response(access_token="access-2", refresh_token="refresh-2"),
            ]
        )
        client = OAuthClient(settings, session)
        oauth_session = make_session()
        thumbprint = oauth_session.dpop_key_id
        obtained_at = oauth_session.token_obtained_at

        await client.refresh_tokens(oauth_session)

        assert oauth_session.access_token == "access-2"
        assert oauth_session.refresh_token == "refresh-2"
        assert oauth_session.auth_server_nonce == "nonce-9"
        assert oauth_session.dpop_key_id == thumbprint
        assert oauth_session.token_obtained_at >= obtained_at

        form = sent_form(session, 1)
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"
        assert form["client_id"] == CLIENT_ID
        assert sent_proof_claims(session, 0, oauth_session.dpop)["nonce"] == "as-nonce"
        oauth_session.dispose()

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token(self, settings):
        session = create_mock_session(
            post_responses=[token_response(access_token="access-2", refresh_token=None)]
        )
        client = OAuthClient(settings, session)

        with make_session() as oauth_session:
            await client.refresh_tokens(oauth_session)
            assert oauth_session.access_token == "access-2"
            assert oauth_session.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, settings):
        session = create_mock_session()
        client = OAuthClient(settings, session)

        with make_session(refresh_token=None) as oauth_session:
            with pytest.raises(OAuthException) as exc_info:
                await client.refresh_tokens(oauth_session)

        assert exc_info.value.code == "no_refresh_token"
        assert session.request.call_count == 0

    @pytest.mark.asyncio
    async def test_refresh_for_another_account(self, settings):
        session = create_mock_session(
            post_responses=[token_response(sub=MALLORY_DID, access_token="access-2")]
        )
        client = OAuthClient(settings, session)

        with make_session() as oauth_session:
            with pytest.raises(OAuthException) as exc_info:
                await client.refresh_tokens(oauth_session)
            assert oauth_session.access_token == "access-1"

        assert exc_info.value.code == "did_mismatch"

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_is_sent_once(self, settings):
        session = create_mock_session(
            post_responses=[
                create_mock_response(
                    status=400,
                    headers={"DPoP-Nonce": "rotated"},
                    body={"error": "invalid_grant"},
                ),
                token_response(access_token="access-2"),
            ]
        )
        client = OAuthClient(settings, session)

        with make_session() as oauth_session:
            with pytest.raises(OAuthException) as exc_info:
                await client.refresh_tokens(oauth_session)
            assert oauth_session.access_token == "access-1"
            assert oauth_session.auth_server_nonce == "rotated"

        assert exc_info.value.code == "token_error"
        assert session.request.call_count == 1


class TestClientLifecycle:
    def test_pending_authorization_state(self, settings):
        client = OAuthClient(settings, create_mock_session())
        pending = add_pending(client)
        add_pending(
            client, state="stale", created_at=utc_now() - timedelta(minutes=11)
        )

        view = client.get_pending_authorization_state(pending.state)
        assert view.state == pending.state
        assert view.dpop_key_id == pending.dpop.thumbprint
        assert view.expected_did == ALICE_DID

        assert client.get_pending_authorization_state("stale") is None
        assert client.get_pending_authorization_state("unknown") is None
        client.close()

    def test_restore_session(self, settings):
        client = OAuthClient(settings, create_mock_session())
        with make_session() as oauth_session:
            data = oauth_session.to_token_data()
            thumbprint = oauth_session.dpop_key_id

        with client.restore_session(data) as restored:
            assert restored.dpop_key_id == thumbprint
            assert restored.access_token == "access-1"

    @pytest.mark.asyncio
    async def test_close_disposes_pending_keys(self, settings):
        session = create_mock_session()
        async with OAuthClient(settings, session) as client:
            pending = add_pending(client)

        assert client.closed
        assert pending.dpop.disposed
        assert len(client.pending_store) == 0
        client.close()

        with pytest.raises(RuntimeError):
            await client.start_authorization(ALICE_HANDLE, REDIRECT_URI)
        with pytest.raises(RuntimeError):
            await client.complete_authorization("code", "state", ISSUER)
        assert session.get.call_count == 0
