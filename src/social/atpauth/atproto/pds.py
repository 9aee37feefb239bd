import asyncio
import logging
from typing import Any, Optional
from urllib.parse import urlparse
from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import ValidationError

from social.atpauth.atproto.errors import OAuthException
from social.atpauth.model.oauth import (
    AuthorizationServerMetadata,
    ProtectedResourceMetadata,
)

logger = logging.getLogger(__name__)


def normalize_url(url: str) -> str:
    if not url.lower().startswith(("http://", "https://")):
        url = f"https://{url}"
    return url.rstrip("/")


async def fetch_json(
    session: ClientSession, url: str, timeout: Optional[ClientTimeout] = None
) -> Any:
    """GET a JSON document, wrapping transport failures as `discovery_error`."""
    logger.debug("Fetching %s", url)
    try:
        async with session.get(url, timeout=timeout) as resp:
            if resp.status != 200:
                raise OAuthException.discovery_error(
                    f"Unexpected status {resp.status} fetching {url}"
                )
            return await resp.json(content_type=None)
    except OAuthException:
        raise
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise OAuthException.discovery_error(f"Unable to fetch {url}") from e


async def oauth_protected_resource(
    session: ClientSession, pds: str, timeout: Optional[ClientTimeout] = None
) -> ProtectedResourceMetadata:
    url = f"{normalize_url(pds)}/.well-known/oauth-protected-resource"
    body = await fetch_json(session, url, timeout)
    try:
        return ProtectedResourceMetadata.model_validate(body)
    except ValidationError as e:
        raise OAuthException.discovery_error(
            f"Invalid protected resource metadata from {pds}"
        ) from e


async def oauth_authorization_server(
    session: ClientSession,
    authorization_server: str,
    timeout: Optional[ClientTimeout] = None,
) -> AuthorizationServerMetadata:
    url = f"{normalize_url(authorization_server)}/.well-known/oauth-authorization-server"
    body = await fetch_json(session, url, timeout)
    try:
        metadata = AuthorizationServerMetadata.model_validate(body)
    except ValidationError as e:
        raise OAuthException.discovery_error(
            f"Invalid authorization server metadata from {authorization_server}"
        ) from e

    validate_authorization_server_metadata(metadata, authorization_server)
    return metadata


def validate_authorization_server_metadata(
    metadata: AuthorizationServerMetadata, authorization_server: str
) -> None:
    """
    Check that discovered metadata describes the server it was fetched from
    and supports the AT Protocol profile (PAR, `atproto` scope, ES256 DPoP).
    """
    issuer = urlparse(metadata.issuer)
    expected = urlparse(normalize_url(authorization_server))
    if (
        issuer.scheme.lower() != expected.scheme.lower()
        or (issuer.hostname or "") != (expected.hostname or "")
    ):
        raise OAuthException.discovery_error(
            f"Authorization server issuer '{metadata.issuer}' does not match "
            f"'{authorization_server}'"
        )

    for endpoint in (
        metadata.authorization_endpoint,
        metadata.token_endpoint,
        metadata.pushed_authorization_request_endpoint,
    ):
        if len(endpoint) == 0:
            raise OAuthException.discovery_error(
                f"Authorization server '{metadata.issuer}' metadata is missing an endpoint"
            )

    if "atproto" not in metadata.scopes_supported:
        raise OAuthException.discovery_error(
            f"Authorization server '{metadata.issuer}' does not support the 'atproto' scope"
        )

    if "ES256" not in metadata.dpop_signing_alg_values_supported:
        raise OAuthException.discovery_error(
            f"Authorization server '{metadata.issuer}' does not support ES256 for DPoP"
        )
