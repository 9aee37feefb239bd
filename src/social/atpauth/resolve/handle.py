"""AT Protocol handle and DID resolution utilities.

Resolves AT Protocol handles to DIDs using HTTPS well-known endpoints and DNS
TXT records, and dereferences did:plc and did:web DIDs to their DID documents.
Handles and did:web hosts are validated before any request is made.
"""

import asyncio
import logging
from enum import IntEnum
from aiohttp import ClientError, ClientSession, ClientTimeout
from aiodns import DNSResolver
from aiodns.error import DNSError
from pydantic import BaseModel, ValidationError
from typing import Optional

from social.atpauth.atproto.errors import OAuthException
from social.atpauth.atproto.pds import fetch_json
from social.atpauth.model.oauth import DidDocument
from social.atpauth.resolve.validation import validate_did_web_host, validate_handle

logger = logging.getLogger(__name__)


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration.

    Identifies whether a subject is a DID or handle requiring resolution.
    """

    did_method_plc = 1
    did_method_web = 2
    hostname = 3
    did_method_other = 4


class ParsedSubject(BaseModel):
    """Parsed AT Protocol subject input.

    Contains the classified subject type and normalized subject string.
    """

    subject_type: SubjectType
    subject: str


def _txt_value(record: object) -> str:
    text = getattr(record, "text", "")
    if isinstance(text, bytes):
        return text.decode("utf-8", errors="replace")
    return str(text)


async def resolve_handle_dns(
    handle: str, resolver: Optional[DNSResolver] = None
) -> Optional[str]:
    """Resolve AT Protocol handle to DID using DNS TXT record.

    Queries _atproto.{handle} TXT record and extracts DID from did= prefix.

    Args:
        handle: AT Protocol handle to resolve
        resolver: DNS resolver to use, a fresh one by default

    Returns:
        DID string if found, None if resolution fails
    """
    if resolver is None:
        resolver = DNSResolver()
    try:
        results = await resolver.query(f"_atproto.{handle}", "TXT")
    except DNSError as e:
        logger.debug("DNS handle resolution failed for %s: %s", handle, e)
        return None

    for record in results or []:
        value = _txt_value(record).strip().strip('"')
        if value.startswith("did="):
            return value.removeprefix("did=")
    return None


async def resolve_handle_http(
    session: ClientSession, handle: str, timeout: Optional[ClientTimeout] = None
) -> Optional[str]:
    """Resolve AT Protocol handle to DID using HTTPS well-known endpoint.

    Fetches DID from https://{handle}/.well-known/atproto-did endpoint.

    Args:
        session: HTTP client session
        handle: AT Protocol handle to resolve
        timeout: Optional per-request timeout

    Returns:
        DID string if found, None if resolution fails
    """
    try:
        async with session.get(
            f"https://{handle}/.well-known/atproto-did", timeout=timeout
        ) as resp:
            if resp.status != 200:
                return None
            body = (await resp.text()).strip()
            if body.startswith("did:"):
                return body
            return None
    except (ClientError, asyncio.TimeoutError) as e:
        logger.debug("HTTPS handle resolution failed for %s: %s", handle, e)
        return None


async def resolve_handle(
    session: ClientSession,
    handle: str,
    timeout: Optional[ClientTimeout] = None,
    resolver: Optional[DNSResolver] = None,
) -> str:
    """Resolve AT Protocol handle to DID, HTTPS first and then DNS.

    Raises:
        OAuthException: `invalid_handle` before any lookup when the handle is
            malformed, `discovery_error` when neither method yields a DID
    """
    validate_handle(handle)

    did = await resolve_handle_http(session, handle, timeout)
    if did is None:
        did = await resolve_handle_dns(handle, resolver)

    if did is None:
        raise OAuthException.discovery_error(
            f"Could not resolve handle '{handle}' to a DID"
        )
    return did


def did_web_url(did: str) -> str:
    """Build the did.json URL for a did:web DID, validating its host first.

    `did:web:example.com` resolves to `https://example.com/.well-known/did.json`
    and `did:web:example.com:u:alice` to
    `https://example.com/u/alice/.well-known/did.json`.
    """
    parts = did.removeprefix("did:web:").split(":")
    validate_did_web_host(did, parts[0])

    host = parts[0].replace("%3A", ":").replace("%3a", ":")
    inner = "/".join([host, *parts[1:]])
    return f"https://{inner}/.well-known/did.json"


def did_document_url(plc_hostname: str, did: str) -> str:
    if did.startswith("did:plc:"):
        return f"https://{plc_hostname}/{did}"
    elif did.startswith("did:web:"):
        return did_web_url(did)
    raise OAuthException.invalid_did(did, "uses an unsupported DID method")


async def resolve_did_document(
    session: ClientSession,
    plc_hostname: str,
    did: str,
    timeout: Optional[ClientTimeout] = None,
) -> DidDocument:
    """Fetch and parse the DID document for a did:plc or did:web DID.

    Raises:
        OAuthException: `invalid_did` for unsupported methods or rejected
            did:web hosts (no request is made), `discovery_error` otherwise
    """
    url = did_document_url(plc_hostname, did)
    body = await fetch_json(session, url, timeout)
    try:
        return DidDocument.model_validate(body)
    except ValidationError as e:
        raise OAuthException.discovery_error(
            f"Invalid DID document for '{did}'"
        ) from e


def parse_input(subject: str) -> Optional[ParsedSubject]:
    """Parse and classify AT Protocol subject input.

    Normalizes input by removing prefixes and classifies as DID or handle.

    Args:
        subject: Raw subject string (handle, DID, or prefixed)

    Returns:
        ParsedSubject with type and normalized string, None for empty input
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if len(subject) == 0:
        return None

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)
    elif subject.startswith("did:"):
        return ParsedSubject(
            subject_type=SubjectType.did_method_other, subject=subject
        )

    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())
