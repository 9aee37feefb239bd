"""Identifier validation and SSRF guards for identity resolution.

Handles and `did:web` hosts end up as hostnames in outbound HTTPS requests,
so both are checked before any network call is made. Every check fails
closed: there is no retry or fallback after a rejection.
"""

import ipaddress
from typing import Union

from social.atpauth.atproto.errors import OAuthException

MAX_HANDLE_LENGTH = 253
MAX_LABEL_LENGTH = 63

_FORBIDDEN_HANDLE_CHARACTERS = ("/", "\\", "?", "#", "@", ":")
_FORBIDDEN_HOST_CHARACTERS = ("?", "#", "@", "/", "\\")

# 100.64.0.0/10 is not covered by `is_private` on every supported Python.
_CARRIER_GRADE_NAT = ipaddress.ip_network("100.64.0.0/10")


def validate_handle(handle: str) -> str:
    """Validate that a handle is a plain DNS hostname.

    Args:
        handle: AT Protocol handle, e.g. `alice.example.com`

    Returns:
        The handle, unchanged

    Raises:
        OAuthException: `invalid_handle` describing the first problem found
    """
    if handle is None or len(handle.strip()) == 0:
        raise OAuthException.invalid_handle("", "cannot be empty")

    if len(handle) > MAX_HANDLE_LENGTH:
        raise OAuthException.invalid_handle(handle, "exceeds maximum length")

    if any(c.isspace() for c in handle):
        raise OAuthException.invalid_handle(handle, "contains whitespace")

    if any(c in handle for c in _FORBIDDEN_HANDLE_CHARACTERS):
        raise OAuthException.invalid_handle(handle, "contains invalid characters")

    if handle.startswith(".") or handle.endswith(".") or ".." in handle:
        raise OAuthException.invalid_handle(handle, "has an empty domain label")

    labels = handle.split(".")
    if len(labels) < 2:
        raise OAuthException.invalid_handle(
            handle, "must contain at least two domain labels"
        )

    for label in labels:
        if len(label) > MAX_LABEL_LENGTH:
            raise OAuthException.invalid_handle(handle, "has a domain label that is too long")
        if label.startswith("-") or label.endswith("-"):
            raise OAuthException.invalid_handle(
                handle, "has a label starting or ending with a hyphen"
            )
        if not all((c.isascii() and c.isalnum()) or c == "-" for c in label):
            raise OAuthException.invalid_handle(handle, "contains invalid characters")

    if labels[-1][0].isdigit():
        raise OAuthException.invalid_handle(
            handle, "has a top-level domain starting with a digit"
        )

    return handle


def is_private_address(
    address: Union[ipaddress.IPv4Address, ipaddress.IPv6Address],
) -> bool:
    """True for loopback, private, link-local, CGN, unspecified and reserved addresses."""
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped

    if isinstance(address, ipaddress.IPv4Address):
        if address in _CARRIER_GRADE_NAT or address.packed[0] == 0:
            return True

    return (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
        or address.is_multicast
    )


def is_numeric_host(hostname: str) -> bool:
    """
    True when a resolver could read the hostname as an IPv4 address.

    Covers the short, decimal, octal and hex forms (`127.1`, `2130706433`,
    `0x7f000001`) that `ipaddress` refuses but `getaddrinfo` accepts. A real
    domain never ends in an all-numeric or `0x` label.
    """
    last_label = hostname.rstrip(".").rsplit(".", 1)[-1]
    return last_label.isdigit() or last_label.startswith("0x")


def validate_did_web_host(did: str, host: str) -> str:
    """
    Validate the host segment of a `did:web` DID before it is dereferenced.

    Rejects hosts that would point the resolver at internal infrastructure:
    `localhost`, any bracketed IPv6 literal, any IP literal in a private,
    loopback, link-local, carrier-grade NAT or otherwise reserved range, and
    any numeric host a resolver would read as an IPv4 address.

    Raises:
        OAuthException: `invalid_did`
    """
    if host is None or len(host.strip()) == 0:
        raise OAuthException.invalid_did(did, "has an empty did:web host")

    if any(c.isspace() for c in host) or any(
        c in host for c in _FORBIDDEN_HOST_CHARACTERS
    ):
        raise OAuthException.invalid_did(did, "has a did:web host with invalid characters")

    if host.startswith("["):
        raise OAuthException.invalid_did(
            did, "uses an IP address as did:web host, use a domain name"
        )

    # A percent-encoded port is part of the host segment, e.g. example.com%3A8443
    hostname = host.lower().split("%3a")[0].rstrip(".")
    if hostname == "localhost" or hostname.endswith(".localhost"):
        raise OAuthException.invalid_did(did, "points to a private address")

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        if is_numeric_host(hostname):
            raise OAuthException.invalid_did(
                did, "uses a non-canonical IP address as did:web host"
            )
        return host

    if is_private_address(address):
        raise OAuthException.invalid_did(did, "points to a private address")

    return host
