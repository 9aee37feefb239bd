"""
OAuth error taxonomy.

Every failure raised by the authorization flow is an `OAuthException` carrying a
stable machine-readable `code` and a human-readable message. Callers branch on
`code`, never on the message text.
"""

from typing import Optional


class OAuthException(Exception):
    """
    Exception raised for OAuth flow failures.

    This exception class provides static methods for creating specific
    failure instances with stable error codes. When the failure originates
    from an authorization server error response, the server's `error` and
    `error_description` fields are preserved.
    """

    def __init__(
        self,
        code: str,
        message: str,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.error = error
        self.error_description = error_description

    @staticmethod
    def invalid_state() -> "OAuthException":
        """The callback state does not match any pending authorization."""
        return OAuthException("invalid_state", "Unknown or expired OAuth state parameter")

    @staticmethod
    def state_expired() -> "OAuthException":
        """The pending authorization outlived its time window."""
        return OAuthException("state_expired", "OAuth authorization state has expired")

    @staticmethod
    def issuer_mismatch(expected: str, actual: str) -> "OAuthException":
        """The callback issuer differs from the issuer recorded at discovery."""
        return OAuthException(
            "issuer_mismatch", f"Issuer mismatch, expected '{expected}', got '{actual}'"
        )

    @staticmethod
    def missing_sub() -> "OAuthException":
        """The token response did not name a subject."""
        return OAuthException("missing_sub", "Token response missing 'sub' field")

    @staticmethod
    def invalid_sub(sub: str) -> "OAuthException":
        """The token response subject is not a DID."""
        return OAuthException(
            "invalid_sub", f"Token response 'sub' is not a valid DID: '{sub}'"
        )

    @staticmethod
    def did_mismatch(expected: str, actual: str) -> "OAuthException":
        """The token response subject is not the account that was resolved."""
        return OAuthException(
            "did_mismatch",
            f"Token response DID '{actual}' does not match expected '{expected}'",
        )

    @staticmethod
    def invalid_scope(scope: Optional[str]) -> "OAuthException":
        """The granted scope does not include atproto."""
        return OAuthException(
            "invalid_scope", f"Token response does not include 'atproto' scope: '{scope}'"
        )

    @staticmethod
    def auth_server_mismatch(did: str, resolved: str, actual: str) -> "OAuthException":
        """The DID resolves to a different authorization server than the one used."""
        return OAuthException(
            "auth_server_mismatch",
            f"DID '{did}' resolves to authorization server '{resolved}' "
            f"but tokens were issued by '{actual}'",
        )

    @staticmethod
    def par_error(
        message: str,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> "OAuthException":
        """The pushed authorization request was rejected."""
        return OAuthException("par_error", message, error, error_description)

    @staticmethod
    def token_error(
        message: str,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> "OAuthException":
        """The token endpoint rejected the request or returned an unusable body."""
        return OAuthException("token_error", message, error, error_description)

    @staticmethod
    def no_refresh_token() -> "OAuthException":
        return OAuthException("no_refresh_token", "No refresh token available")

    @staticmethod
    def invalid_handle(handle: str, reason: str) -> "OAuthException":
        """The handle is malformed. No network call has been made."""
        return OAuthException("invalid_handle", f"Handle '{handle}' {reason}")

    @staticmethod
    def invalid_did(did: str, reason: str) -> "OAuthException":
        """The DID is malformed, unsupported or points at a private address."""
        return OAuthException("invalid_did", f"DID '{did}' {reason}")

    @staticmethod
    def discovery_error(message: str) -> "OAuthException":
        """Resolution failed or returned metadata of the wrong shape."""
        return OAuthException("discovery_error", message)

    @staticmethod
    def server_error(message: str) -> "OAuthException":
        return OAuthException("server_error", message)
