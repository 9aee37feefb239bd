"""
Configuration Module for atpauth

Settings are loaded from environment variables through pydantic-settings,
with defaults suitable for development. Only `client_id` is required: it is
the URL at which the client metadata document is served.

Key configuration areas include:
- Client identification (client metadata document)
- Authorization flow limits (pending TTL, store cap, request timeout)
- Identity resolution (PLC directory)
- Token persistence (Redis, Fernet encryption)
- Error reporting (Sentry)
"""

import base64
import logging
from typing import Annotated, List, Optional
from cryptography.fernet import Fernet
from pydantic import AliasChoices, Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from social.atpauth.model.oauth import OAuthClientMetadata

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Settings for the atpauth OAuth client.

    Environment variables map to fields by name, e.g. `CLIENT_ID`,
    `REQUEST_TIMEOUT` or `SENTRY_DSN`. List fields are comma-separated.
    """

    model_config = SettingsConfigDict(arbitrary_types_allowed=True)

    debug: bool = False
    """
    Enable verbose logging.
    Set with DEBUG=true environment variable.
    """

    client_id: str
    """
    Client identifier: the HTTPS URL of the client metadata document (required).
    Set with CLIENT_ID environment variable.
    """

    client_name: Optional[str] = None
    """Human readable client name shown by authorization servers"""

    client_uri: Optional[str] = None
    """Home page of the client application"""

    redirect_uris: Annotated[List[str], NoDecode] = list()
    """
    Redirect URIs registered in the client metadata.
    Set with REDIRECT_URIS environment variable as comma-separated values.
    """

    scope: str = "atproto transition:generic"
    """
    Scope requested in every authorization. Must include `atproto`.
    Set with SCOPE environment variable.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    pending_authorization_ttl: int = 600
    """
    Seconds a pending authorization may wait for its callback.
    Default: 600 (10 minutes)
    """

    max_pending_authorizations: int = 100
    """
    Maximum number of pending authorizations held at once. Starting an
    authorization beyond this fails with `server_error`.
    """

    pending_sweep_interval: int = 60
    """Seconds between background sweeps of expired pending authorizations"""

    request_timeout: float = 10.0
    """Total timeout in seconds for each outbound HTTP request"""

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    redis_dsn: Optional[RedisDsn] = Field(
        None,
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )
    """
    Redis connection string for the session token store. Sessions are kept
    in memory when not set.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    token_store_prefix: str = "atpauth:tokens"
    """Redis key prefix for stored sessions"""

    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet symmetric encryption key for stored sessions.
    Can be set to a Fernet object or base64-encoded key string.
    Set with ENCRYPTION_KEY environment variable.
    """

    @field_validator("redirect_uris", mode="before")
    @classmethod
    def decode_redirect_uris(cls, v) -> List[str]:
        if isinstance(v, str):
            return [uri.strip() for uri in v.split(",") if len(uri.strip()) > 0]
        return v

    @field_validator("scope")
    @classmethod
    def validate_scope(cls, v: str) -> str:
        if "atproto" not in v.split():
            raise ValueError("scope must include 'atproto'")
        return v

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """
        Validate and process the encryption_key setting.

        This validator accepts either:
        - An existing Fernet object (for programmatic configuration)
        - A base64-encoded string containing a Fernet key

        Raises:
            ValueError: If the input is neither a Fernet object nor a valid base64 key
        """
        if isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )


def build_client_metadata(settings: Settings) -> OAuthClientMetadata:
    """The client metadata document to serve at `settings.client_id`."""
    return OAuthClientMetadata(
        client_id=settings.client_id,
        client_name=settings.client_name,
        client_uri=settings.client_uri,
        redirect_uris=list(settings.redirect_uris),
        scope=settings.scope,
    )
