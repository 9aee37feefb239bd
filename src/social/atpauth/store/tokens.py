"""Persistence boundary for completed sessions, keyed by DID.

The core only produces and accepts plaintext `TokenData`. Stores that leave
the process must encrypt it; `RedisTokenStore` does so with Fernet.
"""

from abc import ABC, abstractmethod
import logging
from typing import Dict, Optional
from cryptography.fernet import Fernet, InvalidToken
from redis import asyncio as redis

from social.atpauth.model.session import TokenData

logger = logging.getLogger(__name__)


class TokenStore(ABC):
    @abstractmethod
    async def store(self, did: str, token_data: TokenData) -> None:
        pass

    @abstractmethod
    async def get(self, did: str) -> Optional[TokenData]:
        pass

    @abstractmethod
    async def remove(self, did: str) -> None:
        pass


class InMemoryTokenStore(TokenStore):
    """Process-local store, for tests and single-process tools."""

    def __init__(self) -> None:
        self._tokens: Dict[str, TokenData] = {}

    async def store(self, did: str, token_data: TokenData) -> None:
        self._tokens[did] = token_data

    async def get(self, did: str) -> Optional[TokenData]:
        return self._tokens.get(did)

    async def remove(self, did: str) -> None:
        self._tokens.pop(did, None)


class RedisTokenStore(TokenStore):
    """
    Redis-backed store holding the Fernet-encrypted JSON bundle at
    `{prefix}:{did}`.

    A bundle that cannot be decrypted (rotated key, tampering) is treated as
    missing and reported in the log.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        encryption_key: Fernet,
        prefix: str = "atpauth:tokens",
        ttl: Optional[int] = None,
    ) -> None:
        self.redis_client = redis_client
        self.encryption_key = encryption_key
        self.prefix = prefix
        self.ttl = ttl

    def key_for(self, did: str) -> str:
        return f"{self.prefix}:{did}"

    async def store(self, did: str, token_data: TokenData) -> None:
        encrypted = self.encryption_key.encrypt(
            token_data.model_dump_json().encode("utf-8")
        )
        await self.redis_client.set(self.key_for(did), encrypted, ex=self.ttl)

    async def get(self, did: str) -> Optional[TokenData]:
        value = await self.redis_client.get(self.key_for(did))
        if value is None:
            return None
        if isinstance(value, str):
            value = value.encode("utf-8")

        try:
            decrypted = self.encryption_key.decrypt(value)
        except InvalidToken:
            logger.error("Unable to decrypt stored session for %s", did)
            return None

        return TokenData.model_validate_json(decrypted)

    async def remove(self, did: str) -> None:
        await self.redis_client.delete(self.key_for(did))
