import argparse
import asyncio
import base64
import json
import logging
import os
from logging.config import dictConfig
from typing import Optional
from cryptography.fernet import Fernet
from redis import asyncio as redis
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.atpauth.app.config import Settings, build_client_metadata
from social.atpauth.atproto.dpop import DpopProofGenerator
from social.atpauth.store.tokens import InMemoryTokenStore, RedisTokenStore, TokenStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Optional[Settings] = None) -> None:
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig()
    if settings is None or settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    else:
        logging.getLogger().setLevel(logging.INFO)


def configure_sentry(settings: Settings) -> bool:
    if not settings.sentry_dsn:
        return False
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        send_default_pii=False,
        integrations=[AioHttpIntegration()],
    )
    return True


def create_token_store(settings: Settings) -> TokenStore:
    """Redis-backed store when `redis_dsn` is configured, in-memory otherwise."""
    if settings.redis_dsn is None:
        logger.warning("REDIS_DSN not set, sessions are kept in memory")
        return InMemoryTokenStore()

    redis_client = redis.Redis.from_url(str(settings.redis_dsn))
    return RedisTokenStore(
        redis_client, settings.encryption_key, prefix=settings.token_store_prefix
    )


async def genCryptoKey() -> None:
    key = Fernet.generate_key()
    print(base64.b64encode(key).decode("utf-8"))


async def genDpopKey() -> None:
    with DpopProofGenerator() as dpop:
        print(dpop.export_private_key().decode("ascii"))


async def clientMetadata() -> None:
    settings = Settings()  # type: ignore
    print(build_client_metadata(settings).model_dump_json(indent=2, exclude_none=True))


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="atpauth", description="atpauth utilities")

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("gen-crypto", help="Generate an encryption key")
    _ = subparsers.add_parser("gen-dpop-key", help="Generate a DPoP private key")
    _ = subparsers.add_parser(
        "client-metadata", help="Print the client metadata document"
    )

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-crypto":
        await genCryptoKey()
    elif command == "gen-dpop-key":
        await genDpopKey()
    elif command == "client-metadata":
        await clientMetadata()


def invoke() -> None:
    configure_logging()
    asyncio.run(realMain())


if __name__ == "__main__":
    invoke()
