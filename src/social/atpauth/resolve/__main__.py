from typing import List
import argparse
import aiohttp
import asyncio
import logging

from social.atpauth.atproto.errors import OAuthException
from social.atpauth.resolve.discovery import AuthorizationServerDiscovery

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="resolve", description="Resolve identities to authorization servers"
    )
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--plc-hostname",
        default="plc.directory",
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )
    parser.add_argument(
        "--timeout", type=float, default=10.0, help="Per-request timeout in seconds."
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        discovery = AuthorizationServerDiscovery(
            session,
            args.get("plc_hostname"),
            aiohttp.ClientTimeout(total=args.get("timeout")),
        )
        for subject in subjects:
            try:
                resolved = await discovery.resolve_from_identifier(subject)
                print(
                    f"{subject} did={resolved.did} pds={resolved.pds_url} "
                    f"issuer={resolved.metadata.issuer}"
                )
            except OAuthException:
                logger.exception("Exception resolving subject %s", subject)


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
