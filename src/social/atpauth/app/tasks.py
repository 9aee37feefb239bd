import asyncio
import logging
from typing import NoReturn
import sentry_sdk

from social.atpauth.store.pending import PendingAuthorizationStore

logger = logging.getLogger(__name__)


async def pending_sweep_task(
    store: PendingAuthorizationStore, interval: float = 60
) -> NoReturn:
    """
    Background task that reaps expired pending authorizations.

    `PendingAuthorizationStore.add` already sweeps before every insert; this
    task releases the DPoP keys of abandoned flows when no new flow starts.
    Run it with `asyncio.create_task` and cancel it on shutdown.
    """
    logger.info("Starting pending authorization sweep task")

    while True:
        await asyncio.sleep(interval)
        try:
            reaped = store.sweep()
            if reaped > 0:
                logger.info("Reaped %d expired pending authorizations", reaped)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("pending authorization sweep failed")
