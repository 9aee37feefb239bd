"""Bounded, time-limited store of in-flight authorizations.

Entries are keyed by state, consumed exactly once by `take`, and reaped by
`sweep` once older than the TTL. The store owns the DPoP key of each entry
it holds: reaped and disposed entries have their keys released.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from social.atpauth.atproto.errors import OAuthException
from social.atpauth.model.session import PendingAuthorization, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=10)
DEFAULT_MAX_ENTRIES = 100


class PendingAuthorizationStore:
    def __init__(
        self,
        ttl: timedelta = DEFAULT_TTL,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl = ttl
        self.max_entries = max_entries
        self._entries: Dict[str, PendingAuthorization] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def is_expired(
        self, pending: PendingAuthorization, now: Optional[datetime] = None
    ) -> bool:
        if now is None:
            now = utc_now()
        return now - pending.created_at > self.ttl

    def add(self, pending: PendingAuthorization) -> None:
        """
        Insert a pending authorization after sweeping expired entries.

        Raises:
            OAuthException: `server_error` when the store is full,
                `invalid_state` when the state is already present
        """
        self.sweep()
        with self._lock:
            if pending.state in self._entries:
                raise OAuthException.invalid_state()
            if len(self._entries) >= self.max_entries:
                raise OAuthException.server_error(
                    "Too many pending authorization requests"
                )
            self._entries[pending.state] = pending
        logger.debug("Stored pending authorization %s", pending.state)

    def take(self, state: str) -> Optional[PendingAuthorization]:
        with self._lock:
            return self._entries.pop(state, None)

    def peek(self, state: str) -> Optional[PendingAuthorization]:
        with self._lock:
            return self._entries.get(state)

    def sweep(self, now: Optional[datetime] = None) -> int:
        if now is None:
            now = utc_now()
        with self._lock:
            expired: List[PendingAuthorization] = [
                pending
                for pending in self._entries.values()
                if self.is_expired(pending, now)
            ]
            for pending in expired:
                del self._entries[pending.state]

        for pending in expired:
            pending.dpop.dispose()

        if len(expired) > 0:
            logger.debug("Reaped %d expired pending authorizations", len(expired))
        return len(expired)

    def dispose_all(self) -> None:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for pending in entries:
            pending.dpop.dispose()
