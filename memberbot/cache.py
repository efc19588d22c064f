from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from .store import MembershipStore, RosterEntry

LOGGER = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 7 * 24 * 60 * 60


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class MemberCache:
    """In-process snapshot of the roster table keyed by lowercase email.

    The snapshot is replaced wholesale on refresh and never mutated in place,
    so readers always see one consistent roster. If the store is disabled the
    snapshot is emptied, which denies every verification until it returns.
    """

    def __init__(
        self,
        store: MembershipStore,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.refresh_interval = refresh_interval
        self._clock = clock
        self._entries: Dict[str, RosterEntry] = {}
        self._last_refresh: Optional[float] = None

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def last_refresh(self) -> Optional[float]:
        return self._last_refresh

    def is_stale(self) -> bool:
        if self._last_refresh is None:
            return True
        return self._clock() - self._last_refresh >= self.refresh_interval

    async def refresh(self, force: bool = False) -> bool:
        """Reload the roster if stale (or forced). Returns True if a fetch ran.

        Raises StoreError when the store is configured but the query fails;
        the previous snapshot is kept in that case.
        """
        if not force and not self.is_stale():
            LOGGER.debug("Member cache refreshed recently, skipping")
            return False

        now = self._clock()
        if not self.store.is_available():
            LOGGER.warning(
                "Member cache cleared: Supabase is disabled, verification is unavailable"
            )
            self._entries = {}
            self._last_refresh = now
            return False

        roster = await self.store.fetch_roster()
        entries: Dict[str, RosterEntry] = {}
        for entry in roster:
            key = normalize_email(entry.email)
            if key:
                entries[key] = entry
        self._entries = entries
        self._last_refresh = now
        LOGGER.info("Member cache refreshed with %s roster entries", len(entries))
        return True

    def has(self, email: str) -> bool:
        return normalize_email(email) in self._entries

    def get_entry(self, email: str) -> Optional[RosterEntry]:
        return self._entries.get(normalize_email(email))

    def get_full_name(self, email: str) -> Optional[str]:
        entry = self.get_entry(email)
        return entry.full_name if entry else None
