"""Optimistic suppression entries.

When this client writes a row it expects the change feed to echo the write
back. A suppression entry marks the row for a short, fixed TTL so the echo
is not mistaken for an external change and refetched. Entries always
expire, even when the acknowledgement never arrives.
"""

import time
from collections.abc import Callable

from rigalloc.logging import get_logger
from rigalloc.models import Collection

logger = get_logger(__name__)

Key = tuple[Collection, str]


class SuppressionRegistry:
    """TTL-bounded set of (collection, row id) keys."""

    def __init__(
        self,
        ttl_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._expires: dict[Key, float] = {}

    def __len__(self) -> int:
        self.purge()
        return len(self._expires)

    def register(self, collection: Collection, row_id: str, ttl_seconds: float | None = None) -> None:
        """Suppress notifications for a row until the TTL elapses.

        Registering an existing key extends its deadline.
        """
        deadline = self._clock() + (ttl_seconds if ttl_seconds is not None else self.ttl_seconds)
        self._expires[(collection, row_id)] = deadline
        self.purge()

    def is_suppressed(self, collection: Collection, row_id: str) -> bool:
        deadline = self._expires.get((collection, row_id))
        if deadline is None:
            return False
        if deadline <= self._clock():
            del self._expires[(collection, row_id)]
            return False
        return True

    def purge(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, deadline in self._expires.items() if deadline <= now]
        for key in expired:
            del self._expires[key]
        return len(expired)

    def clear(self) -> None:
        self._expires.clear()
