"""Per-key asyncio locks for single-writer-per-resource discipline."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a keyed lock is not acquired within the timeout."""

    def __init__(self, key: str, timeout: float) -> None:
        self.key = key
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for lock {key!r}")


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLock:
    """Mutual exclusion per key; different keys never contend.

    Entries are created on first use and dropped once no task holds or
    waits on them, so the table only grows with in-flight keys.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _LockEntry] = {}

    @asynccontextmanager
    async def acquire(self, key: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the context.

        Args:
            key: Resource identifier (e.g. an order id).
            timeout: Seconds to wait before giving up; None waits forever.

        Raises:
            LockTimeoutError: If the lock was not acquired in time.
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _LockEntry()
        entry.users += 1
        try:
            try:
                if timeout is None:
                    await entry.lock.acquire()
                else:
                    await asyncio.wait_for(entry.lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError as e:
                logger.warning("Lock wait timed out for %s after %.2fs", key, timeout)
                raise LockTimeoutError(key, timeout) from e
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def is_locked(self, key: str) -> bool:
        """Check whether some task currently holds ``key``."""
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
