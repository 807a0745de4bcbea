"""Per-conversation mutual exclusion."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refs: int = 0
    """Holders plus waiters; the entry is evicted when this drops to zero."""


class Lease:
    """Proof of holding a conversation lock. ``release`` is idempotent."""

    __slots__ = ("_locks", "_released", "key")

    def __init__(self, locks: ConversationLocks, key: str) -> None:
        self._locks = locks
        self.key = key
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._locks._release(self.key)  # noqa: SLF001


class ConversationLocks:
    """Arena of locks keyed by conversation id.

    At most one lease per key exists at a time; entries are dropped as soon as
    nobody holds or waits for them, so the arena does not grow with history.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    async def acquire(self, key: str) -> Lease:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.refs += 1
        if entry.lock.locked():
            logger.debug("Waiting for conversation %s to become idle", key)
        try:
            await entry.lock.acquire()
        except BaseException:
            entry.refs -= 1
            self._evict_if_idle(key, entry)
            raise
        return Lease(self, key)

    def _release(self, key: str) -> None:
        entry = self._entries[key]
        entry.lock.release()
        entry.refs -= 1
        self._evict_if_idle(key, entry)

    def _evict_if_idle(self, key: str, entry: _Entry) -> None:
        if entry.refs == 0 and self._entries.get(key) is entry:
            del self._entries[key]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[Lease]:
        lease = await self.acquire(key)
        try:
            yield lease
        finally:
            lease.release()
