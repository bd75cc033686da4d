"""Persist reconciliation queue.

The read-model cache applies a mutation locally first and then submits the
matching store write here. Writes are keyed by entity: each submission takes
a logical timestamp from a monotonic clock, writes for one key run one at a
time in submission order, and a write that has been superseded by a newer
submission for the same key before it started is skipped. The store
therefore ends up with the newest local state regardless of network
completion order.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .vector_store import VectorStoreError

logger = logging.getLogger("shelfsync.reconciler")

PersistFn = Callable[[], Awaitable[Any]]


class PersistQueue:
    def __init__(self) -> None:
        self._clock = itertools.count(1)
        self._latest: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: dict[str, int] = {}
        self._pending: set[asyncio.Task[bool]] = set()
        self.written = 0
        self.skipped = 0
        self.failed: list[tuple[str, str]] = []

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def tracked_keys(self) -> int:
        return len(self._latest)

    def latest_stamp(self, key: str) -> int | None:
        """Stamp of the newest write for ``key`` while one is outstanding."""
        return self._latest.get(key)

    def submit(self, key: str, persist: PersistFn) -> asyncio.Task[bool]:
        """Schedule ``persist`` for ``key`` and return its task.

        Must be called from a running event loop. The task resolves to True
        when the write ran and succeeded.
        """
        stamp = next(self._clock)
        self._latest[key] = stamp
        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        task = asyncio.create_task(self._run(key, stamp, persist))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run(self, key: str, stamp: int, persist: PersistFn) -> bool:
        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                return await self._write(key, stamp, persist)
        finally:
            self._release(key)

    async def _write(self, key: str, stamp: int, persist: PersistFn) -> bool:
        if self._latest.get(key) != stamp:
            self.skipped += 1
            logger.debug("Skipping superseded write #%d for %s", stamp, key)
            return False
        try:
            result = await persist()
        except VectorStoreError as e:
            self.failed.append((key, str(e)))
            logger.error("Persist of %s failed: %s", key, e)
            return False
        except Exception as e:
            self.failed.append((key, repr(e)))
            logger.exception("Unexpected error persisting %s", key)
            return False
        if result is False:
            self.failed.append((key, "collection not ready"))
            return False
        self.written += 1
        return True

    def _release(self, key: str) -> None:
        remaining = self._in_flight.get(key, 1) - 1
        if remaining > 0:
            self._in_flight[key] = remaining
            return
        self._in_flight.pop(key, None)
        self._latest.pop(key, None)
        self._locks.pop(key, None)

    async def drain(self) -> None:
        """Wait until every submitted write has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
