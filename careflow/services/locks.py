"""
Per-note locks so that only one pipeline run works on a note at a time.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

import redis.asyncio as redis
from redis.exceptions import LockError

logger = logging.getLogger(__name__)


class NoteLockManager:
    """In-process, non-blocking per-note locks."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def is_locked(self, note_id: str) -> bool:
        lock = self._locks.get(note_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, note_id: str) -> AsyncIterator[bool]:
        """Yield True if the lock was taken, False if another run holds it."""
        lock = self._locks.setdefault(note_id, asyncio.Lock())
        if lock.locked():
            yield False
            return

        await lock.acquire()
        try:
            yield True
        finally:
            lock.release()
            if not lock.locked():
                self._locks.pop(note_id, None)


class RedisNoteLockManager(NoteLockManager):
    """Per-note locks shared across processes through Redis."""

    def __init__(self, redis_client: redis.Redis, timeout_seconds: int = 600,
                 key_prefix: str = "careflow:note-lock"):
        super().__init__()
        self.redis = redis_client
        self.timeout_seconds = timeout_seconds
        self.key_prefix = key_prefix

    @asynccontextmanager
    async def hold(self, note_id: str) -> AsyncIterator[bool]:
        lock = self.redis.lock(f"{self.key_prefix}:{note_id}", timeout=self.timeout_seconds)
        acquired = await lock.acquire(blocking=False)
        if not acquired:
            yield False
            return

        try:
            yield True
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning(f"Lock for note {note_id} expired before release")
