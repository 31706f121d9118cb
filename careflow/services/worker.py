"""
Bounded worker pool that runs queued notes through the pipeline.
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from careflow.services.orchestrator import NoteOrchestrator

logger = logging.getLogger(__name__)


class NoteWorkerPool:
    """Queue of note ids consumed by a fixed number of asyncio workers."""

    def __init__(self, orchestrator: NoteOrchestrator, concurrency: int = 4, queue_size: int = 0):
        self.orchestrator = orchestrator
        self.concurrency = max(1, concurrency)
        self.queue: asyncio.Queue[Tuple[str, bool]] = asyncio.Queue(maxsize=queue_size)
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"note-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} note workers")

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Note workers stopped")

    async def submit(self, note_id: str, resume: bool = False) -> None:
        """Enqueue a note; blocks only when the queue is full."""
        await self.queue.put((note_id, resume))

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until every queued note has been handled."""
        if timeout is None:
            await self.queue.join()
        else:
            await asyncio.wait_for(self.queue.join(), timeout)

    async def _worker(self, number: int) -> None:
        while True:
            note_id, resume = await self.queue.get()
            try:
                await self.orchestrator.process(note_id, resume=resume)
            except Exception:
                logger.exception(f"Worker {number} crashed processing note {note_id}")
            finally:
                self.queue.task_done()
