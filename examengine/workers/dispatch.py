from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from fastapi import BackgroundTasks

from examengine.storage.repo import AttemptRepository
from examengine.workers.scoring import process_submission

logger = logging.getLogger(__name__)


class ScoringDispatcher(ABC):
    @abstractmethod
    async def dispatch(self, attempt_id: str) -> None:
        raise NotImplementedError


class BackgroundScoringDispatcher(ScoringDispatcher):
    """Runs scoring after the response is sent, in the request's BackgroundTasks."""

    def __init__(self, background_tasks: BackgroundTasks, repo: AttemptRepository) -> None:
        self.background_tasks = background_tasks
        self.repo = repo

    async def dispatch(self, attempt_id: str) -> None:
        self.background_tasks.add_task(process_submission, attempt_id, self.repo)


class ScoringQueue(ScoringDispatcher):
    """In-process work queue drained by a fixed pool of worker tasks.

    Submitted attempts are durable in the store as completed but unscored or
    unranked, so a crash anywhere between enqueue and ranking is recovered by
    replay_pending().
    """

    def __init__(self, repo: AttemptRepository, concurrency: int = 4) -> None:
        self.repo = repo
        self.concurrency = max(1, concurrency)
        self._queue: Optional[asyncio.Queue[str]] = None
        self._pending: set[str] = set()
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self.running:
            return
        queue: asyncio.Queue[str] = asyncio.Queue()
        self._queue = queue
        self._workers = [
            asyncio.create_task(self._worker(queue), name=f"scoring-worker-{i}") for i in range(self.concurrency)
        ]
        logger.info(f"Scoring queue started with {self.concurrency} workers")

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        logger.info("Scoring queue stopped")

    async def dispatch(self, attempt_id: str) -> None:
        if self._queue is None:
            raise RuntimeError("scoring queue is not running")
        if attempt_id in self._pending:
            return
        self._pending.add(attempt_id)
        await self._queue.put(attempt_id)

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def replay_pending(self) -> int:
        """Re-enqueue every completed attempt that is not yet scored and ranked."""
        attempt_ids = await self.repo.list_pending_attempt_ids()
        for attempt_id in attempt_ids:
            await self.dispatch(attempt_id)
        if attempt_ids:
            logger.info(f"Replayed {len(attempt_ids)} pending attempts")
        return len(attempt_ids)

    async def _worker(self, queue: asyncio.Queue[str]) -> None:
        while True:
            attempt_id = await queue.get()
            try:
                await process_submission(attempt_id, self.repo)
            finally:
                self._pending.discard(attempt_id)
                queue.task_done()
