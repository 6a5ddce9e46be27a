from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import BackgroundTasks, Depends

from examengine.settings import settings
from examengine.storage.inmemory import InMemoryAttemptRepository
from examengine.storage.mongo import MongoAttemptRepository
from examengine.storage.repo import AttemptRepository
from examengine.workers.dispatch import BackgroundScoringDispatcher, ScoringDispatcher, ScoringQueue

logger = logging.getLogger(__name__)


@lru_cache
def get_repo() -> AttemptRepository:
    backend = (settings.storage_backend or "inmemory").lower()
    if backend == "mongo":
        return MongoAttemptRepository(settings.mongodb_uri, settings.mongodb_db)
    return InMemoryAttemptRepository()


@lru_cache
def get_scoring_queue() -> ScoringQueue:
    return ScoringQueue(get_repo(), concurrency=settings.max_worker_concurrency)


def get_dispatcher(
    background_tasks: BackgroundTasks,
    repo: AttemptRepository = Depends(get_repo),
) -> ScoringDispatcher:
    mode = (settings.scoring_dispatch or "queue").lower()
    if mode == "queue":
        queue = get_scoring_queue()
        if queue.running:
            return queue
        # Lifespan did not start the workers (e.g. app mounted without it).
        logger.warning("Scoring queue not running; falling back to background tasks")
    return BackgroundScoringDispatcher(background_tasks, repo)
