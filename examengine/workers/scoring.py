from __future__ import annotations

import logging
import time
from typing import Optional

from examengine.engine.ranking import update_rankings
from examengine.engine.scoring import score_attempt
from examengine.models import Attempt, utcnow
from examengine.observability import get_tracer, record_span_failure
from examengine.storage.repo import AttemptRepository

logger = logging.getLogger(__name__)


def _ms_since(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


async def process_submission(attempt_id: str, repo: AttemptRepository) -> Optional[Attempt]:
    """Score and rank one submitted attempt.

    Runs after Submit has already answered the client, so nothing here is
    raised to a caller. Each stage is resumable: an attempt left unscored, or
    scored but never ranked, is what replay_pending() picks up later.
    """

    tracer = get_tracer()
    start = time.perf_counter()

    with tracer.start_as_current_span("scoring.process") as span:
        span.set_attribute("attempt.id", attempt_id)
        try:
            attempt = await repo.get_attempt(attempt_id)
            span.set_attribute("exam.id", attempt.exam_id)

            if not attempt.is_completed:
                logger.warning(f"Skipping scoring for attempt {attempt_id}: status is {attempt.status}")
                return None
            if attempt.is_ranked:
                logger.info(f"Attempt {attempt_id} already scored and ranked; skipping")
                return attempt

            resume = attempt.is_scored
            span.set_attribute("scoring.resumed", resume)
            if resume:
                logger.info(f"Attempt {attempt_id} scored but not ranked; resuming ranking")
            else:
                exam = await repo.get_exam(attempt.exam_id)

                with tracer.start_as_current_span("scoring.compute") as compute_span:
                    result = score_attempt(exam, attempt)
                    compute_span.set_attribute("score", result.score)
                    compute_span.set_attribute("questions.count", len(exam.questions))

                if not await repo.save_result(attempt_id, result, scored_at=utcnow()):
                    # Another worker got there first and owns ranking.
                    logger.info(f"Attempt {attempt_id} was scored concurrently; skipping ranking")
                    return await repo.get_attempt(attempt_id)

            with tracer.start_as_current_span("ranking.update") as rank_span:
                ranked = await update_rankings(repo, attempt_id, resume=resume)
                rank_span.set_attribute("rank", ranked.rank or 0)

            span.set_attribute("scoring.latency_ms", round(_ms_since(start), 3))
            logger.info(
                f"Scored attempt {attempt_id}: score={ranked.score} correct={ranked.correct_answers} "
                f"wrong={ranked.wrong_answers} unattempted={ranked.unattempted} "
                f"in {_ms_since(start):.1f}ms"
            )
            return ranked

        except Exception as e:
            record_span_failure(span, e)
            logger.exception(f"Scoring failed for attempt {attempt_id}: {e}")
            return None
