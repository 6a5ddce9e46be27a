"""
Backfill script for the attempts service.

Scores and ranks completed attempts that never got a result, or got a
score but no rank (for example after a crash between Submit and the
scoring worker), then recomputes leaderboard ranks.

Usage:
    python -m examengine.scripts.backfill

Or for a single exam:
    python -m examengine.scripts.backfill --exam-id <exam_id>
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Optional

from examengine.engine.ranking import recalculate_leaderboard_ranks
from examengine.observability import configure_logging
from examengine.settings import settings
from examengine.storage.repo import AttemptRepository
from examengine.wiring import get_repo
from examengine.workers.scoring import process_submission


async def process_pending(repo: AttemptRepository, exam_id: Optional[str] = None) -> tuple[int, int]:
    """Score and rank every pending attempt. Returns (done, failed)."""
    attempt_ids = await repo.list_pending_attempt_ids(exam_id)
    print(f"Found {len(attempt_ids)} pending attempts")

    done = failed = 0
    for attempt_id in attempt_ids:
        attempt = await process_submission(attempt_id, repo)
        if attempt is not None and attempt.is_ranked:
            done += 1
            print(f"  ✓ {attempt_id}: score={attempt.score} rank={attempt.rank}")
        else:
            failed += 1
            print(f"  ✗ {attempt_id}: scoring failed (see log)")
    return done, failed


async def rerank(repo: AttemptRepository, exam_id: Optional[str] = None) -> int:
    exam_ids = [exam_id] if exam_id else await repo.list_leaderboard_exam_ids()
    for eid in exam_ids:
        entries = await recalculate_leaderboard_ranks(repo, eid)
        print(f"  ✓ {eid}: {len(entries)} leaderboard entries ranked")
    return len(exam_ids)


async def run(exam_id: Optional[str] = None, skip_rerank: bool = False) -> int:
    repo = get_repo()
    try:
        print("\nScoring pending attempts...")
        _, failed = await process_pending(repo, exam_id)

        if not skip_rerank:
            print("\nRecomputing leaderboard ranks...")
            await rerank(repo, exam_id)
    finally:
        close = getattr(repo, "close", None)
        if close is not None:
            close()
    return 1 if failed else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Score pending attempts and recompute leaderboard ranks")
    parser.add_argument("--exam-id", default=None, help="Limit the backfill to one exam")
    parser.add_argument("--skip-rerank", action="store_true", help="Skip leaderboard rank recomputation")
    args = parser.parse_args()

    configure_logging(settings.log_level)

    print("\n" + "=" * 50)
    print("ExamEngine Scoring Backfill")
    print(f"Storage: {settings.storage_backend}")
    print("=" * 50)

    status = asyncio.run(run(args.exam_id, args.skip_rerank))

    print("\n" + "=" * 50)
    print("✓ Backfill completed" if status == 0 else "⚠ Backfill completed with failures")
    print("=" * 50 + "\n")
    sys.exit(status)


if __name__ == "__main__":
    main()
