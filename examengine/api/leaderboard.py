from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from examengine.auth.dependencies import get_current_user, get_optional_user
from examengine.auth.jwt_handler import TokenPayload
from examengine.engine.ranking import cumulative_leaderboard, exam_leaderboard, global_rank
from examengine.models import GlobalRankResponse, LeaderboardResponse
from examengine.settings import settings
from examengine.storage.repo import AttemptRepository
from examengine.wiring import get_repo

router = APIRouter(prefix="/leaderboard", tags=["leaderboard"])


def _limit(limit: Optional[int] = Query(None, ge=1, le=100)) -> int:
    return limit or settings.leaderboard_default_limit


def _uid(user: Optional[TokenPayload]) -> Optional[str]:
    return user.user_id if user else None


@router.get("/exam/{exam_id}", response_model=LeaderboardResponse)
async def get_exam_leaderboard(
    exam_id: str,
    limit: int = Depends(_limit),
    user: Optional[TokenPayload] = Depends(get_optional_user),
    repo: AttemptRepository = Depends(get_repo),
) -> LeaderboardResponse:
    return await exam_leaderboard(repo, exam_id, _uid(user), limit=limit)


@router.get("/subject/{subject_id}", response_model=LeaderboardResponse)
async def get_subject_leaderboard(
    subject_id: str,
    limit: int = Depends(_limit),
    user: Optional[TokenPayload] = Depends(get_optional_user),
    repo: AttemptRepository = Depends(get_repo),
) -> LeaderboardResponse:
    return await cumulative_leaderboard(repo, _uid(user), limit=limit, subject_id=subject_id)


@router.get("/global/rank", response_model=GlobalRankResponse)
async def get_global_rank(
    user: TokenPayload = Depends(get_current_user),
    repo: AttemptRepository = Depends(get_repo),
) -> GlobalRankResponse:
    return await global_rank(repo, user.user_id)


@router.get("/global", response_model=LeaderboardResponse)
async def get_global_leaderboard(
    limit: int = Depends(_limit),
    user: Optional[TokenPayload] = Depends(get_optional_user),
    repo: AttemptRepository = Depends(get_repo),
) -> LeaderboardResponse:
    return await cumulative_leaderboard(repo, _uid(user), limit=limit)
