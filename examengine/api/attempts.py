from __future__ import annotations

from typing import Optional, Union

from fastapi import APIRouter, Depends, Request

from examengine.auth.dependencies import get_current_user
from examengine.auth.jwt_handler import TokenPayload
from examengine.engine.ledger import save_answer, save_answers_batch
from examengine.engine.lifecycle import fetch_attempt, start_attempt, submit_attempt
from examengine.engine.results import fetch_result
from examengine.engine.violations import record_violation
from examengine.models import (
    AttemptResult,
    AttemptSession,
    ResultProcessing,
    SaveAnswerRequest,
    SaveAnswerResponse,
    SaveBatchRequest,
    SaveBatchResponse,
    StartAttemptRequest,
    SubmitResponse,
    ViolationRequest,
    ViolationResponse,
)
from examengine.settings import settings
from examengine.storage.repo import AttemptRepository
from examengine.wiring import get_dispatcher, get_repo
from examengine.workers.dispatch import ScoringDispatcher

router = APIRouter(prefix="/attempts", tags=["attempts"])


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


@router.post("/start", response_model=AttemptSession)
async def start(
    req: StartAttemptRequest,
    request: Request,
    user: TokenPayload = Depends(get_current_user),
    repo: AttemptRepository = Depends(get_repo),
) -> AttemptSession:
    return await start_attempt(repo, user.user_id, req.exam_id, ip_address=client_ip(request))


@router.get("/{attempt_id}", response_model=AttemptSession)
async def get_attempt(
    attempt_id: str,
    user: TokenPayload = Depends(get_current_user),
    repo: AttemptRepository = Depends(get_repo),
) -> AttemptSession:
    return await fetch_attempt(repo, attempt_id, user.user_id)


@router.post("/{attempt_id}/save", response_model=SaveAnswerResponse)
async def save(
    attempt_id: str,
    req: SaveAnswerRequest,
    user: TokenPayload = Depends(get_current_user),
    repo: AttemptRepository = Depends(get_repo),
) -> SaveAnswerResponse:
    return await save_answer(repo, attempt_id, user.user_id, req)


@router.post("/{attempt_id}/save-batch", response_model=SaveBatchResponse)
async def save_batch(
    attempt_id: str,
    req: SaveBatchRequest,
    user: TokenPayload = Depends(get_current_user),
    repo: AttemptRepository = Depends(get_repo),
) -> SaveBatchResponse:
    return await save_answers_batch(
        repo, attempt_id, user.user_id, req.answers, max_entries=settings.max_batch_answers
    )


@router.post("/{attempt_id}/violation", response_model=ViolationResponse)
async def violation(
    attempt_id: str,
    req: ViolationRequest,
    user: TokenPayload = Depends(get_current_user),
    repo: AttemptRepository = Depends(get_repo),
) -> ViolationResponse:
    return await record_violation(
        repo, attempt_id, user.user_id, req, threshold=settings.violation_termination_threshold
    )


@router.post("/{attempt_id}/submit", response_model=SubmitResponse)
async def submit(
    attempt_id: str,
    user: TokenPayload = Depends(get_current_user),
    repo: AttemptRepository = Depends(get_repo),
    dispatcher: ScoringDispatcher = Depends(get_dispatcher),
) -> SubmitResponse:
    return await submit_attempt(repo, attempt_id, user.user_id, dispatcher)


@router.get("/{attempt_id}/result", response_model=Union[AttemptResult, ResultProcessing])
async def get_result(
    attempt_id: str,
    user: TokenPayload = Depends(get_current_user),
    repo: AttemptRepository = Depends(get_repo),
) -> Union[AttemptResult, ResultProcessing]:
    return await fetch_result(repo, attempt_id, user.user_id)
