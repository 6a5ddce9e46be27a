from fastapi import APIRouter

from examengine.api.attempts import router as attempts_router
from examengine.api.leaderboard import router as leaderboard_router

router = APIRouter(prefix="/api/v1")
router.include_router(attempts_router)
router.include_router(leaderboard_router)
