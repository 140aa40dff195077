"""FastAPI API endpoints under /api.

Endpoint groups: session (health, session view, settings, world info,
save/export/import) and game (new game, turn, undo, regenerate, image retry,
portrait, restart). Every handler reads the TurnEngine from ``app.state`` and
returns the resulting session view.
"""

from fastapi import APIRouter

from .game import router as game_router
from .session import router as session_router

router = APIRouter()
router.include_router(session_router)
router.include_router(game_router)
