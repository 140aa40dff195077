"""New game, setup helpers, turn, undo/regenerate, image retry and restart endpoints."""

from fastapi import APIRouter, Depends

from cyoa_engine.engine import TurnEngine

from .deps import engine_errors, get_engine, session_view
from .models import EnhanceBody, NewGameBody, SuggestClassBody, TurnBody

router = APIRouter()


@router.post("/game")
async def new_game(body: NewGameBody, engine: TurnEngine = Depends(get_engine)):
    """Start a new session and play the opening turn."""
    with engine_errors():
        await engine.start_game(body.world, body.character, body.opening_action, body.settings)
    return session_view(engine)


@router.post("/enhance")
async def enhance(body: EnhanceBody, engine: TurnEngine = Depends(get_engine)):
    """Expand a backstory or world lore draft before starting a game."""
    with engine_errors():
        text = await engine.enhance_text(body.kind, body.text)
    return {"text": text, "notice": engine.notice}


@router.post("/suggest-class")
async def suggest_class(body: SuggestClassBody, engine: TurnEngine = Depends(get_engine)):
    with engine_errors():
        character_class = await engine.suggest_character_class(body.backstory)
    return {"character_class": character_class}


@router.post("/turn")
async def play_turn(body: TurnBody, engine: TurnEngine = Depends(get_engine)):
    """Submit a player action and wait for the finalized narrator entry."""
    with engine_errors():
        await engine.submit(body.action)
    return session_view(engine)


@router.post("/undo")
async def undo(engine: TurnEngine = Depends(get_engine)):
    """Restore the pre-turn snapshot. A refused undo still returns 200 with a notice."""
    with engine_errors():
        engine.undo()
    return session_view(engine)


@router.post("/regenerate")
async def regenerate(engine: TurnEngine = Depends(get_engine)):
    """Replay the last action against the pre-turn snapshot."""
    with engine_errors():
        await engine.regenerate_last_response()
    return session_view(engine)


@router.post("/entries/{index}/image")
async def retry_entry_image(index: int, engine: TurnEngine = Depends(get_engine)):
    """Regenerate the scene image of one narrator entry."""
    with engine_errors():
        await engine.retry_entry_image(index)
    return session_view(engine)


@router.post("/portrait")
async def regenerate_portrait(engine: TurnEngine = Depends(get_engine)):
    with engine_errors():
        await engine.regenerate_portrait()
    return session_view(engine)


@router.post("/restart")
async def restart(engine: TurnEngine = Depends(get_engine)):
    """Discard the session and the saved game."""
    with engine_errors():
        engine.restart()
    return session_view(engine)
