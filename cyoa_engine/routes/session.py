"""Health, session view, settings, world info and save/export/import endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse

from cyoa_engine.engine import TurnEngine

from .deps import engine_errors, get_engine, session_view
from .models import ImportBody, UpdateSettings, WorldInfoBody

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/session")
async def get_session(engine: TurnEngine = Depends(get_engine)):
    """Current session, turn state and any pending error or notice."""
    return session_view(engine)


@router.patch("/settings")
async def update_settings(body: UpdateSettings, engine: TurnEngine = Depends(get_engine)):
    """Update session settings (partial merge)."""
    with engine_errors():
        return engine.update_settings(**body.model_dump(exclude_none=True))


@router.put("/world-info")
async def replace_world_info(body: WorldInfoBody, engine: TurnEngine = Depends(get_engine)):
    with engine_errors():
        engine.update_world_info(body.entries, body.summary)
    return session_view(engine)


@router.post("/world-info/structure")
async def structure_world_info(engine: TurnEngine = Depends(get_engine)):
    """Split unstructured world lore into keyed entries."""
    with engine_errors():
        await engine.structure_world_info()
    return session_view(engine)


@router.post("/save")
async def save(engine: TurnEngine = Depends(get_engine)):
    with engine_errors():
        saved = engine.save()
    return {"ok": saved, "notice": engine.notice}


@router.get("/export", response_class=PlainTextResponse)
async def export_session(engine: TurnEngine = Depends(get_engine)):
    """The session as a portable JSON document."""
    with engine_errors():
        document = engine.export_document()
    return PlainTextResponse(
        document,
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="cyoa-save.json"'},
    )


@router.post("/import")
async def import_session(body: ImportBody, engine: TurnEngine = Depends(get_engine)):
    """Replace the session with an exported document."""
    if not body.document.strip():
        raise HTTPException(400, "Import document is empty")
    with engine_errors():
        engine.import_document(body.document)
    return session_view(engine)
