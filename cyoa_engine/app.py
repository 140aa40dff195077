import logging
from pathlib import Path

from fastapi import FastAPI

from cyoa_engine.config import load_config
from cyoa_engine.engine import TurnEngine
from cyoa_engine.generator import create_generator
from cyoa_engine.images import create_image_generator
from cyoa_engine.persistence import SessionRepository
from cyoa_engine.routes import router
from cyoa_engine.store import FileStore

logger = logging.getLogger(__name__)


def create_app(data_dir: Path | None = None, engine: TurnEngine | None = None) -> FastAPI:
    """Build the API app around one TurnEngine, resuming any saved session."""
    if engine is None:
        config = load_config()
        if data_dir is not None:
            config = config.model_copy(update={"data_dir": data_dir})
        repository = SessionRepository(
            FileStore(config.data_dir),
            credential_configured=config.credential_configured,
        )
        engine = TurnEngine(
            generator_factory=lambda selection: create_generator(config, selection),
            images=create_image_generator(config),
            repository=repository,
            config=config,
        )
        if engine.resume():
            logger.info("Resumed saved session from %s", config.data_dir)
        elif engine.notice:
            logger.warning(engine.notice)

    app = FastAPI(title="CYOA Engine")
    app.state.engine = engine
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses CYOA_DATA_DIR or ./data)
app = create_app()
