"""Shared route helpers: engine lookup and domain-error translation."""

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, Request

from cyoa_engine.engine import TurnEngine, TurnInProgressError, UserInputError
from cyoa_engine.generator import GeneratorError
from cyoa_engine.migrations import PersistenceCorruption

from .models import SessionView


def get_engine(request: Request) -> TurnEngine:
    return request.app.state.engine


@contextmanager
def engine_errors() -> Iterator[None]:
    """Translate engine exceptions into HTTP errors."""
    try:
        yield
    except TurnInProgressError as e:
        raise HTTPException(409, str(e))
    except UserInputError as e:
        raise HTTPException(400, str(e))
    except GeneratorError as e:
        raise HTTPException(502, str(e))
    except PersistenceCorruption as e:
        raise HTTPException(422, str(e))


def session_view(engine: TurnEngine) -> SessionView:
    return SessionView(
        turn_state=engine.turn_state.value,
        error=engine.error,
        notice=engine.notice,
        can_undo=engine.can_undo,
        session=engine.state.model_dump(mode="json"),
    )
