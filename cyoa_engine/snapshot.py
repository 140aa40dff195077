"""Single-slot pre-turn snapshot used by undo and regenerate."""

from cyoa_engine.models import SessionState


class UndoSlot:
    """Holds at most one deep copy of the session, taken just before a turn.

    capture() replaces any earlier snapshot; take() hands the snapshot over
    and empties the slot, so a second undo in a row finds nothing.
    """

    def __init__(self) -> None:
        self._snapshot: SessionState | None = None

    def capture(self, state: SessionState) -> None:
        self._snapshot = state.model_copy(deep=True)

    def peek(self) -> SessionState | None:
        return self._snapshot

    def take(self) -> SessionState | None:
        snapshot, self._snapshot = self._snapshot, None
        return snapshot

    def clear(self) -> None:
        self._snapshot = None

    @property
    def available(self) -> bool:
        return self._snapshot is not None
