"""Saved-session repository.

One versioned record under SAVE_KEY:

    {"version": 4, "session": {...SessionState...}}

save() is a full overwrite. load() never raises: unreadable records are purged
and reported through ``last_problem``; records from a newer schema are
reported and left alone. The same document format is used for file
export/import between devices.
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from cyoa_engine.migrations import (
    CURRENT_VERSION,
    MigrationContext,
    PersistenceCorruption,
    UnsupportedVersion,
    migrate,
)
from cyoa_engine.models import NarratorEntry, SessionState
from cyoa_engine.store import KeyValueStore

logger = logging.getLogger(__name__)

SAVE_KEY = "cyoa_saved_game"


def dump_document(state: SessionState) -> str:
    record = {"version": CURRENT_VERSION, "session": state.model_dump(mode="json")}
    return json.dumps(record, indent=2)


def parse_document(text: str, context: MigrationContext | None = None) -> SessionState:
    """Parse, migrate and validate a saved-session document.

    Raises PersistenceCorruption (or UnsupportedVersion) on anything unusable.
    """
    try:
        record = json.loads(text)
    except json.JSONDecodeError as e:
        raise PersistenceCorruption(f"Saved session is not valid JSON: {e}") from e
    record = migrate(record, context)
    try:
        state = SessionState.model_validate(record["session"])
    except ValidationError as e:
        raise PersistenceCorruption(f"Saved session failed validation: {e}") from e
    _settle_transient_flags(state)
    return state


def _settle_transient_flags(state: SessionState) -> None:
    # no turn or image call survives a reload
    for entry in state.transcript:
        if isinstance(entry, NarratorEntry):
            entry.streaming = False
            entry.image_loading = False


class SessionRepository:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        key: str = SAVE_KEY,
        credential_configured: bool = False,
    ) -> None:
        self._store = store
        self._key = key
        self._context = MigrationContext(credential_configured=credential_configured)
        self.last_problem: str | None = None

    def exists(self) -> bool:
        return self._store.get(self._key) is not None

    def save(self, state: SessionState) -> None:
        self._store.set(self._key, dump_document(state))
        logger.debug("Saved session (%d transcript entries)", len(state.transcript))

    def load(self) -> SessionState | None:
        """Return the saved session, or None if there is none usable."""
        self.last_problem = None
        try:
            text = self._store.get(self._key)
        except UnicodeDecodeError as e:
            return self._discard(e)
        if text is None:
            return None
        try:
            return parse_document(text, self._context)
        except UnsupportedVersion as e:
            logger.warning("Leaving saved session in place: %s", e)
            self.last_problem = str(e)
            return None
        except PersistenceCorruption as e:
            return self._discard(e)

    def _discard(self, error: Exception) -> None:
        logger.warning("Discarding corrupted saved session: %s", error)
        self.last_problem = "The saved game was unreadable and has been cleared."
        self._store.delete(self._key)

    def clear(self) -> None:
        self._store.delete(self._key)

    def export_document(self, state: SessionState) -> str:
        return dump_document(state)

    def import_document(self, text: str) -> SessionState:
        """Parse an exported document. Raises PersistenceCorruption if invalid."""
        return parse_document(text, self._context)
