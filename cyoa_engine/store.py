"""Durable key-value stores for saved sessions.

    class KeyValueStore(Protocol):
        def get(self, key) -> str | None: ...
        def set(self, key, value) -> None: ...
        def delete(self, key) -> None: ...

Values are opaque strings; the repository layer owns their JSON shape.

Directory layout used by FileStore:

    {base}/
      {slugified key}.json
"""

from __future__ import annotations

import re
import unicodedata
from pathlib import Path
from typing import Protocol


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


def slugify(key: str) -> str:
    """Convert a store key to a filesystem-safe file stem.

    "cyoa_saved_game" → "cyoa-saved-game"
    """
    text = unicodedata.normalize("NFKD", key)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"['\"]", "", text)
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = text.strip("-")
    return text or "untitled"


class MemoryStore:
    """In-process store; contents vanish with the process."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileStore:
    """One file per key under a base directory."""

    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._base / f"{slugify(key)}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        # readers only ever see a complete file
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
