"""Saved-session schema versions and forward migrations.

Known record shapes:

  v1  unversioned; flat ``worldData`` string, flat character fields
      (characterDescription, characterClass, alignment, backstory,
      characterPortraits), single ``isImageGenerationEnabled`` flag
  v2  unversioned; ``fullWorldData`` + ``worldSummary``, nested ``character``,
      ``inventory``, ``settings`` (may still carry one ``imageGeneration`` flag)
  v3  {"version": 3, "session": {...}} snake_case; may lack ``npcs``,
      ``character.skills`` and ``settings.model_selection``
  v4  current

MIGRATIONS maps a version to the function producing the next version's shape.
migrate() walks the table until CURRENT_VERSION, so a current record passes
through untouched.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from cyoa_engine.models import DEFAULT_ART_STYLE, GameMasterMode

logger = logging.getLogger(__name__)

CURRENT_VERSION = 4
LEGACY_WORLD_KEY = "World Lore"


class PersistenceCorruption(Exception):
    """A saved record could not be read or has an unrecognised shape."""


class UnsupportedVersion(PersistenceCorruption):
    """A saved record was written by a newer schema than this build knows."""


@dataclass(frozen=True)
class MigrationContext:
    credential_configured: bool = False


Record = dict[str, Any]
Migration = Callable[[Record, MigrationContext], Record]


def detect_version(record: Any) -> int:
    if not isinstance(record, dict):
        raise PersistenceCorruption("Saved record is not a JSON object")
    version = record.get("version")
    if isinstance(version, int) and not isinstance(version, bool):
        if not isinstance(record.get("session"), dict):
            raise PersistenceCorruption(f"Version {version} record has no session object")
        return version
    if "fullWorldData" in record:
        return 2
    if "worldData" in record:
        return 1
    raise PersistenceCorruption("Saved record has an unrecognised shape")


def migrate(record: Any, context: MigrationContext | None = None) -> Record:
    """Bring ``record`` up to CURRENT_VERSION. Returns a new dict."""
    context = context or MigrationContext()
    version = detect_version(record)
    if version > CURRENT_VERSION:
        raise UnsupportedVersion(
            f"Saved record is version {version}; this build supports up to {CURRENT_VERSION}"
        )
    if version < 1:
        raise PersistenceCorruption(f"Invalid record version {version}")
    while version < CURRENT_VERSION:
        logger.info("Migrating saved session v%d -> v%d", version, version + 1)
        try:
            record = MIGRATIONS[version](record, context)
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            raise PersistenceCorruption(f"Saved v{version} record is malformed: {e}") from e
        version += 1
    return record


# ---------------------------------------------------------------------------
# v1 → v2
# ---------------------------------------------------------------------------

def _v1_to_v2(record: Record, context: MigrationContext) -> Record:
    world = record.get("worldData") or ""
    return {
        "storyLog": record.get("storyLog") or [],
        "fullWorldData": world,
        "worldSummary": world,
        "chatHistory": record.get("chatHistory") or [],
        "character": {
            "portraits": record.get("characterPortraits") or [],
            "description": record.get("characterDescription") or "",
            "class": record.get("characterClass") or "",
            "alignment": record.get("alignment") or "",
            "backstory": record.get("backstory") or "",
        },
        "inventory": [],
        "settings": {
            "artStyle": record.get("artStyle") or DEFAULT_ART_STYLE,
            "gmMode": record.get("gameMasterMode") or GameMasterMode.BALANCED.value,
            "imageGeneration": record.get("isImageGenerationEnabled", True),
        },
    }


# ---------------------------------------------------------------------------
# v2 → v3
# ---------------------------------------------------------------------------

def _entry_v3(entry: Record) -> Record:
    if entry.get("type") == "player":
        return {"kind": "player", "text": entry.get("content") or ""}
    return {
        "kind": "narrator",
        "text": entry.get("content") or "",
        "image_url": entry.get("imageUrl"),
        "image_prompt": entry.get("imgPrompt"),
        "image_loading": False,
        "choices": entry.get("choices") or [],
        "background_prompt": entry.get("sceneTag"),
        "streaming": False,
    }


def _history_v3(item: Record) -> Record:
    # resumable history items were {role, parts: [{text}]}
    parts = item.get("parts") or []
    text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
    role = "model" if item.get("role") == "model" else "user"
    return {"role": role, "text": text}


def _gm_mode(value: Any) -> str:
    valid = {m.value for m in GameMasterMode}
    return value if value in valid else GameMasterMode.BALANCED.value


def _v2_to_v3(record: Record, context: MigrationContext) -> Record:
    world = record.get("fullWorldData") or ""
    world_info = []
    if world.strip():
        world_info.append({"key": LEGACY_WORLD_KEY, "content": world, "unstructured": True})

    legacy_character = record.get("character") or {}
    legacy_settings = dict(record.get("settings") or {})
    shared = legacy_settings.pop("imageGeneration", None)
    if isinstance(shared, bool):
        scene = portraits = shared
    else:
        scene = legacy_settings.get("generateSceneImages", True)
        portraits = legacy_settings.get("generateCharacterPortraits", True)

    session = {
        "world_info": world_info,
        "world_summary": record.get("worldSummary") or "",
        "transcript": [_entry_v3(e) for e in record.get("storyLog") or [] if isinstance(e, dict)],
        "character": {
            "description": legacy_character.get("description") or "",
            "character_class": legacy_character.get("class") or "",
            "alignment": legacy_character.get("alignment") or "",
            "backstory": legacy_character.get("backstory") or "",
            "portraits": [
                {"url": p.get("url"), "prompt": p.get("prompt") or ""}
                for p in legacy_character.get("portraits") or []
                if isinstance(p, dict)
            ],
        },
        "inventory": [
            {"name": i["name"], "description": i.get("description") or ""}
            for i in record.get("inventory") or []
            if isinstance(i, dict) and i.get("name")
        ],
        "history": [_history_v3(h) for h in record.get("chatHistory") or [] if isinstance(h, dict)],
        "settings": {
            "art_style": legacy_settings.get("artStyle") or DEFAULT_ART_STYLE,
            "gm_mode": _gm_mode(legacy_settings.get("gmMode")),
            "generate_scene_images": bool(scene),
            "generate_character_portraits": bool(portraits),
            "dynamic_backgrounds": bool(legacy_settings.get("dynamicBackgrounds", True)),
        },
    }
    return {"version": 3, "session": session}


# ---------------------------------------------------------------------------
# v3 → v4
# ---------------------------------------------------------------------------

def _v3_to_v4(record: Record, context: MigrationContext) -> Record:
    session = dict(record["session"])
    session.setdefault("npcs", [])
    character = dict(session.get("character") or {})
    character.setdefault("skills", {})
    session["character"] = character
    settings = dict(session.get("settings") or {})
    if "model_selection" not in settings:
        settings["model_selection"] = "hosted" if context.credential_configured else "local"
    session["settings"] = settings
    return {"version": 4, "session": session}


MIGRATIONS: dict[int, Migration] = {
    1: _v1_to_v2,
    2: _v2_to_v3,
    3: _v3_to_v4,
}
