"""Pydantic request/response models for API endpoints."""

from typing import Any

from pydantic import BaseModel

from cyoa_engine.models import (
    EnhanceKind,
    GameMasterMode,
    ModelSelection,
    NewCharacter,
    Settings,
    WorldInfoEntry,
)


class NewGameBody(BaseModel):
    world: str = ""
    character: NewCharacter
    opening_action: str
    settings: Settings | None = None


class TurnBody(BaseModel):
    action: str


class EnhanceBody(BaseModel):
    kind: EnhanceKind
    text: str


class SuggestClassBody(BaseModel):
    backstory: str


class UpdateSettings(BaseModel):
    art_style: str | None = None
    gm_mode: GameMasterMode | None = None
    generate_scene_images: bool | None = None
    generate_character_portraits: bool | None = None
    dynamic_backgrounds: bool | None = None
    model_selection: ModelSelection | None = None


class WorldInfoBody(BaseModel):
    entries: list[WorldInfoEntry]
    summary: str | None = None


class ImportBody(BaseModel):
    document: str


class SessionView(BaseModel):
    turn_state: str
    error: str | None = None
    notice: str | None = None
    can_undo: bool
    session: dict[str, Any]
