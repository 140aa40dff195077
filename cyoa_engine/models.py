"""Core domain models.

Every engine stage, the persistence layer and the HTTP surface operate on
these types. Pydantic is used for validation and serialisation at every data
boundary; the persisted record is a plain ``model_dump(mode="json")`` of
``SessionState``.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class GameMasterMode(str, Enum):
    BALANCED = "Balanced"
    NARRATIVE = "Narrative Focus"
    ACTION = "Action Focus"


ModelSelection = Literal["hosted", "local"]
AspectRatio = Literal["16:9", "1:1"]
EnhanceKind = Literal["backstory", "world"]

ART_STYLES: dict[str, str] = {
    "Photorealistic": "Ultra-realistic, 8K resolution, sharp focus, detailed skin texture, professional studio lighting",
    "Cinematic Film": "Shot on 35mm film, subtle grain, anamorphic lens flare, moody and atmospheric lighting, high dynamic range",
    "Digital Painting": "Concept art style, visible brush strokes, dramatic lighting, epic fantasy aesthetic, highly detailed",
    "Anime/Manga": "Modern anime style, vibrant colors, sharp lines, dynamic action poses, cel-shaded",
    "Cyberpunk Neon": "Saturated neon colors, futuristic cityscape, rain-slicked streets, dystopian mood, Blade Runner aesthetic",
}
DEFAULT_ART_STYLE = ART_STYLES["Cinematic Film"]


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

class PlayerEntry(BaseModel):
    """An action typed by the player."""

    kind: Literal["player"] = "player"
    text: str


class NarratorEntry(BaseModel):
    """One generator reply, as shown to the player."""

    kind: Literal["narrator"] = "narrator"
    text: str = ""
    image_url: str | None = None
    image_prompt: str | None = None
    image_loading: bool = False
    choices: list[str] = Field(default_factory=list)
    background_prompt: str | None = None
    streaming: bool = False


TranscriptEntry = Annotated[Union[PlayerEntry, NarratorEntry], Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Character, inventory, NPCs
# ---------------------------------------------------------------------------

class CharacterPortrait(BaseModel):
    url: str | None = None
    prompt: str


class Character(BaseModel):
    """The player character. Backstory and portraits only ever grow."""

    description: str = ""
    character_class: str = ""
    alignment: str = ""
    backstory: str = ""
    skills: dict[str, int] = Field(default_factory=dict)
    portraits: list[CharacterPortrait] = Field(default_factory=list)

    @property
    def current_portrait(self) -> CharacterPortrait | None:
        return self.portraits[-1] if self.portraits else None

    def append_backstory(self, entry: str) -> None:
        if self.backstory:
            self.backstory = f"{self.backstory}\n\n---\n\n{entry}"
        else:
            self.backstory = entry


class NewCharacter(BaseModel):
    """Player-supplied character details for a new game."""

    description: str
    character_class: str | None = None
    alignment: str | None = None
    backstory: str | None = None

    def to_character(self) -> Character:
        return Character(
            description=self.description,
            character_class=self.character_class or "Adventurer",
            alignment=self.alignment or "True Neutral",
            backstory=self.backstory or "A mysterious past awaits.",
        )


class InventoryItem(BaseModel):
    name: str  # unique within an inventory
    description: str


class NPC(BaseModel):
    """A non-player character created by a ``create-npc`` directive.

    Directive payloads use camelCase (``maxHp``, ``isHostile``); both
    spellings validate. hp is stored exactly as given, never clamped.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    description: str = ""
    hp: int = 0
    max_hp: int = Field(0, alias="maxHp")
    is_hostile: bool = Field(False, alias="isHostile")


class NPCPatch(BaseModel):
    """Partial NPC update; only fields present in the directive change."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str | None = None
    description: str | None = None
    hp: int | None = None
    max_hp: int | None = Field(None, alias="maxHp")
    is_hostile: bool | None = Field(None, alias="isHostile")

    def apply_to(self, npc: NPC) -> NPC:
        changes = self.model_dump(exclude_unset=True, exclude_none=True, exclude={"id"})
        return npc.model_copy(update=changes)


# ---------------------------------------------------------------------------
# World, settings, generator history
# ---------------------------------------------------------------------------

class WorldInfoEntry(BaseModel):
    key: str
    content: str
    unstructured: bool = False  # pending AI structuring


class Settings(BaseModel):
    art_style: str = DEFAULT_ART_STYLE
    gm_mode: GameMasterMode = GameMasterMode.BALANCED
    generate_scene_images: bool = True
    generate_character_portraits: bool = True
    dynamic_backgrounds: bool = True
    model_selection: ModelSelection = "hosted"


class ChatMessage(BaseModel):
    """One element of the generator's resumable history."""

    role: Literal["user", "model"]
    text: str


class SessionState(BaseModel):
    world_info: list[WorldInfoEntry] = Field(default_factory=list)
    world_summary: str = ""
    transcript: list[TranscriptEntry] = Field(default_factory=list)
    character: Character = Field(default_factory=Character)
    inventory: list[InventoryItem] = Field(default_factory=list)
    npcs: list[NPC] = Field(default_factory=list)
    history: list[ChatMessage] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)

    def world_text(self) -> str:
        """All world lore as one text block, used for snippet retrieval."""
        return "\n\n".join(e.content for e in self.world_info if e.content.strip())

    def last_player_action(self) -> str | None:
        for entry in reversed(self.transcript):
            if isinstance(entry, PlayerEntry):
                return entry.text
        return None


# ---------------------------------------------------------------------------
# Parse result
# ---------------------------------------------------------------------------

class Annotation(BaseModel):
    """A ``skill-check`` or ``combat`` annotation, kept in the narrative text."""

    kind: Literal["skill-check", "combat"]
    text: str


class TurnEffects(BaseModel):
    """Structured result of parsing one generator reply."""

    text: str = ""
    image_prompt: str | None = None
    background_prompt: str | None = None
    character_description: str | None = None
    character_class: str | None = None
    alignment: str | None = None
    backstory_entry: str | None = None
    added_items: list[InventoryItem] = Field(default_factory=list)
    removed_items: list[str] = Field(default_factory=list)
    skill_updates: dict[str, int] = Field(default_factory=dict)
    created_npcs: list[NPC] = Field(default_factory=list)
    npc_updates: list[NPCPatch] = Field(default_factory=list)
    removed_npc_ids: list[str] = Field(default_factory=list)
    choices: list[str] = Field(default_factory=list)
    annotations: list[Annotation] = Field(default_factory=list)
