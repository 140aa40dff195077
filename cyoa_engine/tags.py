"""Directive tag grammar.

A directive is an inline ``[name]payload[/name]`` marker in generator output.
Payload shapes:

  text  - free text, trimmed
  pipe  - ``field|field`` with an exact field count per tag
  json  - a JSON object (NPC directives)

Tags not listed here are never touched by the parser. ``skill-check`` and
``combat`` are annotations: recognised and recorded, but left in the text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

PayloadShape = Literal["text", "pipe", "json"]
Cardinality = Literal["single", "multi", "annotation"]


@dataclass(frozen=True)
class TagSpec:
    name: str
    effect: str  # TurnEffects attribute (or handler key) the payload feeds
    cardinality: Cardinality = "single"
    payload: PayloadShape = "text"
    fields: int = 1  # exact field count for pipe payloads
    pattern: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        name = re.escape(self.name)
        object.__setattr__(
            self, "pattern", re.compile(rf"\[{name}\](.*?)\[/{name}\]", re.DOTALL)
        )


TAGS: tuple[TagSpec, ...] = (
    TagSpec("scene-tag", "background_prompt"),
    TagSpec("background-prompt", "background_prompt"),
    TagSpec("img-prompt", "image_prompt"),
    TagSpec("char-img-prompt", "character_description"),
    TagSpec("update-class", "character_class"),
    TagSpec("update-alignment", "alignment"),
    TagSpec("update-backstory", "backstory_entry", cardinality="multi"),
    TagSpec("add-item", "added_items", cardinality="multi", payload="pipe", fields=2),
    TagSpec("remove-item", "removed_items", cardinality="multi", payload="pipe", fields=1),
    TagSpec("update-skill", "skill_updates", cardinality="multi", payload="pipe", fields=2),
    TagSpec("create-npc", "created_npcs", cardinality="multi", payload="json"),
    TagSpec("update-npc", "npc_updates", cardinality="multi", payload="json"),
    TagSpec("remove-npc", "removed_npc_ids", cardinality="multi"),
    TagSpec("choice", "choices", cardinality="multi"),
    TagSpec("skill-check", "annotations", cardinality="annotation"),
    TagSpec("combat", "annotations", cardinality="annotation"),
)

TAGS_BY_NAME: dict[str, TagSpec] = {spec.name: spec for spec in TAGS}

STRIPPED_TAGS: tuple[TagSpec, ...] = tuple(t for t in TAGS if t.cardinality != "annotation")

# Any known opening marker; used to hide a directive that has not closed yet.
_names = "|".join(re.escape(t.name) for t in STRIPPED_TAGS)
OPEN_MARKER = re.compile(rf"\[(?:{_names})\]")

_annotation_names = "|".join(re.escape(t.name) for t in TAGS if t.cardinality == "annotation")
ANNOTATION_PATTERN = re.compile(rf"\[({_annotation_names})\](.*?)\[/\1\]", re.DOTALL)


def split_pipe(payload: str, expected: int) -> list[str] | None:
    """Split a ``field|field`` payload; None unless it has exactly ``expected`` fields."""
    parts = [p.strip() for p in payload.split("|")]
    if len(parts) != expected:
        return None
    if not all(parts):
        return None
    return parts
