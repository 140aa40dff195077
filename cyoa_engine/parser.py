"""Generator reply parsing into clean narrative text + TurnEffects.

parse_response() is pure: it runs one extract-and-remove pass per known tag,
collects multi-valued tags in source order and discards malformed payloads
one directive at a time. It never raises on generator output.
"""

from __future__ import annotations

import json
import logging
import re

from pydantic import ValidationError

from cyoa_engine.models import (
    NPC,
    Annotation,
    InventoryItem,
    NPCPatch,
    TurnEffects,
)
from cyoa_engine.tags import (
    ANNOTATION_PATTERN,
    OPEN_MARKER,
    STRIPPED_TAGS,
    TagSpec,
    split_pipe,
)

logger = logging.getLogger(__name__)

_INNER_SPACES = re.compile(r"(?<=\S)[ \t]{2,}")
_TRAILING_SPACES = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_RUNS = re.compile(r"\n{3,}")


def parse_response(text: str) -> TurnEffects:
    """Extract every known directive from ``text`` and return the effects."""
    effects = TurnEffects()
    backstory_parts: list[str] = []
    cleaned = text or ""

    for spec in STRIPPED_TAGS:
        payloads = [m.group(1) for m in spec.pattern.finditer(cleaned)]
        if not payloads:
            continue
        cleaned = spec.pattern.sub("", cleaned)
        for payload in payloads:
            if spec.effect == "backstory_entry":
                if payload.strip():
                    backstory_parts.append(payload.strip())
                continue
            _collect(effects, spec, payload)

    if backstory_parts:
        effects.backstory_entry = "\n\n".join(backstory_parts)

    for m in ANNOTATION_PATTERN.finditer(cleaned):
        effects.annotations.append(Annotation(kind=m.group(1), text=m.group(2).strip()))

    effects.text = tidy_whitespace(cleaned)
    return effects


def _collect(effects: TurnEffects, spec: TagSpec, payload: str) -> None:
    """Route one directive payload into ``effects``; drop it if malformed."""
    if spec.payload == "json":
        data = _parse_json_payload(spec.name, payload)
        if data is None:
            return
        try:
            if spec.effect == "created_npcs":
                effects.created_npcs.append(NPC.model_validate(data))
            else:
                effects.npc_updates.append(NPCPatch.model_validate(data))
        except ValidationError as e:
            logger.warning("Discarding [%s] with invalid fields: %s", spec.name, e)
        return

    if spec.payload == "pipe":
        parts = split_pipe(payload, spec.fields)
        if parts is None:
            logger.warning("Discarding [%s] payload %r: expected %d field(s)",
                           spec.name, payload, spec.fields)
            return
        if spec.effect == "added_items":
            effects.added_items.append(InventoryItem(name=parts[0], description=parts[1]))
        elif spec.effect == "removed_items":
            effects.removed_items.append(parts[0])
        elif spec.effect == "skill_updates":
            try:
                effects.skill_updates[parts[0]] = int(parts[1])
            except ValueError:
                logger.warning("Discarding [%s] with non-numeric value %r", spec.name, parts[1])
        return

    value = payload.strip()
    if not value:
        return
    if spec.cardinality == "multi":
        getattr(effects, spec.effect).append(value)
    else:
        # single-valued: last occurrence wins
        setattr(effects, spec.effect, value)


def _parse_json_payload(tag: str, payload: str) -> dict | None:
    try:
        data = json.loads(payload.strip())
    except json.JSONDecodeError as e:
        logger.warning("Discarding [%s] with malformed JSON: %s", tag, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Discarding [%s]: payload is not a JSON object", tag)
        return None
    return data


def tidy_whitespace(text: str) -> str:
    """Collapse whitespace left behind by removed directives."""
    text = _INNER_SPACES.sub(" ", text)
    text = _TRAILING_SPACES.sub("", text)
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip()


def render_preview(raw: str) -> str:
    """Display text for a reply that is still streaming.

    Complete directives are removed; anything from an unclosed known opening
    marker onward is hidden until the directive closes.
    """
    preview = raw
    for spec in STRIPPED_TAGS:
        preview = spec.pattern.sub("", preview)
    m = OPEN_MARKER.search(preview)
    if m:
        preview = preview[: m.start()]
    return tidy_whitespace(preview)
