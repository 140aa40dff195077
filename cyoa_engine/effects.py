"""Applying parsed TurnEffects to session state.

apply_effects() works on a deep copy and returns it; the caller swaps the copy
in as a whole. Nothing here mutates the state it was given, so a failure part
way through leaves the live session untouched.

Ordering within one turn:
  inventory  - removals first, then additions; a later addition with the same
               name replaces an earlier one (in place for existing items)
  NPCs       - creations (upsert by id), then patches, then removals
Unknown item names and NPC ids are dropped silently.
"""

import logging

from cyoa_engine.models import (
    NPC,
    CharacterPortrait,
    ChatMessage,
    InventoryItem,
    NarratorEntry,
    SessionState,
    TurnEffects,
)

logger = logging.getLogger(__name__)


def apply_effects(
    state: SessionState,
    effects: TurnEffects,
    *,
    entry_index: int,
    history: list[ChatMessage],
    scene_image_pending: bool = False,
) -> SessionState:
    """Return a new state with ``effects`` applied and the narrator entry finalized."""
    placeholder = state.transcript[entry_index]
    if not isinstance(placeholder, NarratorEntry):
        raise ValueError(f"Transcript entry {entry_index} is not a narrator entry")

    new = state.model_copy(deep=True)

    _apply_character(new, effects)
    new.inventory = apply_inventory(new.inventory, effects.added_items, effects.removed_items)
    new.npcs = apply_npcs(new.npcs, effects)

    new.transcript[entry_index] = NarratorEntry(
        text=effects.text,
        image_prompt=effects.image_prompt,
        image_loading=scene_image_pending,
        choices=list(effects.choices),
        background_prompt=effects.background_prompt,
        streaming=False,
    )
    new.history = [m.model_copy() for m in history]
    return new


def _apply_character(state: SessionState, effects: TurnEffects) -> None:
    character = state.character
    description = effects.character_description
    if description and description != character.description:
        character.description = description
        character.portraits.append(CharacterPortrait(prompt=description))
    if effects.character_class:
        character.character_class = effects.character_class
    if effects.alignment:
        character.alignment = effects.alignment
    if effects.backstory_entry:
        character.append_backstory(effects.backstory_entry)
    # values are stored as given; range is the generator's convention
    character.skills.update(effects.skill_updates)


def apply_inventory(
    inventory: list[InventoryItem],
    added: list[InventoryItem],
    removed: list[str],
) -> list[InventoryItem]:
    items = {item.name: item for item in inventory}
    for name in removed:
        if items.pop(name, None) is None:
            logger.debug("remove-item for unknown item %r ignored", name)
    for item in added:
        items[item.name] = item.model_copy()
    return list(items.values())


def apply_npcs(npcs: list[NPC], effects: TurnEffects) -> list[NPC]:
    by_id = {npc.id: npc for npc in npcs}
    for npc in effects.created_npcs:
        by_id[npc.id] = npc.model_copy()
    for patch in effects.npc_updates:
        current = by_id.get(patch.id)
        if current is None:
            logger.debug("update-npc for unknown id %r ignored", patch.id)
            continue
        by_id[patch.id] = patch.apply_to(current)
    for npc_id in effects.removed_npc_ids:
        if by_id.pop(npc_id, None) is None:
            logger.debug("remove-npc for unknown id %r ignored", npc_id)
    return list(by_id.values())
