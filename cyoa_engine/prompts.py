"""Handlebars prompt rendering for the game-master system instruction.

Templates use triple-stash ``{{{var}}}`` throughout: prompts are plain text,
so HTML escaping would corrupt quotes and apostrophes in player lore.
"""

from collections.abc import Callable
from typing import Any

import pybars

from cyoa_engine.models import GameMasterMode, SessionState

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


MODE_INSTRUCTIONS: dict[GameMasterMode, str] = {
    GameMasterMode.BALANCED: "Maintain a balanced pace, blending rich storytelling with moments of action.",
    GameMasterMode.NARRATIVE: "Prioritize deep character development, rich world-building, and descriptive prose.",
    GameMasterMode.ACTION: "Prioritize fast-paced events, high-stakes conflicts, and challenging scenarios.",
}

SYSTEM_TEMPLATE = """\
You are a master storyteller and game master for an interactive text-based CYOA game.
Your Game Master mode is: {{{gm_mode}}}. {{{mode_instruction}}}

--- CORE RULES ---
1.  **World Summary:** This is the core truth of the world. Additional, hyper-relevant details will be injected into prompts as needed.
    --- WORLD SUMMARY START ---
    {{{world_summary}}}
    --- WORLD SUMMARY END ---

2.  **Player Character:** The player's appearance is "{{{character.description}}}". Class: {{{character.character_class}}}. Alignment: {{{character.alignment}}}. Backstory: {{{character.backstory}}}.
{{#if skills}}
    Skills: {{{skills}}}.
{{/if}}

3.  **Character & World Progression:** You MUST signal changes using these tags:
    *   To update appearance: `[char-img-prompt]New, complete description.[/char-img-prompt]`
    *   To change class or alignment: `[update-class]Class[/update-class]`, `[update-alignment]Alignment[/update-alignment]`
    *   To add to the character's journal: `[update-backstory]Summary of key events.[/update-backstory]`
    *   To manage inventory: `[add-item]Item Name|Description[/add-item]` or `[remove-item]Item Name[/remove-item]`.
    *   To change a skill: `[update-skill]Skill Name|New Value[/update-skill]` (whole numbers, usually 1-20).
    *   To introduce an NPC: `[create-npc]{"id": "...", "name": "...", "description": "...", "hp": 10, "maxHp": 10, "isHostile": false}[/create-npc]`
    *   To change an NPC: `[update-npc]{"id": "...", "hp": 4}[/update-npc]` (only the changed fields). To remove one: `[remove-npc]id[/remove-npc]`.
    *   Annotate dice moments inline with `[skill-check]...[/skill-check]` or `[combat]...[/combat]`; these stay visible to the player.
{{#if dynamic_backgrounds}}
    *   **Background Prompt:** At the START of your narrative text, you MUST include a short phrase describing the primary environment, e.g. `[background-prompt]misty forest[/background-prompt]`.
{{/if}}

4.  **Image Prompts:** Generate image prompts for scenes (`[img-prompt]`) that are faithful to the narrative and the art style: "{{{art_style}}}". Focus on cinematic language, tension, and atmosphere, NOT explicit violence or gore.

5.  **Response Format:** Structure EVERY response in this sequence:
{{#if dynamic_backgrounds}}
    1.  `[background-prompt]` (MUST be first)
{{/if}}
    2.  Story Text
    3.  `[img-prompt]`
    4.  Any other update tags
    5.  3-4 distinct player choices, each in its own `[choice]` tag.
    6.  End with the exact question: "What do you do?"
"""

SUMMARIZE_TEMPLATE = """\
You are a world-building assistant. Read the following extensive world lore and distill it into a concise, high-level summary. This summary will serve as the core, long-term memory for a Game Master AI. Focus on key locations, major factions, overarching history, fundamental rules of magic/technology, and the general tone of the world. Output ONLY the summary.

--- WORLD LORE START ---
{{{lore}}}
--- WORLD LORE END ---"""

STRUCTURE_TEMPLATE = """\
You are a world-building assistant. Split the following world lore into separate entries, one per location, person, faction, event, item or concept.

Return JSON: {"entries": [{"key": "<short title>", "content": "<everything the lore says about it>"}]}
Return only the JSON object.

--- WORLD LORE START ---
{{{lore}}}
--- WORLD LORE END ---"""

ENHANCE_BACKSTORY_TEMPLATE = """\
You are a creative writing assistant. Take the following character backstory and enrich it with compelling details, plot hooks, and internal conflicts, making it more engaging for a text-based adventure game. Preserve the core concepts and match the tone of the original. Output ONLY the enhanced backstory.

--- USER BACKSTORY START ---
{{{text}}}
--- USER BACKSTORY END ---"""

ENHANCE_WORLD_TEMPLATE = """\
You are a master world-builder. Expand the following lore into a comprehensive World Bible:
1.  Identify every location, person, faction, historical event, significant item and unique concept.
2.  Give each one a detailed entry: geography and culture for places, personality and motives for people, goals and influence for factions.
3.  Keep everything internally consistent and draw new connections between entries without overriding the core vision.
Use clear Markdown headings for each section and entry. Do not add commentary. Output ONLY the World Bible.

--- USER PROVIDED WORLD LORE START ---
{{{text}}}
--- USER PROVIDED WORLD LORE END ---"""

SUGGEST_CLASS_TEMPLATE = """\
Based on the following character backstory, suggest a single, concise fantasy RPG class (e.g., Rogue, Sorcerer, Paladin, Ranger). Output ONLY the class name.

--- BACKSTORY ---
{{{backstory}}}"""

ENHANCE_TEMPLATES = {
    "backstory": ENHANCE_BACKSTORY_TEMPLATE,
    "world": ENHANCE_WORLD_TEMPLATE,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def system_context(state: SessionState) -> dict[str, Any]:
    """Template variables for SYSTEM_TEMPLATE."""
    settings = state.settings
    return {
        "gm_mode": settings.gm_mode.value,
        "mode_instruction": MODE_INSTRUCTIONS[settings.gm_mode],
        "world_summary": state.world_summary or state.world_text(),
        "character": state.character.model_dump(exclude={"portraits", "skills"}),
        "skills": ", ".join(f"{k} {v}" for k, v in state.character.skills.items()),
        "art_style": settings.art_style,
        "dynamic_backgrounds": settings.dynamic_backgrounds,
    }


def build_system_instruction(state: SessionState) -> str:
    return render_prompt(SYSTEM_TEMPLATE, system_context(state))


def summarize_prompt(lore: str) -> str:
    return render_prompt(SUMMARIZE_TEMPLATE, {"lore": lore})


def structure_prompt(lore: str) -> str:
    return render_prompt(STRUCTURE_TEMPLATE, {"lore": lore})


def enhance_prompt(kind: str, text: str) -> str:
    return render_prompt(ENHANCE_TEMPLATES[kind], {"text": text})


def suggest_class_prompt(backstory: str) -> str:
    return render_prompt(SUGGEST_CLASS_TEMPLATE, {"backstory": backstory})
