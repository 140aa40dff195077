"""World lore helpers: snippet retrieval and structured-entry parsing."""

import json
import logging
import re

from cyoa_engine.models import WorldInfoEntry

logger = logging.getLogger(__name__)

_SENTENCE_BREAK = re.compile(r"(?<!\w\.\w.)(?<![A-Z][a-z]\.)(?<=[.?])\s")


def retrieve_relevant_snippets(query: str, corpus: str, count: int = 3) -> list[str]:
    """Return up to ``count`` lore sentences sharing the most words with ``query``.

    Only query words longer than three characters count. Ties keep corpus
    order.
    """
    if not corpus.strip() or count <= 0:
        return []
    query_words = {w for w in query.lower().split() if len(w) > 3}
    if not query_words:
        return []

    scored: list[tuple[int, int, str]] = []
    for position, sentence in enumerate(_SENTENCE_BREAK.split(corpus)):
        words = set(sentence.lower().split())
        score = len(words & query_words)
        if score > 0:
            scored.append((score, position, sentence.strip()))

    scored.sort(key=lambda item: (-item[0], item[1]))
    return [sentence for _, _, sentence in scored[:count]]


def with_relevant_lore(action: str, corpus: str, count: int = 3) -> str:
    """The message actually sent to the generator for a player action."""
    snippets = retrieve_relevant_snippets(action, corpus, count)
    if not snippets:
        return action
    lore = "\n".join(snippets)
    return f"{action}\n\n[RELEVANT WORLD LORE]\n{lore}\n[/RELEVANT WORLD LORE]"


def parse_world_entries(text: str) -> list[WorldInfoEntry] | None:
    """Parse structuring output into WorldInfo entries, stripping markdown fences.

    Returns None when the output is not usable, so callers can keep the
    unstructured originals.
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning("World structuring output is not valid JSON: %s", e)
        return None
    if not isinstance(data, dict):
        return None

    entries: list[WorldInfoEntry] = []
    seen: set[str] = set()
    for raw in data.get("entries", []):
        if not isinstance(raw, dict):
            continue
        key = str(raw.get("key", "")).strip()
        content = str(raw.get("content", "")).strip()
        if not key or not content or key.lower() in seen:
            continue
        seen.add(key.lower())
        entries.append(WorldInfoEntry(key=key, content=content))
    return entries or None
