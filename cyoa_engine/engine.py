"""Turn engine - one player turn at a time, end to end.

States:

    IDLE ──submit──▶ TURN_SUBMITTED ──▶ STREAMING ──▶ RESOLVING ──▶ IDLE
                          │                 │              │
                          └────────────▶  FAILED  ◀────────┘

Turn flow:
  1. Reject empty actions and anything while a turn is in flight.
  2. Capture the pre-turn snapshot (skipped for the opening turn of a game).
  3. Append the player entry and a streaming narrator placeholder.
  4. Stream the reply through StreamBuffer, updating the placeholder with a
     tag-free preview. Rate-limit and empty replies are retried with backoff.
  5. Parse the full reply and swap in the new state in one assignment:
     character, inventory, NPCs, finalized narrator entry, resumable history.
  6. Generate the scene image / portrait (non-fatal), then return to IDLE and
     autosave.

On a generator error the placeholder stops streaming, ``error`` is set, the
state moves to FAILED and the exception propagates. The snapshot stays, so
undo brings back the pre-turn session.

The engine owns its chat session handle; it is rebuilt from the resumable
history whenever the system instruction inputs (GM mode, art style, model
selection, world info) change, after undo/regenerate, and after loading.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from cyoa_engine.config import EngineConfig
from cyoa_engine.effects import apply_effects
from cyoa_engine.generator import ChatSession, Generator, GeneratorError, retry_policy
from cyoa_engine.images import ImageGenerator, NullImageGenerator, portrait_prompt
from cyoa_engine.lore import parse_world_entries, with_relevant_lore
from cyoa_engine.migrations import LEGACY_WORLD_KEY, MigrationContext
from cyoa_engine.models import (
    AspectRatio,
    CharacterPortrait,
    EnhanceKind,
    ModelSelection,
    NarratorEntry,
    NewCharacter,
    PlayerEntry,
    SessionState,
    Settings,
    TurnEffects,
    WorldInfoEntry,
)
from cyoa_engine.parser import parse_response, render_preview
from cyoa_engine.persistence import SessionRepository, dump_document, parse_document
from cyoa_engine.prompts import (
    ENHANCE_TEMPLATES,
    build_system_instruction,
    enhance_prompt,
    structure_prompt,
    suggest_class_prompt,
    summarize_prompt,
)
from cyoa_engine.snapshot import UndoSlot
from cyoa_engine.streaming import StreamBuffer

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    TURN_SUBMITTED = "turn_submitted"
    STREAMING = "streaming"
    RESOLVING = "resolving"
    FAILED = "failed"


IN_FLIGHT = frozenset({TurnState.TURN_SUBMITTED, TurnState.STREAMING, TurnState.RESOLVING})

_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.TURN_SUBMITTED}),
    TurnState.FAILED: frozenset({TurnState.TURN_SUBMITTED, TurnState.IDLE}),
    TurnState.TURN_SUBMITTED: frozenset({TurnState.STREAMING, TurnState.FAILED}),
    TurnState.STREAMING: frozenset({TurnState.RESOLVING, TurnState.FAILED}),
    TurnState.RESOLVING: frozenset({TurnState.IDLE, TurnState.FAILED}),
}


class UserInputError(ValueError):
    """The player's request was rejected locally; nothing changed."""


class TurnInProgressError(UserInputError):
    """Another turn (or session operation) is still running."""


class InvalidTransition(RuntimeError):
    """A state change the machine does not allow."""


@dataclass(frozen=True)
class EngineEvent:
    kind: Literal["state", "text", "entry", "session"]
    state: TurnState
    index: int | None = None
    text: str = ""


Listener = Callable[[EngineEvent], None]
GeneratorFactory = Callable[[ModelSelection], Generator]


class TurnEngine:
    """Owns the session state, the undo slot and the generator session."""

    def __init__(
        self,
        generator: Generator | None = None,
        *,
        generator_factory: GeneratorFactory | None = None,
        images: ImageGenerator | None = None,
        repository: SessionRepository | None = None,
        config: EngineConfig | None = None,
        state: SessionState | None = None,
    ) -> None:
        if generator is None and generator_factory is None:
            raise ValueError("TurnEngine needs a generator or a generator_factory")
        self.config = config or EngineConfig()
        self._generator = generator
        self._generator_factory = generator_factory
        self._images = images or NullImageGenerator()
        self._repository = repository
        self.state = state or SessionState()
        self.turn_state = TurnState.IDLE
        self.error: str | None = None
        self.notice: str | None = None
        self._undo = UndoSlot()
        self._chat: ChatSession | None = None
        self._chat_key: tuple[Any, ...] | None = None
        self._side_task = False
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> bool:
        return self.turn_state in IN_FLIGHT

    @property
    def busy(self) -> bool:
        return self.in_flight or self._side_task

    @property
    def can_undo(self) -> bool:
        return self._undo.available and not self.busy

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register an observer; returns a function that unregisters it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _emit(self, kind: str, index: int | None = None, text: str = "") -> None:
        event = EngineEvent(kind=kind, state=self.turn_state, index=index, text=text)
        for listener in list(self._listeners):
            listener(event)

    def _transition(self, new: TurnState) -> None:
        if new not in _TRANSITIONS[self.turn_state]:
            raise InvalidTransition(f"{self.turn_state.value} -> {new.value}")
        logger.debug("turn state %s -> %s", self.turn_state.value, new.value)
        self.turn_state = new
        self._emit("state")

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if self.busy:
            raise TurnInProgressError("Wait for the current turn to finish")
        self._side_task = True
        try:
            yield
        finally:
            self._side_task = False

    # ------------------------------------------------------------------
    # Generator session
    # ------------------------------------------------------------------

    def _current_generator(self) -> Generator:
        if self._generator_factory is not None:
            return self._generator_factory(self.state.settings.model_selection)
        return self._generator

    def _context_key(self) -> tuple[Any, ...]:
        settings = self.state.settings
        return (settings.gm_mode, settings.art_style, settings.model_selection,
                settings.dynamic_backgrounds)

    def _invalidate_chat(self) -> None:
        self._chat = None
        self._chat_key = None

    def _rebuild_chat(self) -> ChatSession:
        instruction = build_system_instruction(self.state)
        self._chat = self._current_generator().start_chat(instruction, self.state.history)
        self._chat_key = self._context_key()
        logger.debug("chat session rebuilt from %d history messages", len(self.state.history))
        return self._chat

    def _ensure_chat(self) -> ChatSession:
        if self._chat is None or self._chat_key != self._context_key():
            return self._rebuild_chat()
        return self._chat

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def _validate_action(self, action: str) -> str:
        action = (action or "").strip()
        if not action:
            raise UserInputError("Action must not be empty")
        if self.busy:
            raise TurnInProgressError("A turn is already in progress")
        return action

    async def submit(self, action: str) -> NarratorEntry:
        """Play one turn for ``action`` and return the finalized narrator entry."""
        action = self._validate_action(action)
        self._undo.capture(self.state)
        return await self._run_turn(action)

    async def _run_turn(self, action: str) -> NarratorEntry:
        self.error = None
        self.notice = None
        self._transition(TurnState.TURN_SUBMITTED)
        self.state.transcript.append(PlayerEntry(text=action))
        self.state.transcript.append(NarratorEntry(streaming=True))
        index = len(self.state.transcript) - 1
        self._emit("entry", index)

        try:
            chat = self._ensure_chat()
            message = with_relevant_lore(action, self.state.world_text(), self.config.lore_snippets)
            self._transition(TurnState.STREAMING)
            raw = await self._stream_reply(chat, message, index)

            self._transition(TurnState.RESOLVING)
            effects = parse_response(raw)
            settings = self.state.settings
            portrait_added = bool(
                effects.character_description
                and effects.character_description != self.state.character.description
            )
            self.state = apply_effects(
                self.state,
                effects,
                entry_index=index,
                history=chat.get_history(),
                scene_image_pending=bool(effects.image_prompt and settings.generate_scene_images),
            )
            self._emit("entry", index)
        except GeneratorError as e:
            logger.error("Turn failed: %s", e)
            self._fail(index, f"The Game Master could not respond: {e}")
            raise
        except Exception:
            logger.exception("Turn failed while resolving")
            self._fail(index, "Something went wrong while resolving the turn.")
            raise

        await self._turn_images(index, effects, portrait_added)
        self._transition(TurnState.IDLE)
        self._autosave()
        return self.state.transcript[index]

    async def _stream_reply(self, chat: ChatSession, message: str, index: int) -> str:
        buffer = StreamBuffer()
        async for attempt in retry_policy(self.config.max_attempts, self.config.retry_backoff):
            with attempt:
                buffer.reset()
                self._set_entry_text(index, "")
                async for fragment in chat.send_stream(message):
                    if buffer.feed(fragment):
                        self._set_entry_text(index, render_preview(buffer.committed))
                buffer.flush()
        return buffer.raw

    def _set_entry_text(self, index: int, text: str) -> None:
        entry = self.state.transcript[index]
        if entry.text != text:
            entry.text = text
            self._emit("text", index, text)

    def _fail(self, index: int, message: str) -> None:
        entry = self.state.transcript[index]
        if isinstance(entry, NarratorEntry):
            entry.streaming = False
        self.error = message
        self._transition(TurnState.FAILED)

    async def _turn_images(self, index: int, effects: TurnEffects, portrait_added: bool) -> None:
        settings = self.state.settings
        if effects.image_prompt and settings.generate_scene_images:
            url = await self._image(effects.image_prompt, "16:9")
            self._patch_entry_image(index, effects.image_prompt, url)
        if portrait_added and settings.generate_character_portraits:
            description = self.state.character.description
            url = await self._image(portrait_prompt(description), "1:1")
            current = self.state.character.current_portrait
            if url and current is not None and current.prompt == description:
                current.url = url
                self._emit("session")

    async def _image(self, prompt: str, aspect_ratio: AspectRatio) -> str | None:
        try:
            return await self._images(prompt, self.state.settings.art_style, aspect_ratio)
        except Exception as e:
            logger.warning("Image generation failed: %s", e)
            return None

    def _patch_entry_image(self, index: int, prompt: str, url: str | None) -> None:
        if index >= len(self.state.transcript):
            return
        entry = self.state.transcript[index]
        # the session may have been replaced while the image was generating
        if not isinstance(entry, NarratorEntry) or entry.image_prompt != prompt:
            return
        entry.image_url = url
        entry.image_loading = False
        self._emit("entry", index)

    def _autosave(self) -> None:
        if self._repository is None:
            return
        try:
            self._repository.save(self.state)
        except OSError as e:
            logger.error("Autosave failed: %s", e)
            self.notice = "The game could not be saved."

    # ------------------------------------------------------------------
    # Undo / regenerate
    # ------------------------------------------------------------------

    def _restore(self, snapshot: SessionState) -> None:
        self.state = snapshot
        self.error = None
        if self.turn_state is TurnState.FAILED:
            self._transition(TurnState.IDLE)
        self._rebuild_chat()
        self._emit("session")

    def undo(self) -> bool:
        """Restore the pre-turn snapshot. Returns False (with a notice) if impossible."""
        if self.busy:
            self.notice = "Wait for the current turn to finish before undoing."
            return False
        snapshot = self._undo.take()
        if snapshot is None:
            self.notice = "Nothing to undo."
            return False
        self._restore(snapshot)
        self.notice = None
        return True

    def _replay_action(self, snapshot: SessionState) -> str | None:
        position = len(snapshot.transcript)
        if position < len(self.state.transcript):
            entry = self.state.transcript[position]
            if isinstance(entry, PlayerEntry):
                return entry.text
        return self.state.last_player_action()

    async def regenerate_last_response(self) -> NarratorEntry | None:
        """Replay the last player action against the pre-turn snapshot."""
        if self.busy:
            self.notice = "Wait for the current turn to finish before regenerating."
            return None
        snapshot = self._undo.peek()
        action = self._replay_action(snapshot) if snapshot is not None else None
        if snapshot is None or not action:
            self.notice = "Cannot regenerate response. No previous state to restore."
            return None
        self._restore(self._undo.take())
        self._undo.capture(self.state)
        return await self._run_turn(action)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_game(
        self,
        world_text: str,
        character: NewCharacter,
        opening_action: str,
        settings: Settings | None = None,
    ) -> NarratorEntry:
        """Begin a new session and play the opening turn (not undoable)."""
        opening_action = self._validate_action(opening_action)
        with self._exclusive():
            summary = world_text
            if len(world_text) > self.config.summarize_threshold:
                summary = await self._summarize(world_text)
            world_info = []
            if world_text.strip():
                world_info.append(
                    WorldInfoEntry(key=LEGACY_WORLD_KEY, content=world_text, unstructured=True)
                )
            state = SessionState(
                world_info=world_info,
                world_summary=summary,
                character=character.to_character(),
                settings=settings or Settings(),
            )
            if self._repository is not None:
                self._repository.clear()
            self._adopt(state)
            await self._add_portrait()
        return await self._run_turn(opening_action)

    async def _summarize(self, world_text: str) -> str:
        try:
            summary = await self._current_generator().complete(summarize_prompt(world_text))
        except GeneratorError as e:
            logger.warning("World summary failed, using full lore: %s", e)
            return world_text
        return summary.strip() or world_text

    def _adopt(self, state: SessionState) -> None:
        self.state = state
        self._undo.clear()
        self.error = None
        self.turn_state = TurnState.IDLE
        self._invalidate_chat()
        self._emit("session")

    def resume(self) -> bool:
        """Load the saved session. Returns False (with a notice on corruption) if none."""
        if self.busy:
            raise TurnInProgressError("Wait for the current turn to finish")
        if self._repository is None:
            return False
        state = self._repository.load()
        if state is None:
            self.notice = self._repository.last_problem
            return False
        self._adopt(state)
        self._rebuild_chat()
        return True

    def save(self) -> bool:
        if self.busy:
            self.notice = "The game can be saved once the current turn finishes."
            return False
        if self._repository is None:
            return False
        try:
            self._repository.save(self.state)
        except OSError as e:
            logger.error("Save failed: %s", e)
            self.notice = "The game could not be saved."
            return False
        return True

    def export_document(self) -> str:
        if self.busy:
            raise TurnInProgressError("Wait for the current turn to finish")
        return dump_document(self.state)

    def import_document(self, text: str) -> None:
        """Replace the session with an exported document. Raises PersistenceCorruption."""
        if self.busy:
            raise TurnInProgressError("Wait for the current turn to finish")
        context = MigrationContext(credential_configured=self.config.credential_configured)
        self._adopt(parse_document(text, context))
        self._rebuild_chat()

    def restart(self) -> None:
        if self.busy:
            raise TurnInProgressError("Wait for the current turn to finish")
        if self._repository is not None:
            self._repository.clear()
        self._adopt(SessionState())
        self.notice = None

    # ------------------------------------------------------------------
    # Settings and world info
    # ------------------------------------------------------------------

    def update_settings(self, **changes: Any) -> Settings:
        """Apply setting changes. GM mode, art style or model changes rebuild the chat next turn."""
        if self.busy:
            raise TurnInProgressError("Settings cannot change while a turn is in progress")
        merged = {**self.state.settings.model_dump(), **changes}
        self.state.settings = Settings.model_validate(merged)
        self._emit("session")
        return self.state.settings

    def update_world_info(self, entries: list[WorldInfoEntry], summary: str | None = None) -> None:
        if self.busy:
            raise TurnInProgressError("World info cannot change while a turn is in progress")
        self.state.world_info = [e.model_copy() for e in entries]
        if summary is not None:
            self.state.world_summary = summary
        self._invalidate_chat()
        self._emit("session")

    async def structure_world_info(self) -> bool:
        """Split unstructured world entries into keyed entries via the generator."""
        with self._exclusive():
            pending = [e for e in self.state.world_info if e.unstructured]
            if not pending:
                return False
            lore = "\n\n".join(e.content for e in pending)
            try:
                output = await self._current_generator().complete(structure_prompt(lore))
            except GeneratorError as e:
                logger.warning("World structuring failed: %s", e)
                self.notice = "The world lore could not be organised right now."
                return False
            entries = parse_world_entries(output)
            if entries is None:
                self.notice = "The world lore could not be organised right now."
                return False
            kept = [e for e in self.state.world_info if not e.unstructured]
            self.state.world_info = kept + entries
            self._invalidate_chat()
            self._emit("session")
            return True

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    async def enhance_text(self, kind: EnhanceKind, text: str) -> str:
        """Expand a backstory or world lore draft. Returns ``text`` unchanged on failure.

        Enhanced world lore keeps the original draft appended under an
        ``--- ORIGINAL LORE ---`` heading.
        """
        if kind not in ENHANCE_TEMPLATES:
            raise UserInputError(f"Cannot enhance {kind!r}")
        self.notice = None
        if not text.strip():
            return text
        try:
            output = await self._current_generator().complete(enhance_prompt(kind, text))
        except GeneratorError as e:
            logger.warning("Enhancing %s failed: %s", kind, e)
            self.notice = f"The {kind} could not be enhanced right now."
            return text
        output = output.strip()
        if not output:
            return text
        if kind == "world":
            return f"{output}\n\n--- ORIGINAL LORE ---\n\n{text}"
        return output

    async def suggest_character_class(self, backstory: str) -> str:
        """One class name fitting ``backstory``, or "" if none could be suggested."""
        if not backstory.strip():
            return ""
        try:
            output = await self._current_generator().complete(suggest_class_prompt(backstory))
        except GeneratorError as e:
            logger.warning("Class suggestion failed: %s", e)
            return ""
        lines = output.strip().splitlines()
        return lines[0].strip(" .*") if lines else ""

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def retry_entry_image(self, index: int) -> bool:
        """Regenerate the scene image of one narrator entry."""
        if not 0 <= index < len(self.state.transcript):
            raise UserInputError(f"Transcript entry {index} does not exist")
        entry = self.state.transcript[index]
        if not isinstance(entry, NarratorEntry) or not entry.image_prompt:
            raise UserInputError(f"Transcript entry {index} has no image prompt")
        with self._exclusive():
            entry.image_loading = True
            self._emit("entry", index)
            url = await self._image(entry.image_prompt, "16:9")
            self._patch_entry_image(index, entry.image_prompt, url)
        return url is not None

    async def regenerate_portrait(self) -> bool:
        if not self.state.character.description:
            return False
        with self._exclusive():
            return await self._add_portrait()

    async def _add_portrait(self) -> bool:
        description = self.state.character.description
        if not description:
            return False
        url = None
        if self.state.settings.generate_character_portraits:
            url = await self._image(portrait_prompt(description), "1:1")
        self.state.character.portraits.append(CharacterPortrait(url=url, prompt=description))
        self._emit("session")
        return url is not None
