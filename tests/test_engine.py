"""Tests for cyoa_engine.engine - the turn state machine, undo and regenerate."""

import asyncio

import pytest

from cyoa_engine.engine import (
    InvalidTransition,
    TurnEngine,
    TurnInProgressError,
    TurnState,
    UserInputError,
)
from cyoa_engine.generator import EmptyResponseError, GeneratorError, RateLimitError
from cyoa_engine.models import (
    GameMasterMode,
    NarratorEntry,
    NewCharacter,
    PlayerEntry,
    SessionState,
    WorldInfoEntry,
)
from cyoa_engine.persistence import SAVE_KEY, SessionRepository
from cyoa_engine.store import MemoryStore

GOBLIN = (
    "[background-prompt]dark forest[/background-prompt]You see a goblin."
    '[create-npc]{"id":"g1","name":"Goblin","description":"snarling","hp":10,"maxHp":10,"isHostile":true}[/create-npc]'
    "[choice]Attack[/choice][choice]Flee[/choice]What do you do?"
)

LOOT = (
    "You search the chest. [add-item]Rope|Fifty feet of hemp[/add-item]"
    "[update-skill]Archery|13[/update-skill]"
    '[create-npc]{"id":"rat","name":"Rat","hp":2,"maxHp":2}[/create-npc]'
    "[update-backstory]Found the smugglers' cache.[/update-backstory]"
)


# ---------------------------------------------------------------------------
# submit
# ---------------------------------------------------------------------------

class TestSubmit:
    async def test_goblin_turn_applies_effects(self, make_engine) -> None:
        engine, _ = make_engine(GOBLIN)
        entry = await engine.submit("Look around")

        assert entry.text == "You see a goblin.What do you do?"
        assert entry.background_prompt == "dark forest"
        assert entry.choices == ["Attack", "Flee"]
        assert entry.streaming is False
        assert engine.state.npcs[0].id == "g1"
        assert engine.state.npcs[0].hp == 10
        assert engine.state.npcs[0].is_hostile is True
        assert engine.turn_state is TurnState.IDLE

    async def test_appends_player_then_narrator(self, make_engine) -> None:
        engine, _ = make_engine("The gate opens. ")
        before = len(engine.state.transcript)
        await engine.submit("  Push the gate  ")

        player, narrator = engine.state.transcript[before:]
        assert isinstance(player, PlayerEntry)
        assert player.text == "Push the gate"
        assert isinstance(narrator, NarratorEntry)
        assert narrator.text == "The gate opens."

    async def test_history_records_exchange(self, make_engine) -> None:
        engine, _ = make_engine("Rain falls. ")
        await engine.submit("Wait")
        assert [m.role for m in engine.state.history] == ["user", "model"]
        assert engine.state.history[1].text == "Rain falls. "

    async def test_relevant_lore_sent_but_not_shown(self, make_engine) -> None:
        engine, generator = make_engine("The trolls growl. ")
        await engine.submit("Cross the bridge")

        assert "[RELEVANT WORLD LORE]" in generator.sent[0]
        assert "The bridge is guarded by trolls." in generator.sent[0]
        assert engine.state.transcript[-2].text == "Cross the bridge"

    async def test_effects_applied_together(self, make_engine) -> None:
        engine, _ = make_engine(LOOT)
        await engine.submit("Open the chest")

        state = engine.state
        assert [i.name for i in state.inventory] == ["Rope"]
        assert state.character.skills["Archery"] == 13
        assert [n.id for n in state.npcs] == ["rat"]
        assert state.character.backstory.endswith("Found the smugglers' cache.")

    async def test_autosaves_completed_turn(self, make_engine, repository) -> None:
        engine, _ = make_engine("Quiet. ")
        await engine.submit("Listen")
        loaded = repository.load()
        assert loaded is not None
        assert loaded.transcript[-1].text == "Quiet."

    async def test_empty_action_rejected(self, make_engine) -> None:
        engine, generator = make_engine("unused")
        before = engine.state.model_dump()
        with pytest.raises(UserInputError):
            await engine.submit("   ")
        assert engine.state.model_dump() == before
        assert engine.turn_state is TurnState.IDLE
        assert engine.can_undo is False
        assert generator.sent == []

    async def test_second_submit_rejected_while_streaming(self, make_engine) -> None:
        gate = asyncio.Event()
        engine, _ = make_engine(["The door ", gate, "creaks open. "])
        before = len(engine.state.transcript)
        task = asyncio.create_task(engine.submit("Open the door"))
        while len(engine.state.transcript) < before + 2 or engine.state.transcript[-1].text != "The door":
            await asyncio.sleep(0)

        assert engine.turn_state is TurnState.STREAMING
        assert engine.state.transcript[-1].streaming is True
        with pytest.raises(TurnInProgressError):
            await engine.submit("Run away")
        with pytest.raises(TurnInProgressError):
            engine.update_settings(gm_mode=GameMasterMode.ACTION)
        assert engine.undo() is False
        assert engine.save() is False

        gate.set()
        entry = await task
        assert entry.text == "The door creaks open."
        assert [e.text for e in engine.state.transcript[-2:]] == ["Open the door", "The door creaks open."]

    async def test_streaming_preview_hides_open_tags(self, make_engine) -> None:
        engine, _ = make_engine(["A crow ", "lands. [cho", "ice]Shoo it[/choice] "])
        previews: list[str] = []
        engine.subscribe(lambda e: previews.append(e.text) if e.kind == "text" else None)
        await engine.submit("Wait")

        assert previews
        assert all("[" not in p for p in previews)
        assert engine.state.transcript[-1].choices == ["Shoo it"]

    async def test_invalid_transition_raises(self, make_engine) -> None:
        engine, _ = make_engine()
        with pytest.raises(InvalidTransition):
            engine._transition(TurnState.RESOLVING)


# ---------------------------------------------------------------------------
# failures and retries
# ---------------------------------------------------------------------------

class TestFailures:
    async def test_generator_error_fails_turn(self, make_engine, repository) -> None:
        engine, _ = make_engine(GeneratorError("backend down"))
        before = len(engine.state.transcript)
        with pytest.raises(GeneratorError):
            await engine.submit("Shout")

        assert engine.turn_state is TurnState.FAILED
        assert "backend down" in engine.error
        player, narrator = engine.state.transcript[before:]
        assert player.text == "Shout"
        assert narrator.streaming is False
        assert engine.state.history == []
        assert repository.exists() is False

    async def test_mid_stream_failure_keeps_partial_text(self, make_engine) -> None:
        engine, _ = make_engine(["You step ", "onto the ", GeneratorError("reset")])
        with pytest.raises(GeneratorError):
            await engine.submit("Step forward")
        entry = engine.state.transcript[-1]
        assert entry.text == "You step onto the"
        assert entry.streaming is False

    async def test_rate_limit_retried(self, make_engine) -> None:
        engine, generator = make_engine(RateLimitError("429"), "The path is clear. ")
        entry = await engine.submit("Walk")
        assert entry.text == "The path is clear."
        assert len(generator.sent) == 2

    async def test_empty_reply_retried_then_surfaced(self, make_engine) -> None:
        engine, generator = make_engine("", "", "")
        with pytest.raises(EmptyResponseError):
            await engine.submit("Whisper")
        assert len(generator.sent) == 3
        assert engine.turn_state is TurnState.FAILED

    async def test_non_retryable_error_not_retried(self, make_engine) -> None:
        engine, generator = make_engine(GeneratorError("HTTP 500"), "unused")
        with pytest.raises(GeneratorError):
            await engine.submit("Sing")
        assert len(generator.sent) == 1

    async def test_new_submit_allowed_after_failure(self, make_engine) -> None:
        engine, _ = make_engine(GeneratorError("boom"), "Second try works. ")
        with pytest.raises(GeneratorError):
            await engine.submit("Try")
        entry = await engine.submit("Try again")
        assert entry.text == "Second try works."
        assert engine.turn_state is TurnState.IDLE
        assert engine.error is None


# ---------------------------------------------------------------------------
# undo / regenerate
# ---------------------------------------------------------------------------

class TestUndo:
    async def test_undo_restores_pre_turn_state(self, make_engine) -> None:
        engine, _ = make_engine(LOOT)
        before = engine.state.model_dump()
        await engine.submit("Open the chest")

        assert engine.undo() is True
        assert engine.state.model_dump() == before

    async def test_second_undo_is_noop(self, make_engine) -> None:
        engine, _ = make_engine("Fine. ")
        await engine.submit("Rest")
        assert engine.undo() is True
        after_first = engine.state.model_dump()

        assert engine.undo() is False
        assert engine.notice == "Nothing to undo."
        assert engine.state.model_dump() == after_first

    async def test_undo_without_turn_is_noop(self, make_engine) -> None:
        engine, _ = make_engine()
        assert engine.undo() is False
        assert engine.notice

    async def test_undo_after_failure_returns_to_idle(self, make_engine) -> None:
        engine, _ = make_engine(GeneratorError("boom"))
        before = engine.state.model_dump()
        with pytest.raises(GeneratorError):
            await engine.submit("Jump")

        assert engine.undo() is True
        assert engine.turn_state is TurnState.IDLE
        assert engine.error is None
        assert engine.state.model_dump() == before

    async def test_undo_rebuilds_chat_from_snapshot_history(self, make_engine) -> None:
        engine, generator = make_engine("One. ", "Two. ", "Three. ")
        await engine.submit("First")
        await engine.submit("Second")
        engine.undo()
        await engine.submit("Second, differently")

        assert len(generator.instructions) == 2
        assert [m.text for m in engine.state.history if m.role == "model"] == ["One. ", "Three. "]


class TestRegenerate:
    async def test_regenerate_replays_last_action(self, make_engine) -> None:
        engine, generator = make_engine("First reply. ", "Second reply. ")
        before = len(engine.state.transcript)
        await engine.submit("Knock")
        entry = await engine.regenerate_last_response()

        assert entry.text == "Second reply."
        assert len(engine.state.transcript) == before + 2
        assert engine.state.last_player_action() == "Knock"
        assert generator.sent[0].startswith("Knock")
        assert generator.sent[1].startswith("Knock")

    async def test_regenerate_keeps_undo_available(self, make_engine) -> None:
        engine, _ = make_engine("First reply. ", "Second reply. ")
        before = engine.state.model_dump()
        await engine.submit("Knock")
        await engine.regenerate_last_response()

        assert engine.can_undo is True
        assert engine.undo() is True
        assert engine.state.model_dump() == before

    async def test_regenerate_without_snapshot_is_noop(self, make_engine) -> None:
        engine, generator = make_engine("unused")
        assert await engine.regenerate_last_response() is None
        assert engine.notice == "Cannot regenerate response. No previous state to restore."
        assert generator.sent == []

    async def test_regenerate_after_failure(self, make_engine) -> None:
        engine, _ = make_engine(GeneratorError("boom"), "Recovered. ")
        before = len(engine.state.transcript)
        with pytest.raises(GeneratorError):
            await engine.submit("Climb")
        entry = await engine.regenerate_last_response()

        assert entry.text == "Recovered."
        assert engine.turn_state is TurnState.IDLE
        assert [e.text for e in engine.state.transcript[before:]] == ["Climb", "Recovered."]


# ---------------------------------------------------------------------------
# setup helpers
# ---------------------------------------------------------------------------

class TestSetupHelpers:
    async def test_enhance_backstory(self, make_engine) -> None:
        engine, generator = make_engine(completions=["  An exiled ranger hunting her brother's killer.  "])
        result = await engine.enhance_text("backstory", "An exiled ranger.")

        assert result == "An exiled ranger hunting her brother's killer."
        assert "An exiled ranger." in generator.prompts[0]
        assert "BACKSTORY" in generator.prompts[0]

    async def test_enhance_world_keeps_original_lore(self, make_engine) -> None:
        engine, generator = make_engine(completions=["# Vell\nA kingdom of rivers."])
        result = await engine.enhance_text("world", "Vell is a kingdom.")

        assert result == "# Vell\nA kingdom of rivers.\n\n--- ORIGINAL LORE ---\n\nVell is a kingdom."
        assert "WORLD LORE" in generator.prompts[0]

    async def test_enhance_falls_back_on_generator_error(self, make_engine) -> None:
        engine, _ = make_engine(completions=[GeneratorError("backend down")])
        assert await engine.enhance_text("backstory", "A thief.") == "A thief."
        assert engine.notice == "The backstory could not be enhanced right now."

    async def test_enhance_empty_output_keeps_draft(self, make_engine) -> None:
        engine, _ = make_engine(completions=["   "])
        assert await engine.enhance_text("world", "Vell.") == "Vell."

    async def test_enhance_blank_draft_skips_generator(self, make_engine) -> None:
        engine, generator = make_engine()
        assert await engine.enhance_text("backstory", "  ") == "  "
        assert generator.prompts == []

    async def test_enhance_unknown_kind_rejected(self, make_engine) -> None:
        engine, _ = make_engine()
        with pytest.raises(UserInputError):
            await engine.enhance_text("inventory", "Rope")

    async def test_suggest_character_class(self, make_engine) -> None:
        engine, generator = make_engine(completions=["Paladin.\nA holy warrior fits best."])
        assert await engine.suggest_character_class("Sworn to a temple of light.") == "Paladin"
        assert "Sworn to a temple of light." in generator.prompts[0]

    async def test_suggest_class_empty_on_failure(self, make_engine) -> None:
        engine, _ = make_engine(completions=[GeneratorError("backend down")])
        assert await engine.suggest_character_class("A thief.") == ""

    async def test_suggest_class_blank_backstory(self, make_engine) -> None:
        engine, generator = make_engine()
        assert await engine.suggest_character_class("") == ""
        assert generator.prompts == []


# ---------------------------------------------------------------------------
# settings and world info
# ---------------------------------------------------------------------------

class TestSettings:
    async def test_gm_mode_change_rebuilds_chat(self, make_engine) -> None:
        engine, generator = make_engine("One. ", "Two. ")
        await engine.submit("First")
        engine.update_settings(gm_mode=GameMasterMode.ACTION)
        await engine.submit("Second")

        assert len(generator.instructions) == 2
        assert "Action Focus" in generator.instructions[-1]
        assert len(engine.state.history) == 4

    async def test_toggle_change_keeps_chat(self, make_engine) -> None:
        engine, generator = make_engine("One. ", "Two. ")
        await engine.submit("First")
        engine.update_settings(generate_scene_images=False)
        await engine.submit("Second")
        assert len(generator.instructions) == 1

    async def test_background_toggle_rebuilds_chat(self, make_engine) -> None:
        engine, generator = make_engine("One. ", "Two. ")
        await engine.submit("First")
        engine.update_settings(dynamic_backgrounds=False)
        await engine.submit("Second")

        assert len(generator.instructions) == 2
        assert "[background-prompt]" in generator.instructions[0]
        assert "[background-prompt]" not in generator.instructions[-1]

    async def test_invalid_setting_rejected(self, make_engine) -> None:
        engine, _ = make_engine()
        with pytest.raises(ValueError):
            engine.update_settings(model_selection="cloud")

    async def test_world_info_change_rebuilds_chat(self, make_engine) -> None:
        engine, generator = make_engine("One. ", "Two. ")
        await engine.submit("First")
        engine.update_world_info(
            [WorldInfoEntry(key="Harbor", content="The harbor is frozen.")],
            summary="A frozen harbor town.",
        )
        await engine.submit("Second")

        assert len(generator.instructions) == 2
        assert "A frozen harbor town." in generator.instructions[-1]

    async def test_structure_world_info(self, make_engine) -> None:
        state = SessionState(world_info=[
            WorldInfoEntry(key="Notes", content="Short notes."),
            WorldInfoEntry(key="World Lore", content="Millhaven... trolls...", unstructured=True),
        ])
        output = '```json\n{"entries": [{"key": "Millhaven", "content": "A river town."}, {"key": "Trolls", "content": "Guard the bridge."}]}\n```'
        engine, generator = make_engine(completions=[output], state=state)

        assert await engine.structure_world_info() is True
        assert [e.key for e in engine.state.world_info] == ["Notes", "Millhaven", "Trolls"]
        assert not any(e.unstructured for e in engine.state.world_info)
        assert "Millhaven... trolls..." in generator.prompts[0]

    async def test_structure_world_info_keeps_lore_on_bad_output(self, make_engine) -> None:
        state = SessionState(world_info=[WorldInfoEntry(key="World Lore", content="Lore.", unstructured=True)])
        engine, _ = make_engine(completions=["not json"], state=state)
        assert await engine.structure_world_info() is False
        assert engine.state.world_info[0].unstructured is True
        assert engine.notice


# ---------------------------------------------------------------------------
# images
# ---------------------------------------------------------------------------

class TestImages:
    async def test_scene_image_patched_in(self, make_engine, images) -> None:
        engine, _ = make_engine("A ruined tower. [img-prompt]ruined tower at dusk[/img-prompt]")
        entry = await engine.submit("Approach")

        assert entry.image_prompt == "ruined tower at dusk"
        assert entry.image_url == "https://img.test/1.png"
        assert entry.image_loading is False
        assert images.calls[0] == ("ruined tower at dusk", engine.state.settings.art_style, "16:9")

    async def test_scene_image_disabled(self, make_engine, images) -> None:
        engine, _ = make_engine("A tower. [img-prompt]tower[/img-prompt]")
        engine.update_settings(generate_scene_images=False)
        entry = await engine.submit("Look")

        assert images.calls == []
        assert entry.image_url is None
        assert entry.image_loading is False

    async def test_image_failure_is_not_fatal(self, make_engine, images) -> None:
        images.fail = True
        engine, _ = make_engine("A tower. [img-prompt]tower[/img-prompt]")
        entry = await engine.submit("Look")

        assert entry.text == "A tower."
        assert entry.image_url is None
        assert engine.turn_state is TurnState.IDLE

        images.fail = False
        index = len(engine.state.transcript) - 1
        assert await engine.retry_entry_image(index) is True
        assert engine.state.transcript[index].image_url is not None

    async def test_retry_image_on_player_entry_rejected(self, make_engine) -> None:
        engine, _ = make_engine("Hi. ")
        await engine.submit("Wave")
        with pytest.raises(UserInputError):
            await engine.retry_entry_image(len(engine.state.transcript) - 2)

    async def test_new_description_adds_portrait(self, make_engine, images) -> None:
        engine, _ = make_engine("You change. [char-img-prompt]a ranger with silver hair[/char-img-prompt]")
        await engine.submit("Drink the potion")

        character = engine.state.character
        assert character.description == "a ranger with silver hair"
        assert character.current_portrait.prompt == "a ranger with silver hair"
        assert character.current_portrait.url == "https://img.test/1.png"
        assert images.calls[0][2] == "1:1"

    async def test_regenerate_portrait_appends(self, make_engine) -> None:
        engine, _ = make_engine()
        assert await engine.regenerate_portrait() is True
        assert len(engine.state.character.portraits) == 1


# ---------------------------------------------------------------------------
# session lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    async def test_start_game(self, make_engine, images) -> None:
        engine, _ = make_engine("You wake in a cell. ", state=SessionState())
        entry = await engine.start_game(
            "The kingdom of Vell is at war.",
            NewCharacter(description="a tall knight"),
            "I wake up",
        )

        state = engine.state
        assert entry.text == "You wake in a cell."
        assert [e.text for e in state.transcript] == ["I wake up", "You wake in a cell."]
        assert state.character.character_class == "Adventurer"
        assert state.world_info[0].unstructured is True
        assert state.world_summary == "The kingdom of Vell is at war."
        assert state.character.portraits[0].url is not None
        assert engine.can_undo is False

    async def test_start_game_summarizes_long_lore(self, make_engine) -> None:
        engine, generator = make_engine(
            "Begin. ", completions=["Vell is at war."], state=SessionState()
        )
        engine.config = engine.config.model_copy(update={"summarize_threshold": 10})
        await engine.start_game("The kingdom of Vell is at war with its neighbours.",
                                NewCharacter(description="a knight"), "Go")

        assert engine.state.world_summary == "Vell is at war."
        assert "neighbours" in generator.prompts[0]

    async def test_start_game_keeps_lore_when_summary_fails(self, make_engine) -> None:
        engine, _ = make_engine(
            "Begin. ", completions=[GeneratorError("down")], state=SessionState()
        )
        engine.config = engine.config.model_copy(update={"summarize_threshold": 10})
        lore = "The kingdom of Vell is at war with its neighbours."
        await engine.start_game(lore, NewCharacter(description="a knight"), "Go")
        assert engine.state.world_summary == lore

    async def test_resume_loads_saved_session(self, make_engine, repository, session) -> None:
        repository.save(session)
        engine, _ = make_engine(state=SessionState())
        assert engine.resume() is True
        assert engine.state.model_dump() == session.model_dump()

    async def test_resume_reports_corrupt_save(self, images, config) -> None:
        store = MemoryStore({SAVE_KEY: "{not json"})
        repository = SessionRepository(store)
        engine = TurnEngine(object(), images=images, repository=repository, config=config)

        assert engine.resume() is False
        assert engine.notice == "The saved game was unreadable and has been cleared."
        assert store.get(SAVE_KEY) is None

    async def test_export_then_import(self, make_engine, session) -> None:
        engine, _ = make_engine("Done. ")
        await engine.submit("Finish")
        document = engine.export_document()

        other, _ = make_engine(state=SessionState())
        other.import_document(document)
        assert other.state.model_dump() == engine.state.model_dump()

    async def test_restart_clears_save(self, make_engine, repository) -> None:
        engine, _ = make_engine("Done. ")
        await engine.submit("Finish")
        engine.restart()

        assert engine.state.transcript == []
        assert repository.exists() is False
        assert engine.can_undo is False

    async def test_explicit_save(self, make_engine, repository) -> None:
        engine, _ = make_engine()
        assert engine.save() is True
        assert repository.load().character.character_class == "Ranger"

    async def test_explicit_save_reports_disk_error(self, images, config, session) -> None:
        class FullDisk(MemoryStore):
            def set(self, key: str, value: str) -> None:
                raise OSError("No space left on device")

        engine = TurnEngine(object(), images=images, repository=SessionRepository(FullDisk()),
                            config=config, state=session)
        assert engine.save() is False
        assert engine.notice == "The game could not be saved."

    async def test_requires_a_generator(self) -> None:
        with pytest.raises(ValueError):
            TurnEngine()
