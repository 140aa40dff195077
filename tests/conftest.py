"""Scripted generator and image stubs shared by the engine and route tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from cyoa_engine.config import EngineConfig
from cyoa_engine.engine import TurnEngine
from cyoa_engine.generator import EmptyResponseError
from cyoa_engine.models import Character, ChatMessage, SessionState, WorldInfoEntry
from cyoa_engine.persistence import SessionRepository
from cyoa_engine.store import MemoryStore


def fragments(text: str, size: int = 7) -> list[str]:
    """Split text at fixed offsets so tags straddle fragment boundaries."""
    return [text[i:i + size] for i in range(0, len(text), size)] or [""]


class ScriptedChat:
    def __init__(self, generator: ScriptedGenerator, system_instruction: str,
                 history: list[ChatMessage]) -> None:
        self._generator = generator
        self.system_instruction = system_instruction
        self._history = [m.model_copy() for m in history]

    async def send_stream(self, message: str) -> AsyncIterator[str]:
        self._generator.sent.append(message)
        reply = self._generator.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        parts = reply if isinstance(reply, list) else fragments(reply)
        for part in parts:
            if isinstance(part, Exception):
                raise part
            if isinstance(part, asyncio.Event):
                await part.wait()
                continue
            yield part
        text = "".join(p for p in parts if isinstance(p, str))
        if not text.strip():
            raise EmptyResponseError("The generator returned an empty response")
        self._history.append(ChatMessage(role="user", text=message))
        self._history.append(ChatMessage(role="model", text=text))

    def get_history(self) -> list[ChatMessage]:
        return [m.model_copy() for m in self._history]


class ScriptedGenerator:
    """Plays back canned replies in order.

    A reply is a string (streamed in small fragments), a list of fragments
    (an Exception item raises mid-stream, an asyncio.Event item pauses the
    stream until set) or an Exception (raised before any text arrives).
    """

    def __init__(self, *replies, completions: list[str | Exception] | None = None) -> None:
        self.replies = list(replies)
        self.completions = list(completions or [])
        self.sent: list[str] = []
        self.instructions: list[str] = []
        self.prompts: list[str] = []

    def start_chat(self, system_instruction: str, history: list[ChatMessage]) -> ScriptedChat:
        self.instructions.append(system_instruction)
        return ScriptedChat(self, system_instruction, history)

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        result = self.completions.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class RecordingImages:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[tuple[str, str, str]] = []
        self.fail = fail

    async def __call__(self, prompt: str, style: str, aspect_ratio: str) -> str | None:
        self.calls.append((prompt, style, aspect_ratio))
        if self.fail:
            return None
        return f"https://img.test/{len(self.calls)}.png"


@pytest.fixture
def images() -> RecordingImages:
    return RecordingImages()


@pytest.fixture
def repository() -> SessionRepository:
    return SessionRepository(MemoryStore())


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(max_attempts=3, retry_backoff=0)


@pytest.fixture
def session() -> SessionState:
    """A game already under way: one world entry, a described character."""
    return SessionState(
        world_info=[WorldInfoEntry(key="Millhaven", content="Millhaven is a river town. The bridge is guarded by trolls.")],
        world_summary="A river town beset by trolls.",
        character=Character(
            description="a scarred ranger in a green cloak",
            character_class="Ranger",
            alignment="Neutral Good",
            backstory="Raised in the marshes.",
            skills={"Archery": 12},
        ),
    )


@pytest.fixture
def make_engine(images, repository, config, session):
    def _make(*replies, completions=None, state: SessionState | None = None):
        generator = ScriptedGenerator(*replies, completions=completions)
        engine = TurnEngine(
            generator,
            images=images,
            repository=repository,
            config=config,
            state=state if state is not None else session.model_copy(deep=True),
        )
        return engine, generator
    return _make
