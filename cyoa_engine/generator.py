"""Generator client - conversation sessions against a text-generation backend.

The engine talks to a Generator through two protocols:

    class Generator(Protocol):
        def start_chat(self, system_instruction, history) -> ChatSession: ...
        async def complete(self, prompt) -> str: ...

    class ChatSession(Protocol):
        def send_stream(self, message) -> AsyncIterator[str]: ...
        def get_history(self) -> list[ChatMessage]: ...

A ChatSession appends (user message, model reply) to its history only after a
reply has streamed to completion, so ``get_history()`` is always a resumable
record of finished exchanges.

Implementations:

    HttpGenerator  - real HTTP client. "openai" streams chat completions over
                     SSE (hosted); "koboldcpp" posts to /api/v1/generate and
                     yields the reply as one fragment (local).
    EchoGenerator  - replies with the message it was sent. No network calls.

Tests use the scripted generators in tests/conftest.py instead.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Literal, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cyoa_engine.config import EngineConfig
from cyoa_engine.models import ChatMessage, ModelSelection

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class GeneratorError(RuntimeError):
    """Raised when the generator cannot be reached or returns an error."""


class RateLimitError(GeneratorError):
    """The backend refused the request for rate-limit reasons (HTTP 429)."""


class EmptyResponseError(GeneratorError):
    """The backend answered with no text, usually a blocked prompt."""


RETRYABLE_ERRORS = (RateLimitError, EmptyResponseError)


def retry_policy(attempts: int, backoff: float) -> AsyncRetrying:
    """Bounded exponential backoff for retryable generator failures only."""
    return AsyncRetrying(
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff, max=30),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class ChatSession(Protocol):
    def send_stream(self, message: str) -> AsyncIterator[str]: ...

    def get_history(self) -> list[ChatMessage]: ...


class Generator(Protocol):
    def start_chat(
        self, system_instruction: str, history: list[ChatMessage]
    ) -> ChatSession: ...

    async def complete(self, prompt: str) -> str: ...


# ---------------------------------------------------------------------------
# HttpGenerator
# ---------------------------------------------------------------------------

ProviderFormat = Literal["openai", "koboldcpp"]


class HttpGenerator:
    """Async HTTP client for chat-style generation backends.

    Supported formats:
      "openai"     - POST /v1/chat/completions  {"model", "messages", "stream"}
                     Stream: SSE lines "data: {choices:[{delta:{content}}]}"
      "koboldcpp"  - POST /api/v1/generate      {"prompt": ...}
                     Response: {"results": [{"text": "..."}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "openai".
        model:           Model identifier, used only by the openai format.
        timeout:         HTTP timeout in seconds. Defaults to 120.
        transport:       Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "openai",
        model: str = "",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._transport = transport

    def start_chat(self, system_instruction: str, history: list[ChatMessage]) -> HttpChatSession:
        return HttpChatSession(self, system_instruction, history)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _chat_body(self, messages: list[dict], stream: bool) -> dict:
        body: dict = {"messages": messages, "stream": stream}
        if self._model:
            body["model"] = self._model
        return body

    @staticmethod
    def _chat_messages(
        system_instruction: str, history: list[ChatMessage], message: str
    ) -> list[dict]:
        messages = [{"role": "system", "content": system_instruction}]
        for item in history:
            role = "assistant" if item.role == "model" else "user"
            messages.append({"role": role, "content": item.text})
        messages.append({"role": "user", "content": message})
        return messages

    @staticmethod
    def _kobold_prompt(
        system_instruction: str, history: list[ChatMessage], message: str
    ) -> str:
        lines = [system_instruction.strip(), ""]
        for item in history:
            speaker = "Game Master" if item.role == "model" else "Player"
            lines.append(f"{speaker}: {item.text}")
        lines.append(f"Player: {message}")
        lines.append("Game Master:")
        return "\n".join(lines)

    def _status_error(self, status: int) -> GeneratorError:
        if status == 429:
            return RateLimitError("Generator backend is rate limiting requests (HTTP 429)")
        return GeneratorError(f"Generator backend returned HTTP {status}")

    async def _post(self, url: str, body: dict) -> dict:
        try:
            async with self._client() as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise GeneratorError(f"Cannot connect to generator backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise self._status_error(e.response.status_code) from e
        except httpx.TimeoutException as e:
            raise GeneratorError(f"Generator backend timed out after {self._timeout}s") from e
        return resp.json()

    def _kobold_text(self, data: dict) -> str:
        results = data.get("results")
        if not results or "text" not in results[0]:
            raise GeneratorError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    async def complete(self, prompt: str) -> str:
        """One-shot completion outside any chat (summaries, world structuring)."""
        logger.debug("generator complete format=%s prompt_len=%d", self._format, len(prompt))
        if self._format == "koboldcpp":
            data = await self._post(f"{self._base_url}/api/v1/generate", {"prompt": prompt})
            return self._kobold_text(data)

        data = await self._post(
            f"{self._base_url}/v1/chat/completions",
            self._chat_body([{"role": "user", "content": prompt}], stream=False),
        )
        choices = data.get("choices")
        if not choices or "message" not in choices[0]:
            raise GeneratorError("Unexpected response format from OpenAI-compatible backend")
        return choices[0]["message"].get("content") or ""

    async def stream(
        self, system_instruction: str, history: list[ChatMessage], message: str
    ) -> AsyncIterator[str]:
        """Yield reply fragments for ``message`` given the prior history."""
        if self._format == "koboldcpp":
            prompt = self._kobold_prompt(system_instruction, history, message)
            data = await self._post(f"{self._base_url}/api/v1/generate", {"prompt": prompt})
            yield self._kobold_text(data)
            return

        url = f"{self._base_url}/v1/chat/completions"
        body = self._chat_body(self._chat_messages(system_instruction, history, message), stream=True)
        logger.debug("generator stream url=%s history_len=%d", url, len(history))
        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=body, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        raise self._status_error(resp.status_code)
                    async for line in resp.aiter_lines():
                        fragment = self._sse_fragment(line)
                        if fragment is None:
                            continue
                        if fragment == "":
                            break
                        yield fragment
        except httpx.ConnectError as e:
            raise GeneratorError(f"Cannot connect to generator backend at {self._base_url}") from e
        except httpx.TimeoutException as e:
            raise GeneratorError(f"Generator backend timed out after {self._timeout}s") from e

    @staticmethod
    def _sse_fragment(line: str) -> str | None:
        """Content of one SSE line; '' marks end of stream, None means skip."""
        if not line.startswith("data:"):
            return None
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return ""
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError as e:
            raise GeneratorError(f"Malformed stream chunk from generator backend: {e}") from e
        choices = chunk.get("choices") or []
        if not choices:
            return None
        content = (choices[0].get("delta") or {}).get("content")
        return content or None


class HttpChatSession:
    """A conversation held against an HttpGenerator."""

    def __init__(
        self, generator: HttpGenerator, system_instruction: str, history: list[ChatMessage]
    ) -> None:
        self._generator = generator
        self.system_instruction = system_instruction
        self._history = [m.model_copy() for m in history]

    async def send_stream(self, message: str) -> AsyncIterator[str]:
        parts: list[str] = []
        async for fragment in self._generator.stream(self.system_instruction, self._history, message):
            parts.append(fragment)
            yield fragment
        reply = "".join(parts)
        if not reply.strip():
            raise EmptyResponseError("The generator returned an empty response")
        self._history.append(ChatMessage(role="user", text=message))
        self._history.append(ChatMessage(role="model", text=reply))

    def get_history(self) -> list[ChatMessage]:
        return [m.model_copy() for m in self._history]


# ---------------------------------------------------------------------------
# EchoGenerator - replies with the message; useful for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoChatSession:
    def __init__(self, system_instruction: str, history: list[ChatMessage]) -> None:
        self.system_instruction = system_instruction
        self._history = [m.model_copy() for m in history]

    async def send_stream(self, message: str) -> AsyncIterator[str]:
        for word in message.split(" "):
            yield word + " "
        self._history.append(ChatMessage(role="user", text=message))
        self._history.append(ChatMessage(role="model", text=message))

    def get_history(self) -> list[ChatMessage]:
        return [m.model_copy() for m in self._history]


class EchoGenerator:
    """Returns the message text as the reply. No network calls.

    Lets you verify the turn wiring (snapshot, streaming, persistence) end to
    end without a running model. Replies contain no directives unless the
    player typed them.
    """

    def start_chat(self, system_instruction: str, history: list[ChatMessage]) -> EchoChatSession:
        logger.debug("EchoGenerator chat history_len=%d", len(history))
        return EchoChatSession(system_instruction, history)

    async def complete(self, prompt: str) -> str:
        return prompt


def create_generator(config: EngineConfig, selection: ModelSelection) -> Generator:
    """Build the generator for a session's model-selection mode."""
    if selection == "local":
        return HttpGenerator(
            provider_url=config.local_url,
            provider_format="koboldcpp",
            timeout=config.request_timeout,
        )
    if not config.provider_url:
        logger.warning("No hosted generator configured; falling back to EchoGenerator")
        return EchoGenerator()
    return HttpGenerator(
        provider_url=config.provider_url,
        api_key=config.api_key,
        provider_format="openai",
        model=config.model,
        timeout=config.request_timeout,
    )
