"""Image generation client.

    class ImageGenerator(Protocol):
        async def __call__(self, prompt, style, aspect_ratio) -> str | None: ...

Image generation is never fatal: every implementation returns None when no
image could be produced, and the caller leaves the slot in a failed state that
the player can retry.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cyoa_engine.config import EngineConfig
from cyoa_engine.models import AspectRatio

logger = logging.getLogger(__name__)

_SIZES: dict[str, str] = {"16:9": "1792x1024", "1:1": "1024x1024"}


def portrait_prompt(description: str) -> str:
    return (
        f"Cinematic character portrait of {description}. Focus on detailed facial "
        "features, expressive lighting, high-quality rendering."
    )


class ImageGenerator(Protocol):
    async def __call__(self, prompt: str, style: str, aspect_ratio: AspectRatio) -> str | None: ...


class _RateLimited(Exception):
    pass


class HttpImageGenerator:
    """OpenAI-compatible image client: POST /v1/images/generations.

    Rate-limited requests (HTTP 429) are retried with exponential backoff;
    anything else is logged and turns into None.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        model: str = "",
        timeout: float = 120.0,
        attempts: int = 4,
        backoff: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._attempts = attempts
        self._backoff = backoff
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def __call__(self, prompt: str, style: str, aspect_ratio: AspectRatio) -> str | None:
        full_prompt = f"{style}, {prompt}" if style else prompt
        body: dict = {
            "prompt": full_prompt,
            "n": 1,
            "size": _SIZES.get(aspect_ratio, _SIZES["16:9"]),
            "response_format": "b64_json",
        }
        if self._model:
            body["model"] = self._model

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(_RateLimited),
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(multiplier=self._backoff, max=30),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    data = await self._request(body)
        except RetryError:
            logger.error("Image generation still rate limited after %d attempts", self._attempts)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Image generation failed: %s", e)
            return None

        images = data.get("data") or []
        if not images:
            logger.warning("No image returned, the prompt was likely filtered: %r", full_prompt)
            return None
        first = images[0]
        if first.get("b64_json"):
            return f"data:image/png;base64,{first['b64_json']}"
        return first.get("url")

    async def _request(self, body: dict) -> dict:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(
                f"{self._base_url}/v1/images/generations", json=body, headers=self._headers()
            )
        if resp.status_code == 429:
            raise _RateLimited()
        resp.raise_for_status()
        return resp.json()


class NullImageGenerator:
    """Used when no image backend is configured."""

    async def __call__(self, prompt: str, style: str, aspect_ratio: AspectRatio) -> str | None:
        logger.debug("Image generation disabled; skipping %s prompt", aspect_ratio)
        return None


def create_image_generator(config: EngineConfig) -> ImageGenerator:
    if not config.image_url:
        return NullImageGenerator()
    return HttpImageGenerator(
        base_url=config.image_url,
        api_key=config.image_api_key,
        model=config.image_model,
        timeout=config.request_timeout,
    )
