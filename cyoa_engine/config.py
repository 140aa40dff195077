"""Engine configuration from the environment.

Values come from ``CYOA_*`` environment variables, optionally seeded from a
``.env`` file at the repository root (python-dotenv never overrides variables
that are already set).

    CYOA_PROVIDER_URL     hosted generator base URL (OpenAI-compatible)
    CYOA_API_KEY          hosted generator bearer token
    CYOA_MODEL            hosted model identifier
    CYOA_LOCAL_URL        local generator base URL (KoboldCpp)
    CYOA_IMAGE_URL        image generation base URL (OpenAI-compatible)
    CYOA_IMAGE_API_KEY    image generation bearer token
    CYOA_IMAGE_MODEL      image model identifier
    CYOA_DATA_DIR         directory for saved sessions
    CYOA_MAX_ATTEMPTS     generator attempts per turn for retryable failures
    CYOA_RETRY_BACKOFF    exponential backoff multiplier in seconds
    CYOA_REQUEST_TIMEOUT  HTTP timeout for generator and image calls
    CYOA_SUMMARIZE_THRESHOLD  world lore length above which it is summarized
    CYOA_LORE_SNIPPETS    lore sentences injected per player action
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

ROOT = Path(__file__).parent.parent
DEFAULT_DATA_DIR = ROOT / "data"


class EngineConfig(BaseModel):
    provider_url: str = ""
    api_key: str = ""
    model: str = ""
    local_url: str = "http://localhost:5001"
    image_url: str = ""
    image_api_key: str = ""
    image_model: str = ""
    data_dir: Path = DEFAULT_DATA_DIR
    max_attempts: int = 3
    retry_backoff: float = 2.0
    request_timeout: float = 120.0
    summarize_threshold: int = 20000
    lore_snippets: int = 3

    @property
    def credential_configured(self) -> bool:
        """True when a hosted generator key is set; drives the model-selection default."""
        return bool(self.api_key)


def load_config(env_file: Path | None = None) -> EngineConfig:
    """Read EngineConfig from the environment (after loading ``.env``)."""
    load_dotenv(env_file or ROOT / ".env")
    defaults = EngineConfig()
    return EngineConfig(
        provider_url=os.getenv("CYOA_PROVIDER_URL", defaults.provider_url),
        api_key=os.getenv("CYOA_API_KEY", defaults.api_key),
        model=os.getenv("CYOA_MODEL", defaults.model),
        local_url=os.getenv("CYOA_LOCAL_URL", defaults.local_url),
        image_url=os.getenv("CYOA_IMAGE_URL", defaults.image_url),
        image_api_key=os.getenv("CYOA_IMAGE_API_KEY", defaults.image_api_key),
        image_model=os.getenv("CYOA_IMAGE_MODEL", defaults.image_model),
        data_dir=Path(os.getenv("CYOA_DATA_DIR", str(defaults.data_dir))),
        max_attempts=int(os.getenv("CYOA_MAX_ATTEMPTS", defaults.max_attempts)),
        retry_backoff=float(os.getenv("CYOA_RETRY_BACKOFF", defaults.retry_backoff)),
        request_timeout=float(os.getenv("CYOA_REQUEST_TIMEOUT", defaults.request_timeout)),
        summarize_threshold=int(os.getenv("CYOA_SUMMARIZE_THRESHOLD", defaults.summarize_threshold)),
        lore_snippets=int(os.getenv("CYOA_LORE_SNIPPETS", defaults.lore_snippets)),
    )
