"""Engine configuration: LLM connection plus per-component tuning.

Values are resolved in three layers:

  1. Model defaults declared below.
  2. A stored JSON file (``config.json`` in the data directory by default),
     merged group by group so a partial file only overrides what it names.
  3. Environment variables, loaded from ``.env`` with python-dotenv:

       STORY_ENGINE_LLM_URL       llm.provider_url
       STORY_ENGINE_LLM_API_KEY   llm.api_key
       STORY_ENGINE_LLM_FORMAT    llm.provider_format
       STORY_ENGINE_LLM_MODEL     llm.model
       STORY_ENGINE_DATA_DIR      data_dir
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from story_engine.llm import HttpLLM, ProviderFormat
from story_engine.models import MemoryConfig

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a stored config file cannot be read or validated."""


class ContextConfig(BaseModel):
    llm_threshold: int = 30
    max_entries_per_tier: int = 10
    enable_llm_selection: bool = True
    recent_entries_count: int = 5


class RetrievalSettings(BaseModel):
    timeline_fill_enabled: bool = True
    agentic_enabled: bool = True
    agentic_threshold: int = 30  # chapter count above which agentic retrieval is used
    agentic_max_iterations: int = 30
    max_timeline_queries: int = 5
    lorebook_recent_entries: int = 10


class LoreManagementSettings(BaseModel):
    enabled: bool = True
    max_iterations: int = 20
    recent_entries: int = 20


class VaultSettings(BaseModel):
    max_steps: int = 50


class LLMConnection(BaseModel):
    provider_url: str = "http://localhost:5001"
    api_key: str = ""
    provider_format: ProviderFormat = "openai"
    model: str = ""
    timeout: float = 120.0
    temperature: float | None = None

    def client(self) -> HttpLLM:
        return HttpLLM(
            provider_url=self.provider_url,
            api_key=self.api_key,
            provider_format=self.provider_format,
            model=self.model,
            timeout=self.timeout,
            temperature=self.temperature,
        )


class AppConfig(BaseModel):
    data_dir: Path = Path("data")
    llm: LLMConnection = Field(default_factory=LLMConnection)
    context: ContextConfig = Field(default_factory=ContextConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    lore_management: LoreManagementSettings = Field(default_factory=LoreManagementSettings)
    vault: VaultSettings = Field(default_factory=VaultSettings)


_GROUPS = ("llm", "context", "memory", "retrieval", "lore_management", "vault")

_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "STORY_ENGINE_LLM_URL": ("llm", "provider_url"),
    "STORY_ENGINE_LLM_API_KEY": ("llm", "api_key"),
    "STORY_ENGINE_LLM_FORMAT": ("llm", "provider_format"),
    "STORY_ENGINE_LLM_MODEL": ("llm", "model"),
}


def load_config(path: Path | None = None, env_file: Path | None = None) -> AppConfig:
    """Read config, returning defaults merged with stored values and env overrides."""
    load_dotenv(env_file)

    merged: dict[str, Any] = AppConfig().model_dump()
    if os.getenv("STORY_ENGINE_DATA_DIR"):
        merged["data_dir"] = os.environ["STORY_ENGINE_DATA_DIR"]

    path = path or Path(merged["data_dir"]) / "config.json"
    if path.is_file():
        try:
            stored = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
        for group in _GROUPS:
            vals = stored.get(group)
            if isinstance(vals, dict):
                merged[group].update(vals)
        if "data_dir" in stored and not os.getenv("STORY_ENGINE_DATA_DIR"):
            merged["data_dir"] = stored["data_dir"]
    else:
        logger.debug("No config file at %s, using defaults", path)

    for var, (group, key) in _ENV_OVERRIDES.items():
        value = os.getenv(var)
        if value:
            merged[group][key] = value

    try:
        return AppConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def save_config(config: AppConfig, path: Path | None = None) -> Path:
    """Persist the full config. Returns the path written."""
    path = path or config.data_dir / "config.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(config.model_dump_json(indent=2))
    return path
