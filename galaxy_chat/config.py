"""Pydantic models for server settings and config file loading."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from galaxy_chat.constants import (
    DEDUP_WINDOW_SECONDS,
    DEFAULT_IDENTITY_HEADER,
    DEFAULT_MEMORY_TOP_K,
    DEFAULT_MODEL,
    DEFAULT_MODEL_TIMEOUT_SECONDS,
    DEFAULT_OPENAI_BASE_URL,
    DEFAULT_OPENAI_EMBEDDING_MODEL,
    DEFAULT_TEMPERATURE,
    DEFAULT_TITLE_TIMEOUT_SECONDS,
)
from galaxy_chat.core.common import console

# --- Config File Loading ---

CONFIG_PATH = Path.home() / ".config" / "galaxy-chat" / "config.toml"
CONFIG_PATH_2 = Path("galaxy-chat-config.toml")


def _replace_dashed_keys(cfg: dict[str, Any]) -> dict[str, Any]:
    """Recursively replace dashed keys with underscores."""
    new_dict: dict[str, Any] = {}
    for k, v in cfg.items():
        new_dict[k.replace("-", "_")] = _replace_dashed_keys(v) if isinstance(v, dict) else v
    return new_dict


def load_config(config_path_str: str | None = None) -> dict[str, Any]:
    """Load the TOML configuration file, returning an empty dict when there is none."""
    if config_path_str:
        config_path = Path(config_path_str).expanduser()
    elif CONFIG_PATH.exists():
        config_path = CONFIG_PATH
    elif CONFIG_PATH_2.exists():
        config_path = CONFIG_PATH_2
    else:
        return {}

    if config_path.exists():
        try:
            with config_path.open("rb") as f:
                return _replace_dashed_keys(tomllib.load(f))
        except tomllib.TOMLDecodeError as e:
            console.print(f"[bold red]Error parsing config file {config_path}: {e}[/bold red]")
            return {}

    # Report error only if an explicit path was given
    console.print(f"[bold red]Config file not found at {config_path_str}[/bold red]")
    return {}


# --- Pydantic Models for Configuration ---


def _expand(v: str | Path) -> Path:
    return Path(v).expanduser()


class ServerSettings(BaseModel):
    """HTTP server and request identity."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8000
    log_level: str = "info"
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    identity_header: str = DEFAULT_IDENTITY_HEADER
    api_token: str | None = None


class ModelSettings(BaseModel):
    """OpenAI-compatible completion backend."""

    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    openai_api_key: str | None = None
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int | None = None
    timeout: float = DEFAULT_MODEL_TIMEOUT_SECONDS


class StorageSettings(BaseModel):
    """History database, uploads and long-term memory."""

    db_url: str = "sqlite+aiosqlite:///galaxy-chat.db"
    attachments_dir: Path = Path("uploads")
    memory_backend: Literal["none", "memory", "chroma"] = "memory"
    chroma_path: Path = Path("galaxy-chat-memory")
    embedding_model: str = DEFAULT_OPENAI_EMBEDDING_MODEL
    memory_top_k: int = DEFAULT_MEMORY_TOP_K

    @field_validator("attachments_dir", "chroma_path", mode="before")
    @classmethod
    def _expand_user_path(cls, v: str | Path) -> Path:
        return _expand(v)


class ChatSettings(BaseModel):
    """Turn handling knobs."""

    dedup_window: float = DEDUP_WINDOW_SECONDS
    title_timeout: float = DEFAULT_TITLE_TIMEOUT_SECONDS


class Settings(BaseModel):
    """Everything needed to build the application."""

    server: ServerSettings = Field(default_factory=ServerSettings)
    model: ModelSettings = Field(default_factory=ModelSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    chat: ChatSettings = Field(default_factory=ChatSettings)
