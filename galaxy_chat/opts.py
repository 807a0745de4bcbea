"""Shared CLI options."""

from __future__ import annotations

import os
from pathlib import Path

import typer

from galaxy_chat import constants

# --- Server Options ---
SERVER_HOST = typer.Option(
    "0.0.0.0",  # noqa: S104
    "--host",
    help="Host to bind the server to.",
    rich_help_panel="Server Configuration",
)
SERVER_PORT = typer.Option(
    8000,
    "--port",
    help="Port to bind the server to.",
    rich_help_panel="Server Configuration",
)
LOG_LEVEL = typer.Option(
    "info",
    "--log-level",
    help="Set the log level (e.g., debug, info, warning).",
    rich_help_panel="Server Configuration",
)
IDENTITY_HEADER = typer.Option(
    constants.DEFAULT_IDENTITY_HEADER,
    "--identity-header",
    help="Request header carrying the authenticated user id (set by your auth gateway).",
    rich_help_panel="Server Configuration",
)
API_TOKEN = typer.Option(
    os.getenv("GALAXY_CHAT_API_TOKEN"),
    "--api-token",
    help="Require `Authorization: Bearer <token>` on every request.",
    rich_help_panel="Server Configuration",
)
CORS_ORIGINS = typer.Option(
    ["*"],
    "--cors-origin",
    help="Allowed CORS origin; repeat the option for several.",
    rich_help_panel="Server Configuration",
)

# --- Model Options ---
OPENAI_BASE_URL = typer.Option(
    os.getenv("OPENAI_BASE_URL", constants.DEFAULT_OPENAI_BASE_URL),
    "--openai-base-url",
    help="Base URL of an OpenAI-compatible API.",
    rich_help_panel="Model Configuration",
)
OPENAI_API_KEY = typer.Option(
    os.getenv("OPENAI_API_KEY"),
    "--openai-api-key",
    help="OpenAI API key.",
    rich_help_panel="Model Configuration",
)
MODEL = typer.Option(
    constants.DEFAULT_MODEL,
    "--model",
    help="Chat model used for replies and titles.",
    rich_help_panel="Model Configuration",
)
TEMPERATURE = typer.Option(
    constants.DEFAULT_TEMPERATURE,
    "--temperature",
    help="Sampling temperature for replies.",
    rich_help_panel="Model Configuration",
)
MODEL_TIMEOUT = typer.Option(
    constants.DEFAULT_MODEL_TIMEOUT_SECONDS,
    "--model-timeout",
    help="Wall-clock limit in seconds for one model reply.",
    rich_help_panel="Model Configuration",
)
MAX_TOKENS = typer.Option(
    None,
    "--max-tokens",
    help="Upper bound on tokens per reply (model default when unset).",
    rich_help_panel="Model Configuration",
)

# --- Storage Options ---
DB_URL = typer.Option(
    "sqlite+aiosqlite:///galaxy-chat.db",
    "--db-url",
    help="SQLAlchemy async database URL, or memory:// for in-process history.",
    rich_help_panel="Storage Configuration",
)
ATTACHMENTS_DIR = typer.Option(
    Path("uploads"),
    "--attachments-dir",
    help="Directory for uploaded files (served under /files).",
    rich_help_panel="Storage Configuration",
)
MEMORY_BACKEND = typer.Option(
    "memory",
    "--memory-backend",
    help='Long-term memory: "none", "memory" (in-process) or "chroma".',
    rich_help_panel="Storage Configuration",
)
CHROMA_PATH = typer.Option(
    Path("galaxy-chat-memory"),
    "--chroma-path",
    help="ChromaDB persistence directory for the chroma memory backend.",
    rich_help_panel="Storage Configuration",
)
EMBEDDING_MODEL = typer.Option(
    constants.DEFAULT_OPENAI_EMBEDDING_MODEL,
    "--embedding-model",
    help="Embedding model for the chroma memory backend.",
    rich_help_panel="Storage Configuration",
)
MEMORY_TOP_K = typer.Option(
    constants.DEFAULT_MEMORY_TOP_K,
    "--memory-top-k",
    help="How many remembered turns are added to each prompt.",
    rich_help_panel="Storage Configuration",
)

# --- Chat Options ---
DEDUP_WINDOW = typer.Option(
    constants.DEDUP_WINDOW_SECONDS,
    "--dedup-window",
    help="Seconds within which an identical user message is not saved again.",
    rich_help_panel="Chat Configuration",
)
TITLE_TIMEOUT = typer.Option(
    constants.DEFAULT_TITLE_TIMEOUT_SECONDS,
    "--title-timeout",
    help="Seconds to wait for a generated title before falling back.",
    rich_help_panel="Chat Configuration",
)

# --- General Options ---
CONFIG_FILE = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to a custom config file.",
)
