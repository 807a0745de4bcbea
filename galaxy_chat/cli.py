"""Command-line entry point."""

from __future__ import annotations

from pathlib import Path  # noqa: TC003

import typer

from galaxy_chat import opts
from galaxy_chat.config import (
    ChatSettings,
    ModelSettings,
    ServerSettings,
    Settings,
    StorageSettings,
    load_config,
)
from galaxy_chat.core.common import console, print_error_message, setup_rich_logging

app = typer.Typer(
    name="galaxy-chat",
    help="Streaming multi-turn chat server with persistent history and long-term memory.",
    add_completion=False,
)


def set_config_defaults(ctx: typer.Context, config_file: str | None) -> None:
    """Feed `[defaults]` and per-command tables of the config file to typer."""
    config = load_config(config_file)
    wildcard_config = config.get("defaults", {})
    commands = getattr(ctx.command, "commands", {}) or {}
    ctx.default_map = {
        name: {**wildcard_config, **config.get(name, {})} for name in commands
    }


@app.callback()
def main(ctx: typer.Context, config_file: str | None = opts.CONFIG_FILE) -> None:
    """Galaxy chat server."""
    import dotenv  # noqa: PLC0415

    dotenv.load_dotenv()
    set_config_defaults(ctx, config_file)


@app.command("serve")
def serve(
    host: str = opts.SERVER_HOST,
    port: int = opts.SERVER_PORT,
    log_level: str = opts.LOG_LEVEL,
    identity_header: str = opts.IDENTITY_HEADER,
    api_token: str | None = opts.API_TOKEN,
    cors_origin: list[str] = opts.CORS_ORIGINS,
    openai_base_url: str = opts.OPENAI_BASE_URL,
    openai_api_key: str | None = opts.OPENAI_API_KEY,
    model: str = opts.MODEL,
    temperature: float = opts.TEMPERATURE,
    model_timeout: float = opts.MODEL_TIMEOUT,
    max_tokens: int | None = opts.MAX_TOKENS,
    db_url: str = opts.DB_URL,
    attachments_dir: Path = opts.ATTACHMENTS_DIR,
    memory_backend: str = opts.MEMORY_BACKEND,
    chroma_path: Path = opts.CHROMA_PATH,
    embedding_model: str = opts.EMBEDDING_MODEL,
    memory_top_k: int = opts.MEMORY_TOP_K,
    dedup_window: float = opts.DEDUP_WINDOW,
    title_timeout: float = opts.TITLE_TIMEOUT,
) -> None:
    """Run the chat HTTP server."""
    setup_rich_logging(log_level)
    try:
        settings = Settings(
            server=ServerSettings(
                host=host,
                port=port,
                log_level=log_level,
                cors_origins=cors_origin,
                identity_header=identity_header,
                api_token=api_token,
            ),
            model=ModelSettings(
                openai_base_url=openai_base_url,
                openai_api_key=openai_api_key,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=model_timeout,
            ),
            storage=StorageSettings(
                db_url=db_url,
                attachments_dir=attachments_dir,
                memory_backend=memory_backend,
                chroma_path=chroma_path,
                embedding_model=embedding_model,
                memory_top_k=memory_top_k,
            ),
            chat=ChatSettings(dedup_window=dedup_window, title_timeout=title_timeout),
        )
    except ValueError as exc:
        print_error_message("Invalid configuration", str(exc))
        raise typer.Exit(1) from exc

    import uvicorn  # noqa: PLC0415

    from galaxy_chat.api import build_app  # noqa: PLC0415

    console.print(f"[bold green]Starting Galaxy Chat on {host}:{port}[/bold green]")
    console.print(f"  💾 History: [blue]{db_url}[/blue]")
    console.print(f"  🤖 Backend: [blue]{openai_base_url}[/blue] ({model})")
    console.print(f"  🧠 Memory: [blue]{memory_backend}[/blue]")
    console.print(f"  📎 Uploads: [blue]{settings.storage.attachments_dir}[/blue]")

    uvicorn.run(build_app(settings), host=host, port=port, log_config=None)
