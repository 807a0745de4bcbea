"""Console, logging and middleware helpers for the server."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from fastapi import Request

logger = logging.getLogger(__name__)

console = Console()


def print_error_message(message: str, suggestion: str | None = None) -> None:
    """Print a formatted error message to the console."""
    console.print(f"[bold red]❌ {message}[/bold red]")
    if suggestion:
        console.print(f"[yellow]{suggestion}[/yellow]")


def setup_rich_logging(log_level: str = "info", *, rich_console: Console | None = None) -> None:
    """Route the root and uvicorn loggers through a single Rich handler."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = RichHandler(
        console=rich_console or console,
        show_time=True,
        show_level=True,
        show_path=False,
        rich_tracebacks=True,
        markup=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # uvicorn loggers share the root handler and do not propagate.
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.addHandler(handler)
        server_logger.setLevel(level)
        server_logger.propagate = False

    # Chatty client libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("chromadb").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


async def log_requests_middleware(request: Request, call_next: Any) -> Any:
    """Log each request with its duration; error responses are logged as warnings."""
    client_ip = request.client.host if request.client else "unknown"
    start = time.perf_counter()

    response = await call_next(request)

    # Streaming bodies are still running here; this times up to the response headers.
    elapsed_ms = (time.perf_counter() - start) * 1000
    level = logging.WARNING if response.status_code >= 400 else logging.INFO  # noqa: PLR2004
    logger.log(
        level,
        "%s %s from %s -> %d (%.1f ms)",
        request.method,
        request.url.path,
        client_ip,
        response.status_code,
        elapsed_ms,
    )
    return response
