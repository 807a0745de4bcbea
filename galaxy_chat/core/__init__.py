"""Shared helpers: logging, background tasks, SSE parsing, Chroma access."""
