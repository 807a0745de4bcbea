"""Parsing helpers for OpenAI-compatible Server-Sent Events."""

from __future__ import annotations

import json
from typing import Any


def parse_chunk(line: str) -> dict[str, Any] | None:
    """Decode one ``data:`` line into a chunk dict, or None for anything else."""
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_content_from_chunk(chunk: dict[str, Any]) -> str:
    """Return the assistant text delta carried by a chunk (may be empty)."""
    choices = chunk.get("choices") or [{}]
    delta = choices[0].get("delta") or {}
    return delta.get("content") or delta.get("text") or ""


def extract_error(chunk: dict[str, Any]) -> str | None:
    """Return an in-band error message if the upstream sent one."""
    error = chunk.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)
