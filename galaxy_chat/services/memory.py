"""Long-term memory oracles.

The chat core treats memory as a black box: turns are ingested as they happen
and a short context block is retrieved for each new prompt.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pydantic import BaseModel

from galaxy_chat.constants import DEFAULT_MEMORY_TOP_K
from galaxy_chat.core.chroma import add_document, query_owner
from galaxy_chat.models import new_id

if TYPE_CHECKING:
    from chromadb import Collection

    from galaxy_chat.models import Role

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+")
_MIN_WORD_LEN = 3


@runtime_checkable
class MemoryOracle(Protocol):
    """Ingests turns and returns relevant prior context."""

    async def ingest(self, role: Role, text: str, owner: str) -> None:
        """Remember a turn for ``owner``."""
        ...

    async def retrieve(self, query: str, owner: str) -> str:
        """Return context relevant to ``query`` (empty string when nothing matches)."""
        ...


@dataclass
class MemoryEntry:
    """A remembered turn."""

    role: str
    content: str
    created_at: str
    score: float | None = None


def format_memory_context(entries: list[MemoryEntry]) -> str:
    """Render retrieved entries as a prompt block, most relevant first."""
    return "\n\n---\n\n".join(f"[{e.role}] {e.content}" for e in entries)


def _keywords(text: str) -> set[str]:
    return {w for w in _WORD_RE.findall(text.lower()) if len(w) >= _MIN_WORD_LEN}


class NullMemoryOracle:
    """Memory disabled."""

    async def ingest(self, role: Role, text: str, owner: str) -> None:  # noqa: ARG002
        return None

    async def retrieve(self, query: str, owner: str) -> str:  # noqa: ARG002
        return ""


class InMemoryMemoryOracle:
    """Keyword-overlap memory kept for the lifetime of the instance."""

    def __init__(self, *, top_k: int = DEFAULT_MEMORY_TOP_K, max_entries: int = 500) -> None:
        self.top_k = top_k
        self.max_entries = max_entries
        self._entries: dict[str, list[MemoryEntry]] = {}

    async def ingest(self, role: Role, text: str, owner: str) -> None:
        cleaned = text.strip()
        if not cleaned:
            return
        entries = self._entries.setdefault(owner, [])
        entries.append(
            MemoryEntry(role=role, content=cleaned, created_at=datetime.now(UTC).isoformat()),
        )
        # Evict oldest beyond max_entries
        if len(entries) > self.max_entries:
            del entries[: len(entries) - self.max_entries]

    async def retrieve(self, query: str, owner: str) -> str:
        wanted = _keywords(query)
        if not wanted:
            return ""
        scored: list[tuple[int, int, MemoryEntry]] = []
        for idx, entry in enumerate(self._entries.get(owner, [])):
            overlap = len(wanted & _keywords(entry.content))
            if overlap:
                scored.append((overlap, idx, entry))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return format_memory_context([entry for _, _, entry in scored[: self.top_k]])


class MemoryMetadata(BaseModel):
    """Metadata stored next to each memory document."""

    owner: str
    role: str
    created_at: str


class ChromaMemoryOracle:
    """Vector memory over a Chroma collection."""

    def __init__(self, collection: Collection, *, top_k: int = DEFAULT_MEMORY_TOP_K) -> None:
        self.collection = collection
        self.top_k = top_k

    def _ingest_sync(self, role: Role, text: str, owner: str) -> None:
        meta = MemoryMetadata(owner=owner, role=role, created_at=datetime.now(UTC).isoformat())
        add_document(self.collection, new_id(), text, meta)

    def _retrieve_sync(self, query: str, owner: str) -> list[MemoryEntry]:
        rows = query_owner(self.collection, query, owner, n_results=self.top_k)
        entries: list[MemoryEntry] = []
        for doc, meta, distance in rows:
            norm = MemoryMetadata(**meta)
            entries.append(
                MemoryEntry(
                    role=norm.role,
                    content=doc,
                    created_at=norm.created_at,
                    score=distance,
                ),
            )
        return entries

    async def ingest(self, role: Role, text: str, owner: str) -> None:
        if not text.strip():
            return
        await asyncio.to_thread(self._ingest_sync, role, text.strip(), owner)

    async def retrieve(self, query: str, owner: str) -> str:
        if not query.strip():
            return ""
        entries = await asyncio.to_thread(self._retrieve_sync, query, owner)
        logger.debug("Memory retrieval returned %d entries", len(entries))
        return format_memory_context(entries)
