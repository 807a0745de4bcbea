"""ChromaDB access for the long-term memory collection."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import chromadb
from chromadb.utils import embedding_functions

from galaxy_chat.constants import DEFAULT_OPENAI_EMBEDDING_MODEL

if TYPE_CHECKING:
    from pathlib import Path

    from chromadb import Collection
    from pydantic import BaseModel

_QUERY_INCLUDE = ["documents", "metadatas", "distances"]


def init_collection(
    persistence_path: Path,
    *,
    name: str = "memory",
    embedding_model: str = DEFAULT_OPENAI_EMBEDDING_MODEL,
    openai_base_url: str | None = None,
    openai_api_key: str | None = None,
) -> Collection:
    """Open (or create) the persistent memory collection with OpenAI-compatible embeddings."""
    persistence_path.mkdir(parents=True, exist_ok=True)
    client = chromadb.PersistentClient(path=str(persistence_path))
    embed_fn = embedding_functions.OpenAIEmbeddingFunction(
        api_base=openai_base_url,
        api_key=openai_api_key or "dummy",
        model_name=embedding_model,
    )
    return client.get_or_create_collection(name=name, embedding_function=embed_fn)


def add_document(collection: Collection, doc_id: str, text: str, metadata: BaseModel) -> None:
    """Store one document; metadata is dumped flat since Chroma rejects nesting."""
    collection.upsert(
        ids=[doc_id],
        documents=[text],
        metadatas=[metadata.model_dump(mode="json", exclude_none=True)],
    )


def query_owner(
    collection: Collection,
    query: str,
    owner: str,
    *,
    n_results: int,
) -> list[tuple[str, dict[str, Any], float | None]]:
    """Nearest documents of one owner as ``(document, metadata, distance)`` rows."""
    raw = collection.query(
        query_texts=[query],
        n_results=n_results,
        where={"owner": owner},
        include=_QUERY_INCLUDE,  # type: ignore[arg-type]
    )
    docs_list = raw.get("documents")
    docs = docs_list[0] if docs_list else []
    metas_list = raw.get("metadatas")
    metas = metas_list[0] if metas_list else []
    dists_list = raw.get("distances")
    distances = dists_list[0] if dists_list else []
    return [
        (str(doc), dict(meta), float(dist) if dist is not None else None)
        for doc, meta, dist in zip(docs, metas, distances, strict=False)
    ]
