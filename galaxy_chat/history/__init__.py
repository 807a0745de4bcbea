"""Durable, ordered message history."""

from galaxy_chat.history.base import HistoryStore
from galaxy_chat.history.memory import InMemoryHistoryStore
from galaxy_chat.history.sql import SqlHistoryStore

__all__ = ["HistoryStore", "InMemoryHistoryStore", "SqlHistoryStore", "create_history_store"]


def create_history_store(db_url: str) -> HistoryStore:
    """Build the store named by a database URL (``memory://`` keeps history in-process)."""
    if db_url.startswith("memory://"):
        return InMemoryHistoryStore()
    return SqlHistoryStore(db_url)
