"""History store protocol and shared helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from galaxy_chat.models import Attachment, Conversation, Message, Role

_TICK = timedelta(microseconds=1)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(UTC)


def next_timestamp(now: datetime, last: datetime | None) -> datetime:
    """Return a creation time strictly after ``last``.

    Keeps message timestamps unique within a conversation so that ordering by
    creation time is total and range deletes never split ties.
    """
    if last is not None and now <= last:
        return last + _TICK
    return now


@runtime_checkable
class HistoryStore(Protocol):
    """Ordered log of conversations and messages.

    Every lookup and mutation is scoped to an owner; a record owned by someone
    else behaves exactly like a missing one.
    """

    async def start(self) -> None:
        """Prepare the backing storage (create tables, open pools)."""
        ...

    async def close(self) -> None:
        """Release backing resources."""
        ...

    async def create_conversation(self, owner: str, title: str) -> Conversation:
        """Create an empty conversation."""
        ...

    async def get_conversation(self, conversation_id: str, owner: str) -> Conversation | None:
        """Return the conversation if it exists and belongs to ``owner``."""
        ...

    async def list_conversations(self, owner: str) -> list[Conversation]:
        """List conversations, most recently updated first."""
        ...

    async def update_conversation(
        self,
        conversation_id: str,
        owner: str,
        *,
        title: str | None = None,
        if_title: str | None = None,
    ) -> Conversation | None:
        """Optionally retitle and bump ``updated_at``.

        With ``if_title`` the update is conditional: a conversation whose current
        title differs is returned unchanged.
        """
        ...

    async def delete_conversation(self, conversation_id: str, owner: str) -> list[Message] | None:
        """Delete a conversation and its messages; None if not found."""
        ...

    async def append_message(
        self,
        conversation_id: str,
        owner: str,
        role: Role,
        content: str,
        attachments: Sequence[Attachment] = (),
    ) -> Message:
        """Append a message, stamping a creation time later than any existing one."""
        ...

    async def get_message(self, message_id: str, owner: str) -> Message | None:
        """Return the message if it exists and belongs to ``owner``."""
        ...

    async def list_messages(self, conversation_id: str, owner: str) -> list[Message]:
        """Return the conversation's messages in creation order."""
        ...

    async def recent_messages(
        self,
        conversation_id: str,
        owner: str,
        *,
        role: Role,
        since: datetime,
    ) -> list[Message]:
        """Messages of ``role`` created at or after ``since``."""
        ...

    async def update_message_content(
        self,
        message_id: str,
        owner: str,
        content: str,
    ) -> Message | None:
        """Overwrite content and mark the message as edited."""
        ...

    async def delete_message(self, message_id: str, owner: str) -> Message | None:
        """Delete one message and return it."""
        ...

    async def delete_after(
        self,
        conversation_id: str,
        owner: str,
        after: datetime,
    ) -> list[Message]:
        """Delete every message created strictly after ``after`` and return them."""
        ...
