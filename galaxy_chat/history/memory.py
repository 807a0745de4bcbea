"""Process-lifetime history store backed by plain dictionaries."""

from __future__ import annotations

from typing import TYPE_CHECKING

from galaxy_chat.history.base import next_timestamp, utcnow
from galaxy_chat.models import Conversation, Message, new_id

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from datetime import datetime

    from galaxy_chat.models import Attachment, Role


class InMemoryHistoryStore:
    """History store that lives as long as the instance does.

    Constructed once at startup and injected; nothing is shared at module level.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _owned(self, conversation_id: str, owner: str) -> Conversation | None:
        convo = self._conversations.get(conversation_id)
        if convo is None or convo.owner != owner:
            return None
        return convo

    async def create_conversation(self, owner: str, title: str) -> Conversation:
        now = self._clock()
        convo = Conversation(id=new_id(), owner=owner, title=title, created_at=now, updated_at=now)
        self._conversations[convo.id] = convo
        self._messages[convo.id] = []
        return convo

    async def get_conversation(self, conversation_id: str, owner: str) -> Conversation | None:
        return self._owned(conversation_id, owner)

    async def list_conversations(self, owner: str) -> list[Conversation]:
        owned = [c for c in self._conversations.values() if c.owner == owner]
        return sorted(owned, key=lambda c: c.updated_at, reverse=True)

    async def update_conversation(
        self,
        conversation_id: str,
        owner: str,
        *,
        title: str | None = None,
        if_title: str | None = None,
    ) -> Conversation | None:
        convo = self._owned(conversation_id, owner)
        if convo is None:
            return None
        if if_title is not None and convo.title != if_title:
            return convo
        update: dict[str, object] = {"updated_at": self._clock()}
        if title is not None:
            update["title"] = title
        convo = convo.model_copy(update=update)
        self._conversations[conversation_id] = convo
        return convo

    async def delete_conversation(self, conversation_id: str, owner: str) -> list[Message] | None:
        if self._owned(conversation_id, owner) is None:
            return None
        del self._conversations[conversation_id]
        return self._messages.pop(conversation_id, [])

    async def append_message(
        self,
        conversation_id: str,
        owner: str,
        role: Role,
        content: str,
        attachments: Sequence[Attachment] = (),
    ) -> Message:
        if self._owned(conversation_id, owner) is None:
            msg = f"Conversation {conversation_id} not found"
            raise KeyError(msg)
        log = self._messages[conversation_id]
        last = log[-1].created_at if log else None
        message = Message(
            id=new_id(),
            conversation_id=conversation_id,
            owner=owner,
            role=role,
            content=content,
            attachments=list(attachments),
            created_at=next_timestamp(self._clock(), last),
        )
        log.append(message)
        return message

    def _find(self, message_id: str, owner: str) -> tuple[list[Message], int] | None:
        for log in self._messages.values():
            for idx, message in enumerate(log):
                if message.id == message_id:
                    return (log, idx) if message.owner == owner else None
        return None

    async def get_message(self, message_id: str, owner: str) -> Message | None:
        found = self._find(message_id, owner)
        if found is None:
            return None
        log, idx = found
        return log[idx]

    async def list_messages(self, conversation_id: str, owner: str) -> list[Message]:
        if self._owned(conversation_id, owner) is None:
            return []
        return [m for m in self._messages[conversation_id] if m.owner == owner]

    async def recent_messages(
        self,
        conversation_id: str,
        owner: str,
        *,
        role: Role,
        since: datetime,
    ) -> list[Message]:
        return [
            m
            for m in await self.list_messages(conversation_id, owner)
            if m.role == role and m.created_at >= since
        ]

    async def update_message_content(
        self,
        message_id: str,
        owner: str,
        content: str,
    ) -> Message | None:
        found = self._find(message_id, owner)
        if found is None:
            return None
        log, idx = found
        log[idx] = log[idx].model_copy(update={"content": content, "edited": True})
        return log[idx]

    async def delete_message(self, message_id: str, owner: str) -> Message | None:
        found = self._find(message_id, owner)
        if found is None:
            return None
        log, idx = found
        return log.pop(idx)

    async def delete_after(
        self,
        conversation_id: str,
        owner: str,
        after: datetime,
    ) -> list[Message]:
        if self._owned(conversation_id, owner) is None:
            return []
        log = self._messages[conversation_id]
        kept = [m for m in log if m.created_at <= after or m.owner != owner]
        removed = [m for m in log if m.created_at > after and m.owner == owner]
        self._messages[conversation_id] = kept
        return removed
