"""History rewrites: truncate-after, edit, re-ask and deletes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from galaxy_chat.core.tasks import run_in_background
from galaxy_chat.errors import InvalidOperation, InvalidRequest, NotFound, Unauthorized

if TYPE_CHECKING:
    from collections.abc import Iterable

    from galaxy_chat.chat.locks import Lease
    from galaxy_chat.chat.orchestrator import ConversationOrchestrator
    from galaxy_chat.chat.streaming import TurnStream
    from galaxy_chat.models import Conversation, Message
    from galaxy_chat.services.attachments import AttachmentStore

logger = logging.getLogger(__name__)


@dataclass
class EditResult:
    """The edited message, plus the reply stream when a re-ask was requested."""

    message: Message
    stream: TurnStream | None = None


def _not_found(what: str = "Message") -> NotFound:
    return NotFound(f"{what} not found")


class TruncationCoordinator:
    """Rewrites conversation history under the conversation lock.

    Every operation here is serialized with turns on the same conversation, so
    a truncation can never interleave with a reply that is still streaming.
    """

    def __init__(
        self,
        orchestrator: ConversationOrchestrator,
        *,
        attachments: AttachmentStore | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.history = orchestrator.history
        self.locks = orchestrator.locks
        self.attachments = attachments

    async def _owned_message(
        self,
        message_id: str,
        owner: str | None,
        conversation_id: str | None = None,
    ) -> Message:
        if not owner:
            raise Unauthorized
        message = await self.history.get_message(message_id, owner)
        if message is None:
            raise _not_found()
        if conversation_id is not None and message.conversation_id != conversation_id:
            raise _not_found()
        return message

    async def _truncate(self, reference: Message, owner: str) -> list[Message]:
        """Delete everything strictly after ``reference``. Re-running it is a no-op."""
        deleted = await self.history.delete_after(
            reference.conversation_id,
            owner,
            reference.created_at,
        )
        if deleted:
            await self.history.update_conversation(reference.conversation_id, owner)
            self._release_attachments(deleted)
        logger.info(
            "Deleted %d messages after %s in %s",
            len(deleted),
            reference.id,
            reference.conversation_id,
        )
        return deleted

    async def delete_after(
        self,
        conversation_id: str,
        after_message_id: str,
        owner: str | None,
    ) -> int:
        """Delete every message created after the reference one; return how many went."""
        reference = await self._owned_message(after_message_id, owner, conversation_id)
        async with self.locks.hold(conversation_id):
            deleted = await self._truncate(reference, reference.owner)
        return len(deleted)

    async def edit_message(
        self,
        message_id: str,
        content: str,
        owner: str | None,
        *,
        trigger_reask: bool = False,
        conversation_id: str | None = None,
    ) -> EditResult:
        """Overwrite a message's content and optionally re-ask it.

        Editing alone leaves later messages in place; re-asking truncates them.

        Args:
            message_id: Message to edit.
            content: New content; may be blank only if the message has attachments.
            owner: Caller identity.
            trigger_reask: Regenerate the reply after editing (user messages only).
            conversation_id: When given, the message must belong to it.

        Returns:
            The edited message, plus the new reply stream when re-asked.

        """
        message = await self._owned_message(message_id, owner, conversation_id)
        if trigger_reask and message.role != "user":
            msg = "Only user messages can be re-asked"
            raise InvalidOperation(msg)
        if not content.strip() and not message.attachments:
            msg = "Content is required"
            raise InvalidRequest(msg)

        lease = await self.locks.acquire(message.conversation_id)
        try:
            updated = await self.history.update_message_content(message_id, message.owner, content)
            if updated is None:
                raise _not_found()
            await self.history.update_conversation(updated.conversation_id, updated.owner)
        except BaseException:
            lease.release()
            raise
        logger.info("Edited message %s in %s", message_id, updated.conversation_id)

        if not trigger_reask:
            lease.release()
            return EditResult(message=updated)
        stream = await self._re_ask_locked(updated, lease)
        return EditResult(message=updated, stream=stream)

    async def re_ask(
        self,
        message_id: str,
        owner: str | None,
        *,
        conversation_id: str | None = None,
    ) -> TurnStream:
        """Regenerate the reply to a user message, discarding everything after it."""
        message = await self._owned_message(message_id, owner, conversation_id)
        if message.role != "user":
            msg = "Only user messages can be re-asked"
            raise InvalidOperation(msg)
        lease = await self.locks.acquire(message.conversation_id)
        # Re-read under the lock; a concurrent edit or delete may have landed.
        current = await self.history.get_message(message_id, message.owner)
        if current is None:
            lease.release()
            raise _not_found()
        return await self._re_ask_locked(current, lease)

    async def _re_ask_locked(self, message: Message, lease: Lease) -> TurnStream:
        try:
            conversation: Conversation | None = await self.history.get_conversation(
                message.conversation_id,
                message.owner,
            )
            if conversation is None:
                raise _not_found("Conversation")
            await self._truncate(message, message.owner)
        except BaseException:
            lease.release()
            raise
        return await self.orchestrator.run_locked_turn(
            conversation,
            message.owner,
            message.content,
            message.attachments,
            skip_user_save=True,
            is_new=False,
            lease=lease,
        )

    async def delete_message(
        self,
        conversation_id: str,
        message_id: str,
        owner: str | None,
    ) -> Message:
        """Delete a single message, leaving the rest of the conversation intact."""
        message = await self._owned_message(message_id, owner, conversation_id)
        async with self.locks.hold(conversation_id):
            deleted = await self.history.delete_message(message_id, message.owner)
            if deleted is None:
                raise _not_found()
            await self.history.update_conversation(conversation_id, message.owner)
        self._release_attachments([deleted])
        return deleted

    async def delete_conversation(self, conversation_id: str, owner: str | None) -> int:
        """Delete a conversation with all of its messages; return the message count."""
        if not owner:
            raise Unauthorized
        if await self.history.get_conversation(conversation_id, owner) is None:
            raise _not_found("Conversation")
        async with self.locks.hold(conversation_id):
            deleted = await self.history.delete_conversation(conversation_id, owner)
        if deleted is None:
            raise _not_found("Conversation")
        self._release_attachments(deleted)
        logger.info("Deleted conversation %s (%d messages)", conversation_id, len(deleted))
        return len(deleted)

    def _release_attachments(self, messages: Iterable[Message]) -> None:
        if self.attachments is None:
            return
        refs = [a.storage_ref for m in messages for a in m.attachments if a.storage_ref]
        if refs:
            run_in_background(self._delete_stored(refs), label="attachment-cleanup")

    async def _delete_stored(self, refs: list[str]) -> None:
        store = self.attachments
        if store is None:
            return
        for ref in refs:
            try:
                await store.delete(ref)
            except Exception:
                logger.warning("Failed to delete stored attachment %s", ref, exc_info=True)
