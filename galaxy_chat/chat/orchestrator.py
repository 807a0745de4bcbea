"""Conversation orchestration: one inbound turn to one streamed, persisted reply."""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from time import perf_counter
from typing import TYPE_CHECKING

from galaxy_chat.chat.locks import ConversationLocks
from galaxy_chat.chat.prompt import assemble_prompt
from galaxy_chat.chat.streaming import TurnStream
from galaxy_chat.chat.title import TitleGenerator
from galaxy_chat.constants import (
    DEDUP_WINDOW_SECONDS,
    DEFAULT_MODEL_TIMEOUT_SECONDS,
    PLACEHOLDER_TITLE,
)
from galaxy_chat.core.tasks import run_in_background
from galaxy_chat.errors import (
    ChatError,
    InvalidRequest,
    ModelRequestError,
    NotFound,
    ServiceUnavailable,
    Unauthorized,
)
from galaxy_chat.history.base import utcnow
from galaxy_chat.models import SamplingConfig
from galaxy_chat.services.memory import NullMemoryOracle

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from datetime import datetime

    from galaxy_chat.chat.locks import Lease
    from galaxy_chat.history.base import HistoryStore
    from galaxy_chat.models import Attachment, Conversation, Message, Role, TurnRequest
    from galaxy_chat.services.completion import CompletionService
    from galaxy_chat.services.memory import MemoryOracle

logger = logging.getLogger(__name__)

_DEFAULT_MEMORY_TIMEOUT_SECONDS = 5.0


def _elapsed_ms(start: float) -> float:
    return (perf_counter() - start) * 1000


def _dedup_key(content: str, attachments: Sequence[Attachment]) -> tuple[str, tuple[str, ...]]:
    return content.strip(), tuple(a.url for a in attachments)


@dataclass
class _Turn:
    """State carried from turn setup to finalization."""

    conversation: Conversation
    owner: str
    lease: Lease
    needs_title: bool
    title_source: str
    title_attachments: list[Attachment] = field(default_factory=list)
    started: float = field(default_factory=perf_counter)


class ConversationOrchestrator:
    """Runs turns against a conversation, at most one at a time per conversation."""

    def __init__(
        self,
        *,
        history: HistoryStore,
        completion: CompletionService,
        memory: MemoryOracle | None = None,
        locks: ConversationLocks | None = None,
        title_generator: TitleGenerator | None = None,
        sampling: SamplingConfig | None = None,
        model_timeout: float | None = DEFAULT_MODEL_TIMEOUT_SECONDS,
        dedup_window: float = DEDUP_WINDOW_SECONDS,
        memory_timeout: float = _DEFAULT_MEMORY_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.history = history
        self.completion = completion
        self.memory = memory or NullMemoryOracle()
        self.locks = locks or ConversationLocks()
        self.title_generator = title_generator or TitleGenerator(completion)
        self.sampling = sampling or SamplingConfig()
        self.model_timeout = model_timeout
        self.dedup_window = dedup_window
        self.memory_timeout = memory_timeout
        self._clock = clock

    async def handle_turn(self, request: TurnRequest, owner: str | None) -> TurnStream:
        """Accept a turn and return its reply stream.

        The first model chunk has already been received when this returns, so
        rejections by the model service raise here rather than mid-stream.

        Args:
            request: Turn payload; without a conversation id a new conversation
                is created with the placeholder title.
            owner: Resolved caller identity, or None when unauthenticated.

        Returns:
            The reply stream. Iterating it forwards model output; the reply is
            persisted once the stream ends, even if nobody iterates it.

        Raises:
            Unauthorized: No owner.
            InvalidRequest: Neither text nor attachments.
            NotFound: The conversation is missing or not owned by ``owner``.
            ChatError: The model service rejected the request (503 or 500).

        """
        if not owner:
            raise Unauthorized
        if not request.query.strip() and not request.attachments:
            msg = "Query or attachments are required"
            raise InvalidRequest(msg)

        if request.conversation_id:
            conversation = await self._owned_conversation(request.conversation_id, owner)
            lease = await self.locks.acquire(conversation.id)
            # It may have been deleted while we waited for the lock.
            conversation = await self.history.get_conversation(conversation.id, owner)
            if conversation is None:
                lease.release()
                msg = "Conversation not found"
                raise NotFound(msg)
            is_new = False
        else:
            conversation = await self.history.create_conversation(owner, PLACEHOLDER_TITLE)
            logger.info("Created conversation %s for %s", conversation.id, owner)
            lease = await self.locks.acquire(conversation.id)
            is_new = True

        return await self.run_locked_turn(
            conversation,
            owner,
            request.query,
            request.attachments,
            skip_user_save=request.skip_user_save,
            is_new=is_new,
            lease=lease,
        )

    async def _owned_conversation(self, conversation_id: str, owner: str) -> Conversation:
        conversation = await self.history.get_conversation(conversation_id, owner)
        if conversation is None:
            msg = "Conversation not found"
            raise NotFound(msg)
        return conversation

    async def run_locked_turn(
        self,
        conversation: Conversation,
        owner: str,
        text: str,
        attachments: Sequence[Attachment],
        *,
        skip_user_save: bool,
        is_new: bool,
        lease: Lease,
    ) -> TurnStream:
        """Run a turn whose conversation lock is already held.

        Ownership of ``lease`` passes to this call: it is released when the
        reply is finalized, or right away if the turn fails before streaming.

        Args:
            conversation: Conversation the turn belongs to.
            owner: Owning identity.
            text: User message text.
            attachments: User message attachments.
            skip_user_save: The user message is already persisted (re-ask).
            is_new: The conversation was created for this turn.
            lease: Held lock on the conversation.

        Returns:
            The primed reply stream.

        """
        start = perf_counter()
        try:
            saved = False
            if not skip_user_save:
                saved = await self._persist_user_turn(conversation, owner, text, attachments)
            context = await self._enrich(text, attachments, owner, ingest=saved)
            history = await self.history.list_messages(conversation.id, owner)
            messages = assemble_prompt(
                history=history,
                user_text=text,
                attachments=attachments,
                context=context,
            )
            logger.info(
                "Prepared %d prompt messages for %s in %.1f ms",
                len(messages),
                conversation.id,
                _elapsed_ms(start),
            )

            first_user = next((m for m in history if m.role == "user"), None)
            turn = _Turn(
                conversation=conversation,
                owner=owner,
                lease=lease,
                needs_title=is_new or conversation.title == PLACEHOLDER_TITLE,
                title_source=first_user.content if first_user else text,
                title_attachments=list(first_user.attachments if first_user else attachments),
                started=start,
            )
            deadline = None
            if self.model_timeout is not None:
                deadline = asyncio.get_running_loop().time() + self.model_timeout
            stream = TurnStream(
                conversation_id=conversation.id,
                is_new_conversation=is_new,
                source=self.completion.complete(messages, self.sampling),
                deadline=deadline,
                finalize=functools.partial(self._finalize_turn, turn),
            )
        except ChatError as exc:
            lease.release()
            exc.conversation_id = conversation.id
            raise
        except BaseException:
            lease.release()
            raise

        await self._prime(stream, lease)
        return stream

    async def _prime(self, stream: TurnStream, lease: Lease) -> None:
        try:
            await stream.prime()
        except asyncio.CancelledError:
            # Caller went away; the reply is still generated and persisted.
            await stream.aclose()
            raise
        except ChatError as exc:
            lease.release()
            exc.conversation_id = stream.conversation_id
            logger.warning("Model rejected turn for %s: %s", stream.conversation_id, exc.message)
            raise
        except TimeoutError as exc:
            lease.release()
            logger.warning("Model did not respond within %.0fs", self.model_timeout)
            err = ServiceUnavailable("The AI service did not respond in time. Please try again.")
            err.conversation_id = stream.conversation_id
            raise err from exc
        except Exception as exc:
            lease.release()
            logger.exception("Model request failed for %s", stream.conversation_id)
            err = ModelRequestError()
            err.conversation_id = stream.conversation_id
            raise err from exc

    async def _persist_user_turn(
        self,
        conversation: Conversation,
        owner: str,
        text: str,
        attachments: Sequence[Attachment],
    ) -> bool:
        """Append the user message unless an identical one was just stored."""
        since = self._clock() - timedelta(seconds=self.dedup_window)
        recent = await self.history.recent_messages(
            conversation.id,
            owner,
            role="user",
            since=since,
        )
        key = _dedup_key(text, attachments)
        if any(_dedup_key(m.content, m.attachments) == key for m in recent):
            logger.info("Duplicate user message in %s; not saving again", conversation.id)
            return False
        try:
            await self.history.append_message(conversation.id, owner, "user", text, attachments)
        except KeyError as exc:
            msg = "Conversation not found"
            raise NotFound(msg) from exc
        return True

    async def _enrich(
        self,
        text: str,
        attachments: Sequence[Attachment],
        owner: str,
        *,
        ingest: bool,
    ) -> str:
        """Ingest the user text in the background and retrieve context for the prompt."""
        if ingest and text.strip():
            run_in_background(self._ingest("user", text, owner), label="memory-ingest-user")
        query = text.strip() or " ".join(a.name for a in attachments)
        if not query:
            return ""
        start = perf_counter()
        try:
            async with asyncio.timeout(self.memory_timeout):
                context = await self.memory.retrieve(query, owner)
        except Exception:
            logger.warning("Memory retrieval failed; continuing without context", exc_info=True)
            return ""
        logger.debug("Memory retrieval took %.1f ms", _elapsed_ms(start))
        return context

    async def _ingest(self, role: Role, text: str, owner: str) -> None:
        try:
            await self.memory.ingest(role, text, owner)
        except Exception:
            logger.warning("Memory ingest failed for %s turn", role, exc_info=True)

    async def _finalize_turn(
        self,
        turn: _Turn,
        stream: TurnStream,
        error: BaseException | None,
    ) -> bool:
        """Persist the accumulated reply, release the lock, schedule follow-ups."""
        conversation_id = turn.conversation.id
        text = stream.text
        saved: Message | None = None
        try:
            if text.strip():
                saved = await self.history.append_message(
                    conversation_id,
                    turn.owner,
                    "assistant",
                    text,
                )
            await self.history.update_conversation(conversation_id, turn.owner)
        finally:
            turn.lease.release()

        if error is not None:
            logger.warning(
                "Turn for %s ended with %s; kept %d chars of partial reply",
                conversation_id,
                type(error).__name__,
                len(text) if saved else 0,
            )
        elif saved is None:
            logger.info("Model returned an empty reply for %s", conversation_id)
        logger.info("Turn for %s finished in %.1f ms", conversation_id, _elapsed_ms(turn.started))

        if saved is None:
            return False
        stream.add_followup(
            run_in_background(
                self._ingest("assistant", text, turn.owner),
                label="memory-ingest-assistant",
            ),
        )
        if turn.needs_title:
            stream.add_followup(
                run_in_background(self._title_after_turn(turn), label=f"title-{conversation_id}"),
            )
        return True

    async def _title_after_turn(self, turn: _Turn) -> None:
        try:
            await self.derive_title(
                turn.conversation.id,
                turn.owner,
                turn.title_source,
                turn.title_attachments,
                keep_existing=True,
            )
        except NotFound:
            logger.info("Conversation %s was deleted before it got a title", turn.conversation.id)

    async def derive_title(
        self,
        conversation_id: str,
        owner: str,
        first_message: str,
        attachments: Sequence[Attachment] = (),
        *,
        keep_existing: bool = False,
    ) -> str:
        """Derive a title from the opening message and store it on the conversation.

        Args:
            conversation_id: Conversation to retitle.
            owner: Identity that must own the conversation.
            first_message: Opening user message the title is derived from.
            attachments: Attachments of that message, used when it has no text.
            keep_existing: Only replace the placeholder title. A title set while
                the model was still answering (e.g. a user rename) is kept.

        Returns:
            The title the conversation carries afterwards.

        Raises:
            NotFound: The conversation does not exist or belongs to someone else.

        """
        if await self.history.get_conversation(conversation_id, owner) is None:
            msg = "Conversation not found"
            raise NotFound(msg)
        title = await self.title_generator.generate(first_message, attachments)
        updated = await self.history.update_conversation(
            conversation_id,
            owner,
            title=title,
            if_title=PLACEHOLDER_TITLE if keep_existing else None,
        )
        if updated is None:
            msg = "Conversation not found"
            raise NotFound(msg)
        if updated.title != title:
            logger.info("Kept existing title of %s: %r", conversation_id, updated.title)
        return updated.title
