"""Single-pass reply stream that forwards and accumulates model output."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from galaxy_chat.core.tasks import run_in_background
from galaxy_chat.errors import ChatError, StreamInterrupted

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable

logger = logging.getLogger(__name__)


class TurnStream:
    """Reply stream for one turn.

    Iterating it pulls the next model chunk, appends it to the accumulation
    buffer and only then yields it, all in one coroutine, so whatever the
    consumer has seen is always a prefix of what gets persisted. The stream
    can be consumed once.

    When the model stream ends the finalizer persists the buffer. When it
    fails, the finalizer persists whatever was accumulated and the iteration
    raises ``StreamInterrupted``. When the consumer goes away mid-stream, a
    background drain keeps reading the same model stream and finalizes it.
    """

    def __init__(
        self,
        *,
        conversation_id: str,
        is_new_conversation: bool,
        source: AsyncIterator[str],
        deadline: float | None,
        finalize: Callable[[TurnStream, BaseException | None], Awaitable[bool]],
    ) -> None:
        self.conversation_id = conversation_id
        self.is_new_conversation = is_new_conversation
        self._source = source
        self._deadline = deadline
        self._finalize = finalize
        self._peeked: str | None = None
        self._pending_read: asyncio.Task[str | None] | None = None
        self._exhausted = False
        self._buffer: list[str] = []
        self._consumed = False
        self._closing = False
        self._finished = asyncio.Event()
        self._followups: list[asyncio.Task[Any]] = []
        self.persisted = False
        self.error: BaseException | None = None

    @property
    def text(self) -> str:
        """Everything accumulated so far."""
        return "".join(self._buffer)

    def add_followup(self, task: asyncio.Task[Any]) -> None:
        """Track a best-effort task that ``wait_closed`` should also wait for."""
        self._followups.append(task)

    async def _pull(self) -> str | None:
        try:
            return await anext(self._source)
        except StopAsyncIteration:
            return None

    async def _next(self) -> str | None:
        if self._peeked is not None:
            chunk, self._peeked = self._peeked, None
            return chunk
        if self._exhausted:
            return None
        read = self._pending_read
        if read is None:
            read = self._pending_read = asyncio.create_task(
                self._pull(),
                name=f"model-read-{self.conversation_id}",
            )
        # The read is shielded: cancelling the consumer must not cancel the model stream.
        try:
            if self._deadline is None:
                chunk = await asyncio.shield(read)
            else:
                async with asyncio.timeout_at(self._deadline):
                    chunk = await asyncio.shield(read)
        except asyncio.CancelledError:
            if read.done() and read.cancelled():
                self._pending_read = None
                self._exhausted = True
            raise
        except TimeoutError:
            read.cancel()
            self._pending_read = None
            self._exhausted = True
            raise
        except Exception:
            self._pending_read = None
            self._exhausted = True
            raise
        self._pending_read = None
        if chunk is None:
            self._exhausted = True
        return chunk

    async def prime(self) -> None:
        """Wait for the first chunk so upstream rejections surface before any output."""
        self._peeked = await self._next()

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            msg = "TurnStream can only be consumed once"
            raise RuntimeError(msg)
        self._consumed = True
        return self._forward()

    async def _forward(self) -> AsyncGenerator[str, None]:
        try:
            while (chunk := await self._next()) is not None:
                self._buffer.append(chunk)
                yield chunk
        except Exception as exc:
            await self._close(exc)
            raise self._interrupted(exc) from exc
        except BaseException:
            # GeneratorExit or cancellation: the consumer is gone, not the model.
            self._detach()
            raise
        await self._close(None)

    def _interrupted(self, exc: BaseException) -> StreamInterrupted:
        reason = exc.message if isinstance(exc, ChatError) else "Streaming failed"
        if isinstance(exc, TimeoutError):
            reason = "The AI service did not finish in time"
        return StreamInterrupted(reason, persisted=self.persisted)

    def _detach(self) -> None:
        if self._closing:
            return
        logger.info(
            "Client left mid-stream; finishing generation in background (conversation=%s)",
            self.conversation_id,
        )
        run_in_background(self._drain(), label=f"drain-{self.conversation_id}")

    async def _drain(self) -> None:
        error: BaseException | None = None
        try:
            while (chunk := await self._next()) is not None:
                self._buffer.append(chunk)
        except Exception as exc:
            logger.warning(
                "Detached stream failed (conversation=%s)",
                self.conversation_id,
                exc_info=True,
            )
            error = exc
        await self._close(error)

    async def _close(self, error: BaseException | None) -> None:
        if self._closing:
            return
        self._closing = True
        self.error = error
        try:
            self.persisted = await self._finalize(self, error)
        finally:
            self._finished.set()

    async def aclose(self) -> None:
        """Give up on consuming; generation still completes and is persisted."""
        if not self._consumed:
            self._consumed = True
            self._detach()

    async def wait_closed(self) -> None:
        """Wait until the reply is finalized and follow-up work (title, memory) is done."""
        await self._finished.wait()
        if self._followups:
            await asyncio.gather(*self._followups, return_exceptions=True)
