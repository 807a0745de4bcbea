"""Tests for history rewrites: truncate-after, edit, re-ask and deletes."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from galaxy_chat.chat.truncation import TruncationCoordinator
from galaxy_chat.core.tasks import wait_for_background_tasks
from galaxy_chat.errors import InvalidOperation, NotFound, Unauthorized
from galaxy_chat.models import Attachment, Message, TurnRequest

if TYPE_CHECKING:
    from conftest import FakeClock, ScriptedCompletion

    from galaxy_chat.chat.orchestrator import ConversationOrchestrator
    from galaxy_chat.chat.streaming import TurnStream
    from galaxy_chat.history.memory import InMemoryHistoryStore


class _RecordingAttachmentStore:
    def __init__(self) -> None:
        self.deleted: list[str] = []

    async def upload(self, data: bytes, mime_type: str, name: str) -> None:  # noqa: ARG002
        raise NotImplementedError

    async def delete(self, storage_ref: str) -> None:
        self.deleted.append(storage_ref)


async def _read_all(stream: TurnStream) -> str:
    chunks = [chunk async for chunk in stream]
    await stream.wait_closed()
    return "".join(chunks)


async def _seed(
    history: InMemoryHistoryStore,
    clock: FakeClock,
    owner: str = "alice",
) -> list[Message]:
    conversation = await history.create_conversation(owner, "Seeded")
    messages = []
    for role, text in [
        ("user", "What is Python?"),
        ("assistant", "A programming language."),
        ("user", "Who made it?"),
        ("assistant", "Guido van Rossum."),
    ]:
        clock.advance(1)
        messages.append(await history.append_message(conversation.id, owner, role, text))
    return messages


@pytest.mark.asyncio
async def test_delete_after_is_exact_and_idempotent(
    truncation: TruncationCoordinator,
    history: InMemoryHistoryStore,
    clock: FakeClock,
) -> None:
    m1, m2, _m3, _m4 = await _seed(history, clock)
    cid = m1.conversation_id

    assert await truncation.delete_after(cid, m2.id, "alice") == 2
    assert await truncation.delete_after(cid, m2.id, "alice") == 0

    remaining = await history.list_messages(cid, "alice")
    assert [m.id for m in remaining] == [m1.id, m2.id]


@pytest.mark.asyncio
async def test_delete_after_keeps_same_timestamp_neighbours(
    truncation: TruncationCoordinator,
    history: InMemoryHistoryStore,
) -> None:
    # The clock never moves: ordering still holds and nothing at or before the reference goes.
    conversation = await history.create_conversation("alice", "Frozen clock")
    messages = [
        await history.append_message(conversation.id, "alice", "user", f"m{i}")
        for i in range(4)
    ]
    assert len({m.created_at for m in messages}) == 4

    assert await truncation.delete_after(conversation.id, messages[1].id, "alice") == 2
    remaining = await history.list_messages(conversation.id, "alice")
    assert [m.content for m in remaining] == ["m0", "m1"]


@pytest.mark.asyncio
async def test_edit_and_reask_replaces_downstream(
    truncation: TruncationCoordinator,
    history: InMemoryHistoryStore,
    completion: ScriptedCompletion,
    clock: FakeClock,
) -> None:
    m1, *_ = await _seed(history, clock)
    clock.advance(1)

    result = await truncation.edit_message(
        m1.id,
        "What is Rust?",
        "alice",
        trigger_reask=True,
    )
    assert result.message.edited
    assert result.stream is not None
    reply = await _read_all(result.stream)

    messages = await history.list_messages(m1.conversation_id, "alice")
    assert [(m.role, m.content, m.edited) for m in messages] == [
        ("user", "What is Rust?", True),
        ("assistant", reply, False),
    ]
    # The edited text is what the model was asked, exactly once.
    prompt = completion.calls[-1]
    assert [m["content"] for m in prompt[1:]] == ["What is Rust?"]


@pytest.mark.asyncio
async def test_edit_without_reask_keeps_later_messages(
    truncation: TruncationCoordinator,
    history: InMemoryHistoryStore,
    clock: FakeClock,
) -> None:
    m1, *_ = await _seed(history, clock)
    result = await truncation.edit_message(m1.id, "What is Python 3?", "alice")

    assert result.stream is None
    assert result.message.content == "What is Python 3?"
    assert len(await history.list_messages(m1.conversation_id, "alice")) == 4
    assert not truncation.locks.locked(m1.conversation_id)


@pytest.mark.asyncio
async def test_reask_produces_exactly_one_reply(
    truncation: TruncationCoordinator,
    history: InMemoryHistoryStore,
    completion: ScriptedCompletion,
    clock: FakeClock,
) -> None:
    _m1, _m2, m3, _m4 = await _seed(history, clock)
    clock.advance(1)
    completion.replies = [["Python was created by Guido."]]

    stream = await truncation.re_ask(m3.id, "alice")
    await _read_all(stream)

    messages = await history.list_messages(m3.conversation_id, "alice")
    after = [m for m in messages if m.created_at > m3.created_at]
    assert [(m.role, m.content) for m in after] == [("assistant", "Python was created by Guido.")]
    assert [m.role for m in messages].count("user") == 2
    reference = next(m for m in messages if m.id == m3.id)
    assert not reference.edited


@pytest.mark.asyncio
async def test_reask_assistant_message_is_rejected(
    truncation: TruncationCoordinator,
    history: InMemoryHistoryStore,
    clock: FakeClock,
) -> None:
    _m1, m2, *_ = await _seed(history, clock)
    with pytest.raises(InvalidOperation):
        await truncation.re_ask(m2.id, "alice")
    with pytest.raises(InvalidOperation):
        await truncation.edit_message(m2.id, "rewritten", "alice", trigger_reask=True)

    unchanged = await history.get_message(m2.id, "alice")
    assert unchanged is not None
    assert unchanged.content == "A programming language."
    assert len(await history.list_messages(m2.conversation_id, "alice")) == 4


@pytest.mark.asyncio
async def test_other_owner_sees_not_found(
    truncation: TruncationCoordinator,
    history: InMemoryHistoryStore,
    clock: FakeClock,
) -> None:
    m1, m2, *_ = await _seed(history, clock, owner="bob")
    cid = m1.conversation_id

    with pytest.raises(NotFound):
        await truncation.edit_message(m1.id, "hijack", "alice")
    with pytest.raises(NotFound):
        await truncation.re_ask(m1.id, "alice")
    with pytest.raises(NotFound):
        await truncation.delete_after(cid, m2.id, "alice")
    with pytest.raises(NotFound):
        await truncation.delete_message(cid, m2.id, "alice")
    with pytest.raises(NotFound):
        await truncation.delete_conversation(cid, "alice")
    with pytest.raises(Unauthorized):
        await truncation.delete_after(cid, m2.id, None)

    messages = await history.list_messages(cid, "bob")
    assert [m.content for m in messages][0] == "What is Python?"
    assert len(messages) == 4


@pytest.mark.asyncio
async def test_reference_from_another_conversation_is_not_found(
    truncation: TruncationCoordinator,
    history: InMemoryHistoryStore,
    clock: FakeClock,
) -> None:
    m1, *_ = await _seed(history, clock)
    other = await history.create_conversation("alice", "Other")
    with pytest.raises(NotFound):
        await truncation.delete_after(other.id, m1.id, "alice")


@pytest.mark.asyncio
async def test_truncation_waits_for_streaming_turn(
    orchestrator: ConversationOrchestrator,
    truncation: TruncationCoordinator,
    history: InMemoryHistoryStore,
    completion: ScriptedCompletion,
) -> None:
    gate = asyncio.Event()
    completion.replies = [["part one ", gate, "part two"]]
    stream = await orchestrator.handle_turn(TurnRequest(query="first question"), "alice")
    cid = stream.conversation_id
    user_message = (await history.list_messages(cid, "alice"))[0]

    pending = asyncio.create_task(truncation.delete_after(cid, user_message.id, "alice"))
    await asyncio.sleep(0.05)
    assert not pending.done()

    gate.set()
    await _read_all(stream)
    # The whole reply was stored before the truncation ran, then removed by it.
    assert await pending == 1
    assert [m.role for m in await history.list_messages(cid, "alice")] == ["user"]


@pytest.mark.asyncio
async def test_deletes_release_stored_attachments(
    orchestrator: ConversationOrchestrator,
    history: InMemoryHistoryStore,
) -> None:
    store = _RecordingAttachmentStore()
    coordinator = TruncationCoordinator(orchestrator, attachments=store)
    conversation = await history.create_conversation("alice", "Files")
    report = Attachment(
        type="file",
        url="/files/abc123/report.pdf",
        name="report.pdf",
        mime_type="application/pdf",
        storage_ref="abc123",
    )
    photo = Attachment(
        type="image",
        url="/files/def456/photo.png",
        name="photo.png",
        mime_type="image/png",
        storage_ref="def456",
    )
    first = await history.append_message(conversation.id, "alice", "user", "see file", [report])
    await history.append_message(conversation.id, "alice", "user", "and photo", [photo])

    deleted = await coordinator.delete_message(conversation.id, first.id, "alice")
    assert deleted.id == first.id
    await wait_for_background_tasks()
    assert store.deleted == ["abc123"]

    assert await coordinator.delete_conversation(conversation.id, "alice") == 1
    await wait_for_background_tasks()
    assert store.deleted == ["abc123", "def456"]
    assert await history.get_conversation(conversation.id, "alice") is None
