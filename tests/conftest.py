"""Shared test fixtures and configuration."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from galaxy_chat.chat.orchestrator import ConversationOrchestrator
from galaxy_chat.chat.title import TitleGenerator
from galaxy_chat.chat.truncation import TruncationCoordinator
from galaxy_chat.history.memory import InMemoryHistoryStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from galaxy_chat.models import Role, SamplingConfig


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Set default timeout for all tests."""
    for item in items:
        with contextlib.suppress(AttributeError):
            item.add_marker(pytest.mark.timeout(3))


class FakeClock:
    """Manually advanced UTC clock shared by the store and the orchestrator."""

    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def is_title_request(messages: list[dict[str, Any]]) -> bool:
    first = messages[0]["content"]
    return isinstance(first, str) and first.startswith("Based on this conversation starter")


class ScriptedCompletion:
    """Completion service that plays back scripted replies.

    A script is a list of steps: strings are yielded as chunks, exceptions are
    raised at that point and ``asyncio.Event`` steps block until set.
    Title requests are answered from ``title`` instead, after ``title_gate``
    is set when one is given.
    """

    def __init__(self) -> None:
        self.replies: list[list[Any]] = []
        self.default: list[Any] = ["Hello", ", ", "world"]
        self.title: Any = "Recursion Basics"
        self.title_gate: asyncio.Event | None = None
        self.calls: list[list[dict[str, Any]]] = []
        self.title_calls: list[list[dict[str, Any]]] = []
        self.closed = 0

    async def complete(
        self,
        messages: list[dict[str, Any]],
        sampling: SamplingConfig,  # noqa: ARG002
    ) -> AsyncGenerator[str, None]:
        if is_title_request(messages):
            self.title_calls.append(messages)
            if self.title_gate is not None:
                await self.title_gate.wait()
            if isinstance(self.title, BaseException):
                raise self.title
            yield self.title
            return
        self.calls.append(messages)
        script = self.replies.pop(0) if self.replies else list(self.default)
        try:
            for step in script:
                if isinstance(step, BaseException):
                    raise step
                if isinstance(step, asyncio.Event):
                    await step.wait()
                    continue
                yield step
        finally:
            self.closed += 1


class RecordingMemory:
    """Memory oracle that records ingests and returns a fixed context."""

    def __init__(self) -> None:
        self.ingested: list[tuple[str, str, str]] = []
        self.queries: list[tuple[str, str]] = []
        self.context = "User likes Python."
        self.fail = False

    async def ingest(self, role: Role, text: str, owner: str) -> None:
        if self.fail:
            msg = "memory down"
            raise RuntimeError(msg)
        self.ingested.append((role, text, owner))

    async def retrieve(self, query: str, owner: str) -> str:
        self.queries.append((query, owner))
        if self.fail:
            msg = "memory down"
            raise RuntimeError(msg)
        return self.context


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def history(clock: FakeClock) -> InMemoryHistoryStore:
    return InMemoryHistoryStore(clock=clock)


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def memory() -> RecordingMemory:
    return RecordingMemory()


@pytest.fixture
def orchestrator(
    history: InMemoryHistoryStore,
    completion: ScriptedCompletion,
    memory: RecordingMemory,
    clock: FakeClock,
) -> ConversationOrchestrator:
    return ConversationOrchestrator(
        history=history,
        completion=completion,
        memory=memory,
        title_generator=TitleGenerator(completion, timeout=1.0),
        model_timeout=1.0,
        memory_timeout=0.5,
        clock=clock,
    )


@pytest.fixture
def truncation(orchestrator: ConversationOrchestrator) -> TruncationCoordinator:
    return TruncationCoordinator(orchestrator)
