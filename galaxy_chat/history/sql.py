"""SQLAlchemy-backed history store."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text, delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from galaxy_chat.history.base import next_timestamp, utcnow
from galaxy_chat.models import Attachment, Conversation, Message, new_id

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from galaxy_chat.models import Role

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for history tables."""


class ConversationRow(Base):
    __tablename__ = "conversations"
    __table_args__ = (Index("ix_conversations_owner_updated", "owner", "updated_at"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class MessageRow(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_conversation_created", "conversation_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    attachments: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    edited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


# Columns are naive UTC; the models are always timezone-aware.
def _to_db(value: datetime) -> datetime:
    return value.astimezone(UTC).replace(tzinfo=None)


def _from_db(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _conversation(row: ConversationRow) -> Conversation:
    return Conversation(
        id=row.id,
        owner=row.owner,
        title=row.title,
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


def _message(row: MessageRow) -> Message:
    return Message(
        id=row.id,
        conversation_id=row.conversation_id,
        owner=row.owner,
        role=row.role,  # type: ignore[arg-type]
        content=row.content,
        attachments=[Attachment.model_validate(a) for a in row.attachments or []],
        created_at=_from_db(row.created_at),
        edited=row.edited,
    )


def _is_in_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith(":"))


class SqlHistoryStore:
    """History store over any SQLAlchemy async database URL."""

    def __init__(self, db_url: str, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self.db_url = db_url
        engine_kwargs: dict[str, Any] = {}
        if db_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        if _is_in_memory_sqlite(db_url):
            # One shared connection, otherwise every session sees an empty database.
            engine_kwargs["poolclass"] = StaticPool
        self._engine = create_async_engine(db_url, **engine_kwargs)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)

    async def start(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("History store ready at %s", self._engine.url.render_as_string())

    async def close(self) -> None:
        await self._engine.dispose()

    async def _owned_row(
        self,
        session: AsyncSession,
        conversation_id: str,
        owner: str,
    ) -> ConversationRow | None:
        row = await session.get(ConversationRow, conversation_id)
        if row is None or row.owner != owner:
            return None
        return row

    async def create_conversation(self, owner: str, title: str) -> Conversation:
        now = _to_db(self._clock())
        row = ConversationRow(id=new_id(), owner=owner, title=title, created_at=now, updated_at=now)
        async with self._sessions.begin() as session:
            session.add(row)
        return _conversation(row)

    async def get_conversation(self, conversation_id: str, owner: str) -> Conversation | None:
        async with self._sessions() as session:
            row = await self._owned_row(session, conversation_id, owner)
            return _conversation(row) if row else None

    async def list_conversations(self, owner: str) -> list[Conversation]:
        stmt = (
            select(ConversationRow)
            .where(ConversationRow.owner == owner)
            .order_by(ConversationRow.updated_at.desc())
        )
        async with self._sessions() as session:
            result = await session.scalars(stmt)
            return [_conversation(row) for row in result]

    async def update_conversation(
        self,
        conversation_id: str,
        owner: str,
        *,
        title: str | None = None,
        if_title: str | None = None,
    ) -> Conversation | None:
        async with self._sessions.begin() as session:
            row = await self._owned_row(session, conversation_id, owner)
            if row is None:
                return None
            if if_title is not None and row.title != if_title:
                return _conversation(row)
            if title is not None:
                row.title = title
            row.updated_at = _to_db(self._clock())
        return _conversation(row)

    async def delete_conversation(self, conversation_id: str, owner: str) -> list[Message] | None:
        async with self._sessions.begin() as session:
            row = await self._owned_row(session, conversation_id, owner)
            if row is None:
                return None
            result = await session.scalars(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at),
            )
            removed = [_message(m) for m in result]
            await session.execute(
                delete(MessageRow).where(MessageRow.conversation_id == conversation_id),
            )
            await session.delete(row)
        return removed

    async def append_message(
        self,
        conversation_id: str,
        owner: str,
        role: Role,
        content: str,
        attachments: Sequence[Attachment] = (),
    ) -> Message:
        async with self._sessions.begin() as session:
            if await self._owned_row(session, conversation_id, owner) is None:
                msg = f"Conversation {conversation_id} not found"
                raise KeyError(msg)
            last = await session.scalar(
                select(MessageRow.created_at)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.desc())
                .limit(1),
            )
            created_at = next_timestamp(self._clock(), _from_db(last) if last else None)
            row = MessageRow(
                id=new_id(),
                conversation_id=conversation_id,
                owner=owner,
                role=role,
                content=content,
                attachments=[a.model_dump(mode="json") for a in attachments],
                created_at=_to_db(created_at),
                edited=False,
            )
            session.add(row)
        return _message(row)

    async def get_message(self, message_id: str, owner: str) -> Message | None:
        async with self._sessions() as session:
            row = await session.get(MessageRow, message_id)
            if row is None or row.owner != owner:
                return None
            return _message(row)

    async def list_messages(self, conversation_id: str, owner: str) -> list[Message]:
        stmt = (
            select(MessageRow)
            .where(MessageRow.conversation_id == conversation_id, MessageRow.owner == owner)
            .order_by(MessageRow.created_at)
        )
        async with self._sessions() as session:
            result = await session.scalars(stmt)
            return [_message(row) for row in result]

    async def recent_messages(
        self,
        conversation_id: str,
        owner: str,
        *,
        role: Role,
        since: datetime,
    ) -> list[Message]:
        stmt = (
            select(MessageRow)
            .where(
                MessageRow.conversation_id == conversation_id,
                MessageRow.owner == owner,
                MessageRow.role == role,
                MessageRow.created_at >= _to_db(since),
            )
            .order_by(MessageRow.created_at)
        )
        async with self._sessions() as session:
            result = await session.scalars(stmt)
            return [_message(row) for row in result]

    async def update_message_content(
        self,
        message_id: str,
        owner: str,
        content: str,
    ) -> Message | None:
        async with self._sessions.begin() as session:
            row = await session.get(MessageRow, message_id)
            if row is None or row.owner != owner:
                return None
            row.content = content
            row.edited = True
        return _message(row)

    async def delete_message(self, message_id: str, owner: str) -> Message | None:
        async with self._sessions.begin() as session:
            row = await session.get(MessageRow, message_id)
            if row is None or row.owner != owner:
                return None
            removed = _message(row)
            await session.delete(row)
        return removed

    async def delete_after(
        self,
        conversation_id: str,
        owner: str,
        after: datetime,
    ) -> list[Message]:
        where = (
            MessageRow.conversation_id == conversation_id,
            MessageRow.owner == owner,
            MessageRow.created_at > _to_db(after),
        )
        async with self._sessions.begin() as session:
            result = await session.scalars(
                select(MessageRow).where(*where).order_by(MessageRow.created_at),
            )
            removed = [_message(row) for row in result]
            if removed:
                await session.execute(delete(MessageRow).where(*where))
        return removed
