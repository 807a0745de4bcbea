"""Conversation data models."""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from galaxy_chat.constants import DEFAULT_TEMPERATURE

Role = Literal["user", "assistant"]
AttachmentType = Literal["image", "file"]


def new_id() -> str:
    """Return a fresh opaque identifier."""
    return uuid4().hex


class _CamelModel(BaseModel):
    """Accept snake_case or camelCase on input, emit camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Attachment(_CamelModel):
    """File or image attached to a message. Immutable once attached."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_id)
    type: AttachmentType
    url: str
    name: str
    size: int | None = None
    mime_type: str | None = None
    storage_ref: str | None = Field(
        default=None,
        validation_alias=AliasChoices("storageRef", "storage_ref", "publicId"),
    )
    """Attachment store reference used for later deletion."""


class Message(_CamelModel):
    """A single persisted chat message."""

    id: str
    conversation_id: str
    owner: str
    role: Role
    content: str
    attachments: list[Attachment] = Field(default_factory=list)
    created_at: datetime
    edited: bool = False


class Conversation(_CamelModel):
    """A conversation owned by one identity."""

    id: str
    owner: str
    title: str
    created_at: datetime
    updated_at: datetime


class SamplingConfig(BaseModel):
    """Sampling parameters forwarded to the model service."""

    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int | None = None


# --- Request bodies ---


class TurnRequest(_CamelModel):
    """Turn submission payload."""

    conversation_id: str | None = None
    query: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    skip_user_save: bool = False

    @field_validator("query", mode="before")
    @classmethod
    def _none_is_empty(cls, v: str | None) -> str:
        return v or ""


class DeleteAfterRequest(_CamelModel):
    """Truncate-after payload."""

    after_message_id: str


class EditMessageRequest(_CamelModel):
    """Edit payload."""

    content: str


class ReAskRequest(_CamelModel):
    """Re-ask payload; a content value edits the message first."""

    content: str | None = None


class ConversationCreate(_CamelModel):
    """Eager conversation creation payload."""

    title: str | None = None


class ConversationUpdate(_CamelModel):
    """Conversation rename payload."""

    title: str


class DuplicateCheckRequest(_CamelModel):
    """Pre-submit duplicate check payload."""

    conversation_id: str
    content: str
    role: Role = "user"


class TitleRequest(_CamelModel):
    """Explicit title derivation payload."""

    conversation_id: str
    first_message: str


class DeleteAfterResponse(_CamelModel):
    """Truncate-after result."""

    success: bool
    deleted_count: int
