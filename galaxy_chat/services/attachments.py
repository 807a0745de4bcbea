"""Attachment storage."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from galaxy_chat.constants import ALLOWED_ATTACHMENT_TYPES, MAX_ATTACHMENT_BYTES
from galaxy_chat.errors import InvalidRequest
from galaxy_chat.models import Attachment, AttachmentType, new_id

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class StoredFile:
    """Where an upload ended up."""

    url: str
    storage_ref: str
    size: int


@runtime_checkable
class AttachmentStore(Protocol):
    """Binary storage for uploaded files."""

    async def upload(self, data: bytes, mime_type: str, name: str) -> StoredFile:
        """Store bytes and return their public location."""
        ...

    async def delete(self, storage_ref: str) -> None:
        """Remove a previously stored upload."""
        ...


def attachment_type(mime_type: str) -> AttachmentType:
    """Images are inlined for the model; everything else is a file reference."""
    return "image" if mime_type.startswith("image/") else "file"


def validate_upload(size: int, mime_type: str) -> None:
    """Reject uploads that are too large or of an unsupported type."""
    if size > MAX_ATTACHMENT_BYTES:
        msg = "File size must be less than 10MB"
        raise InvalidRequest(msg)
    if mime_type not in ALLOWED_ATTACHMENT_TYPES:
        msg = "File type not supported"
        raise InvalidRequest(msg)


async def store_upload(
    store: AttachmentStore,
    data: bytes,
    mime_type: str,
    name: str,
) -> Attachment:
    """Validate, store and describe an upload as an attachment."""
    validate_upload(len(data), mime_type)
    stored = await store.upload(data, mime_type, name)
    return Attachment(
        type=attachment_type(mime_type),
        url=stored.url,
        name=name,
        size=stored.size,
        mime_type=mime_type,
        storage_ref=stored.storage_ref,
    )


def _safe_filename(name: str) -> str:
    safe = "".join(ch if ch.isalnum() or ch in "-._" else "_" for ch in name)
    return safe.lstrip(".") or "upload"


class LocalAttachmentStore:
    """Stores uploads on the local filesystem, one directory per upload."""

    def __init__(self, root: Path, *, base_url: str = "/files") -> None:
        self.root = root
        self.base_url = base_url.rstrip("/")

    async def upload(self, data: bytes, mime_type: str, name: str) -> StoredFile:
        storage_ref = new_id()
        filename = _safe_filename(name)
        target = self.root / storage_ref / filename

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("Stored %s upload %s (%d bytes)", mime_type, target, len(data))
        return StoredFile(
            url=f"{self.base_url}/{storage_ref}/{filename}",
            storage_ref=storage_ref,
            size=len(data),
        )

    async def delete(self, storage_ref: str) -> None:
        if not storage_ref.isalnum():
            msg = f"Invalid storage reference: {storage_ref!r}"
            raise ValueError(msg)
        await asyncio.to_thread(shutil.rmtree, self.root / storage_ref, True)
