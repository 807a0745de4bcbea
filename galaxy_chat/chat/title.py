"""Conversation title derivation."""

from __future__ import annotations

import asyncio
import logging
import re
from time import perf_counter
from typing import TYPE_CHECKING

from galaxy_chat.chat.prompt import title_messages
from galaxy_chat.constants import (
    DEFAULT_TITLE_TIMEOUT_SECONDS,
    ELLIPSIS,
    PLACEHOLDER_TITLE,
    TITLE_FALLBACK_WORDS,
    TITLE_MAX_CHARS,
    TITLE_TEMPERATURE,
)
from galaxy_chat.errors import TitleGenerationFailed
from galaxy_chat.models import SamplingConfig

if TYPE_CHECKING:
    from collections.abc import Sequence

    from galaxy_chat.models import Attachment
    from galaxy_chat.services.completion import CompletionService

logger = logging.getLogger(__name__)

_TITLE_PREFIX_RE = re.compile(r"^\s*title\s*:\s*", re.IGNORECASE)
_UNTITLED = "Untitled conversation"


def clean_title(raw: str) -> str:
    """Strip quoting and punctuation artifacts and cap the length."""
    title = re.sub(r"[\"'`]", "", raw)
    title = " ".join(title.split())
    title = _TITLE_PREFIX_RE.sub("", title).rstrip(".").strip()
    return title[:TITLE_MAX_CHARS].strip()


def fallback_title(first_message: str, attachments: Sequence[Attachment] = ()) -> str:
    """Deterministic title: the first few words of the opening message."""
    words = first_message.split()
    if not words and attachments:
        words = attachments[0].name.split()
    if not words:
        return _UNTITLED
    title = " ".join(words[:TITLE_FALLBACK_WORDS])[:TITLE_MAX_CHARS]
    if len(words) > TITLE_FALLBACK_WORDS or title == PLACEHOLDER_TITLE:
        title += ELLIPSIS
    return title


class TitleGenerator:
    """Asks the model for a short title and never fails doing so."""

    def __init__(
        self,
        completion: CompletionService,
        *,
        timeout: float = DEFAULT_TITLE_TIMEOUT_SECONDS,
        sampling: SamplingConfig | None = None,
    ) -> None:
        self.completion = completion
        self.timeout = timeout
        self.sampling = sampling or SamplingConfig(temperature=TITLE_TEMPERATURE, max_tokens=32)

    async def _ask(self, first_message: str) -> str:
        if not first_message.strip():
            msg = "No text to derive a title from"
            raise TitleGenerationFailed(msg)
        chunks: list[str] = []
        async with asyncio.timeout(self.timeout):
            async for piece in self.completion.complete(
                title_messages(first_message),
                self.sampling,
            ):
                chunks.append(piece)
        return "".join(chunks)

    async def generate(self, first_message: str, attachments: Sequence[Attachment] = ()) -> str:
        """Return a cleaned model title, or the deterministic fallback."""
        start = perf_counter()
        try:
            raw = await self._ask(first_message)
        except TitleGenerationFailed as exc:
            logger.info("Skipping model title: %s", exc)
            raw = ""
        except Exception:
            logger.warning("Title generation failed; using fallback", exc_info=True)
            raw = ""
        title = clean_title(raw)
        if not title or title == PLACEHOLDER_TITLE:
            title = fallback_title(first_message, attachments)
        logger.info("Derived title %r in %.1f ms", title, (perf_counter() - start) * 1000)
        return title
