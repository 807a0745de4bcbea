"""Model completion services producing text token streams."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from galaxy_chat.core.sse import extract_content_from_chunk, extract_error, parse_chunk
from galaxy_chat.errors import ChatError, ModelRequestError, ServiceOverloaded, ServiceUnavailable

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator

    from galaxy_chat.models import SamplingConfig

logger = logging.getLogger(__name__)

_OVERLOADED_STATUSES = frozenset({429, 503})


@runtime_checkable
class CompletionService(Protocol):
    """Turns an ordered message list into a lazy, finite stream of text chunks.

    A stream cannot be resumed; retrying means calling ``complete`` again.
    Rejections must surface as ``ChatError`` subclasses when the first chunk is
    requested.
    """

    def complete(
        self,
        messages: list[dict[str, Any]],
        sampling: SamplingConfig,
    ) -> AsyncIterator[str]:
        """Start a completion and return its chunk stream."""
        ...


def classify_rejection(status_code: int | None, body: str) -> ChatError:
    """Map an upstream failure onto the error taxonomy."""
    if status_code in _OVERLOADED_STATUSES or "overloaded" in body.lower():
        return ServiceOverloaded()
    if status_code is None or status_code >= 500:  # noqa: PLR2004
        return ServiceUnavailable()
    return ModelRequestError(f"Upstream error {status_code}")


class OpenAICompletionService:
    """Streams chat completions from an OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        openai_base_url: str,
        model: str,
        api_key: str | None = None,
        request_timeout: float = 120.0,
    ) -> None:
        self.openai_base_url = openai_base_url
        self.model = model
        self.api_key = api_key
        self.request_timeout = request_timeout

    def _payload(self, messages: list[dict[str, Any]], sampling: SamplingConfig) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": sampling.temperature,
            "stream": True,
        }
        if sampling.max_tokens is not None:
            payload["max_tokens"] = sampling.max_tokens
        return payload

    async def complete(
        self,
        messages: list[dict[str, Any]],
        sampling: SamplingConfig,
    ) -> AsyncGenerator[str, None]:
        url = f"{self.openai_base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        try:
            async with (
                httpx.AsyncClient(timeout=self.request_timeout) as client,
                client.stream(
                    "POST",
                    url,
                    json=self._payload(messages, sampling),
                    headers=headers,
                ) as response,
            ):
                if response.status_code != 200:  # noqa: PLR2004
                    error_text = (await response.aread()).decode(errors="ignore")
                    logger.error("Upstream error %s: %s", response.status_code, error_text)
                    raise classify_rejection(response.status_code, error_text)
                async for line in response.aiter_lines():
                    chunk = parse_chunk(line)
                    if chunk is None:
                        continue
                    error = extract_error(chunk)
                    if error:
                        logger.error("Upstream stream error: %s", error)
                        raise classify_rejection(None, error)
                    piece = extract_content_from_chunk(chunk)
                    if piece:
                        yield piece
        except httpx.TimeoutException as exc:
            logger.warning("Model request timed out after %.0fs", self.request_timeout)
            raise ServiceUnavailable from exc
        except httpx.TransportError as exc:
            logger.warning("Model transport failure: %s", exc)
            raise ServiceUnavailable from exc
