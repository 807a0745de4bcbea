"""Prompt templates and prompt assembly."""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

    from galaxy_chat.models import Attachment, Message

SYSTEM_PROMPT = """
You are Galaxy AI, an intelligent and helpful assistant. Today is {today}.

OBJECTIVES:
- Provide clear, accurate, and helpful responses
- When discussing code, use proper formatting and explain concepts clearly
- Be concise but thorough in your explanations
- Adapt your communication style to the user's technical level
- For complex topics, break down information into digestible parts

CONTEXT: {context}

Remember: You can help with coding, explanations, problem-solving, creative tasks, and general questions. Always strive to be helpful and informative.
""".strip()

NO_CONTEXT = "No relevant prior context."

TITLE_PROMPT = """
Based on this conversation starter: "{first_message}", generate a concise, descriptive title (max 6 words) that captures the main topic or intent. Return only the title, no quotes or extra text.
""".strip()


def _attachment_part(attachment: Attachment) -> dict[str, Any]:
    if attachment.type == "image":
        return {"type": "image_url", "image_url": {"url": attachment.url}}
    mime = attachment.mime_type or "application/octet-stream"
    return {
        "type": "text",
        "text": f"[Attached file: {attachment.name} ({mime}) {attachment.url}]",
    }


def render_content(text: str, attachments: Sequence[Attachment]) -> str | list[dict[str, Any]]:
    """Plain text, or multi-part content when attachments are present."""
    if not attachments:
        return text
    parts: list[dict[str, Any]] = []
    if text:
        parts.append({"type": "text", "text": text})
    parts.extend(_attachment_part(a) for a in attachments)
    return parts


def to_model_message(message: Message) -> dict[str, Any]:
    """Convert a stored message to the model service's message shape."""
    if message.role == "assistant":
        return {"role": "assistant", "content": message.content}
    return {"role": "user", "content": render_content(message.content, message.attachments)}


def build_system_message(context: str, *, today: date | None = None) -> dict[str, Any]:
    """System message with persona, date and interpolated memory context."""
    return {
        "role": "system",
        "content": SYSTEM_PROMPT.format(
            today=(today or date.today()).isoformat(),
            context=context.strip() or NO_CONTEXT,
        ),
    }


def _is_current_turn(message: Message, text: str, attachments: Sequence[Attachment]) -> bool:
    return (
        message.role == "user"
        and message.content == text
        and [a.url for a in message.attachments] == [a.url for a in attachments]
    )


def assemble_prompt(
    *,
    history: Sequence[Message],
    user_text: str,
    attachments: Sequence[Attachment],
    context: str,
    today: date | None = None,
) -> list[dict[str, Any]]:
    """System message, then persisted history, then the current turn.

    The current turn is normally already the last persisted message; it is only
    appended when history does not end with it.
    """
    messages = [build_system_message(context, today=today)]
    messages.extend(to_model_message(m) for m in history)
    if not history or not _is_current_turn(history[-1], user_text, attachments):
        messages.append({"role": "user", "content": render_content(user_text, attachments)})
    return messages


def title_messages(first_message: str) -> list[dict[str, Any]]:
    """Single-message prompt for title derivation."""
    return [{"role": "user", "content": TITLE_PROMPT.format(first_message=first_message.strip())}]
