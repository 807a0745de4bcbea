"""Error taxonomy shared by the chat core and the HTTP layer."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500
    retriable = False
    default_message = "Internal server error. Please try again later."
    conversation_id: str | None = None
    """Set once the failing request has resolved its conversation."""

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(ChatError):
    """No valid caller identity."""

    status_code = 401
    default_message = "Unauthorized"


class InvalidRequest(ChatError):
    """Malformed body or missing required fields."""

    status_code = 400
    default_message = "Invalid request format"


class NotFound(ChatError):
    """Resource missing or owned by someone else (the two are indistinguishable)."""

    status_code = 404
    default_message = "Not found"


class InvalidOperation(ChatError):
    """Operation not allowed on this resource, e.g. re-asking an assistant message."""

    status_code = 409
    default_message = "Operation not allowed"


class ServiceOverloaded(ChatError):
    """The model service signalled capacity exhaustion."""

    status_code = 503
    retriable = True
    default_message = "The AI service is currently overloaded. Please try again in a few moments."


class ServiceUnavailable(ChatError):
    """The model service failed server-side or could not be reached."""

    status_code = 503
    retriable = True
    default_message = "AI service temporarily unavailable. Please try again later."


class ModelRequestError(ChatError):
    """The model service rejected the request for a non-transient reason."""

    default_message = "Failed to generate response. Please try again."


class StreamInterrupted(ChatError):
    """The reply stream failed after some output had already been delivered."""

    retriable = True
    default_message = "Streaming failed"

    def __init__(self, message: str | None = None, *, persisted: bool = False) -> None:
        super().__init__(message)
        self.persisted = persisted


class TitleGenerationFailed(ChatError):
    """Title derivation failed; callers fall back to a deterministic title."""

    default_message = "Failed to generate title"
