"""Default configuration settings for the galaxy-chat package."""

from __future__ import annotations

# --- Conversations ---
PLACEHOLDER_TITLE = "New Conversation"
TITLE_MAX_CHARS = 60
TITLE_FALLBACK_WORDS = 6
ELLIPSIS = "..."

# --- Turns ---
DEDUP_WINDOW_SECONDS = 5.0
CHECK_DUPLICATE_WINDOW_SECONDS = 10.0  # Client-side pre-submit check is more lenient
DEFAULT_MODEL_TIMEOUT_SECONDS = 60.0
DEFAULT_TITLE_TIMEOUT_SECONDS = 15.0
RETRY_AFTER_SECONDS = 5

# --- Model ---
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_OPENAI_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_TEMPERATURE = 0.7
TITLE_TEMPERATURE = 0.3

# --- Memory ---
DEFAULT_MEMORY_TOP_K = 5

# --- Attachments ---
MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
ALLOWED_ATTACHMENT_TYPES = frozenset(
    {
        # Images
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/svg+xml",
        # Documents
        "application/pdf",
        "text/plain",
        "text/csv",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        # Archives
        "application/zip",
        "application/x-rar-compressed",
        # Code
        "text/javascript",
        "text/css",
        "text/html",
        "application/json",
        "text/xml",
        "application/xml",
    },
)

# --- HTTP ---
CONVERSATION_ID_HEADER = "X-Conversation-ID"
DEFAULT_IDENTITY_HEADER = "X-User-ID"
