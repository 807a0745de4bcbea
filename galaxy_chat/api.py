"""FastAPI application factory for the chat server."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING, Annotated, Any

from fastapi import Depends, FastAPI, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from starlette.background import BackgroundTask

from galaxy_chat.chat.orchestrator import ConversationOrchestrator
from galaxy_chat.chat.title import TitleGenerator
from galaxy_chat.chat.truncation import TruncationCoordinator
from galaxy_chat.constants import (
    CHECK_DUPLICATE_WINDOW_SECONDS,
    CONVERSATION_ID_HEADER,
    DEDUP_WINDOW_SECONDS,
    DEFAULT_MODEL_TIMEOUT_SECONDS,
    DEFAULT_TITLE_TIMEOUT_SECONDS,
    PLACEHOLDER_TITLE,
    RETRY_AFTER_SECONDS,
)
from galaxy_chat.core.chroma import init_collection
from galaxy_chat.core.common import log_requests_middleware
from galaxy_chat.core.tasks import wait_for_background_tasks
from galaxy_chat.errors import ChatError, InvalidOperation, InvalidRequest, NotFound, Unauthorized
from galaxy_chat.history import create_history_store
from galaxy_chat.history.base import utcnow
from galaxy_chat.models import (
    Conversation,
    ConversationCreate,
    ConversationUpdate,
    DeleteAfterRequest,
    DeleteAfterResponse,
    DuplicateCheckRequest,
    EditMessageRequest,
    Message,
    ReAskRequest,
    SamplingConfig,
    TitleRequest,
    TurnRequest,
)
from galaxy_chat.services.attachments import LocalAttachmentStore, store_upload
from galaxy_chat.services.completion import OpenAICompletionService
from galaxy_chat.services.identity import HeaderIdentityOracle
from galaxy_chat.services.memory import ChromaMemoryOracle, InMemoryMemoryOracle, NullMemoryOracle

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence
    from pathlib import Path

    from galaxy_chat.chat.streaming import TurnStream
    from galaxy_chat.config import Settings
    from galaxy_chat.history.base import HistoryStore
    from galaxy_chat.services.attachments import AttachmentStore
    from galaxy_chat.services.completion import CompletionService
    from galaxy_chat.services.identity import IdentityOracle
    from galaxy_chat.services.memory import MemoryOracle

logger = logging.getLogger(__name__)

_STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"


async def _chat_error_handler(_request: Request, exc: ChatError) -> JSONResponse:
    headers: dict[str, str] = {}
    if exc.status_code == 503:  # noqa: PLR2004
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
    if exc.conversation_id:
        headers[CONVERSATION_ID_HEADER] = exc.conversation_id
    content: dict[str, Any] = {"error": exc.message}
    if exc.retriable:
        content["retriable"] = True
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected malformed %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"error": InvalidRequest.default_message})


def current_owner(request: Request) -> str:
    """Resolve the caller or fail with 401."""
    owner = request.app.state.identity.current_identity(request)
    if not owner:
        raise Unauthorized
    return owner


Owner = Annotated[str, Depends(current_owner)]


def _stream_response(stream: TurnStream) -> StreamingResponse:
    """Chunked plain-text reply; the resolved conversation id travels in a header."""
    return StreamingResponse(
        stream,
        media_type=_STREAM_MEDIA_TYPE,
        headers={
            CONVERSATION_ID_HEADER: stream.conversation_id,
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
        # If the body is never iterated the reply is still drained and persisted.
        background=BackgroundTask(stream.aclose),
    )


def create_app(  # noqa: C901, PLR0915
    *,
    history: HistoryStore,
    completion: CompletionService,
    identity: IdentityOracle | None = None,
    memory: MemoryOracle | None = None,
    attachments: AttachmentStore | None = None,
    files_dir: Path | None = None,
    sampling: SamplingConfig | None = None,
    model_timeout: float | None = DEFAULT_MODEL_TIMEOUT_SECONDS,
    dedup_window: float = DEDUP_WINDOW_SECONDS,
    title_timeout: float = DEFAULT_TITLE_TIMEOUT_SECONDS,
    cors_origins: Sequence[str] = ("*",),
) -> FastAPI:
    """Create the FastAPI app around already-built collaborators.

    Args:
        history: Conversation and message persistence.
        completion: Streaming model service.
        identity: Resolves the caller; defaults to the `X-User-ID` header.
        memory: Long-term memory oracle; none by default.
        attachments: Upload store; uploads are rejected without one.
        files_dir: Directory served under `/files`, if any.
        sampling: Sampling parameters for replies.
        model_timeout: Wall-clock limit for one reply, or None for no limit.
        dedup_window: Seconds within which a repeated user message is not saved.
        title_timeout: Seconds to wait for a generated title.
        cors_origins: Allowed CORS origins.

    Returns:
        The configured application.

    """
    identity = identity or HeaderIdentityOracle()
    orchestrator = ConversationOrchestrator(
        history=history,
        completion=completion,
        memory=memory,
        title_generator=TitleGenerator(completion, timeout=title_timeout),
        sampling=sampling,
        model_timeout=model_timeout,
        dedup_window=dedup_window,
    )
    truncation = TruncationCoordinator(orchestrator, attachments=attachments)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting history store (%s)", type(history).__name__)
        await history.start()
        yield
        logger.info("Waiting for background work before shutdown...")
        await wait_for_background_tasks(timeout=10.0)
        await history.close()

    app = FastAPI(title="Galaxy Chat", lifespan=lifespan)
    app.state.identity = identity
    app.state.orchestrator = orchestrator
    app.state.truncation = truncation

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[CONVERSATION_ID_HEADER],
    )
    app.middleware("http")(log_requests_middleware)
    app.add_exception_handler(ChatError, _chat_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]

    async def owned_conversation(conversation_id: str, owner: str) -> Conversation:
        conversation = await history.get_conversation(conversation_id, owner)
        if conversation is None:
            msg = "Conversation not found"
            raise NotFound(msg)
        return conversation

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "history": type(history).__name__}

    # --- Turns ---

    @app.post("/api/chat")
    async def chat(body: TurnRequest, owner: Owner) -> StreamingResponse:
        stream = await orchestrator.handle_turn(body, owner)
        return _stream_response(stream)

    # --- Conversations ---

    @app.get("/api/conversations")
    async def list_conversations(owner: Owner) -> list[Conversation]:
        return await history.list_conversations(owner)

    @app.post("/api/conversations", status_code=201)
    async def create_conversation(
        owner: Owner,
        body: ConversationCreate | None = None,
    ) -> Conversation:
        title = (body.title or "").strip() if body else ""
        return await history.create_conversation(owner, title or PLACEHOLDER_TITLE)

    @app.post("/api/conversations/generate-title")
    async def generate_title(body: TitleRequest, owner: Owner) -> dict[str, Any]:
        title = await orchestrator.derive_title(body.conversation_id, owner, body.first_message)
        return {"title": title, "success": True}

    @app.get("/api/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str, owner: Owner) -> Conversation:
        return await owned_conversation(conversation_id, owner)

    @app.put("/api/conversations/{conversation_id}")
    async def rename_conversation(
        conversation_id: str,
        body: ConversationUpdate,
        owner: Owner,
    ) -> Conversation:
        title = body.title.strip()
        if not title:
            msg = "Title is required"
            raise InvalidRequest(msg)
        updated = await history.update_conversation(conversation_id, owner, title=title)
        if updated is None:
            msg = "Conversation not found"
            raise NotFound(msg)
        return updated

    @app.delete("/api/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str, owner: Owner) -> dict[str, Any]:
        deleted = await truncation.delete_conversation(conversation_id, owner)
        return {"success": True, "deletedCount": deleted}

    # --- Messages ---

    @app.post("/api/messages/check-duplicate")
    async def check_duplicate(body: DuplicateCheckRequest, owner: Owner) -> dict[str, bool]:
        since = utcnow() - timedelta(seconds=CHECK_DUPLICATE_WINDOW_SECONDS)
        recent = await history.recent_messages(
            body.conversation_id,
            owner,
            role=body.role,
            since=since,
        )
        wanted = body.content.strip()
        return {"isDuplicate": any(m.content.strip() == wanted for m in recent)}

    @app.get("/api/messages/{conversation_id}")
    async def list_messages(conversation_id: str, owner: Owner) -> list[Message]:
        await owned_conversation(conversation_id, owner)
        return await history.list_messages(conversation_id, owner)

    # Registered before the single-message routes so "delete-after" is not taken as an id.
    @app.delete("/api/messages/{conversation_id}/delete-after")
    async def delete_after(
        conversation_id: str,
        body: DeleteAfterRequest,
        owner: Owner,
    ) -> DeleteAfterResponse:
        deleted = await truncation.delete_after(conversation_id, body.after_message_id, owner)
        return DeleteAfterResponse(success=True, deleted_count=deleted)

    @app.put("/api/messages/{conversation_id}/{message_id}")
    async def edit_message(
        conversation_id: str,
        message_id: str,
        body: EditMessageRequest,
        owner: Owner,
    ) -> Message:
        result = await truncation.edit_message(
            message_id,
            body.content,
            owner,
            conversation_id=conversation_id,
        )
        return result.message

    @app.delete("/api/messages/{conversation_id}/{message_id}")
    async def delete_message(
        conversation_id: str,
        message_id: str,
        owner: Owner,
    ) -> dict[str, Any]:
        deleted = await truncation.delete_message(conversation_id, message_id, owner)
        return {"success": True, "messageId": deleted.id}

    @app.post("/api/messages/{conversation_id}/{message_id}/reask")
    async def re_ask(
        conversation_id: str,
        message_id: str,
        owner: Owner,
        body: ReAskRequest | None = None,
    ) -> StreamingResponse:
        if body is not None and body.content is not None:
            result = await truncation.edit_message(
                message_id,
                body.content,
                owner,
                trigger_reask=True,
                conversation_id=conversation_id,
            )
            assert result.stream is not None
            return _stream_response(result.stream)
        stream = await truncation.re_ask(message_id, owner, conversation_id=conversation_id)
        return _stream_response(stream)

    # --- Attachments ---

    @app.post("/api/upload")
    async def upload(file: UploadFile, owner: Owner) -> dict[str, Any]:
        if attachments is None:
            msg = "Uploads are not enabled on this server"
            raise InvalidOperation(msg)
        data = await file.read()
        attachment = await store_upload(
            attachments,
            data,
            file.content_type or "application/octet-stream",
            file.filename or "upload",
        )
        logger.info("Stored upload %s for %s", attachment.name, owner)
        return {"success": True, "attachment": attachment.model_dump(by_alias=True)}

    if files_dir is not None:
        files_dir.mkdir(parents=True, exist_ok=True)
        app.mount("/files", StaticFiles(directory=files_dir), name="files")

    return app


def _build_memory(settings: Settings) -> MemoryOracle:
    storage = settings.storage
    if storage.memory_backend == "none":
        return NullMemoryOracle()
    if storage.memory_backend == "memory":
        return InMemoryMemoryOracle(top_k=storage.memory_top_k)
    collection = init_collection(
        storage.chroma_path,
        embedding_model=storage.embedding_model,
        openai_base_url=settings.model.openai_base_url,
        openai_api_key=settings.model.openai_api_key,
    )
    return ChromaMemoryOracle(collection, top_k=storage.memory_top_k)


def build_app(settings: Settings) -> FastAPI:
    """Wire the configured collaborators into an app."""
    model = settings.model
    completion = OpenAICompletionService(
        openai_base_url=model.openai_base_url,
        model=model.model,
        api_key=model.openai_api_key,
        request_timeout=model.timeout,
    )
    return create_app(
        history=create_history_store(settings.storage.db_url),
        completion=completion,
        identity=HeaderIdentityOracle(
            settings.server.identity_header,
            api_token=settings.server.api_token,
        ),
        memory=_build_memory(settings),
        attachments=LocalAttachmentStore(settings.storage.attachments_dir),
        files_dir=settings.storage.attachments_dir,
        sampling=SamplingConfig(temperature=model.temperature, max_tokens=model.max_tokens),
        model_timeout=model.timeout,
        dedup_window=settings.chat.dedup_window,
        title_timeout=settings.chat.title_timeout,
        cors_origins=settings.server.cors_origins,
    )
