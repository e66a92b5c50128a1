"""
FastAPI Application Module

HTTP and WebSocket surface of the Skyhammer chat service. The transport layer is
kept thin: every chat message goes through ``ConversationOrchestrator``, and
streamed output reaches browsers through the ``/ws/exchanges/{id}`` socket.

Key Features:
- Multipart chat endpoint accepting one attachment per message
- Live streaming of model output over WebSockets
- Conversation management and the global assistant instruction
- Rate limiting, structured logging, metrics and tracing

There is no module-level application; serve it through the factory:

    uvicorn --factory skyhammer_chat.api.app:create_app
"""

import asyncio
import logging
import shutil
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

import structlog
from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Request,
    Response,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from ..config import Settings, load_settings
from ..domain.errors import (
    AttachmentProcessingError,
    ChatError,
    InvalidContent,
    RateLimited,
    StorageIOError,
)
from ..domain.models import ConversationSummary, ExchangeResult, Message, Upload
from ..metrics import CUSTOM_REGISTRY, ERRORS, REQUESTS
from ..repositories.base import ConversationRepository
from ..repositories.json_file import JsonFileRepository
from ..services.attachments import AttachmentTransformService
from ..services.broadcaster import StreamBroadcaster
from ..services.job_queue import TranscriptionJobQueue
from ..services.llm import GeminiGateway, ModelGateway
from ..services.orchestrator import ConversationOrchestrator
from ..services.transcription import GeminiTranscriber
from .rate_limiter import RateLimiter, RateLimitExceeded, rate_limit_middleware

logger = structlog.get_logger()


class InstructionUpdate(BaseModel):
    instruction: str = ""


class RenameRequest(BaseModel):
    name: str


class TitleRequest(BaseModel):
    message: str


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        )
    )


def route_label(path: str) -> str:
    """Coarse metrics label: the first two path segments."""
    segments = [s for s in path.split("?")[0].split("/") if s]
    return "/" + "/".join(segments[:2])


def http_error(error: Exception) -> HTTPException:
    """Translate a pipeline error into the HTTP response the client sees."""
    if isinstance(error, RateLimited):
        headers = {"Retry-After": str(int(error.retry_after or 60))}
        return HTTPException(status_code=429, detail=error.user_message, headers=headers)
    if isinstance(error, (InvalidContent, AttachmentProcessingError)):
        return HTTPException(status_code=422, detail=error.user_message)
    if isinstance(error, StorageIOError):
        return HTTPException(status_code=503, detail=error.user_message)
    if isinstance(error, ChatError):
        return HTTPException(status_code=502, detail=error.user_message)
    return HTTPException(status_code=500, detail=ChatError.user_message)


def create_app(
    settings: Optional[Settings] = None,
    *,
    repository: Optional[ConversationRepository] = None,
    gateway: Optional[ModelGateway] = None,
    job_queue: Optional[TranscriptionJobQueue] = None,
    attachments: Optional[AttachmentTransformService] = None,
) -> FastAPI:
    """Wire the service graph and build the application."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    repository = repository or JsonFileRepository(
        settings.db_path, settings.default_system_instruction
    )
    gateway = gateway or GeminiGateway(settings)
    job_queue = job_queue or TranscriptionJobQueue(
        GeminiTranscriber(gateway),
        journal_path=settings.job_journal_path,
        workers=settings.transcription_workers,
        retain_finished=settings.job_retention,
    )
    attachments = attachments or AttachmentTransformService(
        job_queue,
        gateway,
        inline_limit_bytes=settings.inline_limit_bytes,
        transcription_timeout=settings.transcription_timeout,
    )
    broadcaster = StreamBroadcaster()
    orchestrator = ConversationOrchestrator(repository, gateway, attachments, broadcaster)
    rate_limiter = RateLimiter(rate_limit=settings.rate_limit, time_window=settings.rate_window)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Starts the job workers and rate limiter; stops them on shutdown."""
        await job_queue.start()
        await rate_limiter.start()
        logger.info("application_startup_complete")

        yield

        await job_queue.cleanup()
        await rate_limiter.stop()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Skyhammer Chat API",
        description="Multi-turn chat with attachments over Gemini",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.repository = repository
    app.state.orchestrator = orchestrator
    app.state.broadcaster = broadcaster
    app.state.rate_limiter = rate_limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests and enforces rate limits"""
        label = route_label(request.url.path)
        REQUESTS.labels(path=label).inc()
        logger.info("request_started", path=request.url.path)
        try:
            remaining = await rate_limit_middleware(request, rate_limiter)
        except RateLimitExceeded as e:
            return JSONResponse(
                status_code=429,
                content={"detail": str(e)},
                headers={"Retry-After": str(int(e.retry_after) + 1)},
            )
        try:
            response = await call_next(request)
        except Exception as e:
            ERRORS.labels(path=label).inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise
        if response.status_code >= 500:
            ERRORS.labels(path=label).inc()
        if remaining is not None:
            response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    register_routes(app)
    return app


def get_orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator


def get_repository(request: Request) -> ConversationRepository:
    return request.app.state.repository


async def save_upload(file: UploadFile, upload_dir: str) -> Upload:
    """Store an incoming file under a unique temporary name."""
    suffix = Path(file.filename or "").suffix
    target = Path(upload_dir) / f"{int(time.time() * 1000)}-{uuid4().hex[:8]}{suffix}"

    def copy() -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as out:
            shutil.copyfileobj(file.file, out)

    await asyncio.to_thread(copy)
    return Upload(
        path=str(target),
        original_name=file.filename or target.name,
        mime_type=file.content_type or "application/octet-stream",
    )


def _log_detached_outcome(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.info("detached_exchange_failed", error=str(task.exception()))


async def run_detached(coro):
    """Await ``coro`` in its own task so cancelling the caller does not cancel it.

    A request whose client disconnects is cancelled; the exchange still runs to
    completion and persists its result.
    """
    task = asyncio.ensure_future(coro)
    task.add_done_callback(_log_detached_outcome)
    return await asyncio.shield(task)


async def forward_events(websocket: WebSocket, subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.model_dump())


async def wait_for_disconnect(websocket: WebSocket) -> None:
    """Read (and ignore) client frames until the client goes away."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


def register_routes(app: FastAPI) -> None:
    @app.post("/api/chat", response_model=ExchangeResult)
    async def chat(
        request: Request,
        message: str = Form(""),
        conversation_id: Optional[str] = Form(None),
        exchange_id: Optional[str] = Form(None),
        file: Optional[UploadFile] = File(None),
        orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
    ) -> ExchangeResult:
        """Processes one user message (and optional attachment) into a model reply."""
        upload = None
        if file is not None and file.filename:
            try:
                upload = await save_upload(file, request.app.state.settings.upload_dir)
            except OSError as e:
                logger.error("upload_save_failed", filename=file.filename, error=str(e))
                raise HTTPException(status_code=500, detail="Failed to store uploaded file")

        try:
            return await run_detached(
                orchestrator.submit_exchange(
                    message,
                    conversation_id=conversation_id or None,
                    upload=upload,
                    exchange_id=exchange_id or None,
                )
            )
        except Exception as e:
            raise http_error(e)

    @app.websocket("/ws/exchanges/{exchange_id}")
    async def stream_exchange(websocket: WebSocket, exchange_id: str):
        """Forwards live chunks of one exchange until its terminal event.

        The client leaving ends the subscription even if the exchange never
        starts.
        """
        subscription = websocket.app.state.broadcaster.subscribe(exchange_id)
        tasks = []
        try:
            await websocket.accept()
            forward = asyncio.create_task(forward_events(websocket, subscription))
            listen = asyncio.create_task(wait_for_disconnect(websocket))
            tasks = [forward, listen]
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

            if forward.done() and forward.exception() is None:
                await websocket.close()
            elif forward.done() and not isinstance(forward.exception(), WebSocketDisconnect):
                logger.error("stream_forward_failed", exchange_id=exchange_id, error=str(forward.exception()))
            else:
                logger.info("listener_disconnected", exchange_id=exchange_id)
        except WebSocketDisconnect:
            logger.info("listener_disconnected", exchange_id=exchange_id)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            subscription.close()

    @app.get("/api/conversations", response_model=List[ConversationSummary])
    async def list_conversations(
        limit: Optional[int] = None,
        offset: int = 0,
        repository: ConversationRepository = Depends(get_repository),
    ) -> List[ConversationSummary]:
        """Lists conversations, most recently updated first"""
        try:
            return await repository.list_conversations(limit=limit, offset=offset)
        except StorageIOError as e:
            logger.error("list_conversations_error", error=str(e))
            raise http_error(e)

    @app.get("/api/conversations/{conversation_id}/messages", response_model=List[Message])
    async def get_messages(
        conversation_id: str,
        repository: ConversationRepository = Depends(get_repository),
    ) -> List[Message]:
        """Message history of a conversation; empty for unknown ids"""
        try:
            return await repository.get_messages(conversation_id)
        except StorageIOError as e:
            logger.error("get_messages_error", conversation_id=conversation_id, error=str(e))
            raise http_error(e)

    @app.post("/api/conversations/{conversation_id}/name")
    async def rename_conversation(
        conversation_id: str,
        body: RenameRequest,
        repository: ConversationRepository = Depends(get_repository),
    ) -> dict:
        name = body.name.strip()
        if not name:
            raise HTTPException(status_code=422, detail="Name must not be empty")
        try:
            await repository.rename_conversation(conversation_id, name)
        except StorageIOError as e:
            raise http_error(e)
        return {"success": True}

    @app.delete("/api/conversations/{conversation_id}")
    async def delete_conversation(
        conversation_id: str,
        repository: ConversationRepository = Depends(get_repository),
    ) -> dict:
        try:
            await repository.delete_conversation(conversation_id)
        except StorageIOError as e:
            raise http_error(e)
        return {"success": True}

    @app.delete("/api/conversations/{conversation_id}/messages")
    async def clear_messages(
        conversation_id: str,
        repository: ConversationRepository = Depends(get_repository),
    ) -> dict:
        try:
            await repository.clear_messages(conversation_id)
        except StorageIOError as e:
            raise http_error(e)
        return {"success": True}

    @app.post("/api/conversation-name")
    async def generate_conversation_name(
        body: TitleRequest,
        orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        """Suggests a short title for a conversation starting with ``message``"""
        return {"name": await orchestrator.derive_title(body.message)}

    @app.get("/api/system-instruction")
    async def get_instruction(
        repository: ConversationRepository = Depends(get_repository),
    ) -> dict:
        try:
            return {"instruction": await repository.get_instruction()}
        except StorageIOError as e:
            raise http_error(e)

    @app.put("/api/system-instruction")
    async def set_instruction(
        body: InstructionUpdate,
        repository: ConversationRepository = Depends(get_repository),
    ) -> dict:
        """Replaces the global instruction; an empty one restores the default"""
        text = body.instruction.strip() or repository.instruction_cache.default
        try:
            await repository.set_instruction(text)
        except StorageIOError as e:
            raise http_error(e)
        return {"success": True}

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type=CONTENT_TYPE_LATEST)

