"""
MedChat Session Service - Main FastAPI Application

HTTP surface for the conversation session manager: one endpoint drives a
chat turn (rate limiting, topic tracking, streamed reply, persistence),
the rest read and manage stored conversations.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from fastapi import APIRouter, FastAPI, HTTPException, Header, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.config import Settings
from src.conversation.chat_store import ChatStore
from src.errors import ChatNotFound, MessageValidationError, RateLimited, StoreUnavailable
from src.gateway.models import ChatSummary, RateLimitedResponse, SendMessageRequest, TurnResponse
from src.logging_config import setup_logging
from src.memory.context_store import ContextStore
from src.models.rate_limit import RateLimitInfo
from src.rate_limiter.edge import build_edge_limiter
from src.rate_limiter.identity import client_identity
from src.rate_limiter.limiter import FixedWindowRateLimiter
from src.session.orchestrator import SessionOrchestrator, Turn, TurnFailure
from src.storage.document_store import DocumentStore, MemoryDocumentStore
from src.storage.redis_store import RedisDocumentStore
from src.streaming.stream_handler import ModelProducer, StreamHandler

settings = Settings.from_env()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class Services:
    """Components shared by all requests"""
    settings: Settings
    store: DocumentStore
    rate_limiter: FixedWindowRateLimiter
    context_store: ContextStore
    chat_store: ChatStore
    orchestrator: SessionOrchestrator


def build_services(
    settings: Settings,
    store: Optional[DocumentStore] = None,
    producer: Optional[ModelProducer] = None,
) -> Services:
    if store is None:
        if settings.store_backend == "memory":
            store = MemoryDocumentStore()
        else:
            store = RedisDocumentStore(settings)

    if producer is None:
        producer = StreamHandler(settings.model_name, temperature=settings.model_temperature)

    rate_limiter = FixedWindowRateLimiter(
        store,
        limit=settings.rate_limit_per_minute,
        window_seconds=settings.rate_limit_window_seconds,
    )
    context_store = ContextStore(capacity=settings.context_store_capacity)
    chat_store = ChatStore(store)
    orchestrator = SessionOrchestrator(
        rate_limiter,
        context_store,
        chat_store,
        producer,
        settings=settings,
    )
    return Services(settings, store, rate_limiter, context_store, chat_store, orchestrator)


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


async def rate_limited_handler(request: Request, exc: RateLimited) -> JSONResponse:
    body = RateLimitedResponse(detail=str(exc), retry_after=exc.retry_after_seconds)
    headers = {"Retry-After": str(exc.retry_after_seconds)}
    if exc.limit is not None:
        headers["X-RateLimit-Limit"] = str(exc.limit)
        headers["X-RateLimit-Remaining"] = "0"
    return JSONResponse(status_code=429, content=body.model_dump(), headers=headers)


async def validation_error_handler(request: Request, exc: MessageValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": "invalid_message", "detail": exc.errors})


async def chat_not_found_handler(request: Request, exc: ChatNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "chat_not_found", "detail": str(exc)})


async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.warning("Store unavailable during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": "store_unavailable", "detail": str(exc)})


def create_app(
    settings: Settings,
    store: Optional[DocumentStore] = None,
    producer: Optional[ModelProducer] = None,
) -> FastAPI:
    services = build_services(settings, store=store, producer=producer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        if isinstance(services.store, RedisDocumentStore):
            await services.store.connect()
        await services.rate_limiter.setup()
        await services.chat_store.setup()
        yield
        if isinstance(services.store, RedisDocumentStore):
            await services.store.disconnect()

    app = FastAPI(
        title="MedChat Session Service",
        description="Conversation session manager for the Med AI assistant",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Edge budget and counters belong to this app
    edge_limiter = build_edge_limiter(settings)
    app.state.limiter = edge_limiter
    app.add_api_route(
        "/v1/chats/{chat_id}/messages",
        edge_limiter.limit(settings.edge_rate_limit, methods=["POST"])(send_message),
        methods=["POST"],
    )

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(RateLimited, rate_limited_handler)
    app.add_exception_handler(MessageValidationError, validation_error_handler)
    app.add_exception_handler(ChatNotFound, chat_not_found_handler)
    app.add_exception_handler(StoreUnavailable, store_unavailable_handler)

    app.include_router(router)
    return app


def turn_response(turn: Turn) -> TurnResponse:
    return TurnResponse(
        chat_id=turn.chat_id,
        state=turn.state.value,
        failure=turn.failure.value if turn.failure else None,
        persisted=turn.persisted,
        message=turn.assistant_message,
        messages=turn.transcript,
    )


async def stream_turn(orchestrator: SessionOrchestrator, turn: Turn) -> AsyncIterator[str]:
    """
    Run an admitted turn and relay its deltas as SSE

    The turn runs in its own task; if the client goes away the generator
    is closed and the task is cancelled, which keeps the partial reply
    unpersisted.
    """
    queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    async def forward(delta: str):
        await queue.put(delta)

    task = asyncio.create_task(orchestrator.execute(turn, on_delta=forward))
    task.add_done_callback(lambda _: queue.put_nowait(None))

    try:
        while True:
            delta = await queue.get()
            if delta is None:
                break
            yield StreamHandler.format_chunk(delta, chunk_id=turn.chat_id)

        error = task.exception() if not task.cancelled() else None
        if error is not None:
            logger.error("Streaming turn for chat %s failed: %s", turn.chat_id, error)
            yield StreamHandler.format_event({"error": {"message": str(error), "type": type(error).__name__}})
        elif turn.failure == TurnFailure.PRODUCER_ERROR:
            yield StreamHandler.format_event({
                "error": {"message": turn.buffer, "type": "producer_error"},
            })

        finish_reason = "stop" if turn.failure is None else "error"
        yield StreamHandler.format_chunk(None, chunk_id=turn.chat_id, finish_reason=finish_reason)
        yield StreamHandler.done()
    finally:
        if not task.done():
            task.cancel()


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint"""
    services = get_services(request)
    store_ok = await services.store.ping()
    return {
        "status": "healthy" if store_ok else "degraded",
        "store": "connected" if store_ok else "disconnected",
        "version": "0.1.0",
    }


async def send_message(
    request: Request,
    response: Response,
    chat_id: str,
    body: SendMessageRequest,
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    """Run one chat turn (registered with the edge limit in create_app)"""
    services = get_services(request)
    orchestrator = services.orchestrator

    turn = orchestrator.new_turn(
        chat_id=chat_id,
        user_id=require_user(user_id),
        client_id=client_identity(request.headers),
        content=body.content,
        attachments=body.attachments,
    )

    if body.stream:
        await orchestrator.admit(turn)
        return StreamingResponse(stream_turn(orchestrator, turn), media_type="text/event-stream")

    await orchestrator.run_turn(turn)
    return turn_response(turn)


@router.get("/v1/chats")
async def list_chats(request: Request, user_id: Optional[str] = Header(None, alias="X-User-Id")):
    """List the caller's chats, newest first"""
    chats = await get_services(request).chat_store.get_chats(require_user(user_id))
    return [
        ChatSummary(id=chat.id, title=chat.title, path=chat.path, message_count=len(chat.messages))
        for chat in chats
    ]


@router.get("/v1/chats/{chat_id}")
async def get_chat(request: Request, chat_id: str, user_id: Optional[str] = Header(None, alias="X-User-Id")):
    """Get one chat with its consolidated transcript"""
    chat = await get_services(request).chat_store.get_chat(chat_id, require_user(user_id))
    if not chat:
        raise ChatNotFound(f"Chat {chat_id} not found")
    return chat


@router.delete("/v1/chats/{chat_id}")
async def remove_chat(request: Request, chat_id: str, user_id: Optional[str] = Header(None, alias="X-User-Id")):
    """Delete one chat and drop its topic context"""
    services = get_services(request)
    removed = await services.chat_store.remove_chat(chat_id, require_user(user_id))
    if not removed:
        raise ChatNotFound(f"Chat {chat_id} not found")
    services.context_store.clear(chat_id)
    return {"deleted": chat_id}


@router.delete("/v1/chats")
async def clear_chats(request: Request, user_id: Optional[str] = Header(None, alias="X-User-Id")):
    """Delete all of the caller's chats"""
    services = get_services(request)
    owner = require_user(user_id)
    for chat in await services.chat_store.get_chats(owner):
        services.context_store.clear(chat.id)
    deleted = await services.chat_store.clear_chats(owner)
    return {"deleted": deleted}


@router.get("/v1/share/{chat_id}")
async def get_shared_chat(request: Request, chat_id: str):
    """Read a chat that has already been shared"""
    chat = await get_services(request).chat_store.get_shared_chat(chat_id)
    if not chat:
        raise ChatNotFound(f"Shared chat {chat_id} not found")
    return chat


@router.get("/v1/rate-limit", response_model=RateLimitInfo)
async def rate_limit_info(request: Request):
    """Current rate-limit window for the caller"""
    return await get_services(request).rate_limiter.get_info(client_identity(request.headers))


@router.post("/v1/admin/cleanup")
async def cleanup_chats(request: Request, admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
    """Re-consolidate every stored chat"""
    services = get_services(request)
    expected_key = services.settings.admin_api_key
    if not expected_key:
        raise HTTPException(status_code=500, detail="Admin key not configured")
    if admin_key != expected_key:
        raise HTTPException(status_code=401, detail="Invalid admin key")

    cleaned = await services.chat_store.cleanup_existing_chats()
    return {"cleaned": cleaned}


app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.gateway.main:app",
        host=settings.gateway_host,
        port=settings.gateway_port,
        reload=True,
    )
