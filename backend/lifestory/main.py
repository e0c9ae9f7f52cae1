"""
LifeStory Conversation Engine FastAPI Application Entry Point.

Run with: uvicorn lifestory.main:app --reload
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import AsyncGenerator
from uuid import UUID

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifestory.api.routes import context, conversations, questions, voice
from lifestory.config import get_settings, sanitize_error
from lifestory.db.session import AsyncSessionLocal
from lifestory.errors import ConversationError, ErrorType
from lifestory.services.completion import AnthropicCompletionService, CompletionService
from lifestory.services.context_builder import DatabaseContextBuilder
from lifestory.services.context_cache import ContextCache
from lifestory.services.conversation_store import ConversationStore
from lifestory.services.question_ledger import QuestionLedger
from lifestory.services.session_controller import SessionController, SessionControllerRegistry
from lifestory.services.voice_relay import (
    ConnectionManager,
    RealtimeVoiceRelay,
    UpstreamConnector,
    connect_realtime,
)

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _build_controller(
    user_id: UUID,
    book_id: UUID,
    chapter_id: UUID | None,
    *,
    completion: CompletionService,
    store: ConversationStore,
    context_cache: ContextCache,
    question_ledger: QuestionLedger,
) -> SessionController:
    return SessionController(
        user_id=user_id,
        book_id=book_id,
        chapter_id=chapter_id,
        completion=completion,
        store=store,
        context_cache=context_cache,
        question_ledger=question_ledger,
    )


def install_services(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    completion: CompletionService | None = None,
    upstream_connector: UpstreamConnector | None = None,
) -> None:
    """Build the conversation engine and attach it to app.state."""
    context_cache = ContextCache(DatabaseContextBuilder(session_factory))
    question_ledger = QuestionLedger(session_factory)
    store = ConversationStore(session_factory)
    completion = completion or AnthropicCompletionService()
    connections = ConnectionManager()

    app.state.session_factory = session_factory
    app.state.context_cache = context_cache
    app.state.question_ledger = question_ledger
    app.state.conversation_store = store
    app.state.completion = completion
    app.state.controllers = SessionControllerRegistry(
        partial(
            _build_controller,
            completion=completion,
            store=store,
            context_cache=context_cache,
            question_ledger=question_ledger,
        )
    )
    app.state.voice_connections = connections
    app.state.voice_relay = RealtimeVoiceRelay(
        store=store,
        manager=connections,
        question_ledger=question_ledger,
        upstream_connector=upstream_connector or connect_realtime,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup/shutdown."""
    # Startup
    install_services(app, AsyncSessionLocal)
    sweeper = asyncio.create_task(app.state.context_cache.run_sweeper())
    logger.info("%s conversation engine started (%s)", settings.app_name, settings.environment)
    yield
    # Shutdown
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await app.state.voice_connections.close_all()
    await app.state.controllers.close()


app = FastAPI(
    title=settings.app_name,
    description="Conversation session and realtime voice engine for LifeStory",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ConversationError)
async def conversation_error_handler(request: Request, exc: ConversationError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = ConversationError.with_correlation_id(
        ErrorType.AI_SERVICE,
        sanitize_error(exc, generic_message="Something went wrong. Please try again."),
    )
    logger.exception("Unhandled error on %s %s (correlation id %s)", request.method, request.url.path, error.correlation_id)
    return JSONResponse(status_code=500, content={"error": {**error.to_dict(), "title": "Unexpected Error"}})


# Include routers
app.include_router(conversations.router)
app.include_router(context.router)
app.include_router(questions.router)
app.include_router(voice.router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}
