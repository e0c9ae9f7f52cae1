"""Conversation session routes (text mode)."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Response, status

from lifestory.api.deps import (
    ControllersDep,
    ConversationStoreDep,
    CurrentUser,
    DbSession,
    require_book,
)
from lifestory.config import get_settings
from lifestory.db.models import ConversationMedium, User
from lifestory.errors import validation_error
from lifestory.schemas.analytics import ConversationInsightsResponse
from lifestory.schemas.conversation import (
    ConversationListResponse,
    ConversationSession,
    ConversationSessionResponse,
    ConversationStartRequest,
    ConversationStatsResponse,
    DraftResponse,
    DraftUpdateRequest,
    MessageSendRequest,
    SelfConversationRequest,
)
from lifestory.services.analytics import conversation_analyzer
from lifestory.services.conversation_store import ConversationStore
from lifestory.services.session_controller import SessionController, SessionControllerRegistry

router = APIRouter(prefix="/conversations", tags=["conversations"])
settings = get_settings()


def _to_response(session: ConversationSession) -> ConversationSessionResponse:
    return ConversationSessionResponse.model_validate(session)


async def _get_session_or_404(
    store: ConversationStore, session_id: str, user: User
) -> ConversationSession:
    session = await store.get_session(session_id, user.id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return session


def _controller_for(
    controllers: SessionControllerRegistry, session: ConversationSession
) -> SessionController:
    if session.book_id is None:
        raise validation_error("This conversation is not linked to a book")
    return controllers.get(session.user_id, session.book_id, session.chapter_id)


def _working_copy(controller: SessionController, session: ConversationSession) -> ConversationSession:
    """Prefer the controller's in-memory session when it is the same conversation."""
    current = controller.current_session
    if current is not None and current.session_id == session.session_id:
        return current
    return session


# =============================================================================
# START / HISTORY
# =============================================================================


@router.post("/", response_model=ConversationSessionResponse, status_code=status.HTTP_201_CREATED)
async def start_conversation(
    data: ConversationStartRequest,
    current_user: CurrentUser,
    db: DbSession,
    controllers: ControllersDep,
) -> ConversationSessionResponse:
    """Start a text conversation and return it with the assistant's opening message."""
    if data.conversation_medium != ConversationMedium.TEXT:
        raise validation_error("Voice conversations are started over the voice socket")
    await require_book(db, data.book_id, current_user.id)

    controller = controllers.get(current_user.id, data.book_id, data.chapter_id)
    session = await controller.start_conversation(data.conversation_type, data.conversation_medium)
    return _to_response(session)


@router.post("/self", response_model=ConversationSessionResponse, status_code=status.HTTP_201_CREATED)
async def start_self_conversation(
    data: SelfConversationRequest,
    current_user: CurrentUser,
    db: DbSession,
    controllers: ControllersDep,
) -> ConversationSessionResponse:
    """Record a conversation the user has with themselves. No AI turn."""
    await require_book(db, data.book_id, current_user.id)
    controller = controllers.get(current_user.id, data.book_id, data.chapter_id)
    session = await controller.start_self_conversation(data.content)
    return _to_response(session)


@router.get("/", response_model=ConversationListResponse)
async def list_conversations(
    current_user: CurrentUser,
    db: DbSession,
    controllers: ControllersDep,
    store: ConversationStoreDep,
    book_id: UUID | None = None,
    limit: int = Query(default=settings.conversation_history_limit, ge=1, le=50),
) -> ConversationListResponse:
    """
    Most recent conversations, newest first.

    Filters:
    - book_id: only conversations about this book
    """
    if book_id is not None:
        await require_book(db, book_id, current_user.id)
        sessions = await controllers.get(current_user.id, book_id).load_history(limit, book_id=book_id)
    else:
        sessions = await store.list_recent(current_user.id, limit=limit)
    total = await store.count(current_user.id, book_id=book_id)
    return ConversationListResponse(
        conversations=[_to_response(s) for s in sessions],
        total=total,
    )


@router.get("/stats", response_model=ConversationStatsResponse)
async def conversation_stats(
    current_user: CurrentUser,
    store: ConversationStoreDep,
) -> ConversationStatsResponse:
    """Totals across all of the user's conversations."""
    return ConversationStatsResponse(**await store.stats(current_user.id))


@router.get("/{session_id}", response_model=ConversationSessionResponse)
async def get_conversation(
    session_id: str,
    current_user: CurrentUser,
    store: ConversationStoreDep,
) -> ConversationSessionResponse:
    session = await _get_session_or_404(store, session_id, current_user)
    return _to_response(session)


# =============================================================================
# LIFECYCLE
# =============================================================================


@router.post("/{session_id}/resume", response_model=ConversationSessionResponse)
async def resume_conversation(
    session_id: str,
    current_user: CurrentUser,
    controllers: ControllersDep,
    store: ConversationStoreDep,
) -> ConversationSessionResponse:
    """Make a saved conversation the current one for its book/chapter."""
    session = await _get_session_or_404(store, session_id, current_user)
    controller = _controller_for(controllers, session)
    return _to_response(controller.resume_conversation(session))


@router.post("/{session_id}/messages", response_model=ConversationSessionResponse)
async def send_message(
    session_id: str,
    data: MessageSendRequest,
    current_user: CurrentUser,
    controllers: ControllersDep,
    store: ConversationStoreDep,
) -> ConversationSessionResponse:
    """
    Send a message and return the session including the assistant's reply.

    A conversation that is not current is resumed from the store first.
    With adaptive_style, the reply style is chosen from the conversation's
    engagement pattern unless a style is given explicitly.
    """
    stored = await _get_session_or_404(store, session_id, current_user)
    controller = _controller_for(controllers, stored)
    current = controller.current_session
    if current is None or current.session_id != session_id:
        controller.resume_conversation(stored)

    style = data.style
    if style is None and data.adaptive_style:
        style = conversation_analyzer.optimal_style(controller.current_session.messages)

    session = await controller.send_message(data.message, style=style)
    return _to_response(session)


@router.post("/{session_id}/end", status_code=status.HTTP_204_NO_CONTENT)
async def end_conversation(
    session_id: str,
    current_user: CurrentUser,
    controllers: ControllersDep,
    store: ConversationStoreDep,
) -> Response:
    """Stop working on a conversation. The saved record is kept."""
    session = await _get_session_or_404(store, session_id, current_user)
    controller = _controller_for(controllers, session)
    current = controller.current_session
    if current is not None and current.session_id == session_id:
        await controller.end_conversation()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    session_id: str,
    current_user: CurrentUser,
    controllers: ControllersDep,
    store: ConversationStoreDep,
) -> Response:
    """Delete a conversation and its draft."""
    session = await _get_session_or_404(store, session_id, current_user)
    if session.book_id is None:
        deleted = await store.delete_session(session_id, current_user.id)
    else:
        deleted = await _controller_for(controllers, session).delete_conversation(session_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# DRAFTS
# =============================================================================


@router.get("/{session_id}/draft", response_model=DraftResponse)
async def get_draft(
    session_id: str,
    current_user: CurrentUser,
    controllers: ControllersDep,
    store: ConversationStoreDep,
) -> DraftResponse:
    session = await _get_session_or_404(store, session_id, current_user)
    content = await _controller_for(controllers, session).get_draft(session_id)
    return DraftResponse(session_id=session_id, content=content)


@router.put("/{session_id}/draft", response_model=DraftResponse)
async def update_draft(
    session_id: str,
    data: DraftUpdateRequest,
    current_user: CurrentUser,
    controllers: ControllersDep,
    store: ConversationStoreDep,
) -> DraftResponse:
    """Save unsent input. Writes are debounced."""
    session = await _get_session_or_404(store, session_id, current_user)
    _controller_for(controllers, session).set_draft(data.content, session_id)
    return DraftResponse(session_id=session_id, content=data.content)


@router.delete("/{session_id}/draft", status_code=status.HTTP_204_NO_CONTENT)
async def clear_draft(
    session_id: str,
    current_user: CurrentUser,
    controllers: ControllersDep,
    store: ConversationStoreDep,
) -> Response:
    session = await _get_session_or_404(store, session_id, current_user)
    await _controller_for(controllers, session).clear_draft(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# ANALYTICS
# =============================================================================


@router.get("/{session_id}/insights", response_model=ConversationInsightsResponse)
async def conversation_insights(
    session_id: str,
    current_user: CurrentUser,
    controllers: ControllersDep,
    store: ConversationStoreDep,
) -> ConversationInsightsResponse:
    """Engagement signals and advisory follow-ups for one conversation."""
    session = await _get_session_or_404(store, session_id, current_user)
    if session.book_id is not None:
        session = _working_copy(_controller_for(controllers, session), session)

    history = await store.list_recent(
        current_user.id, limit=settings.conversation_history_limit, book_id=session.book_id
    )
    history = [s for s in history if s.session_id != session_id]

    insights = conversation_analyzer.conversation_insights(session, history)
    return ConversationInsightsResponse(
        session_id=session_id,
        insights=insights,
        pattern=conversation_analyzer.conversation_pattern(session.messages),
        optimal_style=conversation_analyzer.optimal_style(session.messages),
        continuation_suggestions=conversation_analyzer.continuation_suggestions(insights),
        smart_suggestions=conversation_analyzer.smart_suggestions(session.messages),
        is_healthy=conversation_analyzer.is_healthy_conversation(insights),
    )
