"""Realtime voice conversation socket."""

import logging
from uuid import UUID

from fastapi import APIRouter, WebSocket, status
from sqlalchemy import select

from lifestory.api.deps import get_voice_relay, websocket_user_id
from lifestory.db.models import Book, ConversationType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/voice", tags=["voice"])


@router.websocket("/ws")
async def voice_socket(
    websocket: WebSocket,
    book_id: UUID,
    chapter_id: UUID | None = None,
    conversation_type: ConversationType = ConversationType.INTERVIEW,
) -> None:
    """
    Bridge the client to the realtime speech service.

    Query parameters: book_id, chapter_id, conversation_type and token.
    The first frame sent back is `connection_ready` with the new session id.
    """
    user_id = websocket_user_id(websocket)
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    async with websocket.app.state.session_factory() as db:
        result = await db.execute(select(Book.id).where(Book.id == book_id, Book.user_id == user_id))
        if result.scalar_one_or_none() is None:
            logger.info("Voice socket rejected: book %s not found for user %s", book_id, user_id)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

    await websocket.accept()
    await get_voice_relay(websocket).handle(
        websocket,
        user_id=user_id,
        book_id=book_id,
        chapter_id=chapter_id,
        conversation_type=conversation_type,
    )
