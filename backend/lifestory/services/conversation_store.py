"""
Conversation store.

Repository over chat_histories and conversation_drafts. Every query is
scoped by (session_id, user_id) or user_id. Message lists are written in
full on each turn.
"""

import logging
import time
from collections.abc import Sequence
from typing import Any
from uuid import UUID, uuid4

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifestory.db.models import (
    ChatHistory,
    ConversationDraft,
    ConversationMedium,
    ConversationType,
    utc_now,
)
from lifestory.errors import ConversationError, ErrorType
from lifestory.schemas.conversation import (
    ConversationContext,
    ConversationMessage,
    ConversationSession,
)

logger = logging.getLogger(__name__)


def new_session_id(prefix: str) -> str:
    """Globally unique session id, e.g. voice_1718000000000_3f9a1c2b7."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


# =============================================================================
# RECORD <-> SESSION
# =============================================================================


def parse_messages(raw: Any) -> tuple[ConversationMessage, ...]:
    """Rebuild messages from stored JSON, dropping entries that are malformed."""
    if not isinstance(raw, list):
        return ()
    messages = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        role, content, timestamp = entry.get("role"), entry.get("content"), entry.get("timestamp")
        if not (isinstance(role, str) and isinstance(content, str) and isinstance(timestamp, str)):
            continue
        try:
            messages.append(ConversationMessage(role=role, content=content, timestamp=timestamp))
        except ValidationError:
            continue
    return tuple(messages)


def parse_goals(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    return tuple(goal for goal in raw if isinstance(goal, str))


def parse_context(raw: Any) -> ConversationContext | None:
    if not raw:
        return None
    try:
        return ConversationContext.model_validate(raw)
    except ValidationError:
        logger.debug("Ignoring unreadable context snapshot")
        return None


def messages_to_json(messages: Sequence[ConversationMessage]) -> list[dict]:
    return [m.model_dump(mode="json") for m in messages]


def session_from_record(record: ChatHistory) -> ConversationSession:
    try:
        conversation_type = ConversationType(record.conversation_type)
    except ValueError:
        conversation_type = ConversationType.REFLECTION if record.is_self_conversation else ConversationType.INTERVIEW
    try:
        medium = ConversationMedium(record.conversation_medium)
    except ValueError:
        medium = ConversationMedium.TEXT

    return ConversationSession(
        session_id=record.session_id,
        user_id=record.user_id,
        book_id=record.book_id,
        chapter_id=record.chapter_id,
        conversation_type=conversation_type,
        conversation_medium=medium,
        messages=parse_messages(record.messages),
        goals=parse_goals(record.conversation_goals),
        context=parse_context(record.context_snapshot),
        is_self_conversation=bool(record.is_self_conversation),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


# =============================================================================
# STORE
# =============================================================================


class ConversationStore:
    """Persistence for conversation records and drafts."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_session(self, session: ConversationSession) -> ConversationSession:
        record = ChatHistory(
            user_id=session.user_id,
            book_id=session.book_id,
            chapter_id=session.chapter_id,
            session_id=session.session_id,
            conversation_type=session.conversation_type.value,
            conversation_medium=session.conversation_medium.value,
            messages=messages_to_json(session.messages),
            context_snapshot=session.context.model_dump(mode="json") if session.context else None,
            conversation_goals=list(session.goals),
            is_self_conversation=session.is_self_conversation,
        )
        try:
            async with self._session_factory() as db:
                db.add(record)
                await db.commit()
        except SQLAlchemyError as e:
            logger.exception("Failed to create conversation record %s", session.session_id)
            raise ConversationError.with_correlation_id(
                ErrorType.PERSISTENCE, "Failed to create conversation session."
            ) from e
        return session.model_copy(update={"created_at": record.created_at, "updated_at": record.updated_at})

    async def save_messages(
        self, session_id: str, user_id: UUID, messages: Sequence[ConversationMessage]
    ) -> bool:
        """Overwrite the stored message list. Returns False if no such record."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(ChatHistory)
                    .where(ChatHistory.session_id == session_id, ChatHistory.user_id == user_id)
                    .values(messages=messages_to_json(messages), updated_at=utc_now())
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.exception("Failed to save messages for session %s", session_id)
            raise ConversationError.with_correlation_id(ErrorType.PERSISTENCE) from e
        return result.rowcount > 0

    async def get_session(self, session_id: str, user_id: UUID) -> ConversationSession | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ChatHistory).where(
                    ChatHistory.session_id == session_id, ChatHistory.user_id == user_id
                )
            )
            record = result.scalar_one_or_none()
        return session_from_record(record) if record else None

    async def list_recent(
        self,
        user_id: UUID,
        *,
        limit: int,
        book_id: UUID | None = None,
    ) -> list[ConversationSession]:
        """Newest-first sessions for the user."""
        query = (
            select(ChatHistory)
            .where(ChatHistory.user_id == user_id)
            .order_by(ChatHistory.created_at.desc())
            .limit(limit)
        )
        if book_id is not None:
            query = query.where(ChatHistory.book_id == book_id)
        async with self._session_factory() as db:
            result = await db.execute(query)
            records = result.scalars().all()
        return [session_from_record(r) for r in records]

    async def count(self, user_id: UUID, *, book_id: UUID | None = None) -> int:
        query = select(func.count(ChatHistory.id)).where(ChatHistory.user_id == user_id)
        if book_id is not None:
            query = query.where(ChatHistory.book_id == book_id)
        async with self._session_factory() as db:
            return (await db.execute(query)).scalar() or 0

    async def delete_session(self, session_id: str, user_id: UUID) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                delete(ChatHistory).where(
                    ChatHistory.session_id == session_id, ChatHistory.user_id == user_id
                )
            )
            await db.execute(
                delete(ConversationDraft).where(
                    ConversationDraft.session_id == session_id, ConversationDraft.user_id == user_id
                )
            )
            await db.commit()
        return result.rowcount > 0

    async def stats(self, user_id: UUID) -> dict[str, int]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ChatHistory.conversation_medium, ChatHistory.messages).where(
                    ChatHistory.user_id == user_id
                )
            )
            rows = result.all()
        return {
            "total_conversations": len(rows),
            "text_conversations": sum(1 for medium, _ in rows if medium == ConversationMedium.TEXT.value),
            "voice_conversations": sum(1 for medium, _ in rows if medium == ConversationMedium.VOICE.value),
            "total_messages": sum(len(messages) for _, messages in rows if isinstance(messages, list)),
        }

    # =========================================================================
    # DRAFTS
    # =========================================================================

    async def get_draft(self, session_id: str, user_id: UUID) -> str | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ConversationDraft.content).where(
                    ConversationDraft.session_id == session_id, ConversationDraft.user_id == user_id
                )
            )
            return result.scalar_one_or_none()

    async def save_draft(self, session_id: str, user_id: UUID, content: str) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                update(ConversationDraft)
                .where(ConversationDraft.session_id == session_id, ConversationDraft.user_id == user_id)
                .values(content=content, updated_at=utc_now())
            )
            if result.rowcount == 0:
                db.add(ConversationDraft(session_id=session_id, user_id=user_id, content=content))
            try:
                await db.commit()
            except IntegrityError:
                # Lost an insert race; the other writer's row is updated instead
                await db.rollback()
                await db.execute(
                    update(ConversationDraft)
                    .where(ConversationDraft.session_id == session_id, ConversationDraft.user_id == user_id)
                    .values(content=content, updated_at=utc_now())
                )
                await db.commit()

    async def clear_draft(self, session_id: str, user_id: UUID) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                delete(ConversationDraft).where(
                    ConversationDraft.session_id == session_id, ConversationDraft.user_id == user_id
                )
            )
            await db.commit()
        return result.rowcount > 0
