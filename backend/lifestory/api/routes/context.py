"""Conversation context routes."""

from uuid import UUID

from fastapi import APIRouter

from lifestory.api.deps import ContextCacheDep, CurrentUser, DbSession, require_book
from lifestory.db.models import ConversationType
from lifestory.schemas.conversation import ContextInvalidateRequest, ContextResponse
from lifestory.services.context_builder import generate_conversation_seeds

router = APIRouter(prefix="/context", tags=["context"])


@router.get("/", response_model=ContextResponse)
async def get_context(
    book_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    context_cache: ContextCacheDep,
    chapter_id: UUID | None = None,
    conversation_type: ConversationType = ConversationType.INTERVIEW,
    refresh: bool = False,
) -> ContextResponse:
    """
    Context injected into AI turns for a book (and optionally a chapter).

    Served from the cache while it is fresh; `refresh` forces a rebuild.
    """
    await require_book(db, book_id, current_user.id)
    context = await context_cache.get_context(current_user.id, book_id, chapter_id, refresh=refresh)
    return ContextResponse(
        context=context,
        seeds=generate_conversation_seeds(context, conversation_type),
    )


@router.post("/invalidate")
async def invalidate_context(
    data: ContextInvalidateRequest,
    current_user: CurrentUser,
    context_cache: ContextCacheDep,
) -> dict[str, bool]:
    """Drop the cached context after the book or a chapter changed."""
    invalidated = context_cache.invalidate(current_user.id, data.book_id, data.chapter_id)
    return {"invalidated": invalidated}
