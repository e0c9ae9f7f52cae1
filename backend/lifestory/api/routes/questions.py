"""Tracked interview question routes."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Response, status

from lifestory.api.deps import CurrentUser, DbSession, QuestionLedgerDep, require_book
from lifestory.config import get_settings
from lifestory.db.models import ConversationType
from lifestory.schemas.questions import (
    DuplicateCheckRequest,
    DuplicateCheckResponse,
    QuestionHistoryResponse,
    QuestionRatingRequest,
    QuestionStatsResponse,
    TrackedQuestionRead,
)
from lifestory.services.question_ledger import ScopeKey

router = APIRouter(prefix="/questions", tags=["questions"])
settings = get_settings()


@router.get("/", response_model=QuestionHistoryResponse)
async def list_questions(
    book_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    ledger: QuestionLedgerDep,
    conversation_type: ConversationType | None = None,
    limit: int = Query(default=settings.question_history_limit, ge=1, le=200),
) -> QuestionHistoryResponse:
    """Questions already asked about a book, newest first."""
    await require_book(db, book_id, current_user.id)
    questions = await ledger.history(
        current_user.id, book_id, conversation_type=conversation_type, limit=limit
    )
    return QuestionHistoryResponse(
        questions=[TrackedQuestionRead.model_validate(q) for q in questions]
    )


@router.get("/stats", response_model=QuestionStatsResponse)
async def question_stats(
    book_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    ledger: QuestionLedgerDep,
) -> QuestionStatsResponse:
    await require_book(db, book_id, current_user.id)
    return await ledger.stats(current_user.id, book_id)


@router.post("/check-duplicate", response_model=DuplicateCheckResponse)
async def check_duplicate(
    data: DuplicateCheckRequest,
    current_user: CurrentUser,
    db: DbSession,
    ledger: QuestionLedgerDep,
) -> DuplicateCheckResponse:
    """Would this question repeat one already asked for the book?"""
    await require_book(db, data.book_id, current_user.id)
    scope = ScopeKey(current_user.id, data.book_id)
    report = await ledger.check_duplicate(scope, data.conversation_type, data.question_text)
    return DuplicateCheckResponse(
        is_duplicate=report.is_duplicate,
        confidence=report.confidence,
        similar_questions=[TrackedQuestionRead.model_validate(q) for q in report.similar[:5]],
        analysis=ledger.analyze(data.question_text),
    )


@router.post("/{question_id}/rating", status_code=status.HTTP_204_NO_CONTENT)
async def rate_question(
    question_id: UUID,
    data: QuestionRatingRequest,
    current_user: CurrentUser,
    ledger: QuestionLedgerDep,
) -> Response:
    """Record how good the user's answer to a question was (1-5)."""
    updated = await ledger.rate(question_id, data.rating, user_id=current_user.id)
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Question not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
