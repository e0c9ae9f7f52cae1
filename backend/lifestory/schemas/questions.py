"""Pydantic schemas for tracked interview questions."""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import UUID

from pydantic import BaseModel, Field

from lifestory.db.models import ConversationType
from lifestory.schemas.base import BaseSchema, FrozenSchema, IDMixin


class QuestionKind(str, PyEnum):
    DIRECT = "direct"
    FOLLOWUP = "followup"
    IMPLIED = "implied"


class QuestionSentiment(str, PyEnum):
    POSITIVE = "positive"
    PROBING = "probing"
    NEUTRAL = "neutral"


class QuestionAnalysis(FrozenSchema):
    """Fingerprint and classification of a single question."""

    question_text: str
    question_hash: str
    keywords: tuple[str, ...]
    question_kind: QuestionKind
    sentiment: QuestionSentiment


# Request schemas
class QuestionRatingRequest(BaseModel):
    """Rate how useful a question turned out to be (1-5)."""

    rating: int


class DuplicateCheckRequest(BaseModel):
    """Check a candidate question against the ledger."""

    book_id: UUID
    conversation_type: ConversationType = ConversationType.INTERVIEW
    question_text: str = Field(..., min_length=1, max_length=2000)


# Response schemas
class TrackedQuestionRead(BaseSchema, IDMixin):
    """Tracked question response."""

    book_id: UUID
    chapter_id: UUID | None = None
    conversation_session_id: str | None = None
    conversation_type: ConversationType
    question_text: str
    question_hash: str
    semantic_keywords: list[str]
    response_quality: int | None = None
    asked_at: datetime


class DuplicateCheckResponse(BaseModel):
    """Result of a duplicate check."""

    is_duplicate: bool
    confidence: float
    similar_questions: list[TrackedQuestionRead]
    analysis: QuestionAnalysis


class QuestionStatsResponse(BaseModel):
    """Aggregates over a user's questions for one book."""

    total_questions: int
    unique_questions: int
    counts_by_type: dict[str, int]
    average_quality: float | None = None
    rated_questions: int = 0


class QuestionHistoryResponse(BaseModel):
    questions: list[TrackedQuestionRead]
