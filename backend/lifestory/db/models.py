"""
SQLAlchemy 2.0 Models for LifeStory.

Uses modern declarative syntax with Mapped[] type annotations.
All models use UUID primary keys and proper relationship definitions.

Books, book profiles and chapters are owned by the book editor and are
only read here (to build conversation context). Conversation records,
drafts and tracked questions are owned by the conversation engine.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lifestory.db.base import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================


class ConversationType(str, PyEnum):
    """Interviewing strategy for a conversation."""

    INTERVIEW = "interview"
    REFLECTION = "reflection"
    BRAINSTORMING = "brainstorming"


class ConversationMedium(str, PyEnum):
    """How the conversation is carried out."""

    TEXT = "text"
    VOICE = "voice"


class ChatRole(str, PyEnum):
    """Role in a conversation."""

    USER = "user"
    ASSISTANT = "assistant"


# =============================================================================
# MODELS
# =============================================================================


class User(Base):
    """Core user account. Referenced by every user-scoped row."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    email: Mapped[Optional[str]] = mapped_column(
        String(320), unique=True, index=True, nullable=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )

    # Relationships
    books: Mapped[list["Book"]] = relationship(
        "Book", back_populates="user", cascade="all, delete-orphan"
    )
    chat_histories: Mapped[list["ChatHistory"]] = relationship(
        "ChatHistory", back_populates="user", cascade="all, delete-orphan"
    )


class Book(Base):
    """An autobiography being written by a user."""

    __tablename__ = "books"
    __table_args__ = (Index("idx_books_user_id", "user_id"),)

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="books")
    profile: Mapped[Optional["BookProfile"]] = relationship(
        "BookProfile", back_populates="book", uselist=False, cascade="all, delete-orphan"
    )
    chapters: Mapped[list["Chapter"]] = relationship(
        "Chapter", back_populates="book", cascade="all, delete-orphan"
    )


class BookProfile(Base):
    """
    Biographical profile behind a book.

    Feeds the interviewer's personalisation: who the subject is, the tone
    they prefer, and the themes the book keeps returning to.
    """

    __tablename__ = "book_profiles"

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    book_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("books.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    birth_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    birthplace: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    writing_style_preference: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    life_themes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    key_people: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )

    # Relationships
    book: Mapped["Book"] = relationship("Book", back_populates="profile")


class Chapter(Base):
    """A chapter of a book."""

    __tablename__ = "chapters"
    __table_args__ = (
        Index("idx_chapters_book_id", "book_id"),
        Index("idx_chapters_user_updated", "user_id", "updated_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    book_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("books.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )

    # Relationships
    book: Mapped["Book"] = relationship("Book", back_populates="chapters")


class ChatHistory(Base):
    """
    Persisted conversation record (text or voice).

    The source of truth for a session. `messages` is rewritten in full on
    every turn; there are no per-message rows. Reads and writes are always
    scoped by (session_id, user_id).
    """

    __tablename__ = "chat_histories"
    __table_args__ = (
        Index("idx_chat_histories_user_created", "user_id", "created_at"),
        Index("idx_chat_histories_book_id", "book_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    book_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(), ForeignKey("books.id", ondelete="CASCADE"), nullable=True
    )
    chapter_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(), ForeignKey("chapters.id", ondelete="SET NULL"), nullable=True
    )
    session_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    conversation_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConversationType.INTERVIEW.value
    )
    conversation_medium: Mapped[str] = mapped_column(
        String(10), nullable=False, default=ConversationMedium.TEXT.value
    )
    messages: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    context_snapshot: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    conversation_goals: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    is_self_conversation: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="chat_histories")


class ConversationDraft(Base):
    """Unsent input for a session, autosaved after a debounce window."""

    __tablename__ = "conversation_drafts"
    __table_args__ = (
        UniqueConstraint("session_id", "user_id", name="unique_session_draft"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )


class ConversationQuestion(Base):
    """
    A question the interviewer has asked, fingerprinted for deduplication.

    Append-only; response_quality is the only column updated after insert.
    The unique constraint on (user, book, type, hash) backs up the
    in-process duplicate check under concurrent recording.
    """

    __tablename__ = "conversation_questions"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "book_id", "conversation_type", "question_hash",
            name="unique_scope_question_hash",
        ),
        CheckConstraint(
            "response_quality IS NULL OR (response_quality >= 1 AND response_quality <= 5)",
            name="check_response_quality_range",
        ),
        Index("idx_conversation_questions_scope", "user_id", "book_id", "conversation_type"),
        Index("idx_conversation_questions_asked_at", "asked_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    book_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("books.id", ondelete="CASCADE"), nullable=False
    )
    chapter_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(), ForeignKey("chapters.id", ondelete="SET NULL"), nullable=True
    )
    conversation_session_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    conversation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    question_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    semantic_keywords: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    response_quality: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    asked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
