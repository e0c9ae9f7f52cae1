"""
Conversation context builder.

Reads the book editor's tables (user, book profile, chapters) and assembles
the ConversationContext injected into every AI turn. The tables are read
only; a book without a profile gets an in-memory default.
"""

import logging
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifestory.config import get_settings
from lifestory.db.models import Book, BookProfile, Chapter, ConversationType, User
from lifestory.errors import ConversationError, ErrorType
from lifestory.schemas.conversation import (
    BookProfileSnapshot,
    ChapterSnapshot,
    ConversationContext,
    UserProfile,
)

logger = logging.getLogger(__name__)
settings = get_settings()

DEFAULT_LIFE_THEMES = ("personal growth", "life experiences", "memories")
DEFAULT_WRITING_STYLE = "conversational"
MAX_SEEDS = 4


class ContextBuilder(Protocol):
    """Anything that can assemble a context for (user, book, chapter)."""

    async def build(
        self, user_id: UUID, book_id: UUID, chapter_id: UUID | None = None
    ) -> ConversationContext: ...


def _truncate(text: str | None, limit: int) -> str:
    if not text:
        return ""
    return text[:limit]


def _chapter_snapshot(chapter: Chapter, max_chars: int) -> ChapterSnapshot:
    return ChapterSnapshot(
        id=chapter.id,
        title=chapter.title,
        content=_truncate(chapter.content, max_chars),
        summary=chapter.summary,
        updated_at=chapter.updated_at,
    )


class DatabaseContextBuilder:
    """Builds contexts from the relational store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        recent_chapter_limit: int = settings.context_recent_chapter_limit,
        chapter_max_chars: int = settings.context_chapter_max_chars,
    ) -> None:
        self._session_factory = session_factory
        self.recent_chapter_limit = recent_chapter_limit
        self.chapter_max_chars = chapter_max_chars

    async def build(
        self, user_id: UUID, book_id: UUID, chapter_id: UUID | None = None
    ) -> ConversationContext:
        errors: list[str] = []

        async with self._session_factory() as db:
            result = await db.execute(
                select(Book).where(Book.id == book_id, Book.user_id == user_id)
            )
            book = result.scalar_one_or_none()
            if book is None:
                raise ConversationError(ErrorType.NOT_FOUND, "Book not found")

            user = await db.get(User, user_id)
            if user is None:
                errors.append("User profile not found")
                user_profile = UserProfile(id=user_id)
            else:
                user_profile = UserProfile(id=user.id, name=user.name, email=user.email)

            result = await db.execute(select(BookProfile).where(BookProfile.book_id == book_id))
            profile = result.scalar_one_or_none()
            book_profile = self._book_profile(book, profile, user_profile)

            current_chapter = None
            if chapter_id is not None:
                result = await db.execute(
                    select(Chapter).where(
                        Chapter.id == chapter_id,
                        Chapter.book_id == book_id,
                        Chapter.user_id == user_id,
                    )
                )
                chapter = result.scalar_one_or_none()
                if chapter is None:
                    errors.append("Current chapter not found")
                else:
                    current_chapter = _chapter_snapshot(chapter, self.chapter_max_chars)

            query = (
                select(Chapter)
                .where(Chapter.book_id == book_id, Chapter.user_id == user_id)
                .order_by(Chapter.updated_at.desc())
                .limit(self.recent_chapter_limit)
            )
            if chapter_id is not None:
                query = query.where(Chapter.id != chapter_id)
            result = await db.execute(query)
            recent = tuple(
                _chapter_snapshot(c, self.chapter_max_chars) for c in result.scalars().all()
            )

        if errors:
            logger.warning("Context for book %s built with gaps: %s", book_id, errors)

        return ConversationContext(
            user_profile=user_profile,
            book_profile=book_profile,
            current_chapter=current_chapter,
            recent_chapters=recent,
            life_themes=book_profile.life_themes,
            errors=tuple(errors),
        )

    def _book_profile(
        self, book: Book, profile: BookProfile | None, user_profile: UserProfile
    ) -> BookProfileSnapshot:
        if profile is None:
            return BookProfileSnapshot(
                book_id=book.id,
                title=book.title,
                full_name=user_profile.name,
                writing_style_preference=DEFAULT_WRITING_STYLE,
                life_themes=DEFAULT_LIFE_THEMES,
            )
        themes = tuple(dict.fromkeys(t for t in (profile.life_themes or []) if isinstance(t, str) and t))
        return BookProfileSnapshot(
            book_id=book.id,
            title=book.title,
            full_name=profile.full_name or user_profile.name,
            birth_year=profile.birth_year,
            birthplace=profile.birthplace,
            writing_style_preference=profile.writing_style_preference or DEFAULT_WRITING_STYLE,
            life_themes=themes or DEFAULT_LIFE_THEMES,
        )


def generate_conversation_seeds(
    context: ConversationContext, conversation_type: ConversationType
) -> list[str]:
    """Suggested opening prompts for a conversation type, personalised from the context."""
    seeds: list[str] = []
    profile = context.book_profile

    if conversation_type == ConversationType.INTERVIEW:
        era = f"growing up in the {(profile.birth_year // 10) * 10 + 10}s" if profile.birth_year else "younger"
        seeds.extend([
            f"Tell me about a typical day in your life when you were {era}.",
            "Describe a moment when you felt most proud of yourself.",
        ])
        if context.current_chapter:
            seeds.append(f"Let's talk about {context.current_chapter.title}. What memories come to mind?")
        if context.life_themes:
            seeds.append(
                f"I see that {context.life_themes[0]} is important to you. Can you share a story about that?"
            )
        seeds.append("Who was the most influential person in your early life?")
    elif conversation_type == ConversationType.REFLECTION:
        seeds.extend([
            "Looking back, what would you tell your younger self?",
            "What values have guided you throughout your life?",
            "How have your perspectives changed over the years?",
        ])
        if context.recent_chapters:
            seeds.append(
                f"Now that you've written about {context.recent_chapters[0].title}, what does it mean to you today?"
            )
    elif conversation_type == ConversationType.BRAINSTORMING:
        seeds.extend([
            "What stories from your life do you think would surprise people?",
            "If you had to choose three words to describe your life journey, what would they be?",
            "What chapter of your life story feels most important to preserve?",
        ])
        if context.life_themes:
            seeds.append(f"Which moments best show {context.life_themes[0]} in your life?")

    return seeds[:MAX_SEEDS]
