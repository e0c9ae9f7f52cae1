"""Pydantic schemas for conversation sessions and their context."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from lifestory.db.models import ChatRole, ConversationMedium, ConversationType
from lifestory.schemas.analytics import ConversationStyle
from lifestory.schemas.base import BaseSchema, FrozenSchema


# =============================================================================
# CONTEXT
# =============================================================================


class UserProfile(FrozenSchema):
    """Who the user is, as far as the interviewer needs to know."""

    id: UUID
    name: str | None = None
    email: str | None = None


class BookProfileSnapshot(FrozenSchema):
    """Biographical profile of the book's subject."""

    book_id: UUID
    title: str | None = None
    full_name: str | None = None
    birth_year: int | None = None
    birthplace: str | None = None
    writing_style_preference: str | None = None
    life_themes: tuple[str, ...] = ()


class ChapterSnapshot(FrozenSchema):
    """A chapter as seen by the interviewer. Content is truncated."""

    id: UUID
    title: str
    content: str = ""
    summary: str | None = None
    updated_at: datetime | None = None


class ConversationContext(FrozenSchema):
    """
    Context bundle injected into every AI turn.

    Rebuilt wholesale when it expires from the cache; never edited in place.
    `errors` lists the pieces that could not be loaded (the build still
    succeeds with whatever was available).
    """

    user_profile: UserProfile
    book_profile: BookProfileSnapshot
    current_chapter: ChapterSnapshot | None = None
    recent_chapters: tuple[ChapterSnapshot, ...] = ()
    life_themes: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()


# =============================================================================
# SESSION
# =============================================================================


class ConversationMessage(FrozenSchema):
    """One message in a conversation. Immutable once appended."""

    role: ChatRole
    content: str = Field(..., min_length=1)
    timestamp: datetime


class ConversationSession(FrozenSchema):
    """
    Working copy of a conversation.

    The persisted chat_histories row is the source of truth; this value is
    replaced after every turn.
    """

    session_id: str
    user_id: UUID
    book_id: UUID | None = None
    chapter_id: UUID | None = None
    conversation_type: ConversationType = ConversationType.INTERVIEW
    conversation_medium: ConversationMedium = ConversationMedium.TEXT
    messages: tuple[ConversationMessage, ...] = ()
    goals: tuple[str, ...] = ()
    context: ConversationContext | None = None
    is_self_conversation: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def with_message(self, message: ConversationMessage) -> "ConversationSession":
        return self.model_copy(update={"messages": (*self.messages, message)})

    @property
    def last_message(self) -> ConversationMessage | None:
        return self.messages[-1] if self.messages else None

    @property
    def user_messages(self) -> list[ConversationMessage]:
        return [m for m in self.messages if m.role == ChatRole.USER]


# =============================================================================
# REQUESTS
# =============================================================================


class ConversationStartRequest(BaseModel):
    """Request to start a new AI conversation."""

    book_id: UUID
    chapter_id: UUID | None = None
    conversation_type: ConversationType = ConversationType.INTERVIEW
    conversation_medium: ConversationMedium = ConversationMedium.TEXT


class SelfConversationRequest(BaseModel):
    """Request to record a self conversation (no AI turn)."""

    book_id: UUID
    chapter_id: UUID | None = None
    content: str = Field(..., min_length=1, max_length=10000)


class MessageSendRequest(BaseModel):
    """Request to send a message in an active conversation."""

    message: str = Field(..., max_length=10000)
    style: ConversationStyle | None = None
    adaptive_style: bool = False


class DraftUpdateRequest(BaseModel):
    """Request to save unsent input."""

    content: str = Field(..., max_length=10000)


class ContextInvalidateRequest(BaseModel):
    """Request to drop a cached context."""

    book_id: UUID
    chapter_id: UUID | None = None


# =============================================================================
# RESPONSES
# =============================================================================


class ConversationSessionResponse(BaseSchema):
    """Conversation session response."""

    session_id: str
    book_id: UUID | None = None
    chapter_id: UUID | None = None
    conversation_type: ConversationType
    conversation_medium: ConversationMedium
    messages: list[ConversationMessage]
    goals: list[str]
    is_self_conversation: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ConversationListResponse(BaseModel):
    """Most recent conversations, newest first."""

    conversations: list[ConversationSessionResponse]
    total: int


class ConversationStatsResponse(BaseModel):
    """Aggregate counts over a user's conversations."""

    total_conversations: int
    text_conversations: int
    voice_conversations: int
    total_messages: int


class DraftResponse(BaseModel):
    """Saved draft for a session."""

    session_id: str
    content: str


class ContextResponse(BaseModel):
    """Conversation context plus suggested openers."""

    context: ConversationContext
    seeds: list[str]
