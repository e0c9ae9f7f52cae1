"""Pydantic schemas for conversation analytics."""

from enum import Enum as PyEnum

from pydantic import BaseModel

from lifestory.schemas.base import FrozenSchema


class EmotionalTone(str, PyEnum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class ConversationStyle(str, PyEnum):
    """How the interviewer should pitch its next turn."""

    SUPPORTIVE = "supportive"
    DEEP_DIVE = "deep_dive"
    CONCISE = "concise"
    CONVERSATIONAL = "conversational"


class SuggestionCategory(str, PyEnum):
    SENSORY_DETAILS = "sensory_details"
    RELATIONSHIP_FOCUS = "relationship_focus"
    EMOTIONAL_DEPTH = "emotional_depth"
    STORY_GAPS = "story_gaps"


class ConversationInsights(FrozenSchema):
    """Engagement signals derived from a session's messages."""

    average_response_length: int
    emotional_tone: EmotionalTone
    topics_discussed: tuple[str, ...]
    conversation_health: int
    suggested_next_topics: tuple[str, ...] = ()


class ConversationPattern(FrozenSchema):
    """Trend in the user's recent answer lengths."""

    is_losing_interest: bool
    is_getting_engaged: bool
    needs_encouragement: bool
    can_go_deeper: bool


class SmartSuggestion(FrozenSchema):
    """A follow-up prompt the user could send next."""

    category: SuggestionCategory
    prompt: str
    priority: int


class ConversationInsightsResponse(BaseModel):
    """Everything the read side knows about a session."""

    session_id: str
    insights: ConversationInsights | None
    pattern: ConversationPattern | None
    optimal_style: ConversationStyle
    continuation_suggestions: list[str]
    smart_suggestions: list[SmartSuggestion]
    is_healthy: bool
