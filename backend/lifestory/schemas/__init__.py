"""Pydantic schemas for API request/response validation."""

from lifestory.schemas.analytics import (
    ConversationInsights,
    ConversationInsightsResponse,
    ConversationPattern,
    ConversationStyle,
    EmotionalTone,
    SmartSuggestion,
)
from lifestory.schemas.conversation import (
    ContextResponse,
    ConversationContext,
    ConversationListResponse,
    ConversationMessage,
    ConversationSession,
    ConversationSessionResponse,
    ConversationStartRequest,
    ConversationStatsResponse,
    DraftResponse,
    DraftUpdateRequest,
    MessageSendRequest,
    SelfConversationRequest,
)
from lifestory.schemas.questions import (
    DuplicateCheckRequest,
    DuplicateCheckResponse,
    QuestionAnalysis,
    QuestionRatingRequest,
    QuestionStatsResponse,
    TrackedQuestionRead,
)

__all__ = [
    # Analytics
    "ConversationInsights",
    "ConversationInsightsResponse",
    "ConversationPattern",
    "ConversationStyle",
    "EmotionalTone",
    "SmartSuggestion",
    # Conversations
    "ContextResponse",
    "ConversationContext",
    "ConversationListResponse",
    "ConversationMessage",
    "ConversationSession",
    "ConversationSessionResponse",
    "ConversationStartRequest",
    "ConversationStatsResponse",
    "DraftResponse",
    "DraftUpdateRequest",
    "MessageSendRequest",
    "SelfConversationRequest",
    # Questions
    "DuplicateCheckRequest",
    "DuplicateCheckResponse",
    "QuestionAnalysis",
    "QuestionRatingRequest",
    "QuestionStatsResponse",
    "TrackedQuestionRead",
]
