"""Conversation engine services."""

from lifestory.services.analytics import conversation_analyzer
from lifestory.services.completion import AnthropicCompletionService
from lifestory.services.context_builder import DatabaseContextBuilder, generate_conversation_seeds
from lifestory.services.context_cache import ContextCache
from lifestory.services.conversation_store import ConversationStore
from lifestory.services.question_ledger import QuestionLedger
from lifestory.services.session_controller import SessionController, SessionControllerRegistry
from lifestory.services.voice_relay import ConnectionManager, RealtimeVoiceRelay

__all__ = [
    "conversation_analyzer",
    "AnthropicCompletionService",
    "DatabaseContextBuilder",
    "generate_conversation_seeds",
    "ContextCache",
    "ConversationStore",
    "QuestionLedger",
    "SessionController",
    "SessionControllerRegistry",
    "ConnectionManager",
    "RealtimeVoiceRelay",
]
