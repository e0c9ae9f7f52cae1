"""API routes package."""

from lifestory.api.routes import (
    context,
    conversations,
    questions,
    voice,
)

__all__ = [
    "context",
    "conversations",
    "questions",
    "voice",
]
