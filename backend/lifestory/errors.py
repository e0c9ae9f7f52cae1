"""
Conversation error taxonomy.

Every user-facing failure carries a short title and description so the client
can offer a retry or point the user to support. Raw exception text never
reaches the user outside development (see config.sanitize_error).
"""

from enum import Enum as PyEnum
from uuid import uuid4

from fastapi import status


class ErrorType(str, PyEnum):
    """Categories of conversation failures."""

    NETWORK = "network"
    VALIDATION = "validation"
    AI_SERVICE = "ai_service"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    PERSISTENCE = "persistence"
    BUSY = "busy"
    NOT_FOUND = "not_found"


# (title, description, recoverable)
ERROR_MESSAGES: dict[ErrorType, tuple[str, str, bool]] = {
    ErrorType.NETWORK: (
        "Connection Error",
        "Unable to connect to the AI service. Please check your internet connection.",
        True,
    ),
    ErrorType.VALIDATION: (
        "Invalid Input",
        "Please check your input and try again.",
        False,
    ),
    ErrorType.AI_SERVICE: (
        "AI Service Error",
        "The AI service is temporarily unavailable. Please try again in a moment.",
        True,
    ),
    ErrorType.PERMISSION: (
        "Permission Denied",
        "You do not have permission to perform this action.",
        False,
    ),
    ErrorType.TIMEOUT: (
        "Request Timeout",
        "The request took too long to complete. Please try again.",
        True,
    ),
    ErrorType.CONNECTION: (
        "Voice Connection Error",
        "The voice connection could not be established. Please try again.",
        True,
    ),
    ErrorType.PERSISTENCE: (
        "Save Failed",
        "Your conversation could not be saved. Your messages are kept and will be saved on the next turn.",
        True,
    ),
    ErrorType.BUSY: (
        "Please Wait",
        "A previous request for this conversation is still in progress.",
        True,
    ),
    ErrorType.NOT_FOUND: (
        "Conversation Not Found",
        "The conversation you requested does not exist.",
        False,
    ),
}

HTTP_STATUS_BY_TYPE: dict[ErrorType, int] = {
    ErrorType.NETWORK: status.HTTP_502_BAD_GATEWAY,
    ErrorType.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorType.AI_SERVICE: status.HTTP_502_BAD_GATEWAY,
    ErrorType.PERMISSION: status.HTTP_403_FORBIDDEN,
    ErrorType.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorType.CONNECTION: status.HTTP_502_BAD_GATEWAY,
    ErrorType.PERSISTENCE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorType.BUSY: status.HTTP_409_CONFLICT,
    ErrorType.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


class ConversationError(Exception):
    """A failure that is reported to the user with a title and description."""

    def __init__(
        self,
        error_type: ErrorType,
        message: str | None = None,
        *,
        title: str | None = None,
        recoverable: bool | None = None,
        correlation_id: str | None = None,
    ) -> None:
        default_title, default_description, default_recoverable = ERROR_MESSAGES[error_type]
        self.error_type = error_type
        self.title = title or default_title
        self.description = message or default_description
        self.recoverable = default_recoverable if recoverable is None else recoverable
        self.correlation_id = correlation_id
        super().__init__(self.description)

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_TYPE[self.error_type]

    def to_dict(self) -> dict:
        return {
            "type": self.error_type.value,
            "title": self.title,
            "description": self.description,
            "recoverable": self.recoverable,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def with_correlation_id(cls, error_type: ErrorType, message: str | None = None) -> "ConversationError":
        """Build an error tagged with a fresh id the user can quote to support."""
        correlation_id = uuid4().hex[:12]
        return cls(error_type, message, correlation_id=correlation_id)

    def __repr__(self) -> str:
        return f"ConversationError({self.error_type.value!r}, {self.description!r})"


def validation_error(message: str) -> ConversationError:
    return ConversationError(ErrorType.VALIDATION, message)
