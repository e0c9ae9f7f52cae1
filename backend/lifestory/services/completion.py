"""Completion service for text conversations (begin / continue) backed by Claude."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from anthropic import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncAnthropic,
    RateLimitError,
)

from lifestory.config import get_settings
from lifestory.db.models import ChatRole, ConversationMedium, ConversationType
from lifestory.errors import ConversationError, ErrorType
from lifestory.schemas.analytics import ConversationStyle
from lifestory.schemas.conversation import ConversationContext, ConversationMessage
from lifestory.services.conversation_store import new_session_id
from lifestory.services.strategies import get_strategy

logger = logging.getLogger(__name__)
settings = get_settings()

# Transient error types that warrant retrying
_RETRYABLE_ERRORS = (APIConnectionError, RateLimitError)

OPENING_CUE = "Please begin our conversation."


@dataclass(frozen=True)
class BeginResult:
    session_id: str
    assistant_text: str
    goals: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ContinueResult:
    assistant_text: str


class CompletionService(Protocol):
    """Opaque AI turn provider used by the session controller."""

    async def begin(
        self,
        context: ConversationContext | None,
        conversation_type: ConversationType,
        style: ConversationStyle | None = None,
    ) -> BeginResult: ...

    async def continue_session(
        self,
        session_id: str,
        messages: Sequence[ConversationMessage],
        conversation_type: ConversationType,
        style: ConversationStyle | None = None,
        context: ConversationContext | None = None,
    ) -> ContinueResult: ...


async def _retry_anthropic(coro_factory, *, max_attempts: int = 3, base_delay: float = 1.0):
    """
    Retry an Anthropic API call with exponential backoff.

    Args:
        coro_factory: Callable that returns a new coroutine each invocation.
        max_attempts: Maximum number of attempts.
        base_delay: Base delay in seconds (doubles each retry).

    Returns:
        The result of the coroutine.
    """
    last_error = None
    for attempt in range(max_attempts):
        try:
            return await coro_factory()
        except _RETRYABLE_ERRORS as e:
            last_error = e
            if attempt < max_attempts - 1:
                delay = base_delay * (2 ** attempt)
                logger.warning(
                    "Anthropic API transient error (attempt %d/%d), retrying in %.1fs: %s",
                    attempt + 1, max_attempts, delay, str(e),
                )
                await asyncio.sleep(delay)
            else:
                raise
        except APIStatusError as e:
            if e.status_code == 529:  # Overloaded
                last_error = e
                if attempt < max_attempts - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        "Anthropic API overloaded (attempt %d/%d), retrying in %.1fs",
                        attempt + 1, max_attempts, delay,
                    )
                    await asyncio.sleep(delay)
                else:
                    raise
            else:
                raise
    raise last_error  # Should never reach here


def to_anthropic_messages(messages: Sequence[ConversationMessage], window: int) -> list[dict]:
    """
    Convert a session transcript into Claude's messages format.

    Keeps the last `window` messages, merges consecutive turns from the same
    speaker, and makes sure the list opens with a user turn.
    """
    converted: list[dict] = []
    for message in list(messages)[-window:]:
        role = ChatRole(message.role).value
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"] += f"\n\n{message.content}"
        else:
            converted.append({"role": role, "content": message.content})
    if not converted or converted[0]["role"] != ChatRole.USER.value:
        converted.insert(0, {"role": ChatRole.USER.value, "content": OPENING_CUE})
    return converted


class AnthropicCompletionService:
    """Generates interviewer turns with Claude."""

    def __init__(self, client: AsyncAnthropic | None = None):
        """Initialize Anthropic client."""
        self.client = client or AsyncAnthropic(api_key=settings.anthropic_api_key)

    async def _complete(self, system_prompt: str, messages: list[dict]) -> str:
        try:
            message = await _retry_anthropic(
                lambda: self.client.messages.create(
                    model=settings.llm_model,
                    max_tokens=settings.llm_max_tokens,
                    temperature=settings.llm_temperature,
                    system=system_prompt,
                    messages=messages,
                )
            )
        except APITimeoutError as e:
            logger.exception("LLM request timed out")
            raise ConversationError.with_correlation_id(ErrorType.TIMEOUT) from e
        except APIConnectionError as e:
            logger.exception("LLM request failed after retries")
            raise ConversationError.with_correlation_id(ErrorType.NETWORK) from e
        except APIStatusError as e:
            logger.exception("LLM request rejected with status %s", e.status_code)
            raise ConversationError.with_correlation_id(ErrorType.AI_SERVICE) from e

        text = "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        ).strip()
        if not text:
            raise ConversationError(ErrorType.AI_SERVICE, "The AI returned an empty response. Please try again.")
        return text

    async def begin(
        self,
        context: ConversationContext | None,
        conversation_type: ConversationType,
        style: ConversationStyle | None = None,
    ) -> BeginResult:
        strategy = get_strategy(conversation_type)
        system_prompt = strategy.build_initial_prompt(context, style)
        text = await self._complete(system_prompt, to_anthropic_messages([], settings.completion_message_window))
        return BeginResult(
            session_id=new_session_id("text"),
            assistant_text=text,
            goals=strategy.generate_goals(ConversationMedium.TEXT),
        )

    async def continue_session(
        self,
        session_id: str,
        messages: Sequence[ConversationMessage],
        conversation_type: ConversationType,
        style: ConversationStyle | None = None,
        context: ConversationContext | None = None,
    ) -> ContinueResult:
        strategy = get_strategy(conversation_type)
        system_prompt = strategy.build_conversation_prompt(context, list(messages), style)
        text = await self._complete(
            system_prompt, to_anthropic_messages(messages, settings.completion_message_window)
        )
        logger.debug("Generated reply for session %s (%d chars)", session_id, len(text))
        return ContinueResult(assistant_text=text)
