"""Tests for the Claude completion service and conversation strategies."""

from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest
from anthropic import APIConnectionError

from lifestory.db.models import ChatRole, ConversationMedium, ConversationType
from lifestory.errors import ConversationError, ErrorType
from lifestory.schemas.analytics import ConversationStyle
from lifestory.schemas.conversation import ConversationMessage
from lifestory.services.completion import (
    OPENING_CUE,
    AnthropicCompletionService,
    _retry_anthropic,
    to_anthropic_messages,
)
from lifestory.services.strategies import STYLE_INSTRUCTIONS, get_strategy, goals_for


def message(role: ChatRole, content: str) -> ConversationMessage:
    return ConversationMessage(role=role, content=content, timestamp=datetime.now(timezone.utc))


class FakeMessages:
    def __init__(self, *texts: str):
        self.texts = list(texts)
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=t) for t in self.texts])


def fake_client(*texts: str):
    return SimpleNamespace(messages=FakeMessages(*texts))


# =============================================================================
# MESSAGE CONVERSION
# =============================================================================


def test_empty_transcript_gets_opening_cue():
    assert to_anthropic_messages([], 20) == [{"role": "user", "content": OPENING_CUE}]


def test_consecutive_turns_are_merged_and_user_leads():
    messages = [
        message(ChatRole.ASSISTANT, "Hello!"),
        message(ChatRole.USER, "Hi."),
        message(ChatRole.USER, "I was born in Perth."),
    ]

    converted = to_anthropic_messages(messages, 20)

    assert converted == [
        {"role": "user", "content": OPENING_CUE},
        {"role": "assistant", "content": "Hello!"},
        {"role": "user", "content": "Hi.\n\nI was born in Perth."},
    ]


def test_window_keeps_latest_messages():
    messages = [
        message(ChatRole.USER if i % 2 else ChatRole.ASSISTANT, f"turn {i}") for i in range(10)
    ]

    converted = to_anthropic_messages(messages, 3)

    assert [m["content"] for m in converted] == ["turn 7", "turn 8", "turn 9"]


# =============================================================================
# SERVICE
# =============================================================================


async def test_begin_returns_text_session_and_goals():
    client = fake_client("Welcome! ", "Where did you grow up?")
    service = AnthropicCompletionService(client=client)

    result = await service.begin(None, ConversationType.INTERVIEW)

    assert result.session_id.startswith("text_")
    assert result.assistant_text == "Welcome! Where did you grow up?"
    assert result.goals == get_strategy(ConversationType.INTERVIEW).generate_goals()
    [call] = client.messages.calls
    assert "LifeStory Guide" in call["system"]


async def test_continue_passes_style_into_prompt():
    client = fake_client("Tell me more.")
    service = AnthropicCompletionService(client=client)

    result = await service.continue_session(
        "text_1",
        [message(ChatRole.ASSISTANT, "Hello!"), message(ChatRole.USER, "I loved the river.")],
        ConversationType.REFLECTION,
        style=ConversationStyle.DEEP_DIVE,
    )

    assert result.assistant_text == "Tell me more."
    system = client.messages.calls[0]["system"]
    assert STYLE_INSTRUCTIONS[ConversationStyle.DEEP_DIVE] in system
    assert 'Last user message: "I loved the river."' in system


async def test_empty_reply_is_an_ai_service_error():
    service = AnthropicCompletionService(client=fake_client("   "))

    with pytest.raises(ConversationError) as exc_info:
        await service.begin(None, ConversationType.BRAINSTORMING)

    assert exc_info.value.error_type == ErrorType.AI_SERVICE


async def test_retry_gives_up_after_max_attempts():
    attempts = []

    async def failing():
        attempts.append(1)
        raise APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))

    with pytest.raises(APIConnectionError):
        await _retry_anthropic(failing, max_attempts=3, base_delay=0)

    assert len(attempts) == 3


async def test_retry_recovers_from_transient_error():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))
        return "ok"

    assert await _retry_anthropic(flaky, base_delay=0) == "ok"
    assert len(attempts) == 2


# =============================================================================
# STRATEGIES
# =============================================================================


def test_voice_goals_differ_from_text_goals():
    strategy = get_strategy(ConversationType.BRAINSTORMING)

    assert strategy.generate_goals(ConversationMedium.VOICE) != strategy.generate_goals(ConversationMedium.TEXT)
    assert "Conversation Type: brainstorming" in strategy.build_voice_instructions()


def test_unknown_type_falls_back_to_default_goals():
    with pytest.raises(ValueError):
        get_strategy("poetry")

    assert goals_for("poetry", ConversationMedium.TEXT) == [
        "Engage in meaningful conversation about life experiences"
    ]


def test_styled_opening_is_direct():
    strategy = get_strategy(ConversationType.REFLECTION)

    prompt = strategy.build_initial_prompt(None, ConversationStyle.CONCISE)

    assert "by asking a direct question about their life philosophy or values" in prompt
    assert "Current chapter: none selected" in prompt
