"""Tests for conversation analytics heuristics."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from lifestory.db.models import ChatRole
from lifestory.schemas.analytics import ConversationStyle, EmotionalTone, SuggestionCategory
from lifestory.schemas.conversation import ConversationMessage, ConversationSession
from lifestory.services.analytics import (
    ConversationAnalyzer,
    classify_tone_by_lexicon,
    conversation_analyzer,
    extract_topics_by_keywords,
)

START = datetime(2026, 1, 1, tzinfo=timezone.utc)


def words(n: int, *lead: str) -> str:
    return " ".join([*lead, *["story"] * (n - len(lead))])


def conversation(*user_texts: str, opening: str = "Tell me about your childhood.") -> list[ConversationMessage]:
    messages = [ConversationMessage(role=ChatRole.ASSISTANT, content=opening, timestamp=START)]
    for i, text in enumerate(user_texts):
        ts = START + timedelta(minutes=2 * i + 1)
        messages.append(ConversationMessage(role=ChatRole.USER, content=text, timestamp=ts))
        messages.append(
            ConversationMessage(role=ChatRole.ASSISTANT, content="What happened next?", timestamp=ts + timedelta(seconds=30))
        )
    return messages


def session_of(messages) -> ConversationSession:
    return ConversationSession(session_id="text_1_abc", user_id=uuid4(), book_id=uuid4(), messages=tuple(messages))


# =============================================================================
# HEALTH
# =============================================================================


def test_health_score_caps_at_five_when_every_bonus_applies():
    messages = conversation(
        words(25, "I", "felt"),
        words(30, "Do", "you", "know", "why?"),
        words(28, "My", "heart"),
    )

    assert conversation_analyzer.conversation_health(messages) == 5


def test_health_score_starts_at_one():
    messages = conversation("no", "ok", "fine")

    assert conversation_analyzer.conversation_health(messages) == 1


def test_health_score_without_user_messages():
    messages = conversation()

    assert conversation_analyzer.conversation_health(messages) == 1


def test_average_response_length_counts_user_words_only():
    messages = conversation(words(10), words(20), opening=words(100))

    assert conversation_analyzer.average_response_length(messages) == 15


# =============================================================================
# TONE / TOPICS
# =============================================================================


def test_tone_ties_are_neutral():
    assert classify_tone_by_lexicon("I was happy and sad at once") == EmotionalTone.NEUTRAL
    assert classify_tone_by_lexicon("We were so happy and proud") == EmotionalTone.POSITIVE
    assert classify_tone_by_lexicon("It was a painful, difficult year") == EmotionalTone.NEGATIVE


def test_topics_match_whole_word_prefixes():
    topics = extract_topics_by_keywords("My parents ran a business near the school")

    assert topics == ["family", "work", "education"]
    assert extract_topics_by_keywords("We started early") == []


def test_pluggable_tone_classifier():
    analyzer = ConversationAnalyzer(tone_classifier=lambda text: EmotionalTone.NEGATIVE)

    assert analyzer.emotional_tone(conversation("Everything was lovely")) == EmotionalTone.NEGATIVE


# =============================================================================
# PATTERN / STYLE
# =============================================================================


def test_pattern_requires_four_messages():
    messages = conversation("A short answer")[:3]

    assert len(messages) < 4
    assert conversation_analyzer.conversation_pattern(messages) is None


def test_losing_interest_selects_supportive_style():
    messages = conversation(words(30), words(12), words(5))

    pattern = conversation_analyzer.conversation_pattern(messages)

    assert pattern.is_losing_interest is True
    assert pattern.needs_encouragement is True
    assert pattern.is_getting_engaged is False
    assert conversation_analyzer.optimal_style(messages) == ConversationStyle.SUPPORTIVE


def test_growing_answers_select_deep_dive_style():
    messages = conversation(words(5), words(15), words(25))

    pattern = conversation_analyzer.conversation_pattern(messages)

    assert pattern.is_getting_engaged is True
    assert pattern.can_go_deeper is True
    assert conversation_analyzer.optimal_style(messages) == ConversationStyle.DEEP_DIVE


def test_no_trend_selects_concise_style():
    messages = conversation(words(12), words(30), words(14))

    pattern = conversation_analyzer.conversation_pattern(messages)

    assert not pattern.is_losing_interest and not pattern.is_getting_engaged
    assert conversation_analyzer.optimal_style(messages) == ConversationStyle.CONCISE


def test_baseline_style_when_no_pattern():
    assert conversation_analyzer.optimal_style(conversation()) == ConversationStyle.CONVERSATIONAL


# =============================================================================
# INSIGHTS / SUGGESTIONS
# =============================================================================


def test_insights_need_three_messages_and_a_user_turn():
    assert conversation_analyzer.conversation_insights(session_of(conversation())) is None
    assert conversation_analyzer.conversation_insights(session_of(conversation("Hello")[:2])) is None


def test_unhealthy_negative_conversation_gets_all_three_hints():
    session = session_of(conversation("It was sad", "I lost it", "painful"))

    insights = conversation_analyzer.conversation_insights(session)
    suggestions = conversation_analyzer.continuation_suggestions(insights)

    assert insights.emotional_tone == EmotionalTone.NEGATIVE
    assert insights.conversation_health < 3
    assert len(suggestions) == 3
    assert suggestions[0] == "Tell me more about what that experience meant to you"
    assert suggestions[1] == "How did you get through that difficult time?"
    assert suggestions[2].startswith("Let's explore ")
    assert conversation_analyzer.is_healthy_conversation(insights) is False


def test_next_topics_skip_history():
    history = [session_of(conversation("My childhood memories of the farm"))]
    session = session_of(conversation("I travel a lot", "and I work", "with family"))

    insights = conversation_analyzer.conversation_insights(session, history)

    assert "childhood memories" not in insights.suggested_next_topics
    assert len(insights.suggested_next_topics) <= 3


def test_missing_insights_count_as_healthy():
    assert conversation_analyzer.is_healthy_conversation(None) is True
    assert conversation_analyzer.continuation_suggestions(None) == []


def test_smart_suggestions_rank_emotional_depth_first():
    messages = conversation("I felt nervous when my father left, and then everything changed.")

    suggestions = conversation_analyzer.smart_suggestions(messages)

    assert suggestions[0].category == SuggestionCategory.EMOTIONAL_DEPTH
    assert len(suggestions) <= 3
    assert {s.category for s in suggestions} <= set(SuggestionCategory)
