"""
Conversation analytics.

Read-side heuristics over a session's message list: engagement health,
answer-length trends, tone, topics and follow-up suggestions. Nothing here
touches the network or the database.

Tone and topic detection are lexicon heuristics. They are injected into
ConversationAnalyzer as plain callables so a stronger classifier can be
dropped in without changing callers.
"""

import re
from collections.abc import Callable, Iterable, Sequence

from lifestory.db.models import ChatRole
from lifestory.schemas.analytics import (
    ConversationInsights,
    ConversationPattern,
    ConversationStyle,
    EmotionalTone,
    SmartSuggestion,
    SuggestionCategory,
)
from lifestory.schemas.conversation import ConversationMessage, ConversationSession

# =============================================================================
# LEXICONS
# =============================================================================

POSITIVE_WORDS = ("happy", "joy", "love", "excited", "proud", "grateful", "wonderful", "amazing")
NEGATIVE_WORDS = ("sad", "angry", "hurt", "difficult", "painful", "lost", "worried", "scared")

# Hits on any of these count as emotional engagement for the health score
ENGAGEMENT_WORDS = ("feel", "felt", "emotion", "heart", "soul", "love", "hate", "joy", "sad")

TOPIC_KEYWORDS: dict[str, tuple[str, ...]] = {
    "family": ("family", "mother", "father", "brother", "sister", "children", "parent"),
    "work": ("job", "work", "career", "colleague", "boss", "business", "office"),
    "relationships": ("friend", "partner", "spouse", "relationship", "marriage", "dating"),
    "education": ("school", "college", "university", "teacher", "student", "learn"),
    "health": ("health", "doctor", "hospital", "illness", "recovery", "medical"),
    "travel": ("travel", "trip", "vacation", "journey", "visit", "destination"),
    "hobbies": ("hobby", "sport", "music", "art", "reading", "cooking", "gardening"),
}

NEXT_TOPICS = (
    "childhood memories",
    "career milestones",
    "travel experiences",
    "family traditions",
    "personal growth",
    "challenges overcome",
    "important relationships",
    "life lessons learned",
    "future dreams",
)

SUGGESTION_PROMPTS: dict[SuggestionCategory, tuple[str, ...]] = {
    SuggestionCategory.SENSORY_DETAILS: (
        "What do you remember seeing, hearing or smelling in that moment?",
        "Describe the place where this happened as if I were standing there.",
    ),
    SuggestionCategory.RELATIONSHIP_FOCUS: (
        "How did the people around you shape what happened?",
        "What was your relationship like with them at the time?",
    ),
    SuggestionCategory.EMOTIONAL_DEPTH: (
        "How did that experience change the way you saw yourself?",
        "What feelings come back when you think about it now?",
    ),
    SuggestionCategory.STORY_GAPS: (
        "What happened next?",
        "What led up to that moment?",
    ),
}

VAGUE_PHRASES = ("maybe", "sort of", "kind of", "i guess", "i think", "probably")
PEOPLE_WORDS = ("he", "she", "they", "friend", "family", "mother", "father", "brother", "sister", "colleague", "boss")
FEELING_WORDS = ("felt", "feel", "emotional", "sad", "happy", "angry", "excited", "nervous", "worried", "loved", "hurt", "proud")
TIME_WORDS = ("then", "next", "after", "before", "later", "earlier", "meanwhile", "suddenly")

# Thresholds
HEALTH_LENGTH_THRESHOLD = 15
RECENT_MIN_WORDS = 5
LOSING_INTEREST_FLOOR = 10
ENGAGED_CEILING = 20
CONCISE_BELOW = 15
DEEP_DIVE_ABOVE = 50
MIN_MESSAGES_FOR_PATTERN = 4
MIN_MESSAGES_FOR_INSIGHTS = 3
MAX_SUGGESTIONS = 3
HEALTHY_SCORE = 3

ToneClassifier = Callable[[str], EmotionalTone]
TopicExtractor = Callable[[str], list[str]]


# =============================================================================
# DEFAULT STRATEGIES
# =============================================================================


def word_count(text: str) -> int:
    return len(text.split())


def _mentions(text: str, word: str) -> bool:
    """Word-prefix match, so 'parent' also hits 'parents' but 'art' skips 'start'."""
    return re.search(rf"\b{re.escape(word)}", text) is not None


def _count_hits(text: str, words: Iterable[str]) -> int:
    return sum(len(re.findall(rf"\b{re.escape(word)}", text)) for word in words)


def classify_tone_by_lexicon(text: str) -> EmotionalTone:
    """Count positive vs negative lexicon hits. Ties are neutral."""
    lowered = text.lower()
    positive = _count_hits(lowered, POSITIVE_WORDS)
    negative = _count_hits(lowered, NEGATIVE_WORDS)
    if positive > negative:
        return EmotionalTone.POSITIVE
    if negative > positive:
        return EmotionalTone.NEGATIVE
    return EmotionalTone.NEUTRAL


def extract_topics_by_keywords(text: str) -> list[str]:
    lowered = text.lower()
    return [
        topic
        for topic, keywords in TOPIC_KEYWORDS.items()
        if any(_mentions(lowered, keyword) for keyword in keywords)
    ]


def _user_messages(messages: Sequence[ConversationMessage]) -> list[ConversationMessage]:
    return [m for m in messages if m.role == ChatRole.USER]


def _user_text(messages: Sequence[ConversationMessage]) -> str:
    return " ".join(m.content for m in _user_messages(messages))


# =============================================================================
# ANALYZER
# =============================================================================


class ConversationAnalyzer:
    """Engagement analytics with pluggable tone and topic strategies."""

    def __init__(
        self,
        *,
        tone_classifier: ToneClassifier = classify_tone_by_lexicon,
        topic_extractor: TopicExtractor = extract_topics_by_keywords,
    ) -> None:
        self.tone_classifier = tone_classifier
        self.topic_extractor = topic_extractor

    def average_response_length(self, messages: Sequence[ConversationMessage]) -> float:
        """Mean word count of user messages (0 when the user has not spoken)."""
        user_messages = _user_messages(messages)
        if not user_messages:
            return 0.0
        return sum(word_count(m.content) for m in user_messages) / len(user_messages)

    def emotional_tone(self, messages: Sequence[ConversationMessage]) -> EmotionalTone:
        return self.tone_classifier(_user_text(messages))

    def topics_discussed(self, messages: Sequence[ConversationMessage]) -> tuple[str, ...]:
        return tuple(self.topic_extractor(_user_text(messages)))

    def conversation_health(self, messages: Sequence[ConversationMessage]) -> int:
        """
        Engagement score from 1 to 5.

        One point to start, plus one for each of: long answers on average,
        the user asking questions, emotional vocabulary, and each of the
        last three answers running past a handful of words.
        """
        user_messages = _user_messages(messages)
        if not user_messages:
            return 1

        text = " ".join(m.content for m in user_messages).lower()
        score = 1
        if self.average_response_length(user_messages) > HEALTH_LENGTH_THRESHOLD:
            score += 1
        if "?" in text:
            score += 1
        if any(word in text for word in ENGAGEMENT_WORDS):
            score += 1
        if all(word_count(m.content) > RECENT_MIN_WORDS for m in user_messages[-3:]):
            score += 1
        return min(score, 5)

    def conversation_pattern(self, messages: Sequence[ConversationMessage]) -> ConversationPattern | None:
        """Trend of the last three answer lengths, or None for short sessions."""
        if len(messages) < MIN_MESSAGES_FOR_PATTERN:
            return None
        counts = [word_count(m.content) for m in _user_messages(messages)[-3:]]
        if not counts:
            return None

        pairs = list(zip(counts, counts[1:]))
        is_losing_interest = all(b <= a for a, b in pairs) and counts[-1] < LOSING_INTEREST_FLOOR
        is_getting_engaged = all(b >= a for a, b in pairs) and counts[-1] > ENGAGED_CEILING
        return ConversationPattern(
            is_losing_interest=is_losing_interest,
            is_getting_engaged=is_getting_engaged,
            needs_encouragement=is_losing_interest,
            can_go_deeper=is_getting_engaged,
        )

    def baseline_style(self, messages: Sequence[ConversationMessage]) -> ConversationStyle:
        if not _user_messages(messages):
            return ConversationStyle.CONVERSATIONAL
        average = self.average_response_length(messages)
        if average < CONCISE_BELOW:
            return ConversationStyle.CONCISE
        if average > DEEP_DIVE_ABOVE:
            return ConversationStyle.DEEP_DIVE
        return ConversationStyle.CONVERSATIONAL

    def optimal_style(self, messages: Sequence[ConversationMessage]) -> ConversationStyle:
        pattern = self.conversation_pattern(messages)
        if pattern is None:
            return self.baseline_style(messages)
        if pattern.needs_encouragement:
            return ConversationStyle.SUPPORTIVE
        if pattern.can_go_deeper:
            return ConversationStyle.DEEP_DIVE
        return ConversationStyle.CONCISE

    def suggested_next_topics(
        self,
        topics_discussed: Sequence[str],
        history: Sequence[ConversationSession] = (),
    ) -> tuple[str, ...]:
        """Up to three fresh topics not yet covered here or in past sessions."""
        discussed = " ".join(
            m.content.lower() for session in history for m in _user_messages(session.messages)
        )
        fresh = [
            topic
            for topic in NEXT_TOPICS
            if topic not in discussed and not any(current in topic for current in topics_discussed)
        ]
        return tuple(fresh[:3])

    def conversation_insights(
        self,
        session: ConversationSession,
        history: Sequence[ConversationSession] = (),
    ) -> ConversationInsights | None:
        if len(session.messages) < MIN_MESSAGES_FOR_INSIGHTS or not session.user_messages:
            return None
        topics = self.topics_discussed(session.messages)
        return ConversationInsights(
            average_response_length=round(self.average_response_length(session.messages)),
            emotional_tone=self.emotional_tone(session.messages),
            topics_discussed=topics,
            conversation_health=self.conversation_health(session.messages),
            suggested_next_topics=self.suggested_next_topics(topics, history),
        )

    def continuation_suggestions(self, insights: ConversationInsights | None) -> list[str]:
        """Advisory follow-ups, most urgent first. Never sent automatically."""
        if insights is None:
            return []
        suggestions = []
        if insights.conversation_health < HEALTHY_SCORE:
            suggestions.append("Tell me more about what that experience meant to you")
        if insights.emotional_tone == EmotionalTone.NEGATIVE:
            suggestions.append("How did you get through that difficult time?")
        if insights.suggested_next_topics:
            suggestions.append(f"Let's explore {insights.suggested_next_topics[0]}")
        return suggestions[:MAX_SUGGESTIONS]

    def is_healthy_conversation(self, insights: ConversationInsights | None) -> bool:
        if insights is None:
            return True
        return insights.conversation_health >= HEALTHY_SCORE

    def smart_suggestions(self, messages: Sequence[ConversationMessage]) -> list[SmartSuggestion]:
        """Category-tagged prompts chosen from the user's latest answer."""
        user_messages = _user_messages(messages)
        if not user_messages:
            return []

        last = user_messages[-1].content.lower()
        turn = len(user_messages)
        candidates: list[tuple[SuggestionCategory, int]] = []
        if word_count(last) < 20 or any(phrase in last for phrase in VAGUE_PHRASES):
            candidates.append((SuggestionCategory.SENSORY_DETAILS, 4))
        if any(_mentions(last, word) for word in PEOPLE_WORDS):
            candidates.append((SuggestionCategory.RELATIONSHIP_FOCUS, 3))
        if any(_mentions(last, word) for word in FEELING_WORDS):
            candidates.append((SuggestionCategory.EMOTIONAL_DEPTH, 5))
        if any(_mentions(last, word) for word in TIME_WORDS):
            candidates.append((SuggestionCategory.STORY_GAPS, 4))
        elif turn > 3:
            candidates.append((SuggestionCategory.STORY_GAPS, 2))

        candidates.sort(key=lambda item: item[1], reverse=True)
        suggestions = []
        for category, priority in candidates[:MAX_SUGGESTIONS]:
            prompts = SUGGESTION_PROMPTS[category]
            # Rotate through prompts by turn so repeated calls are stable
            suggestions.append(
                SmartSuggestion(category=category, prompt=prompts[turn % len(prompts)], priority=priority)
            )
        return suggestions


# Singleton instance
conversation_analyzer = ConversationAnalyzer()
