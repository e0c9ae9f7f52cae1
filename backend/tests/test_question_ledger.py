"""Tests for question extraction and the question ledger."""

import asyncio
import uuid

import pytest

from lifestory.db.models import Book, ConversationType
from lifestory.errors import ConversationError, ErrorType
from lifestory.schemas.questions import QuestionKind, QuestionSentiment
from lifestory.services.question_ledger import (
    QuestionLedger,
    ScopeKey,
    extract_keywords,
    extract_questions,
    keyword_similarity,
    normalize_question,
    question_hash,
)


@pytest.fixture
def ledger(session_factory) -> QuestionLedger:
    return QuestionLedger(session_factory)


@pytest.fixture
def scope(user, book) -> ScopeKey:
    return ScopeKey(user.id, book.id)


# =============================================================================
# EXTRACTION
# =============================================================================


def test_extract_questions_trims_to_interrogative_clause():
    text = "Lovely, what happened next? I'd love to hear about your school. Tell me about your mother."

    assert extract_questions(text) == [
        "What happened next?",
        "I'd love to hear about your school.",
        "Tell me about your mother.",
    ]


def test_extract_questions_skips_fragments_and_repeats():
    assert extract_questions("Really? Okay.") == []
    assert extract_questions("What happened next? what happened NEXT?") == ["What happened next?"]
    assert extract_questions("   ") == []


def test_extract_questions_strips_leading_connectives():
    assert extract_questions("That sounds hard. And how did your family cope?") == [
        "How did your family cope?"
    ]


def test_normalization_ignores_case_and_punctuation():
    assert normalize_question("  What   was it LIKE?! ") == "what was it like"
    assert question_hash("What was it like?") == question_hash("what was it like")


def test_extract_keywords_drops_stopwords():
    assert extract_keywords("What was your neighbourhood in Perth like?") == ["neighbourhood", "perth"]
    assert len(extract_keywords(" ".join(f"word{i}x" for i in range(30)))) == 10


def test_keyword_similarity_is_jaccard():
    assert keyword_similarity(["home", "childhood"], ["childhood", "home"]) == 1.0
    assert keyword_similarity(["home", "childhood"], ["home", "school"]) == pytest.approx(1 / 3)
    assert keyword_similarity([], ["home"]) == 0.0


def test_analyze_classifies_question(ledger):
    analysis = ledger.analyze("What was the hardest challenge you faced?")

    assert analysis.question_kind == QuestionKind.DIRECT
    assert analysis.sentiment == QuestionSentiment.PROBING
    assert "hardest" in analysis.keywords
    assert ledger.analyze("Tell me more about the wedding").question_kind == QuestionKind.FOLLOWUP


# =============================================================================
# RECORDING
# =============================================================================


async def test_record_question_skips_exact_and_similar_duplicates(ledger, scope):
    first = await ledger.record_question(scope, ConversationType.INTERVIEW, "What was your childhood home like?")

    assert first is not None
    assert first.semantic_keywords == ["childhood", "home"]
    assert await ledger.record_question(scope, "interview", "what was your childhood home like") is None
    assert await ledger.record_question(scope, "interview", "Describe your childhood home.") is None


async def test_scope_separates_books_and_types(ledger, scope, session_factory, user):
    async with session_factory() as db:
        other_book = Book(user_id=user.id, title="Second Volume")
        db.add(other_book)
        await db.commit()

    text = "What was your first job?"
    assert await ledger.record_question(scope, ConversationType.INTERVIEW, text) is not None
    assert await ledger.record_question(scope, ConversationType.REFLECTION, text) is not None
    assert await ledger.record_question(ScopeKey(user.id, other_book.id), ConversationType.INTERVIEW, text) is not None
    assert await ledger.is_duplicate(scope, ConversationType.INTERVIEW, text) is True
    assert await ledger.is_duplicate(scope, ConversationType.BRAINSTORMING, text) is False


async def test_concurrent_records_store_one_row(ledger, scope):
    results = await asyncio.gather(*[
        ledger.record_question(scope, ConversationType.INTERVIEW, "Who taught you to swim?")
        for _ in range(5)
    ])

    assert sum(r is not None for r in results) == 1
    assert len(await ledger.history(scope.user_id, scope.book_id)) == 1


async def test_record_question_validates_input(ledger, scope):
    with pytest.raises(ConversationError) as exc_info:
        await ledger.record_question(scope, ConversationType.INTERVIEW, "   ")
    assert exc_info.value.error_type == ErrorType.VALIDATION

    with pytest.raises(ConversationError):
        await ledger.check_duplicate(scope, "small_talk", "Where did you grow up?")


async def test_check_duplicate_reports_similar_questions(ledger, scope):
    await ledger.record_question(scope, ConversationType.INTERVIEW, "What was your childhood home like?")
    await ledger.record_question(scope, ConversationType.INTERVIEW, "Where did you go to school?")

    report = await ledger.check_duplicate(scope, ConversationType.INTERVIEW, "Describe the home you grew up in.")

    assert report.is_duplicate is False
    assert 0 < report.confidence < 0.7
    assert [q.question_text for q in report.similar] == ["What was your childhood home like?"]


async def test_similarity_must_exceed_threshold(session_factory, scope):
    def split_words(text):
        return normalize_question(text).split()

    at_threshold = QuestionLedger(session_factory, keyword_extractor=split_words, similarity_threshold=2 / 3)
    below_threshold = QuestionLedger(session_factory, keyword_extractor=split_words, similarity_threshold=0.6)
    await at_threshold.record_question(scope, ConversationType.INTERVIEW, "alpha beta")

    # Jaccard overlap of {alpha, beta} and {alpha, beta, gamma} is exactly 2/3
    assert await at_threshold.is_duplicate(scope, ConversationType.INTERVIEW, "alpha beta gamma") is False
    assert await below_threshold.is_duplicate(scope, ConversationType.INTERVIEW, "alpha beta gamma") is True


async def test_track_response_records_new_questions_only(ledger, scope):
    reply = "Thank you for sharing. What was your first job? Tell me about your first boss."

    recorded = await ledger.track_response(scope, ConversationType.INTERVIEW, reply, session_id="text_1_abc")
    again = await ledger.track_response(scope, ConversationType.INTERVIEW, reply, session_id="text_1_abc")

    assert [q.question_text for q in recorded] == ["What was your first job?", "Tell me about your first boss."]
    assert all(q.conversation_session_id == "text_1_abc" for q in recorded)
    assert again == []


async def test_track_response_never_raises(session_factory, scope):
    def broken_extractor(text):
        raise RuntimeError("segmenter crashed")

    ledger = QuestionLedger(session_factory, extractor=broken_extractor)

    assert await ledger.track_response(scope, ConversationType.INTERVIEW, "What now?") == []


# =============================================================================
# RATING / STATS
# =============================================================================


async def test_rate_checks_range_and_owner(ledger, scope):
    question = await ledger.record_question(scope, ConversationType.INTERVIEW, "What did your father do for work?")

    for bad in (0, 6, True):
        with pytest.raises(ConversationError):
            await ledger.rate(question.id, bad, user_id=scope.user_id)
    assert await ledger.rate(question.id, 4, user_id=uuid.uuid4()) is False
    assert await ledger.rate(question.id, 4, user_id=scope.user_id) is True

    [stored] = await ledger.history(scope.user_id, scope.book_id)
    assert stored.response_quality == 4


async def test_stats_without_ratings(ledger, scope):
    await ledger.record_question(scope, ConversationType.INTERVIEW, "Where were you born?")
    await ledger.record_question(scope, ConversationType.REFLECTION, "What would you change?")

    stats = await ledger.stats(scope.user_id, scope.book_id)

    assert stats.total_questions == 2
    assert stats.unique_questions == 2
    assert stats.counts_by_type == {"interview": 1, "reflection": 1, "brainstorming": 0}
    assert stats.average_quality is None
    assert stats.rated_questions == 0


async def test_stats_average_quality(ledger, scope):
    first = await ledger.record_question(scope, ConversationType.INTERVIEW, "Where were you born?")
    second = await ledger.record_question(scope, ConversationType.INTERVIEW, "Who was your best friend?")
    await ledger.rate(first.id, 5, user_id=scope.user_id)
    await ledger.rate(second.id, 2, user_id=scope.user_id)

    stats = await ledger.stats(scope.user_id, scope.book_id)

    assert stats.average_quality == 3.5
    assert stats.rated_questions == 2


async def test_history_filters_by_type(ledger, scope):
    await ledger.record_question(scope, ConversationType.INTERVIEW, "Where were you born?")
    await ledger.record_question(scope, ConversationType.REFLECTION, "What would you change?")

    history = await ledger.history(scope.user_id, scope.book_id, conversation_type=ConversationType.REFLECTION)

    assert [q.question_text for q in history] == ["What would you change?"]
