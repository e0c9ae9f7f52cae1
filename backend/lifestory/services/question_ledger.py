"""
Question ledger.

Remembers which questions the interviewer has already asked a user about a
book so the same question is not recorded (or suggested) twice.

A question is fingerprinted two ways:
- a hash of its normalized text (case-folded, punctuation stripped,
  whitespace collapsed)
- a bounded set of content keywords

Two questions in the same (user, book, conversation type) scope are
duplicates if the hashes match or the keyword sets overlap at or above the
similarity threshold. Recording is serialized per scope in-process, and the
unique constraint on (user, book, type, hash) catches anything that slips
past (another worker, a concurrent request).

Extraction and keyword selection are plain functions passed to the ledger,
so a better segmenter or an embedding-based matcher can replace them.
"""

import asyncio
import hashlib
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import NamedTuple
from uuid import UUID

from sqlalchemy import distinct, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifestory.config import get_settings
from lifestory.db.models import ConversationQuestion, ConversationType, utc_now
from lifestory.errors import validation_error
from lifestory.schemas.questions import (
    QuestionAnalysis,
    QuestionKind,
    QuestionSentiment,
    QuestionStatsResponse,
)

logger = logging.getLogger(__name__)
settings = get_settings()


class ScopeKey(NamedTuple):
    """Deduplication scope: questions never collide across books or users."""

    user_id: UUID
    book_id: UUID


# =============================================================================
# TEXT HEURISTICS
# =============================================================================

MIN_QUESTION_WORDS = 3
MIN_KEYWORD_LENGTH = 3

INTERROGATIVES = frozenset({
    "what", "when", "where", "who", "whom", "whose", "why", "how", "which",
    "can", "could", "would", "will", "do", "does", "did", "is", "are", "was",
    "were", "have", "has", "had", "should", "shall", "may", "might",
})
LEADING_CONNECTIVES = frozenset({"and", "but", "so", "or", "now", "then", "also", "well"})
PROMPT_OPENERS = (
    "tell me about", "tell me more", "describe", "share", "walk me through",
    "i'd love to hear", "i would love to hear", "talk to me about",
)
FOLLOWUP_MARKERS = re.compile(r"(tell me more|can you elaborate|what about|speaking of|regarding)")
POSITIVE_MARKERS = re.compile(r"(happy|joy|proud|success|achievement|love|wonderful|amazing|great)")
PROBING_MARKERS = re.compile(r"(difficult|challenge|struggle|fear|regret|mistake|hard|tough)")

STOPWORDS = frozenset("""
a about above after again against all also am an and any are as at be because been before
being below between both but by can could did do does doing down during each few for from
further had has have having he her here hers herself him himself his how i if in into is it
its itself just let like me more most my myself no nor not now of off on once only or other
our ours ourselves out over own same she should so some such than that the their theirs them
themselves then there these they this those through to too under until up very was we were
what when where which while who whom why will with would you your yours yourself yourselves
tell share describe remember think recall kind sort really much many thing things something
anything time way get got make made know see say said feel felt one
""".split())

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+|\n+")
_CLAUSE_BOUNDARY = re.compile(r"[,;:\u2014]\s*|\s+-\s+")
_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_question(text: str) -> str:
    """Case-fold, strip punctuation and collapse whitespace."""
    text = _NON_WORD.sub(" ", text.casefold())
    return _WHITESPACE.sub(" ", text).strip()


def question_hash(text: str) -> str:
    return hashlib.sha256(normalize_question(text).encode("utf-8")).hexdigest()


def extract_keywords(text: str, max_keywords: int = settings.question_max_keywords) -> list[str]:
    """Content words of a question, in order of appearance, deduplicated and bounded."""
    keywords: list[str] = []
    for token in normalize_question(text).split():
        if len(token) < MIN_KEYWORD_LENGTH or token in STOPWORDS or token.isdigit():
            continue
        if token not in keywords:
            keywords.append(token)
        if len(keywords) >= max_keywords:
            break
    return keywords


def keyword_similarity(a: Sequence[str], b: Sequence[str]) -> float:
    """Jaccard overlap of two keyword sets (0.0 when either is empty)."""
    set_a, set_b = set(a), set(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def _strip_connectives(clause: str) -> str:
    words = clause.split()
    while words and words[0].lower() in LEADING_CONNECTIVES:
        words.pop(0)
    return " ".join(words)


def _question_clause(sentence: str) -> str:
    """Trim leading statement clauses off a question ("Lovely, what happened next?")."""
    starts = [0] + [m.end() for m in _CLAUSE_BOUNDARY.finditer(sentence)]
    for start in starts:
        clause = _strip_connectives(sentence[start:])
        first = clause.split(" ", 1)[0].lower() if clause else ""
        if first in INTERROGATIVES:
            return clause[0].upper() + clause[1:]
    return sentence


def extract_questions(response_text: str) -> list[str]:
    """
    Pull candidate questions out of an assistant utterance.

    Sentences ending in "?" are questions (trimmed to their interrogative
    clause); sentences opening with a storytelling prompt ("Tell me about")
    count as implied questions. Fragments shorter than three words are
    ignored, and repeats within one response are returned once.
    """
    if not response_text or not response_text.strip():
        return []

    questions: list[str] = []
    seen: set[str] = set()
    for raw in _SENTENCE_BOUNDARY.split(response_text.strip()):
        sentence = raw.strip().strip("\"'")
        if not sentence:
            continue
        candidate = None
        if sentence.endswith("?"):
            candidate = _question_clause(sentence)
        elif sentence.lower().startswith(PROMPT_OPENERS):
            candidate = sentence
        if candidate is None or len(candidate.split()) < MIN_QUESTION_WORDS:
            continue
        key = normalize_question(candidate)
        if key and key not in seen:
            seen.add(key)
            questions.append(candidate)
    return questions


def classify_question(text: str) -> QuestionKind:
    lowered = text.lower().strip()
    first = lowered.split(" ", 1)[0] if lowered else ""
    if first in INTERROGATIVES:
        return QuestionKind.DIRECT
    if FOLLOWUP_MARKERS.search(lowered):
        return QuestionKind.FOLLOWUP
    return QuestionKind.IMPLIED


def classify_sentiment(text: str) -> QuestionSentiment:
    lowered = text.lower()
    if POSITIVE_MARKERS.search(lowered):
        return QuestionSentiment.POSITIVE
    if PROBING_MARKERS.search(lowered):
        return QuestionSentiment.PROBING
    return QuestionSentiment.NEUTRAL


QuestionExtractor = Callable[[str], list[str]]
KeywordExtractor = Callable[[str], list[str]]


# =============================================================================
# LEDGER
# =============================================================================


@dataclass
class DuplicateReport:
    is_duplicate: bool
    confidence: float
    similar: list[ConversationQuestion] = field(default_factory=list)


class QuestionLedger:
    """Tracks asked questions per (user, book, conversation type)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        extractor: QuestionExtractor = extract_questions,
        keyword_extractor: KeywordExtractor = extract_keywords,
        similarity_threshold: float = settings.question_similarity_threshold,
    ) -> None:
        self._session_factory = session_factory
        self.extractor = extractor
        self.keyword_extractor = keyword_extractor
        self.similarity_threshold = similarity_threshold
        self._locks: dict[tuple[UUID, UUID, str], asyncio.Lock] = {}

    def _lock_for(self, scope: ScopeKey, conversation_type: ConversationType) -> asyncio.Lock:
        key = (scope.user_id, scope.book_id, conversation_type.value)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @staticmethod
    def _validate(question_text: str, conversation_type: ConversationType | str) -> tuple[str, ConversationType]:
        text = (question_text or "").strip()
        if not text:
            raise validation_error("Question text must not be empty")
        try:
            return text, ConversationType(conversation_type)
        except ValueError:
            raise validation_error(f"Unknown conversation type: {conversation_type}") from None

    def analyze(self, question_text: str) -> QuestionAnalysis:
        text = question_text.strip()
        return QuestionAnalysis(
            question_text=text,
            question_hash=question_hash(text),
            keywords=tuple(self.keyword_extractor(text)),
            question_kind=classify_question(text),
            sentiment=classify_sentiment(text),
        )

    async def _scope_rows(
        self, db: AsyncSession, scope: ScopeKey, conversation_type: ConversationType
    ) -> list[ConversationQuestion]:
        result = await db.execute(
            select(ConversationQuestion).where(
                ConversationQuestion.user_id == scope.user_id,
                ConversationQuestion.book_id == scope.book_id,
                ConversationQuestion.conversation_type == conversation_type.value,
            )
        )
        return list(result.scalars().all())

    def _compare(
        self, rows: Sequence[ConversationQuestion], text_hash: str, keywords: Sequence[str]
    ) -> DuplicateReport:
        best = 0.0
        exact = False
        scored: list[tuple[float, ConversationQuestion]] = []
        for row in rows:
            if row.question_hash == text_hash:
                exact = True
                score = 1.0
            else:
                score = keyword_similarity(keywords, row.semantic_keywords or [])
            if score > 0:
                scored.append((score, row))
            best = max(best, score)
        scored.sort(key=lambda item: item[0], reverse=True)
        return DuplicateReport(
            is_duplicate=exact or best > self.similarity_threshold,
            confidence=round(best, 3),
            similar=[row for _, row in scored],
        )

    async def check_duplicate(
        self,
        scope: ScopeKey,
        conversation_type: ConversationType | str,
        question_text: str,
    ) -> DuplicateReport:
        text, ctype = self._validate(question_text, conversation_type)
        async with self._session_factory() as db:
            rows = await self._scope_rows(db, scope, ctype)
        return self._compare(rows, question_hash(text), self.keyword_extractor(text))

    async def is_duplicate(
        self,
        scope: ScopeKey,
        conversation_type: ConversationType | str,
        question_text: str,
    ) -> bool:
        report = await self.check_duplicate(scope, conversation_type, question_text)
        return report.is_duplicate

    async def similar_questions(
        self,
        scope: ScopeKey,
        conversation_type: ConversationType | str,
        question_text: str,
        limit: int = 5,
    ) -> list[ConversationQuestion]:
        report = await self.check_duplicate(scope, conversation_type, question_text)
        return report.similar[:limit]

    async def record_question(
        self,
        scope: ScopeKey,
        conversation_type: ConversationType | str,
        question_text: str,
        *,
        chapter_id: UUID | None = None,
        session_id: str | None = None,
    ) -> ConversationQuestion | None:
        """
        Store a question unless it duplicates one already in scope.

        Returns the new row, or None when the question was skipped.
        """
        text, ctype = self._validate(question_text, conversation_type)
        text_hash = question_hash(text)
        keywords = self.keyword_extractor(text)

        async with self._lock_for(scope, ctype):
            async with self._session_factory() as db:
                rows = await self._scope_rows(db, scope, ctype)
                if self._compare(rows, text_hash, keywords).is_duplicate:
                    logger.debug("Skipping duplicate question for book %s: %s", scope.book_id, text)
                    return None

                question = ConversationQuestion(
                    user_id=scope.user_id,
                    book_id=scope.book_id,
                    chapter_id=chapter_id,
                    conversation_session_id=session_id,
                    conversation_type=ctype.value,
                    question_text=text,
                    question_hash=text_hash,
                    semantic_keywords=keywords,
                    asked_at=utc_now(),
                )
                db.add(question)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.info("Question already recorded for book %s (hash %s)", scope.book_id, text_hash[:12])
                    return None
                return question

    async def track_response(
        self,
        scope: ScopeKey,
        conversation_type: ConversationType | str,
        response_text: str,
        *,
        chapter_id: UUID | None = None,
        session_id: str | None = None,
    ) -> list[ConversationQuestion]:
        """Extract, dedupe and record every question in an assistant reply. Never raises."""
        recorded: list[ConversationQuestion] = []
        try:
            candidates = self.extractor(response_text)
        except Exception:
            logger.exception("Question extraction failed for session %s", session_id)
            return recorded

        for candidate in candidates:
            try:
                question = await self.record_question(
                    scope, conversation_type, candidate, chapter_id=chapter_id, session_id=session_id
                )
            except Exception:
                logger.exception("Failed to record question for session %s", session_id)
                continue
            if question is not None:
                recorded.append(question)

        if recorded:
            logger.info("Tracked %d new question(s) for session %s", len(recorded), session_id)
        return recorded

    async def rate(self, question_id: UUID, rating: int, *, user_id: UUID) -> bool:
        """Set the response quality (1-5). Returns False if the question is not the user's."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise validation_error("Rating must be an integer from 1 to 5")

        async with self._session_factory() as db:
            result = await db.execute(
                update(ConversationQuestion)
                .where(ConversationQuestion.id == question_id, ConversationQuestion.user_id == user_id)
                .values(response_quality=rating, updated_at=utc_now())
            )
            await db.commit()
            return result.rowcount > 0

    async def stats(self, user_id: UUID, book_id: UUID) -> QuestionStatsResponse:
        scope_filter = (
            ConversationQuestion.user_id == user_id,
            ConversationQuestion.book_id == book_id,
        )
        async with self._session_factory() as db:
            totals = (
                await db.execute(
                    select(
                        func.count(ConversationQuestion.id),
                        func.count(distinct(ConversationQuestion.question_hash)),
                        func.avg(ConversationQuestion.response_quality),
                        func.count(ConversationQuestion.response_quality),
                    ).where(*scope_filter)
                )
            ).one()
            by_type = await db.execute(
                select(ConversationQuestion.conversation_type, func.count(ConversationQuestion.id))
                .where(*scope_filter)
                .group_by(ConversationQuestion.conversation_type)
            )

        counts = {t.value: 0 for t in ConversationType}
        for conversation_type, count in by_type.all():
            counts[conversation_type] = count

        total, unique, average, rated = totals
        return QuestionStatsResponse(
            total_questions=total,
            unique_questions=unique,
            counts_by_type=counts,
            average_quality=round(float(average), 2) if rated else None,
            rated_questions=rated,
        )

    async def history(
        self,
        user_id: UUID,
        book_id: UUID,
        *,
        conversation_type: ConversationType | None = None,
        limit: int = settings.question_history_limit,
    ) -> list[ConversationQuestion]:
        query = (
            select(ConversationQuestion)
            .where(ConversationQuestion.user_id == user_id, ConversationQuestion.book_id == book_id)
            .order_by(ConversationQuestion.asked_at.desc())
            .limit(limit)
        )
        if conversation_type is not None:
            query = query.where(ConversationQuestion.conversation_type == conversation_type.value)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())
