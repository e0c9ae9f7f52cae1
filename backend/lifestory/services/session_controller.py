"""
Text conversation session controller.

Two layers:

1. `transition(state, event) -> state`, a pure reducer over an immutable
   ControllerState. It knows the lifecycle
   Idle -> Starting -> Active <-> Sending -> Active -> Ending -> Idle
   and raises InvalidTransition for anything else.

2. `SessionController`, the effect runner. It checks the guards, dispatches
   events around the awaited calls (context cache, completion service,
   store) and hands assistant replies to the question ledger in a background
   task whose failures are only logged.

A start or send that arrives while another is in flight is rejected with a
BUSY error instead of being queued; a second start while one is pending
receives the pending start's result.
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Union
from uuid import UUID

from lifestory.config import get_settings
from lifestory.db.models import ChatRole, ConversationMedium, ConversationType, utc_now
from lifestory.errors import ConversationError, ErrorType, validation_error
from lifestory.schemas.analytics import ConversationStyle
from lifestory.schemas.conversation import (
    ConversationContext,
    ConversationMessage,
    ConversationSession,
)
from lifestory.services.completion import CompletionService
from lifestory.services.context_cache import ContextCache
from lifestory.services.conversation_store import ConversationStore, new_session_id
from lifestory.services.question_ledger import QuestionLedger, ScopeKey
from lifestory.services.strategies import SELF_CONVERSATION_GOALS, goals_for

logger = logging.getLogger(__name__)
settings = get_settings()


# =============================================================================
# STATE
# =============================================================================


class ControllerStatus(str, PyEnum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    SENDING = "sending"
    ENDING = "ending"


BUSY_STATUSES = (ControllerStatus.STARTING, ControllerStatus.SENDING, ControllerStatus.ENDING)


@dataclass(frozen=True)
class ControllerState:
    status: ControllerStatus = ControllerStatus.IDLE
    current_session: ConversationSession | None = None
    history: tuple[ConversationSession, ...] = ()
    context: ConversationContext | None = None
    drafts: Mapping[str, str] = field(default_factory=dict)
    error: ConversationError | None = None


# =============================================================================
# EVENTS
# =============================================================================


@dataclass(frozen=True)
class StartRequested:
    pass


@dataclass(frozen=True)
class ContextLoaded:
    context: ConversationContext


@dataclass(frozen=True)
class StartSucceeded:
    session: ConversationSession


@dataclass(frozen=True)
class StartFailed:
    error: ConversationError


@dataclass(frozen=True)
class SendRequested:
    message: ConversationMessage


@dataclass(frozen=True)
class SendSucceeded:
    message: ConversationMessage


@dataclass(frozen=True)
class SendFailed:
    error: ConversationError


@dataclass(frozen=True)
class SessionResumed:
    session: ConversationSession


@dataclass(frozen=True)
class SessionAdded:
    session: ConversationSession


@dataclass(frozen=True)
class EndRequested:
    pass


@dataclass(frozen=True)
class SessionEnded:
    pass


@dataclass(frozen=True)
class SessionDeleted:
    session_id: str


@dataclass(frozen=True)
class HistoryLoaded:
    sessions: tuple[ConversationSession, ...]


@dataclass(frozen=True)
class DraftChanged:
    session_id: str
    content: str


@dataclass(frozen=True)
class ErrorRaised:
    error: ConversationError


@dataclass(frozen=True)
class ErrorCleared:
    pass


Event = Union[
    StartRequested, ContextLoaded, StartSucceeded, StartFailed,
    SendRequested, SendSucceeded, SendFailed,
    SessionResumed, SessionAdded, EndRequested, SessionEnded, SessionDeleted,
    HistoryLoaded, DraftChanged, ErrorRaised, ErrorCleared,
]


class InvalidTransition(Exception):
    """Raised by transition() for an event the current status does not accept."""

    def __init__(self, status: ControllerStatus, event: Event) -> None:
        super().__init__(f"{type(event).__name__} not allowed while {status.value}")
        self.status = status
        self.event = event


# =============================================================================
# REDUCER
# =============================================================================


def _upsert_history(
    history: tuple[ConversationSession, ...], session: ConversationSession
) -> tuple[ConversationSession, ...]:
    """Replace the session in place if present, otherwise prepend it."""
    if any(s.session_id == session.session_id for s in history):
        return tuple(session if s.session_id == session.session_id else s for s in history)
    return (session, *history)


def _with_current(state: ControllerState, session: ConversationSession, **changes) -> ControllerState:
    return replace(
        state,
        current_session=session,
        history=_upsert_history(state.history, session),
        **changes,
    )


def transition(state: ControllerState, event: Event) -> ControllerState:
    """Apply one event. Pure: never mutates `state`."""
    status = state.status

    if isinstance(event, StartRequested):
        if status not in (ControllerStatus.IDLE, ControllerStatus.ACTIVE):
            raise InvalidTransition(status, event)
        return replace(state, status=ControllerStatus.STARTING, error=None)

    if isinstance(event, ContextLoaded):
        return replace(state, context=event.context)

    if isinstance(event, StartSucceeded):
        if status != ControllerStatus.STARTING:
            raise InvalidTransition(status, event)
        return _with_current(state, event.session, status=ControllerStatus.ACTIVE, error=None)

    if isinstance(event, StartFailed):
        if status != ControllerStatus.STARTING:
            raise InvalidTransition(status, event)
        return replace(state, status=ControllerStatus.IDLE, current_session=None, error=event.error)

    if isinstance(event, SendRequested):
        if status != ControllerStatus.ACTIVE or state.current_session is None:
            raise InvalidTransition(status, event)
        session = state.current_session.with_message(event.message)
        return _with_current(state, session, status=ControllerStatus.SENDING, error=None)

    if isinstance(event, SendSucceeded):
        if status != ControllerStatus.SENDING or state.current_session is None:
            raise InvalidTransition(status, event)
        session = state.current_session.with_message(event.message)
        return _with_current(state, session, status=ControllerStatus.ACTIVE)

    if isinstance(event, SendFailed):
        if status != ControllerStatus.SENDING:
            raise InvalidTransition(status, event)
        # The optimistic user message stays in place
        return replace(state, status=ControllerStatus.ACTIVE, error=event.error)

    if isinstance(event, SessionResumed):
        if status not in (ControllerStatus.IDLE, ControllerStatus.ACTIVE):
            raise InvalidTransition(status, event)
        return _with_current(state, event.session, status=ControllerStatus.ACTIVE, error=None)

    if isinstance(event, SessionAdded):
        return replace(state, history=_upsert_history(state.history, event.session))

    if isinstance(event, EndRequested):
        if status != ControllerStatus.ACTIVE:
            raise InvalidTransition(status, event)
        return replace(state, status=ControllerStatus.ENDING)

    if isinstance(event, SessionEnded):
        if status not in (ControllerStatus.ENDING, ControllerStatus.IDLE):
            raise InvalidTransition(status, event)
        return replace(state, status=ControllerStatus.IDLE, current_session=None)

    if isinstance(event, SessionDeleted):
        drafts = {k: v for k, v in state.drafts.items() if k != event.session_id}
        history = tuple(s for s in state.history if s.session_id != event.session_id)
        current = state.current_session
        if current is not None and current.session_id == event.session_id:
            if status in (ControllerStatus.STARTING, ControllerStatus.SENDING):
                raise InvalidTransition(status, event)
            return replace(
                state, status=ControllerStatus.IDLE, current_session=None, history=history, drafts=drafts
            )
        return replace(state, history=history, drafts=drafts)

    if isinstance(event, HistoryLoaded):
        return replace(state, history=event.sessions)

    if isinstance(event, DraftChanged):
        drafts = dict(state.drafts)
        if event.content:
            drafts[event.session_id] = event.content
        else:
            drafts.pop(event.session_id, None)
        return replace(state, drafts=drafts)

    if isinstance(event, ErrorRaised):
        return replace(state, error=event.error)

    if isinstance(event, ErrorCleared):
        return replace(state, error=None)

    raise TypeError(f"Unknown event: {event!r}")


# =============================================================================
# DRAFT AUTOSAVE
# =============================================================================


class DraftAutosaver:
    """Coalesces rapid draft edits into at most one write per idle period."""

    def __init__(self, store: ConversationStore, user_id: UUID, delay_seconds: float) -> None:
        self._store = store
        self._user_id = user_id
        self.delay_seconds = delay_seconds
        self._pending: dict[str, asyncio.Task] = {}
        self._writing: dict[str, asyncio.Task] = {}
        self._latest: dict[str, str] = {}

    def schedule(self, session_id: str, content: str) -> None:
        self._latest[session_id] = content
        previous = self._pending.pop(session_id, None)
        if previous is not None:
            previous.cancel()
        self._pending[session_id] = asyncio.create_task(self._save_later(session_id))

    def has_pending(self, session_id: str) -> bool:
        return session_id in self._pending or session_id in self._writing

    async def _save_later(self, session_id: str) -> None:
        await asyncio.sleep(self.delay_seconds)
        if self._pending.get(session_id) is asyncio.current_task():
            del self._pending[session_id]
        await self._write(session_id)

    async def _write(self, session_id: str) -> None:
        content = self._latest.pop(session_id, None)
        if content is None:
            return
        # Writes for one session run one after another and outlive a cancelled debounce
        write = asyncio.ensure_future(self._save(session_id, content, self._writing.get(session_id)))
        self._writing[session_id] = write
        write.add_done_callback(lambda task: self._forget_write(session_id, task))
        await asyncio.shield(write)

    async def _save(self, session_id: str, content: str, previous: asyncio.Task | None) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        try:
            await self._store.save_draft(session_id, self._user_id, content)
        except Exception:
            logger.exception("Draft autosave failed for session %s", session_id)

    def _forget_write(self, session_id: str, task: asyncio.Task) -> None:
        if self._writing.get(session_id) is task:
            del self._writing[session_id]

    async def flush(self, session_id: str) -> None:
        """Write any pending draft now instead of waiting for the debounce."""
        task = self._pending.pop(session_id, None)
        if task is not None:
            task.cancel()
        await self._write(session_id)
        await self.settle(session_id)

    def cancel(self, session_id: str) -> None:
        """Drop the unsaved draft. A write already under way still finishes."""
        task = self._pending.pop(session_id, None)
        if task is not None:
            task.cancel()
        self._latest.pop(session_id, None)

    async def settle(self, session_id: str) -> None:
        """Wait for the write under way for this session, if any."""
        write = self._writing.get(session_id)
        if write is not None:
            await asyncio.wait([write])

    async def discard(self, session_id: str) -> None:
        """Drop the unsaved draft and wait out any write, so a later clear wins."""
        self.cancel(session_id)
        await self.settle(session_id)

    async def flush_all(self) -> None:
        for session_id in list(self._latest):
            await self.flush(session_id)
        for session_id in list(self._writing):
            await self.settle(session_id)


# =============================================================================
# CONTROLLER
# =============================================================================


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class SessionController:
    """Runs the conversation state machine for one (user, book, chapter)."""

    def __init__(
        self,
        *,
        user_id: UUID,
        book_id: UUID,
        chapter_id: UUID | None = None,
        completion: CompletionService,
        store: ConversationStore,
        context_cache: ContextCache,
        question_ledger: QuestionLedger | None = None,
        draft_delay_seconds: float = settings.draft_save_delay_seconds,
        history_limit: int = settings.conversation_history_limit,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.user_id = user_id
        self.book_id = book_id
        self.chapter_id = chapter_id
        self._completion = completion
        self._store = store
        self._context_cache = context_cache
        self._ledger = question_ledger
        self._history_limit = history_limit
        self._clock = clock
        self._drafts = DraftAutosaver(store, user_id, draft_delay_seconds)

        self.state = ControllerState()
        self._pending_start: asyncio.Future | None = None
        self._deleting: set[str] = set()
        self._background: set[asyncio.Task] = set()

    def dispatch(self, event: Event) -> ControllerState:
        self.state = transition(self.state, event)
        return self.state

    @property
    def current_session(self) -> ConversationSession | None:
        return self.state.current_session

    @property
    def is_busy(self) -> bool:
        return self.state.status in BUSY_STATUSES

    def _next_timestamp(self, session: ConversationSession | None) -> datetime:
        """Now, but never earlier than the session's last message."""
        now = _aware(self._clock())
        last = session.last_message if session else None
        if last is not None and _aware(last.timestamp) > now:
            return _aware(last.timestamp)
        return now

    def _require_session_id(self, session_id: str | None) -> str:
        if session_id:
            return session_id
        if self.state.current_session is None:
            raise validation_error("No active conversation")
        return self.state.current_session.session_id

    # -------------------------------------------------------------------------
    # start
    # -------------------------------------------------------------------------

    async def start_conversation(
        self,
        conversation_type: ConversationType = ConversationType.INTERVIEW,
        medium: ConversationMedium = ConversationMedium.TEXT,
        *,
        style: ConversationStyle | None = None,
    ) -> ConversationSession:
        """Begin a new AI conversation and make it current."""
        if self._pending_start is not None:
            return await asyncio.shield(self._pending_start)
        if self.is_busy:
            raise ConversationError(ErrorType.BUSY)

        self.dispatch(StartRequested())
        task = asyncio.ensure_future(self._run_start(ConversationType(conversation_type), ConversationMedium(medium), style))
        self._pending_start = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._pending_start is task:
                self._pending_start = None

    async def _run_start(
        self,
        conversation_type: ConversationType,
        medium: ConversationMedium,
        style: ConversationStyle | None,
    ) -> ConversationSession:
        try:
            context = await self._context_cache.get_context(self.user_id, self.book_id, self.chapter_id)
            self.dispatch(ContextLoaded(context))
            result = await self._completion.begin(context, conversation_type, style)
            opening = ConversationMessage(
                role=ChatRole.ASSISTANT,
                content=result.assistant_text,
                timestamp=self._next_timestamp(None),
            )
            session = ConversationSession(
                session_id=result.session_id,
                user_id=self.user_id,
                book_id=self.book_id,
                chapter_id=self.chapter_id,
                conversation_type=conversation_type,
                conversation_medium=medium,
                messages=(opening,),
                goals=tuple(result.goals or goals_for(conversation_type, medium)),
                context=context,
            )
            session = await self._store.create_session(session)
        except ConversationError as e:
            self.dispatch(StartFailed(e))
            raise
        except Exception as e:
            logger.exception("Failed to start %s conversation for book %s", conversation_type.value, self.book_id)
            error = ConversationError.with_correlation_id(ErrorType.AI_SERVICE, "Failed to start conversation.")
            self.dispatch(StartFailed(error))
            raise error from e

        self.dispatch(StartSucceeded(session))
        logger.info("Started %s session %s", conversation_type.value, session.session_id)
        self._track_questions(session, result.assistant_text)
        return session

    async def start_self_conversation(self, content: str) -> ConversationSession:
        """Record a conversation the user has with themselves (no AI turn)."""
        text = (content or "").strip()
        if not text:
            raise validation_error("Message cannot be empty")
        if self.is_busy:
            raise ConversationError(ErrorType.BUSY)

        session = ConversationSession(
            session_id=new_session_id("self"),
            user_id=self.user_id,
            book_id=self.book_id,
            chapter_id=self.chapter_id,
            conversation_type=ConversationType.REFLECTION,
            conversation_medium=ConversationMedium.TEXT,
            messages=(ConversationMessage(role=ChatRole.USER, content=text, timestamp=self._next_timestamp(None)),),
            goals=SELF_CONVERSATION_GOALS,
            is_self_conversation=True,
        )
        session = await self._store.create_session(session)
        self.dispatch(SessionAdded(session))
        return session

    # -------------------------------------------------------------------------
    # send
    # -------------------------------------------------------------------------

    async def send_message(
        self, text: str, *, style: ConversationStyle | None = None
    ) -> ConversationSession:
        """
        Send a user message and wait for the assistant's reply.

        The user message is appended before the completion call and is kept
        if the call fails.
        """
        content = (text or "").strip()
        if not content:
            raise validation_error("Message cannot be empty")
        if self.is_busy:
            raise ConversationError(ErrorType.BUSY)
        session = self.state.current_session
        if self.state.status != ControllerStatus.ACTIVE or session is None:
            raise validation_error("No active conversation. Start or resume one first.")
        if session.session_id in self._deleting:
            raise ConversationError(ErrorType.BUSY)
        if session.is_self_conversation:
            raise validation_error("Self conversations do not have AI replies")

        user_message = ConversationMessage(
            role=ChatRole.USER, content=content, timestamp=self._next_timestamp(session)
        )
        session = self.dispatch(SendRequested(user_message)).current_session

        try:
            result = await self._completion.continue_session(
                session.session_id,
                session.messages,
                session.conversation_type,
                style,
                session.context or self.state.context,
            )
        except Exception as e:
            if isinstance(e, ConversationError):
                error = e
            else:
                logger.exception("Completion failed for session %s", session.session_id)
                error = ConversationError.with_correlation_id(ErrorType.AI_SERVICE)
            self.dispatch(SendFailed(error))
            await self._save_best_effort(self.state.current_session)
            if error is e:
                raise
            raise error from e

        reply = ConversationMessage(
            role=ChatRole.ASSISTANT,
            content=result.assistant_text,
            timestamp=self._next_timestamp(self.state.current_session),
        )
        session = self.dispatch(SendSucceeded(reply)).current_session

        try:
            saved = await self._store.save_messages(session.session_id, self.user_id, session.messages)
        except ConversationError as e:
            self.dispatch(ErrorRaised(e))
            raise
        if not saved:
            error = ConversationError(ErrorType.NOT_FOUND, "This conversation no longer exists.")
            self.dispatch(ErrorRaised(error))
            raise error

        await self._clear_draft_best_effort(session.session_id)
        self._track_questions(session, result.assistant_text)
        return session

    async def _save_best_effort(self, session: ConversationSession | None) -> None:
        if session is None:
            return
        try:
            await self._store.save_messages(session.session_id, self.user_id, session.messages)
        except Exception:
            logger.exception("Could not save optimistic messages for session %s", session.session_id)

    # -------------------------------------------------------------------------
    # resume / end / delete
    # -------------------------------------------------------------------------

    def resume_conversation(self, session: ConversationSession) -> ConversationSession:
        """Make a previously fetched session current. No I/O."""
        if session.user_id != self.user_id:
            raise ConversationError(ErrorType.PERMISSION)
        if self.is_busy or session.session_id in self._deleting:
            raise ConversationError(ErrorType.BUSY)
        self.dispatch(SessionResumed(session))
        return session

    async def end_conversation(self) -> None:
        """Clear the current session. Persisted data is kept."""
        session = self.state.current_session
        if session is None:
            return
        if self.is_busy:
            raise ConversationError(ErrorType.BUSY)
        self.dispatch(EndRequested())
        await self._drafts.flush(session.session_id)
        self.dispatch(SessionEnded())

    async def delete_conversation(self, session_id: str) -> bool:
        """
        Delete a persisted session and its draft.

        Returns False when the session did not exist or a delete for it is
        already in flight. Sends and resumes for the session are refused with
        BUSY until the delete finishes.
        """
        if session_id in self._deleting:
            return False
        current = self.state.current_session
        if current is not None and current.session_id == session_id and self.is_busy:
            raise ConversationError(ErrorType.BUSY)

        self._deleting.add(session_id)
        try:
            await self._drafts.discard(session_id)
            deleted = await self._store.delete_session(session_id, self.user_id)
            self.dispatch(SessionDeleted(session_id))
            if deleted:
                logger.info("Deleted session %s", session_id)
            return deleted
        finally:
            self._deleting.discard(session_id)

    # -------------------------------------------------------------------------
    # drafts
    # -------------------------------------------------------------------------

    def set_draft(self, content: str, session_id: str | None = None) -> None:
        sid = self._require_session_id(session_id)
        self.dispatch(DraftChanged(sid, content))
        self._drafts.schedule(sid, content)

    async def get_draft(self, session_id: str | None = None) -> str:
        sid = self._require_session_id(session_id)
        local = self.state.drafts.get(sid)
        if local is not None:
            return local
        return await self._store.get_draft(sid, self.user_id) or ""

    async def clear_draft(self, session_id: str | None = None) -> None:
        sid = self._require_session_id(session_id)
        self.dispatch(DraftChanged(sid, ""))
        await self._drafts.discard(sid)
        await self._store.clear_draft(sid, self.user_id)

    async def _clear_draft_best_effort(self, session_id: str) -> None:
        try:
            await self.clear_draft(session_id)
        except Exception:
            logger.exception("Could not clear draft for session %s", session_id)

    # -------------------------------------------------------------------------
    # history
    # -------------------------------------------------------------------------

    async def load_history(
        self, limit: int | None = None, *, book_id: UUID | None = None
    ) -> list[ConversationSession]:
        """Most recent sessions, newest first. Malformed messages are dropped."""
        sessions = await self._store.list_recent(
            self.user_id, limit=limit or self._history_limit, book_id=book_id
        )
        self.dispatch(HistoryLoaded(tuple(sessions)))
        return sessions

    # -------------------------------------------------------------------------
    # background work
    # -------------------------------------------------------------------------

    def _track_questions(self, session: ConversationSession, assistant_text: str) -> None:
        """Fire-and-forget question tracking for an assistant reply."""
        if self._ledger is None or session.book_id is None:
            return
        task = asyncio.create_task(self._track_questions_task(session, assistant_text))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _track_questions_task(self, session: ConversationSession, assistant_text: str) -> None:
        try:
            await self._ledger.track_response(
                ScopeKey(session.user_id, session.book_id),
                session.conversation_type,
                assistant_text,
                chapter_id=session.chapter_id,
                session_id=session.session_id,
            )
        except Exception:
            logger.exception("Background question tracking failed for session %s", session.session_id)

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        await self._drafts.flush_all()
        await self.wait_for_background()


# =============================================================================
# REGISTRY
# =============================================================================

ControllerKey = tuple[UUID, UUID, UUID | None]


class SessionControllerRegistry:
    """
    Keeps one controller per (user, book, chapter) so the in-flight guards
    hold across concurrent HTTP requests. Idle controllers are evicted
    oldest-first once the registry is full.
    """

    def __init__(
        self,
        factory: Callable[[UUID, UUID, UUID | None], SessionController],
        *,
        max_controllers: int = 1000,
    ) -> None:
        self._factory = factory
        self._controllers: OrderedDict[ControllerKey, SessionController] = OrderedDict()
        self.max_controllers = max_controllers

    def get(self, user_id: UUID, book_id: UUID, chapter_id: UUID | None = None) -> SessionController:
        key = (user_id, book_id, chapter_id)
        controller = self._controllers.get(key)
        if controller is None:
            controller = self._factory(user_id, book_id, chapter_id)
            self._controllers[key] = controller
            self._evict(keep=key)
        else:
            self._controllers.move_to_end(key)
        return controller

    def _evict(self, keep: ControllerKey) -> None:
        if len(self._controllers) <= self.max_controllers:
            return
        for key, controller in list(self._controllers.items()):
            if len(self._controllers) <= self.max_controllers:
                break
            if key != keep and not controller.is_busy:
                del self._controllers[key]

    def __len__(self) -> int:
        return len(self._controllers)

    async def close(self) -> None:
        for controller in list(self._controllers.values()):
            try:
                await controller.close()
            except Exception:
                logger.exception("Failed to close session controller for user %s", controller.user_id)
        self._controllers.clear()
