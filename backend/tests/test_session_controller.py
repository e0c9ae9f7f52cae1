"""Tests for the text conversation state machine and its controller."""

import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from conftest import wait_until
from lifestory.db.models import ChatHistory, ChatRole, ConversationMedium, ConversationType
from lifestory.errors import ConversationError, ErrorType
from lifestory.schemas.conversation import ConversationMessage, ConversationSession
from lifestory.services.context_builder import DatabaseContextBuilder
from lifestory.services.context_cache import ContextCache
from lifestory.services.conversation_store import ConversationStore
from lifestory.services.question_ledger import QuestionLedger
from lifestory.services.session_controller import (
    ControllerState,
    ControllerStatus,
    DraftChanged,
    InvalidTransition,
    SendFailed,
    SendRequested,
    SendSucceeded,
    SessionController,
    SessionControllerRegistry,
    SessionDeleted,
    StartRequested,
    StartSucceeded,
    transition,
)

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


def message(role: ChatRole, content: str) -> ConversationMessage:
    return ConversationMessage(role=role, content=content, timestamp=NOW)


def session(session_id: str = "text_1_abc", *messages: ConversationMessage) -> ConversationSession:
    return ConversationSession(session_id=session_id, user_id=uuid.uuid4(), messages=messages)


# =============================================================================
# REDUCER
# =============================================================================


def test_start_lifecycle():
    state = transition(ControllerState(), StartRequested())
    assert state.status == ControllerStatus.STARTING

    opened = session("text_1_abc", message(ChatRole.ASSISTANT, "Welcome."))
    state = transition(state, StartSucceeded(opened))

    assert state.status == ControllerStatus.ACTIVE
    assert state.current_session == opened
    assert state.history == (opened,)


def test_transition_does_not_mutate_state():
    before = ControllerState()

    after = transition(before, StartRequested())

    assert before.status == ControllerStatus.IDLE
    assert after is not before


def test_send_requires_active_session():
    with pytest.raises(InvalidTransition) as exc_info:
        transition(ControllerState(), SendRequested(message(ChatRole.USER, "Hello")))

    assert exc_info.value.status == ControllerStatus.IDLE


def test_send_failure_keeps_the_optimistic_message():
    opened = session("text_1_abc", message(ChatRole.ASSISTANT, "Welcome."))
    state = transition(transition(ControllerState(), StartRequested()), StartSucceeded(opened))
    state = transition(state, SendRequested(message(ChatRole.USER, "I grew up in Perth.")))
    assert state.status == ControllerStatus.SENDING

    error = ConversationError(ErrorType.AI_SERVICE)
    state = transition(state, SendFailed(error))

    assert state.status == ControllerStatus.ACTIVE
    assert state.error is error
    assert [m.content for m in state.current_session.messages] == ["Welcome.", "I grew up in Perth."]
    assert state.history[0] == state.current_session


def test_send_success_appends_reply():
    opened = session("text_1_abc", message(ChatRole.ASSISTANT, "Welcome."))
    state = transition(transition(ControllerState(), StartRequested()), StartSucceeded(opened))
    state = transition(state, SendRequested(message(ChatRole.USER, "Hi")))

    state = transition(state, SendSucceeded(message(ChatRole.ASSISTANT, "Hello again.")))

    assert [m.role for m in state.current_session.messages] == [
        ChatRole.ASSISTANT, ChatRole.USER, ChatRole.ASSISTANT,
    ]


def test_cannot_delete_current_session_mid_send():
    opened = session("text_1_abc", message(ChatRole.ASSISTANT, "Welcome."))
    state = transition(transition(ControllerState(), StartRequested()), StartSucceeded(opened))
    state = transition(state, SendRequested(message(ChatRole.USER, "Hi")))

    with pytest.raises(InvalidTransition):
        transition(state, SessionDeleted("text_1_abc"))


def test_delete_current_session_returns_to_idle():
    opened = session("text_1_abc", message(ChatRole.ASSISTANT, "Welcome."))
    state = transition(transition(ControllerState(), StartRequested()), StartSucceeded(opened))
    state = transition(state, DraftChanged("text_1_abc", "half a thought"))

    state = transition(state, SessionDeleted("text_1_abc"))

    assert state.status == ControllerStatus.IDLE
    assert state.current_session is None
    assert state.history == ()
    assert state.drafts == {}


def test_empty_draft_removes_entry():
    state = transition(ControllerState(), DraftChanged("s1", "hello"))
    assert state.drafts == {"s1": "hello"}

    assert transition(state, DraftChanged("s1", "")).drafts == {}


# =============================================================================
# CONTROLLER
# =============================================================================


class CountingStore(ConversationStore):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.draft_saves: list[tuple[str, str]] = []

    async def save_draft(self, session_id, user_id, content):
        self.draft_saves.append((session_id, content))
        await super().save_draft(session_id, user_id, content)


@pytest.fixture
def store(session_factory) -> CountingStore:
    return CountingStore(session_factory)


@pytest.fixture
def ledger(session_factory) -> QuestionLedger:
    return QuestionLedger(session_factory)


@pytest.fixture
async def make_controller(session_factory, store, ledger, fake_completion, user, book):
    controllers: list[SessionController] = []

    def make(**overrides) -> SessionController:
        options = dict(
            user_id=user.id,
            book_id=book.id,
            completion=fake_completion,
            store=store,
            context_cache=ContextCache(DatabaseContextBuilder(session_factory)),
            question_ledger=ledger,
            draft_delay_seconds=0.05,
        )
        options.update(overrides)
        controller = SessionController(**options)
        controllers.append(controller)
        return controller

    yield make
    for controller in controllers:
        await controller.close()


@pytest.fixture
def controller(make_controller) -> SessionController:
    return make_controller()


async def test_start_conversation_persists_opening(controller, store, user):
    started = await controller.start_conversation(ConversationType.INTERVIEW)

    assert controller.state.status == ControllerStatus.ACTIVE
    assert started.context.book_profile.title == "A Life by the River"
    stored = await store.get_session(started.session_id, user.id)
    assert [m.role for m in stored.messages] == [ChatRole.ASSISTANT]
    assert stored.goals == started.goals


async def test_send_message_round_trip(controller, store, user, fake_completion):
    started = await controller.start_conversation()

    updated = await controller.send_message("  I grew up in Perth.  ")

    assert [m.content for m in updated.messages][1] == "I grew up in Perth."
    assert fake_completion.continue_calls[0][-1].content == "I grew up in Perth."
    stored = await store.get_session(started.session_id, user.id)
    assert len(stored.messages) == 3


async def test_messages_stay_in_send_order(controller, fake_completion):
    await controller.start_conversation()
    fake_completion.delays = [0.05, 0.0, 0.02]

    for text in ("first", "second", "third"):
        await controller.send_message(text)

    messages = controller.current_session.messages
    assert [m.content for m in messages if m.role == ChatRole.USER] == ["first", "second", "third"]
    assert [m.role for m in messages[1:]] == [ChatRole.USER, ChatRole.ASSISTANT] * 3
    assert all(a.timestamp <= b.timestamp for a, b in zip(messages, messages[1:]))


async def test_failed_completion_keeps_user_message(controller, store, user, fake_completion):
    started = await controller.start_conversation()
    fake_completion.error = RuntimeError("upstream down")

    with pytest.raises(ConversationError) as exc_info:
        await controller.send_message("Do you remember the flood?")

    assert exc_info.value.error_type == ErrorType.AI_SERVICE
    assert exc_info.value.correlation_id
    assert controller.state.status == ControllerStatus.ACTIVE
    assert controller.state.error is exc_info.value
    assert controller.current_session.messages[-1].content == "Do you remember the flood?"
    stored = await store.get_session(started.session_id, user.id)
    assert stored.messages[-1].content == "Do you remember the flood?"

    fake_completion.error = None
    updated = await controller.send_message("It was 1974.")
    assert len(updated.messages) == 4
    assert controller.state.error is None


async def test_conversation_errors_propagate_unchanged(controller, fake_completion):
    await controller.start_conversation()
    fake_completion.error = ConversationError(ErrorType.TIMEOUT)

    with pytest.raises(ConversationError) as exc_info:
        await controller.send_message("Hello?")

    assert exc_info.value is fake_completion.error


async def test_send_validation(controller):
    with pytest.raises(ConversationError) as exc_info:
        await controller.send_message("Hello")
    assert exc_info.value.error_type == ErrorType.VALIDATION

    await controller.start_conversation()
    with pytest.raises(ConversationError) as exc_info:
        await controller.send_message("   ")
    assert exc_info.value.error_type == ErrorType.VALIDATION


async def test_send_while_sending_is_rejected(controller, fake_completion):
    await controller.start_conversation()
    fake_completion.gate = asyncio.Event()

    first = asyncio.create_task(controller.send_message("one"))
    await wait_until(lambda: controller.is_busy)

    with pytest.raises(ConversationError) as exc_info:
        await controller.send_message("two")
    assert exc_info.value.error_type == ErrorType.BUSY
    with pytest.raises(ConversationError):
        await controller.start_conversation()

    fake_completion.gate.set()
    updated = await first
    assert [m.content for m in updated.user_messages] == ["one"]


async def test_concurrent_starts_share_one_session(controller, store, user, fake_completion):
    fake_completion.gate = asyncio.Event()

    first = asyncio.create_task(controller.start_conversation())
    second = asyncio.create_task(controller.start_conversation())
    await wait_until(lambda: fake_completion.begin_calls == 1)
    fake_completion.gate.set()
    a, b = await asyncio.gather(first, second)

    assert a.session_id == b.session_id
    assert fake_completion.begin_calls == 1
    assert await store.count(user.id) == 1


async def test_failed_start_returns_to_idle(make_controller, user):
    controller = make_controller(book_id=uuid.uuid4())

    with pytest.raises(ConversationError) as exc_info:
        await controller.start_conversation()

    assert exc_info.value.error_type == ErrorType.NOT_FOUND
    assert controller.state.status == ControllerStatus.IDLE
    assert controller.state.error is exc_info.value


async def test_duplicate_delete_is_ignored(controller, store, user):
    started = await controller.start_conversation()

    results = await asyncio.gather(
        controller.delete_conversation(started.session_id),
        controller.delete_conversation(started.session_id),
    )

    assert sorted(results) == [False, True]
    assert controller.current_session is None
    assert controller.state.status == ControllerStatus.IDLE
    assert await store.get_session(started.session_id, user.id) is None


async def test_delete_mid_send_is_rejected(controller, fake_completion):
    started = await controller.start_conversation()
    fake_completion.gate = asyncio.Event()
    sending = asyncio.create_task(controller.send_message("one"))
    await wait_until(lambda: controller.is_busy)

    with pytest.raises(ConversationError) as exc_info:
        await controller.delete_conversation(started.session_id)

    assert exc_info.value.error_type == ErrorType.BUSY
    fake_completion.gate.set()
    await sending


class SlowDeleteStore(CountingStore):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.delete_gate = asyncio.Event()
        self.deletes_started = 0

    async def delete_session(self, session_id, user_id):
        self.deletes_started += 1
        await self.delete_gate.wait()
        return await super().delete_session(session_id, user_id)


async def test_send_while_deleting_is_rejected(make_controller, session_factory, user, fake_completion):
    store = SlowDeleteStore(session_factory)
    controller = make_controller(store=store)
    started = await controller.start_conversation()
    deleting = asyncio.create_task(controller.delete_conversation(started.session_id))
    await wait_until(lambda: store.deletes_started == 1)

    with pytest.raises(ConversationError) as exc_info:
        await controller.send_message("Are you still there?")
    assert exc_info.value.error_type == ErrorType.BUSY

    stored = await store.get_session(started.session_id, user.id)
    with pytest.raises(ConversationError):
        controller.resume_conversation(stored)

    store.delete_gate.set()
    assert await deleting is True
    assert controller.state.status == ControllerStatus.IDLE
    assert controller.current_session is None
    assert fake_completion.continue_calls == []
    assert await store.get_session(started.session_id, user.id) is None


async def test_resume_checks_owner(controller, make_controller, store, user):
    started = await controller.start_conversation()
    await controller.end_conversation()
    assert controller.current_session is None

    stored = await store.get_session(started.session_id, user.id)
    resumed = make_controller().resume_conversation(stored)
    assert resumed.session_id == started.session_id

    stranger = make_controller(user_id=uuid.uuid4())
    with pytest.raises(ConversationError) as exc_info:
        stranger.resume_conversation(stored)
    assert exc_info.value.error_type == ErrorType.PERMISSION


async def test_self_conversation_is_not_made_current(controller, store, user):
    recorded = await controller.start_self_conversation("Today I remembered my grandmother's kitchen.")

    assert recorded.is_self_conversation is True
    assert recorded.conversation_type == ConversationType.REFLECTION
    assert recorded.conversation_medium == ConversationMedium.TEXT
    assert controller.current_session is None
    assert controller.state.history[0].session_id == recorded.session_id
    assert recorded.session_id.startswith("self_")
    assert (await store.get_session(recorded.session_id, user.id)).messages[0].role == ChatRole.USER


async def test_history_drops_malformed_messages(controller, session_factory, user, book):
    async with session_factory() as db:
        db.add(ChatHistory(
            user_id=user.id,
            book_id=book.id,
            session_id="text_1_legacy",
            conversation_type="small_talk",
            messages=[
                {"role": "user", "content": "Hello", "timestamp": "2026-01-01T00:00:00+00:00"},
                {"role": "robot", "content": "beep", "timestamp": "2026-01-01T00:00:01+00:00"},
                {"role": "assistant", "content": "", "timestamp": "2026-01-01T00:00:02+00:00"},
                {"role": "assistant"},
                "junk",
            ],
        ))
        await db.commit()

    [loaded] = await controller.load_history()

    assert [m.content for m in loaded.messages] == ["Hello"]
    assert loaded.conversation_type == ConversationType.INTERVIEW
    assert controller.state.history == (loaded,)


async def test_draft_edits_are_debounced(controller, store, user):
    started = await controller.start_conversation()

    for content in ("I", "I was", "I was born"):
        controller.set_draft(content)
    assert await controller.get_draft() == "I was born"

    await wait_until(lambda: store.draft_saves)
    await asyncio.sleep(0.1)
    assert store.draft_saves == [(started.session_id, "I was born")]
    assert await store.get_draft(started.session_id, user.id) == "I was born"


async def test_send_clears_draft(controller, store, user):
    started = await controller.start_conversation()
    await store.save_draft(started.session_id, user.id, "leftover")

    await controller.send_message("Here it is.")

    assert await store.get_draft(started.session_id, user.id) is None
    assert await controller.get_draft() == ""


class SlowDraftStore(CountingStore):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.save_gate = asyncio.Event()

    async def save_draft(self, session_id, user_id, content):
        self.draft_saves.append((session_id, content))
        await self.save_gate.wait()
        await ConversationStore.save_draft(self, session_id, user_id, content)


async def test_send_clears_draft_saved_during_the_send(make_controller, session_factory, user):
    store = SlowDraftStore(session_factory)
    controller = make_controller(store=store, draft_delay_seconds=0.01)
    started = await controller.start_conversation()
    controller.set_draft("half typed")
    await wait_until(lambda: store.draft_saves)

    sending = asyncio.create_task(controller.send_message("Here is the whole thought."))
    await asyncio.sleep(0.05)
    assert not sending.done()

    store.save_gate.set()
    await sending

    assert await store.get_draft(started.session_id, user.id) is None
    assert await controller.get_draft() == ""


async def test_delete_waits_for_draft_save(make_controller, session_factory, user):
    store = SlowDraftStore(session_factory)
    controller = make_controller(store=store, draft_delay_seconds=0.01)
    started = await controller.start_conversation()
    controller.set_draft("half typed")
    await wait_until(lambda: store.draft_saves)

    deleting = asyncio.create_task(controller.delete_conversation(started.session_id))
    await asyncio.sleep(0.05)
    store.save_gate.set()

    assert await deleting is True
    assert await store.get_draft(started.session_id, user.id) is None


async def test_end_conversation_flushes_pending_draft(make_controller, store, user):
    controller = make_controller(draft_delay_seconds=60)
    started = await controller.start_conversation()
    controller.set_draft("half-written")

    await controller.end_conversation()

    assert controller.state.status == ControllerStatus.IDLE
    assert await store.get_draft(started.session_id, user.id) == "half-written"


async def test_assistant_questions_are_tracked(controller, ledger, user, book, fake_completion):
    fake_completion.replies = ["Perth sounds wonderful. What was your neighbourhood in Perth like?"]
    await controller.start_conversation()

    await controller.send_message("I grew up in Perth.")
    await controller.wait_for_background()

    [question] = await ledger.history(user.id, book.id)
    assert question.question_text == "What was your neighbourhood in Perth like?"
    assert question.semantic_keywords == ["neighbourhood", "perth"]
    assert question.conversation_session_id == controller.current_session.session_id


# =============================================================================
# REGISTRY
# =============================================================================


async def test_registry_reuses_and_evicts_idle_controllers(make_controller):
    registry = SessionControllerRegistry(
        lambda user_id, book_id, chapter_id: make_controller(user_id=user_id, book_id=book_id, chapter_id=chapter_id),
        max_controllers=2,
    )
    user_id = uuid.uuid4()
    books = [uuid.uuid4() for _ in range(3)]

    first = registry.get(user_id, books[0])
    assert registry.get(user_id, books[0]) is first

    registry.get(user_id, books[1])
    registry.get(user_id, books[2])

    assert len(registry) == 2
    assert registry.get(user_id, books[0]) is not first
    await registry.close()
    assert len(registry) == 0
