"""Pytest configuration and fixtures."""

import os

# Settings are read at import time; required secrets must exist first
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+aiosqlite:///:memory:")

import asyncio
from collections.abc import AsyncGenerator, Callable, Sequence
from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from lifestory.api.deps import create_access_token
from lifestory.db.base import Base
from lifestory.db.models import Book, BookProfile, Chapter, ConversationType, User
from lifestory.db.session import get_db
from lifestory.main import app, install_services
from lifestory.schemas.analytics import ConversationStyle
from lifestory.schemas.conversation import ConversationContext, ConversationMessage
from lifestory.services.completion import BeginResult, ContinueResult
from lifestory.services.conversation_store import new_session_id


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions get their own connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'lifestory.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def user(session_factory) -> User:
    async with session_factory() as db:
        user = User(email="margaret@example.com", name="Margaret Hill")
        db.add(user)
        await db.commit()
        return user


@pytest.fixture
async def book(session_factory, user) -> Book:
    async with session_factory() as db:
        book = Book(user_id=user.id, title="A Life by the River")
        db.add(book)
        await db.flush()
        db.add(
            BookProfile(
                book_id=book.id,
                user_id=user.id,
                full_name="Margaret Hill",
                birth_year=1952,
                birthplace="Perth",
                life_themes=["resilience", "family"],
            )
        )
        await db.commit()
        return book


@pytest.fixture
async def chapter(session_factory, user, book) -> Chapter:
    async with session_factory() as db:
        chapter = Chapter(book_id=book.id, user_id=user.id, title="Early Years", content="I was born in Perth.")
        db.add(chapter)
        await db.commit()
        return chapter


# =============================================================================
# FAKES
# =============================================================================


class FakeCompletion:
    """Scripted completion service."""

    def __init__(
        self,
        opening: str = "Welcome. I'm glad you're here to work on your story.",
        replies: Sequence[str] = (),
    ) -> None:
        self.opening = opening
        self.replies = list(replies)
        self.begin_calls = 0
        self.continue_calls: list[list[ConversationMessage]] = []
        self.styles: list[ConversationStyle | None] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.delays: list[float] = []

    async def begin(
        self,
        context: ConversationContext | None,
        conversation_type: ConversationType,
        style: ConversationStyle | None = None,
    ) -> BeginResult:
        self.begin_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return BeginResult(
            session_id=new_session_id("text"),
            assistant_text=self.opening,
            goals=["Gather specific life stories and experiences"],
        )

    async def continue_session(
        self,
        session_id: str,
        messages: Sequence[ConversationMessage],
        conversation_type: ConversationType,
        style: ConversationStyle | None = None,
        context: ConversationContext | None = None,
    ) -> ContinueResult:
        self.continue_calls.append(list(messages))
        self.styles.append(style)
        if self.gate is not None:
            await self.gate.wait()
        if self.delays:
            await asyncio.sleep(self.delays.pop(0))
        if self.error is not None:
            raise self.error
        if self.replies:
            return ContinueResult(assistant_text=self.replies.pop(0))
        return ContinueResult(assistant_text=f"Thank you. (reply {len(self.continue_calls)})")


class CountingBuilder:
    """Context builder that records how often it is asked to build."""

    def __init__(self) -> None:
        self.calls: list[tuple[UUID, UUID, UUID | None]] = []

    async def build(self, user_id: UUID, book_id: UUID, chapter_id: UUID | None = None) -> ConversationContext:
        self.calls.append((user_id, book_id, chapter_id))
        return ConversationContext.model_validate({
            "user_profile": {"id": user_id},
            "book_profile": {"book_id": book_id, "title": f"Build {len(self.calls)}"},
            "life_themes": ["family"],
        })


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def fake_completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# HTTP
# =============================================================================


@pytest.fixture
def auth_headers(user) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
async def client(session_factory, fake_completion) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing FastAPI endpoints."""
    install_services(app, session_factory, completion=fake_completion)

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
    await app.state.controllers.close()
