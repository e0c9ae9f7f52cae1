"""
FastAPI Dependencies for Authentication and Service Access.

Key patterns:
1. get_current_user: Extracts and validates JWT, returns User object
2. User-scoped queries: every store and ledger call takes user_id
3. Services live on app.state (built in main.install_services) and are
   fetched per request, so tests can swap them without patching modules

Security model:
- JWT stored in HttpOnly cookie (recommended) or Authorization header
- The voice socket takes the token from a `token` query parameter or the cookie
- All conversation data queries are scoped by user_id at the SQL level
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated
from uuid import UUID

from fastapi import Cookie, Depends, Header, HTTPException, Request, WebSocket, status
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lifestory.config import get_settings
from lifestory.db.models import Book, User
from lifestory.db.session import get_db
from lifestory.services.context_cache import ContextCache
from lifestory.services.conversation_store import ConversationStore
from lifestory.services.question_ledger import QuestionLedger
from lifestory.services.session_controller import SessionControllerRegistry
from lifestory.services.voice_relay import RealtimeVoiceRelay

settings = get_settings()


# =============================================================================
# JWT UTILITIES
# =============================================================================


def create_access_token(user_id: UUID) -> str:
    """
    Create a JWT access token for a user.

    Token payload contains:
    - sub: user_id as string (standard JWT subject claim)
    - exp: expiration timestamp
    """
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)
    payload = {
        "sub": str(user_id),
        "exp": expire,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> UUID | None:
    """
    Decode and validate a JWT access token.

    Returns user_id if valid, None if invalid/expired.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        user_id_str = payload.get("sub")
        if user_id_str is None:
            return None
        return UUID(user_id_str)
    except (JWTError, ValueError):
        return None


# =============================================================================
# AUTHENTICATION DEPENDENCIES
# =============================================================================


async def get_token_from_request(
    authorization: Annotated[str | None, Header()] = None,
    access_token: Annotated[str | None, Cookie()] = None,
) -> str:
    """
    Extract JWT token from request.

    Supports two methods (in order of preference):
    1. HttpOnly cookie named 'access_token'
    2. Authorization header: 'Bearer <token>'
    """
    if access_token:
        return access_token

    if authorization:
        parts = authorization.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    token: Annotated[str, Depends(get_token_from_request)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """
    Validate JWT and return the current authenticated user.

    Raises 401 if:
    - Token is missing, invalid, or expired
    - User no longer exists in database
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    user_id = decode_access_token(token)
    if user_id is None:
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise credentials_exception

    return user


def websocket_user_id(websocket: WebSocket) -> UUID | None:
    """
    Resolve the user for a WebSocket handshake.

    Browsers cannot set headers on a WebSocket, so the token comes from the
    `token` query parameter, falling back to the access_token cookie.
    """
    token = websocket.query_params.get("token") or websocket.cookies.get("access_token")
    if not token:
        return None
    return decode_access_token(token)


# Type alias for dependency injection
CurrentUser = Annotated[User, Depends(get_current_user)]
DbSession = Annotated[AsyncSession, Depends(get_db)]


# =============================================================================
# SERVICES (app.state)
# =============================================================================


def get_context_cache(request: Request) -> ContextCache:
    return request.app.state.context_cache


def get_question_ledger(request: Request) -> QuestionLedger:
    return request.app.state.question_ledger


def get_conversation_store(request: Request) -> ConversationStore:
    return request.app.state.conversation_store


def get_controllers(request: Request) -> SessionControllerRegistry:
    return request.app.state.controllers


def get_voice_relay(websocket: WebSocket) -> RealtimeVoiceRelay:
    return websocket.app.state.voice_relay


ContextCacheDep = Annotated[ContextCache, Depends(get_context_cache)]
QuestionLedgerDep = Annotated[QuestionLedger, Depends(get_question_ledger)]
ConversationStoreDep = Annotated[ConversationStore, Depends(get_conversation_store)]
ControllersDep = Annotated[SessionControllerRegistry, Depends(get_controllers)]


# =============================================================================
# QUERY HELPERS (enforce user scoping at query level)
# =============================================================================


async def get_user_resource_or_404(
    db: AsyncSession,
    model: type,
    resource_id: UUID,
    user_id: UUID,
):
    """
    Generic helper to fetch a user-owned resource by ID.

    Usage:
        book = await get_user_resource_or_404(db, Book, book_id, current_user.id)

    This enforces user scoping at the SQL level (WHERE user_id = ...).
    """
    result = await db.execute(
        select(model).where(model.id == resource_id, model.user_id == user_id)
    )
    resource = result.scalar_one_or_none()

    if resource is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Resource not found")

    return resource


async def require_book(db: AsyncSession, book_id: UUID, user_id: UUID) -> Book:
    """404 unless the book exists and belongs to the user."""
    return await get_user_resource_or_404(db, Book, book_id, user_id)
