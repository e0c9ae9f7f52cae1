"""
Realtime voice relay.

One VoiceRelayConnection per client socket. It persists an empty voice
session, opens a companion socket to the realtime speech service, and pumps
frames both ways until either side closes:

    client ──(allow-listed frames)──► upstream
    client ◄──(every frame)────────── upstream

Transcript events coming back from upstream are also turned into
ConversationMessages and the full message list is saved after each append.
Completed assistant utterances are handed to the question ledger in a
background task.

Closing either socket closes the other, flushes unsaved messages and removes
the connection from the ConnectionManager.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Protocol
from uuid import UUID

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from lifestory.config import get_settings
from lifestory.db.models import ChatRole, ConversationMedium, ConversationType, utc_now
from lifestory.errors import ConversationError, ErrorType
from lifestory.schemas.conversation import ConversationMessage, ConversationSession
from lifestory.services.conversation_store import ConversationStore, new_session_id
from lifestory.services.question_ledger import QuestionLedger, ScopeKey
from lifestory.services.strategies import get_strategy, goals_for

logger = logging.getLogger(__name__)
settings = get_settings()


# =============================================================================
# PROTOCOL
# =============================================================================

CLIENT_ALLOWED_TYPES = frozenset({
    "input_audio_buffer.append",
    "conversation.item.create",
    "response.create",
})

TRANSCRIPT_DELTA = "response.audio_transcript.delta"
TRANSCRIPT_DONE = "response.audio_transcript.done"
INPUT_TRANSCRIPTION_DONE = "conversation.item.input_audio_transcription.completed"
UPSTREAM_ERROR = "error"

CONNECTION_READY = "connection_ready"

# Close codes sent to the client
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_INTERNAL_ERROR = 1011


class ClientSocket(Protocol):
    """The subset of starlette's WebSocket the relay uses."""

    async def receive(self) -> Mapping[str, Any]: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str | None = None) -> None: ...


class UpstreamSocket(Protocol):
    """The subset of a websockets ClientConnection the relay uses."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


UpstreamConnector = Callable[[], Awaitable[UpstreamSocket]]


async def connect_realtime() -> UpstreamSocket:
    """Open a socket to the realtime speech service."""
    return await connect(
        settings.realtime_endpoint,
        additional_headers={
            "Authorization": f"Bearer {settings.openai_api_key}",
            "OpenAI-Beta": "realtime=v1",
        },
        max_size=None,
    )


def build_session_update(conversation_type: ConversationType) -> dict[str, Any]:
    """The session configuration frame sent right after the upstream socket opens."""
    return {
        "type": "session.update",
        "session": {
            "modalities": ["text", "audio"],
            "instructions": get_strategy(conversation_type).build_voice_instructions(),
            "voice": settings.realtime_voice,
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "input_audio_transcription": {"model": settings.realtime_transcription_model},
            "turn_detection": {
                "type": "server_vad",
                "threshold": settings.realtime_vad_threshold,
                "prefix_padding_ms": settings.realtime_prefix_padding_ms,
                "silence_duration_ms": settings.realtime_silence_duration_ms,
            },
            "temperature": settings.realtime_temperature,
            "max_response_output_tokens": "inf",
        },
    }


def error_frame(code: str, message: str) -> dict[str, Any]:
    return {"type": "error", "error": {"message": message, "code": code}}


def frame_type(raw: str | bytes) -> str | None:
    """The `type` of a JSON frame, or None if the frame is not a JSON object."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    value = data.get("type")
    return value if isinstance(value, str) else None


class RelayError(ConversationError):
    """A connection-level failure reported to the client as an error frame."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(ErrorType.CONNECTION, message)
        self.code = code


# =============================================================================
# CONNECTION MANAGER
# =============================================================================


class ConnectionManager:
    """Tracks live relay connections by session id."""

    def __init__(self) -> None:
        self._connections: dict[str, "VoiceRelayConnection"] = {}
        self._lock = asyncio.Lock()

    async def register(self, connection: "VoiceRelayConnection") -> None:
        async with self._lock:
            self._connections[connection.session_id] = connection
        logger.info("Voice connection registered: %s (%d active)", connection.session_id, len(self._connections))

    async def unregister(self, session_id: str) -> "VoiceRelayConnection | None":
        async with self._lock:
            connection = self._connections.pop(session_id, None)
        if connection is not None:
            logger.info("Voice connection removed: %s (%d active)", session_id, len(self._connections))
        return connection

    def get(self, session_id: str) -> "VoiceRelayConnection | None":
        return self._connections.get(session_id)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    async def close_all(self) -> None:
        """Close every live connection. Used at shutdown."""
        async with self._lock:
            connections = list(self._connections.values())
        for connection in connections:
            await connection.close(code=CLOSE_GOING_AWAY)


# =============================================================================
# CONNECTION
# =============================================================================


class RelayState(str, PyEnum):
    CONNECTING = "connecting"
    AWAITING_UPSTREAM = "awaiting_upstream"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


class VoiceRelayConnection:
    """State for one client/upstream socket pair."""

    def __init__(
        self,
        *,
        session_id: str,
        user_id: UUID,
        book_id: UUID,
        chapter_id: UUID | None,
        conversation_type: ConversationType,
        client: ClientSocket,
        store: ConversationStore,
        question_ledger: QuestionLedger | None,
        upstream_connector: UpstreamConnector,
        connect_timeout: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_id = session_id
        self.user_id = user_id
        self.book_id = book_id
        self.chapter_id = chapter_id
        self.conversation_type = conversation_type
        self.client = client
        self.upstream: UpstreamSocket | None = None
        self.state = RelayState.CONNECTING
        self.messages: list[ConversationMessage] = []
        self.pending_transcript: list[str] = []

        self._store = store
        self._ledger = question_ledger
        self._connector = upstream_connector
        self._connect_timeout = connect_timeout
        self._clock = clock
        self._saved_count = 0
        self._background: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # lifecycle
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Open both sides and relay until either closes. Always tears down."""
        close_code = CLOSE_NORMAL
        try:
            await self._open()
            await self._relay()
        except RelayError as e:
            logger.warning("Voice relay error for session %s: %s (%s)", self.session_id, e.description, e.code)
            await self._send_error(e.code, e.description)
            close_code = CLOSE_INTERNAL_ERROR
        except ConversationError as e:
            logger.warning("Voice session %s failed to initialize: %s", self.session_id, e.description)
            await self._send_error("initialization_failed", "Failed to initialize voice chat")
            close_code = CLOSE_INTERNAL_ERROR
        except Exception:
            logger.exception("Unexpected voice relay failure for session %s", self.session_id)
            await self._send_error("relay_error", "The voice connection failed unexpectedly")
            close_code = CLOSE_INTERNAL_ERROR
        finally:
            await self.close(code=close_code)

    async def _open(self) -> None:
        await self._store.create_session(
            ConversationSession(
                session_id=self.session_id,
                user_id=self.user_id,
                book_id=self.book_id,
                chapter_id=self.chapter_id,
                conversation_type=self.conversation_type,
                conversation_medium=ConversationMedium.VOICE,
                goals=tuple(goals_for(self.conversation_type, ConversationMedium.VOICE)),
            )
        )

        self.state = RelayState.AWAITING_UPSTREAM
        try:
            self.upstream = await asyncio.wait_for(self._connector(), timeout=self._connect_timeout)
        except asyncio.TimeoutError as e:
            raise RelayError("connection_timeout", "Timed out connecting to the voice service") from e
        except (OSError, WebSocketException) as e:
            raise RelayError("upstream_unavailable", "Could not reach the voice service") from e

        await self.upstream.send(json.dumps(build_session_update(self.conversation_type)))
        self.state = RelayState.STREAMING
        logger.info("Voice session %s streaming (%s)", self.session_id, self.conversation_type.value)
        await self._send_client({"type": CONNECTION_READY, "sessionId": self.session_id})

    async def _relay(self) -> None:
        client_pump = asyncio.create_task(self._client_to_upstream())
        upstream_pump = asyncio.create_task(self._upstream_to_client())
        try:
            done, _ = await asyncio.wait({client_pump, upstream_pump}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (client_pump, upstream_pump):
                task.cancel()
            await asyncio.gather(client_pump, upstream_pump, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def close(self, code: int = CLOSE_NORMAL) -> None:
        """Close both sockets and flush unsaved messages. Safe to call twice."""
        if self.state in (RelayState.CLOSING, RelayState.CLOSED):
            return
        self.state = RelayState.CLOSING

        upstream, self.upstream = self.upstream, None
        if upstream is not None:
            try:
                await upstream.close()
            except Exception:
                logger.debug("Upstream socket for %s was already closed", self.session_id)
        try:
            await self.client.close(code=code)
        except Exception:
            logger.debug("Client socket for %s was already closed", self.session_id)

        if self.pending_transcript:
            logger.debug("Discarding unfinished assistant transcript for %s", self.session_id)
            self.pending_transcript.clear()
        await self._flush()

        self.state = RelayState.CLOSED
        logger.info("Voice session %s closed with %d message(s)", self.session_id, len(self.messages))

    # -------------------------------------------------------------------------
    # pumps
    # -------------------------------------------------------------------------

    async def _client_to_upstream(self) -> None:
        while True:
            message = await self.client.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("Client disconnected from voice session %s", self.session_id)
                return

            raw = message.get("text")
            if raw is None:
                logger.debug("Dropping binary client frame for %s", self.session_id)
                continue
            kind = frame_type(raw)
            if kind not in CLIENT_ALLOWED_TYPES:
                logger.debug("Dropping client frame %r for %s", kind, self.session_id)
                continue
            if self.upstream is None:
                return
            try:
                await self.upstream.send(raw)
            except ConnectionClosed as e:
                raise RelayError("upstream_closed", "The voice service closed the connection") from e

    async def _upstream_to_client(self) -> None:
        try:
            async for raw in self.upstream:
                await self._handle_upstream_frame(raw)
        except ConnectionClosed as e:
            raise RelayError("upstream_closed", "The voice service closed the connection") from e
        logger.info("Voice service closed session %s", self.session_id)

    async def _handle_upstream_frame(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise RelayError("malformed_upstream_frame", "The voice service sent an unreadable message") from e
        try:
            event = json.loads(raw)
        except ValueError as e:
            raise RelayError("malformed_upstream_frame", "The voice service sent an unreadable message") from e
        if not isinstance(event, dict):
            raise RelayError("malformed_upstream_frame", "The voice service sent an unreadable message")

        kind = event.get("type")
        if kind == TRANSCRIPT_DELTA:
            delta = event.get("delta")
            if isinstance(delta, str):
                self.pending_transcript.append(delta)
        elif kind == TRANSCRIPT_DONE:
            await self._finish_assistant_transcript(event.get("transcript"))
        elif kind == INPUT_TRANSCRIPTION_DONE:
            transcript = event.get("transcript")
            if isinstance(transcript, str) and transcript.strip():
                await self._append(ChatRole.USER, transcript.strip())
        elif kind == UPSTREAM_ERROR:
            logger.warning("Voice service error for session %s: %s", self.session_id, event.get("error"))

        await self.client.send_text(raw)

    async def _finish_assistant_transcript(self, transcript: Any) -> None:
        buffered = "".join(self.pending_transcript)
        self.pending_transcript.clear()
        text = transcript.strip() if isinstance(transcript, str) and transcript.strip() else buffered.strip()
        if not text:
            return
        await self._append(ChatRole.ASSISTANT, text)
        self._track_questions(text)

    # -------------------------------------------------------------------------
    # persistence
    # -------------------------------------------------------------------------

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        if self.messages and self.messages[-1].timestamp > now:
            return self.messages[-1].timestamp
        return now

    async def _append(self, role: ChatRole, content: str) -> None:
        self.messages.append(ConversationMessage(role=role, content=content, timestamp=self._next_timestamp()))
        if not await self._persist():
            await self._send_error("persistence_failed", "Your conversation could not be saved. We will retry.")

    async def _persist(self) -> bool:
        """Overwrite the stored message list. Returns False on failure."""
        count = len(self.messages)
        try:
            await self._store.save_messages(self.session_id, self.user_id, self.messages)
        except ConversationError:
            logger.warning("Could not save voice transcript for session %s (%d messages)", self.session_id, count)
            return False
        self._saved_count = count
        return True

    async def _flush(self) -> None:
        if len(self.messages) > self._saved_count:
            await self._persist()

    # -------------------------------------------------------------------------
    # client output
    # -------------------------------------------------------------------------

    async def _send_client(self, payload: dict[str, Any]) -> None:
        await self.client.send_text(json.dumps(payload))

    async def _send_error(self, code: str, message: str) -> None:
        try:
            await self._send_client(error_frame(code, message))
        except Exception:
            logger.debug("Could not deliver error %s to client for %s", code, self.session_id)

    # -------------------------------------------------------------------------
    # question tracking
    # -------------------------------------------------------------------------

    def _track_questions(self, text: str) -> None:
        if self._ledger is None:
            return
        task = asyncio.create_task(self._track_questions_task(text))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _track_questions_task(self, text: str) -> None:
        try:
            await self._ledger.track_response(
                ScopeKey(self.user_id, self.book_id),
                self.conversation_type,
                text,
                chapter_id=self.chapter_id,
                session_id=self.session_id,
            )
        except Exception:
            logger.exception("Background question tracking failed for voice session %s", self.session_id)

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


# =============================================================================
# RELAY
# =============================================================================


class RealtimeVoiceRelay:
    """Creates, tracks and runs relay connections."""

    def __init__(
        self,
        *,
        store: ConversationStore,
        manager: ConnectionManager,
        question_ledger: QuestionLedger | None = None,
        upstream_connector: UpstreamConnector = connect_realtime,
        connect_timeout: float = settings.upstream_connect_timeout_seconds,
    ) -> None:
        self.store = store
        self.manager = manager
        self.question_ledger = question_ledger
        self.upstream_connector = upstream_connector
        self.connect_timeout = connect_timeout

    def create_connection(
        self,
        client: ClientSocket,
        *,
        user_id: UUID,
        book_id: UUID,
        chapter_id: UUID | None = None,
        conversation_type: ConversationType = ConversationType.INTERVIEW,
    ) -> VoiceRelayConnection:
        return VoiceRelayConnection(
            session_id=new_session_id("voice"),
            user_id=user_id,
            book_id=book_id,
            chapter_id=chapter_id,
            conversation_type=ConversationType(conversation_type),
            client=client,
            store=self.store,
            question_ledger=self.question_ledger,
            upstream_connector=self.upstream_connector,
            connect_timeout=self.connect_timeout,
        )

    async def handle(self, client: ClientSocket, **kwargs) -> VoiceRelayConnection:
        """Relay one accepted client socket until it closes."""
        connection = self.create_connection(client, **kwargs)
        await self.manager.register(connection)
        try:
            await connection.run()
        finally:
            await self.manager.unregister(connection.session_id)
        return connection
