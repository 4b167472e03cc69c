"""
Voice WebSocket session manager.
Owns one VoiceConnection per socket and drives it through the connection
state machine in response to inbound control frames.
"""

import asyncio
import base64
import binascii
import functools
import logging
import time
import uuid
from collections import deque
from typing import Deque, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from pydantic import ValidationError

from voicebot.config import settings
from voicebot.debug_audio import DebugAudioRecorder
from voicebot.errors import InvalidStateError, VoicebotError
from voicebot.models import (
    AudioChunkMessage,
    AudioReceivedMessage,
    BotResponseMessage,
    ClientMessage,
    ConnectionEstablishedMessage,
    ErrorMessage,
    GeneratingResponseMessage,
    NoSpeechDetectedMessage,
    PingMessage,
    PongMessage,
    ProcessingAudioMessage,
    ServerMessage,
    SessionStartedMessage,
    StartSessionMessage,
    StopRecordingMessage,
    TranscriptionCompleteMessage,
    client_message_adapter,
)
from voicebot.orchestration.silence_timer import SilenceTimer
from voicebot.orchestration.turn_orchestrator import TurnOrchestrator
from voicebot.state_machine import ConnectionState, StateMachine
from voicebot.usage.ledger import ModelCategory, UsageLedger

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class VoiceConnection:
    """
    Per-socket record: bound session, audio buffer, transcript accumulator
    and lifecycle state.
    """

    def __init__(self, client_id: str, websocket: WebSocket):
        self.client_id = client_id
        self.websocket = websocket
        self.session_id: Optional[str] = None
        self.audio_chunks: List[bytes] = []
        self.full_text = ""
        self.state_machine = StateMachine()
        self.connected_at = now_ms()
        self.last_activity = self.connected_at
        self.total_messages = 0
        self.lock = asyncio.Lock()
        self.silence_timer: Optional[SilenceTimer] = None
        self.pipeline_task: Optional[asyncio.Task] = None
        self.released = False

    @property
    def state(self) -> ConnectionState:
        return self.state_machine.current_state

    def touch(self, timestamp: Optional[int] = None):
        self.last_activity = timestamp if timestamp is not None else now_ms()

    def __repr__(self) -> str:
        return f"<VoiceConnection(client_id={self.client_id}, session_id={self.session_id}, state={self.state.value})>"


class ResponseTimeStats:
    """Process-wide voice turn latency, logged every `log_every` turns."""

    def __init__(self, window: int = 10, log_every: int = 10):
        self.total_turns = 0
        self.total_ms = 0
        self.fastest_ms: Optional[int] = None
        self.slowest_ms: Optional[int] = None
        self.log_every = log_every
        self._recent: Deque[int] = deque(maxlen=window)

    def record(self, elapsed_ms: int):
        self.total_turns += 1
        self.total_ms += elapsed_ms
        self._recent.append(elapsed_ms)
        self.fastest_ms = elapsed_ms if self.fastest_ms is None else min(self.fastest_ms, elapsed_ms)
        self.slowest_ms = elapsed_ms if self.slowest_ms is None else max(self.slowest_ms, elapsed_ms)

        if self.total_turns % self.log_every == 0:
            snapshot = self.snapshot()
            logger.info(
                f"⏱️ Voice response times after {snapshot['total_turns']} turns: "
                f"avg={snapshot['average_ms']}ms, fastest={snapshot['fastest_ms']}ms, "
                f"slowest={snapshot['slowest_ms']}ms, recent avg={snapshot['recent_average_ms']}ms"
            )

    def snapshot(self) -> dict:
        return {
            "total_turns": self.total_turns,
            "average_ms": round(self.total_ms / self.total_turns) if self.total_turns else 0,
            "fastest_ms": self.fastest_ms or 0,
            "slowest_ms": self.slowest_ms or 0,
            "recent_average_ms": round(sum(self._recent) / len(self._recent)) if self._recent else 0,
        }


class VoiceSessionManager:
    """
    Manages active voice connections and message routing.

    Responsibilities:
    - Track active connections (client_id → VoiceConnection)
    - Connection lifecycle (accept, release, idle eviction)
    - Dispatch inbound frames to bind / append / stop / ping
    - Run the stop-triggered turn pipeline as a background task
    - Guarded sends that never raise into business logic
    """

    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        transcriber,
        ledger: UsageLedger,
        debug_recorder: Optional[DebugAudioRecorder] = None,
        idle_timeout_seconds: Optional[int] = None,
        sweep_interval_seconds: Optional[int] = None,
        silence_timeout_ms: Optional[int] = None,
        stt_model: Optional[str] = None,
    ):
        self.orchestrator = orchestrator
        self.transcriber = transcriber
        self.ledger = ledger
        self.debug_recorder = debug_recorder or DebugAudioRecorder(settings.storage_dir, enabled=False)
        self.idle_timeout_ms = (
            idle_timeout_seconds if idle_timeout_seconds is not None else settings.idle_timeout_seconds
        ) * 1000
        self.sweep_interval_seconds = (
            sweep_interval_seconds if sweep_interval_seconds is not None else settings.idle_sweep_interval_seconds
        )
        self.silence_timeout_ms = silence_timeout_ms if silence_timeout_ms is not None else settings.silence_timeout_ms
        self.stt_model = stt_model or getattr(transcriber, "model", None) or settings.stt_model

        self.active_connections: Dict[str, VoiceConnection] = {}
        self.response_times = ResponseTimeStats()
        self._sweep_task: Optional[asyncio.Task] = None

        logger.info("VoiceSessionManager initialized")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket) -> VoiceConnection:
        """Accept a socket, register it and announce its client id."""
        await websocket.accept()

        client_id = str(uuid.uuid4())
        connection = VoiceConnection(client_id, websocket)
        connection.silence_timer = SilenceTimer(
            functools.partial(self.stop_recording, connection),
            timeout_ms=self.silence_timeout_ms,
        )
        self._register_state_hooks(connection)
        self.active_connections[client_id] = connection

        logger.info(
            f"🔌 Voice client connected: client_id={client_id}, "
            f"client={websocket.client}, total_connections={len(self.active_connections)}"
        )

        await self.send(connection, ConnectionEstablishedMessage(client_id=client_id))
        return connection

    def _register_state_hooks(self, connection: VoiceConnection):
        """Leaving RECORDING (stop, re-bind) or closing ends the silence countdown."""

        async def cancel_silence_timer():
            if connection.silence_timer:
                connection.silence_timer.cancel()

        connection.state_machine.register_on_exit(ConnectionState.RECORDING, cancel_silence_timer)
        connection.state_machine.register_on_enter(ConnectionState.CLOSED, cancel_silence_timer)

    async def serve(self, websocket: WebSocket):
        """Receive loop for one socket; frames are handled strictly in arrival order."""
        connection = await self.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_raw(connection, raw)
        except WebSocketDisconnect as e:
            logger.info(f"Voice client disconnected: {connection.client_id} (code={e.code})")
        except RuntimeError as e:
            # Receiving on a socket the idle sweep already closed
            logger.debug(f"Receive loop ended for {connection.client_id}: {e}")
        finally:
            await self.release(connection)

    async def release(self, connection: VoiceConnection):
        """
        Release a connection record. Idempotent.

        In-flight pipeline work is left to finish; its sends are dropped.
        """
        if connection.released:
            return
        connection.released = True

        await connection.state_machine.transition(ConnectionState.CLOSED, "connection released")
        self.active_connections.pop(connection.client_id, None)

        if connection.session_id:
            await self.ledger.release(connection.session_id)

        logger.info(
            f"Voice client released: client_id={connection.client_id}, "
            f"duration_ms={now_ms() - connection.connected_at}, "
            f"total_messages={connection.total_messages}, "
            f"remaining_connections={len(self.active_connections)}"
        )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def is_writable(self, connection: VoiceConnection) -> bool:
        websocket = connection.websocket
        return (
            not connection.released
            and websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, connection: VoiceConnection, message: ServerMessage) -> bool:
        """
        Send one outbound frame.

        Returns:
            True if sent, False if the socket is gone (never raises)
        """
        if not self.is_writable(connection):
            logger.debug(f"Dropping {message.type} for closed connection {connection.client_id}")
            return False

        try:
            await connection.websocket.send_json(message.to_wire())
            connection.total_messages += 1
            logger.debug(f"Message sent to {connection.client_id}: type={message.type}")
            return True
        except WebSocketDisconnect:
            logger.warning(f"WebSocket disconnected while sending to {connection.client_id}")
            return False
        except Exception as e:
            logger.error(f"Error sending message to {connection.client_id}: {e}", exc_info=True)
            return False

    async def send_error(self, connection: VoiceConnection, message: str) -> bool:
        return await self.send(connection, ErrorMessage(message=message))

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------

    async def handle_raw(self, connection: VoiceConnection, raw: str):
        """Validate a text frame and dispatch it. Bad frames yield an error event."""
        if connection.released or connection.state_machine.is_closed:
            logger.debug(f"Ignoring frame for closed connection {connection.client_id}")
            return

        connection.touch()

        try:
            message = client_message_adapter.validate_json(raw)
        except ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            detail = first.get("msg", "invalid payload")
            logger.warning(f"Invalid frame from {connection.client_id}: {detail}")
            await self.send_error(connection, f"Invalid message: {detail}")
            return

        await self.handle_message(connection, message)

    async def handle_message(self, connection: VoiceConnection, message: ClientMessage):
        match message:
            case StartSessionMessage(session_id=session_id):
                await self.bind_session(connection, session_id)
            case AudioChunkMessage(audio_data=audio_data):
                await self.append_audio(connection, audio_data)
            case StopRecordingMessage():
                await self.stop_recording(connection)
            case PingMessage():
                await self.send(connection, PongMessage(timestamp=now_ms()))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def bind_session(self, connection: VoiceConnection, session_id: str):
        """
        Bind a conversation session; resets the audio buffer and transcript.
        Failures are reported as an error event and leave the connection as it was.
        """
        try:
            if connection.state == ConnectionState.PROCESSING:
                raise InvalidStateError("A turn is still being processed")
            session = await self.orchestrator.validate_session(session_id)
        except VoicebotError as e:
            logger.warning(f"Bind failed for {connection.client_id} → {session_id}: {e.message}")
            await self.send_error(connection, f"Failed to start session: {e.message}")
            return
        except Exception as e:
            logger.error(f"❌ Unexpected bind error for {connection.client_id} → {session_id}: {e}", exc_info=True)
            await self.send_error(connection, f"Failed to start session: {e}")
            return

        async with connection.lock:
            connection.audio_chunks.clear()
            connection.full_text = ""

        if connection.released:
            return

        previous = connection.session_id
        self.ledger.acquire(session.id, user_id=session.agent.user_id, agent_id=session.agent.id, restart=True)
        connection.session_id = session.id
        if previous:
            await self.ledger.release(previous)

        await connection.state_machine.transition(ConnectionState.SESSION_BOUND, f"bound {session.id}")

        logger.info(f"🎙️ Voice session started: client={connection.client_id}, session={session.id}")
        await self.send(connection, SessionStartedMessage(session_id=session.id))

    async def append_audio(self, connection: VoiceConnection, audio_data: str):
        """Append one base64 chunk and acknowledge with the running chunk count."""
        if connection.state not in (ConnectionState.SESSION_BOUND, ConnectionState.RECORDING):
            logger.warning(f"Audio chunk ignored for {connection.client_id} in {connection.state.value}")
            return
        if not self.is_writable(connection):
            return

        try:
            chunk = base64.b64decode(audio_data, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Undecodable audio chunk from {connection.client_id}: {e}")
            await self.send_error(connection, "Error processing audio chunk")
            return

        if not chunk:
            await self.send_error(connection, "Error processing audio chunk")
            return

        async with connection.lock:
            # State may have moved while waiting for the lock
            if connection.state not in (ConnectionState.SESSION_BOUND, ConnectionState.RECORDING):
                logger.warning(f"Audio chunk dropped for {connection.client_id} in {connection.state.value}")
                return

            connection.audio_chunks.append(chunk)
            chunk_index = len(connection.audio_chunks)
            if connection.state == ConnectionState.SESSION_BOUND:
                await connection.state_machine.transition(ConnectionState.RECORDING, "first audio chunk")

            if self.debug_recorder.enabled:
                self.debug_recorder.record_chunk(
                    connection.client_id, chunk_index, chunk, b"".join(connection.audio_chunks)
                )

        if connection.silence_timer:
            connection.silence_timer.start()

        logger.debug(f"Audio chunk {chunk_index} from {connection.client_id}: {len(chunk)} bytes")
        await self.send(connection, AudioReceivedMessage(chunk_index=chunk_index))

    async def stop_recording(self, connection: VoiceConnection):
        """
        Start the turn pipeline for everything buffered since the last stop.
        Silent no-op when not recording or when nothing was buffered.
        """
        async with connection.lock:
            if connection.state != ConnectionState.RECORDING or not connection.audio_chunks:
                logger.debug(f"Stop ignored for {connection.client_id} in {connection.state.value}")
                return

            audio = b"".join(connection.audio_chunks)
            connection.audio_chunks.clear()
            await connection.state_machine.transition(ConnectionState.PROCESSING, "stop_recording")

        # The turn keeps its session's usage open until it finishes
        self.ledger.acquire(connection.session_id)
        connection.pipeline_task = asyncio.create_task(
            self._run_pipeline(connection, connection.session_id, audio)
        )

    async def _run_pipeline(self, connection: VoiceConnection, session_id: str, audio: bytes):
        start = time.monotonic()
        try:
            self.debug_recorder.record_final(connection.client_id, audio)
            await self.send(connection, ProcessingAudioMessage())

            transcription = await self.transcriber.transcribe(audio)
            self.ledger.record_usage(
                session_id,
                ModelCategory.SPEECH_TO_TEXT,
                self.stt_model,
                input_units=transcription.duration_seconds,
                metadata={"audio_bytes": len(audio)},
            )

            text = transcription.text.strip()
            if not text:
                logger.info(f"No speech detected for {connection.client_id}")
                await self.send(connection, NoSpeechDetectedMessage())
                return

            connection.full_text = f"{connection.full_text} {text}".strip()
            await self.send(connection, TranscriptionCompleteMessage(text=text, full_text=connection.full_text))
            await self.send(connection, GeneratingResponseMessage())

            result = await self.orchestrator.produce_turn(session_id, text)

            audio_data = base64.b64encode(result.audio_bytes).decode("ascii") if result.audio_bytes else None
            await self.send(
                connection,
                BotResponseMessage(
                    text=result.bot_text,
                    audio_data=audio_data,
                    audio_url=result.audio_locator,
                    message_id=result.bot_message_id,
                ),
            )
            self.response_times.record(int((time.monotonic() - start) * 1000))

        except VoicebotError as e:
            logger.error(f"❌ Voice turn failed for {connection.client_id}: {e.message}")
            await self.send_error(connection, f"Error processing audio: {e.message}")
        except Exception as e:
            logger.error(f"❌ Unexpected voice turn error for {connection.client_id}: {e}", exc_info=True)
            await self.send_error(connection, f"Error processing audio: {e}")
        finally:
            if not connection.state_machine.is_closed:
                await connection.state_machine.transition(ConnectionState.SESSION_BOUND, "turn finished")
            await self.ledger.release(session_id)

    # ------------------------------------------------------------------
    # Idle sweep
    # ------------------------------------------------------------------

    async def sweep_idle_connections(self, now: Optional[int] = None) -> List[str]:
        """
        Close and release every connection idle for longer than the timeout.

        Args:
            now: Current time in ms (defaults to the wall clock)

        Returns:
            Client ids that were evicted
        """
        current = now if now is not None else now_ms()
        evicted = []

        for connection in list(self.active_connections.values()):
            if current - connection.last_activity <= self.idle_timeout_ms:
                continue

            logger.warning(f"Closing idle voice connection: {connection.client_id}")
            try:
                await connection.websocket.close(code=1000, reason="idle timeout")
            except Exception as e:
                logger.warning(f"Error closing idle connection {connection.client_id}: {e}")
            await self.release(connection)
            evicted.append(connection.client_id)

        return evicted

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep_idle_connections()
            except Exception as e:
                logger.error(f"Idle sweep failed: {e}", exc_info=True)

    def start_idle_sweep(self):
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(f"Idle sweep started: every {self.sweep_interval_seconds}s, timeout {self.idle_timeout_ms}ms")

    async def stop_idle_sweep(self):
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None

    async def shutdown(self):
        """Stop the sweep and close every open socket."""
        await self.stop_idle_sweep()
        for connection in list(self.active_connections.values()):
            try:
                await connection.websocket.close(code=1001, reason="server shutdown")
            except Exception as e:
                logger.debug(f"Error closing {connection.client_id} on shutdown: {e}")
            await self.release(connection)

    def get_connection_count(self) -> int:
        return len(self.active_connections)

    def get_connection(self, client_id: str) -> Optional[VoiceConnection]:
        return self.active_connections.get(client_id)
