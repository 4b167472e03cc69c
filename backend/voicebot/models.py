"""
Pydantic models for WebSocket messages.
Inbound frames form a closed tagged union on the ``type`` field; outbound
frames are serialized with camelCase aliases.
"""

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from typing import Annotated, Literal, Optional, Union


class WireModel(BaseModel):
    """Base for all socket frames (camelCase on the wire, snake_case in code)."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


# ============================================================================
# Client → Server Messages
# ============================================================================

class StartSessionMessage(WireModel):
    """
    Binds the connection to an existing conversation session.
    """
    type: Literal["start_session"] = "start_session"
    session_id: str = Field(
        ...,
        alias="sessionId",
        min_length=1,
        description="Conversation session ID"
    )


class AudioChunkMessage(WireModel):
    """
    Sent while the microphone is recording.

    A payload that is not valid base64, or that decodes to zero bytes, is
    answered with an error event and never enters the recording buffer.
    """
    type: Literal["audio_chunk"] = "audio_chunk"
    audio_data: str = Field(
        ...,
        alias="audioData",
        description="Base64-encoded audio data (webm)"
    )


class StopRecordingMessage(WireModel):
    """
    Manual stop signal; triggers transcription and the turn pipeline.
    """
    type: Literal["stop_recording"] = "stop_recording"


class PingMessage(WireModel):
    """
    Heartbeat ping message.
    """
    type: Literal["ping"] = "ping"


ClientMessage = Annotated[
    Union[StartSessionMessage, AudioChunkMessage, StopRecordingMessage, PingMessage],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter = TypeAdapter(ClientMessage)


# ============================================================================
# Server → Client Messages
# ============================================================================

class ConnectionEstablishedMessage(WireModel):
    """
    Sent right after the socket is accepted.
    """
    type: Literal["connection_established"] = "connection_established"
    client_id: str = Field(..., alias="clientId")
    message: str = "Voice connection ready"


class SessionStartedMessage(WireModel):
    """
    Acknowledges a successful start_session.
    """
    type: Literal["session_started"] = "session_started"
    session_id: str = Field(..., alias="sessionId")
    message: str = "Voice session started successfully"


class AudioReceivedMessage(WireModel):
    """
    Per-chunk acknowledgement; chunk_index is the 1-based buffer length.
    """
    type: Literal["audio_received"] = "audio_received"
    chunk_index: int = Field(..., alias="chunkIndex", ge=1)


class ProcessingAudioMessage(WireModel):
    type: Literal["processing_audio"] = "processing_audio"
    message: str = "Processing your voice input..."


class TranscriptionCompleteMessage(WireModel):
    type: Literal["transcription_complete"] = "transcription_complete"
    text: str
    full_text: str = Field(..., alias="fullText")


class GeneratingResponseMessage(WireModel):
    type: Literal["generating_response"] = "generating_response"
    message: str = "Generating response..."


class BotResponseMessage(WireModel):
    """
    Final result of a voice turn.
    """
    type: Literal["bot_response"] = "bot_response"
    text: str
    audio_data: Optional[str] = Field(
        None,
        alias="audioData",
        description="Base64-encoded synthesized speech, null when synthesis failed"
    )
    audio_url: Optional[str] = Field(None, alias="audioUrl")
    message_id: str = Field(..., alias="messageId")


class NoSpeechDetectedMessage(WireModel):
    type: Literal["no_speech_detected"] = "no_speech_detected"
    message: str = "No speech detected in the audio"


class ErrorMessage(WireModel):
    """
    Sent for any caught failure. The connection stays open.
    """
    type: Literal["error"] = "error"
    message: str


class PongMessage(WireModel):
    type: Literal["pong"] = "pong"
    timestamp: int = Field(..., description="Unix timestamp in milliseconds")


ServerMessage = Union[
    ConnectionEstablishedMessage,
    SessionStartedMessage,
    AudioReceivedMessage,
    ProcessingAudioMessage,
    TranscriptionCompleteMessage,
    GeneratingResponseMessage,
    BotResponseMessage,
    NoSpeechDetectedMessage,
    ErrorMessage,
    PongMessage,
]


# ============================================================================
# HTTP payloads
# ============================================================================

class TextTurnRequest(BaseModel):
    text: str = Field(..., description="User message text")


class MessageOut(BaseModel):
    id: str
    session_id: str
    role: Literal["user", "bot"]
    text: str
    audio_url: Optional[str] = None
    created_at: Optional[str] = None


class TextTurnResponse(BaseModel):
    user_message: MessageOut
    bot_message: MessageOut
    cached: bool = False
    audio_data: Optional[str] = Field(None, description="Base64-encoded reply audio")
