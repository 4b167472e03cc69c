"""
OpenAI Whisper speech-to-text client.

Transcribes a complete recording (the concatenated webm chunks of one
stop_recording) in a single request.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import openai
from openai import AsyncOpenAI

from voicebot.config import settings
from voicebot.errors import ResourceExhausted, UpstreamFailure, ValidationFailure

logger = logging.getLogger(__name__)


@dataclass
class TranscriptionResult:
    text: str
    duration_seconds: float = 0.0


class WhisperClient:
    """
    Batch transcription over the OpenAI audio API.

    verbose_json is requested so the audio duration can be billed in the ledger.
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            organization=settings.openai_organization_id,
        )
        self.model = model or settings.stt_model

    async def transcribe(self, audio_bytes: bytes) -> TranscriptionResult:
        """
        Transcribe one recording.

        Raises:
            ValidationFailure: empty audio
            UpstreamFailure: API failure
        """
        if not audio_bytes:
            raise ValidationFailure("Audio buffer is empty")

        logger.info(f"🎤 Transcribing {len(audio_bytes)} bytes with {self.model}")

        try:
            transcription = await self.client.audio.transcriptions.create(
                file=("audio.webm", audio_bytes, "audio/webm"),
                model=self.model,
                response_format="verbose_json",
                language="en",
                temperature=0.0,
                prompt="Transcribe exactly.",
            )
        except openai.RateLimitError as e:
            raise ResourceExhausted(f"Speech-to-text rate limited: {e}") from e
        except openai.OpenAIError as e:
            logger.error(f"Speech-to-text failed: {e}")
            raise UpstreamFailure(f"Speech-to-text failed: {e}") from e

        text = (getattr(transcription, "text", "") or "").strip()
        duration = float(getattr(transcription, "duration", 0.0) or 0.0)

        logger.info(f"Transcription complete ({duration:.1f}s audio): '{text[:50]}'")
        return TranscriptionResult(text=text, duration_seconds=duration)

    async def close(self):
        await self.client.close()
