"""
ElevenLabs TTS client.

Synthesizes one text segment into a complete audio byte string (mp3).
"""

import asyncio
import logging
from typing import Optional, TYPE_CHECKING

from voicebot.config import settings
from voicebot.errors import ResourceExhausted, UpstreamFailure

if TYPE_CHECKING:
    import aiohttp

logger = logging.getLogger(__name__)


class ElevenLabsClient:
    """
    Speech synthesis over the ElevenLabs streaming endpoint.

    Features:
    - Persistent HTTP session with connection pooling
    - Streamed response collected into one byte string
    - Raises UpstreamFailure on any non-200 or empty response
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        voice_id: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self.api_key = api_key or settings.elevenlabs_api_key
        self.voice_id = voice_id or settings.elevenlabs_voice_id
        self.model = model or settings.elevenlabs_model

        self._session: Optional['aiohttp.ClientSession'] = None

    async def _get_session(self):
        """Get or create persistent aiohttp session with connection pooling."""
        if self._session is None or self._session.closed:
            import aiohttp

            # Chunked synthesis fans out, so allow a handful of parallel requests
            connector = aiohttp.TCPConnector(
                limit=10,
                ttl_dns_cache=300,
                keepalive_timeout=120,
            )

            timeout = aiohttp.ClientTimeout(
                total=30,
                connect=3,
                sock_read=10
            )

            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout
            )
            logger.info("✅ Created persistent ElevenLabs session with connection pooling")

        return self._session

    async def close(self):
        """Close persistent session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed ElevenLabs persistent session")

    async def synthesize(self, text: str) -> bytes:
        """
        Convert text to speech.

        Args:
            text: Text to speak

        Returns:
            Complete mp3 audio

        Raises:
            UpstreamFailure: API error, network error or empty audio
        """
        url = f"https://api.elevenlabs.io/v1/text-to-speech/{self.voice_id}/stream"

        payload = {
            "text": text,
            "model_id": self.model,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
            }
        }

        headers = {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }

        import aiohttp

        try:
            session = await self._get_session()

            async with session.post(url, headers=headers, json=payload) as response:
                if response.status == 429:
                    raise ResourceExhausted("ElevenLabs rate limit reached")
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"ElevenLabs API error {response.status}: {error_text}")
                    raise UpstreamFailure(f"Text-to-speech failed with status {response.status}")

                audio = bytearray()
                async for chunk in response.content.iter_chunked(4096):
                    audio.extend(chunk)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"ElevenLabs network error: {e}")
            raise UpstreamFailure(f"Text-to-speech failed: {e}") from e

        if not audio:
            raise UpstreamFailure("Text-to-speech returned no audio")

        logger.debug(f"TTS complete: {len(text)} chars → {len(audio)} bytes")
        return bytes(audio)
