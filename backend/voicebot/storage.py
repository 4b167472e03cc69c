"""
Storage for synthesized reply audio.
Files are served by the app under /storage, so the locator doubles as a URL path.
"""

import asyncio
import logging
import secrets
import time
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


class AudioStorage:
    """Persist synthesized audio under <storage_dir>/audio."""

    def __init__(self, storage_dir: Union[str, Path], url_prefix: str = "/storage"):
        self.storage_dir = Path(storage_dir)
        self.audio_dir = self.storage_dir / "audio"
        self.url_prefix = url_prefix.rstrip("/")

    def _filename(self, prefix: str) -> str:
        return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}.mp3"

    def _write(self, path: Path, audio_bytes: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(audio_bytes)

    async def save(self, audio_bytes: bytes, prefix: str = "tts") -> Optional[str]:
        """
        Write audio to disk and return its locator (/storage/audio/<file>).

        Returns None for empty audio.

        Raises:
            OSError: the file could not be written
        """
        if not audio_bytes:
            return None

        filename = self._filename(prefix)
        path = self.audio_dir / filename
        await asyncio.to_thread(self._write, path, audio_bytes)

        logger.info(f"💾 Saved {len(audio_bytes)} bytes of audio to {path}")
        return f"{self.url_prefix}/audio/{filename}"
