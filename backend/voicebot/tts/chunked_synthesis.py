"""
Chunked speech synthesis.

Long replies are split into fixed word-count segments that are synthesized
concurrently (with staggered dispatch to stay under the provider's rate limit)
and reassembled strictly in original order.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol

from voicebot.errors import UpstreamFailure, ValidationFailure

logger = logging.getLogger(__name__)


class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str) -> bytes: ...


@dataclass
class SynthesisChunk:
    index: int
    text: str
    audio: bytes = b""


@dataclass
class SynthesisResult:
    audio_bytes: bytes
    chunk_count: int
    processing_time_ms: int


def split_text(text: str, words_per_chunk: int = 15) -> List[str]:
    """
    Split text on whitespace into segments of at most words_per_chunk words.

    Empty segments are dropped.
    """
    if words_per_chunk < 1:
        raise ValueError("words_per_chunk must be >= 1")

    words = text.split()
    chunks = []
    for start in range(0, len(words), words_per_chunk):
        chunk = " ".join(words[start:start + words_per_chunk]).strip()
        if chunk:
            chunks.append(chunk)
    return chunks


class ChunkedSynthesisScheduler:
    """
    Parallel, order-preserving text-to-speech.

    Any chunk failure aborts the whole call; there is no partial result.
    """

    def __init__(
        self,
        synthesizer: SpeechSynthesizer,
        words_per_chunk: int = 15,
        stagger_ms: int = 50,
    ):
        self.synthesizer = synthesizer
        self.words_per_chunk = words_per_chunk
        self.stagger_ms = stagger_ms

    async def _synthesize_chunk(
        self,
        index: int,
        text: str,
        on_chunk: Optional[Callable[[SynthesisChunk], Optional[Awaitable[None]]]],
    ) -> SynthesisChunk:
        if self.stagger_ms:
            await asyncio.sleep(index * self.stagger_ms / 1000.0)

        logger.debug(f"Synthesizing chunk {index + 1}: '{text[:50]}'")
        audio = await self.synthesizer.synthesize(text)
        chunk = SynthesisChunk(index=index, text=text, audio=audio)

        if on_chunk is not None:
            result = on_chunk(chunk)
            if asyncio.iscoroutine(result):
                await result
        return chunk

    async def synthesize(
        self,
        text: str,
        on_chunk: Optional[Callable[[SynthesisChunk], Optional[Awaitable[None]]]] = None,
    ) -> SynthesisResult:
        """
        Synthesize text as concurrently dispatched chunks.

        Args:
            text: Full reply text
            on_chunk: Optional hook called after each chunk completes (usage accounting)

        Returns:
            SynthesisResult with audio concatenated in chunk index order

        Raises:
            ValidationFailure: text has no words
            UpstreamFailure: any chunk failed
        """
        start = time.monotonic()
        segments = split_text(text, self.words_per_chunk)
        if not segments:
            raise ValidationFailure("Nothing to synthesize")

        logger.info(f"Chunked TTS: {len(text.split())} words → {len(segments)} chunks")

        tasks = [
            asyncio.create_task(self._synthesize_chunk(index, segment, on_chunk))
            for index, segment in enumerate(segments)
        ]

        try:
            results = await asyncio.gather(*tasks)
        except Exception as e:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.error(f"Chunked TTS failed: {e}")
            if isinstance(e, UpstreamFailure):
                raise
            raise UpstreamFailure(f"Chunked synthesis failed: {e}") from e

        # Completion order is arbitrary; assembly order is always by index
        ordered = sorted(results, key=lambda chunk: chunk.index)
        audio = b"".join(chunk.audio for chunk in ordered)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"Chunked TTS complete in {elapsed_ms}ms: {len(ordered)} chunks, {len(audio)} bytes")

        return SynthesisResult(
            audio_bytes=audio,
            chunk_count=len(ordered),
            processing_time_ms=elapsed_ms,
        )
