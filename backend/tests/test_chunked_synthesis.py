"""
Unit tests for text splitting and the chunked synthesis scheduler.
"""

import asyncio

import pytest

from voicebot.errors import UpstreamFailure, ValidationFailure
from voicebot.tts.chunked_synthesis import ChunkedSynthesisScheduler, split_text


class RecordingSynthesizer:
    """Returns '<text>|' as audio, finishing chunks in a configurable order."""

    def __init__(self, delays=None, fail_on=None):
        self.delays = delays or {}
        self.fail_on = fail_on
        self.started = []
        self.finished = []
        self.cancelled = []

    async def synthesize(self, text):
        self.started.append(text)
        try:
            await asyncio.sleep(self.delays.get(text, 0))
        except asyncio.CancelledError:
            self.cancelled.append(text)
            raise
        if text == self.fail_on:
            raise UpstreamFailure("voice service down")
        self.finished.append(text)
        return f"{text}|".encode()


class TestSplitText:

    def test_groups_words(self):
        text = " ".join(f"w{i}" for i in range(7))
        assert split_text(text, 3) == ["w0 w1 w2", "w3 w4 w5", "w6"]

    def test_collapses_whitespace(self):
        assert split_text("  one \n two\tthree  ", 2) == ["one two", "three"]

    def test_empty_text(self):
        assert split_text("   ", 15) == []

    def test_default_chunk_size(self):
        text = " ".join(["word"] * 31)
        chunks = split_text(text)
        assert [len(c.split()) for c in chunks] == [15, 15, 1]


class TestChunkedSynthesisScheduler:

    @pytest.mark.asyncio
    async def test_reassembles_in_index_order_regardless_of_completion(self):
        text = "a b c d e f"
        # Later chunks finish first
        synth = RecordingSynthesizer(delays={"a b": 0.05, "c d": 0.02, "e f": 0.0})
        scheduler = ChunkedSynthesisScheduler(synth, words_per_chunk=2, stagger_ms=0)

        result = await scheduler.synthesize(text)

        assert synth.finished == ["e f", "c d", "a b"]
        assert result.audio_bytes == b"a b|c d|e f|"
        assert result.chunk_count == 3
        assert result.processing_time_ms >= 0

    @pytest.mark.asyncio
    async def test_single_chunk(self):
        synth = RecordingSynthesizer()
        scheduler = ChunkedSynthesisScheduler(synth, words_per_chunk=15, stagger_ms=0)

        result = await scheduler.synthesize("Hello there")

        assert result.audio_bytes == b"Hello there|"
        assert result.chunk_count == 1

    @pytest.mark.asyncio
    async def test_stagger_delays_later_chunks(self):
        synth = RecordingSynthesizer()
        scheduler = ChunkedSynthesisScheduler(synth, words_per_chunk=1, stagger_ms=20)

        task = asyncio.create_task(scheduler.synthesize("one two three"))
        await asyncio.sleep(0.005)
        assert synth.started == ["one"]

        await task
        assert synth.started == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_empty_text_raises_validation_failure(self):
        scheduler = ChunkedSynthesisScheduler(RecordingSynthesizer(), stagger_ms=0)
        with pytest.raises(ValidationFailure):
            await scheduler.synthesize("   ")

    @pytest.mark.asyncio
    async def test_chunk_failure_aborts_and_cancels_the_rest(self):
        synth = RecordingSynthesizer(delays={"c d": 0.5}, fail_on="a b")
        scheduler = ChunkedSynthesisScheduler(synth, words_per_chunk=2, stagger_ms=0)

        with pytest.raises(UpstreamFailure):
            await scheduler.synthesize("a b c d")

        assert synth.cancelled == ["c d"]

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_wrapped(self):
        class Broken:
            async def synthesize(self, text):
                raise ConnectionResetError("reset by peer")

        scheduler = ChunkedSynthesisScheduler(Broken(), stagger_ms=0)
        with pytest.raises(UpstreamFailure):
            await scheduler.synthesize("hello")

    @pytest.mark.asyncio
    async def test_on_chunk_hook_sees_every_chunk(self):
        seen = []
        scheduler = ChunkedSynthesisScheduler(RecordingSynthesizer(), words_per_chunk=1, stagger_ms=0)

        await scheduler.synthesize("x y z", on_chunk=lambda chunk: seen.append((chunk.index, chunk.text)))

        assert sorted(seen) == [(0, "x"), (1, "y"), (2, "z")]

    @pytest.mark.asyncio
    async def test_async_on_chunk_hook_is_awaited(self):
        seen = []

        async def hook(chunk):
            await asyncio.sleep(0)
            seen.append(chunk.index)

        scheduler = ChunkedSynthesisScheduler(RecordingSynthesizer(), words_per_chunk=1, stagger_ms=0)
        await scheduler.synthesize("x y", on_chunk=hook)

        assert sorted(seen) == [0, 1]
