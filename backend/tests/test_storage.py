"""
Tests for reply audio storage, debug audio dumps, errors and the store's id handling.
"""

import pytest

from voicebot.db.store import ConversationStore, SessionRecord
from voicebot.debug_audio import DebugAudioRecorder
from voicebot.errors import (
    ConnectionNotRecording,
    InvalidStateError,
    ResourceExhausted,
    SessionAlreadyEnded,
    SessionNotFound,
    UpstreamFailure,
    VoicebotError,
)
from voicebot.storage import AudioStorage


class TestAudioStorage:

    @pytest.mark.asyncio
    async def test_save_returns_locator(self, tmp_path):
        storage = AudioStorage(tmp_path)

        locator = await storage.save(b"mp3-bytes", prefix="tts")

        assert locator.startswith("/storage/audio/tts_")
        assert locator.endswith(".mp3")
        filename = locator.rsplit("/", 1)[-1]
        assert (tmp_path / "audio" / filename).read_bytes() == b"mp3-bytes"

    @pytest.mark.asyncio
    async def test_names_are_unique(self, tmp_path):
        storage = AudioStorage(tmp_path)
        first = await storage.save(b"a")
        second = await storage.save(b"b")
        assert first != second

    @pytest.mark.asyncio
    async def test_empty_audio(self, tmp_path):
        assert await AudioStorage(tmp_path).save(b"") is None


class TestDebugAudioRecorder:

    def test_disabled_writes_nothing(self, tmp_path):
        recorder = DebugAudioRecorder(tmp_path, enabled=False)
        recorder.record_chunk("client-1", 1, b"a", b"a")
        assert not (tmp_path / "debug_audio").exists()

    def test_writes_chunk_combined_and_final(self, tmp_path):
        recorder = DebugAudioRecorder(tmp_path, enabled=True)

        recorder.record_chunk("client-1", 1, b"a", b"a")
        recorder.record_chunk("client-1", 2, b"b", b"ab")
        recorder.record_final("client-1", b"ab")

        directory = tmp_path / "debug_audio" / "client-1"
        assert (directory / "chunk_0002.webm").read_bytes() == b"b"
        assert (directory / "combined.webm").read_bytes() == b"ab"
        assert len(list(directory.glob("final_*.webm"))) == 1

    def test_write_failures_are_ignored(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        recorder = DebugAudioRecorder(blocker, enabled=True)

        recorder.record_chunk("client-1", 1, b"a", b"a")


class TestErrors:

    def test_hierarchy(self):
        assert issubclass(SessionAlreadyEnded, InvalidStateError)
        assert issubclass(ConnectionNotRecording, InvalidStateError)
        assert issubclass(ResourceExhausted, UpstreamFailure)
        assert issubclass(UpstreamFailure, VoicebotError)

    def test_to_dict(self):
        error = SessionNotFound()
        assert error.status_code == 404
        assert error.to_dict() == {"success": False, "code": "SESSION_NOT_FOUND", "message": "Session not found"}


class TestConversationStoreIds:

    @pytest.mark.asyncio
    async def test_malformed_session_id_is_missing(self):
        store = ConversationStore(db=None)
        assert await store.find_session("not-a-uuid") is None
        assert await store.list_messages("not-a-uuid") == []

    def test_session_record_is_ended(self):
        assert not SessionRecord(id="s", agent_id="a").is_ended
