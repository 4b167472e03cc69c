"""
Tests for the external service adapters using stand-in SDK objects.
"""

from types import SimpleNamespace

import httpx
import openai
import pytest

from voicebot.errors import ResourceExhausted, UpstreamFailure, ValidationFailure
from voicebot.llm.openai_client import DEFAULT_SYSTEM_PROMPT, build_messages
from voicebot.rag.retriever import RAGRetriever
from voicebot.rag.vector_store import PineconeVectorStore
from voicebot.stt.whisper import WhisperClient


class FakeTranscriptions:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error:
            raise self.error
        return self.response


def fake_openai(transcriptions=None, embedding=None):
    async def create_embedding(**kwargs):
        create_embedding.calls.append(kwargs)
        return SimpleNamespace(data=[SimpleNamespace(embedding=embedding or [0.1, 0.2])])

    create_embedding.calls = []
    return SimpleNamespace(
        audio=SimpleNamespace(transcriptions=transcriptions),
        embeddings=SimpleNamespace(create=create_embedding),
    )


def rate_limit_error():
    request = httpx.Request("POST", "https://api.openai.com/v1/audio/transcriptions")
    response = httpx.Response(429, request=request)
    return openai.RateLimitError("slow down", response=response, body=None)


class TestWhisperClient:

    @pytest.mark.asyncio
    async def test_transcribe(self):
        transcriptions = FakeTranscriptions(SimpleNamespace(text="  hello world ", duration=3.5))
        client = WhisperClient(client=fake_openai(transcriptions), model="whisper-1")

        result = await client.transcribe(b"webm")

        assert result.text == "hello world"
        assert result.duration_seconds == 3.5
        assert transcriptions.kwargs["file"][0] == "audio.webm"
        assert transcriptions.kwargs["language"] == "en"
        assert transcriptions.kwargs["response_format"] == "verbose_json"

    @pytest.mark.asyncio
    async def test_empty_audio(self):
        client = WhisperClient(client=fake_openai(FakeTranscriptions()), model="whisper-1")
        with pytest.raises(ValidationFailure):
            await client.transcribe(b"")

    @pytest.mark.asyncio
    async def test_rate_limit(self):
        client = WhisperClient(client=fake_openai(FakeTranscriptions(error=rate_limit_error())), model="whisper-1")
        with pytest.raises(ResourceExhausted):
            await client.transcribe(b"webm")

    @pytest.mark.asyncio
    async def test_api_error(self):
        error = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com"))
        client = WhisperClient(client=fake_openai(FakeTranscriptions(error=error)), model="whisper-1")
        with pytest.raises(UpstreamFailure):
            await client.transcribe(b"webm")


class FakeIndex:
    def __init__(self, matches=None, error=None):
        self.matches = matches or []
        self.error = error
        self.kwargs = None

    def query(self, **kwargs):
        self.kwargs = kwargs
        if self.error:
            raise self.error
        return SimpleNamespace(matches=self.matches)


class FakePinecone:
    def __init__(self, index):
        self.index = index

    def Index(self, name):
        return self.index


def match(score, text, document_id="doc-1"):
    return SimpleNamespace(score=score, metadata={"chunk_text": text, "document_id": document_id, "chunk_index": 0})


class TestPineconeVectorStore:

    def test_search_filters_by_documents_and_score(self):
        index = FakeIndex([match(0.9, "relevant"), match(0.1, "noise")])
        store = PineconeVectorStore("key", "voicebot-documents", client=FakePinecone(index))

        results = store.search([0.1, 0.2], ["doc-1", "doc-2"], top_k=5, min_score=0.5)

        assert [r["text"] for r in results] == ["relevant"]
        assert index.kwargs["filter"] == {"document_id": {"$in": ["doc-1", "doc-2"]}}
        assert index.kwargs["top_k"] == 5

    def test_no_documents_skips_query(self):
        index = FakeIndex()
        store = PineconeVectorStore("key", "idx", client=FakePinecone(index))

        assert store.search([0.1], []) == []
        assert index.kwargs is None

    def test_query_failure(self):
        store = PineconeVectorStore("key", "idx", client=FakePinecone(FakeIndex(error=RuntimeError("boom"))))
        with pytest.raises(UpstreamFailure):
            store.search([0.1], ["doc-1"])


class TestRAGRetriever:

    @pytest.mark.asyncio
    async def test_retrieve_similar(self):
        index = FakeIndex([match(0.8, "Opening hours are 9 to 5.")])
        sdk = fake_openai(embedding=[0.5, 0.5])
        retriever = RAGRetriever(
            PineconeVectorStore("key", "idx", client=FakePinecone(index)),
            sdk,
        )

        results = await retriever.retrieve_similar("When are you open?", ["doc-1"], limit=3)

        assert results[0]["text"] == "Opening hours are 9 to 5."
        assert index.kwargs["vector"] == [0.5, 0.5]
        assert index.kwargs["top_k"] == 3

    @pytest.mark.asyncio
    async def test_query_embeddings_are_cached(self):
        sdk = fake_openai()
        retriever = RAGRetriever(PineconeVectorStore("key", "idx", client=FakePinecone(FakeIndex())), sdk)

        await retriever.embed_query("Hello")
        await retriever.embed_query(" hello ")

        assert len(sdk.embeddings.create.calls) == 1

    @pytest.mark.asyncio
    async def test_no_documents(self):
        sdk = fake_openai()
        retriever = RAGRetriever(PineconeVectorStore("key", "idx", client=FakePinecone(FakeIndex())), sdk)

        assert await retriever.retrieve_similar("hello", []) == []
        assert sdk.embeddings.create.calls == []


class TestBuildMessages:

    def test_without_context(self):
        messages = build_messages("hello")
        assert messages == [
            {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": "hello"},
        ]

    def test_with_context_and_prompt(self):
        messages = build_messages("hello", context="Hours: 9-5", system_prompt="Be brief.")
        assert messages[0] == {"role": "system", "content": "Be brief."}
        assert messages[1]["role"] == "system"
        assert "Hours: 9-5" in messages[1]["content"]
        assert messages[2] == {"role": "user", "content": "hello"}
