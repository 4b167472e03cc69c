"""
Turn Orchestrator - turns transcribed user text into a persisted bot turn.

Pipeline per turn:
1. Validate the session (exists, not ended, agent resolvable)
2. Retrieval and generation (concurrent by default)
3. Generation failure -> fixed apology text
4. Chunked synthesis -> single-call synthesis -> no audio
5. Persist user + bot messages together, record ledger entries

Once the session is valid a turn always completes with some bot text.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from voicebot.config import settings
from voicebot.db.store import AgentRecord, MessageRecord, SessionRecord
from voicebot.errors import AgentMissing, SessionAlreadyEnded, SessionNotFound, ValidationFailure
from voicebot.llm.openai_client import DEFAULT_SYSTEM_PROMPT, GenerationResult
from voicebot.orchestration.response_cache import CachedResponse, ResponseCache
from voicebot.storage import AudioStorage
from voicebot.tts.chunked_synthesis import ChunkedSynthesisScheduler, SpeechSynthesizer, SynthesisChunk
from voicebot.usage.ledger import ModelCategory, UsageLedger

logger = logging.getLogger(__name__)

APOLOGY_TEXT = "I'm sorry, I'm having trouble processing your request right now. Please try again."


class SessionStore(Protocol):
    async def find_session(self, session_id: str) -> Optional[SessionRecord]: ...

    async def persist_turn(
        self,
        session_id: str,
        user_text: str,
        bot_text: str,
        bot_audio_url: Optional[str] = None,
    ) -> Tuple[MessageRecord, MessageRecord]: ...


class Generator(Protocol):
    async def generate(
        self, prompt: str, context: str = "", system_prompt: Optional[str] = None
    ) -> GenerationResult: ...


class Retriever(Protocol):
    async def retrieve_similar(self, query: str, document_ids: List[str], limit: int = 5) -> List[dict]: ...


@dataclass
class TurnResult:
    user_message_id: str
    bot_message_id: str
    bot_text: str
    audio_bytes: Optional[bytes] = None
    audio_locator: Optional[str] = None
    cached: bool = False
    context_chars: int = 0
    processing_time_ms: int = 0
    user_message: Optional[MessageRecord] = None
    bot_message: Optional[MessageRecord] = None


class TurnOrchestrator:
    """
    Produces one conversation turn for a session.

    Collaborators are injected so each connection, HTTP route and test
    shares the same pipeline with its own fakes.
    """

    def __init__(
        self,
        store: SessionStore,
        retriever: Retriever,
        generator: Generator,
        synthesizer: SpeechSynthesizer,
        audio_storage: AudioStorage,
        ledger: UsageLedger,
        cache: ResponseCache,
        scheduler: Optional[ChunkedSynthesisScheduler] = None,
        synthesis_model: Optional[str] = None,
        retrieval_limit: Optional[int] = None,
        context_max_chars: Optional[int] = None,
        fallback_max_chars: Optional[int] = None,
        generation_uses_context: Optional[bool] = None,
    ):
        self.store = store
        self.retriever = retriever
        self.generator = generator
        self.synthesizer = synthesizer
        self.audio_storage = audio_storage
        self.ledger = ledger
        self.cache = cache
        self.scheduler = scheduler or ChunkedSynthesisScheduler(
            synthesizer,
            words_per_chunk=settings.tts_words_per_chunk,
            stagger_ms=settings.tts_stagger_ms,
        )
        self.synthesis_model = synthesis_model or getattr(synthesizer, "model", None) or settings.elevenlabs_model
        self.retrieval_limit = retrieval_limit if retrieval_limit is not None else settings.rag_top_k
        self.context_max_chars = context_max_chars if context_max_chars is not None else settings.rag_context_max_chars
        self.fallback_max_chars = (
            fallback_max_chars if fallback_max_chars is not None else settings.rag_fallback_max_chars
        )
        self.generation_uses_context = (
            generation_uses_context if generation_uses_context is not None else settings.generation_uses_context
        )

    async def validate_session(self, session_id: str) -> SessionRecord:
        """
        Resolve a session that can accept turns.

        Raises:
            SessionNotFound: no such session
            SessionAlreadyEnded: session has an end time
            AgentMissing: the owning agent cannot be resolved
        """
        session = await self.store.find_session(session_id)
        if session is None:
            raise SessionNotFound()
        if session.is_ended:
            raise SessionAlreadyEnded()
        if session.agent is None:
            raise AgentMissing()
        return session

    # ------------------------------------------------------------------
    # Context and generation
    # ------------------------------------------------------------------

    def _fallback_context(self, agent: AgentRecord) -> str:
        raw = "\n\n".join(doc.content_text for doc in agent.documents if doc.content_text)
        return raw[: self.fallback_max_chars]

    async def _build_context(self, agent: AgentRecord, user_text: str) -> str:
        if not agent.documents:
            return ""

        try:
            chunks = await self.retriever.retrieve_similar(user_text, agent.document_ids, self.retrieval_limit)
        except Exception as e:
            logger.warning(f"⚠️ Retrieval failed, using raw document text: {e}")
            return self._fallback_context(agent)

        context = "\n\n".join(chunk.get("text", "") for chunk in chunks if chunk.get("text"))
        logger.info(f"📚 Retrieved {len(chunks)} chunks ({len(context)} chars)")
        return context[: self.context_max_chars]

    async def _generate(
        self, session_id: str, agent: AgentRecord, user_text: str, context: str = ""
    ) -> Optional[GenerationResult]:
        try:
            result = await self.generator.generate(
                user_text,
                context=context,
                system_prompt=agent.prompt or DEFAULT_SYSTEM_PROMPT,
            )
        except Exception as e:
            logger.error(f"❌ Generation failed: {e}")
            return None

        if not result.text:
            logger.error("❌ Generation returned empty text")
            return None

        self.ledger.record_usage(
            session_id,
            ModelCategory.GENERATION,
            result.model,
            input_units=result.input_tokens,
            output_units=result.output_tokens,
        )
        return result

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    async def _synthesize(self, session_id: str, text: str) -> Tuple[Optional[bytes], Optional[int]]:
        """Chunked synthesis, then a single call, then no audio."""

        def on_chunk(chunk: SynthesisChunk) -> None:
            self.ledger.record_usage(
                session_id,
                ModelCategory.SPEECH_SYNTHESIS,
                self.synthesis_model,
                input_units=len(chunk.text),
                metadata={"chunk_index": chunk.index},
            )

        try:
            result = await self.scheduler.synthesize(text, on_chunk=on_chunk)
            return result.audio_bytes, result.processing_time_ms
        except Exception as e:
            logger.warning(f"⚠️ Chunked synthesis failed, retrying as one request: {e}")

        start = time.monotonic()
        try:
            audio = await self.synthesizer.synthesize(text)
        except Exception as e:
            logger.error(f"❌ Synthesis failed, turn continues without audio: {e}")
            return None, None

        self.ledger.record_usage(
            session_id,
            ModelCategory.SPEECH_SYNTHESIS,
            self.synthesis_model,
            input_units=len(text),
            metadata={"fallback": True},
        )
        return audio or None, int((time.monotonic() - start) * 1000)

    async def _store_audio(self, audio: Optional[bytes]) -> Optional[str]:
        if not audio:
            return None
        try:
            return await self.audio_storage.save(audio, prefix="tts")
        except OSError as e:
            logger.error(f"❌ Failed to store synthesized audio: {e}")
            return None

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def produce_turn(self, session_id: str, user_text: str) -> TurnResult:
        """
        Produce, persist and account one turn.

        Raises:
            ValidationFailure: empty user text
            SessionNotFound / SessionAlreadyEnded / AgentMissing: session unusable
        """
        if not user_text or not user_text.strip():
            raise ValidationFailure("Message text is required")

        start = time.monotonic()
        session = await self.validate_session(session_id)
        agent = session.agent

        cached = await self.cache.get(agent.id, user_text)
        context = ""
        synthesis_ms: Optional[int] = None

        if cached is not None:
            bot_text = cached.bot_text
            audio = cached.audio_bytes
            locator = cached.audio_locator
        else:
            if self.generation_uses_context:
                context = await self._build_context(agent, user_text)
                generation = await self._generate(session_id, agent, user_text, context)
            else:
                context, generation = await asyncio.gather(
                    self._build_context(agent, user_text),
                    self._generate(session_id, agent, user_text),
                )

            bot_text = generation.text if generation is not None else APOLOGY_TEXT
            audio, synthesis_ms = await self._synthesize(session_id, bot_text)
            locator = await self._store_audio(audio)

            if generation is not None and audio:
                await self.cache.put(
                    agent.id,
                    user_text,
                    CachedResponse(bot_text=bot_text, audio_bytes=audio, audio_locator=locator),
                )

        user_message, bot_message = await self.store.persist_turn(
            session_id, user_text.strip(), bot_text, locator
        )

        self.ledger.record_turn(
            session_id,
            bot_message.id,
            user_text.strip(),
            bot_text,
            processing_time_ms=synthesis_ms,
        )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"✅ Turn complete for session {session_id} in {elapsed_ms}ms "
            f"(cached={cached is not None}, context={len(context)} chars, audio={len(audio or b'')} bytes)"
        )

        return TurnResult(
            user_message_id=user_message.id,
            bot_message_id=bot_message.id,
            bot_text=bot_text,
            audio_bytes=audio,
            audio_locator=locator,
            cached=cached is not None,
            context_chars=len(context),
            processing_time_ms=elapsed_ms,
            user_message=user_message,
            bot_message=bot_message,
        )
