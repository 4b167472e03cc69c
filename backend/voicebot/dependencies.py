"""
Service wiring.
Builds the long-lived clients and pipeline objects once per application and
exposes them to routes through FastAPI dependencies.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from fastapi import Request
from openai import AsyncOpenAI

from voicebot.config import settings
from voicebot.db.database import Database
from voicebot.db.store import ConversationStore
from voicebot.debug_audio import DebugAudioRecorder
from voicebot.llm.openai_client import OpenAIClient
from voicebot.orchestration.response_cache import ResponseCache
from voicebot.orchestration.turn_orchestrator import TurnOrchestrator
from voicebot.rag import PineconeVectorStore, RAGRetriever
from voicebot.storage import AudioStorage
from voicebot.stt.whisper import WhisperClient
from voicebot.tts.chunked_synthesis import ChunkedSynthesisScheduler
from voicebot.tts.elevenlabs import ElevenLabsClient
from voicebot.usage.ledger import LedgerWriter, UsageLedger
from voicebot.websocket import VoiceSessionManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a running application needs, owned in one place."""

    ledger_writer: LedgerWriter
    ledger: UsageLedger
    store: Any
    orchestrator: TurnOrchestrator
    voice_manager: VoiceSessionManager
    database: Optional[Database] = None
    closeables: List[Any] = field(default_factory=list)

    async def aclose(self):
        for client in self.closeables:
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing {type(client).__name__}: {e}")
        if self.database is not None:
            await self.database.close()


def build_services() -> Services:
    """Construct production clients from settings."""
    database = Database(settings.database_url, echo=False)
    database.init_engine()
    store = ConversationStore(database)

    openai_sdk = AsyncOpenAI(
        api_key=settings.openai_api_key,
        organization=settings.openai_organization_id,
    )
    retriever = RAGRetriever(
        vector_store=PineconeVectorStore(
            api_key=settings.pinecone_api_key,
            index_name=settings.pinecone_index_name,
        ),
        openai_client=openai_sdk,
        embedding_model=settings.embedding_model,
        min_similarity=settings.rag_min_similarity,
    )
    generator = OpenAIClient()
    synthesizer = ElevenLabsClient()
    transcriber = WhisperClient(client=openai_sdk)

    ledger_writer = LedgerWriter(
        f"{settings.storage_dir}/logs",
        flush_delay_ms=settings.ledger_flush_delay_ms,
    )
    ledger = UsageLedger(ledger_writer)

    orchestrator = TurnOrchestrator(
        store=store,
        retriever=retriever,
        generator=generator,
        synthesizer=synthesizer,
        audio_storage=AudioStorage(settings.storage_dir),
        ledger=ledger,
        cache=ResponseCache(settings.response_cache_size),
        scheduler=ChunkedSynthesisScheduler(
            synthesizer,
            words_per_chunk=settings.tts_words_per_chunk,
            stagger_ms=settings.tts_stagger_ms,
        ),
    )

    voice_manager = VoiceSessionManager(
        orchestrator=orchestrator,
        transcriber=transcriber,
        ledger=ledger,
        debug_recorder=DebugAudioRecorder(settings.storage_dir, enabled=settings.debug_audio_enabled),
    )

    return Services(
        ledger_writer=ledger_writer,
        ledger=ledger,
        store=store,
        orchestrator=orchestrator,
        voice_manager=voice_manager,
        database=database,
        closeables=[generator, synthesizer, transcriber],
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
