"""
RAG retriever: query embedding plus similarity search over an agent's documents.
"""

from typing import List, Dict, Optional
from openai import AsyncOpenAI
import openai
import asyncio
import logging

from voicebot.errors import UpstreamFailure
from .vector_store import PineconeVectorStore

logger = logging.getLogger(__name__)


class RAGRetriever:
    """Embed queries with OpenAI and search Pinecone, restricted to given documents."""

    def __init__(
        self,
        vector_store: PineconeVectorStore,
        openai_client: AsyncOpenAI,
        embedding_model: str = "text-embedding-3-small",
        min_similarity: float = 0.0,
        embedding_cache_size: int = 256,
    ):
        """
        Args:
            vector_store: Pinecone vector store instance
            openai_client: OpenAI async client for embeddings
            embedding_model: Embedding model name
            min_similarity: Minimum similarity score (0-1)
            embedding_cache_size: Maximum cached query embeddings
        """
        self.vector_store = vector_store
        self.openai_client = openai_client
        self.embedding_model = embedding_model
        self.min_similarity = min_similarity
        self.embedding_cache_size = embedding_cache_size

        # Query embeddings keyed by normalized query text
        self._embedding_cache: Dict[str, List[float]] = {}

        logger.info(
            f"Initialized RAGRetriever: embedding={embedding_model}, "
            f"min_similarity={min_similarity}"
        )

    async def embed_query(self, query: str) -> List[float]:
        key = query.strip().lower()
        cached = self._embedding_cache.get(key)
        if cached is not None:
            return cached

        try:
            response = await self.openai_client.embeddings.create(
                model=self.embedding_model,
                input=query,
            )
        except openai.OpenAIError as e:
            raise UpstreamFailure(f"Query embedding failed: {e}") from e

        embedding = response.data[0].embedding
        if len(self._embedding_cache) >= self.embedding_cache_size:
            self._embedding_cache.pop(next(iter(self._embedding_cache)))
        self._embedding_cache[key] = embedding
        return embedding

    async def retrieve_similar(
        self,
        query: str,
        document_ids: List[str],
        limit: int = 5,
    ) -> List[Dict]:
        """
        Retrieve the chunks of the given documents most relevant to a query.

        Args:
            query: User query text
            document_ids: Documents to search within
            limit: Maximum number of chunks

        Returns:
            List of {text, score, document_id, chunk_index}

        Raises:
            UpstreamFailure: embedding or vector search failed
        """
        if not document_ids:
            return []

        logger.info(f"🔍 RAG retrieve: query='{query[:50]}', documents={len(document_ids)}, limit={limit}")

        embedding = await self.embed_query(query)
        # Pinecone's client is synchronous
        return await asyncio.to_thread(
            self.vector_store.search,
            embedding,
            document_ids,
            limit,
            self.min_similarity,
        )
