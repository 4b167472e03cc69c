"""
Pinecone vector store interface for document chunk retrieval.
"""

from pinecone import Pinecone
from typing import List, Dict, Optional
import logging

from voicebot.errors import UpstreamFailure

logger = logging.getLogger(__name__)


class PineconeVectorStore:
    """Read-side interface to the Pinecone index holding document chunk embeddings."""

    def __init__(
        self,
        api_key: str,
        index_name: str,
        client: Optional[Pinecone] = None,
    ):
        """
        Args:
            api_key: Pinecone API key
            index_name: Name of the index holding chunk vectors
            client: Pre-built Pinecone client (tests)
        """
        self.index_name = index_name
        self.pc = client or Pinecone(api_key=api_key)
        self.index = self.pc.Index(index_name)

        logger.info(f"Initialized Pinecone vector store: index={index_name}")

    def search(
        self,
        query_embedding: List[float],
        document_ids: List[str],
        top_k: int = 5,
        min_score: float = 0.0
    ) -> List[Dict]:
        """
        Search for chunks of the given documents most similar to the query.

        Args:
            query_embedding: Query vector embedding
            document_ids: Restrict matches to these documents
            top_k: Number of results to return
            min_score: Minimum similarity score (0-1)

        Returns:
            List of matches with text, score, document_id

        Raises:
            UpstreamFailure: the index query failed
        """
        if not document_ids:
            return []

        try:
            results = self.index.query(
                vector=query_embedding,
                top_k=top_k,
                include_metadata=True,
                filter={"document_id": {"$in": [str(d) for d in document_ids]}},
            )
        except Exception as e:
            logger.error(f"Pinecone search failed: {e}")
            raise UpstreamFailure(f"Vector search failed: {e}") from e

        matches = []
        for match in results.matches:
            if match.score < min_score:
                continue
            metadata = match.metadata or {}
            matches.append({
                "text": metadata.get("chunk_text") or metadata.get("text", ""),
                "score": match.score,
                "document_id": metadata.get("document_id"),
                "chunk_index": metadata.get("chunk_index"),
            })

        if matches:
            top_scores = ", ".join(f"{m['score']:.3f}" for m in matches[:5])
            logger.info(f"📊 Top similarity scores: {top_scores}")

        logger.info(
            f"Search returned {len(matches)} results above score {min_score} "
            f"(total matches: {len(results.matches)})"
        )
        return matches
