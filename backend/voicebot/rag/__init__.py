"""
RAG (Retrieval-Augmented Generation) module for document-based context retrieval.
"""

from .vector_store import PineconeVectorStore
from .retriever import RAGRetriever

__all__ = [
    "PineconeVectorStore",
    "RAGRetriever",
]
