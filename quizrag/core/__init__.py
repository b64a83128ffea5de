"""Core retrieval components.

This module provides the core functionality for:
- Text embedding
- Vector indexing
- Document chunking
- Context retrieval and re-ranking
- Topic validation and query expansion
"""

from quizrag.core.embedder import (
    EmbeddingClient,
    OpenAIEmbedder,
    SentenceTransformerEmbedder,
    get_embedder,
)
from quizrag.core.vector_index import QdrantVectorIndex, VectorHit, get_vector_index
from quizrag.core.document_processor import DocumentProcessor, ProcessingResult, RawDocument
from quizrag.core.reranker import RankedResult, RankingOptions, ResultReranker, ScoredDocument, get_reranker
from quizrag.core.topic_processor import SemanticQuery, TopicProcessor, TopicValidationResult, get_topic_processor
from quizrag.core.retrieval import ContextRetriever, get_retriever

__all__ = [
    # Embedder
    "EmbeddingClient",
    "OpenAIEmbedder",
    "SentenceTransformerEmbedder",
    "get_embedder",
    # Vector index
    "QdrantVectorIndex",
    "VectorHit",
    "get_vector_index",
    # Document processing
    "DocumentProcessor",
    "ProcessingResult",
    "RawDocument",
    # Reranker
    "RankedResult",
    "RankingOptions",
    "ResultReranker",
    "ScoredDocument",
    "get_reranker",
    # Topic processor
    "SemanticQuery",
    "TopicProcessor",
    "TopicValidationResult",
    "get_topic_processor",
    # Retrieval
    "ContextRetriever",
    "get_retriever",
]
