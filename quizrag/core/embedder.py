"""Embedding service for text vectorization.

This module provides functionality to convert text into dense vector
representations, either with a local sentence transformer model or through
the OpenAI embeddings API.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np
import openai

try:
    from sentence_transformers import SentenceTransformer
    HAS_SENTENCE_TRANSFORMERS = True
except ImportError:
    HAS_SENTENCE_TRANSFORMERS = False

from quizrag.config import EmbeddingConfig, get_settings
from quizrag.errors import (
    EmbeddingError,
    EmbeddingRateLimitError,
    EmbeddingTransportError,
)

logger = logging.getLogger(__name__)


def cosine_similarity(embedding1: np.ndarray, embedding2: np.ndarray) -> float:
    """Cosine similarity of two vectors (0.0 when either has zero norm)."""
    a = np.asarray(embedding1, dtype=np.float32)
    b = np.asarray(embedding2, dtype=np.float32)
    if a.shape != b.shape:
        raise ValueError("Embeddings must have the same length")
    magnitude = float(np.linalg.norm(a) * np.linalg.norm(b))
    if magnitude == 0.0:
        return 0.0
    return float(np.dot(a, b) / magnitude)


class EmbeddingClient(ABC):
    """Converts text into fixed-length vectors."""

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or get_settings().embedding

    @abstractmethod
    async def embed(self, text: str) -> np.ndarray:
        """Generate embedding for a single text."""

    async def embed_batch(self, texts: List[str]) -> List[np.ndarray]:
        """Generate embeddings for multiple texts.

        The default implementation embeds texts one by one.
        """
        return [await self.embed(text) for text in texts]

    async def embed_query(self, query: str) -> np.ndarray:
        """Generate embedding for a query.

        This is an alias for embed() but can be extended for
        query-specific processing.
        """
        return await self.embed(query)

    @property
    def dimensions(self) -> int:
        """Get embedding dimensions."""
        return self.config.dimensions

    def _truncate(self, text: str) -> str:
        tokens = text.split()
        if len(tokens) > self.config.max_tokens:
            return " ".join(tokens[:self.config.max_tokens])
        return text

    def _check_dimensions(self, vector: np.ndarray) -> np.ndarray:
        if vector.shape != (self.dimensions,):
            raise EmbeddingError(
                f"Embedding has shape {vector.shape}, expected ({self.dimensions},)"
            )
        return vector


class SentenceTransformerEmbedder(EmbeddingClient):
    """Embedder backed by a local sentence-transformers model."""

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        model: Optional["SentenceTransformer"] = None,
    ):
        """Initialize the embedder.

        Args:
            config: Embedding configuration
            model: Pre-loaded model (for testing)
        """
        super().__init__(config)
        self._model = model
        self._initialized = model is not None

    def _ensure_initialized(self):
        """Lazy initialization of the model."""
        if not self._initialized:
            if not HAS_SENTENCE_TRANSFORMERS:
                raise ImportError(
                    "sentence-transformers is required. "
                    "Install with: pip install sentence-transformers"
                )
            logger.info(f"Loading embedding model: {self.config.model_name}")
            self._model = SentenceTransformer(self.config.model_name)
            self._initialized = True
            logger.info(f"Embedding model loaded. Dimensions: {self.config.dimensions}")

    async def embed(self, text: str) -> np.ndarray:
        self._ensure_initialized()
        try:
            embedding = await asyncio.to_thread(
                self._model.encode,
                self._truncate(text),
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
        except (RuntimeError, ValueError) as e:
            raise EmbeddingError(f"Failed to generate embedding: {e}") from e
        return self._check_dimensions(np.asarray(embedding, dtype=np.float32))

    async def embed_batch(self, texts: List[str]) -> List[np.ndarray]:
        self._ensure_initialized()
        if not texts:
            return []
        try:
            embeddings = await asyncio.to_thread(
                self._model.encode,
                [self._truncate(text) for text in texts],
                batch_size=self.config.batch_size,
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
        except (RuntimeError, ValueError) as e:
            raise EmbeddingError(f"Failed to generate embeddings: {e}") from e
        return [self._check_dimensions(np.asarray(e, dtype=np.float32)) for e in embeddings]


class OpenAIEmbedder(EmbeddingClient):
    """Embedder backed by the OpenAI embeddings API."""

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        client: Optional["openai.AsyncOpenAI"] = None,
    ):
        super().__init__(config)
        self._client = client

    def _ensure_initialized(self):
        if self._client is None:
            if not self.config.openai_api_key:
                raise ValueError("OpenAI API key not configured")
            self._client = openai.AsyncOpenAI(api_key=self.config.openai_api_key)
            logger.info(f"Initialized OpenAI embeddings with model {self.config.model_name}")

    async def _create(self, inputs: List[str]) -> List[np.ndarray]:
        self._ensure_initialized()
        try:
            response = await self._client.embeddings.create(
                model=self.config.model_name,
                input=[self._truncate(text) for text in inputs],
            )
        except openai.RateLimitError as e:
            raise EmbeddingRateLimitError(f"Embedding rate limit exceeded: {e}") from e
        except (openai.APIConnectionError, openai.APITimeoutError, openai.InternalServerError) as e:
            raise EmbeddingTransportError(f"Embedding service unavailable: {e}") from e
        except openai.APIError as e:
            raise EmbeddingError(f"Failed to generate embedding: {e}") from e

        ordered = sorted(response.data, key=lambda item: item.index)
        return [self._check_dimensions(np.asarray(item.embedding, dtype=np.float32)) for item in ordered]

    async def embed(self, text: str) -> np.ndarray:
        return (await self._create([text]))[0]

    async def embed_batch(self, texts: List[str]) -> List[np.ndarray]:
        vectors: List[np.ndarray] = []
        for i in range(0, len(texts), self.config.batch_size):
            vectors.extend(await self._create(texts[i:i + self.config.batch_size]))
        return vectors


def create_embedder(config: Optional[EmbeddingConfig] = None) -> EmbeddingClient:
    """Build an embedder for the configured provider."""
    config = config or get_settings().embedding
    if config.provider == "openai":
        return OpenAIEmbedder(config)
    if config.provider == "sentence-transformers":
        return SentenceTransformerEmbedder(config)
    raise ValueError(f"Unknown embedding provider: {config.provider}")


# Singleton instance
_embedder: Optional[EmbeddingClient] = None


def get_embedder() -> EmbeddingClient:
    """Get the global embedder instance."""
    global _embedder
    if _embedder is None:
        _embedder = create_embedder()
    return _embedder
