"""Configuration management for the quiz RAG system."""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict
from functools import lru_cache


@dataclass
class QdrantConfig:
    """Qdrant vector store configuration."""
    url: str = "http://qdrant:6333"
    collection_name: str = "securities_documents"
    vector_size: int = 384  # all-MiniLM-L6-v2 dimensions


@dataclass
class RedisConfig:
    """Redis configuration."""
    url: str = "redis://redis:6379"
    session_prefix: str = "session:"


@dataclass
class EmbeddingConfig:
    """Embedding model configuration."""
    provider: str = "sentence-transformers"  # sentence-transformers, openai
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimensions: int = 384
    max_tokens: int = 512
    batch_size: int = 32

    openai_api_key: Optional[str] = None


@dataclass
class GenerationConfig:
    """LLM generation configuration."""
    provider: str = "openai"  # openai, anthropic
    model: str = "gpt-4o-mini"
    max_output_tokens: int = 2048
    temperature: float = 0.7
    timeout_seconds: float = 30.0
    max_retries: int = 3

    # API keys
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None


@dataclass
class ChunkingConfig:
    """Document chunking configuration (sizes in characters)."""
    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_size: int = 100
    max_chunk_size: int = 2000
    batch_size: int = 50


@dataclass
class RetrievalConfig:
    """Retrieval configuration."""
    default_limit: int = 10
    topic_limit: int = 20
    min_score: float = 0.6
    semantic_weight: float = 0.7
    keyword_weight: float = 0.3
    max_context_length: int = 8000
    expanded_query_limit: int = 3


@dataclass
class RerankerConfig:
    """Multi-factor reranker weights."""
    enabled: bool = True
    original_weight: float = 0.4
    authority_weight: float = 0.3
    recency_weight: float = 0.2
    diversity_weight: float = 0.1
    type_weight: float = 0.1
    recency_half_life_days: float = 730.0
    max_per_source: int = 3
    type_preferences: Dict[str, float] = field(default_factory=lambda: {
        "textbook": 1.0,
        "regulation": 0.9,
        "qa_pair": 0.8,
    })


@dataclass
class TopicConfig:
    """Topic validation configuration."""
    similarity_threshold: float = 0.6
    max_suggestions: int = 5


@dataclass
class SessionConfig:
    """Quiz session configuration."""
    store: str = "memory"  # memory, redis
    ttl_minutes: int = 60
    max_questions: int = 20
    generation_attempts: int = 3


@dataclass
class Settings:
    """Main application settings."""
    app_name: str = "Quiz RAG"
    debug: bool = False

    # Sub-configurations
    qdrant: QdrantConfig = field(default_factory=QdrantConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    reranker: RerankerConfig = field(default_factory=RerankerConfig)
    topic: TopicConfig = field(default_factory=TopicConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


@lru_cache()
def get_settings() -> Settings:
    """Get application settings from environment."""
    dimensions = int(os.getenv("EMBEDDING_DIMENSIONS", EmbeddingConfig.dimensions))
    return Settings(
        debug=os.getenv("DEBUG", "false").lower() == "true",
        qdrant=QdrantConfig(
            url=os.getenv("QDRANT_URL", QdrantConfig.url),
            collection_name=os.getenv("QDRANT_COLLECTION", QdrantConfig.collection_name),
            vector_size=dimensions,
        ),
        redis=RedisConfig(
            url=os.getenv("REDIS_URL", RedisConfig.url),
        ),
        embedding=EmbeddingConfig(
            provider=os.getenv("EMBEDDING_PROVIDER", EmbeddingConfig.provider),
            model_name=os.getenv("EMBEDDING_MODEL", EmbeddingConfig.model_name),
            dimensions=dimensions,
            openai_api_key=os.getenv("OPENAI_API_KEY"),
        ),
        generation=GenerationConfig(
            provider=os.getenv("LLM_PROVIDER", GenerationConfig.provider),
            model=os.getenv("LLM_MODEL", GenerationConfig.model),
            timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", GenerationConfig.timeout_seconds)),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
        ),
        session=SessionConfig(
            store=os.getenv("SESSION_STORE", SessionConfig.store),
            ttl_minutes=int(os.getenv("SESSION_TTL_MINUTES", SessionConfig.ttl_minutes)),
        ),
    )
