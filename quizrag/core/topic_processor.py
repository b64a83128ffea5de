"""Topic validation and query expansion.

A free-text topic is accepted when it matches the curated securities topic
list or its synonyms, or when its embedding is close enough to one of the
domain anchor phrases. Accepted topics are expanded into several related
search queries.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from quizrag.config import TopicConfig, get_settings
from quizrag.core.embedder import EmbeddingClient, cosine_similarity, get_embedder
from quizrag.errors import EmbeddingError

logger = logging.getLogger(__name__)


KNOWN_TOPICS = [
    # Security types
    "stocks", "bonds", "equities", "debt securities", "derivatives",
    "options", "futures", "swaps", "mutual funds", "etfs",
    # Markets
    "financial markets", "capital markets", "money markets",
    "primary markets", "secondary markets", "trading",
    # Investment
    "portfolio management", "asset allocation", "diversification",
    "risk management", "investment analysis", "valuation",
    # Regulation
    "securities regulation", "compliance", "sec regulations",
    "finra rules", "disclosure requirements", "fiduciary duty",
    # Planning
    "retirement planning", "financial planning", "investment advisory",
    "wealth management", "tax planning",
    # Analysis
    "fundamental analysis", "technical analysis", "market efficiency",
    "behavioral finance", "quantitative analysis",
    # Risk and return
    "risk assessment", "return calculation", "performance measurement",
    "benchmark analysis", "attribution analysis",
]

TOPIC_SYNONYMS: Dict[str, List[str]] = {
    "stock": ["equity", "share", "common stock", "equity security"],
    "bond": ["debt", "fixed income", "debt security", "debenture"],
    "option": ["derivative", "call", "put", "warrant"],
    "fund": ["mutual fund", "investment fund", "pooled investment"],
    "etf": ["exchange traded fund", "index fund", "tracker fund"],
    "portfolio": ["investment portfolio", "asset portfolio", "holdings"],
    "risk": ["investment risk", "market risk", "financial risk"],
    "return": ["investment return", "yield", "performance", "gain"],
    "analysis": ["investment analysis", "security analysis", "financial analysis"],
    "regulation": ["securities law", "financial regulation", "compliance rule"],
    "market": ["financial market", "securities market", "trading market"],
    "trading": ["securities trading", "investment trading", "market trading"],
}

DOMAIN_ANCHORS = [
    "securities regulation",
    "financial markets",
    "investment analysis",
    "portfolio management",
    "risk management",
    "derivatives trading",
    "equity markets",
    "bond markets",
    "mutual funds",
    "financial planning",
]

DOMAIN_KEYWORDS = [
    "stock", "bond", "equity", "debt", "security", "securities",
    "investment", "portfolio", "fund", "mutual", "etf",
    "derivative", "option", "future", "swap",
    "market", "trading", "broker", "dealer",
    "regulation", "compliance", "sec", "finra",
    "risk", "return", "yield", "dividend",
    "financial", "finance", "capital", "asset",
]

CONCEPT_MAP: Dict[str, List[str]] = {
    "stock": ["equity", "shares", "common stock", "preferred stock", "dividend"],
    "bond": ["debt", "fixed income", "yield", "maturity", "credit rating"],
    "option": ["derivative", "call option", "put option", "strike price", "expiration"],
    "portfolio": ["diversification", "asset allocation", "risk management", "return"],
    "mutual fund": ["investment company", "net asset value", "expense ratio", "load"],
    "regulation": ["compliance", "sec", "finra", "disclosure", "fiduciary"],
    "market": ["trading", "liquidity", "volatility", "price discovery", "efficiency"],
    "risk": ["systematic risk", "unsystematic risk", "beta", "standard deviation"],
    "analysis": ["fundamental analysis", "technical analysis", "valuation", "ratios"],
}

KEYWORD_STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "is", "are", "was", "were", "be", "been", "being",
}


@dataclass
class TopicValidationResult:
    """Outcome of validating a topic."""
    is_valid: bool
    normalized_topic: str
    suggestions: List[str] = field(default_factory=list)
    message: str = ""


@dataclass
class SemanticQuery:
    """A validated topic expanded for retrieval."""
    original_topic: str
    expanded_queries: List[str]
    keywords: List[str]
    related_concepts: List[str] = field(default_factory=list)


def normalize_topic(topic: str) -> str:
    """Trim, lowercase, drop punctuation other than hyphens, collapse whitespace."""
    text = re.sub(r"[^\w\s-]", "", topic.strip().lower())
    return re.sub(r"\s+", " ", text).strip()


def extract_keywords(topic: str) -> List[str]:
    """Words longer than two characters that are not stop words."""
    return [
        word.lower() for word in topic.split()
        if len(word) > 2 and word.lower() not in KEYWORD_STOP_WORDS
    ]


class TopicProcessor:
    """Validates topics and expands them into search queries."""

    def __init__(
        self,
        config: Optional[TopicConfig] = None,
        embedder: Optional[EmbeddingClient] = None,
    ):
        """Initialize the processor.

        Args:
            config: Topic validation configuration
            embedder: Embedding client for the similarity check
        """
        self.config = config or get_settings().topic
        self.embedder = embedder or get_embedder()
        self._anchor_embeddings: Optional[List[np.ndarray]] = None

    async def validate_topic(self, topic: str) -> TopicValidationResult:
        """Decide whether a topic belongs to the securities domain.

        Args:
            topic: Free-text topic

        Returns:
            Validation result with the normalized topic and, for rejected
            topics, suggested known topics
        """
        normalized = normalize_topic(topic)

        if len(normalized) < 2:
            return TopicValidationResult(
                is_valid=False,
                normalized_topic="",
                message="Topic must be at least 2 characters long",
            )

        if self.is_known_topic(normalized):
            return TopicValidationResult(
                is_valid=True,
                normalized_topic=normalized,
                message="Valid securities topic",
            )

        if await self._is_domain_related(normalized):
            return TopicValidationResult(
                is_valid=True,
                normalized_topic=normalized,
                message="Topic appears to be securities-related",
            )

        logger.info(f"Rejected out-of-domain topic: '{normalized}'")
        return TopicValidationResult(
            is_valid=False,
            normalized_topic=normalized,
            suggestions=self.suggest_topics(normalized),
            message="Topic does not appear to be related to securities education",
        )

    async def generate_semantic_queries(self, topic: str) -> SemanticQuery:
        """Expand a topic into related search queries.

        Expansion order: the topic itself, synonym substitutions, then (when
        the topic has more than one keyword) each keyword and each pair of
        keywords. Duplicates are removed keeping first occurrence.
        """
        normalized = normalize_topic(topic)
        keywords = extract_keywords(normalized)

        queries = [normalized]
        for canonical, synonyms in TOPIC_SYNONYMS.items():
            if canonical in normalized:
                for synonym in synonyms:
                    expanded = normalized.replace(canonical, synonym, 1)
                    if expanded != normalized:
                        queries.append(expanded)

        if len(keywords) > 1:
            queries.extend(keywords)
            for i in range(len(keywords) - 1):
                for j in range(i + 1, len(keywords)):
                    queries.append(f"{keywords[i]} {keywords[j]}")

        related = []
        for key, concepts in CONCEPT_MAP.items():
            if key in normalized:
                related.extend(concepts)

        return SemanticQuery(
            original_topic=normalized,
            expanded_queries=list(dict.fromkeys(queries)),
            keywords=keywords,
            related_concepts=list(dict.fromkeys(related)),
        )

    def is_known_topic(self, topic: str) -> bool:
        """Exact or partial match against known topics and synonyms."""
        for known in KNOWN_TOPICS:
            if topic in known or known in topic:
                return True
        for synonyms in TOPIC_SYNONYMS.values():
            if any(topic in synonym or synonym in topic for synonym in synonyms):
                return True
        return False

    def suggest_topics(self, topic: str) -> List[str]:
        """Known topics sharing at least one keyword with ``topic``."""
        words = set(extract_keywords(topic))
        suggestions = [
            known for known in KNOWN_TOPICS
            if words.intersection(extract_keywords(known))
        ]
        return suggestions[:self.config.max_suggestions]

    async def _is_domain_related(self, topic: str) -> bool:
        try:
            topic_embedding = await self.embedder.embed(topic)
            anchors = await self._get_anchor_embeddings()
            best = max(cosine_similarity(topic_embedding, anchor) for anchor in anchors)
        except (EmbeddingError, ValueError) as e:
            # ValueError: the topic and anchor vectors differ in length
            logger.warning(f"Semantic similarity check failed, using keyword matching: {e}")
            return any(keyword in topic for keyword in DOMAIN_KEYWORDS)

        logger.debug(f"Topic '{topic}' best anchor similarity: {best:.3f}")
        return best > self.config.similarity_threshold

    async def _get_anchor_embeddings(self) -> List[np.ndarray]:
        if self._anchor_embeddings is None:
            self._anchor_embeddings = await self.embedder.embed_batch(DOMAIN_ANCHORS)
        return self._anchor_embeddings


# Singleton instance
_topic_processor: Optional[TopicProcessor] = None


def get_topic_processor() -> TopicProcessor:
    """Get the global topic processor instance."""
    global _topic_processor
    if _topic_processor is None:
        _topic_processor = TopicProcessor()
    return _topic_processor
