"""Multi-factor re-ranking of retrieval results.

Candidates are re-scored with authority, recency, diversity and document type
signals on top of their retrieval score, and can be capped per source or
balanced across document categories.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, TypeVar

from quizrag.config import RerankerConfig, get_settings
from quizrag.models import Document, DocumentCategory, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ScoredDocument:
    """A document with its retrieval score."""
    document: Document
    score: float


@dataclass
class RankingFactors:
    """Individual signals that make up a final score."""
    original_score: float
    authority_score: float
    recency_score: float
    diversity_score: float
    type_score: float


@dataclass
class RankedResult(ScoredDocument):
    """A re-ranked candidate.

    ``score`` keeps the retrieval score; ``final_score`` is the blended score
    used for ordering.
    """
    final_score: float
    factors: RankingFactors


@dataclass
class RankingOptions:
    """Weights and preferences for re-ranking."""
    original_weight: float = 0.4
    authority_weight: float = 0.3
    recency_weight: float = 0.2
    diversity_weight: float = 0.1
    type_weight: float = 0.1
    type_preferences: Dict[str, float] = field(default_factory=lambda: {
        "textbook": 1.0,
        "regulation": 0.9,
        "qa_pair": 0.8,
    })
    source_authority: Dict[str, float] = field(default_factory=dict)
    recency_half_life_days: float = 730.0

    @classmethod
    def from_config(cls, config: RerankerConfig) -> "RankingOptions":
        return cls(
            original_weight=config.original_weight,
            authority_weight=config.authority_weight,
            recency_weight=config.recency_weight,
            diversity_weight=config.diversity_weight,
            type_weight=config.type_weight,
            type_preferences=dict(config.type_preferences),
            recency_half_life_days=config.recency_half_life_days,
        )


R = TypeVar("R", bound=ScoredDocument)


class ResultReranker:
    """Re-scores and selects retrieval candidates."""

    def __init__(self, config: Optional[RerankerConfig] = None):
        """Initialize the reranker.

        Args:
            config: Reranker configuration (default weights and caps)
        """
        self.config = config or get_settings().reranker

    def default_options(self) -> RankingOptions:
        return RankingOptions.from_config(self.config)

    def rerank(
        self,
        results: Sequence[ScoredDocument],
        options: Optional[RankingOptions] = None,
        now: Optional[datetime] = None,
    ) -> List[RankedResult]:
        """Re-rank candidates by the weighted blend of all signals.

        The diversity signal depends on input order, so callers should pass
        candidates in retrieval order.

        Args:
            results: Candidates in retrieval order
            options: Weights to use instead of the configured defaults
            now: Reference time for the recency signal

        Returns:
            Ranked results sorted by descending final score (stable)
        """
        opts = options or self.default_options()
        now = now or utcnow()
        seen_sources: Dict[str, int] = {}
        ranked = []

        for result in results:
            document = result.document
            diversity = max(0.0, 1.0 - 0.2 * seen_sources.get(document.source, 0))
            seen_sources[document.source] = seen_sources.get(document.source, 0) + 1

            factors = RankingFactors(
                original_score=result.score,
                authority_score=self._authority_score(document, opts),
                recency_score=self._recency_score(document, opts, now),
                diversity_score=diversity,
                type_score=self._type_score(document, opts),
            )
            final_score = (
                opts.original_weight * factors.original_score
                + opts.authority_weight * factors.authority_score
                + opts.recency_weight * factors.recency_score
                + opts.diversity_weight * factors.diversity_score
                + opts.type_weight * factors.type_score
            )
            ranked.append(RankedResult(
                document=document,
                score=result.score,
                final_score=final_score,
                factors=factors,
            ))

        ranked.sort(key=lambda r: r.final_score, reverse=True)
        return ranked

    def filter_results(
        self,
        results: Sequence[R],
        min_score: Optional[float] = None,
        categories: Optional[Sequence[DocumentCategory]] = None,
    ) -> List[R]:
        """Drop results below ``min_score`` or outside ``categories``."""
        allowed = {DocumentCategory(c) for c in categories} if categories else None
        filtered = []
        for result in results:
            if min_score is not None and result.score < min_score:
                continue
            if allowed is not None and result.document.category not in allowed:
                continue
            filtered.append(result)
        return filtered

    def ensure_diversity(
        self,
        results: Sequence[R],
        max_per_source: Optional[int] = None,
    ) -> List[R]:
        """Keep at most ``max_per_source`` results from any single source."""
        max_per_source = max_per_source or self.config.max_per_source
        counts: Dict[str, int] = {}
        kept = []
        for result in results:
            source = result.document.source
            counts[source] = counts.get(source, 0) + 1
            if counts[source] <= max_per_source:
                kept.append(result)
        return kept

    def get_balanced_results(
        self,
        results: Sequence[RankedResult],
        total_limit: int = 10,
        min_per_type: int = 1,
    ) -> List[RankedResult]:
        """Select results with a minimum representation per category.

        Each category contributes its best ``min(min_per_type, available)``
        results first; remaining slots go to the best leftovers.

        Args:
            results: Ranked candidates
            total_limit: Maximum number of results
            min_per_type: Guaranteed results per category, when available

        Returns:
            Selected results sorted by descending final score
        """
        by_score = sorted(results, key=lambda r: r.final_score, reverse=True)
        selected: List[RankedResult] = []
        used_ids = set()

        for category in DocumentCategory:
            group = [r for r in by_score if r.document.category == category]
            for result in group[:min_per_type]:
                selected.append(result)
                used_ids.add(result.document.id)

        remaining = total_limit - len(selected)
        if remaining > 0:
            leftovers = [r for r in by_score if r.document.id not in used_ids]
            selected.extend(leftovers[:remaining])

        selected.sort(key=lambda r: r.final_score, reverse=True)
        return selected[:total_limit]

    @staticmethod
    def _authority_score(document: Document, opts: RankingOptions) -> float:
        base = opts.source_authority.get(document.source, 0.5)
        type_boost = 0.2 if document.category == DocumentCategory.REGULATION else 0.0
        # Richer metadata indicates better curation
        metadata_boost = min(0.05 * len(document.metadata), 0.2)
        return min(base + type_boost + metadata_boost, 1.0)

    @staticmethod
    def _recency_score(document: Document, opts: RankingOptions, now: datetime) -> float:
        age_days = (now - document.last_updated).total_seconds() / 86400
        return max(0.0, math.exp(-age_days / opts.recency_half_life_days))

    @staticmethod
    def _type_score(document: Document, opts: RankingOptions) -> float:
        return opts.type_preferences.get(DocumentCategory(document.category).value, 0.5)


# Singleton instance
_reranker: Optional[ResultReranker] = None


def get_reranker() -> ResultReranker:
    """Get the global reranker instance."""
    global _reranker
    if _reranker is None:
        _reranker = ResultReranker()
    return _reranker
