"""Context retrieval.

This module retrieves the documents most relevant to a query from the vector
index, with semantic, hybrid (semantic + keyword), reranked, balanced and
topic-level (expanded query) modes.

Every RetrievedContext returned here has parallel documents/scores lists
ordered by non-increasing score. An empty result is a normal outcome, logged
at WARNING, not an error.
"""

import asyncio
import dataclasses
import logging
import re
from typing import Dict, List, Optional, Sequence

from quizrag.config import RetrievalConfig, get_settings
from quizrag.core.embedder import EmbeddingClient, get_embedder
from quizrag.core.reranker import (
    RankedResult,
    RankingOptions,
    ResultReranker,
    ScoredDocument,
    get_reranker,
)
from quizrag.core.topic_processor import SemanticQuery
from quizrag.core.vector_index import QdrantVectorIndex, get_vector_index, hit_to_document
from quizrag.errors import QuizRagError
from quizrag.models import DocumentCategory, RetrievedContext

logger = logging.getLogger(__name__)


STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
}

MIN_KEYWORD_LENGTH = 3


def extract_query_keywords(query: str) -> List[str]:
    """Lowercased query words with punctuation and stop words removed."""
    keywords = []
    for word in query.lower().split():
        word = re.sub(r"[^\w]", "", word)
        if len(word) >= MIN_KEYWORD_LENGTH and word not in STOP_WORDS:
            keywords.append(word)
    return keywords


def keyword_score(text: str, keywords: Sequence[str]) -> float:
    """Fraction of keywords present in ``text`` (case-insensitive)."""
    if not keywords:
        return 0.0
    lowered = text.lower()
    matches = sum(1 for keyword in keywords if keyword in lowered)
    return min(matches / len(keywords), 1.0)


class ContextRetriever:
    """Retrieves scored document sets for queries and topics."""

    def __init__(
        self,
        config: Optional[RetrievalConfig] = None,
        embedder: Optional[EmbeddingClient] = None,
        vector_index: Optional[QdrantVectorIndex] = None,
        reranker: Optional[ResultReranker] = None,
    ):
        """Initialize the retriever.

        Args:
            config: Retrieval parameters
            embedder: Embedding service
            vector_index: Vector index to search
            reranker: Multi-factor reranker
        """
        self.config = config or get_settings().retrieval
        self.embedder = embedder or get_embedder()
        self.vector_index = vector_index or get_vector_index()
        self.reranker = reranker or get_reranker()

    # ==================== Retrieval modes ====================

    async def retrieve_context(
        self,
        query: str,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
        categories: Optional[Sequence[DocumentCategory]] = None,
    ) -> RetrievedContext:
        """Semantic retrieval.

        Args:
            query: Search query
            limit: Maximum number of documents
            min_score: Drop documents scoring below this similarity
            categories: Restrict to these document categories

        Returns:
            Documents ordered by similarity (``1 - distance``)
        """
        limit = limit or self.config.default_limit
        vector = await self.embedder.embed_query(query)
        results = await self._search(vector, limit, categories)
        results = self.reranker.filter_results(results, min_score=min_score)
        return self._build_context(query, results)

    async def hybrid_search(
        self,
        query: str,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
        categories: Optional[Sequence[DocumentCategory]] = None,
        semantic_weight: Optional[float] = None,
        keyword_weight: Optional[float] = None,
        enable_reranking: bool = True,
        ranking_options: Optional[RankingOptions] = None,
    ) -> RetrievedContext:
        """Blend semantic similarity with keyword overlap.

        The semantic pass fetches ``limit`` hits and the keyword pass
        ``2 * limit`` hits from the same index; the keyword pass rescores its
        hits by query keyword overlap. Scores are merged per document id as
        ``semantic_weight * semantic + keyword_weight * keyword``.

        Args:
            query: Search query
            limit: Maximum number of documents
            min_score: Drop documents whose blended score is below this
            categories: Restrict to these document categories
            semantic_weight: Weight of the semantic score
            keyword_weight: Weight of the keyword score
            enable_reranking: Apply the multi-factor reranker
            ranking_options: Reranker weights

        Returns:
            Merged documents, reranked when enabled
        """
        limit = limit or self.config.default_limit
        semantic_weight = self.config.semantic_weight if semantic_weight is None else semantic_weight
        keyword_weight = self.config.keyword_weight if keyword_weight is None else keyword_weight

        vector = await self.embedder.embed_query(query)
        semantic_results, keyword_candidates = await asyncio.gather(
            self._search(vector, limit, categories),
            self._search(vector, limit * 2, categories),
        )

        keywords = extract_query_keywords(query)
        keyword_results = []
        for candidate in keyword_candidates:
            document = candidate.document
            score = keyword_score(f"{document.title} {document.content}", keywords)
            if score > 0:
                keyword_results.append(ScoredDocument(document=document, score=score))

        merged = self._merge_weighted(
            semantic_results, keyword_results, semantic_weight, keyword_weight
        )

        if enable_reranking and self.reranker.config.enabled:
            ranked = self.reranker.rerank(merged, ranking_options)
            ranked = self.reranker.filter_results(ranked, min_score=min_score, categories=categories)
            return self._build_ranked_context(query, ranked[:limit], len(ranked))

        merged = self.reranker.filter_results(merged, min_score=min_score, categories=categories)
        return self._build_context(query, merged[:limit], len(merged))

    async def retrieve_context_enhanced(
        self,
        query: str,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
        categories: Optional[Sequence[DocumentCategory]] = None,
        enable_reranking: bool = True,
        ranking_options: Optional[RankingOptions] = None,
    ) -> RetrievedContext:
        """Semantic retrieval followed by reranking and a per-source cap."""
        limit = limit or self.config.default_limit
        vector = await self.embedder.embed_query(query)
        results = await self._search(vector, limit, categories)

        if enable_reranking and self.reranker.config.enabled:
            ranked = self.reranker.ensure_diversity(self.reranker.rerank(results, ranking_options))
            ranked = self.reranker.filter_results(ranked, min_score=min_score, categories=categories)
            return self._build_ranked_context(query, ranked)

        results = self.reranker.filter_results(results, min_score=min_score, categories=categories)
        return self._build_context(query, results)

    async def retrieve_balanced_context(
        self,
        query: str,
        total_limit: int = 10,
        min_per_type: int = 1,
        min_score: Optional[float] = None,
        categories: Optional[Sequence[DocumentCategory]] = None,
        ranking_options: Optional[RankingOptions] = None,
    ) -> RetrievedContext:
        """Retrieve with guaranteed representation of each document category.

        Over-fetches ``max(2 * total_limit, 20)`` candidates, reranks them and
        selects a balanced subset.
        """
        vector = await self.embedder.embed_query(query)
        results = await self._search(vector, max(total_limit * 2, 20), categories)
        results = self.reranker.filter_results(results, min_score=min_score)
        ranked = self.reranker.rerank(results, ranking_options)
        balanced = self.reranker.get_balanced_results(ranked, total_limit, min_per_type)
        return self._build_ranked_context(query, balanced)

    async def retrieve_for_topic(
        self,
        semantic_query: SemanticQuery,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
        categories: Optional[Sequence[DocumentCategory]] = None,
        max_context_length: Optional[int] = None,
        expanded_query_limit: Optional[int] = None,
        enable_reranking: bool = True,
    ) -> RetrievedContext:
        """Retrieve context for a topic using its expanded queries.

        The original topic goes through enhanced retrieval; the first
        ``expanded_query_limit`` expanded queries go through plain semantic
        retrieval. Results are merged keeping the best score per document and
        filled from the highest score down within a character budget
        (title + content). The document that overflows the budget is
        truncated to the remaining space rather than dropped, and filling
        stops there.

        Args:
            semantic_query: Validated topic and its expansions
            limit: Per-query document limit for the original topic
            min_score: Minimum similarity for every query
            categories: Restrict to these document categories
            max_context_length: Character budget for the merged context
            expanded_query_limit: Number of expanded queries to run

        Returns:
            Merged context for the topic
        """
        limit = limit or self.config.topic_limit
        min_score = self.config.min_score if min_score is None else min_score
        max_context_length = max_context_length or self.config.max_context_length
        if expanded_query_limit is None:
            expanded_query_limit = self.config.expanded_query_limit

        contexts = [
            await self.retrieve_context_enhanced(
                semantic_query.original_topic,
                limit=limit,
                min_score=min_score,
                categories=categories,
                enable_reranking=enable_reranking,
            )
        ]

        for expanded in semantic_query.expanded_queries[:expanded_query_limit]:
            try:
                contexts.append(await self.retrieve_context(
                    expanded,
                    limit=self.config.default_limit,
                    min_score=min_score,
                    categories=categories,
                ))
            except QuizRagError as e:
                logger.warning(f"Skipping expanded query '{expanded}': {e}")

        merged = self.merge_contexts(contexts, max_context_length, semantic_query.original_topic)
        if merged.is_empty:
            logger.warning(f"No relevant context found for topic '{semantic_query.original_topic}'")
        return merged

    async def find_similar_documents(self, document_id: str, limit: int = 5) -> List[ScoredDocument]:
        """Documents nearest to a stored document, excluding the document itself."""
        seeds = await self.vector_index.get_by_ids([document_id], with_vectors=True)
        if not seeds:
            raise ValueError(f"Document with ID {document_id} not found")
        seed = seeds[0]
        if seed.vector is None or len(seed.vector) == 0:
            raise ValueError(f"Document {document_id} has no embedding")

        results = await self._search(seed.vector, limit + 1, None)
        return [r for r in results if r.document.id != document_id][:limit]

    # ==================== Merging ====================

    @staticmethod
    def merge_contexts(
        contexts: Sequence[RetrievedContext],
        max_context_length: int,
        query: Optional[str] = None,
    ) -> RetrievedContext:
        """Merge contexts by best score per document within a character budget."""
        best: Dict[str, ScoredDocument] = {}
        total_results = 0
        for context in contexts:
            total_results += context.total_results
            for document, score in zip(context.documents, context.relevance_scores):
                existing = best.get(document.id)
                if existing is None or score > existing.score:
                    best[document.id] = ScoredDocument(document=document, score=score)

        ordered = sorted(best.values(), key=lambda r: r.score, reverse=True)
        documents = []
        scores = []
        used = 0
        for result in ordered:
            document = result.document
            size = len(document.title) + len(document.content)
            if used + size > max_context_length:
                remaining = max_context_length - used - len(document.title)
                if remaining > 0:
                    documents.append(dataclasses.replace(document, content=document.content[:remaining]))
                    scores.append(result.score)
                break
            documents.append(document)
            scores.append(result.score)
            used += size

        if query is None:
            query = contexts[0].query if contexts else ""
        return RetrievedContext(
            documents=documents,
            relevance_scores=scores,
            total_results=total_results,
            query=query,
        )

    @staticmethod
    def _merge_weighted(
        semantic_results: Sequence[ScoredDocument],
        keyword_results: Sequence[ScoredDocument],
        semantic_weight: float,
        keyword_weight: float,
    ) -> List[ScoredDocument]:
        combined: Dict[str, ScoredDocument] = {}
        for result in semantic_results:
            combined[result.document.id] = ScoredDocument(
                document=result.document,
                score=result.score * semantic_weight,
            )
        for result in keyword_results:
            existing = combined.get(result.document.id)
            if existing is not None:
                existing.score += result.score * keyword_weight
            else:
                combined[result.document.id] = ScoredDocument(
                    document=result.document,
                    score=result.score * keyword_weight,
                )
        return sorted(combined.values(), key=lambda r: r.score, reverse=True)

    # ==================== Helpers ====================

    async def _search(
        self,
        vector,
        limit: int,
        categories: Optional[Sequence[DocumentCategory]],
    ) -> List[ScoredDocument]:
        hits = await self.vector_index.query(vector, limit, categories)
        results = [
            ScoredDocument(document=hit_to_document(hit), score=1.0 - hit.distance)
            for hit in hits
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    @staticmethod
    def _build_context(
        query: str,
        results: Sequence[ScoredDocument],
        total_results: Optional[int] = None,
    ) -> RetrievedContext:
        if not results:
            logger.warning(f"No relevant context found for query '{query}'")
        return RetrievedContext(
            documents=[r.document for r in results],
            relevance_scores=[r.score for r in results],
            total_results=len(results) if total_results is None else total_results,
            query=query,
        )

    @staticmethod
    def _build_ranked_context(
        query: str,
        results: Sequence[RankedResult],
        total_results: Optional[int] = None,
    ) -> RetrievedContext:
        if not results:
            logger.warning(f"No relevant context found for query '{query}'")
        return RetrievedContext(
            documents=[r.document for r in results],
            relevance_scores=[r.final_score for r in results],
            total_results=len(results) if total_results is None else total_results,
            query=query,
        )


# Singleton instance
_retriever: Optional[ContextRetriever] = None


def get_retriever() -> ContextRetriever:
    """Get the global context retriever instance."""
    global _retriever
    if _retriever is None:
        _retriever = ContextRetriever()
    return _retriever
