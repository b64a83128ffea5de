"""Unit tests for context retrieval."""

import logging
from unittest.mock import AsyncMock

import pytest

from quizrag.core.retrieval import ContextRetriever, extract_query_keywords, keyword_score
from quizrag.core.topic_processor import SemanticQuery
from quizrag.errors import EmbeddingError
from quizrag.models import DocumentCategory, RetrievedContext


def assert_well_formed(context: RetrievedContext):
    assert len(context.documents) == len(context.relevance_scores)
    assert context.relevance_scores == sorted(context.relevance_scores, reverse=True)


# ====================
# Keyword Helper Tests
# ====================

class TestKeywordHelpers:
    """Tests for keyword extraction and scoring."""

    def test_extract_query_keywords(self):
        """Test stop word and punctuation removal."""
        assert extract_query_keywords("What is the yield of a bond?") == ["what", "yield", "bond"]

    def test_keyword_score(self):
        """Test the matched keyword fraction."""
        assert keyword_score("Bond yields rise", ["bond", "yield", "equity"]) == pytest.approx(2 / 3)
        assert keyword_score("anything", []) == 0.0


# ====================
# Retrieval Mode Tests
# ====================

class TestRetrievalModes:
    """Tests for semantic, hybrid, enhanced and balanced retrieval."""

    @pytest.mark.asyncio
    async def test_retrieve_context(self, retriever, indexed_documents):
        """Test semantic retrieval ordering and shape."""
        context = await retriever.retrieve_context("bond prices and interest rates", limit=3)

        assert_well_formed(context)
        assert len(context.documents) == 3
        assert "bond" in context.documents[0].content.lower()
        assert context.query == "bond prices and interest rates"

    @pytest.mark.asyncio
    async def test_min_score_filters(self, retriever, indexed_documents):
        """Test that documents below the minimum score are dropped."""
        context = await retriever.retrieve_context("bond", min_score=0.99)

        assert context.is_empty

    @pytest.mark.asyncio
    async def test_category_filter(self, retriever, indexed_documents):
        """Test that only requested categories are returned."""
        context = await retriever.retrieve_context(
            "bond", categories=[DocumentCategory.REGULATION]
        )

        assert [d.category for d in context.documents] == [DocumentCategory.REGULATION]

    @pytest.mark.asyncio
    async def test_empty_index_degrades(self, retriever, caplog):
        """Test that an empty index yields an empty context and a warning."""
        with caplog.at_level(logging.WARNING):
            context = await retriever.retrieve_context("bonds")

        assert context.is_empty
        assert context.total_results == 0
        assert "No relevant context" in caplog.text

    @pytest.mark.asyncio
    async def test_hybrid_search(self, retriever, indexed_documents):
        """Test blended semantic and keyword retrieval."""
        context = await retriever.hybrid_search("bond coupon", limit=2)

        assert_well_formed(context)
        assert len(context.documents) == 2

    @pytest.mark.asyncio
    async def test_hybrid_search_without_reranking(self, retriever, indexed_documents):
        """Test that the blended score alone orders results."""
        context = await retriever.hybrid_search("bond coupon", limit=4, enable_reranking=False)

        assert_well_formed(context)
        assert context.relevance_scores[0] <= 1.0

    @pytest.mark.asyncio
    async def test_retrieve_context_enhanced(self, retriever, indexed_documents):
        """Test reranked retrieval with the per-source cap."""
        context = await retriever.retrieve_context_enhanced("bond", limit=4)

        assert_well_formed(context)
        sources = [d.source for d in context.documents]
        assert all(sources.count(s) <= retriever.reranker.config.max_per_source for s in sources)

    @pytest.mark.asyncio
    async def test_balanced_context(self, retriever, indexed_documents):
        """Test that every category is represented."""
        context = await retriever.retrieve_balanced_context("bond", total_limit=3)

        assert_well_formed(context)
        assert {d.category for d in context.documents} == set(DocumentCategory)

    @pytest.mark.asyncio
    async def test_find_similar_documents(self, retriever, indexed_documents):
        """Test nearest neighbours of a stored document exclude itself."""
        seed = indexed_documents[0]

        similar = await retriever.find_similar_documents(seed.id, limit=2)

        assert len(similar) == 2
        assert seed.id not in [r.document.id for r in similar]

    @pytest.mark.asyncio
    async def test_find_similar_unknown_document(self, retriever, indexed_documents):
        """Test that an unknown seed id is an error."""
        with pytest.raises(ValueError, match="not found"):
            await retriever.find_similar_documents("doc_missing")


# ====================
# Topic Retrieval Tests
# ====================

class TestTopicRetrieval:
    """Tests for expanded-query retrieval and merging."""

    @pytest.mark.asyncio
    async def test_retrieve_for_topic(self, retriever, topic_processor, indexed_documents):
        """Test merged retrieval across expanded queries."""
        semantic_query = await topic_processor.generate_semantic_queries("bonds")

        context = await retriever.retrieve_for_topic(semantic_query)

        assert_well_formed(context)
        assert context.query == "bonds"
        ids = [d.id for d in context.documents]
        assert len(ids) == len(set(ids))

    @pytest.mark.asyncio
    async def test_expanded_query_failure_skipped(self, retriever, indexed_documents):
        """Test that a failing expanded query does not fail the topic."""
        retriever.retrieve_context = AsyncMock(side_effect=EmbeddingError("embedding down"))
        semantic_query = SemanticQuery(
            original_topic="bonds",
            expanded_queries=["bonds", "debt"],
            keywords=["bonds"],
        )

        context = await retriever.retrieve_for_topic(semantic_query)

        assert not context.is_empty
        assert retriever.retrieve_context.await_count == 2

    def test_merge_keeps_best_score(self, make_document):
        """Test that duplicate documents keep their best score."""
        doc = make_document("d1")
        other = make_document("d2", title="Other")
        contexts = [
            RetrievedContext([doc, other], [0.5, 0.4], 2, "q"),
            RetrievedContext([doc], [0.9], 1, "q"),
        ]

        merged = ContextRetriever.merge_contexts(contexts, 10_000)

        assert [d.id for d in merged.documents] == ["d1", "d2"]
        assert merged.relevance_scores == [0.9, 0.4]
        assert merged.total_results == 3

    def test_merge_truncates_overflowing_document(self, make_document):
        """Test that the document crossing the budget is cut, and filling stops."""
        first = make_document("d1", title="First", content="a" * 50)
        second = make_document("d2", title="Second", content="b" * 100)
        third = make_document("d3", title="Third", content="c" * 10)
        context = RetrievedContext([first, second, third], [0.9, 0.8, 0.7], 3, "q")

        merged = ContextRetriever.merge_contexts([context], 100)

        assert [d.id for d in merged.documents] == ["d1", "d2"]
        assert merged.documents[1].content == "b" * (100 - 55 - len("Second"))
        assert second.content == "b" * 100
        assert_well_formed(merged)

    def test_merge_empty(self):
        """Test merging nothing."""
        merged = ContextRetriever.merge_contexts([], 100, "bonds")

        assert merged.is_empty
        assert merged.query == "bonds"
