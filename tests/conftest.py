"""Pytest fixtures for the quiz RAG tests."""

import json
import re
from datetime import timedelta
from types import SimpleNamespace
from typing import Dict, List, Optional

import numpy as np
import pytest
import pytest_asyncio
from qdrant_client import AsyncQdrantClient

from quizrag.config import (
    ChunkingConfig,
    EmbeddingConfig,
    GenerationConfig,
    QdrantConfig,
    RerankerConfig,
    RetrievalConfig,
    SessionConfig,
    Settings,
    TopicConfig,
)
from quizrag.core.document_processor import DocumentProcessor, RawDocument
from quizrag.core.embedder import EmbeddingClient
from quizrag.core.reranker import ResultReranker
from quizrag.core.retrieval import ContextRetriever
from quizrag.core.topic_processor import TopicProcessor
from quizrag.core.vector_index import QdrantVectorIndex
from quizrag.generation.answer_generator import AnswerGenerator
from quizrag.generation.explanation_generator import ExplanationGenerator
from quizrag.generation.flashcards import FlashcardGenerator
from quizrag.generation.followup import FollowupResponder
from quizrag.generation.llm_client import LanguageModelClient, LLMBackend
from quizrag.generation.prompts import PromptManager
from quizrag.generation.question_generator import QuestionGenerator
from quizrag.generation.summarizer import Summarizer
from quizrag.models import Document, DocumentCategory, Question, utcnow
from quizrag.services.ingestion_service import IngestionService
from quizrag.services.quiz_service import QuizService
from quizrag.session.flow import FlowController
from quizrag.session.manager import SessionManager
from quizrag.session.store import InMemorySessionStore

EMBEDDING_DIMENSIONS = 512


# ====================
# Test doubles
# ====================

class BagOfWordsEmbedder(EmbeddingClient):
    """Deterministic embedder: one dimension per distinct word.

    Words get dimensions in first-seen order, so texts sharing words have
    positive cosine similarity and texts with disjoint vocabularies are
    orthogonal (until the vocabulary outgrows the dimensions).
    """

    def __init__(self, dimensions: int = EMBEDDING_DIMENSIONS):
        super().__init__(EmbeddingConfig(dimensions=dimensions))
        self.vocabulary: Dict[str, int] = {}
        self.calls = 0

    def _index(self, word: str) -> int:
        # Crude stemming so "bonds" and "bond" share a dimension
        if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
            word = word[:-1]
        return self.vocabulary.setdefault(word, len(self.vocabulary)) % self.dimensions

    async def embed(self, text: str) -> np.ndarray:
        self.calls += 1
        vector = np.zeros(self.dimensions, dtype=np.float32)
        for word in re.findall(r"[a-z]+", text.lower()):
            vector[self._index(word)] += 1.0
        norm = np.linalg.norm(vector)
        return vector / norm if norm else vector


class ScriptedBackend(LLMBackend):
    """LLM backend that replays queued responses.

    Queued exceptions are raised instead of returned. When the queue runs
    dry the last response is repeated.
    """

    def __init__(self, responses: Optional[List] = None):
        self.model = "scripted-model"
        self.responses = list(responses or [])
        self.calls: List[List[Dict[str, str]]] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    async def complete(self, messages, temperature, max_output_tokens) -> str:
        self.calls.append(messages)
        if not self.responses:
            raise AssertionError("No scripted response queued")
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


def question_batch_json(count: int, topic: str = "bonds") -> str:
    """A well-formed question batch response."""
    return json.dumps({
        "questions": [
            {
                "questionText": f"Question {i + 1}: what happens to {topic} prices when interest rates rise?",
                "options": {
                    "A": "Prices fall",
                    "B": "Prices rise",
                    "C": "Prices stay the same",
                    "D": "Prices double",
                },
                "correctAnswer": "A",
            }
            for i in range(count)
        ]
    })


def answer_json(**overrides) -> str:
    payload = {
        "correct_answer": "Bond prices fall when interest rates rise",
        "explanation": "Existing bonds pay fixed coupons, so higher market rates make them less attractive.",
        "distractors": [
            "Bond prices rise with interest rates",
            "Bond prices never change",
            "Only stock prices react to rates",
        ],
    }
    payload.update(overrides)
    return json.dumps(payload)


def explanation_json(**overrides) -> str:
    payload = {
        "explanation": (
            "Prices fall because a bond pays a fixed coupon. When market rates rise, "
            "new debt offers a higher yield. Therefore existing bonds must trade at a "
            "discount so that their yield to maturity matches the market."
        ),
        "key_points": ["Bond prices and yields move in opposite directions"],
        "common_mistakes": ["Confusing yield with coupon rate"],
        "examples": ["A 3% bond falls below par when new bonds pay 5%"],
        "mnemonics": [],
    }
    payload.update(overrides)
    return json.dumps(payload)


def flashcard_batch_json(count: int) -> str:
    """A well-formed flashcard batch response."""
    return json.dumps({
        "cards": [
            {
                "front": f"Card {i + 1}: what happens to bond prices when rates rise?",
                "back": "They fall.",
                "explanation": "Fixed coupons become less attractive than new issues.",
            }
            for i in range(count)
        ]
    })


@pytest.fixture
def responses():
    """Builders for well-formed model responses."""
    return SimpleNamespace(
        question_batch=question_batch_json,
        answer=answer_json,
        explanation=explanation_json,
        flashcards=flashcard_batch_json,
    )


# ====================
# Configuration
# ====================

@pytest.fixture
def settings():
    """Settings sized for the test doubles."""
    return Settings(
        qdrant=QdrantConfig(collection_name="test_documents", vector_size=EMBEDDING_DIMENSIONS),
        embedding=EmbeddingConfig(dimensions=EMBEDDING_DIMENSIONS),
        generation=GenerationConfig(model="scripted-model", timeout_seconds=5.0),
        chunking=ChunkingConfig(),
        retrieval=RetrievalConfig(min_score=0.0),
        reranker=RerankerConfig(),
        topic=TopicConfig(),
        session=SessionConfig(store="memory"),
    )


# ====================
# Core components
# ====================

@pytest.fixture
def embedder():
    return BagOfWordsEmbedder()


@pytest.fixture
def vector_index(settings):
    """Vector index over an in-process Qdrant instance."""
    return QdrantVectorIndex(settings.qdrant, client=AsyncQdrantClient(location=":memory:"))


@pytest.fixture
def reranker(settings):
    return ResultReranker(settings.reranker)


@pytest.fixture
def retriever(settings, embedder, vector_index, reranker):
    return ContextRetriever(settings.retrieval, embedder, vector_index, reranker)


@pytest.fixture
def topic_processor(settings, embedder):
    return TopicProcessor(settings.topic, embedder)


@pytest.fixture
def document_processor(settings, embedder, vector_index):
    return DocumentProcessor(settings.chunking, embedder, vector_index)


@pytest.fixture
def make_document():
    """Factory for stored-looking documents."""
    def _make(
        doc_id: str = "doc_1",
        content: str = "Bonds are debt securities that pay a fixed coupon until maturity.",
        category: DocumentCategory = DocumentCategory.TEXTBOOK,
        source: str = "textbook.md",
        title: str = "Bond Basics",
        age_days: int = 0,
        **kwargs,
    ) -> Document:
        return Document(
            id=doc_id,
            title=title,
            content=content,
            category=category,
            source=source,
            last_updated=utcnow() - timedelta(days=age_days),
            **kwargs,
        )
    return _make


@pytest.fixture
def sample_raw_documents():
    """Study material spanning all three categories."""
    return [
        RawDocument(
            title="Bond Fundamentals",
            content=(
                "A bond is a debt security issued by a government or corporation. "
                "The bond pays a fixed coupon to the bondholder until maturity. "
                "Bond prices move inversely to interest rates, so when rates rise "
                "the price of an existing bond falls and its yield rises."
            ),
            source="textbook/bonds.md",
            category=DocumentCategory.TEXTBOOK,
        ),
        RawDocument(
            title="Common Stock",
            content=(
                "Common stock represents equity ownership in a company. Shareholders "
                "may receive dividends and usually vote on corporate matters. Stock "
                "prices reflect expectations about future earnings and growth."
            ),
            source="textbook/stocks.md",
            category=DocumentCategory.TEXTBOOK,
        ),
        RawDocument(
            title="Municipal Bond Disclosure",
            content=(
                "Underwriters of municipal bond offerings shall obtain and review the "
                "official statement. Bond issuers must disclose material events, and "
                "dealers must deliver the official statement to every bond purchaser."
            ),
            source="regulation/msrb.md",
            category=DocumentCategory.REGULATION,
        ),
        RawDocument(
            title="Bond Practice Question",
            content=(
                "Question: What happens to the price of a bond when market interest "
                "rates increase? Answer: The bond price decreases because its fixed "
                "coupon becomes less attractive than the yield on new bonds."
            ),
            source="question_pool/bonds.json",
            category=DocumentCategory.QUESTION_POOL,
        ),
    ]


@pytest_asyncio.fixture
async def indexed_documents(document_processor, sample_raw_documents):
    """Sample material chunked, embedded and stored in the vector index."""
    result = await document_processor.process_and_store(sample_raw_documents)
    assert not [e for e in result.errors if e.severity == "error"]
    return result.documents


# ====================
# Generation
# ====================

@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def llm_client(settings, backend):
    return LanguageModelClient(settings.generation, backend=backend)


@pytest.fixture
def prompt_manager():
    return PromptManager()


@pytest.fixture
def question_generator(settings, topic_processor, retriever, prompt_manager, llm_client):
    return QuestionGenerator(settings.session, topic_processor, retriever, prompt_manager, llm_client)


@pytest.fixture
def answer_generator(settings, prompt_manager, llm_client):
    return AnswerGenerator(settings.session, prompt_manager, llm_client)


@pytest.fixture
def explanation_generator(settings, prompt_manager, llm_client):
    return ExplanationGenerator(settings.session, prompt_manager, llm_client)


@pytest.fixture
def followup_responder(settings, retriever, prompt_manager, llm_client):
    return FollowupResponder(settings.session, retriever, prompt_manager, llm_client)


@pytest.fixture
def flashcard_generator(settings, topic_processor, retriever, prompt_manager, llm_client):
    return FlashcardGenerator(settings.session, topic_processor, retriever, prompt_manager, llm_client)


@pytest.fixture
def summarizer(settings, topic_processor, retriever, prompt_manager, llm_client):
    return Summarizer(settings.session, topic_processor, retriever, prompt_manager, llm_client)


@pytest.fixture
def sample_question():
    return Question(
        id="q_1",
        topic="bonds",
        question_text="What happens to bond prices when interest rates rise?",
        options={
            "A": "Bond prices fall",
            "B": "Bond prices rise",
            "C": "Bond prices stay the same",
            "D": "Bond prices double",
        },
        correct_answer="A",
    )


# ====================
# Sessions and services
# ====================

@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def session_manager(settings, session_store):
    return SessionManager(settings.session, session_store)


@pytest.fixture
def flow_controller(session_manager):
    return FlowController(session_manager)


@pytest.fixture
def ingestion_service(document_processor):
    return IngestionService(document_processor)


@pytest.fixture
def quiz_service(
    settings,
    topic_processor,
    retriever,
    question_generator,
    answer_generator,
    explanation_generator,
    followup_responder,
    session_manager,
    flow_controller,
    ingestion_service,
    flashcard_generator,
    summarizer,
):
    return QuizService(
        settings=settings,
        topic_processor=topic_processor,
        retriever=retriever,
        question_generator=question_generator,
        answer_generator=answer_generator,
        explanation_generator=explanation_generator,
        followup_responder=followup_responder,
        session_manager=session_manager,
        flow_controller=flow_controller,
        ingestion_service=ingestion_service,
        flashcard_generator=flashcard_generator,
        summarizer=summarizer,
    )
