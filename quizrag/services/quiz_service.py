"""Application facade for the quiz pipeline.

This is the surface an outer layer (HTTP handlers, CLIs) calls. It wires
topic validation, retrieval, the generators, the study aids and the session
lifecycle together and owns no logic of its own beyond argument defaults.
"""

import logging
from typing import Any, Dict, Optional, Sequence, Union

from quizrag.config import Settings, get_settings
from quizrag.core.document_processor import ProcessingResult, RawDocument
from quizrag.core.retrieval import ContextRetriever, get_retriever
from quizrag.core.topic_processor import TopicProcessor, TopicValidationResult, get_topic_processor
from quizrag.errors import InvalidTransitionError, SessionNotFoundError
from quizrag.generation.answer_generator import AnswerGenerator, GeneratedAnswer, get_answer_generator
from quizrag.generation.explanation_generator import (
    ExplanationGenerator,
    GeneratedExplanation,
    get_explanation_generator,
)
from quizrag.generation.flashcards import FlashcardGenerator, FlashcardSet, get_flashcard_generator
from quizrag.generation.followup import FollowupAnswer, FollowupResponder, get_followup_responder
from quizrag.generation.question_generator import (
    QuestionGenerationResult,
    QuestionGenerator,
    get_question_generator,
)
from quizrag.generation.summarizer import Summarizer, SummaryLength, TopicSummary, get_summarizer
from quizrag.models import Difficulty, DocumentCategory, Question, RetrievedContext, Session, SessionStage
from quizrag.services.ingestion_service import IngestionService, get_ingestion_service
from quizrag.session.flow import FlowController
from quizrag.session.manager import SessionManager, get_session_manager

logger = logging.getLogger(__name__)


class QuizService:
    """Entry point for topic validation, generation and session flow."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        topic_processor: Optional[TopicProcessor] = None,
        retriever: Optional[ContextRetriever] = None,
        question_generator: Optional[QuestionGenerator] = None,
        answer_generator: Optional[AnswerGenerator] = None,
        explanation_generator: Optional[ExplanationGenerator] = None,
        followup_responder: Optional[FollowupResponder] = None,
        session_manager: Optional[SessionManager] = None,
        flow_controller: Optional[FlowController] = None,
        ingestion_service: Optional[IngestionService] = None,
        flashcard_generator: Optional[FlashcardGenerator] = None,
        summarizer: Optional[Summarizer] = None,
    ):
        self.settings = settings or get_settings()
        self.topic_processor = topic_processor or get_topic_processor()
        self.retriever = retriever or get_retriever()
        self.question_generator = question_generator or get_question_generator()
        self.answer_generator = answer_generator or get_answer_generator()
        self.explanation_generator = explanation_generator or get_explanation_generator()
        self.followup_responder = followup_responder or get_followup_responder()
        self.session_manager = session_manager or get_session_manager()
        self.flow_controller = flow_controller or FlowController(self.session_manager)
        self.ingestion_service = ingestion_service or get_ingestion_service()
        self.flashcard_generator = flashcard_generator or get_flashcard_generator()
        self.summarizer = summarizer or get_summarizer()

    # ==================== Topics and retrieval ====================

    async def validate_topic(self, topic: str) -> TopicValidationResult:
        return await self.topic_processor.validate_topic(topic)

    async def retrieve_context(
        self,
        topic: str,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
        categories: Optional[Sequence[DocumentCategory]] = None,
        hybrid: bool = False,
    ) -> RetrievedContext:
        """Retrieve context for a topic.

        Args:
            topic: Topic or free-text query
            limit: Maximum number of documents
            min_score: Minimum relevance score
            categories: Restrict to these document categories
            hybrid: Blend keyword matching into the semantic score
        """
        if hybrid:
            return await self.retriever.hybrid_search(
                topic, limit=limit, min_score=min_score, categories=categories
            )
        return await self.retriever.retrieve_context(
            topic, limit=limit, min_score=min_score, categories=categories
        )

    # ==================== Generation ====================

    async def generate_questions(
        self,
        topic: str,
        count: int,
        difficulty: Optional[Difficulty] = None,
        categories: Optional[Sequence[DocumentCategory]] = None,
        **options: Any,
    ) -> QuestionGenerationResult:
        return await self.question_generator.generate_questions(
            topic,
            count,
            difficulty=difficulty,
            categories=categories,
            **options,
        )

    async def generate_answer(
        self,
        question_text: str,
        context: RetrievedContext,
        **options: Any,
    ) -> GeneratedAnswer:
        return await self.answer_generator.generate_answer(question_text, context, **options)

    async def generate_explanation(
        self,
        question: Question,
        context: RetrievedContext,
        **options: Any,
    ) -> GeneratedExplanation:
        return await self.explanation_generator.generate_explanation(question, context, **options)

    # ==================== Study aids ====================

    async def generate_flashcards(
        self,
        topic: str,
        count: int = 10,
        categories: Optional[Sequence[DocumentCategory]] = None,
    ) -> FlashcardSet:
        return await self.flashcard_generator.generate_flashcards(topic, count, categories=categories)

    async def summarize_topic(
        self,
        topic: str,
        length: Union[SummaryLength, str] = SummaryLength.SHORT,
        categories: Optional[Sequence[DocumentCategory]] = None,
    ) -> TopicSummary:
        return await self.summarizer.summarize(topic, length, categories=categories)

    # ==================== Sessions ====================

    async def create_session(
        self,
        topic: str,
        question_count: int,
        user_id: Optional[str] = None,
    ) -> Session:
        return await self.session_manager.create_session(topic, question_count, user_id)

    async def get_session(self, session_id: str) -> Optional[Session]:
        return await self.session_manager.get_session(session_id)

    async def execute_transition(
        self,
        session_id: str,
        action: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Session:
        return await self.flow_controller.execute_transition(session_id, action, data)

    async def ask_followup(self, session_id: str, question: str) -> Session:
        """Answer a follow-up question and record the exchange on the session.

        Uses ``ask_followup`` from the explanations stage and
        ``continue_followup`` once the dialogue has started.
        """
        session = await self.session_manager.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        stage = session.current_stage
        action = "continue_followup" if stage == SessionStage.FOLLOWUP else "ask_followup"
        allowed = self.flow_controller.get_allowed_actions(stage)
        if action not in allowed:
            raise InvalidTransitionError(action, stage.value, allowed)

        answer: FollowupAnswer = await self.followup_responder.answer(session, question)
        return await self.flow_controller.execute_transition(
            session_id,
            action,
            {"question": question, "answer": answer.answer},
        )

    # ==================== Ingestion ====================

    async def ingest_documents(self, documents: Sequence[RawDocument]) -> ProcessingResult:
        return await self.ingestion_service.ingest_documents(documents)


# Singleton instance
_quiz_service: Optional[QuizService] = None


def get_quiz_service() -> QuizService:
    """Get the global quiz service instance."""
    global _quiz_service
    if _quiz_service is None:
        _quiz_service = QuizService()
    return _quiz_service
