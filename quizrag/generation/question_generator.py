"""Question generation.

Pipeline for one request:
1. Validate and normalize the topic
2. Expand it into semantic queries
3. Retrieve and merge context for the topic
4. Render the question prompt and call the model
5. Validate the batch, regenerating with identical inputs on malformed output
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from quizrag.config import SessionConfig, get_settings
from quizrag.core.retrieval import ContextRetriever, get_retriever
from quizrag.core.retry import run_with_retries
from quizrag.core.topic_processor import (
    SemanticQuery,
    TopicProcessor,
    TopicValidationResult,
    get_topic_processor,
)
from quizrag.errors import TopicValidationError, is_regenerable
from quizrag.generation.llm_client import LanguageModelClient, get_llm_client
from quizrag.generation.prompts import (
    QUESTION_GENERATION,
    PromptManager,
    QuestionPromptContext,
    format_context_text,
    get_prompt_manager,
)
from quizrag.generation.validators import extract_json, validate_question_batch
from quizrag.models import Difficulty, DocumentCategory, Question, RetrievedContext

logger = logging.getLogger(__name__)


@dataclass
class QuestionGenerationResult:
    """Questions plus everything that went into producing them."""
    questions: List[Question]
    context: RetrievedContext
    topic_validation: TopicValidationResult
    semantic_query: SemanticQuery
    metadata: Dict[str, Any] = field(default_factory=dict)


def validate_question_count(count: Any, max_questions: int = 20) -> Optional[str]:
    """Return a problem description for an invalid count, or None."""
    if isinstance(count, bool) or not isinstance(count, int):
        return "Question count must be an integer"
    if count < 1:
        return "Question count must be at least 1"
    if count > max_questions:
        return f"Question count cannot exceed {max_questions}"
    return None


class QuestionGenerator:
    """Generates multiple-choice questions grounded in retrieved context."""

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        topic_processor: Optional[TopicProcessor] = None,
        retriever: Optional[ContextRetriever] = None,
        prompt_manager: Optional[PromptManager] = None,
        llm_client: Optional[LanguageModelClient] = None,
    ):
        self.config = config or get_settings().session
        self.topic_processor = topic_processor or get_topic_processor()
        self.retriever = retriever or get_retriever()
        self.prompt_manager = prompt_manager or get_prompt_manager()
        self.llm_client = llm_client or get_llm_client()

    async def generate_questions(
        self,
        topic: str,
        count: int,
        difficulty: Optional[Difficulty] = None,
        categories: Optional[Sequence[DocumentCategory]] = None,
        min_relevance_score: Optional[float] = None,
        max_context_length: Optional[int] = None,
        enable_reranking: bool = True,
    ) -> QuestionGenerationResult:
        """Generate ``count`` questions about ``topic``.

        Args:
            topic: Free-text topic
            count: Number of questions (1 to the configured maximum)
            difficulty: Target difficulty
            categories: Restrict context to these document categories
            min_relevance_score: Minimum retrieval score for context
            max_context_length: Character budget for context
            enable_reranking: Rerank the primary topic query

        Returns:
            Generation result with exactly ``count`` questions

        Raises:
            ValueError: If ``count`` is out of range
            TopicValidationError: If the topic is rejected
            RetryExhaustedError: If every attempt produced a malformed batch
        """
        problem = validate_question_count(count, self.config.max_questions)
        if problem:
            raise ValueError(problem)

        start_time = time.time()

        validation = await self.topic_processor.validate_topic(topic)
        if not validation.is_valid:
            raise TopicValidationError(topic, validation.message, validation.suggestions)

        semantic_query = await self.topic_processor.generate_semantic_queries(validation.normalized_topic)

        context = await self.retriever.retrieve_for_topic(
            semantic_query,
            min_score=min_relevance_score,
            categories=categories,
            max_context_length=max_context_length,
            enable_reranking=enable_reranking,
        )
        if context.is_empty:
            logger.warning(f"Generating questions for '{validation.normalized_topic}' without context")

        difficulty = Difficulty(difficulty) if difficulty else Difficulty.INTERMEDIATE
        prompt = self.prompt_manager.render(
            QUESTION_GENERATION,
            QuestionPromptContext(
                topic=validation.normalized_topic,
                question_count=count,
                context_text=format_context_text(
                    context, max_context_length or self.retriever.config.max_context_length
                ),
                documents=context.documents,
                difficulty=difficulty.value,
            ),
        )

        attempts = 0

        async def attempt(number: int):
            nonlocal attempts
            attempts = number
            raw = await self.llm_client.generate(prompt)
            return validate_question_batch(extract_json(raw), count)

        items = await run_with_retries(
            attempt,
            max_attempts=self.config.generation_attempts,
            is_retryable=is_regenerable,
            stage="question generation",
        )

        references = [doc.reference() for doc in context.documents]
        questions = [
            Question(
                id=Question.new_id(),
                topic=validation.normalized_topic,
                question_text=item.question_text.strip(),
                options={label: text.strip() for label, text in item.options.items()},
                correct_answer=item.correct_answer,
                source_references=list(references),
                difficulty=difficulty,
            )
            for item in items
        ]

        processing_time_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Generated {len(questions)} questions for '{validation.normalized_topic}' "
            f"in {attempts} attempt(s), {processing_time_ms}ms"
        )

        return QuestionGenerationResult(
            questions=questions,
            context=context,
            topic_validation=validation,
            semantic_query=semantic_query,
            metadata={
                "total_attempts": attempts,
                "failed_validations": attempts - 1,
                "processing_time_ms": processing_time_ms,
                "context_documents": len(context.documents),
                "model": self.llm_client.model,
            },
        )

    @staticmethod
    def get_generation_stats(result: QuestionGenerationResult) -> Dict[str, Any]:
        """Summary statistics for a generation result."""
        scores = result.context.relevance_scores
        count = len(result.questions)
        elapsed = result.metadata.get("processing_time_ms", 0)
        return {
            "questions_generated": count,
            "total_attempts": result.metadata.get("total_attempts", 0),
            "processing_time_ms": elapsed,
            "average_time_per_question": elapsed / count if count else 0,
            "context_documents": len(result.context.documents),
            "average_relevance_score": sum(scores) / len(scores) if scores else 0,
        }


# Singleton instance
_question_generator: Optional[QuestionGenerator] = None


def get_question_generator() -> QuestionGenerator:
    """Get the global question generator instance."""
    global _question_generator
    if _question_generator is None:
        _question_generator = QuestionGenerator()
    return _question_generator
