"""Flashcard generation for a study topic."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from quizrag.config import SessionConfig, get_settings
from quizrag.core.retrieval import ContextRetriever, get_retriever
from quizrag.core.retry import run_with_retries
from quizrag.core.topic_processor import TopicProcessor, get_topic_processor
from quizrag.errors import TopicValidationError, is_regenerable
from quizrag.generation.llm_client import LanguageModelClient, get_llm_client
from quizrag.generation.prompts import (
    FLASHCARD_GENERATION,
    FlashcardPromptContext,
    PromptManager,
    format_context_text,
    get_prompt_manager,
)
from quizrag.generation.validators import extract_json, validate_flashcard_batch
from quizrag.models import DocumentCategory, RetrievedContext

logger = logging.getLogger(__name__)

MAX_FLASHCARDS = 20
DEFAULT_FLASHCARDS = 10
FLASHCARD_CONTEXT_LIMIT = 8
FLASHCARD_TEMPERATURE = 0.4
FLASHCARD_MAX_TOKENS = 2000


@dataclass
class Flashcard:
    """A front/back study card."""
    front: str
    back: str
    explanation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"front": self.front, "back": self.back, "explanation": self.explanation}


@dataclass
class FlashcardSet:
    """Cards generated for one topic."""
    topic: str
    cards: List[Flashcard]
    context: RetrievedContext
    metadata: Dict[str, Any] = field(default_factory=dict)


class FlashcardGenerator:
    """Generates flashcards grounded in retrieved context."""

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

    async def generate_flashcards(
        self,
        topic: str,
        count: int = DEFAULT_FLASHCARDS,
        categories: Optional[Sequence[DocumentCategory]] = None,
    ) -> FlashcardSet:
        """Generate ``count`` flashcards about ``topic``.

        With no relevant context the model is told to fall back on general
        exam knowledge.

        Args:
            topic: Free-text topic
            count: Number of cards (1 to 20)
            categories: Restrict context to these document categories

        Returns:
            Exactly ``count`` cards plus the context they were built from

        Raises:
            ValueError: If ``count`` is out of range
            TopicValidationError: If the topic is rejected
            RetryExhaustedError: If every attempt produced a malformed batch
        """
        if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= MAX_FLASHCARDS:
            raise ValueError(f"Flashcard count must be an integer between 1 and {MAX_FLASHCARDS}")

        validation = await self.topic_processor.validate_topic(topic)
        if not validation.is_valid:
            raise TopicValidationError(topic, validation.message, validation.suggestions)
        normalized = validation.normalized_topic

        context = await self.retriever.retrieve_context_enhanced(
            normalized,
            limit=FLASHCARD_CONTEXT_LIMIT,
            categories=categories,
        )
        if context.is_empty:
            logger.warning(f"Generating flashcards for '{normalized}' without context")

        prompt = self.prompt_manager.render(
            FLASHCARD_GENERATION,
            FlashcardPromptContext(
                topic=normalized,
                card_count=count,
                context_text=format_context_text(context, self.retriever.config.max_context_length),
            ),
        )

        async def attempt(number: int):
            raw = await self.llm_client.generate(
                prompt,
                temperature=FLASHCARD_TEMPERATURE,
                max_output_tokens=FLASHCARD_MAX_TOKENS,
            )
            return validate_flashcard_batch(extract_json(raw), count)

        items = await run_with_retries(
            attempt,
            max_attempts=self.config.generation_attempts,
            is_retryable=is_regenerable,
            stage="flashcard generation",
        )

        cards = [
            Flashcard(
                front=item.front.strip(),
                back=item.back.strip(),
                explanation=(item.explanation or "").strip() or None,
            )
            for item in items
        ]
        logger.info(f"Generated {len(cards)} flashcards for '{normalized}'")
        return FlashcardSet(
            topic=normalized,
            cards=cards,
            context=context,
            metadata={
                "cards_generated": len(cards),
                "context_documents": len(context.documents),
                "model": self.llm_client.model,
            },
        )


# Singleton instance
_flashcard_generator: Optional[FlashcardGenerator] = None


def get_flashcard_generator() -> FlashcardGenerator:
    """Get the global flashcard generator instance."""
    global _flashcard_generator
    if _flashcard_generator is None:
        _flashcard_generator = FlashcardGenerator()
    return _flashcard_generator
