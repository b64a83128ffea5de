"""Topic summaries built from retrieved study material."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Union

from quizrag.config import SessionConfig, get_settings
from quizrag.core.retrieval import ContextRetriever, get_retriever
from quizrag.core.retry import run_with_retries
from quizrag.core.topic_processor import TopicProcessor, get_topic_processor
from quizrag.errors import TopicValidationError, is_regenerable
from quizrag.generation.llm_client import LanguageModelClient, get_llm_client
from quizrag.generation.prompts import (
    TOPIC_SUMMARY,
    PromptManager,
    SummaryPromptContext,
    format_context_text,
    get_prompt_manager,
)
from quizrag.generation.validators import validate_summary
from quizrag.models import DocumentCategory, RetrievedContext

logger = logging.getLogger(__name__)

SUMMARY_CONTEXT_LIMIT = 8
SUMMARY_TEMPERATURE = 0.3


class SummaryLength(str, Enum):
    """How much detail a summary carries."""
    SHORT = "short"
    MEDIUM = "medium"


LENGTH_INSTRUCTIONS = {
    SummaryLength.SHORT: "Provide a short, high-level summary in 5 bullet points.",
    SummaryLength.MEDIUM: "Provide a more detailed explanation with headings and examples.",
}

LENGTH_MAX_TOKENS = {
    SummaryLength.SHORT: 600,
    SummaryLength.MEDIUM: 1000,
}


@dataclass
class TopicSummary:
    """A summary and the context it was written from."""
    topic: str
    summary: str
    length: SummaryLength
    context: RetrievedContext
    metadata: Dict[str, Any] = field(default_factory=dict)


class Summarizer:
    """Summarizes a topic from the indexed study material."""

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

    async def summarize(
        self,
        topic: str,
        length: Union[SummaryLength, str] = SummaryLength.SHORT,
        categories: Optional[Sequence[DocumentCategory]] = None,
    ) -> TopicSummary:
        """Summarize ``topic``.

        Args:
            topic: Free-text topic
            length: ``short`` (five bullet points) or ``medium`` (headings
                and examples)
            categories: Restrict context to these document categories

        Raises:
            ValueError: If ``length`` is not a known summary length
            TopicValidationError: If the topic is rejected
            RetryExhaustedError: If every attempt came back empty
        """
        try:
            length = SummaryLength(length)
        except ValueError:
            raise ValueError(
                f"Summary length must be one of {[option.value for option in SummaryLength]}, got {length!r}"
            ) from None

        validation = await self.topic_processor.validate_topic(topic)
        if not validation.is_valid:
            raise TopicValidationError(topic, validation.message, validation.suggestions)
        normalized = validation.normalized_topic

        context = await self.retriever.retrieve_context_enhanced(
            normalized,
            limit=SUMMARY_CONTEXT_LIMIT,
            categories=categories,
        )
        if context.is_empty:
            logger.warning(f"Summarizing '{normalized}' without context")

        prompt = self.prompt_manager.render(
            TOPIC_SUMMARY,
            SummaryPromptContext(
                topic=normalized,
                context_text=format_context_text(context, self.retriever.config.max_context_length),
                length_instruction=LENGTH_INSTRUCTIONS[length],
            ),
        )

        async def attempt(number: int) -> str:
            raw = await self.llm_client.generate(
                prompt,
                temperature=SUMMARY_TEMPERATURE,
                max_output_tokens=LENGTH_MAX_TOKENS[length],
            )
            return validate_summary(raw)

        summary = await run_with_retries(
            attempt,
            max_attempts=self.config.generation_attempts,
            is_retryable=is_regenerable,
            stage="topic summary",
        )

        logger.info(f"Summarized '{normalized}' ({length.value}, {len(summary)} chars)")
        return TopicSummary(
            topic=normalized,
            summary=summary,
            length=length,
            context=context,
            metadata={
                "context_documents": len(context.documents),
                "model": self.llm_client.model,
            },
        )


# Singleton instance
_summarizer: Optional[Summarizer] = None


def get_summarizer() -> Summarizer:
    """Get the global summarizer instance."""
    global _summarizer
    if _summarizer is None:
        _summarizer = Summarizer()
    return _summarizer
