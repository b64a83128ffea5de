"""Answer and distractor generation."""

import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from quizrag.config import SessionConfig, get_settings
from quizrag.core.retry import run_with_retries
from quizrag.errors import is_regenerable
from quizrag.generation.llm_client import LanguageModelClient, get_llm_client
from quizrag.generation.prompts import (
    ANSWER_GENERATION,
    AnswerPromptContext,
    PromptManager,
    format_context_text,
    get_prompt_manager,
)
from quizrag.generation.validators import extract_json, validate_answer
from quizrag.models import OPTION_LABELS, Difficulty, RetrievedContext

logger = logging.getLogger(__name__)

ANSWER_CONTEXT_LENGTH = 6000


@dataclass
class GeneratedAnswer:
    """A validated correct answer with its distractors."""
    correct_answer: str
    distractors: List[str]
    explanation: str
    confidence: float
    warnings: List[str] = field(default_factory=list)


def build_multiple_choice(
    correct_answer: str,
    distractors: Sequence[str],
    rng: Optional[random.Random] = None,
) -> Tuple[Dict[str, str], str]:
    """Shuffle an answer and three distractors into labelled options.

    Returns:
        Tuple of (options keyed A-D, label of the correct answer)
    """
    if len(distractors) != len(OPTION_LABELS) - 1:
        raise ValueError(f"Exactly {len(OPTION_LABELS) - 1} distractors are required")

    choices = [correct_answer] + list(distractors)
    (rng or random).shuffle(choices)
    options = dict(zip(OPTION_LABELS, choices))
    correct_label = OPTION_LABELS[choices.index(correct_answer)]
    return options, correct_label


class AnswerGenerator:
    """Generates a correct answer and plausible distractors for a question."""

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        prompt_manager: Optional[PromptManager] = None,
        llm_client: Optional[LanguageModelClient] = None,
    ):
        self.config = config or get_settings().session
        self.prompt_manager = prompt_manager or get_prompt_manager()
        self.llm_client = llm_client or get_llm_client()

    async def generate_answer(
        self,
        question_text: str,
        context: RetrievedContext,
        distractor_count: int = 3,
        difficulty: Optional[Difficulty] = None,
        ensure_uniqueness: bool = True,
        focus_on_misconceptions: bool = False,
    ) -> GeneratedAnswer:
        """Generate the correct answer and distractors for a question.

        Args:
            question_text: The question to answer
            context: Retrieved source material
            distractor_count: Number of incorrect options to produce
            difficulty: Target difficulty
            ensure_uniqueness: Reject responses with repeated options
            focus_on_misconceptions: Ask for misconception-based distractors

        Returns:
            The answer with a confidence score and any soft-check warnings

        Raises:
            RetryExhaustedError: If every attempt produced an invalid response
        """
        prompt = self.prompt_manager.render(
            ANSWER_GENERATION,
            AnswerPromptContext(
                question_text=question_text,
                context_text=format_context_text(context, ANSWER_CONTEXT_LENGTH),
                distractor_count=distractor_count,
                difficulty=Difficulty(difficulty).value if difficulty else None,
                focus_on_misconceptions=focus_on_misconceptions,
            ),
        )

        async def attempt(number: int):
            raw = await self.llm_client.generate(prompt)
            return validate_answer(
                extract_json(raw),
                distractor_count=distractor_count,
                question_text=question_text,
                ensure_uniqueness=ensure_uniqueness,
            )

        validation = await run_with_retries(
            attempt,
            max_attempts=self.config.generation_attempts,
            is_retryable=is_regenerable,
            stage="answer generation",
        )

        for warning in validation.warnings:
            logger.debug(f"Answer warning: {warning}")

        response = validation.response
        return GeneratedAnswer(
            correct_answer=response.correct_answer.strip(),
            distractors=[d.strip() for d in response.distractors],
            explanation=response.explanation.strip(),
            confidence=validation.confidence,
            warnings=validation.warnings,
        )

    async def generate_contextual_distractors(
        self,
        question_text: str,
        context: RetrievedContext,
        count: int = 3,
    ) -> List[str]:
        """Distractors built around common misconceptions."""
        answer = await self.generate_answer(
            question_text,
            context,
            distractor_count=count,
            focus_on_misconceptions=True,
        )
        return answer.distractors


# Singleton instance
_answer_generator: Optional[AnswerGenerator] = None


def get_answer_generator() -> AnswerGenerator:
    """Get the global answer generator instance."""
    global _answer_generator
    if _answer_generator is None:
        _answer_generator = AnswerGenerator()
    return _answer_generator
