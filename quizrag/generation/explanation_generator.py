"""Explanation generation with a quality gate.

A response that parses but scores below ``min_quality`` on the explanation
heuristic is regenerated within the same attempt budget as malformed
responses. When the budget runs out, the best-scoring parsed candidate is
returned; if no attempt parsed, the failure is raised.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from quizrag.config import SessionConfig, get_settings
from quizrag.core.retry import run_with_retries
from quizrag.errors import ResponseValidationError, RetryExhaustedError, is_regenerable
from quizrag.generation.llm_client import LanguageModelClient, get_llm_client
from quizrag.generation.prompts import (
    EXPLANATION_GENERATION,
    ExplanationPromptContext,
    PromptManager,
    format_context_text,
    get_prompt_manager,
)
from quizrag.generation.validators import (
    ExplanationResponse,
    extract_json,
    parse_response,
    score_explanation,
)
from quizrag.models import Question, RetrievedContext

logger = logging.getLogger(__name__)

EXPLANATION_CONTEXT_LENGTH = 4000

KEY_POINT_MARKERS = ("because", "therefore", "this means", "important", "key", "main")

COMMON_MISTAKES: Dict[str, List[str]] = {
    "stock": [
        "Confusing stock price with company value",
        "Ignoring dividend yield in total return calculations",
        "Mixing up market cap and enterprise value",
    ],
    "bond": [
        "Confusing yield with coupon rate",
        "Not understanding inverse relationship between price and yield",
        "Ignoring credit risk in bond valuation",
    ],
    "option": [
        "Confusing call and put options",
        "Not understanding time decay effects",
        "Mixing up intrinsic and time value",
    ],
    "portfolio": [
        "Assuming diversification eliminates all risk",
        "Confusing correlation with causation",
        "Ignoring transaction costs in portfolio optimization",
    ],
}

RELATED_CONCEPTS: Dict[str, List[str]] = {
    "stock": ["equity", "dividend", "market cap", "p/e ratio", "earnings"],
    "bond": ["yield", "maturity", "coupon", "credit rating", "duration"],
    "option": ["strike price", "expiration", "premium", "volatility", "time decay"],
    "portfolio": ["diversification", "correlation", "beta", "alpha", "sharpe ratio"],
    "risk": ["volatility", "standard deviation", "var", "correlation", "beta"],
    "market": ["liquidity", "efficiency", "arbitrage", "spread", "volume"],
}


@dataclass
class GeneratedExplanation:
    """An explanation with its pedagogical elements."""
    explanation: str
    source_references: List[str] = field(default_factory=list)
    key_points: List[str] = field(default_factory=list)
    related_concepts: List[str] = field(default_factory=list)
    common_mistakes: List[str] = field(default_factory=list)
    examples: List[str] = field(default_factory=list)
    mnemonics: List[str] = field(default_factory=list)
    confidence: float = 0.0
    quality_score: float = 0.0
    warnings: List[str] = field(default_factory=list)


def extract_key_points(text: str, limit: int = 3) -> List[str]:
    """Sentences that read like a takeaway."""
    points = []
    for sentence in re.split(r"[.!?]+", text):
        sentence = sentence.strip()
        if len(sentence) > 10 and any(marker in sentence for marker in KEY_POINT_MARKERS):
            points.append(sentence)
    return points[:limit]


def identify_common_mistakes(topic: str, limit: int = 2) -> List[str]:
    topic = topic.lower()
    for key, mistakes in COMMON_MISTAKES.items():
        if key in topic:
            return mistakes[:limit]
    return []


def extract_related_concepts(text: str, topic: str) -> List[str]:
    """Concepts associated with the topic that the text mentions."""
    topic = topic.lower()
    text = text.lower()
    concepts = []
    for key, terms in RELATED_CONCEPTS.items():
        if key in topic:
            concepts.extend(term for term in terms if term in text)
    return list(dict.fromkeys(concepts))


def explanation_confidence(response: ExplanationResponse, context: RetrievedContext) -> float:
    confidence = 0.8
    scores = context.relevance_scores
    if scores:
        confidence += (sum(scores) / len(scores) - 0.7) * 0.3
    if 100 < len(response.explanation) < 600:
        confidence += 0.1
    if response.key_points:
        confidence += 0.05
    if response.examples:
        confidence += 0.05
    return max(0.0, min(1.0, confidence))


class ExplanationGenerator:
    """Generates explanations for a question's correct answer."""

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        prompt_manager: Optional[PromptManager] = None,
        llm_client: Optional[LanguageModelClient] = None,
    ):
        self.config = config or get_settings().session
        self.prompt_manager = prompt_manager or get_prompt_manager()
        self.llm_client = llm_client or get_llm_client()

    async def generate_explanation(
        self,
        question: Question,
        context: RetrievedContext,
        style: Optional[str] = None,
        audience: Optional[str] = None,
        max_length: int = 800,
        include_source_references: bool = True,
        min_quality: float = 0.5,
    ) -> GeneratedExplanation:
        """Explain why the question's correct answer is right.

        Args:
            question: The answered question
            context: Retrieved source material
            style: Pedagogical style (concise, detailed, step-by-step)
            audience: Target audience level (defaults to the question difficulty)
            max_length: Target maximum explanation length in characters
            include_source_references: Attach references to the context documents
            min_quality: Minimum heuristic quality before regenerating

        Returns:
            The best explanation produced within the attempt budget

        Raises:
            GenerationError: If no attempt produced a parseable explanation
        """
        references = (
            [doc.reference() for doc in context.documents] if include_source_references else []
        )
        prompt = self.prompt_manager.render(
            EXPLANATION_GENERATION,
            ExplanationPromptContext(
                question_text=question.question_text,
                correct_answer=question.correct_text,
                context_text=format_context_text(context, EXPLANATION_CONTEXT_LENGTH),
                incorrect_options=question.incorrect_options(),
                style=style or "detailed",
                audience=audience or question.difficulty.value,
                max_length=max_length,
            ),
        )

        best: Optional[GeneratedExplanation] = None

        async def attempt(number: int) -> GeneratedExplanation:
            nonlocal best
            raw = await self.llm_client.generate(prompt)
            response = parse_response(ExplanationResponse, extract_json(raw))
            if not response.explanation.strip():
                raise ResponseValidationError("Explanation cannot be empty")

            candidate = self._build(
                response, question, context, references, max_length, include_source_references
            )
            if best is None or candidate.quality_score > best.quality_score:
                best = candidate
            if candidate.quality_score < min_quality:
                raise ResponseValidationError(
                    f"Explanation quality {candidate.quality_score:.2f} below {min_quality}",
                    candidate.warnings,
                )
            return candidate

        try:
            return await run_with_retries(
                attempt,
                max_attempts=self.config.generation_attempts,
                is_retryable=is_regenerable,
                stage="explanation generation",
            )
        except RetryExhaustedError:
            if best is None:
                raise
            logger.warning(
                f"Returning best explanation below quality threshold "
                f"({best.quality_score:.2f} < {min_quality})"
            )
            return best

    async def generate_step_by_step_explanation(
        self,
        question: Question,
        context: RetrievedContext,
        **options,
    ) -> GeneratedExplanation:
        options["style"] = "step-by-step"
        return await self.generate_explanation(question, context, **options)

    def _build(
        self,
        response: ExplanationResponse,
        question: Question,
        context: RetrievedContext,
        references: List[str],
        max_length: int,
        include_source_references: bool,
    ) -> GeneratedExplanation:
        text = response.explanation.strip()
        key_points = response.key_points or extract_key_points(text)
        quality = score_explanation(
            text,
            topic=question.topic,
            correct_answer=question.correct_text,
            max_length=max_length,
            key_points=key_points,
            source_references=references if include_source_references else None,
        )
        return GeneratedExplanation(
            explanation=text,
            source_references=references,
            key_points=key_points,
            related_concepts=extract_related_concepts(text, question.topic),
            common_mistakes=response.common_mistakes or identify_common_mistakes(question.topic),
            examples=response.examples,
            mnemonics=response.mnemonics,
            confidence=explanation_confidence(response, context),
            quality_score=quality.score,
            warnings=quality.warnings,
        )


# Singleton instance
_explanation_generator: Optional[ExplanationGenerator] = None


def get_explanation_generator() -> ExplanationGenerator:
    """Get the global explanation generator instance."""
    global _explanation_generator
    if _explanation_generator is None:
        _explanation_generator = ExplanationGenerator()
    return _explanation_generator
