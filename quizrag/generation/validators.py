"""Parsing and validation of model responses.

Responses are expected to hold a single JSON object, possibly wrapped in a
markdown code fence or surrounded by prose. Structural problems raise
ResponseValidationError, which the generators treat as a signal to
regenerate; softer problems are reported as warnings that lower a
confidence or quality score.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from quizrag.errors import ResponseValidationError
from quizrag.models import OPTION_LABELS

logger = logging.getLogger(__name__)


# ==================== Response schemas ====================

class QuestionItem(BaseModel):
    """One generated multiple-choice question."""
    question_text: str = Field(validation_alias=AliasChoices("question_text", "questionText"))
    options: Dict[str, str]
    correct_answer: str = Field(validation_alias=AliasChoices("correct_answer", "correctAnswer"))

    @field_validator("correct_answer")
    @classmethod
    def normalize_label(cls, v):
        return v.strip().upper()

    @field_validator("options")
    @classmethod
    def normalize_option_keys(cls, v):
        return {key.strip().upper(): text for key, text in v.items()}


class QuestionBatchResponse(BaseModel):
    """Response to a question generation prompt."""
    questions: List[QuestionItem]


class AnswerResponse(BaseModel):
    """Response to an answer generation prompt."""
    correct_answer: str = Field(validation_alias=AliasChoices("correct_answer", "correctAnswer"))
    explanation: str
    distractors: List[str]


class ExplanationResponse(BaseModel):
    """Response to an explanation generation prompt."""
    explanation: str
    key_points: List[str] = Field(default_factory=list, validation_alias=AliasChoices("key_points", "keyPoints"))
    common_mistakes: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("common_mistakes", "commonMistakes")
    )
    examples: List[str] = Field(default_factory=list)
    mnemonics: List[str] = Field(default_factory=list)
    source_references: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("source_references", "sourceReferences")
    )


class FollowupResponse(BaseModel):
    """Response to a follow-up question prompt."""
    answer: str = Field(..., min_length=1)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    source_references: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("source_references", "sourceReferences")
    )


class FlashcardItem(BaseModel):
    """One generated study card."""
    front: str
    back: str
    explanation: Optional[str] = None


class FlashcardBatchResponse(BaseModel):
    """Response to a flashcard generation prompt."""
    cards: List[FlashcardItem]


M = TypeVar("M", bound=BaseModel)


def extract_json(raw: str) -> Dict[str, Any]:
    """Extract the JSON object from a raw model response.

    Raises:
        ResponseValidationError: If no JSON object can be decoded
    """
    text = (raw or "").strip()
    text = re.sub(r"^```(?:json)?\s*", "", text, flags=re.MULTILINE)
    text = re.sub(r"\s*```$", "", text, flags=re.MULTILINE)
    start = text.find("{")
    end = text.rfind("}") + 1
    if start == -1 or end == 0:
        raise ResponseValidationError(f"No JSON object found in response: {text[:200]}")
    try:
        data = json.loads(text[start:end])
    except json.JSONDecodeError as e:
        raise ResponseValidationError(f"Response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ResponseValidationError("Response JSON must be an object")
    return data


def parse_response(model: Type[M], payload: Dict[str, Any]) -> M:
    """Validate a decoded payload against a response schema."""
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ResponseValidationError(f"Invalid {model.__name__}", errors) from e


# ==================== Questions ====================

def validate_question_batch(payload: Dict[str, Any], expected_count: int) -> List[QuestionItem]:
    """Validate a question batch.

    Every question needs non-empty text, exactly the options A-D with
    distinct non-empty texts, and a correct label among A-D; the batch must
    contain exactly ``expected_count`` questions.

    Raises:
        ResponseValidationError: Listing every problem found
    """
    batch = parse_response(QuestionBatchResponse, payload)
    errors = []
    if len(batch.questions) != expected_count:
        errors.append(f"Expected {expected_count} questions, got {len(batch.questions)}")

    for number, item in enumerate(batch.questions, start=1):
        prefix = f"Question {number}"
        if not item.question_text.strip():
            errors.append(f"{prefix}: question text is required")
        if set(item.options) != set(OPTION_LABELS):
            errors.append(f"{prefix}: options must be exactly A, B, C, D (got {sorted(item.options)})")
        texts = [text.strip() for text in item.options.values()]
        if any(not text for text in texts):
            errors.append(f"{prefix}: options must be non-empty")
        if len({text.lower() for text in texts}) != len(texts):
            errors.append(f"{prefix}: all options must be unique")
        if item.correct_answer not in OPTION_LABELS:
            errors.append(f"{prefix}: correct answer must be A, B, C, or D")

        if len(item.question_text) < 10:
            logger.debug(f"{prefix}: question text is very short")

    if errors:
        raise ResponseValidationError("Question batch failed validation", errors)
    return batch.questions


# ==================== Answers ====================

@dataclass
class AnswerValidation:
    """A structurally valid answer response with its soft checks."""
    response: AnswerResponse
    confidence: float
    warnings: List[str] = field(default_factory=list)


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (char_a != char_b),
            ))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity in [0, 1]; two empty strings score 1."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def validate_answer(
    payload: Dict[str, Any],
    distractor_count: int = 3,
    question_text: str = "",
    similarity_threshold: float = 0.8,
    ensure_uniqueness: bool = True,
) -> AnswerValidation:
    """Validate an answer response and compute its confidence.

    Hard failures: empty correct answer or explanation, wrong distractor
    count, empty distractors, duplicates. Soft failures (warnings lowering
    confidence): distractors too similar to the correct answer, unusual
    lengths, an answer sharing no words with the question.

    Raises:
        ResponseValidationError: On any hard failure
    """
    answer = parse_response(AnswerResponse, payload)
    errors: List[str] = []
    warnings: List[str] = []
    confidence = 1.0

    correct = answer.correct_answer.strip()
    if not correct:
        errors.append("Correct answer cannot be empty")
    elif len(correct) > 200:
        warnings.append("Correct answer is very long")
        confidence -= 0.1
    elif len(correct) < 3:
        warnings.append("Correct answer is very short")
        confidence -= 0.1

    if len(answer.distractors) != distractor_count:
        errors.append(f"Expected {distractor_count} distractors, got {len(answer.distractors)}")

    correct_lower = correct.lower()
    for number, distractor in enumerate(answer.distractors, start=1):
        text = distractor.strip()
        if not text:
            errors.append(f"Distractor {number} cannot be empty")
            continue
        if len(text) > 200:
            warnings.append(f"Distractor {number} is very long")
            confidence -= 0.05
        elif len(text) < 3:
            warnings.append(f"Distractor {number} is very short")
            confidence -= 0.05

        lowered = text.lower()
        if lowered == correct_lower:
            errors.append(f"Distractor {number} is identical to correct answer")
        elif string_similarity(correct_lower, lowered) > similarity_threshold:
            warnings.append(f"Distractor {number} is very similar to correct answer")
            confidence -= 0.1

    if ensure_uniqueness:
        all_answers = [correct_lower] + [d.strip().lower() for d in answer.distractors]
        if len(set(all_answers)) != len(all_answers):
            errors.append("All answer options must be unique")

    explanation = answer.explanation.strip()
    if not explanation:
        errors.append("Explanation cannot be empty")
    elif len(explanation) < 20:
        warnings.append("Explanation is very short")
        confidence -= 0.1
    elif len(explanation) > 1000:
        warnings.append("Explanation is very long")
        confidence -= 0.05

    if errors:
        raise ResponseValidationError("Answer failed validation", errors)

    if len(question_text) > 10 and len(correct) > 3:
        question_words = [w for w in question_text.lower().split() if len(w) > 3]
        answer_words = [w for w in correct_lower.split() if len(w) > 3]
        shared = [
            word for word in question_words
            if any(word in other or other in word for other in answer_words)
        ]
        if not shared:
            warnings.append("Answer may not be relevant to the question")
            confidence -= 0.2

    return AnswerValidation(
        response=answer,
        confidence=max(0.0, min(1.0, confidence)),
        warnings=warnings,
    )


# ==================== Explanations ====================

TOPIC_KEY_TERMS: Dict[str, List[str]] = {
    "stock": ["equity", "share", "dividend", "market"],
    "bond": ["debt", "yield", "coupon", "maturity"],
    "option": ["derivative", "strike", "expiration", "premium"],
    "portfolio": ["diversification", "allocation", "risk", "return"],
    "market": ["trading", "liquidity", "price", "volume"],
}

_CONNECTIVES = re.compile(
    r"\b(because|therefore|however|additionally|furthermore|moreover)\b", re.IGNORECASE
)


@dataclass
class ExplanationQuality:
    """Heuristic quality score of an explanation."""
    score: float
    warnings: List[str] = field(default_factory=list)


def has_key_terms(text: str, topic: str) -> bool:
    """Whether the text uses vocabulary expected for the topic (True for unknown topics)."""
    topic_lower = topic.lower()
    text_lower = text.lower()
    for key, terms in TOPIC_KEY_TERMS.items():
        if key in topic_lower:
            return any(term in text_lower for term in terms)
    return True


def has_structure(text: str) -> bool:
    sentence_count = len(re.split(r"[.!?]+", text))
    return sentence_count > 2 and (bool(_CONNECTIVES.search(text)) or len(text) > 100)


def answer_relevance(text: str, correct_answer: str) -> float:
    """Fraction of meaningful answer words that appear in the text."""
    text_words = [w for w in text.lower().split() if len(w) > 2]
    answer_words = [w for w in correct_answer.lower().split() if len(w) > 2]
    if not answer_words:
        return 0.5
    matching = [
        word for word in answer_words
        if any(word in other or other in word for other in text_words)
    ]
    return len(matching) / len(answer_words)


def score_explanation(
    text: str,
    topic: str,
    correct_answer: str,
    max_length: int = 800,
    key_points: Optional[Sequence[str]] = None,
    source_references: Optional[Sequence[str]] = None,
) -> ExplanationQuality:
    """Score an explanation between 0 and 1.

    Starts at 1.0 and subtracts for: fewer than 50 characters (0.2), more
    than ``max_length`` (0.1), missing topic key terms (0.15), no visible
    structure (0.1), no key points (0.1), no source references (0.05) and
    low overlap with the correct answer (0.2). ``key_points`` and
    ``source_references`` are only checked when given.
    """
    text = text.strip()
    score = 1.0
    warnings = []

    if len(text) < 50:
        warnings.append("Explanation is very short and may lack detail")
        score -= 0.2
    if len(text) > max_length:
        warnings.append(f"Explanation exceeds maximum length of {max_length} characters")
        score -= 0.1
    if not has_key_terms(text, topic):
        warnings.append("Explanation may lack key terminology for the topic")
        score -= 0.15
    if not has_structure(text):
        warnings.append("Explanation may lack clear structure")
        score -= 0.1
    if key_points is not None and not key_points:
        warnings.append("No key points identified in explanation")
        score -= 0.1
    if source_references is not None and not source_references:
        warnings.append("No source references provided")
        score -= 0.05
    if answer_relevance(text, correct_answer) < 0.5:
        warnings.append("Explanation may not be sufficiently relevant to the correct answer")
        score -= 0.2

    return ExplanationQuality(score=max(0.0, min(1.0, score)), warnings=warnings)


# ==================== Study aids ====================

def validate_flashcard_batch(payload: Dict[str, Any], expected_count: int) -> List[FlashcardItem]:
    """Validate a flashcard batch.

    Every card needs a non-empty front and back, fronts must be unique, and
    the batch must contain exactly ``expected_count`` cards.

    Raises:
        ResponseValidationError: Listing every problem found
    """
    batch = parse_response(FlashcardBatchResponse, payload)
    errors = []
    if len(batch.cards) != expected_count:
        errors.append(f"Expected {expected_count} cards, got {len(batch.cards)}")

    fronts = set()
    for number, card in enumerate(batch.cards, start=1):
        front = card.front.strip()
        if not front:
            errors.append(f"Card {number}: front is required")
        if not card.back.strip():
            errors.append(f"Card {number}: back is required")
        if front and front.lower() in fronts:
            errors.append(f"Card {number}: duplicate front")
        fronts.add(front.lower())

    if errors:
        raise ResponseValidationError("Flashcard batch failed validation", errors)
    return batch.cards


def validate_summary(raw: str) -> str:
    """Strip a plain-text summary, removing a surrounding code fence.

    Raises:
        ResponseValidationError: If nothing is left
    """
    text = (raw or "").strip()
    text = re.sub(r"^```(?:\w+)?\s*", "", text)
    text = re.sub(r"\s*```$", "", text)
    if not text:
        raise ResponseValidationError("Summary is empty")
    return text
