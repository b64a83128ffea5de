"""Prompt templates for the generation calls.

Templates are plain ``str.format`` strings with a closed set of variables.
Each generation step supplies a typed context dataclass whose
``to_variables()`` produces exactly that set; optional and repeated sections
(source listings, incorrect options, follow-up history, the no-context note)
are built in Python before rendering, so rendering is a single substitution
pass.
"""

import logging
import string
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from quizrag.errors import PromptRenderError
from quizrag.models import Document, FollowupExchange, RetrievedContext

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "1.0.0"

SOURCE_EXCERPT_LENGTH = 1000


def format_context_text(context: RetrievedContext, max_length: int = 8000) -> str:
    """Render retrieved documents as prompt context.

    Documents are emitted highest score first as ``Title/Content/Source``
    blocks. The first block that does not fit is truncated when more than
    200 characters of budget remain, and nothing after it is included.
    """
    ranked = sorted(
        zip(context.documents, context.relevance_scores),
        key=lambda pair: pair[1],
        reverse=True,
    )
    blocks = []
    used = 0
    for document, _ in ranked:
        block = f"Title: {document.title}\nContent: {document.content}\nSource: {document.source}\n\n"
        if used + len(block) > max_length:
            remaining = max_length - used - 100
            if remaining > 200:
                excerpt = document.content[:max(remaining - len(document.title) - 50, 0)]
                blocks.append(f"Title: {document.title}\nContent: {excerpt}...\nSource: {document.source}\n\n")
            break
        blocks.append(block)
        used += len(block)
    return "".join(blocks).strip()


def format_source_materials(documents: Sequence[Document]) -> str:
    if not documents:
        return ""
    lines = ["Source Materials:"]
    for document in documents:
        content = document.content
        if len(content) > SOURCE_EXCERPT_LENGTH:
            content = content[:SOURCE_EXCERPT_LENGTH] + "..."
        lines.append(f"- {document.title}: {content}")
    return "\n".join(lines)


# ==================== Contexts ====================

@dataclass
class QuestionPromptContext:
    """Variables for question generation."""
    topic: str
    question_count: int
    context_text: str
    documents: List[Document] = field(default_factory=list)
    difficulty: Optional[str] = None

    def to_variables(self) -> Dict[str, str]:
        return {
            "topic": self.topic,
            "question_count": str(self.question_count),
            "context": self.context_text,
            "difficulty_guidance": (
                f"Target difficulty level: {self.difficulty}" if self.difficulty else ""
            ),
            "source_materials": format_source_materials(self.documents),
        }


@dataclass
class AnswerPromptContext:
    """Variables for answer and distractor generation."""
    question_text: str
    context_text: str
    distractor_count: int = 3
    difficulty: Optional[str] = None
    focus_on_misconceptions: bool = False

    def to_variables(self) -> Dict[str, str]:
        return {
            "question": self.question_text,
            "context": self.context_text,
            "distractor_count": str(self.distractor_count),
            "difficulty_guidance": (
                f"Target difficulty level: {self.difficulty}" if self.difficulty else ""
            ),
            "misconception_guidance": (
                "Focus on creating distractors based on common student misconceptions."
                if self.focus_on_misconceptions else ""
            ),
        }


@dataclass
class ExplanationPromptContext:
    """Variables for explanation generation."""
    question_text: str
    correct_answer: str
    context_text: str
    incorrect_options: Dict[str, str] = field(default_factory=dict)
    style: Optional[str] = None
    audience: Optional[str] = None
    max_length: Optional[int] = None

    def to_variables(self) -> Dict[str, str]:
        incorrect = ""
        if self.incorrect_options:
            listed = ", ".join(f"{label}: {text}" for label, text in self.incorrect_options.items())
            incorrect = f"Incorrect Options: {listed}"
        return {
            "question": self.question_text,
            "correct_answer": self.correct_answer,
            "incorrect_options": incorrect,
            "context": self.context_text,
            "style_guidance": f"Use {self.style} pedagogical style." if self.style else "",
            "audience_guidance": (
                f"Target audience: {self.audience} level students." if self.audience else ""
            ),
            "length_guidance": (
                f"Keep explanation under {self.max_length} characters." if self.max_length else ""
            ),
        }


@dataclass
class FollowupPromptContext:
    """Variables for answering a follow-up question."""
    topic: str
    question: str
    context_text: str
    previous_exchanges: List[FollowupExchange] = field(default_factory=list)

    def to_variables(self) -> Dict[str, str]:
        history = ""
        if self.previous_exchanges:
            turns = "\n\n".join(
                f"Q{i}: {exchange.question}\nA{i}: {exchange.answer}"
                for i, exchange in enumerate(self.previous_exchanges, start=1)
            )
            history = f"Previous Follow-up Exchanges:\n{turns}"
        return {
            "topic": self.topic,
            "question": self.question,
            "context": self.context_text,
            "history": history,
        }


@dataclass
class FlashcardPromptContext:
    """Variables for flashcard generation."""
    topic: str
    card_count: int
    context_text: str

    def to_variables(self) -> Dict[str, str]:
        return {
            "topic": self.topic,
            "card_count": str(self.card_count),
            "context": self.context_text or "No textbook context found. Use general exam knowledge.",
        }


@dataclass
class SummaryPromptContext:
    """Variables for a topic summary."""
    topic: str
    context_text: str
    length_instruction: str

    def to_variables(self) -> Dict[str, str]:
        return {
            "topic": self.topic,
            "context": self.context_text or (
                "No textbook context found. Provide a general exam-appropriate summary."
            ),
            "length_instruction": self.length_instruction,
        }


# ==================== Templates ====================

@dataclass(frozen=True)
class PromptTemplate:
    """A versioned prompt template."""
    id: str
    version: str
    text: str
    variables: FrozenSet[str]
    description: str = ""

    def placeholders(self) -> FrozenSet[str]:
        """Field names referenced by the template text."""
        return frozenset(
            name for _, name, _, _ in string.Formatter().parse(self.text) if name
        )


QUESTION_TEMPLATE = """You are an expert securities education tutor. Generate {question_count} multiple-choice questions about "{topic}" based on the following context.

Context:
{context}

{difficulty_guidance}

Requirements:
- Each question must have exactly 4 answer options (A, B, C, D)
- Exactly one option must be correct
- All four options must be distinct
- Incorrect options should be plausible distractors based on common misconceptions
- Questions should match the pedagogical style of professional securities examinations
- Use terminology consistent with securities course materials

{source_materials}

Format your response as JSON:
{{
  "questions": [
    {{
      "question_text": "Question text here?",
      "options": {{
        "A": "Option A text",
        "B": "Option B text",
        "C": "Option C text",
        "D": "Option D text"
      }},
      "correct_answer": "A"
    }}
  ]
}}"""

ANSWER_TEMPLATE = """You are an expert securities education tutor. For the given question and context, provide the correct answer and create {distractor_count} plausible distractors.

Question: {question}

Context:
{context}

{difficulty_guidance}
{misconception_guidance}

Requirements:
- Provide one correct answer based on the context
- Create exactly {distractor_count} plausible but incorrect distractors
- Distractors should be based on common misconceptions or similar concepts
- All options should be roughly the same length and style
- Provide a brief explanation for why the correct answer is right

Format your response as JSON:
{{
  "correct_answer": "The correct answer text here",
  "explanation": "Brief explanation of why this is correct",
  "distractors": [
    "Distractor 1 text",
    "Distractor 2 text",
    "Distractor 3 text"
  ]
}}"""

EXPLANATION_TEMPLATE = """You are an expert securities education tutor. Provide a comprehensive explanation for the correct answer and why other options are incorrect.

Question: {question}
Correct Answer: {correct_answer}
{incorrect_options}

Context:
{context}

{style_guidance}
{audience_guidance}
{length_guidance}

Requirements:
- Explain why the correct answer is right using the provided context
- If incorrect options are provided, briefly explain why they are wrong
- Use pedagogically appropriate language and structure
- Include key points that students should remember
- Identify common mistakes students make on this topic
- Provide examples or mnemonics if helpful
- Reference source materials when applicable

Format your response as JSON:
{{
  "explanation": "Comprehensive explanation text here",
  "key_points": ["Key point 1", "Key point 2", "Key point 3"],
  "common_mistakes": ["Common mistake 1", "Common mistake 2"],
  "examples": ["Example 1", "Example 2"],
  "mnemonics": ["Mnemonic 1"],
  "source_references": ["Reference 1", "Reference 2"]
}}"""

FOLLOWUP_TEMPLATE = """You are an expert securities education tutor. A student has asked a follow-up question about "{topic}". Provide a comprehensive, pedagogically appropriate answer.

Student's Follow-up Question: {question}

Context from Previous Session:
{context}

{history}

Requirements:
- Provide a clear, accurate answer grounded in the context
- Use pedagogically appropriate language for securities education
- Build upon previous questions and answers when relevant
- Include examples or clarifications if helpful
- Maintain consistency with established facts from the context
- If the question is outside the scope of securities education, politely redirect

Format your response as JSON:
{{
  "answer": "Comprehensive answer to the follow-up question",
  "confidence": 0.95,
  "source_references": ["Reference 1", "Reference 2"]
}}"""

FLASHCARD_TEMPLATE = """You are an expert securities education tutor. Generate exactly {card_count} flashcards about "{topic}" based on the following context.

Context:
{context}

Requirements:
- The front of each card is a short question or term
- The back gives the answer in one or two sentences
- Add a brief explanation only when it helps recall
- Make the cards clear, concise and exam-focused
- Do not repeat a card

Format your response as JSON:
{{
  "cards": [
    {{
      "front": "Question or term",
      "back": "Answer",
      "explanation": "Optional explanation"
    }}
  ]
}}"""

SUMMARY_TEMPLATE = """You are an expert securities education tutor. Summarize the topic "{topic}" for a student preparing for a securities examination.

Rules:
- Be accurate and exam-relevant
- Do not invent facts
- Prefer the textbook context when it is available
- Use clear, student-friendly language

Instructions:
{length_instruction}

Textbook Context:
{context}"""

QUESTION_GENERATION = "question-generation"
ANSWER_GENERATION = "answer-generation"
EXPLANATION_GENERATION = "explanation-generation"
FOLLOWUP_RESPONSE = "followup-response"
FLASHCARD_GENERATION = "flashcard-generation"
TOPIC_SUMMARY = "topic-summary"

DEFAULT_TEMPLATES = [
    PromptTemplate(
        id=QUESTION_GENERATION,
        version=DEFAULT_VERSION,
        text=QUESTION_TEMPLATE,
        variables=frozenset({"topic", "question_count", "context", "difficulty_guidance", "source_materials"}),
        description="Multiple-choice questions grounded in retrieved context",
    ),
    PromptTemplate(
        id=ANSWER_GENERATION,
        version=DEFAULT_VERSION,
        text=ANSWER_TEMPLATE,
        variables=frozenset({
            "question", "context", "distractor_count", "difficulty_guidance", "misconception_guidance",
        }),
        description="Correct answer plus distractors",
    ),
    PromptTemplate(
        id=EXPLANATION_GENERATION,
        version=DEFAULT_VERSION,
        text=EXPLANATION_TEMPLATE,
        variables=frozenset({
            "question", "correct_answer", "incorrect_options", "context",
            "style_guidance", "audience_guidance", "length_guidance",
        }),
        description="Explanation of the correct answer",
    ),
    PromptTemplate(
        id=FOLLOWUP_RESPONSE,
        version=DEFAULT_VERSION,
        text=FOLLOWUP_TEMPLATE,
        variables=frozenset({"topic", "question", "context", "history"}),
        description="Answer to a follow-up question with session history",
    ),
    PromptTemplate(
        id=FLASHCARD_GENERATION,
        version=DEFAULT_VERSION,
        text=FLASHCARD_TEMPLATE,
        variables=frozenset({"topic", "card_count", "context"}),
        description="Front/back study cards grounded in retrieved context",
    ),
    PromptTemplate(
        id=TOPIC_SUMMARY,
        version=DEFAULT_VERSION,
        text=SUMMARY_TEMPLATE,
        variables=frozenset({"topic", "context", "length_instruction"}),
        description="Plain-text topic summary",
    ),
]


class PromptManager:
    """Registry and renderer for versioned prompt templates."""

    def __init__(self, templates: Optional[Sequence[PromptTemplate]] = None):
        self._templates: Dict[Tuple[str, str], PromptTemplate] = {}
        for template in DEFAULT_TEMPLATES if templates is None else templates:
            self.register_template(template)

    def register_template(self, template: PromptTemplate) -> None:
        """Add or replace a template.

        Raises:
            PromptRenderError: If the text references variables other than
                the declared ones, or declares variables it never uses
        """
        placeholders = template.placeholders()
        if placeholders != template.variables:
            raise PromptRenderError(
                f"Template {template.id}@{template.version} declares "
                f"{sorted(template.variables)} but references {sorted(placeholders)}"
            )
        self._templates[(template.id, template.version)] = template

    def get_template(self, template_id: str, version: Optional[str] = None) -> PromptTemplate:
        version = version or DEFAULT_VERSION
        template = self._templates.get((template_id, version))
        if template is None:
            raise PromptRenderError(f"Template {template_id} version {version} not found")
        return template

    def list_templates(self) -> List[PromptTemplate]:
        return list(self._templates.values())

    def render(self, template_id: str, context, version: Optional[str] = None) -> str:
        """Render a template with a prompt context.

        Args:
            template_id: Template identifier
            context: A prompt context dataclass exposing ``to_variables()``
            version: Template version (default version if omitted)

        Returns:
            The rendered prompt

        Raises:
            PromptRenderError: If the variables do not match the template
        """
        template = self.get_template(template_id, version)
        variables = context.to_variables()

        missing = template.variables - variables.keys()
        unexpected = variables.keys() - template.variables
        if missing or unexpected:
            raise PromptRenderError(
                f"Cannot render {template_id}@{template.version}: "
                f"missing={sorted(missing)} unexpected={sorted(unexpected)}"
            )

        return template.text.format(**variables)


# Singleton instance
_prompt_manager: Optional[PromptManager] = None


def get_prompt_manager() -> PromptManager:
    """Get the global prompt manager instance."""
    global _prompt_manager
    if _prompt_manager is None:
        _prompt_manager = PromptManager()
    return _prompt_manager
