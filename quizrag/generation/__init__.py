"""Generation pipeline.

This module provides:
- Prompt templates and rendering
- The language model client
- Response validation
- Question, answer, explanation and follow-up generation
- Flashcards and topic summaries
"""

from quizrag.generation.prompts import PromptManager, PromptTemplate, get_prompt_manager
from quizrag.generation.llm_client import (
    AnthropicBackend,
    ConversationTurn,
    LanguageModelClient,
    LLMBackend,
    OpenAIBackend,
    get_llm_client,
)
from quizrag.generation.question_generator import (
    QuestionGenerationResult,
    QuestionGenerator,
    get_question_generator,
)
from quizrag.generation.answer_generator import (
    AnswerGenerator,
    GeneratedAnswer,
    build_multiple_choice,
    get_answer_generator,
)
from quizrag.generation.explanation_generator import (
    ExplanationGenerator,
    GeneratedExplanation,
    get_explanation_generator,
)
from quizrag.generation.followup import FollowupAnswer, FollowupResponder, get_followup_responder
from quizrag.generation.flashcards import Flashcard, FlashcardGenerator, FlashcardSet, get_flashcard_generator
from quizrag.generation.summarizer import Summarizer, SummaryLength, TopicSummary, get_summarizer

__all__ = [
    # Prompts
    "PromptManager",
    "PromptTemplate",
    "get_prompt_manager",
    # LLM
    "AnthropicBackend",
    "ConversationTurn",
    "LanguageModelClient",
    "LLMBackend",
    "OpenAIBackend",
    "get_llm_client",
    # Generators
    "QuestionGenerationResult",
    "QuestionGenerator",
    "get_question_generator",
    "AnswerGenerator",
    "GeneratedAnswer",
    "build_multiple_choice",
    "get_answer_generator",
    "ExplanationGenerator",
    "GeneratedExplanation",
    "get_explanation_generator",
    "FollowupAnswer",
    "FollowupResponder",
    "get_followup_responder",
    # Study aids
    "Flashcard",
    "FlashcardGenerator",
    "FlashcardSet",
    "get_flashcard_generator",
    "Summarizer",
    "SummaryLength",
    "TopicSummary",
    "get_summarizer",
]
