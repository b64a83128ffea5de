"""Follow-up question answering within a session."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from quizrag.config import SessionConfig, get_settings
from quizrag.core.retrieval import ContextRetriever, get_retriever
from quizrag.core.retry import run_with_retries
from quizrag.errors import is_regenerable
from quizrag.generation.llm_client import ConversationTurn, LanguageModelClient, get_llm_client
from quizrag.generation.prompts import (
    FOLLOWUP_RESPONSE,
    FollowupPromptContext,
    PromptManager,
    format_context_text,
    get_prompt_manager,
)
from quizrag.generation.validators import FollowupResponse, extract_json, parse_response
from quizrag.models import RetrievedContext, Session

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8
FOLLOWUP_CONTEXT_LIMIT = 5


@dataclass
class FollowupAnswer:
    """Answer to a follow-up question."""
    answer: str
    confidence: float = DEFAULT_CONFIDENCE
    source_references: List[str] = field(default_factory=list)


def session_turns(session: Session) -> List[ConversationTurn]:
    """Prior follow-up exchanges as alternating user/assistant turns."""
    turns = []
    for exchange in session.followup_history:
        turns.append(ConversationTurn(role="user", content=exchange.question))
        turns.append(ConversationTurn(role="assistant", content=exchange.answer))
    return turns


class FollowupResponder:
    """Answers follow-up questions using the session topic and history."""

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        retriever: Optional[ContextRetriever] = None,
        prompt_manager: Optional[PromptManager] = None,
        llm_client: Optional[LanguageModelClient] = None,
    ):
        self.config = config or get_settings().session
        self.retriever = retriever or get_retriever()
        self.prompt_manager = prompt_manager or get_prompt_manager()
        self.llm_client = llm_client or get_llm_client()

    async def answer(
        self,
        session: Session,
        question: str,
        context: Optional[RetrievedContext] = None,
    ) -> FollowupAnswer:
        """Answer a follow-up question.

        Args:
            session: Session the question belongs to
            question: The student's question
            context: Source material; retrieved for the session topic and
                question when omitted

        Returns:
            The answer, defaulting confidence when the model omits it
        """
        question = question.strip()
        if not question:
            raise ValueError("Follow-up question cannot be empty")

        if context is None:
            context = await self.retriever.retrieve_context(
                f"{session.topic} {question}",
                limit=FOLLOWUP_CONTEXT_LIMIT,
            )

        prompt = self.prompt_manager.render(
            FOLLOWUP_RESPONSE,
            FollowupPromptContext(
                topic=session.topic,
                question=question,
                context_text=format_context_text(context),
                previous_exchanges=list(session.followup_history),
            ),
        )
        turns = session_turns(session)

        async def attempt(number: int) -> FollowupResponse:
            raw = await self.llm_client.generate_with_history(turns, prompt)
            return parse_response(FollowupResponse, extract_json(raw))

        response = await run_with_retries(
            attempt,
            max_attempts=self.config.generation_attempts,
            is_retryable=is_regenerable,
            stage="follow-up answer",
        )

        references = response.source_references or [doc.reference() for doc in context.documents]
        logger.info(f"Answered follow-up for session {session.id}")
        return FollowupAnswer(
            answer=response.answer.strip(),
            confidence=DEFAULT_CONFIDENCE if response.confidence is None else response.confidence,
            source_references=references,
        )


# Singleton instance
_followup_responder: Optional[FollowupResponder] = None


def get_followup_responder() -> FollowupResponder:
    """Get the global follow-up responder instance."""
    global _followup_responder
    if _followup_responder is None:
        _followup_responder = FollowupResponder()
    return _followup_responder
