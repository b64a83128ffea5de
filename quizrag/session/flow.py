"""Flow controller for the quiz session lifecycle.

Translates an external action name plus payload into the SessionManager
mutation named by the transition table. The controller checks the action
against the session's current stage before looking at the payload, so a
misplaced action is always reported as such.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from quizrag.errors import InvalidTransitionError, SessionNotFoundError, TransitionDataError
from quizrag.models import OPTION_LABELS, Question, Session, SessionStage
from quizrag.session.manager import SessionManager, get_session_manager
from quizrag.session.transitions import (
    STAGE_ORDER,
    TRANSITIONS,
    FlowTransition,
    allowed_actions,
    find_transition,
)

logger = logging.getLogger(__name__)

__all__ = [
    "TRANSITIONS",
    "FlowTransition",
    "FlowValidationResult",
    "FlowController",
    "get_flow_controller",
]

NEXT_STAGE: Dict[SessionStage, Optional[SessionStage]] = {
    SessionStage.INPUT: SessionStage.QUESTIONS,
    SessionStage.QUESTIONS: SessionStage.ANSWERS,
    SessionStage.ANSWERS: SessionStage.EXPLANATIONS,
    SessionStage.EXPLANATIONS: SessionStage.FOLLOWUP,
    SessionStage.FOLLOWUP: None,
}

STAGE_DESCRIPTIONS = {
    SessionStage.INPUT: "Waiting for topic and question count",
    SessionStage.QUESTIONS: "Questions generated - ready for user to attempt",
    SessionStage.ANSWERS: "Answers revealed - ready to show explanations",
    SessionStage.EXPLANATIONS: "Explanations provided - ready for follow-up questions",
    SessionStage.FOLLOWUP: "Follow-up dialogue in progress",
}


@dataclass
class FlowValidationResult:
    """Outcome of checking an action against a stage."""
    is_valid: bool
    error: Optional[str] = None
    allowed_actions: List[str] = field(default_factory=list)


# ==================== Payload parsing ====================

def _payload_value(data: Optional[Dict[str, Any]], *keys: str) -> Any:
    if not data:
        return None
    for key in keys:
        if key in data:
            return data[key]
    return None


def _parse_questions(data: Optional[Dict[str, Any]]) -> Tuple:
    raw = _payload_value(data, "questions")
    if not isinstance(raw, list):
        raise TransitionDataError("Questions data required for generate_questions action")

    questions = []
    for number, item in enumerate(raw, start=1):
        if isinstance(item, Question):
            questions.append(item)
            continue
        try:
            questions.append(Question.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            raise TransitionDataError(f"Question {number} is invalid: {e}") from e
    return (questions,)


def _parse_user_answers(data: Optional[Dict[str, Any]]) -> Tuple:
    answers = _payload_value(data, "user_answers", "userAnswers")
    if answers is None:
        answers = {}
    if not isinstance(answers, dict):
        raise TransitionDataError("User answers must be a mapping of question id to option label")

    normalized = {}
    for question_id, label in answers.items():
        if not isinstance(label, str) or label.strip().upper() not in OPTION_LABELS:
            raise TransitionDataError(f"Answer for question {question_id} must be one of A, B, C, D")
        normalized[str(question_id)] = label.strip().upper()
    return (normalized,)


def _parse_followup(data: Optional[Dict[str, Any]]) -> Tuple:
    question = _payload_value(data, "question")
    answer = _payload_value(data, "answer")
    if not isinstance(question, str) or not isinstance(answer, str) or not question.strip() or not answer.strip():
        raise TransitionDataError("Question and answer required for follow-up actions")
    return (question.strip(), answer.strip())


def _no_payload(data: Optional[Dict[str, Any]]) -> Tuple:
    return ()


PAYLOAD_PARSERS: Dict[str, Callable[[Optional[Dict[str, Any]]], Tuple]] = {
    "set_questions": _parse_questions,
    "set_user_answers": _parse_user_answers,
    "show_explanations": _no_payload,
    "add_followup_exchange": _parse_followup,
    "restart_session": _no_payload,
}


class FlowController:
    """Validates and executes lifecycle actions on sessions."""

    def __init__(self, session_manager: Optional[SessionManager] = None):
        self.session_manager = session_manager or get_session_manager()

    async def execute_transition(
        self,
        session_id: str,
        action: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Session:
        """Execute ``action`` on a session.

        Args:
            session_id: Session identifier
            action: Action name from the transition table
            data: Action payload (questions, user answers, follow-up exchange)

        Returns:
            The updated session; for ``restart`` the newly created session

        Raises:
            SessionNotFoundError: If the session is missing or expired
            InvalidTransitionError: If the action is unknown or not allowed now
            TransitionDataError: If the payload is missing or invalid
        """
        session = await self.session_manager.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        stage = session.current_stage
        transition = find_transition(stage, action)
        if transition is None:
            raise InvalidTransitionError(action, stage.value, allowed_actions(stage))

        args = PAYLOAD_PARSERS[transition.mutation](data)
        mutation = getattr(self.session_manager, transition.mutation)
        updated = await mutation(session_id, *args)

        logger.info(f"Executed '{action}' on session {session_id}")
        return updated

    def validate_transition(
        self,
        current_stage: SessionStage,
        target_stage: SessionStage,
        action: str,
    ) -> FlowValidationResult:
        """Check a (from, to, action) triple against the table."""
        current_stage = SessionStage(current_stage)
        target_stage = SessionStage(target_stage)
        transition = find_transition(current_stage, action)
        if transition is None or transition.to_stage != target_stage:
            return FlowValidationResult(
                is_valid=False,
                error=(
                    f"Invalid transition from '{current_stage.value}' to "
                    f"'{target_stage.value}' with action '{action}'"
                ),
                allowed_actions=allowed_actions(current_stage),
            )
        return FlowValidationResult(is_valid=True)

    async def validate_session_action(self, session_id: str, action: str) -> FlowValidationResult:
        """Check whether ``action`` may run on the session right now."""
        session = await self.session_manager.get_session(session_id)
        if session is None:
            return FlowValidationResult(is_valid=False, error="Session not found or expired")

        allowed = allowed_actions(session.current_stage)
        if action not in allowed:
            return FlowValidationResult(
                is_valid=False,
                error=f"Action '{action}' not allowed in step '{session.current_stage.value}'",
                allowed_actions=allowed,
            )
        return FlowValidationResult(is_valid=True, allowed_actions=allowed)

    @staticmethod
    def get_allowed_actions(stage: SessionStage) -> List[str]:
        return allowed_actions(SessionStage(stage))

    @staticmethod
    def get_next_stage(stage: SessionStage) -> Optional[SessionStage]:
        """Next stage in the normal forward flow (None after followup)."""
        return NEXT_STAGE[SessionStage(stage)]

    @staticmethod
    def get_flow_progress(stage: SessionStage) -> int:
        """Progress through the flow as a whole percentage."""
        index = STAGE_ORDER.index(SessionStage(stage))
        return round((index + 1) / len(STAGE_ORDER) * 100)

    @staticmethod
    def get_stage_description(stage: SessionStage) -> str:
        return STAGE_DESCRIPTIONS[SessionStage(stage)]


# Singleton instance
_flow_controller: Optional[FlowController] = None


def get_flow_controller() -> FlowController:
    """Get the global flow controller instance."""
    global _flow_controller
    if _flow_controller is None:
        _flow_controller = FlowController()
    return _flow_controller
