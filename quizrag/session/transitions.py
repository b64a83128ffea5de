"""Session lifecycle transition table.

Each row names the stage an action is valid in, the stage it leads to and
the SessionManager method that performs it. Both the manager's stage
checks and the flow controller's dispatch are derived from this table.
"""

from dataclasses import dataclass
from typing import List, Optional, Set

from quizrag.models import SessionStage


@dataclass(frozen=True)
class FlowTransition:
    """One allowed lifecycle transition."""
    from_stage: SessionStage
    to_stage: SessionStage
    action: str
    mutation: str


TRANSITIONS = (
    FlowTransition(SessionStage.INPUT, SessionStage.QUESTIONS, "generate_questions", "set_questions"),
    FlowTransition(SessionStage.QUESTIONS, SessionStage.ANSWERS, "reveal_answers", "set_user_answers"),
    FlowTransition(SessionStage.ANSWERS, SessionStage.EXPLANATIONS, "show_explanations", "show_explanations"),
    FlowTransition(SessionStage.EXPLANATIONS, SessionStage.FOLLOWUP, "ask_followup", "add_followup_exchange"),
    FlowTransition(SessionStage.FOLLOWUP, SessionStage.FOLLOWUP, "continue_followup", "add_followup_exchange"),
    # Restart is allowed from every stage except the first
    FlowTransition(SessionStage.QUESTIONS, SessionStage.INPUT, "restart", "restart_session"),
    FlowTransition(SessionStage.ANSWERS, SessionStage.INPUT, "restart", "restart_session"),
    FlowTransition(SessionStage.EXPLANATIONS, SessionStage.INPUT, "restart", "restart_session"),
    FlowTransition(SessionStage.FOLLOWUP, SessionStage.INPUT, "restart", "restart_session"),
)

STAGE_ORDER = (
    SessionStage.INPUT,
    SessionStage.QUESTIONS,
    SessionStage.ANSWERS,
    SessionStage.EXPLANATIONS,
    SessionStage.FOLLOWUP,
)


def allowed_actions(stage: SessionStage) -> List[str]:
    """Actions valid in ``stage``, in table order."""
    return [t.action for t in TRANSITIONS if t.from_stage == stage]


def find_transition(stage: SessionStage, action: str) -> Optional[FlowTransition]:
    for transition in TRANSITIONS:
        if transition.from_stage == stage and transition.action == action:
            return transition
    return None


def mutation_transitions(mutation: str) -> List[FlowTransition]:
    """Rows performed by a SessionManager method."""
    rows = [t for t in TRANSITIONS if t.mutation == mutation]
    if not rows:
        raise KeyError(f"No transition uses mutation '{mutation}'")
    return rows


def source_stages(mutation: str) -> Set[SessionStage]:
    return {t.from_stage for t in mutation_transitions(mutation)}


def known_actions() -> List[str]:
    return list(dict.fromkeys(t.action for t in TRANSITIONS))
