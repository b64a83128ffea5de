"""Quiz session lifecycle: storage, state management and flow control."""

from quizrag.session.transitions import TRANSITIONS, FlowTransition
from quizrag.session.store import InMemorySessionStore, RedisSessionStore, SessionStore
from quizrag.session.manager import SessionManager, get_session_manager
from quizrag.session.flow import FlowController, FlowValidationResult, get_flow_controller

__all__ = [
    "TRANSITIONS",
    "FlowTransition",
    "InMemorySessionStore",
    "RedisSessionStore",
    "SessionStore",
    "SessionManager",
    "get_session_manager",
    "FlowController",
    "FlowValidationResult",
    "get_flow_controller",
]
