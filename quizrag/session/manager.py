"""Session lifecycle management.

Each forward mutation checks that the session is in one of the stages the
transition table allows for it, writes its data, advances the stage and
persists, so data and stage always change together.
"""

import logging
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from quizrag.config import SessionConfig, get_settings
from quizrag.errors import (
    InvalidTransitionError,
    SessionExpiredError,
    SessionNotFoundError,
    TransitionDataError,
)
from quizrag.models import FollowupExchange, Question, Session, utcnow
from quizrag.session.store import InMemorySessionStore, RedisSessionStore, SessionStore
from quizrag.session.transitions import allowed_actions, mutation_transitions

logger = logging.getLogger(__name__)


def create_store(config: SessionConfig) -> SessionStore:
    """Create the configured session store."""
    if config.store == "memory":
        return InMemorySessionStore()
    elif config.store == "redis":
        return RedisSessionStore()
    else:
        raise ValueError(f"Unknown session store: {config.store}")


class SessionManager:
    """Creates, reads and advances quiz sessions."""

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        store: Optional[SessionStore] = None,
    ):
        """Initialize the manager.

        Args:
            config: Session configuration
            store: Session store (defaults to the configured store)
        """
        self.config = config or get_settings().session
        self.store = store or create_store(self.config)

    async def create_session(
        self,
        topic: str,
        question_count: int,
        user_id: Optional[str] = None,
    ) -> Session:
        """Create and persist a session in the input stage."""
        now = utcnow()
        session = Session(
            id=Session.new_id(),
            user_id=user_id,
            topic=topic,
            question_count=question_count,
            created_at=now,
            expires_at=now + timedelta(minutes=self.config.ttl_minutes),
        )
        await self.store.save(session)
        logger.info(f"Created session {session.id} for topic '{topic}'")
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        """Load a session; expired sessions are deleted and reported as missing."""
        session = await self.store.load(session_id)
        if session is None:
            return None

        if session.is_expired():
            logger.info(f"Session {session_id} expired")
            await self.store.delete(session_id)
            return None

        return session

    # ==================== Mutations ====================

    async def set_questions(self, session_id: str, questions: List[Question]) -> Session:
        """Store generated questions and move to the questions stage."""
        def apply(session: Session):
            session.questions = list(questions)

        return await self._advance(session_id, "set_questions", apply)

    async def set_user_answers(self, session_id: str, answers: Dict[str, str]) -> Session:
        """Record the user's answers and move to the answers stage.

        Raises:
            TransitionDataError: If an answer names a question not in the session
        """
        def apply(session: Session):
            known = {question.id for question in session.questions}
            unknown = sorted(set(answers) - known)
            if unknown:
                raise TransitionDataError(f"Answers given for unknown questions: {', '.join(unknown)}")
            session.user_answers = dict(answers)

        return await self._advance(session_id, "set_user_answers", apply)

    async def show_explanations(self, session_id: str) -> Session:
        """Move to the explanations stage."""
        return await self._advance(session_id, "show_explanations", lambda session: None)

    async def add_followup_exchange(self, session_id: str, question: str, answer: str) -> Session:
        """Append a follow-up exchange and move to (or stay in) the followup stage."""
        def apply(session: Session):
            session.followup_history.append(FollowupExchange(question=question, answer=answer))

        return await self._advance(session_id, "add_followup_exchange", apply)

    async def restart_session(self, session_id: str) -> Session:
        """Replace a session with a fresh one for the same topic, count and user.

        Returns:
            The new session, in the input stage; the old id no longer resolves
        """
        session = await self._require_stage(session_id, "restart_session")
        new_session = await self.create_session(
            session.topic,
            session.question_count,
            session.user_id,
        )
        await self.store.delete(session_id)
        logger.info(f"Restarted session {session_id} as {new_session.id}")
        return new_session

    # ==================== Maintenance ====================

    async def extend_session(self, session_id: str, additional_minutes: int = 60) -> Session:
        """Push back a session's expiry."""
        session = await self._load(session_id)
        session.expires_at = session.expires_at + timedelta(minutes=additional_minutes)
        await self._save(session)
        return session

    async def delete_session(self, session_id: str) -> None:
        await self.store.delete(session_id)

    async def cleanup_expired_sessions(self) -> int:
        """Sweep expired sessions from the store."""
        removed = await self.store.cleanup()
        if removed:
            logger.info(f"Removed {removed} expired sessions")
        return removed

    # ==================== Internals ====================

    async def _load(self, session_id: str) -> Session:
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _save(self, session: Session) -> None:
        if session.is_expired():
            raise SessionExpiredError(session.id)
        await self.store.save(session)

    async def _require_stage(self, session_id: str, mutation: str) -> Session:
        session = await self._load(session_id)
        rows = mutation_transitions(mutation)
        if session.current_stage not in {row.from_stage for row in rows}:
            raise InvalidTransitionError(
                rows[0].action,
                session.current_stage.value,
                allowed_actions(session.current_stage),
            )
        return session

    async def _advance(
        self,
        session_id: str,
        mutation: str,
        apply: Callable[[Session], None],
    ) -> Session:
        session = await self._require_stage(session_id, mutation)
        previous = session.current_stage
        target = next(
            row.to_stage for row in mutation_transitions(mutation) if row.from_stage == previous
        )

        apply(session)
        session.current_stage = target
        await self._save(session)

        logger.info(f"Session {session_id}: {previous.value} -> {target.value}")
        return session


# Singleton instance
_session_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Get the global session manager instance."""
    global _session_manager
    if _session_manager is None:
        _session_manager = SessionManager()
    return _session_manager
