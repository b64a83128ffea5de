"""Unit tests for session storage, lifecycle management and flow control."""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from quizrag.config import RedisConfig, SessionConfig
from quizrag.errors import (
    InvalidTransitionError,
    SessionExpiredError,
    SessionNotFoundError,
    TransitionDataError,
)
from quizrag.models import Session, SessionStage, utcnow
from quizrag.session.flow import FlowController
from quizrag.session.manager import SessionManager, create_store
from quizrag.session.store import InMemorySessionStore, RedisSessionStore
from quizrag.session.transitions import (
    TRANSITIONS,
    allowed_actions,
    find_transition,
    known_actions,
    mutation_transitions,
    source_stages,
)


async def advance_to(flow_controller, session_id, stage, question):
    """Drive a session forward through the normal flow until ``stage``."""
    steps = [
        (SessionStage.QUESTIONS, "generate_questions", {"questions": [question.to_dict()]}),
        (SessionStage.ANSWERS, "reveal_answers", {"user_answers": {question.id: "A"}}),
        (SessionStage.EXPLANATIONS, "show_explanations", None),
        (SessionStage.FOLLOWUP, "ask_followup", {"question": "Why?", "answer": "Because."}),
    ]
    session = None
    for target, action, data in steps:
        session = await flow_controller.execute_transition(session_id, action, data)
        if target == stage:
            break
    return session


# ====================
# Transition Table Tests
# ====================

class TestTransitionTable:
    """Tests for the lifecycle transition table."""

    def test_allowed_actions(self):
        """Test the actions available in each stage."""
        assert allowed_actions(SessionStage.INPUT) == ["generate_questions"]
        assert allowed_actions(SessionStage.QUESTIONS) == ["reveal_answers", "restart"]
        assert allowed_actions(SessionStage.ANSWERS) == ["show_explanations", "restart"]
        assert allowed_actions(SessionStage.EXPLANATIONS) == ["ask_followup", "restart"]
        assert allowed_actions(SessionStage.FOLLOWUP) == ["continue_followup", "restart"]

    def test_restart_targets_input(self):
        """Test that restart always leads back to input."""
        restarts = [t for t in TRANSITIONS if t.action == "restart"]

        assert len(restarts) == 4
        assert all(t.to_stage == SessionStage.INPUT for t in restarts)
        assert find_transition(SessionStage.INPUT, "restart") is None

    def test_mutation_lookup(self):
        """Test the rows behind each SessionManager mutation."""
        assert source_stages("add_followup_exchange") == {SessionStage.EXPLANATIONS, SessionStage.FOLLOWUP}
        assert len(mutation_transitions("restart_session")) == 4
        with pytest.raises(KeyError):
            mutation_transitions("delete_everything")

    def test_every_mutation_exists(self):
        """Test that every table row names a real SessionManager method."""
        for transition in TRANSITIONS:
            assert callable(getattr(SessionManager, transition.mutation))

    def test_known_actions(self):
        """Test the distinct action names."""
        assert known_actions() == [
            "generate_questions", "reveal_answers", "show_explanations",
            "ask_followup", "continue_followup", "restart",
        ]


# ====================
# Store Tests
# ====================

class TestInMemorySessionStore:
    """Tests for the process-local store."""

    @pytest.mark.asyncio
    async def test_save_load_copies(self):
        """Test that callers never share the stored object."""
        store = InMemorySessionStore()
        session = Session(id="s1", topic="bonds", question_count=2, expires_at=utcnow() + timedelta(hours=1))
        await store.save(session)

        session.topic = "stocks"
        loaded = await store.load("s1")
        loaded.question_count = 9

        assert (await store.load("s1")).topic == "bonds"
        assert (await store.load("s1")).question_count == 2

    @pytest.mark.asyncio
    async def test_cleanup(self):
        """Test that only expired sessions are removed."""
        store = InMemorySessionStore()
        now = utcnow()
        await store.save(Session(id="old", topic="bonds", question_count=1, expires_at=now - timedelta(minutes=1)))
        await store.save(Session(id="new", topic="bonds", question_count=1, expires_at=now + timedelta(minutes=1)))

        assert await store.cleanup(now) == 1
        assert len(store) == 1
        assert await store.load("old") is None


class TestRedisSessionStore:
    """Tests for the Redis store against a mocked client."""

    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.setex = AsyncMock()
        client.get = AsyncMock(return_value=None)
        client.delete = AsyncMock()
        client.aclose = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_save_sets_ttl(self, redis_client):
        """Test that the key expires with the session."""
        store = RedisSessionStore(RedisConfig(session_prefix="quiz:"), client=redis_client)
        session = Session(id="s1", topic="bonds", question_count=2, expires_at=utcnow() + timedelta(minutes=10))

        await store.save(session)

        key, ttl, value = redis_client.setex.await_args.args
        assert key == "quiz:s1"
        assert 590 <= ttl <= 600
        assert json.loads(value)["topic"] == "bonds"

    @pytest.mark.asyncio
    async def test_load(self, redis_client):
        """Test deserialization of a stored session."""
        session = Session(id="s1", topic="bonds", question_count=2, expires_at=utcnow() + timedelta(minutes=10))
        redis_client.get.return_value = json.dumps(session.to_dict()).encode()
        store = RedisSessionStore(RedisConfig(), client=redis_client)

        loaded = await store.load("s1")

        assert loaded == session
        redis_client.get.assert_awaited_once_with("session:s1")

    @pytest.mark.asyncio
    async def test_load_missing(self, redis_client):
        """Test that a missing key loads as None."""
        store = RedisSessionStore(RedisConfig(), client=redis_client)

        assert await store.load("missing") is None

    @pytest.mark.asyncio
    async def test_cleanup(self, redis_client):
        """Test that expired records found by scanning are deleted."""
        now = utcnow()
        expired = Session(id="old", topic="bonds", question_count=1, expires_at=now - timedelta(minutes=1))
        live = Session(id="new", topic="bonds", question_count=1, expires_at=now + timedelta(minutes=1))
        records = {
            b"session:old": json.dumps(expired.to_dict()),
            b"session:new": json.dumps(live.to_dict()),
        }

        async def scan_iter(match):
            for key in records:
                yield key

        redis_client.scan_iter = scan_iter
        redis_client.get = AsyncMock(side_effect=lambda key: records[key])
        store = RedisSessionStore(RedisConfig(), client=redis_client)

        assert await store.cleanup(now) == 1
        redis_client.delete.assert_awaited_once_with(b"session:old")

    @pytest.mark.asyncio
    async def test_close(self, redis_client):
        """Test closing the connection."""
        store = RedisSessionStore(RedisConfig(), client=redis_client)

        await store.close()

        redis_client.aclose.assert_awaited_once()


def test_create_store():
    """Test store selection from configuration."""
    assert isinstance(create_store(SessionConfig(store="memory")), InMemorySessionStore)
    assert isinstance(create_store(SessionConfig(store="redis")), RedisSessionStore)
    with pytest.raises(ValueError):
        create_store(SessionConfig(store="sqlite"))


# ====================
# Session Manager Tests
# ====================

class TestSessionManager:
    """Tests for session state management."""

    @pytest.mark.asyncio
    async def test_create_session(self, session_manager, settings):
        """Test a new session starts in the input stage."""
        session = await session_manager.create_session("bonds", 3, user_id="user-1")

        assert session.current_stage == SessionStage.INPUT
        assert session.user_id == "user-1"
        assert session.expires_at - session.created_at == timedelta(minutes=settings.session.ttl_minutes)
        assert await session_manager.get_session(session.id) == session

    @pytest.mark.asyncio
    async def test_get_unknown_session(self, session_manager):
        """Test that unknown ids resolve to None."""
        assert await session_manager.get_session("session_0_missing") is None

    @pytest.mark.asyncio
    async def test_expired_session_removed(self, session_manager, session_store):
        """Test that reading an expired session deletes it."""
        session = await session_manager.create_session("bonds", 3)
        session.expires_at = utcnow() - timedelta(seconds=1)
        await session_store.save(session)

        assert await session_manager.get_session(session.id) is None
        assert len(session_store) == 0

    @pytest.mark.asyncio
    async def test_mutation_checks_stage(self, session_manager):
        """Test that a mutation out of order is rejected without changes."""
        session = await session_manager.create_session("bonds", 3)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await session_manager.show_explanations(session.id)

        assert exc_info.value.stage == "input"
        assert exc_info.value.allowed_actions == ["generate_questions"]
        assert (await session_manager.get_session(session.id)).current_stage == SessionStage.INPUT

    @pytest.mark.asyncio
    async def test_mutation_on_missing_session(self, session_manager):
        """Test that mutating an unknown session fails."""
        with pytest.raises(SessionNotFoundError):
            await session_manager.show_explanations("session_0_missing")

    @pytest.mark.asyncio
    async def test_set_questions(self, session_manager, sample_question):
        """Test that questions and stage change together."""
        session = await session_manager.create_session("bonds", 1)

        updated = await session_manager.set_questions(session.id, [sample_question])

        assert updated.current_stage == SessionStage.QUESTIONS
        stored = await session_manager.get_session(session.id)
        assert stored.questions == [sample_question]
        assert stored.current_stage == SessionStage.QUESTIONS

    @pytest.mark.asyncio
    async def test_followup_accumulates(self, session_manager, flow_controller, sample_question):
        """Test that follow-ups append in order and stay in the followup stage."""
        session = await session_manager.create_session("bonds", 1)
        await advance_to(flow_controller, session.id, SessionStage.FOLLOWUP, sample_question)

        updated = await session_manager.add_followup_exchange(session.id, "And duration?", "Years.")

        assert updated.current_stage == SessionStage.FOLLOWUP
        assert [e.question for e in updated.followup_history] == ["Why?", "And duration?"]

    @pytest.mark.asyncio
    async def test_restart_session(self, session_manager, flow_controller, sample_question):
        """Test that restart replaces the session."""
        session = await session_manager.create_session("bonds", 4, user_id="user-1")
        await advance_to(flow_controller, session.id, SessionStage.QUESTIONS, sample_question)

        new_session = await session_manager.restart_session(session.id)

        assert new_session.id != session.id
        assert new_session.current_stage == SessionStage.INPUT
        assert (new_session.topic, new_session.question_count, new_session.user_id) == ("bonds", 4, "user-1")
        assert new_session.questions == []
        assert await session_manager.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_restart_from_input_rejected(self, session_manager):
        """Test that a fresh session cannot be restarted."""
        session = await session_manager.create_session("bonds", 1)

        with pytest.raises(InvalidTransitionError):
            await session_manager.restart_session(session.id)

    @pytest.mark.asyncio
    async def test_extend_session(self, session_manager):
        """Test pushing back the expiry."""
        session = await session_manager.create_session("bonds", 1)

        extended = await session_manager.extend_session(session.id, 30)

        assert extended.expires_at == session.expires_at + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_save_expired_rejected(self, session_manager):
        """Test that an expired session cannot be written."""
        session = await session_manager.create_session("bonds", 1)
        session.expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(SessionExpiredError):
            await session_manager._save(session)

    @pytest.mark.asyncio
    async def test_cleanup_expired_sessions(self, session_manager, session_store):
        """Test the expiry sweep."""
        expired = await session_manager.create_session("bonds", 1)
        await session_manager.create_session("stocks", 1)
        expired.expires_at = utcnow() - timedelta(seconds=1)
        await session_store.save(expired)

        assert await session_manager.cleanup_expired_sessions() == 1
        assert len(session_store) == 1

    @pytest.mark.asyncio
    async def test_delete_session(self, session_manager):
        """Test explicit deletion."""
        session = await session_manager.create_session("bonds", 1)

        await session_manager.delete_session(session.id)

        assert await session_manager.get_session(session.id) is None


# ====================
# Flow Controller Tests
# ====================

class TestFlowController:
    """Tests for action validation and dispatch."""

    @pytest.mark.asyncio
    async def test_full_forward_flow(self, session_manager, flow_controller, sample_question):
        """Test the normal path through every stage."""
        session = await session_manager.create_session("bonds", 1)

        questions = await flow_controller.execute_transition(
            session.id, "generate_questions", {"questions": [sample_question]}
        )
        answers = await flow_controller.execute_transition(
            session.id, "reveal_answers", {"userAnswers": {sample_question.id: "b"}}
        )
        explanations = await flow_controller.execute_transition(session.id, "show_explanations")
        followup = await flow_controller.execute_transition(
            session.id, "ask_followup", {"question": "Why?", "answer": "Because."}
        )
        more = await flow_controller.execute_transition(
            session.id, "continue_followup", {"question": "And?", "answer": "Also."}
        )

        assert questions.current_stage == SessionStage.QUESTIONS
        assert answers.user_answers == {sample_question.id: "B"}
        assert explanations.current_stage == SessionStage.EXPLANATIONS
        assert followup.current_stage == SessionStage.FOLLOWUP
        assert len(more.followup_history) == 2

    @pytest.mark.asyncio
    async def test_action_in_wrong_stage(self, session_manager, flow_controller):
        """Test that an action from the wrong stage lists the allowed ones."""
        session = await session_manager.create_session("bonds", 1)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await flow_controller.execute_transition(session.id, "reveal_answers", {"user_answers": {}})

        assert exc_info.value.allowed_actions == ["generate_questions"]
        assert "not allowed in step 'input'" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_stage_checked_before_payload(self, session_manager, flow_controller):
        """Test that a misplaced action without payload reports the stage problem."""
        session = await session_manager.create_session("bonds", 1)

        with pytest.raises(InvalidTransitionError):
            await flow_controller.execute_transition(session.id, "ask_followup")

    @pytest.mark.asyncio
    async def test_unknown_action(self, session_manager, flow_controller):
        """Test that unknown actions are invalid transitions."""
        session = await session_manager.create_session("bonds", 1)

        with pytest.raises(InvalidTransitionError):
            await flow_controller.execute_transition(session.id, "skip_to_end")

    @pytest.mark.asyncio
    async def test_unknown_session(self, flow_controller):
        """Test that missing sessions are reported."""
        with pytest.raises(SessionNotFoundError):
            await flow_controller.execute_transition("session_0_missing", "generate_questions")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", [
        None,
        {"questions": "three"},
        {"questions": [{"id": "q1", "topic": "bonds"}]},
    ])
    async def test_bad_questions_payload(self, session_manager, flow_controller, data):
        """Test that generate_questions needs a list of valid questions."""
        session = await session_manager.create_session("bonds", 1)

        with pytest.raises(TransitionDataError):
            await flow_controller.execute_transition(session.id, "generate_questions", data)

        assert (await session_manager.get_session(session.id)).current_stage == SessionStage.INPUT

    @pytest.mark.asyncio
    async def test_bad_answer_label(self, session_manager, flow_controller, sample_question):
        """Test that answers must be option labels."""
        session = await session_manager.create_session("bonds", 1)
        await advance_to(flow_controller, session.id, SessionStage.QUESTIONS, sample_question)

        with pytest.raises(TransitionDataError):
            await flow_controller.execute_transition(
                session.id, "reveal_answers", {"user_answers": {sample_question.id: "E"}}
            )

    @pytest.mark.asyncio
    async def test_answer_for_unknown_question(self, session_manager, flow_controller, sample_question):
        """Test that answers must refer to questions in the session."""
        session = await session_manager.create_session("bonds", 1)
        await advance_to(flow_controller, session.id, SessionStage.QUESTIONS, sample_question)

        with pytest.raises(TransitionDataError, match="q_missing"):
            await flow_controller.execute_transition(
                session.id, "reveal_answers", {"user_answers": {sample_question.id: "A", "q_missing": "B"}}
            )

        stored = await session_manager.get_session(session.id)
        assert stored.current_stage == SessionStage.QUESTIONS
        assert stored.user_answers == {}

    @pytest.mark.asyncio
    async def test_reveal_without_answers(self, session_manager, flow_controller, sample_question):
        """Test that revealing with no answers records an empty mapping."""
        session = await session_manager.create_session("bonds", 1)
        await advance_to(flow_controller, session.id, SessionStage.QUESTIONS, sample_question)

        updated = await flow_controller.execute_transition(session.id, "reveal_answers")

        assert updated.current_stage == SessionStage.ANSWERS
        assert updated.user_answers == {}

    @pytest.mark.asyncio
    async def test_followup_requires_question_and_answer(self, session_manager, flow_controller, sample_question):
        """Test the follow-up payload."""
        session = await session_manager.create_session("bonds", 1)
        await advance_to(flow_controller, session.id, SessionStage.EXPLANATIONS, sample_question)

        with pytest.raises(TransitionDataError):
            await flow_controller.execute_transition(session.id, "ask_followup", {"question": "Why?"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage", [
        SessionStage.QUESTIONS,
        SessionStage.ANSWERS,
        SessionStage.EXPLANATIONS,
        SessionStage.FOLLOWUP,
    ])
    async def test_restart_from_each_stage(self, session_manager, flow_controller, sample_question, stage):
        """Test that restart yields a new input session and retires the old id."""
        session = await session_manager.create_session("bonds", 1)
        await advance_to(flow_controller, session.id, stage, sample_question)

        new_session = await flow_controller.execute_transition(session.id, "restart")

        assert new_session.id != session.id
        assert new_session.current_stage == SessionStage.INPUT
        assert await session_manager.get_session(session.id) is None
        assert await session_manager.get_session(new_session.id) is not None

    @pytest.mark.asyncio
    async def test_validate_session_action(self, session_manager, flow_controller, sample_question):
        """Test the non-raising action check."""
        session = await session_manager.create_session("bonds", 1)
        await advance_to(flow_controller, session.id, SessionStage.QUESTIONS, sample_question)

        result = await flow_controller.validate_session_action(session.id, "generate_questions")
        missing = await flow_controller.validate_session_action("session_0_missing", "restart")

        assert not result.is_valid
        assert result.error == "Action 'generate_questions' not allowed in step 'questions'"
        assert result.allowed_actions == ["reveal_answers", "restart"]
        assert not missing.is_valid

    def test_validate_transition(self, flow_controller):
        """Test checking a (from, to, action) triple."""
        assert flow_controller.validate_transition(
            SessionStage.ANSWERS, SessionStage.EXPLANATIONS, "show_explanations"
        ).is_valid
        invalid = flow_controller.validate_transition(
            SessionStage.ANSWERS, SessionStage.FOLLOWUP, "show_explanations"
        )
        assert not invalid.is_valid
        assert invalid.allowed_actions == ["show_explanations", "restart"]

    def test_stage_helpers(self):
        """Test progress, next stage and descriptions."""
        assert FlowController.get_flow_progress(SessionStage.INPUT) == 20
        assert FlowController.get_flow_progress(SessionStage.FOLLOWUP) == 100
        assert FlowController.get_next_stage(SessionStage.ANSWERS) == SessionStage.EXPLANATIONS
        assert FlowController.get_next_stage(SessionStage.FOLLOWUP) is None
        assert FlowController.get_stage_description(SessionStage.INPUT) == "Waiting for topic and question count"
