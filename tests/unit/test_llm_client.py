"""Unit tests for the language model client and retry loop."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from quizrag.config import GenerationConfig
from quizrag.core.retry import run_with_retries
from quizrag.errors import (
    GenerationError,
    GenerationRateLimitError,
    GenerationTimeoutError,
    GenerationTransportError,
    ResponseValidationError,
    RetryExhaustedError,
    is_regenerable,
    is_transient,
)
from quizrag.generation.llm_client import (
    AnthropicBackend,
    ConversationTurn,
    LanguageModelClient,
    LLMBackend,
    OpenAIBackend,
)


class SlowBackend(LLMBackend):
    """Backend that never answers within a short timeout."""

    def __init__(self):
        self.model = "slow-model"
        self.calls = 0

    async def complete(self, messages, temperature, max_output_tokens) -> str:
        self.calls += 1
        await asyncio.sleep(5)
        return "too late"


# ====================
# Retry Loop Tests
# ====================

class TestRunWithRetries:
    """Tests for the bounded retry loop."""

    @pytest.mark.asyncio
    async def test_first_success(self):
        """Test that a successful first attempt is returned."""
        operation = AsyncMock(return_value="done")

        result = await run_with_retries(
            operation, max_attempts=3, is_retryable=is_transient, stage="test"
        )

        assert result == "done"
        operation.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_exhaustion_keeps_last_error(self):
        """Test the error raised after the final attempt."""
        operation = AsyncMock(side_effect=[
            ResponseValidationError("first"),
            ResponseValidationError("second"),
        ])

        with pytest.raises(RetryExhaustedError) as exc_info:
            await run_with_retries(
                operation, max_attempts=2, is_retryable=is_regenerable, stage="questions"
            )

        assert exc_info.value.attempts == 2
        assert str(exc_info.value.last_error) == "second"
        assert "questions failed after 2 attempt(s)" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_retryable_propagates(self):
        """Test that errors outside the predicate stop the loop."""
        operation = AsyncMock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            await run_with_retries(
                operation, max_attempts=3, is_retryable=is_transient, stage="test"
            )
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_budget(self):
        """Test that at least one attempt is required."""
        with pytest.raises(ValueError):
            await run_with_retries(
                AsyncMock(), max_attempts=0, is_retryable=is_transient, stage="test"
            )


class TestErrorClassification:
    """Tests for the retry predicates."""

    def test_transient_errors(self):
        """Test which service errors are worth retrying."""
        assert is_transient(GenerationTimeoutError("t"))
        assert is_transient(GenerationRateLimitError("r"))
        assert is_transient(GenerationTransportError("x"))
        assert not is_transient(GenerationError("auth"))
        assert not is_transient(ResponseValidationError("bad json"))

    def test_regenerable_errors(self):
        """Test that only malformed output triggers regeneration."""
        assert is_regenerable(ResponseValidationError("bad json"))
        assert not is_regenerable(GenerationTimeoutError("t"))


# ====================
# Client Tests
# ====================

class TestLanguageModelClient:
    """Tests for the provider-agnostic client."""

    @pytest.mark.asyncio
    async def test_generate(self, llm_client, backend):
        """Test a single-turn call."""
        backend.queue("hello")

        assert await llm_client.generate("Say hello") == "hello"
        assert backend.calls[0] == [{"role": "user", "content": "Say hello"}]

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, llm_client, backend):
        """Test that a transport failure is retried."""
        backend.queue(GenerationTransportError("503"), "recovered")

        assert await llm_client.generate("prompt") == "recovered"
        assert len(backend.calls) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, llm_client, backend):
        """Test the error after every attempt hits a rate limit."""
        backend.queue(GenerationRateLimitError("429"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await llm_client.generate("prompt")

        assert len(backend.calls) == llm_client.config.max_retries
        assert isinstance(exc_info.value.last_error, GenerationRateLimitError)

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, llm_client, backend):
        """Test that non-transient errors fail fast."""
        backend.queue(GenerationError("invalid api key"))

        with pytest.raises(GenerationError, match="invalid api key"):
            await llm_client.generate("prompt")
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_per_attempt(self):
        """Test that slow calls time out and are retried."""
        backend = SlowBackend()
        client = LanguageModelClient(
            GenerationConfig(timeout_seconds=0.01, max_retries=2), backend=backend
        )

        with pytest.raises(RetryExhaustedError) as exc_info:
            await client.generate("prompt")

        assert backend.calls == 2
        assert isinstance(exc_info.value.last_error, GenerationTimeoutError)

    @pytest.mark.asyncio
    async def test_generate_with_history(self, llm_client, backend):
        """Test that prior turns precede the new prompt."""
        backend.queue("answer")
        turns = [
            ConversationTurn(role="user", content="Why do prices fall?"),
            ConversationTurn(role="assistant", content="Rates rose."),
        ]

        await llm_client.generate_with_history(turns, "And duration?")

        assert [m["role"] for m in backend.calls[0]] == ["user", "assistant", "user"]
        assert backend.calls[0][-1]["content"] == "And duration?"

    def test_model_name(self, llm_client):
        """Test that the backend model is reported."""
        assert llm_client.model == "scripted-model"

    def test_missing_api_key(self):
        """Test lazy initialization without credentials."""
        client = LanguageModelClient(GenerationConfig(provider="openai"))

        with pytest.raises(ValueError, match="API key"):
            client._ensure_initialized()

    def test_unknown_provider(self):
        """Test that unknown providers are rejected."""
        client = LanguageModelClient(GenerationConfig(provider="local"))

        with pytest.raises(ValueError, match="Unknown provider"):
            client._ensure_initialized()


# ====================
# Provider Backend Tests
# ====================

class TestProviderBackends:
    """Tests for SDK error mapping."""

    @pytest.mark.asyncio
    async def test_openai_timeout_mapped(self):
        """Test that SDK timeouts become retryable errors."""
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=openai.APITimeoutError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        ))
        backend = OpenAIBackend(api_key="test", client=client)

        with pytest.raises(GenerationTimeoutError):
            await backend.complete([{"role": "user", "content": "hi"}], 0.7, 100)

    @pytest.mark.asyncio
    async def test_openai_response_text(self):
        """Test extraction of the message content."""
        message = MagicMock(content="hello")
        client = MagicMock()
        client.chat.completions.create = AsyncMock(
            return_value=MagicMock(choices=[MagicMock(message=message)])
        )
        backend = OpenAIBackend(api_key="test", client=client)

        assert await backend.complete([{"role": "user", "content": "hi"}], 0.7, 100) == "hello"

    @pytest.mark.asyncio
    async def test_anthropic_text_blocks_joined(self):
        """Test that only text blocks are returned."""
        blocks = [
            MagicMock(type="text", text="Bond "),
            MagicMock(type="tool_use", text="ignored"),
            MagicMock(type="text", text="prices fall."),
        ]
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=MagicMock(content=blocks))
        backend = AnthropicBackend(api_key="test", client=client)

        result = await backend.complete([{"role": "user", "content": "hi"}], 0.7, 100)

        assert result == "Bond prices fall."
