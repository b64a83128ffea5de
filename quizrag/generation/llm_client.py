"""Language model client.

This module sends rendered prompts to a generative model and returns the raw
response text. Provider SDK errors are mapped onto the package error types so
that timeouts, rate limits and transport failures are retried while auth and
request errors fail fast.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from quizrag.config import GenerationConfig, get_settings
from quizrag.core.retry import run_with_retries
from quizrag.errors import (
    GenerationError,
    GenerationRateLimitError,
    GenerationTimeoutError,
    GenerationTransportError,
    is_transient,
)

logger = logging.getLogger(__name__)


@dataclass
class ConversationTurn:
    """One prior message in a multi-turn exchange."""
    role: str  # user, assistant
    content: str


class LLMBackend(ABC):
    """Abstract base class for LLM providers."""

    model: str

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        max_output_tokens: int,
    ) -> str:
        """Generate a response for a chat transcript."""
        pass


class OpenAIBackend(LLMBackend):
    """OpenAI API client."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", client=None):
        """Initialize OpenAI client."""
        try:
            import openai
        except ImportError:
            raise ImportError("openai package required. Install with: pip install openai")
        self._openai = openai
        # Retries are handled by LanguageModelClient
        self.client = client or openai.AsyncOpenAI(api_key=api_key, max_retries=0)
        self.model = model

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        max_output_tokens: int,
    ) -> str:
        """Generate using OpenAI."""
        openai = self._openai
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_output_tokens,
                temperature=temperature,
            )
        except openai.APITimeoutError as e:
            raise GenerationTimeoutError(f"OpenAI request timed out: {e}") from e
        except openai.RateLimitError as e:
            raise GenerationRateLimitError(f"OpenAI rate limit exceeded: {e}") from e
        except (openai.APIConnectionError, openai.InternalServerError) as e:
            raise GenerationTransportError(f"OpenAI service unavailable: {e}") from e
        except openai.APIError as e:
            raise GenerationError(f"OpenAI request failed: {e}") from e
        return response.choices[0].message.content or ""


class AnthropicBackend(LLMBackend):
    """Anthropic API client."""

    def __init__(self, api_key: str, model: str = "claude-3-5-haiku-latest", client=None):
        """Initialize Anthropic client."""
        try:
            import anthropic
        except ImportError:
            raise ImportError("anthropic package required. Install with: pip install anthropic")
        self._anthropic = anthropic
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)
        self.model = model

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        max_output_tokens: int,
    ) -> str:
        """Generate using Anthropic."""
        anthropic = self._anthropic
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=max_output_tokens,
                temperature=temperature,
                messages=messages,
            )
        except anthropic.APITimeoutError as e:
            raise GenerationTimeoutError(f"Anthropic request timed out: {e}") from e
        except anthropic.RateLimitError as e:
            raise GenerationRateLimitError(f"Anthropic rate limit exceeded: {e}") from e
        except (anthropic.APIConnectionError, anthropic.InternalServerError) as e:
            raise GenerationTransportError(f"Anthropic service unavailable: {e}") from e
        except anthropic.APIError as e:
            raise GenerationError(f"Anthropic request failed: {e}") from e
        return "".join(block.text for block in response.content if block.type == "text")


class LanguageModelClient:
    """Sends prompts to the configured generative model.

    Every attempt runs under a caller-side timeout. Transient failures are
    retried up to ``max_retries`` attempts with no delay; after that a
    ``RetryExhaustedError`` carrying the last failure is raised.
    """

    def __init__(
        self,
        config: Optional[GenerationConfig] = None,
        backend: Optional[LLMBackend] = None,
    ):
        """Initialize the client.

        Args:
            config: Generation configuration
            backend: Pre-configured provider backend
        """
        self.config = config or get_settings().generation
        self._backend = backend
        self._initialized = backend is not None

    def _ensure_initialized(self):
        """Lazy initialization of the provider backend."""
        if not self._initialized:
            if self.config.provider == "openai":
                if not self.config.openai_api_key:
                    raise ValueError("OpenAI API key not configured")
                self._backend = OpenAIBackend(
                    api_key=self.config.openai_api_key,
                    model=self.config.model,
                )
            elif self.config.provider == "anthropic":
                if not self.config.anthropic_api_key:
                    raise ValueError("Anthropic API key not configured")
                self._backend = AnthropicBackend(
                    api_key=self.config.anthropic_api_key,
                    model=self.config.model,
                )
            else:
                raise ValueError(f"Unknown provider: {self.config.provider}")

            self._initialized = True
            logger.info(f"Initialized LLM client: {self.config.provider}/{self.config.model}")

    @property
    def model(self) -> str:
        self._ensure_initialized()
        return self._backend.model

    async def generate(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Single-turn generation.

        Args:
            prompt: Rendered prompt
            temperature: Sampling temperature
            max_output_tokens: Output token cap
            timeout: Per-attempt timeout in seconds

        Returns:
            Raw response text
        """
        messages = [{"role": "user", "content": prompt}]
        return await self._complete(messages, temperature, max_output_tokens, timeout)

    async def generate_with_history(
        self,
        turns: Sequence[ConversationTurn],
        prompt: str,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Generation that sees the prior turns of a conversation."""
        messages = [{"role": turn.role, "content": turn.content} for turn in turns]
        messages.append({"role": "user", "content": prompt})
        return await self._complete(messages, temperature, max_output_tokens, timeout)

    async def _complete(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float],
        max_output_tokens: Optional[int],
        timeout: Optional[float],
    ) -> str:
        self._ensure_initialized()
        temperature = self.config.temperature if temperature is None else temperature
        max_output_tokens = max_output_tokens or self.config.max_output_tokens
        timeout = timeout or self.config.timeout_seconds

        async def attempt(number: int) -> str:
            try:
                return await asyncio.wait_for(
                    self._backend.complete(messages, temperature, max_output_tokens),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as e:
                raise GenerationTimeoutError(
                    f"Generation timed out after {timeout}s (attempt {number})"
                ) from e

        return await run_with_retries(
            attempt,
            max_attempts=self.config.max_retries,
            is_retryable=is_transient,
            stage="generation",
        )


# Singleton instance
_llm_client: Optional[LanguageModelClient] = None


def get_llm_client() -> LanguageModelClient:
    """Get the global language model client instance."""
    global _llm_client
    if _llm_client is None:
        _llm_client = LanguageModelClient()
    return _llm_client
