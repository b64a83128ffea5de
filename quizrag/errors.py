"""Exception hierarchy for the quiz RAG system.

Errors fall into three families:
- validation errors (bad topic, malformed model output, bad transition data)
- transient service errors (timeouts, rate limits, transport failures)
- state errors (invalid lifecycle transition, missing or expired session)
"""

from typing import List, Optional, Sequence


class QuizRagError(Exception):
    """Base class for all errors raised by this package."""


# ==================== Validation ====================

class ValidationError(QuizRagError):
    """Input or output failed a structural check."""


class TopicValidationError(ValidationError):
    """A topic was rejected as out of domain."""

    def __init__(self, topic: str, message: str, suggestions: Optional[List[str]] = None):
        super().__init__(f"Invalid topic '{topic}': {message}")
        self.topic = topic
        self.suggestions = suggestions or []


class ResponseValidationError(ValidationError):
    """A model response could not be parsed or failed validation."""

    def __init__(self, message: str, errors: Optional[Sequence[str]] = None):
        self.errors = list(errors or [])
        detail = f": {'; '.join(self.errors)}" if self.errors else ""
        super().__init__(f"{message}{detail}")


class PromptRenderError(ValidationError):
    """A prompt template could not be rendered with the given context."""


class TransitionDataError(ValidationError):
    """The payload supplied for a lifecycle action is missing or invalid."""


# ==================== Service ====================

class ServiceError(QuizRagError):
    """An external service call failed."""

    retryable: bool = False


class EmbeddingError(ServiceError):
    """Embedding service failure."""


class EmbeddingRateLimitError(EmbeddingError):
    """Embedding quota or rate limit exceeded."""

    retryable = True


class EmbeddingTransportError(EmbeddingError):
    """Embedding service unreachable or returned a transport-level failure."""

    retryable = True


class VectorIndexError(ServiceError):
    """Vector store failure other than a missing collection."""


class GenerationError(ServiceError):
    """Generative model failure."""


class GenerationTimeoutError(GenerationError):
    """A generative call exceeded the caller-imposed timeout."""

    retryable = True


class GenerationRateLimitError(GenerationError):
    """Generative service rate limit exceeded."""

    retryable = True


class GenerationTransportError(GenerationError):
    """Generative service unreachable or returned a server error."""

    retryable = True


class RetryExhaustedError(GenerationError):
    """All attempts of a bounded retry loop failed."""

    def __init__(self, stage: str, attempts: int, last_error: Optional[BaseException]):
        reason = str(last_error) if last_error else "unknown error"
        super().__init__(f"{stage} failed after {attempts} attempt(s): {reason}")
        self.stage = stage
        self.attempts = attempts
        self.last_error = last_error


# ==================== State ====================

class StateError(QuizRagError):
    """A session lifecycle rule was violated."""


class SessionNotFoundError(StateError):
    """The session does not exist or has expired."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found or expired: {session_id}")
        self.session_id = session_id


class SessionExpiredError(StateError):
    """A write was attempted on an expired session."""

    def __init__(self, session_id: str):
        super().__init__(f"Cannot update expired session: {session_id}")
        self.session_id = session_id


class InvalidTransitionError(StateError):
    """An action is not valid for the session's current stage."""

    def __init__(self, action: str, stage: str, allowed_actions: Sequence[str]):
        self.action = action
        self.stage = stage
        self.allowed_actions = list(allowed_actions)
        allowed = ", ".join(self.allowed_actions) or "none"
        super().__init__(
            f"Action '{action}' not allowed in step '{stage}' "
            f"(allowed actions: {allowed})"
        )


def is_transient(error: BaseException) -> bool:
    """Return True for service failures worth retrying with the same inputs."""
    return isinstance(error, ServiceError) and error.retryable


def is_regenerable(error: BaseException) -> bool:
    """Return True for malformed model output that a fresh call may fix."""
    return isinstance(error, ResponseValidationError)
