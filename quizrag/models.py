"""Domain models for documents, retrieval results, questions and sessions."""

import random
import string
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np


OPTION_LABELS = ("A", "B", "C", "D")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class DocumentCategory(str, Enum):
    """Closed set of source material categories."""
    TEXTBOOK = "textbook"
    QUESTION_POOL = "qa_pair"
    REGULATION = "regulation"


class Difficulty(str, Enum):
    """Question difficulty tiers."""
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class SessionStage(str, Enum):
    """Lifecycle stages of a quiz session."""
    INPUT = "input"
    QUESTIONS = "questions"
    ANSWERS = "answers"
    EXPLANATIONS = "explanations"
    FOLLOWUP = "followup"


@dataclass
class Document:
    """A retrievable chunk of source material.

    Documents are treated as immutable once stored; an update is a delete
    followed by a reinsert.
    """
    id: str
    title: str
    content: str
    category: DocumentCategory
    source: str
    chapter: Optional[str] = None
    section: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    embedding: Optional[np.ndarray] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utcnow)

    def reference(self) -> str:
        """Short citation used in source reference lists."""
        return f"{self.title or 'Untitled'} ({self.source or 'Unknown Source'})"


@dataclass
class RetrievedContext:
    """Result of a retrieval call.

    Scores are only comparable within a single call.
    """
    documents: List[Document]
    relevance_scores: List[float]
    total_results: int
    query: str
    retrieved_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if len(self.documents) != len(self.relevance_scores):
            raise ValueError(
                f"documents ({len(self.documents)}) and relevance_scores "
                f"({len(self.relevance_scores)}) must have the same length"
            )

    @property
    def is_empty(self) -> bool:
        return not self.documents

    @classmethod
    def empty(cls, query: str) -> "RetrievedContext":
        return cls(documents=[], relevance_scores=[], total_results=0, query=query)


@dataclass
class Question:
    """A generated multiple-choice question."""
    id: str
    topic: str
    question_text: str
    options: Dict[str, str]
    correct_answer: str
    explanation: str = ""
    source_references: List[str] = field(default_factory=list)
    difficulty: Difficulty = Difficulty.INTERMEDIATE
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if set(self.options) != set(OPTION_LABELS):
            raise ValueError(f"Question must have exactly options {', '.join(OPTION_LABELS)}")
        texts = [self.options[label].strip() for label in OPTION_LABELS]
        if any(not text for text in texts):
            raise ValueError("Question options must be non-empty")
        if len({text.lower() for text in texts}) != len(texts):
            raise ValueError("Question options must be distinct")
        if self.correct_answer not in OPTION_LABELS:
            raise ValueError("Correct answer must be A, B, C, or D")
        self.difficulty = Difficulty(self.difficulty)

    @staticmethod
    def new_id() -> str:
        return f"q_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    @property
    def correct_text(self) -> str:
        return self.options[self.correct_answer]

    def incorrect_options(self) -> Dict[str, str]:
        return {
            label: text
            for label, text in self.options.items()
            if label != self.correct_answer
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "question_text": self.question_text,
            "options": dict(self.options),
            "correct_answer": self.correct_answer,
            "explanation": self.explanation,
            "source_references": list(self.source_references),
            "difficulty": self.difficulty.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Question":
        return cls(
            id=data["id"],
            topic=data["topic"],
            question_text=data["question_text"],
            options=dict(data["options"]),
            correct_answer=data["correct_answer"],
            explanation=data.get("explanation", ""),
            source_references=list(data.get("source_references", [])),
            difficulty=Difficulty(data.get("difficulty", Difficulty.INTERMEDIATE.value)),
            created_at=_parse_datetime(data["created_at"]) if "created_at" in data else utcnow(),
        )


@dataclass
class FollowupExchange:
    """One follow-up question and its answer."""
    question: str
    answer: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "answer": self.answer,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FollowupExchange":
        return cls(
            question=data["question"],
            answer=data["answer"],
            timestamp=_parse_datetime(data["timestamp"]),
        )


@dataclass
class Session:
    """A quiz session and its lifecycle stage."""
    id: str
    topic: str
    question_count: int
    expires_at: datetime
    user_id: Optional[str] = None
    questions: List[Question] = field(default_factory=list)
    current_stage: SessionStage = SessionStage.INPUT
    user_answers: Dict[str, str] = field(default_factory=dict)
    followup_history: List[FollowupExchange] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def new_id() -> str:
        """Generate an id of the form ``session_<epoch-ms>_<random>``."""
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
        return f"session_{int(time.time() * 1000)}_{suffix}"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "topic": self.topic,
            "question_count": self.question_count,
            "questions": [q.to_dict() for q in self.questions],
            "current_stage": self.current_stage.value,
            "user_answers": dict(self.user_answers),
            "followup_history": [f.to_dict() for f in self.followup_history],
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user_id=data.get("user_id"),
            topic=data["topic"],
            question_count=data["question_count"],
            questions=[Question.from_dict(q) for q in data.get("questions", [])],
            current_stage=SessionStage(data.get("current_stage", SessionStage.INPUT.value)),
            user_answers=dict(data.get("user_answers", {})),
            followup_history=[
                FollowupExchange.from_dict(f) for f in data.get("followup_history", [])
            ],
            created_at=_parse_datetime(data["created_at"]),
            expires_at=_parse_datetime(data["expires_at"]),
        )
