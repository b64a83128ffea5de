"""Service layer.

This module provides high-level services for:
- Source material ingestion
- The quiz application facade
"""

from quizrag.services.ingestion_service import (
    IngestionResult,
    IngestionService,
    get_ingestion_service,
)
from quizrag.services.quiz_service import QuizService, get_quiz_service

__all__ = [
    # Ingestion
    "IngestionResult",
    "IngestionService",
    "get_ingestion_service",
    # Facade
    "QuizService",
    "get_quiz_service",
]
