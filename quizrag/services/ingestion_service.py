"""Source material ingestion.

Reads study material files into raw documents and hands them to the
document processor for chunking, embedding and indexing. Text and markdown
files become one raw document each; JSON files hold one document object or
a list of them. A file that cannot be parsed is reported and skipped.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from quizrag.core.document_processor import (
    DocumentProcessor,
    ProcessingError,
    ProcessingResult,
    RawDocument,
)
from quizrag.models import DocumentCategory

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = (".txt", ".md", ".json")

MIN_RAW_CONTENT_LENGTH = 10


@dataclass
class IngestionResult:
    """Processing result plus per-file bookkeeping."""
    processing: ProcessingResult
    input_files: List[str] = field(default_factory=list)
    skipped_files: List[str] = field(default_factory=list)

    @property
    def errors(self) -> List[ProcessingError]:
        return self.processing.errors


_PATH_QUESTION_POOL = re.compile(r"(?<![a-z0-9])(qa|questions?|answers?)(?![a-z0-9])")
_PATH_REGULATION = re.compile(r"(?<![a-z0-9])(regulations?|rules?|sec)(?![a-z0-9])")
_CONTENT_QUESTION_POOL = re.compile(r"^\s*(q|a|question|answer)\s*:", re.MULTILINE)
_CONTENT_REGULATION = re.compile(r"\b(regulations?|sections?|rules?|shall)\b")


def infer_category(path: str, content: str) -> DocumentCategory:
    """Guess a document category from path hints, then content hints.

    Hints match whole path components or words, and question/answer
    markers only count at the start of a line.
    """
    lower_path = path.lower()
    lower_content = content.lower()

    if _PATH_QUESTION_POOL.search(lower_path):
        return DocumentCategory.QUESTION_POOL
    if _PATH_REGULATION.search(lower_path):
        return DocumentCategory.REGULATION

    if _CONTENT_QUESTION_POOL.search(lower_content):
        return DocumentCategory.QUESTION_POOL
    if _CONTENT_REGULATION.search(lower_content):
        return DocumentCategory.REGULATION

    return DocumentCategory.TEXTBOOK


def validate_raw_documents(documents: Sequence[RawDocument]) -> List[str]:
    """Problems that make raw documents unfit for processing."""
    errors = []
    for i, doc in enumerate(documents):
        if not doc.title:
            errors.append(f"Document {i}: Missing title")
        if not doc.content:
            errors.append(f"Document {i}: Missing content")
        elif len(doc.content) < MIN_RAW_CONTENT_LENGTH:
            errors.append(f"Document {i}: Content too short")
        if not doc.source:
            errors.append(f"Document {i}: Missing source")
    return errors


class IngestionService:
    """Loads files into the vector index."""

    def __init__(self, processor: Optional[DocumentProcessor] = None):
        self.processor = processor or DocumentProcessor()

    async def ingest_directory(self, directory: Union[str, Path]) -> IngestionResult:
        """Ingest every supported file under ``directory`` (recursively)."""
        root = Path(directory)
        if not root.is_dir():
            raise FileNotFoundError(f"Input directory does not exist: {root}")

        files = sorted(
            path for path in root.rglob("*")
            if path.is_file() and path.suffix.lower() in SUPPORTED_FORMATS
        )
        return await self.ingest_files(files)

    async def ingest_files(self, paths: Sequence[Union[str, Path]]) -> IngestionResult:
        """Parse and ingest specific files."""
        input_files = []
        skipped_files = []
        raw_documents: List[RawDocument] = []
        file_errors = []

        for path in map(Path, paths):
            documents, errors = self.parse_file(path)
            file_errors.extend(errors)
            if documents:
                raw_documents.extend(documents)
                input_files.append(str(path))
            else:
                skipped_files.append(str(path))

        processing = await self.processor.process_and_store(raw_documents)
        processing.errors.extend(
            ProcessingError(source="file_parsing", error=error, severity="error")
            for error in file_errors
        )

        logger.info(
            f"Ingested {len(input_files)} files ({len(skipped_files)} skipped): "
            f"{processing.stats.total_chunks} chunks, {len(processing.errors)} errors"
        )
        return IngestionResult(
            processing=processing,
            input_files=input_files,
            skipped_files=skipped_files,
        )

    async def ingest_documents(self, documents: Sequence[RawDocument]) -> ProcessingResult:
        """Ingest raw documents after checking required fields.

        Raises:
            ValueError: If any document is missing a title, content or source
        """
        errors = validate_raw_documents(documents)
        if errors:
            raise ValueError(f"Validation failed: {', '.join(errors)}")
        return await self.processor.process_and_store(list(documents))

    def parse_file(self, path: Path) -> Tuple[List[RawDocument], List[str]]:
        """Parse a file into raw documents and parse errors."""
        extension = path.suffix.lower()
        if extension not in SUPPORTED_FORMATS:
            return [], [f"Unsupported file format: {extension}"]

        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return [], [f"Failed to read file {path}: {e}"]

        if extension == ".json":
            return self._parse_json(content, path)
        return self._parse_text(content, path), []

    def _parse_text(self, content: str, path: Path) -> List[RawDocument]:
        return [
            RawDocument(
                title=path.stem,
                content=content.strip(),
                source=str(path),
                category=infer_category(str(path), content),
                metadata={
                    "file_size": len(content),
                    "file_extension": path.suffix,
                    "processed_at": datetime.now(timezone.utc).isoformat(),
                },
            )
        ]

    def _parse_json(self, content: str, path: Path) -> Tuple[List[RawDocument], List[str]]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            return [], [f"Failed to parse JSON file {path}: {e}"]

        items = data if isinstance(data, list) else [data]
        documents = []
        errors = []
        for index, item in enumerate(items):
            document = self._parse_json_document(item, path, index)
            if document is None:
                errors.append(f"Invalid document format at index {index} in {path}")
            else:
                documents.append(document)
        return documents, errors

    @staticmethod
    def _parse_json_document(item: Any, path: Path, index: int) -> Optional[RawDocument]:
        if not isinstance(item, dict) or not item.get("title") or not item.get("content"):
            return None

        raw_category = item.get("category") or item.get("type")
        try:
            category = DocumentCategory(raw_category) if raw_category else infer_category(str(path), item["content"])
        except ValueError:
            return None

        metadata: Dict[str, Any] = dict(item.get("metadata") or {})
        metadata.update({
            "original_index": index,
            "file_source": str(path),
            "processed_at": datetime.now(timezone.utc).isoformat(),
        })
        return RawDocument(
            title=item["title"],
            content=item["content"],
            source=f"{path}#{index}",
            category=category,
            metadata=metadata,
        )


# Singleton instance
_ingestion_service: Optional[IngestionService] = None


def get_ingestion_service() -> IngestionService:
    """Get the global ingestion service instance."""
    global _ingestion_service
    if _ingestion_service is None:
        _ingestion_service = IngestionService()
    return _ingestion_service
