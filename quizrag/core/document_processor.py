"""Document chunking and structural metadata extraction.

Raw study material is split into overlapping, sentence-aligned chunks. Each
chunk becomes a Document tagged with chapter/section information, domain
vocabulary terms and a complexity level.
"""

import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from quizrag.config import ChunkingConfig, get_settings
from quizrag.core.embedder import EmbeddingClient, get_embedder
from quizrag.core.vector_index import QdrantVectorIndex, get_vector_index
from quizrag.errors import QuizRagError
from quizrag.models import Document, DocumentCategory, utcnow

logger = logging.getLogger(__name__)


SECURITIES_TERMS = [
    "securities", "bonds", "stocks", "equity", "debt", "derivatives",
    "options", "futures", "mutual funds", "etf", "portfolio",
    "investment", "trading", "market", "exchange", "sec", "finra",
    "regulation", "compliance", "risk", "valuation", "analysis",
]

ADVANCED_INDICATORS = ["advanced", "complex", "sophisticated", "intricate"]
BASIC_INDICATORS = ["basic", "fundamental", "introduction", "overview"]

_SENTENCE_PATTERN = re.compile(r"[^.!?]+[.!?]*")
_CHAPTER_PATTERN = re.compile(r"Chapter\s+(\d+|[IVX]+)[\s:]", re.IGNORECASE)
_SECTION_PATTERN = re.compile(r"Section\s+(\d+(?:\.\d+)*)", re.IGNORECASE)


@dataclass
class RawDocument:
    """Unprocessed source text."""
    title: str
    content: str
    source: str
    category: DocumentCategory
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessingError:
    """A per-document failure collected during batch processing."""
    source: str
    error: str
    severity: str  # warning, error


@dataclass
class ProcessingStats:
    """Counters for one processing run."""
    total_documents: int = 0
    successful_documents: int = 0
    failed_documents: int = 0
    total_chunks: int = 0
    processing_time_ms: float = 0.0


@dataclass
class ProcessingResult:
    """Documents produced by a processing run plus collected errors."""
    documents: List[Document]
    errors: List[ProcessingError]
    stats: ProcessingStats


@dataclass
class _Chunk:
    content: str
    title: str
    index: int


class DocumentProcessor:
    """Turns raw documents into validated, optionally embedded chunks."""

    def __init__(
        self,
        config: Optional[ChunkingConfig] = None,
        embedder: Optional[EmbeddingClient] = None,
        vector_index: Optional[QdrantVectorIndex] = None,
    ):
        """Initialize the processor.

        Args:
            config: Chunking configuration
            embedder: Embedding client used by process_and_store
            vector_index: Vector index used by process_and_store
        """
        self.config = config or get_settings().chunking
        self.embedder = embedder or get_embedder()
        self.vector_index = vector_index or get_vector_index()

    def process_document(self, raw: RawDocument) -> List[Document]:
        """Chunk one raw document into Documents (not yet embedded).

        Args:
            raw: Source text and its descriptive fields

        Returns:
            Documents in chunk order
        """
        category = DocumentCategory(raw.category)
        chunks = self._chunk(raw, category)
        documents = []

        for chunk in chunks:
            metadata = dict(raw.metadata)
            metadata.update({
                "chunk_index": chunk.index,
                "total_chunks": len(chunks),
                "original_length": len(raw.content),
                "chunk_length": len(chunk.content),
            })
            documents.append(Document(
                id=self._document_id(raw.source, chunk.index),
                title=chunk.title,
                content=chunk.content,
                category=category,
                source=raw.source,
                chapter=self._extract_chapter(chunk.content, raw.metadata),
                section=self._extract_section(chunk.content, raw.metadata),
                tags=self._extract_tags(chunk.content, category),
                metadata=metadata,
                last_updated=utcnow(),
            ))

        return documents

    def process_documents(self, raws: List[RawDocument]) -> ProcessingResult:
        """Chunk and validate a batch of raw documents.

        A raw document that raises or yields no valid chunks is counted as
        failed; it never aborts the rest of the batch.
        """
        start_time = time.time()
        documents: List[Document] = []
        errors: List[ProcessingError] = []
        stats = ProcessingStats(total_documents=len(raws))

        for raw in raws:
            try:
                chunks = self.process_document(raw)
            except (QuizRagError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Failed to process document from {raw.source}: {e}")
                errors.append(ProcessingError(source=raw.source, error=str(e), severity="error"))
                stats.failed_documents += 1
                continue

            valid = []
            for document in chunks:
                problems = self.validate_document(document)
                if problems:
                    logger.warning(f"Rejected chunk {document.id}: {', '.join(problems)}")
                    errors.append(ProcessingError(
                        source=raw.source,
                        error=f"Validation failed: {', '.join(problems)}",
                        severity="warning",
                    ))
                else:
                    valid.append(document)

            if valid:
                documents.extend(valid)
                stats.successful_documents += 1
            else:
                stats.failed_documents += 1

        stats.total_chunks = len(documents)
        stats.processing_time_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Processed {stats.total_documents} documents into {stats.total_chunks} chunks "
            f"({stats.failed_documents} failed)"
        )
        return ProcessingResult(documents=documents, errors=errors, stats=stats)

    async def process_and_store(self, raws: List[RawDocument]) -> ProcessingResult:
        """Chunk, embed and index a batch of raw documents.

        If embedding or storage fails, the error is recorded under the source
        ``embedding_generation`` and no documents are reported as stored.
        """
        result = self.process_documents(raws)
        if not result.documents:
            return result

        try:
            for i in range(0, len(result.documents), self.config.batch_size):
                batch = result.documents[i:i + self.config.batch_size]
                vectors = await self.embedder.embed_batch([d.content for d in batch])
                for document, vector in zip(batch, vectors):
                    document.embedding = vector
                await self.vector_index.upsert_documents(batch)
        except QuizRagError as e:
            logger.error(f"Embedding or storage failed: {e}")
            result.documents = []
            result.errors.append(ProcessingError(
                source="embedding_generation",
                error=str(e),
                severity="error",
            ))

        return result

    def validate_document(self, document: Document) -> List[str]:
        """Return the list of problems with a processed document (empty if valid)."""
        problems = []
        if not document.id:
            problems.append("Missing document ID")
        if not document.title:
            problems.append("Missing document title")
        if not document.content:
            problems.append("Missing document content")
        if not document.source:
            problems.append("Missing document source")
        if not document.category:
            problems.append("Missing document category")

        length = len(document.content)
        if length < self.config.min_chunk_size:
            problems.append(f"Content too short: {length} < {self.config.min_chunk_size}")
        if length > self.config.max_chunk_size:
            problems.append(f"Content too long: {length} > {self.config.max_chunk_size}")

        if not document.tags:
            problems.append("Missing or invalid tags")
        return problems

    # ==================== Chunking ====================

    def _chunk(self, raw: RawDocument, category: DocumentCategory) -> List[_Chunk]:
        if category == DocumentCategory.QUESTION_POOL or len(raw.content) <= self.config.chunk_size:
            return [_Chunk(content=raw.content, title=raw.title, index=0)]

        sentences = split_sentences(raw.content)
        pieces: List[str] = []
        current = ""
        # Sentences in ``current`` that no emitted piece holds yet
        fresh: List[str] = []

        for i, sentence in enumerate(sentences):
            candidate = f"{current} {sentence}" if current else sentence
            # An undersized piece keeps growing past chunk_size instead of being dropped
            if len(candidate) <= self.config.chunk_size or len(current) < self.config.min_chunk_size:
                current = candidate
                fresh.append(sentence)
                continue

            pieces.append(current)
            overlap = self._overlap(sentences, i)
            current = f"{overlap} {sentence}" if overlap else sentence
            fresh = [sentence]

        if not pieces or len(current) >= self.config.min_chunk_size:
            pieces.append(current)
        else:
            # Undersized tail joins the previous piece
            pieces[-1] = f"{pieces[-1]} {' '.join(fresh)}"

        return [self._make_chunk(raw.title, piece, index) for index, piece in enumerate(pieces)]

    @staticmethod
    def _make_chunk(title: str, content: str, index: int) -> _Chunk:
        return _Chunk(content=content.strip(), title=f"{title} (Part {index + 1})", index=index)

    def _overlap(self, sentences: List[str], current_index: int) -> str:
        """Trailing sentences before ``current_index`` that fit in the overlap length."""
        selected: List[str] = []
        length = 0
        for sentence in reversed(sentences[:current_index]):
            if length + len(sentence) > self.config.chunk_overlap:
                break
            selected.insert(0, sentence)
            length += len(sentence)
        return " ".join(selected)

    # ==================== Metadata ====================

    @staticmethod
    def _document_id(source: str, chunk_index: int) -> str:
        digest = hashlib.sha1(source.encode()).hexdigest()[:10]
        return f"doc_{digest}_{chunk_index}"

    @staticmethod
    def _extract_chapter(content: str, metadata: Dict[str, Any]) -> Optional[str]:
        if metadata.get("chapter"):
            return str(metadata["chapter"])
        match = _CHAPTER_PATTERN.search(content)
        return match.group(1) if match else None

    @staticmethod
    def _extract_section(content: str, metadata: Dict[str, Any]) -> Optional[str]:
        if metadata.get("section"):
            return str(metadata["section"])
        match = _SECTION_PATTERN.search(content)
        return match.group(1) if match else None

    @staticmethod
    def _extract_tags(content: str, category: DocumentCategory) -> List[str]:
        lowered = content.lower()
        tags = [category.value]
        tags.extend(term for term in SECURITIES_TERMS if term in lowered)

        if any(word in lowered for word in ADVANCED_INDICATORS):
            tags.append("advanced")
        elif any(word in lowered for word in BASIC_INDICATORS):
            tags.append("basic")
        else:
            tags.append("intermediate")

        # Order-preserving dedup
        return list(dict.fromkeys(tags))


def split_sentences(text: str) -> List[str]:
    """Split text on runs of ``.``, ``!`` and ``?``, keeping the terminators."""
    return [s.strip() for s in _SENTENCE_PATTERN.findall(text) if s.strip()]

