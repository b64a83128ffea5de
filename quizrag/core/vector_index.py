"""Vector index backed by Qdrant.

Documents are stored as points whose id is a UUID5 derived from the document
id; the document id itself, the chunk content and the document fields live in
the point payload.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

try:
    from qdrant_client import AsyncQdrantClient
    from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
    from qdrant_client.models import (
        Distance,
        FieldCondition,
        Filter,
        MatchAny,
        PointIdsList,
        PointStruct,
        VectorParams,
    )
    HAS_QDRANT = True
except ImportError:
    HAS_QDRANT = False

from quizrag.config import QdrantConfig, get_settings
from quizrag.errors import VectorIndexError
from quizrag.models import Document, DocumentCategory, utcnow

logger = logging.getLogger(__name__)

_POINT_NAMESPACE = uuid.UUID("6f1c2f0e-5a3b-4c1d-9e8f-7a6b5c4d3e2f")


def point_id(document_id: str) -> str:
    """Stable Qdrant point id for a document id."""
    return str(uuid.uuid5(_POINT_NAMESPACE, document_id))


@dataclass
class VectorHit:
    """A single similarity search hit.

    ``distance`` is ``1 - cosine similarity`` so smaller is closer.
    """
    id: str
    content: str
    metadata: Dict[str, Any]
    distance: float
    vector: Optional[np.ndarray] = None


def document_to_payload(document: Document) -> Dict[str, Any]:
    """Serialize the document fields stored alongside its vector."""
    return {
        "document_id": document.id,
        "content": document.content,
        "title": document.title,
        "category": DocumentCategory(document.category).value,
        "source": document.source,
        "chapter": document.chapter,
        "section": document.section,
        "tags": list(document.tags),
        "metadata": dict(document.metadata),
        "last_updated": document.last_updated.isoformat(),
    }


def hit_to_document(hit: VectorHit) -> Document:
    """Rebuild a Document from a search hit."""
    meta = hit.metadata
    last_updated = meta.get("last_updated")
    return Document(
        id=hit.id,
        title=meta.get("title", ""),
        content=hit.content,
        category=DocumentCategory(meta.get("category", DocumentCategory.TEXTBOOK.value)),
        source=meta.get("source", ""),
        chapter=meta.get("chapter"),
        section=meta.get("section"),
        tags=list(meta.get("tags", [])),
        embedding=hit.vector,
        metadata=dict(meta.get("metadata", {})),
        last_updated=datetime.fromisoformat(last_updated) if last_updated else utcnow(),
    )


class QdrantVectorIndex:
    """Nearest-neighbour lookup over document embeddings.

    A collection that does not exist yet is treated as empty: queries return
    no hits and ``count`` returns 0. The collection is created on first upsert.
    """

    def __init__(
        self,
        config: Optional[QdrantConfig] = None,
        client: Optional["AsyncQdrantClient"] = None,
    ):
        """Initialize the index.

        Args:
            config: Qdrant connection configuration
            client: Pre-initialized async Qdrant client (for testing)
        """
        self.config = config or get_settings().qdrant
        self._client = client
        self._initialized = client is not None
        self._collection_ready = False

    def _ensure_initialized(self):
        """Lazy initialization of Qdrant client."""
        if not self._initialized:
            if not HAS_QDRANT:
                raise ImportError(
                    "qdrant-client is required. "
                    "Install with: pip install qdrant-client"
                )
            logger.info(f"Connecting to Qdrant: {self.config.url}")
            self._client = AsyncQdrantClient(url=self.config.url)
            self._initialized = True

    @property
    def collection_name(self) -> str:
        return self.config.collection_name

    async def _collection_exists(self) -> bool:
        if self._collection_ready:
            return True
        self._ensure_initialized()
        try:
            exists = await self._client.collection_exists(self.collection_name)
        except (UnexpectedResponse, ResponseHandlingException) as e:
            raise VectorIndexError(f"Failed to reach vector store: {e}") from e
        self._collection_ready = exists
        return exists

    async def _ensure_collection(self):
        """Ensure the collection exists."""
        if await self._collection_exists():
            return
        logger.info(f"Creating collection: {self.collection_name}")
        try:
            await self._client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(
                    size=self.config.vector_size,
                    distance=Distance.COSINE,
                ),
            )
        except (UnexpectedResponse, ResponseHandlingException) as e:
            raise VectorIndexError(f"Failed to create collection: {e}") from e
        self._collection_ready = True

    def _check_vector(self, vector: Sequence[float]) -> List[float]:
        values = [float(v) for v in vector]
        if len(values) != self.config.vector_size:
            raise ValueError(
                f"Vector has {len(values)} dimensions, index expects {self.config.vector_size}"
            )
        return values

    @staticmethod
    def _is_missing_collection(error: UnexpectedResponse) -> bool:
        return error.status_code == 404

    async def upsert(
        self,
        id: str,
        vector: Sequence[float],
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Insert or replace a single point."""
        payload = dict(metadata or {})
        payload["document_id"] = id
        payload["content"] = content
        await self._upsert_points([
            PointStruct(id=point_id(id), vector=self._check_vector(vector), payload=payload)
        ])

    async def upsert_documents(self, documents: List[Document]) -> int:
        """Insert or replace embedded documents.

        Args:
            documents: Documents with their ``embedding`` set

        Returns:
            Number of points written
        """
        points = []
        for document in documents:
            if document.embedding is None:
                raise ValueError(f"Document {document.id} has no embedding")
            points.append(PointStruct(
                id=point_id(document.id),
                vector=self._check_vector(document.embedding),
                payload=document_to_payload(document),
            ))
        if points:
            await self._upsert_points(points)
        return len(points)

    async def _upsert_points(self, points: List["PointStruct"]) -> None:
        await self._ensure_collection()
        try:
            await self._client.upsert(collection_name=self.collection_name, points=points)
        except (UnexpectedResponse, ResponseHandlingException) as e:
            raise VectorIndexError(f"Failed to upsert {len(points)} points: {e}") from e
        logger.debug(f"Upserted {len(points)} points into {self.collection_name}")

    async def query(
        self,
        vector: Sequence[float],
        k: int,
        categories: Optional[Sequence[DocumentCategory]] = None,
    ) -> List[VectorHit]:
        """Return up to ``k`` nearest points, closest first.

        Args:
            vector: Query embedding
            k: Maximum number of hits
            categories: Restrict hits to these document categories

        Returns:
            Hits ordered by non-decreasing distance
        """
        if k <= 0 or not await self._collection_exists():
            return []

        query_filter = None
        if categories:
            query_filter = Filter(must=[
                FieldCondition(
                    key="category",
                    match=MatchAny(any=[DocumentCategory(c).value for c in categories]),
                )
            ])

        try:
            response = await self._client.query_points(
                collection_name=self.collection_name,
                query=self._check_vector(vector),
                limit=k,
                query_filter=query_filter,
                with_payload=True,
            )
        except UnexpectedResponse as e:
            if self._is_missing_collection(e):
                self._collection_ready = False
                return []
            raise VectorIndexError(f"Vector search failed: {e}") from e
        except ResponseHandlingException as e:
            raise VectorIndexError(f"Vector search failed: {e}") from e

        return [self._to_hit(point.payload or {}, 1.0 - float(point.score)) for point in response.points]

    async def get_by_ids(self, ids: Sequence[str], with_vectors: bool = False) -> List[VectorHit]:
        """Fetch stored points by document id (distance 0)."""
        if not ids or not await self._collection_exists():
            return []
        try:
            records = await self._client.retrieve(
                collection_name=self.collection_name,
                ids=[point_id(i) for i in ids],
                with_payload=True,
                with_vectors=with_vectors,
            )
        except (UnexpectedResponse, ResponseHandlingException) as e:
            raise VectorIndexError(f"Failed to fetch points: {e}") from e

        hits = []
        for record in records:
            vector = None
            if with_vectors and record.vector is not None:
                vector = np.asarray(record.vector, dtype=np.float32)
            hits.append(self._to_hit(record.payload or {}, 0.0, vector))
        return hits

    async def delete(self, ids: Sequence[str]) -> None:
        """Delete points by document id."""
        if not ids or not await self._collection_exists():
            return
        try:
            await self._client.delete(
                collection_name=self.collection_name,
                points_selector=PointIdsList(points=[point_id(i) for i in ids]),
            )
        except (UnexpectedResponse, ResponseHandlingException) as e:
            raise VectorIndexError(f"Failed to delete points: {e}") from e

    async def count(self) -> int:
        """Number of stored points."""
        if not await self._collection_exists():
            return 0
        try:
            result = await self._client.count(collection_name=self.collection_name, exact=True)
        except (UnexpectedResponse, ResponseHandlingException) as e:
            raise VectorIndexError(f"Failed to count points: {e}") from e
        return result.count

    @staticmethod
    def _to_hit(
        payload: Dict[str, Any],
        distance: float,
        vector: Optional[np.ndarray] = None,
    ) -> VectorHit:
        metadata = {k: v for k, v in payload.items() if k not in ("document_id", "content")}
        return VectorHit(
            id=payload.get("document_id", ""),
            content=payload.get("content", ""),
            metadata=metadata,
            distance=distance,
            vector=vector,
        )


# Singleton instance
_vector_index: Optional[QdrantVectorIndex] = None


def get_vector_index() -> QdrantVectorIndex:
    """Get the global vector index instance."""
    global _vector_index
    if _vector_index is None:
        _vector_index = QdrantVectorIndex()
    return _vector_index
