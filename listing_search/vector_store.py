"""Vector store backends for listing embeddings.

Three implementations share ``VectorStoreInterface``:

* ``UpstashVectorStore`` talks to the Upstash Vector REST API with httpx.
* ``QdrantVectorStore`` uses the async Qdrant client.
* ``InMemoryVectorStore`` keeps vectors in process (development and tests).
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

import httpx
import numpy as np
from dateutil import parser as date_parser
from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from listing_search.circuit_breaker import CircuitBreaker
from listing_search.config import SearchSettings
from listing_search.errors import VectorClientError
from listing_search.models import VectorFilter, VectorMatch, VectorMetadata, VectorRecord
from listing_search.service_interfaces import VectorStoreInterface

# Configure logging
logger = logging.getLogger(__name__)

T = TypeVar("T")

UPSERT_BATCH_SIZE = 100


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, VectorClientError) and exc.retryable


def escape_filter_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def build_upstash_filter(vector_filter: Optional[VectorFilter]) -> Optional[str]:
    """Render a filter in Upstash metadata filter syntax.

    Dietary tags match if any tag is present; all other clauses are ANDed.
    """
    if vector_filter is None:
        return None

    conditions = []
    if vector_filter.category:
        conditions.append(f"category = '{escape_filter_value(vector_filter.category)}'")
    if vector_filter.dietary:
        tags = " OR ".join(
            f"dietary_tags CONTAINS '{escape_filter_value(tag)}'" for tag in vector_filter.dietary
        )
        conditions.append(f"({tags})")
    if vector_filter.is_active is not None:
        conditions.append(f"is_active = {'true' if vector_filter.is_active else 'false'}")
    if vector_filter.profile_id:
        conditions.append(f"profile_id = '{escape_filter_value(vector_filter.profile_id)}'")
    if vector_filter.posted_after is not None:
        conditions.append(f"posted_at > '{vector_filter.posted_after.isoformat()}'")

    return " AND ".join(conditions) if conditions else None


class UpstashVectorStore(VectorStoreInterface):
    """Upstash Vector index reached over its REST API."""

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 30.0,
        max_attempts: int = 3,
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not url or not token:
            raise VectorClientError(
                "UPSTASH_VECTOR_REST_URL and UPSTASH_VECTOR_REST_TOKEN must be configured",
                "CONFIG_ERROR",
            )
        self.base_url = url.rstrip("/")
        self.token = token
        self.max_attempts = max_attempts
        self.breaker = breaker or CircuitBreaker("upstash-vector")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _request(self, method: str, path: str, body: Any = None) -> Any:
        try:
            response = await self.client.request(
                method,
                f"{self.base_url}{path}",
                json=body,
                headers={"Authorization": f"Bearer {self.token}"},
            )
        except httpx.TimeoutException as exc:
            raise VectorClientError("Request timeout", "TIMEOUT", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise VectorClientError(f"Request failed: {exc}", "NETWORK_ERROR", retryable=True) from exc

        if response.status_code >= 400:
            raise VectorClientError(
                f"Upstash Vector API error: {response.status_code} - {response.text[:200]}",
                f"HTTP_{response.status_code}",
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        data = response.json()
        if isinstance(data, dict) and "result" in data:
            return data["result"]
        return data

    async def _safe_request(self, method: str, path: str, body: Any = None) -> Any:
        async def attempt_all():
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_retryable),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=0.25, max=2),
                reraise=True,
            ):
                with attempt:
                    result = await self._request(method, path, body)
            return result

        return await self.breaker.call(attempt_all)

    @staticmethod
    def _record_body(record: VectorRecord) -> Dict[str, Any]:
        return {
            "id": record.id,
            "vector": record.vector,
            "metadata": record.metadata.model_dump(exclude_none=True),
        }

    async def upsert(self, record: VectorRecord) -> int:
        await self._safe_request("POST", "/upsert", [self._record_body(record)])
        logger.debug(f"Vector upserted: {record.id}")
        return 1

    async def upsert_batch(self, records: Sequence[VectorRecord]) -> int:
        if not records:
            return 0
        start_time = time.perf_counter()
        for i in range(0, len(records), UPSERT_BATCH_SIZE):
            batch = records[i:i + UPSERT_BATCH_SIZE]
            await self._safe_request("POST", "/upsert", [self._record_body(r) for r in batch])
        logger.info(
            f"Batch upsert completed: {len(records)} vectors in "
            f"{round((time.perf_counter() - start_time) * 1000)}ms"
        )
        return len(records)

    async def query(
        self,
        vector: List[float],
        top_k: int = 10,
        vector_filter: Optional[VectorFilter] = None,
        include_metadata: bool = True,
    ) -> List[VectorMatch]:
        body: Dict[str, Any] = {
            "vector": vector,
            "topK": top_k,
            "includeMetadata": include_metadata,
            "includeVectors": False,
        }
        filter_expr = build_upstash_filter(vector_filter)
        if filter_expr:
            body["filter"] = filter_expr

        results = await self._safe_request("POST", "/query", body) or []
        return [
            VectorMatch(
                id=str(item["id"]),
                score=float(item.get("score", 0.0)),
                metadata=VectorMetadata(**item["metadata"]) if item.get("metadata") else None,
            )
            for item in results
        ]

    async def delete(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        result = await self._safe_request("POST", "/delete", {"ids": list(ids)})
        deleted = result.get("deleted", 0) if isinstance(result, dict) else 0
        logger.info(f"Vectors deleted: {deleted}")
        return deleted

    async def stats(self) -> Dict[str, Any]:
        result = await self._safe_request("GET", "/info")
        return {
            "vector_count": result.get("vectorCount"),
            "dimensions": result.get("dimension"),
            "index_fullness": result.get("indexFullness"),
        }

    async def is_healthy(self) -> bool:
        return not self.breaker.is_open()

    async def aclose(self) -> None:
        await self.client.aclose()


def _qdrant_point_id(listing_id: str):
    return int(listing_id) if listing_id.isdigit() else listing_id


def build_qdrant_filter(vector_filter: Optional[VectorFilter]) -> Optional[models.Filter]:
    if vector_filter is None or vector_filter.is_empty():
        return None

    must: List[Any] = []
    if vector_filter.category:
        must.append(models.FieldCondition(key="category", match=models.MatchValue(value=vector_filter.category)))
    if vector_filter.dietary:
        must.append(models.FieldCondition(key="dietary_tags", match=models.MatchAny(any=list(vector_filter.dietary))))
    if vector_filter.is_active is not None:
        must.append(models.FieldCondition(key="is_active", match=models.MatchValue(value=vector_filter.is_active)))
    if vector_filter.profile_id:
        must.append(models.FieldCondition(key="profile_id", match=models.MatchValue(value=vector_filter.profile_id)))
    if vector_filter.posted_after is not None:
        must.append(models.FieldCondition(key="posted_at", range=models.DatetimeRange(gt=vector_filter.posted_after)))
    return models.Filter(must=must)


class QdrantVectorStore(VectorStoreInterface):
    """Qdrant collection holding one point per listing."""

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        collection: str = "listings",
        dimensions: int = 1536,
        timeout: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[AsyncQdrantClient] = None,
    ):
        self.collection = collection
        self.dimensions = dimensions
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker("qdrant")
        self.client = client or AsyncQdrantClient(url=url, api_key=api_key, timeout=int(timeout))

    async def _call(self, fn: Callable[[], Awaitable[T]]) -> T:
        async def guarded():
            try:
                return await asyncio.wait_for(fn(), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                raise VectorClientError("Request timeout", "TIMEOUT", retryable=True) from exc
            except UnexpectedResponse as exc:
                raise VectorClientError(
                    f"Qdrant API error: {exc.status_code}",
                    f"HTTP_{exc.status_code}",
                    retryable=exc.status_code is not None and exc.status_code >= 500,
                ) from exc
            except ResponseHandlingException as exc:
                raise VectorClientError(f"Request failed: {exc}", "NETWORK_ERROR", retryable=True) from exc

        return await self.breaker.call(guarded)

    async def ensure_ready(self) -> None:
        """Create the collection when it does not exist yet."""
        exists = await self._call(lambda: self.client.collection_exists(self.collection))
        if exists:
            return
        logger.info(f"Creating Qdrant collection {self.collection} ({self.dimensions} dims)")
        await self._call(
            lambda: self.client.create_collection(
                collection_name=self.collection,
                vectors_config=models.VectorParams(size=self.dimensions, distance=models.Distance.COSINE),
            )
        )

    async def upsert(self, record: VectorRecord) -> int:
        return await self.upsert_batch([record])

    async def upsert_batch(self, records: Sequence[VectorRecord]) -> int:
        if not records:
            return 0
        points = [
            models.PointStruct(
                id=_qdrant_point_id(r.id),
                vector=r.vector,
                payload={**r.metadata.model_dump(exclude_none=True), "post_id": r.id},
            )
            for r in records
        ]
        await self._call(lambda: self.client.upsert(collection_name=self.collection, points=points))
        logger.info(f"Upserted {len(points)} points into {self.collection}")
        return len(points)

    async def query(
        self,
        vector: List[float],
        top_k: int = 10,
        vector_filter: Optional[VectorFilter] = None,
        include_metadata: bool = True,
    ) -> List[VectorMatch]:
        response = await self._call(
            lambda: self.client.query_points(
                collection_name=self.collection,
                query=vector,
                limit=top_k,
                query_filter=build_qdrant_filter(vector_filter),
                with_payload=include_metadata,
            )
        )
        matches = []
        for point in response.points:
            payload = point.payload or {}
            matches.append(
                VectorMatch(
                    id=str(payload.get("post_id", point.id)),
                    score=point.score,
                    metadata=VectorMetadata(**payload) if include_metadata and payload else None,
                )
            )
        return matches

    async def delete(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        await self._call(
            lambda: self.client.delete(
                collection_name=self.collection,
                points_selector=models.PointIdsList(points=[_qdrant_point_id(i) for i in ids]),
            )
        )
        logger.info(f"Deleted {len(ids)} points from {self.collection}")
        return len(ids)

    async def stats(self) -> Dict[str, Any]:
        info = await self._call(lambda: self.client.get_collection(self.collection))
        return {"vector_count": info.points_count, "dimensions": self.dimensions}

    async def is_healthy(self) -> bool:
        if self.breaker.is_open():
            return False
        try:
            await self._call(self.client.get_collections)
        except VectorClientError as e:
            logger.warning(f"Qdrant health check failed: {e}")
            return False
        return True

    async def aclose(self) -> None:
        await self.client.close()


def _parse_timestamp(value: Optional[str]):
    if not value:
        return None
    try:
        return date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return None


def matches_filter(metadata: VectorMetadata, vector_filter: Optional[VectorFilter]) -> bool:
    """Evaluate a filter against stored metadata, mirroring the remote backends."""
    if vector_filter is None:
        return True
    if vector_filter.category and metadata.category != vector_filter.category:
        return False
    if vector_filter.dietary and not set(vector_filter.dietary) & set(metadata.dietary_tags or []):
        return False
    if vector_filter.is_active is not None and metadata.is_active != vector_filter.is_active:
        return False
    if vector_filter.profile_id and metadata.profile_id != vector_filter.profile_id:
        return False
    if vector_filter.posted_after is not None:
        posted_at = _parse_timestamp(metadata.posted_at)
        if posted_at is None:
            return False
        threshold = vector_filter.posted_after
        # Compare naive against naive when stored timestamps lack an offset
        if posted_at.tzinfo is None and threshold.tzinfo is not None:
            threshold = threshold.replace(tzinfo=None)
        elif posted_at.tzinfo is not None and threshold.tzinfo is None:
            posted_at = posted_at.replace(tzinfo=None)
        if posted_at <= threshold:
            return False
    return True


class InMemoryVectorStore(VectorStoreInterface):
    """Process-local store using cosine similarity over numpy arrays."""

    def __init__(self):
        self._records: Dict[str, VectorRecord] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, record: VectorRecord) -> int:
        async with self._lock:
            self._records[record.id] = record
        return 1

    async def upsert_batch(self, records: Sequence[VectorRecord]) -> int:
        async with self._lock:
            for record in records:
                self._records[record.id] = record
        return len(records)

    async def query(
        self,
        vector: List[float],
        top_k: int = 10,
        vector_filter: Optional[VectorFilter] = None,
        include_metadata: bool = True,
    ) -> List[VectorMatch]:
        async with self._lock:
            candidates = [r for r in self._records.values() if matches_filter(r.metadata, vector_filter)]
        if not candidates or top_k <= 0:
            return []

        query_vec = np.asarray(vector, dtype=float)
        matrix = np.asarray([r.vector for r in candidates], dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ query_vec / norms, 0.0)

        # Stable sort keeps insertion order between equal scores
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [
            VectorMatch(
                id=candidates[i].id,
                score=float(scores[i]),
                metadata=candidates[i].metadata if include_metadata else None,
            )
            for i in order
        ]

    async def delete(self, ids: Sequence[str]) -> int:
        deleted = 0
        async with self._lock:
            for listing_id in ids:
                if self._records.pop(listing_id, None) is not None:
                    deleted += 1
        return deleted

    async def stats(self) -> Dict[str, Any]:
        dims = len(next(iter(self._records.values())).vector) if self._records else None
        return {"vector_count": len(self._records), "dimensions": dims}

    async def is_healthy(self) -> bool:
        return True


def create_vector_store(settings: SearchSettings) -> VectorStoreInterface:
    """Instantiate the backend named by ``settings.vector_backend``."""
    if settings.vector_backend == "upstash":
        return UpstashVectorStore(
            settings.upstash_url,
            settings.upstash_token,
            timeout=settings.vector_timeout_seconds,
        )
    if settings.vector_backend == "qdrant":
        if not settings.qdrant_url:
            raise VectorClientError("QDRANT_URL must be configured", "CONFIG_ERROR")
        return QdrantVectorStore(
            settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            collection=settings.qdrant_collection,
            dimensions=settings.embedding_dimensions,
            timeout=settings.vector_timeout_seconds,
        )
    logger.warning("Using in-memory vector store; vectors are lost on restart")
    return InMemoryVectorStore()
