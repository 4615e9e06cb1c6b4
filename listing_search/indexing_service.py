"""Keeps the vector index in step with the listing catalog.

Two entry points share the embed-and-upsert logic: a signed database
webhook for single-row changes and an admin batch endpoint for scheduled or
manual reindexing. Per-record failures are counted in the ``IndexResult``
rather than raised, so one bad listing never aborts a run.
"""
import asyncio
import hashlib
import hmac
import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from listing_search.config import SearchSettings
from listing_search.embedding_service import EmbeddingService
from listing_search.errors import CatalogError, ValidationError
from listing_search.models import (
    BatchIndexRequest,
    CatalogListingRow,
    IndexResult,
    VectorRecord,
    WebhookPayload,
)
from listing_search.query_sanitizer import validate_uuid
from listing_search.service_interfaces import (
    CatalogInterface,
    ServiceInterface,
    ServiceRequest,
    ServiceResponse,
    VectorStoreInterface,
)

# Configure logging
logger = logging.getLogger(__name__)


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time check of a webhook signature header.

    With no secret configured the check passes and a warning is logged.
    """
    if not secret:
        logger.warning("WEBHOOK_SECRET not configured - skipping signature verification")
        return True
    if not signature:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(signature.strip().lower().encode("utf-8"), expected.encode("utf-8"))


class IndexRequest(ServiceRequest):
    """Batch index request model."""
    batch: BatchIndexRequest


class IndexingService(ServiceInterface):
    """Embeds catalog listings and writes them to the vector store."""

    def __init__(
        self,
        settings: SearchSettings,
        embedding_service: EmbeddingService,
        vector_store: VectorStoreInterface,
        catalog: CatalogInterface,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.catalog = catalog
        self._sleep = sleep

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        """Raises ValidationError when the body was not signed with our secret."""
        if not verify_webhook_signature(raw_body, signature, self.settings.webhook_secret):
            logger.warning("Rejected webhook with invalid signature")
            raise ValidationError("Invalid webhook signature")

    def build_record(self, row: CatalogListingRow, vector: List[float]) -> VectorRecord:
        return VectorRecord(id=row.id, vector=vector, metadata=row.to_vector_metadata())

    async def index_listing(self, row: CatalogListingRow) -> str:
        """Embed and upsert one listing, returning the serving provider."""
        embedding = await self.embedding_service.embed(row.embedding_text(self.settings.embed_text_max_chars))
        await self.vector_store.upsert(self.build_record(row, embedding.embedding))
        logger.debug(f"Listing {row.id} indexed via {embedding.provider}")
        return embedding.provider

    async def delete_listing(self, listing_id: str) -> None:
        if not validate_uuid(listing_id):
            raise ValidationError("Invalid post ID format")
        await self.vector_store.delete([listing_id])
        logger.debug(f"Listing {listing_id} removed from index")

    async def _with_category_name(self, row: CatalogListingRow) -> CatalogListingRow:
        if row.category_name or row.category_id is None:
            return row
        try:
            name = await self.catalog.get_category_name(row.category_id)
        except CatalogError as e:
            logger.warning(f"Could not resolve category {row.category_id}: {e}")
            return row
        return row.model_copy(update={"category_name": name}) if name else row

    async def handle_webhook_index(self, payload: WebhookPayload) -> IndexResult:
        """Apply one database change event to the index.

        Active, non-arranged rows are (re)indexed; any other row, and every
        DELETE event, removes the listing from the index.
        """
        start_time = time.perf_counter()
        result = IndexResult()
        source = payload.record or payload.old_record
        record_id = source.id if source else None
        logger.info(f"Webhook index: type={payload.type}, record={record_id}")

        try:
            if payload.type in ("INSERT", "UPDATE"):
                if payload.record is None:
                    result.skipped = 1
                elif payload.record.is_indexable:
                    await self.index_listing(await self._with_category_name(payload.record))
                    result.indexed = 1
                else:
                    await self.delete_listing(payload.record.id)
                    result.deleted = 1
            else:
                listing_id = (payload.old_record or payload.record).id if source else None
                if listing_id:
                    await self.delete_listing(listing_id)
                    result.deleted = 1
                else:
                    result.skipped = 1
        except Exception as e:
            result.failed = 1
            result.add_error(str(e))
            logger.error(f"Webhook index failed for {record_id}: {str(e)}")

        result.duration_ms = round((time.perf_counter() - start_time) * 1000)
        return result

    async def index_listings(self, rows: Sequence[CatalogListingRow]) -> IndexResult:
        """Delete inactive rows, then embed and upsert active rows in batches."""
        start_time = time.perf_counter()
        result = IndexResult()
        if not rows:
            return result

        active = [r for r in rows if r.is_indexable]
        inactive = [r for r in rows if not r.is_indexable]

        if inactive:
            try:
                await self.vector_store.delete([r.id for r in inactive])
                result.deleted = len(inactive)
            except Exception as e:
                result.add_error(f"Delete failed: {str(e)}")
                logger.error(f"Deleting {len(inactive)} inactive listings failed: {str(e)}")

        batch_size = self.settings.embedding_batch_size
        total_batches = math.ceil(len(active) / batch_size)
        for i in range(0, len(active), batch_size):
            batch_num = i // batch_size + 1
            if i and self.settings.batch_delay_seconds:
                await self._sleep(self.settings.batch_delay_seconds)

            batch = active[i:i + batch_size]
            try:
                texts = [r.embedding_text(self.settings.embed_text_max_chars) for r in batch]
                embeddings = await self.embedding_service.embed_batch(texts)
                records = [self.build_record(r, v) for r, v in zip(batch, embeddings.embeddings)]
                await self.vector_store.upsert_batch(records)
                result.indexed += len(batch)
                logger.info(
                    f"Batch {batch_num}/{total_batches} indexed: {len(batch)} listings via {embeddings.provider}"
                )
            except Exception as e:
                result.add_error(f"Batch {batch_num} failed: {str(e)}")
                result.failed += len(batch)
                logger.error(f"Batch {batch_num}/{total_batches} indexing failed: {str(e)}")

        result.duration_ms = round((time.perf_counter() - start_time) * 1000)
        return result

    async def handle_batch_index(self, request: BatchIndexRequest) -> IndexResult:
        """Reindex a window of the catalog, or an explicit list of ids.

        Raises:
            ValidationError: if any explicit id is not a UUID
            CatalogError: if the catalog cannot be read
        """
        limit = min(request.limit or self.settings.max_batch_size, self.settings.max_batch_size)
        offset = max(0, request.offset)

        if request.post_ids and not all(validate_uuid(i) for i in request.post_ids):
            raise ValidationError("Invalid post ID format in post_ids array")

        logger.info(
            f"Batch index starting: limit={limit}, offset={offset}, "
            f"post_ids={len(request.post_ids or [])}, force={request.force}"
        )
        rows = await self.catalog.fetch_listings(
            ids=request.post_ids or None,
            limit=limit,
            offset=offset,
            active_only=not request.force,
        )
        result = await self.index_listings(rows)
        logger.info(
            f"Batch index finished: indexed={result.indexed}, failed={result.failed}, "
            f"deleted={result.deleted} in {result.duration_ms}ms"
        )
        return result

    async def reindex_all(self, force: bool = False, window: Optional[int] = None) -> IndexResult:
        """Walk the whole catalog window by window until it is exhausted."""
        window = min(window or self.settings.max_batch_size, self.settings.max_batch_size)
        total = IndexResult()
        start_time = time.perf_counter()
        offset = 0
        while True:
            rows = await self.catalog.fetch_listings(limit=window, offset=offset, active_only=not force)
            if not rows:
                break
            result = await self.index_listings(rows)
            total.indexed += result.indexed
            total.failed += result.failed
            total.deleted += result.deleted
            total.skipped += result.skipped
            for error in result.errors:
                total.add_error(error)
            logger.info(f"Reindex window at offset {offset}: {len(rows)} listings processed")
            if len(rows) < window:
                break
            offset += window

        total.duration_ms = round((time.perf_counter() - start_time) * 1000)
        return total

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.embedding_service.active_provider() else "degraded",
            "batch_size": self.settings.embedding_batch_size,
            "max_batch_size": self.settings.max_batch_size,
        }

    async def process_request(self, request: ServiceRequest) -> ServiceResponse:
        """Process a service request and return a response."""
        if isinstance(request, IndexRequest):
            result = await self.handle_batch_index(request.batch)
            return ServiceResponse(
                request_id=request.request_id,
                status="success" if not result.failed else "partial",
                data=result.model_dump(),
            )
        return ServiceResponse(
            request_id=request.request_id,
            status="error",
            message=f"Unsupported request type: {type(request).__name__}",
        )

    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        logger.info("Shutting down Indexing Service")
