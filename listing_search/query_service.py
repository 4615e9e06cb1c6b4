"""Search orchestration: caching, deduplication, mode dispatch, health and stats."""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from listing_search.cache_service import RequestDeduplicator, ResultCache
from listing_search.config import VERSION, SearchSettings
from listing_search.embedding_service import EmbeddingService
from listing_search.errors import AppError
from listing_search.fusion_service import FusionService
from listing_search.models import SearchOutcome, SearchRequest, SearchResponse
from listing_search.query_sanitizer import cache_key
from listing_search.service_interfaces import (
    CatalogInterface,
    ServiceInterface,
    ServiceRequest,
    ServiceResponse,
    VectorStoreInterface,
)
from listing_search.text_search_service import TextSearchService
from listing_search.vector_search_service import SemanticSearchService

# Configure logging
logger = logging.getLogger(__name__)


class SearchServiceRequest(ServiceRequest):
    """Search request model."""
    search: SearchRequest


class SearchStats:
    """Running counters for the stats route, shared by all requests."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self.started_at = clock()
        self.total_searches = 0
        self.cache_hits = 0
        self.cache_misses = 0
        self.avg_latency_ms = 0.0
        self.provider_usage: Dict[str, int] = {}

    def record_cache_hit(self) -> None:
        with self._lock:
            self.total_searches += 1
            self.cache_hits += 1

    def record_search(self, latency_ms: float, provider: Optional[str]) -> None:
        with self._lock:
            self.total_searches += 1
            self.cache_misses += 1
            executed = self.cache_misses
            # Rolling mean over executed (non-cached) searches
            self.avg_latency_ms += (latency_ms - self.avg_latency_ms) / executed
            if provider:
                self.provider_usage[provider] = self.provider_usage.get(provider, 0) + 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_searches": self.total_searches,
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
                "avg_latency_ms": round(self.avg_latency_ms, 2),
                "provider_usage": dict(self.provider_usage),
                "uptime_seconds": round(self._clock() - self.started_at),
            }


class SearchService(ServiceInterface):
    """Entry point for search requests across all modes."""

    def __init__(
        self,
        settings: SearchSettings,
        embedding_service: EmbeddingService,
        vector_store: VectorStoreInterface,
        catalog: CatalogInterface,
        cache: Optional[ResultCache] = None,
        deduplicator: Optional[RequestDeduplicator] = None,
        stats: Optional[SearchStats] = None,
    ):
        """Initialize the search service.

        Args:
            settings: Runtime settings
            embedding_service: Provider chain used to embed queries
            vector_store: Vector index holding listing embeddings
            catalog: Relational catalog for lexical and fuzzy modes
            cache: Result cache (one per process)
            deduplicator: Single-flight map (one per process)
            stats: Counters for the stats route (one per process)
        """
        self.settings = settings
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.catalog = catalog
        self.cache = cache or ResultCache(settings.cache_ttl_seconds, settings.cache_max_size)
        self.deduplicator = deduplicator or RequestDeduplicator()
        self.stats = stats or SearchStats()

        self.text_service = TextSearchService(catalog)
        self.semantic_service = SemanticSearchService(embedding_service, vector_store, settings)
        self.fusion_service = FusionService(self.semantic_service, self.text_service, settings)

        logger.info(f"Search service initialized (vector backend: {settings.vector_backend})")

    async def execute_search(self, request: SearchRequest) -> SearchOutcome:
        """Dispatch to the retrieval mode named in the request."""
        args = (request.query, request.limit, request.offset, request.filters)
        if request.mode == "semantic":
            return await self.semantic_service.semantic_search(*args)
        if request.mode == "text":
            return await self.text_service.text_search(*args)
        if request.mode == "fuzzy":
            return await self.text_service.fuzzy_search(*args)
        return await self.fusion_service.hybrid_search(*args)

    async def search(self, request: SearchRequest) -> SearchResponse:
        """Answer a search, serving identical recent requests from cache."""
        key = cache_key(request.mode, request.query, request.filters, request.limit, request.offset)

        cached = await self.cache.get(key)
        if cached is not None:
            self.stats.record_cache_hit()
            logger.debug(f"Cache hit for {request.mode} search")
            return cached.model_copy(update={"cached": True})

        start_time = time.perf_counter()
        outcome = await self.deduplicator.run(key, lambda: self.execute_search(request))
        took_ms = round((time.perf_counter() - start_time) * 1000)

        response = SearchResponse(
            results=outcome.results,
            total=outcome.total,
            mode=request.mode,
            took_ms=took_ms,
            provider=outcome.provider,
            cached=False,
            degraded=outcome.degraded,
        )

        # Degraded answers are not cached so recovery is visible immediately
        if not outcome.degraded:
            await self.cache.set(key, response)
        self.stats.record_search(took_ms, outcome.provider)

        logger.info(
            f"{request.mode} search returned {len(response.results)}/{response.total} results in {took_ms}ms"
        )
        return response

    async def health_check(self) -> Dict[str, Any]:
        """Aggregate provider, vector store and cache health.

        ``unhealthy`` when the vector store is unreachable or no provider is
        healthy, ``degraded`` when some configured provider is unhealthy.
        """
        providers = self.embedding_service.health()
        try:
            vector_healthy = await self.vector_store.is_healthy()
        except AppError as e:
            logger.warning(f"Vector store health check failed: {e}")
            vector_healthy = False

        configured = [p for p in providers.values() if p["configured"]]
        healthy = [p for p in configured if p["healthy"]]

        if not vector_healthy or not healthy:
            status = "unhealthy"
        elif len(healthy) < len(configured):
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "embedding": {
                "active_provider": self.embedding_service.active_provider(),
                "providers": providers,
            },
            "vector": {
                "backend": self.settings.vector_backend,
                "healthy": vector_healthy,
            },
            "cache": self.cache.stats(),
        }

    def stats_payload(self) -> Dict[str, Any]:
        return {
            "version": VERSION,
            **self.stats.snapshot(),
            "cache": self.cache.stats(),
            "in_flight": self.deduplicator.in_flight,
        }

    async def process_request(self, request: ServiceRequest) -> ServiceResponse:
        """Process a service request and return a response."""
        if isinstance(request, SearchServiceRequest):
            try:
                response = await self.search(request.search)
                return ServiceResponse(
                    request_id=request.request_id,
                    status="success",
                    data=response.to_payload(),
                )
            except AppError as e:
                logger.error(f"Error in search: {str(e)}")
                return ServiceResponse(
                    request_id=request.request_id,
                    status="error",
                    message=f"Error in search: {str(e)}",
                )

        return ServiceResponse(
            request_id=request.request_id,
            status="error",
            message=f"Unsupported request type: {type(request).__name__}",
        )

    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        logger.info("Shutting down Search Service")
        await self.cache.flush()
        await self.embedding_service.aclose()
        await self.vector_store.aclose()
        await self.catalog.aclose()
