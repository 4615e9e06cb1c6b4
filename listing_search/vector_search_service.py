"""Semantic search: embed the query, query the vector store, post-filter."""
import asyncio
import logging
from typing import Optional

from listing_search.config import SearchSettings
from listing_search.embedding_service import EmbeddingService
from listing_search.errors import VectorClientError
from listing_search.geo import filter_by_distance
from listing_search.models import SearchFilters, SearchOutcome, VectorFilter
from listing_search.service_interfaces import VectorStoreInterface
from listing_search.text_search_service import posted_after

# Configure logging
logger = logging.getLogger(__name__)


def build_vector_filter(filters: Optional[SearchFilters]) -> VectorFilter:
    """Metadata filter for a query; always restricted to active listings."""
    filters = filters or SearchFilters()
    return VectorFilter(
        category=filters.category,
        dietary=filters.dietary,
        is_active=True,
        profile_id=filters.profile_id,
        posted_after=posted_after(filters.max_age_hours),
    )


class SemanticSearchService:
    """Nearest-neighbour search over listing embeddings."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: VectorStoreInterface,
        settings: Optional[SearchSettings] = None,
    ):
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.settings = settings or SearchSettings()

    async def semantic_search(
        self,
        query: str,
        limit: int,
        offset: int = 0,
        filters: Optional[SearchFilters] = None,
    ) -> SearchOutcome:
        """Run a semantic query.

        Over-fetches ``2 * (limit + offset)`` neighbours so that threshold and
        geo filtering still leave a full page.

        Raises:
            EmbeddingError: if no embedding provider could embed the query
            VectorClientError: if the vector store fails or times out
        """
        filters = filters or SearchFilters()
        embedding = await self.embedding_service.embed(query)

        top_k = min(2 * (limit + offset), 2 * self.settings.max_limit)
        try:
            matches = await asyncio.wait_for(
                self.vector_store.query(
                    embedding.embedding,
                    top_k=top_k,
                    vector_filter=build_vector_filter(filters),
                    include_metadata=True,
                ),
                timeout=self.settings.vector_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise VectorClientError("Vector query timeout", "TIMEOUT", retryable=True) from exc

        threshold = self.settings.min_score_threshold
        results = [m.to_result_item() for m in matches if m.score >= threshold]
        dropped = len(matches) - len(results)
        if dropped:
            logger.debug(f"Dropped {dropped} neighbours below similarity {threshold}")

        if filters.location:
            results = filter_by_distance(results, filters.location)

        return SearchOutcome(
            results=results[offset:offset + limit],
            total=len(results),
            provider=embedding.provider,
        )
