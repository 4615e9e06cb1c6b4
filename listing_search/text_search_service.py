"""Lexical and fuzzy search over the relational catalog."""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from listing_search.errors import CatalogError
from listing_search.geo import filter_by_distance
from listing_search.models import CatalogListingRow, CatalogQuery, SearchFilters, SearchOutcome
from listing_search.query_sanitizer import escape_like
from listing_search.service_interfaces import CatalogInterface

# Configure logging
logger = logging.getLogger(__name__)


def posted_after(max_age_hours: Optional[float], now: Optional[datetime] = None) -> Optional[datetime]:
    if not max_age_hours:
        return None
    now = now or datetime.now(timezone.utc)
    return now - timedelta(hours=max_age_hours)


class TextSearchService:
    """Full-text search with a substring fallback, plus standalone fuzzy mode.

    Both modes push the same filters down to the catalog and apply the
    geo filter after retrieval. Scores are positional because the catalog
    returns rows by recency, not relevance.
    """

    def __init__(self, catalog: CatalogInterface):
        self.catalog = catalog

    async def _catalog_query(
        self, filters: SearchFilters, limit: int, offset: int
    ) -> Optional[CatalogQuery]:
        """Translate filters, or None when the named category does not exist."""
        category_id = None
        if filters.category:
            category_id = await self.catalog.find_category_id(filters.category)
            if category_id is None:
                logger.info(f"Unknown category filter: {filters.category}")
                return None

        return CatalogQuery(
            limit=limit,
            offset=offset,
            category_id=category_id,
            category_ids=filters.category_ids,
            profile_id=filters.profile_id,
            posted_after=posted_after(filters.max_age_hours),
        )

    @staticmethod
    def _to_outcome(rows: List[CatalogListingRow], total: int, filters: SearchFilters) -> SearchOutcome:
        results = [row.to_result_item(rank) for rank, row in enumerate(rows)]
        if filters.location:
            results = filter_by_distance(results, filters.location)
            total = len(results)
        return SearchOutcome(results=results, total=total)

    async def text_search(
        self,
        query: str,
        limit: int,
        offset: int = 0,
        filters: Optional[SearchFilters] = None,
    ) -> SearchOutcome:
        """Full-text tier first, substring tier when it errors or finds nothing.

        Raises:
            CatalogError: if the substring tier fails
        """
        filters = filters or SearchFilters()
        catalog_query = await self._catalog_query(filters, limit, offset)
        if catalog_query is None:
            return SearchOutcome()

        rows: List[CatalogListingRow] = []
        total = 0
        if query.strip():
            try:
                rows, total = await self.catalog.full_text_search(query, catalog_query)
            except CatalogError as e:
                logger.warning(f"Full-text search failed, falling back to substring match: {e}")

        if not rows:
            try:
                rows, total = await self.catalog.substring_search(escape_like(query), catalog_query)
            except CatalogError as e:
                logger.error(f"Text search failed: {e}")
                raise CatalogError(f"Text search failed: {e.message}", "SEARCH_ERROR") from e

        return self._to_outcome(rows, total, filters)

    async def fuzzy_search(
        self,
        query: str,
        limit: int,
        offset: int = 0,
        filters: Optional[SearchFilters] = None,
    ) -> SearchOutcome:
        filters = filters or SearchFilters()
        catalog_query = await self._catalog_query(filters, limit, offset)
        if catalog_query is None:
            return SearchOutcome()

        try:
            rows, total = await self.catalog.substring_search(escape_like(query), catalog_query)
        except CatalogError as e:
            logger.error(f"Fuzzy search failed: {e}")
            raise CatalogError(f"Fuzzy search failed: {e.message}", "SEARCH_ERROR") from e

        return self._to_outcome(rows, total, filters)
