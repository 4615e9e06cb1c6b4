"""Hybrid search: weighted reciprocal rank fusion of semantic and lexical lists."""
import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from listing_search.config import SearchSettings
from listing_search.errors import SearchUnavailable
from listing_search.models import SearchFilters, SearchOutcome, SearchResultItem
from listing_search.text_search_service import TextSearchService
from listing_search.vector_search_service import SemanticSearchService

# Configure logging
logger = logging.getLogger(__name__)


def apply_rrf(
    semantic: Sequence[SearchResultItem],
    lexical: Sequence[SearchResultItem],
    k: float = 60,
    semantic_weight: float = 1.2,
    text_weight: float = 1.0,
    overlap_boost: float = 1.5,
) -> List[SearchResultItem]:
    """Fuse two ranked lists with weighted reciprocal rank fusion.

    A result at 0-based rank ``r`` in a list with weight ``w`` contributes
    ``w / (k + r + 1)``. The lexical contribution of an id that is also in
    the semantic list is multiplied by ``overlap_boost``.

    The output holds every input id exactly once, sorted by fused score
    descending. Equal scores keep insertion order, semantic list first, so
    the result is a pure function of the inputs.

    Args:
        semantic: Semantic results, best first
        lexical: Lexical results, best first
        k: Smoothing constant
        semantic_weight: Weight of the semantic list
        text_weight: Weight of the lexical list
        overlap_boost: Multiplier for lexical hits also found semantically

    Returns:
        Fused results with ``score`` replaced by the fused score
    """
    scores: Dict[str, float] = {}
    items: Dict[str, SearchResultItem] = {}

    for rank, item in enumerate(semantic):
        if item.id in scores:
            continue
        scores[item.id] = semantic_weight / (k + rank + 1)
        items[item.id] = item

    semantic_ids = set(scores)
    seen_lexical = set()
    for rank, item in enumerate(lexical):
        if item.id in seen_lexical:
            continue
        seen_lexical.add(item.id)
        contribution = text_weight / (k + rank + 1)
        if item.id in semantic_ids:
            contribution *= overlap_boost
        scores[item.id] = scores.get(item.id, 0.0) + contribution
        # Semantic copy wins for display fields
        items.setdefault(item.id, item)

    ordered = sorted(scores, key=lambda listing_id: scores[listing_id], reverse=True)
    return [items[listing_id].model_copy(update={"score": scores[listing_id]}) for listing_id in ordered]


class FusionService:
    """Runs both retrieval branches concurrently and fuses what survives."""

    def __init__(
        self,
        semantic_service: SemanticSearchService,
        text_service: TextSearchService,
        settings: Optional[SearchSettings] = None,
    ):
        self.semantic_service = semantic_service
        self.text_service = text_service
        self.settings = settings or SearchSettings()

    def fuse(self, semantic: Sequence[SearchResultItem], lexical: Sequence[SearchResultItem]) -> List[SearchResultItem]:
        s = self.settings
        return apply_rrf(
            semantic,
            lexical,
            k=s.rrf_k,
            semantic_weight=s.semantic_weight,
            text_weight=s.text_weight,
            overlap_boost=s.overlap_boost,
        )

    async def hybrid_search(
        self,
        query: str,
        limit: int,
        offset: int = 0,
        filters: Optional[SearchFilters] = None,
    ) -> SearchOutcome:
        """Fuse semantic and lexical results, tolerating one failed branch.

        Each branch fetches ``2 * (limit + offset)`` candidates from rank zero,
        which is ``2 * limit`` on the first page, so deeper pages still have a
        full window to fuse before slicing at ``offset``.

        Raises:
            SearchUnavailable: if both branches fail
        """
        fetch = 2 * (limit + offset)
        semantic_result, text_result = await asyncio.gather(
            self.semantic_service.semantic_search(query, fetch, 0, filters),
            self.text_service.text_search(query, fetch, 0, filters),
            return_exceptions=True,
        )

        for result in (semantic_result, text_result):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

        semantic_failed = isinstance(semantic_result, Exception)
        text_failed = isinstance(text_result, Exception)

        if semantic_failed and text_failed:
            logger.error(
                f"Hybrid search failed in both branches: semantic={semantic_result}, text={text_result}"
            )
            raise SearchUnavailable()
        if semantic_failed:
            logger.warning(f"Semantic branch failed, serving lexical results only: {semantic_result}")
        if text_failed:
            logger.warning(f"Text branch failed, serving semantic results only: {text_result}")

        semantic_items = [] if semantic_failed else semantic_result.results
        text_items = [] if text_failed else text_result.results
        provider = None if semantic_failed else semantic_result.provider

        fused = self.fuse(semantic_items, text_items)
        return SearchOutcome(
            results=fused[offset:offset + limit],
            total=len(fused),
            provider=provider,
            degraded=semantic_failed or text_failed,
        )
