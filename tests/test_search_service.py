"""Tests for the retrieval modes and the search orchestration layer."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from listing_search.config import SearchSettings
from listing_search.embedding_service import EmbeddingService
from listing_search.errors import CatalogError, EmbeddingError, VectorClientError
from listing_search.models import (
    GeoLocation,
    SearchFilters,
    SearchOutcome,
    SearchRequest,
    SearchResultItem,
    VectorMetadata,
    VectorRecord,
)
from listing_search.query_service import SearchService, SearchServiceRequest
from listing_search.text_search_service import TextSearchService
from listing_search.vector_search_service import SemanticSearchService, build_vector_filter
from listing_search.vector_store import InMemoryVectorStore

from fakes import FakeCatalog, FakeProvider, keyword_vector, make_row

SETTINGS = SearchSettings(embedding_dimensions=4)


def _vector_record(listing_id, text, lat=None, lng=None):
    return VectorRecord(
        id=listing_id,
        vector=keyword_vector(text),
        metadata=VectorMetadata(post_id=listing_id, post_name=text, is_active=True, latitude=lat, longitude=lng),
    )


def _store(*records):
    store = InMemoryVectorStore()
    asyncio.run(store.upsert_batch(list(records)))
    return store


def _service(store=None, catalog=None, providers=None, settings=SETTINGS):
    embedding = EmbeddingService(providers or [FakeProvider("zep")], dimensions=4)
    return SearchService(settings, embedding, store or InMemoryVectorStore(), catalog or FakeCatalog())


def _request(query, mode="hybrid", limit=20, offset=0, filters=None):
    return SearchRequest(
        raw_query=query, query=query, mode=mode, limit=limit, offset=offset, filters=filters or SearchFilters()
    )


# ---------------------------------------------------------------------------
# Semantic search
# ---------------------------------------------------------------------------


def test_semantic_drops_results_below_threshold():
    store = _store(
        _vector_record("apples", "apple"),
        _vector_record("apple-bread", "apple bread"),
        _vector_record("milk", "milk"),
        _vector_record("mixed", "apple bread milk pizza pizza pizza"),
    )
    semantic = SemanticSearchService(EmbeddingService([FakeProvider("zep")], dimensions=4), store, SETTINGS)

    outcome = asyncio.run(semantic.semantic_search("apple", limit=10))

    ids = [r.id for r in outcome.results]
    assert ids == ["apples", "apple-bread"]
    assert all(r.score >= 0.3 for r in outcome.results)
    assert outcome.provider == "zep"


def test_semantic_over_fetches_and_restricts_to_active():
    store = MagicMock()
    store.query = AsyncMock(return_value=[])
    semantic = SemanticSearchService(EmbeddingService([FakeProvider("zep")], dimensions=4), store, SETTINGS)

    asyncio.run(semantic.semantic_search("apple", limit=10, offset=5))

    kwargs = store.query.await_args.kwargs
    assert kwargs["top_k"] == 30
    assert kwargs["vector_filter"].is_active is True


def test_semantic_applies_geo_filter_then_paginates():
    store = _store(
        _vector_record("far", "apple", lat=48.85, lng=2.35),
        _vector_record("near", "apple", lat=51.51, lng=-0.13),
        _vector_record("nowhere", "apple"),
    )
    semantic = SemanticSearchService(EmbeddingService([FakeProvider("zep")], dimensions=4), store, SETTINGS)
    filters = SearchFilters(location=GeoLocation(lat=51.5074, lng=-0.1278, radius_km=25))

    outcome = asyncio.run(semantic.semantic_search("apple", limit=10, filters=filters))

    assert [r.id for r in outcome.results] == ["near"]
    assert outcome.results[0].distance_km is not None
    assert outcome.total == 1


def test_semantic_surfaces_embedding_failure():
    semantic = SemanticSearchService(
        EmbeddingService([FakeProvider("zep", error=EmbeddingError("down", "zep"))], dimensions=4),
        InMemoryVectorStore(),
        SETTINGS,
    )
    with pytest.raises(EmbeddingError):
        asyncio.run(semantic.semantic_search("apple", limit=10))


def test_build_vector_filter_derives_posted_after():
    vector_filter = build_vector_filter(SearchFilters(category="Fruit", max_age_hours=24))
    assert vector_filter.category == "Fruit"
    assert vector_filter.is_active is True
    age = datetime.now(timezone.utc) - vector_filter.posted_after
    assert 23.9 < age.total_seconds() / 3600 < 24.1


# ---------------------------------------------------------------------------
# Lexical and fuzzy search
# ---------------------------------------------------------------------------


def test_text_search_uses_full_text_tier_first():
    catalog = FakeCatalog(fts_rows=[make_row("1", "Apples"), make_row("2", "Apple pie")])
    outcome = asyncio.run(TextSearchService(catalog).text_search("apples", limit=10))

    assert [r.id for r in outcome.results] == ["1", "2"]
    assert [r.score for r in outcome.results] == [1.0, 0.99]
    assert catalog.substring_calls == []


def test_text_search_falls_back_to_escaped_substring():
    catalog = FakeCatalog(rows=[make_row("9", "100% of items_ must go")], fts_rows=[])
    outcome = asyncio.run(TextSearchService(catalog).text_search("100% of items_", limit=10))

    assert [r.id for r in outcome.results] == ["9"]
    pattern, _ = catalog.substring_calls[0]
    assert pattern == r"100\% of items\_"


def test_text_search_falls_back_when_full_text_errors():
    catalog = FakeCatalog(rows=[make_row("1", "Bread")], fts_error=True)
    outcome = asyncio.run(TextSearchService(catalog).text_search("bread", limit=10))
    assert [r.id for r in outcome.results] == ["1"]


def test_text_search_raises_when_fallback_fails():
    catalog = FakeCatalog(fts_rows=[], substring_error=True)
    with pytest.raises(CatalogError) as exc_info:
        asyncio.run(TextSearchService(catalog).text_search("bread", limit=10))
    assert exc_info.value.status_code == 503


def test_text_search_applies_same_filters_in_both_tiers():
    catalog = FakeCatalog(rows=[], fts_rows=[], categories={7: "Bakery"})
    profile_id = "3f2b8c1e-6d4a-4b7e-9c2d-1a2b3c4d5e6f"
    filters = SearchFilters(category="bakery", category_ids=[7, 8], profile_id=profile_id, max_age_hours=12)

    asyncio.run(TextSearchService(catalog).text_search("bread", limit=5, offset=10, filters=filters))

    fts_query = catalog.fts_calls[0][1]
    substring_query = catalog.substring_calls[0][1]
    assert fts_query == substring_query
    assert fts_query.category_id == 7
    assert fts_query.category_ids == [7, 8]
    assert fts_query.profile_id == profile_id
    assert fts_query.posted_after is not None
    assert (fts_query.limit, fts_query.offset) == (5, 10)


def test_unknown_category_returns_empty_without_searching():
    catalog = FakeCatalog(rows=[make_row("1", "Bread")])
    outcome = asyncio.run(
        TextSearchService(catalog).text_search("bread", limit=5, filters=SearchFilters(category="Nope"))
    )
    assert outcome.results == []
    assert catalog.fts_calls == [] and catalog.substring_calls == []


def test_fuzzy_search_skips_full_text_and_geo_filters():
    catalog = FakeCatalog(
        rows=[
            make_row("near", "Milk", latitude=51.51, longitude=-0.13),
            make_row("far", "Milk", latitude=40.0, longitude=-70.0),
            make_row("nowhere", "Milk"),
        ],
        fts_rows=[make_row("x", "ignored")],
    )
    filters = SearchFilters(location=GeoLocation(lat=51.5074, lng=-0.1278, radius_km=5))
    outcome = asyncio.run(TextSearchService(catalog).fuzzy_search("mil", limit=10, filters=filters))

    assert catalog.fts_calls == []
    assert [r.id for r in outcome.results] == ["near"]
    assert outcome.total == 1


# ---------------------------------------------------------------------------
# SearchService orchestration
# ---------------------------------------------------------------------------


def test_cache_round_trip_marks_second_response_cached():
    service = _service(store=_store(_vector_record("a", "apple")), catalog=FakeCatalog(fts_rows=[make_row("b", "Apple")]))

    async def twice():
        first = await service.search(_request("Fresh apples"))
        second = await service.search(_request("fresh   apples"))
        return first, second

    first, second = asyncio.run(twice())

    assert first.cached is False
    assert second.cached is True
    assert [r.id for r in second.results] == [r.id for r in first.results]
    assert service.stats.snapshot()["cache_hits"] == 1


def test_concurrent_identical_searches_execute_once():
    service = _service()
    calls = 0

    async def slow_execute(request):
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return SearchOutcome(results=[SearchResultItem(id="a", score=1.0)], total=1, provider="zep")

    service.execute_search = slow_execute

    async def burst():
        return await asyncio.gather(*(service.search(_request("pizza")) for _ in range(5)))

    responses = asyncio.run(burst())
    assert calls == 1
    assert all([r.id for r in resp.results] == ["a"] for resp in responses)


def test_mode_dispatch():
    catalog = FakeCatalog(rows=[make_row("sub", "Pizza")], fts_rows=[make_row("fts", "Pizza")])
    service = _service(store=_store(_vector_record("vec", "pizza")), catalog=catalog)

    assert [r.id for r in asyncio.run(service.search(_request("pizza", mode="semantic"))).results] == ["vec"]
    assert [r.id for r in asyncio.run(service.search(_request("pizza", mode="text"))).results] == ["fts"]
    assert [r.id for r in asyncio.run(service.search(_request("pizza", mode="fuzzy"))).results] == ["sub"]
    hybrid = asyncio.run(service.search(_request("pizza", mode="hybrid")))
    assert [r.id for r in hybrid.results] == ["vec", "fts"]
    assert hybrid.provider == "zep"


def test_degraded_response_is_flagged_and_not_cached():
    service = _service(
        catalog=FakeCatalog(fts_rows=[make_row("b", "Bread")]),
        providers=[FakeProvider("zep", error=EmbeddingError("down", "zep"))],
    )
    first = asyncio.run(service.search(_request("bread")))
    second = asyncio.run(service.search(_request("bread")))
    assert first.degraded and second.degraded
    assert second.cached is False


def test_stats_payload_tracks_usage():
    service = _service(store=_store(_vector_record("a", "apple")))
    asyncio.run(service.search(_request("apple", mode="semantic")))
    asyncio.run(service.search(_request("apple", mode="semantic")))

    stats = service.stats_payload()
    assert stats["total_searches"] == 2
    assert stats["cache_hits"] == 1
    assert stats["cache_misses"] == 1
    assert stats["provider_usage"] == {"zep": 1}
    assert stats["version"] == "2.0.0"


def test_health_statuses():
    healthy = _service(providers=[FakeProvider("zep"), FakeProvider("openai")])
    assert asyncio.run(healthy.health_check())["status"] == "healthy"

    degraded = _service(providers=[FakeProvider("zep", healthy=False), FakeProvider("openai")])
    assert asyncio.run(degraded.health_check())["status"] == "degraded"

    no_provider = _service(providers=[FakeProvider("zep", healthy=False)])
    assert asyncio.run(no_provider.health_check())["status"] == "unhealthy"

    store = MagicMock()
    store.is_healthy = AsyncMock(return_value=False)
    unreachable = _service(store=store)
    payload = asyncio.run(unreachable.health_check())
    assert payload["status"] == "unhealthy"
    assert payload["vector"]["healthy"] is False
    assert payload["embedding"]["active_provider"] == "zep"


def test_process_request_wraps_search():
    service = _service(store=_store(_vector_record("a", "apple")))
    response = asyncio.run(
        service.process_request(SearchServiceRequest(request_id="r1", search=_request("apple", mode="semantic")))
    )
    assert response.status == "success"
    assert response.data["results"][0]["id"] == "a"


class SlowVectorStore(InMemoryVectorStore):
    async def query(self, *args, **kwargs):
        await asyncio.sleep(1)
        return []


FAST_TIMEOUT = SearchSettings(embedding_dimensions=4, vector_timeout_seconds=0.01)


def test_vector_query_timeout_raises_timeout_error():
    semantic = SemanticSearchService(
        EmbeddingService([FakeProvider("zep")], dimensions=4), SlowVectorStore(), FAST_TIMEOUT
    )
    with pytest.raises(VectorClientError) as exc_info:
        asyncio.run(semantic.semantic_search("apple", limit=10))
    assert exc_info.value.code == "TIMEOUT"
    assert exc_info.value.retryable


def test_vector_timeout_degrades_hybrid_to_lexical():
    service = _service(
        store=SlowVectorStore(),
        catalog=FakeCatalog(fts_rows=[make_row("b", "Apple bread")]),
        settings=FAST_TIMEOUT,
    )
    response = asyncio.run(service.search(_request("apple")))

    assert response.degraded is True
    assert [r.id for r in response.results] == ["b"]
    assert response.provider is None
