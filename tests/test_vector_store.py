"""Tests for the vector store backends and filter builders."""

import asyncio
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from qdrant_client import models

from listing_search.config import SearchSettings
from listing_search.errors import VectorClientError
from listing_search.models import VectorFilter, VectorMetadata, VectorRecord
from listing_search.vector_store import (
    InMemoryVectorStore,
    QdrantVectorStore,
    UpstashVectorStore,
    build_qdrant_filter,
    build_upstash_filter,
    create_vector_store,
)


def _record(listing_id, vector, **metadata):
    return VectorRecord(id=listing_id, vector=vector, metadata=VectorMetadata(post_id=listing_id, **metadata))


# ---------------------------------------------------------------------------
# Filter builders
# ---------------------------------------------------------------------------


def test_upstash_filter_combines_clauses():
    expr = build_upstash_filter(
        VectorFilter(
            category="Fruit",
            dietary=["vegan", "halal"],
            is_active=True,
            profile_id="p1",
            posted_after=datetime(2026, 10, 1, tzinfo=timezone.utc),
        )
    )
    assert expr == (
        "category = 'Fruit' AND (dietary_tags CONTAINS 'vegan' OR dietary_tags CONTAINS 'halal') "
        "AND is_active = true AND profile_id = 'p1' AND posted_at > '2026-10-01T00:00:00+00:00'"
    )


def test_upstash_filter_escapes_quotes():
    assert build_upstash_filter(VectorFilter(category="Farmer's \\ market")) == (
        "category = 'Farmer\\'s \\\\ market'"
    )


def test_upstash_filter_empty():
    assert build_upstash_filter(None) is None
    assert build_upstash_filter(VectorFilter()) is None


def test_qdrant_filter():
    built = build_qdrant_filter(VectorFilter(category="Fruit", dietary=["vegan"], is_active=True))
    assert isinstance(built, models.Filter)
    keys = [condition.key for condition in built.must]
    assert keys == ["category", "dietary_tags", "is_active"]
    assert build_qdrant_filter(VectorFilter()) is None


# ---------------------------------------------------------------------------
# Upstash REST client
# ---------------------------------------------------------------------------


def _upstash(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return UpstashVectorStore("https://vec.example.io/", "tok", client=client, **kwargs)


def test_upstash_query_sends_filter_and_parses_matches():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"result": [{"id": "a", "score": 0.91, "metadata": {"post_name": "Apples", "category": "Fruit"}}]},
        )

    store = _upstash(handler)
    matches = asyncio.run(store.query([0.1, 0.2], top_k=5, vector_filter=VectorFilter(is_active=True)))

    assert seen["path"] == "/query"
    assert seen["auth"] == "Bearer tok"
    assert seen["body"]["topK"] == 5
    assert seen["body"]["filter"] == "is_active = true"
    assert matches[0].id == "a"
    assert matches[0].metadata.post_name == "Apples"


def test_upstash_upsert_batch_chunks_by_100():
    sizes = []

    def handler(request):
        sizes.append(len(json.loads(request.content)))
        return httpx.Response(200, json={"result": "Success"})

    store = _upstash(handler)
    records = [_record(str(i), [0.0, 1.0]) for i in range(250)]
    assert asyncio.run(store.upsert_batch(records)) == 250
    assert sizes == [100, 100, 50]


def test_upstash_delete_returns_count():
    def handler(request):
        assert json.loads(request.content) == {"ids": ["a", "b"]}
        return httpx.Response(200, json={"result": {"deleted": 2}})

    assert asyncio.run(_upstash(handler).delete(["a", "b"])) == 2


def test_upstash_http_error_is_classified():
    def handler(request):
        return httpx.Response(401, text="bad token")

    with pytest.raises(VectorClientError) as exc_info:
        asyncio.run(_upstash(handler).query([0.1]))
    assert exc_info.value.code == "HTTP_401"
    assert not exc_info.value.retryable


def test_upstash_timeout_is_retryable_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(VectorClientError) as exc_info:
        asyncio.run(_upstash(handler, max_attempts=1).query([0.1]))
    assert exc_info.value.code == "TIMEOUT"
    assert exc_info.value.retryable


def test_upstash_requires_credentials():
    with pytest.raises(VectorClientError):
        UpstashVectorStore("", "")


# ---------------------------------------------------------------------------
# Qdrant backend
# ---------------------------------------------------------------------------


def test_qdrant_query_maps_points():
    client = MagicMock()
    point = SimpleNamespace(
        id="11111111-1111-4111-8111-111111111111",
        score=0.8,
        payload={"post_id": "11111111-1111-4111-8111-111111111111", "post_name": "Milk"},
    )
    client.query_points = AsyncMock(return_value=SimpleNamespace(points=[point]))

    store = QdrantVectorStore("http://qdrant:6333", client=client)
    matches = asyncio.run(store.query([0.1, 0.2], top_k=3, vector_filter=VectorFilter(is_active=True)))

    assert matches[0].id == "11111111-1111-4111-8111-111111111111"
    assert matches[0].metadata.post_name == "Milk"
    kwargs = client.query_points.await_args.kwargs
    assert kwargs["limit"] == 3
    assert isinstance(kwargs["query_filter"], models.Filter)


def test_qdrant_ensure_ready_creates_missing_collection():
    client = MagicMock()
    client.collection_exists = AsyncMock(return_value=False)
    client.create_collection = AsyncMock(return_value=True)

    store = QdrantVectorStore("http://qdrant:6333", collection="listings", dimensions=8, client=client)
    asyncio.run(store.ensure_ready())

    kwargs = client.create_collection.await_args.kwargs
    assert kwargs["collection_name"] == "listings"
    assert kwargs["vectors_config"].size == 8


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


def test_in_memory_query_orders_by_cosine_similarity():
    store = InMemoryVectorStore()
    asyncio.run(store.upsert_batch([
        _record("x", [1.0, 0.0], is_active=True),
        _record("y", [0.7, 0.7], is_active=True),
        _record("z", [0.0, 1.0], is_active=True),
    ]))
    matches = asyncio.run(store.query([1.0, 0.0], top_k=2))
    assert [m.id for m in matches] == ["x", "y"]
    assert matches[0].score == pytest.approx(1.0)


def test_in_memory_applies_metadata_filter():
    store = InMemoryVectorStore()
    asyncio.run(store.upsert_batch([
        _record("fruit", [1.0, 0.0], category="Fruit", is_active=True, dietary_tags=["vegan"],
                posted_at="2026-10-10T00:00:00Z"),
        _record("old", [1.0, 0.0], category="Fruit", is_active=True, dietary_tags=["vegan"],
                posted_at="2026-01-01T00:00:00Z"),
        _record("inactive", [1.0, 0.0], category="Fruit", is_active=False),
        _record("dairy", [1.0, 0.0], category="Dairy", is_active=True),
    ]))
    vector_filter = VectorFilter(
        category="Fruit",
        dietary=["vegan", "halal"],
        is_active=True,
        posted_after=datetime(2026, 10, 1, tzinfo=timezone.utc),
    )
    matches = asyncio.run(store.query([1.0, 0.0], top_k=10, vector_filter=vector_filter))
    assert [m.id for m in matches] == ["fruit"]


def test_in_memory_upsert_is_idempotent_and_delete_counts():
    store = InMemoryVectorStore()
    asyncio.run(store.upsert(_record("a", [1.0])))
    asyncio.run(store.upsert(_record("a", [2.0])))
    assert asyncio.run(store.stats())["vector_count"] == 1
    assert asyncio.run(store.delete(["a", "missing"])) == 1
    assert asyncio.run(store.query([1.0])) == []


def test_create_vector_store_defaults_to_memory():
    assert isinstance(create_vector_store(SearchSettings()), InMemoryVectorStore)
    with pytest.raises(VectorClientError):
        create_vector_store(SearchSettings(vector_backend="qdrant"))
