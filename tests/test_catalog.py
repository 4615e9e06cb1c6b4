"""Tests for the PostgREST catalog client."""

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from listing_search.catalog import PostgrestCatalog, create_catalog, parse_content_range, quote_value
from listing_search.config import SearchSettings
from listing_search.errors import CatalogError
from listing_search.models import CatalogQuery

ROW = {
    "id": 42,
    "post_name": "Fresh apples",
    "post_description": None,
    "post_address": "1 Orchard Rd",
    "category_id": 3,
    "categories": {"name": "Fruit"},
    "created_at": "2026-10-01T12:00:00+00:00",
    "is_active": True,
    "is_arranged": False,
}


def _catalog(handler, api_key="anon"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PostgrestCatalog("https://db.example.io/rest/v1/", api_key=api_key, client=client)


def test_quote_value_escapes_backslash_then_quote():
    assert quote_value('say "hi"') == '"say \\"hi\\""'
    assert quote_value("a\\b") == '"a\\\\b"'


def test_parse_content_range():
    assert parse_content_range("0-19/42", 20) == 42
    assert parse_content_range("*/0", 5) == 0
    assert parse_content_range("0-19/*", 20) == 20
    assert parse_content_range(None, 3) == 3


def test_full_text_search_builds_filters_and_reads_total():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["params"] = request.url.params
        seen["headers"] = request.headers
        return httpx.Response(200, json=[ROW], headers={"Content-Range": "0-0/17"})

    query = CatalogQuery(
        limit=10,
        offset=20,
        category_id=3,
        category_ids=[3, 4],
        profile_id="p-1",
        posted_after=datetime(2026, 10, 1, tzinfo=timezone.utc),
    )
    rows, total = asyncio.run(_catalog(handler).full_text_search("apples", query))

    params = seen["params"]
    assert seen["path"] == "/rest/v1/posts"
    assert params["post_name"] == "wfts(english).apples"
    assert params["is_active"] == "eq.true"
    assert params["is_arranged"] == "eq.false"
    assert params["order"] == "created_at.desc"
    assert (params["limit"], params["offset"]) == ("10", "20")
    assert params.get_list("category_id") == ["eq.3", "in.(3,4)"]
    assert params["profile_id"] == "eq.p-1"
    assert params["created_at"] == "gte.2026-10-01T00:00:00+00:00"
    assert "categories(name)" in params["select"]
    assert seen["headers"]["prefer"] == "count=exact"
    assert seen["headers"]["apikey"] == "anon"

    assert total == 17
    assert rows[0].id == "42"
    assert rows[0].category_name == "Fruit"
    assert rows[0].post_description == ""


def test_substring_search_quotes_pattern():
    seen = {}

    def handler(request):
        seen["or"] = request.url.params["or"]
        return httpx.Response(200, json=[])

    rows, total = asyncio.run(_catalog(handler).substring_search(r"100\% off", CatalogQuery()))

    assert seen["or"] == '(post_name.ilike."*100\\\\% off*",post_description.ilike."*100\\\\% off*")'
    assert (rows, total) == ([], 0)


def test_substring_search_drops_user_wildcards():
    seen = {}

    def handler(request):
        seen["or"] = request.url.params["or"]
        return httpx.Response(200, json=[])

    asyncio.run(_catalog(handler).substring_search("a*b**", CatalogQuery()))

    assert seen["or"] == '(post_name.ilike."*ab*",post_description.ilike."*ab*")'


def test_find_category_id_case_insensitive_lookup():
    def handler(request):
        assert request.url.path.endswith("/categories")
        assert request.url.params["name"] == 'ilike."fruit"'
        return httpx.Response(200, json=[{"id": 3}])

    assert asyncio.run(_catalog(handler).find_category_id("fruit")) == 3


def test_fetch_listings_by_ids_without_active_filter():
    seen = {}

    def handler(request):
        seen["params"] = request.url.params
        return httpx.Response(200, json=[ROW])

    rows = asyncio.run(_catalog(handler).fetch_listings(ids=["a", "b"], limit=5, active_only=False))

    assert seen["params"]["id"] == "in.(a,b)"
    assert "is_active" not in seen["params"]
    assert len(rows) == 1


def test_error_status_raises_catalog_error():
    def handler(request):
        return httpx.Response(500, text="boom")

    with pytest.raises(CatalogError) as exc_info:
        asyncio.run(_catalog(handler).fetch_listings())
    assert exc_info.value.code == "DB_ERROR"
    assert exc_info.value.retryable


def test_network_failure_marks_unhealthy():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    assert asyncio.run(_catalog(handler).is_healthy()) is False


def test_create_catalog_requires_url():
    with pytest.raises(CatalogError) as exc_info:
        create_catalog(SearchSettings())
    assert exc_info.value.status_code == 500
