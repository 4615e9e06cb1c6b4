"""Tests for the click command group."""

from click.testing import CliRunner

from listing_search import app as app_module
from listing_search.cli import cli
from listing_search.config import SearchSettings
from listing_search.embedding_service import EmbeddingService
from listing_search.indexing_service import IndexingService
from listing_search.query_service import SearchService
from listing_search.vector_store import InMemoryVectorStore

from fakes import FakeCatalog, FakeProvider, make_row

LISTING_ID = "00000000-0000-4000-8000-000000000007"


def _fake_build(rows):
    def build(settings):
        settings = SearchSettings(embedding_dimensions=4)
        embedding = EmbeddingService([FakeProvider("zep")], dimensions=4)
        store = InMemoryVectorStore()
        catalog = FakeCatalog(rows=rows, fts_rows=rows)
        return (
            SearchService(settings, embedding, store, catalog),
            IndexingService(settings, embedding, store, catalog),
        )
    return build


def test_help_lists_commands():
    result = CliRunner().invoke(cli, ["--help"])
    assert result.exit_code == 0
    for command in ("serve", "reindex", "search"):
        assert command in result.output


def test_search_prints_results(monkeypatch):
    monkeypatch.setattr(app_module, "build_services", _fake_build([make_row("p1", "Pizza")]))
    result = CliRunner().invoke(cli, ["search", "pizza", "--mode", "text"])
    assert result.exit_code == 0, result.output
    assert "Pizza" in result.output


def test_reindex_reports_counts(monkeypatch):
    monkeypatch.setattr(app_module, "build_services", _fake_build([make_row(LISTING_ID, "Bread")]))
    result = CliRunner().invoke(cli, ["reindex", "--limit", "10"])
    assert result.exit_code == 0, result.output
    assert "indexed" in result.output


def test_reindex_rejects_bad_id(monkeypatch):
    monkeypatch.setattr(app_module, "build_services", _fake_build([]))
    result = CliRunner().invoke(cli, ["reindex", "--id", "nope"])
    assert result.exit_code != 0
