"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from listing_search.config import SearchSettings


def test_defaults_match_ranking_constants():
    settings = SearchSettings()
    assert settings.rrf_k == 60
    assert settings.semantic_weight == 1.2
    assert settings.text_weight == 1.0
    assert settings.overlap_boost == 1.5
    assert settings.min_score_threshold == 0.3
    assert settings.cache_ttl_seconds == 60
    assert settings.vector_backend == "memory"


def test_from_env_reads_and_coerces(monkeypatch):
    monkeypatch.setenv("SEARCH_RRF_K", "30")
    monkeypatch.setenv("SEARCH_MIN_SCORE", "0.5")
    monkeypatch.setenv("VECTOR_BACKEND", " Qdrant ")
    monkeypatch.setenv("QDRANT_URL", "http://localhost:6333")
    monkeypatch.setenv("WEBHOOK_SECRET", "")

    settings = SearchSettings.from_env()

    assert settings.rrf_k == 30
    assert settings.min_score_threshold == 0.5
    assert settings.vector_backend == "qdrant"
    assert settings.qdrant_url == "http://localhost:6333"
    assert settings.webhook_secret is None


def test_overrides_win_over_environment(monkeypatch):
    monkeypatch.setenv("SEARCH_CACHE_TTL", "120")
    assert SearchSettings.from_env(cache_ttl_seconds=5).cache_ttl_seconds == 5


def test_unknown_backend_rejected(monkeypatch):
    monkeypatch.setenv("VECTOR_BACKEND", "pinecone")
    with pytest.raises(ValidationError):
        SearchSettings.from_env()


def test_out_of_range_threshold_rejected():
    with pytest.raises(ValidationError):
        SearchSettings(min_score_threshold=1.5)
