"""Runtime configuration for the listing search services.

All values can be overridden through environment variables; see
``SearchSettings.from_env``. The ranking constants are kept here rather
than in the fusion code so they can be tuned against labelled query sets.
"""
import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator

VERSION = "2.0.0"


class SearchSettings(BaseModel):
    """Tunables for search, caching, embedding and indexing."""

    # Rank fusion
    rrf_k: int = Field(default=60, ge=0)
    semantic_weight: float = Field(default=1.2, ge=0)
    text_weight: float = Field(default=1.0, ge=0)
    overlap_boost: float = Field(default=1.5, ge=0)
    min_score_threshold: float = Field(default=0.3, ge=0, le=1)

    # Request bounds
    default_limit: int = Field(default=20, ge=1)
    max_limit: int = Field(default=100, ge=1)
    max_query_length: int = Field(default=500, ge=1)
    default_radius_km: float = Field(default=50.0, gt=0)

    # Cache
    cache_ttl_seconds: float = Field(default=60.0, gt=0)
    cache_max_size: int = Field(default=1000, ge=1)

    # Timeouts
    embedding_timeout_seconds: float = Field(default=30.0, gt=0)
    vector_timeout_seconds: float = Field(default=30.0, gt=0)
    catalog_timeout_seconds: float = Field(default=30.0, gt=0)

    # Embeddings and indexing
    embedding_dimensions: int = Field(default=1536, ge=1)
    embedding_batch_size: int = Field(default=20, ge=1)
    max_batch_size: int = Field(default=100, ge=1)
    embed_text_max_chars: int = Field(default=8000, ge=1)
    batch_delay_seconds: float = Field(default=0.0, ge=0)

    # Secrets
    webhook_secret: Optional[str] = None
    admin_api_key: Optional[str] = None

    # Embedding providers
    zep_api_key: Optional[str] = None
    huggingface_token: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_embedding_model: str = "text-embedding-3-small"

    # Vector store
    vector_backend: str = "memory"
    upstash_url: Optional[str] = None
    upstash_token: Optional[str] = None
    qdrant_url: Optional[str] = None
    qdrant_api_key: Optional[str] = None
    qdrant_collection: str = "listings"

    # Catalog
    catalog_url: Optional[str] = None
    catalog_api_key: Optional[str] = None

    @field_validator("vector_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("memory", "upstash", "qdrant"):
            raise ValueError(f"Unknown vector backend: {value}")
        return value

    @classmethod
    def from_env(cls, **overrides) -> "SearchSettings":
        """Build settings from environment variables, then apply *overrides*."""
        env_map = {
            "rrf_k": "SEARCH_RRF_K",
            "semantic_weight": "SEARCH_SEMANTIC_WEIGHT",
            "text_weight": "SEARCH_TEXT_WEIGHT",
            "overlap_boost": "SEARCH_OVERLAP_BOOST",
            "min_score_threshold": "SEARCH_MIN_SCORE",
            "default_limit": "SEARCH_DEFAULT_LIMIT",
            "max_limit": "SEARCH_MAX_LIMIT",
            "max_query_length": "SEARCH_MAX_QUERY_LENGTH",
            "default_radius_km": "SEARCH_DEFAULT_RADIUS_KM",
            "cache_ttl_seconds": "SEARCH_CACHE_TTL",
            "cache_max_size": "SEARCH_CACHE_MAX_SIZE",
            "embedding_timeout_seconds": "EMBEDDING_TIMEOUT",
            "vector_timeout_seconds": "VECTOR_TIMEOUT",
            "catalog_timeout_seconds": "CATALOG_TIMEOUT",
            "embedding_dimensions": "EMBEDDING_DIMENSIONS",
            "embedding_batch_size": "EMBEDDING_BATCH_SIZE",
            "max_batch_size": "INDEX_MAX_BATCH_SIZE",
            "embed_text_max_chars": "EMBED_TEXT_MAX_CHARS",
            "batch_delay_seconds": "INDEX_BATCH_DELAY",
            "webhook_secret": "WEBHOOK_SECRET",
            "admin_api_key": "ADMIN_API_KEY",
            "zep_api_key": "ZEP_API_KEY",
            "huggingface_token": "HUGGINGFACE_ACCESS_TOKEN",
            "openai_api_key": "OPENAI_API_KEY",
            "openai_embedding_model": "OPENAI_EMBEDDING_MODEL",
            "vector_backend": "VECTOR_BACKEND",
            "upstash_url": "UPSTASH_VECTOR_REST_URL",
            "upstash_token": "UPSTASH_VECTOR_REST_TOKEN",
            "qdrant_url": "QDRANT_URL",
            "qdrant_api_key": "QDRANT_API_KEY",
            "qdrant_collection": "QDRANT_COLLECTION",
            "catalog_url": "CATALOG_URL",
            "catalog_api_key": "CATALOG_API_KEY",
        }
        values = {}
        for field_name, env_var in env_map.items():
            raw = os.getenv(env_var)
            if raw is not None and raw != "":
                values[field_name] = raw
        values.update(overrides)
        return cls(**values)
