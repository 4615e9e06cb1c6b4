"""Service interfaces for the listing search services.

This module defines the base interfaces that every service and external
collaborator adapter implements, so the composition root can swap backends
(embedding providers, vector stores, catalogs) without touching the search
and indexing logic.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from listing_search.models import (
    CatalogListingRow,
    CatalogQuery,
    VectorFilter,
    VectorMatch,
    VectorRecord,
)


class ServiceRequest(BaseModel):
    """Base model for service requests."""
    request_id: str


class ServiceResponse(BaseModel):
    """Base model for service responses."""
    request_id: str
    status: str
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class ServiceInterface(ABC):
    """Base interface that all search services must implement."""

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        pass

    @abstractmethod
    async def process_request(self, request: ServiceRequest) -> ServiceResponse:
        """Process a service request and return a response."""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        pass


class EmbeddingProviderInterface(ABC):
    """A single backend able to turn text into vectors."""

    name: str = ""
    model: str = ""
    max_batch_size: int = 32

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials for this provider are present."""
        pass

    @abstractmethod
    def is_healthy(self) -> bool:
        """Whether the provider is configured and its circuit is not open."""
        pass

    @abstractmethod
    def circuit_state(self) -> str:
        """Current circuit breaker state for the provider."""
        pass

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch of texts, one vector per input text."""
        pass

    async def aclose(self) -> None:
        """Release network resources held by the provider."""
        return None


class VectorStoreInterface(ABC):
    """Interface for the vector index holding listing embeddings."""

    @abstractmethod
    async def upsert(self, record: VectorRecord) -> int:
        """Insert or replace a single record."""
        pass

    @abstractmethod
    async def upsert_batch(self, records: Sequence[VectorRecord]) -> int:
        """Insert or replace many records, returns the upserted count."""
        pass

    @abstractmethod
    async def query(
        self,
        vector: List[float],
        top_k: int = 10,
        vector_filter: Optional[VectorFilter] = None,
        include_metadata: bool = True,
    ) -> List[VectorMatch]:
        """Return the nearest neighbours of *vector* ordered by score."""
        pass

    @abstractmethod
    async def delete(self, ids: Sequence[str]) -> int:
        """Delete records by id, returns the number deleted."""
        pass

    @abstractmethod
    async def is_healthy(self) -> bool:
        """Whether the store is currently reachable."""
        pass

    async def stats(self) -> Dict[str, Any]:
        """Index statistics, when the backend exposes them."""
        return {}

    async def ensure_ready(self) -> None:
        """Create collections or indexes the store needs before use."""
        return None

    async def aclose(self) -> None:
        """Release network resources held by the store."""
        return None


class CatalogInterface(ABC):
    """Read access to the relational listing catalog."""

    @abstractmethod
    async def full_text_search(
        self, text: str, query: CatalogQuery
    ) -> Tuple[List[CatalogListingRow], int]:
        """Language-aware full-text search over listing titles."""
        pass

    @abstractmethod
    async def substring_search(
        self, escaped_pattern: str, query: CatalogQuery
    ) -> Tuple[List[CatalogListingRow], int]:
        """Case-insensitive substring match on title and description.

        *escaped_pattern* must already have ``%``, ``_`` and ``\\`` escaped.
        """
        pass

    @abstractmethod
    async def find_category_id(self, name: str) -> Optional[int]:
        """Resolve a category name (case-insensitive) to its id."""
        pass

    @abstractmethod
    async def get_category_name(self, category_id: int) -> Optional[str]:
        """Resolve a category id to its display name."""
        pass

    @abstractmethod
    async def fetch_listings(
        self,
        ids: Optional[Sequence[str]] = None,
        limit: int = 100,
        offset: int = 0,
        active_only: bool = True,
    ) -> List[CatalogListingRow]:
        """Fetch listing rows for indexing, newest first."""
        pass

    async def is_healthy(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class CacheServiceInterface(ABC):
    """Interface for the process-local result cache."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get a value from the cache."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Set a value in the cache with optional TTL."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a value from the cache."""
        pass

    @abstractmethod
    async def flush(self) -> bool:
        """Flush the entire cache."""
        pass
