"""Data transfer models shared across the search and indexing services.

Each boundary (catalog rows, vector metadata, API results) gets its own
model with an explicit mapping function, so every field used downstream is
known to exist upstream.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

SearchMode = Literal["semantic", "text", "hybrid", "fuzzy"]
SEARCH_MODES = ("semantic", "text", "hybrid", "fuzzy")

RESULT_DESCRIPTION_CHARS = 500
METADATA_DESCRIPTION_CHARS = 1000
MAX_INDEX_ERRORS = 50


class Coordinates(BaseModel):
    lat: float
    lng: float


def to_coordinates(lat: Any, lng: Any) -> Optional[Coordinates]:
    """Build a point from loosely typed lat/lng, or None when unusable."""
    if lat is None or lng is None:
        return None
    try:
        lat_f, lng_f = float(lat), float(lng)
    except (TypeError, ValueError):
        return None
    if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0):
        return None
    return Coordinates(lat=lat_f, lng=lng_f)


# ---------------------------------------------------------------------------
# Search request side
# ---------------------------------------------------------------------------


class GeoLocation(BaseModel):
    """Centre point and radius for geographic filtering."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    lat: float
    lng: float
    radius_km: float = Field(alias="radiusKm")


class SearchFilters(BaseModel):
    """Optional constraints; an absent field places no constraint."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    category: Optional[str] = None
    dietary: Optional[List[str]] = None
    location: Optional[GeoLocation] = None
    max_age_hours: Optional[float] = Field(default=None, alias="maxAgeHours")
    profile_id: Optional[str] = Field(default=None, alias="profileId")
    category_ids: Optional[List[int]] = Field(default=None, alias="categoryIds")

    def to_key_dict(self) -> Dict[str, Any]:
        """Canonical, JSON-friendly form used for cache keys."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        if "dietary" in data:
            data["dietary"] = sorted(data["dietary"])
        if "categoryIds" in data:
            data["categoryIds"] = sorted(data["categoryIds"])
        return data


class SearchRequest(BaseModel):
    """One incoming search query; never persisted."""
    model_config = ConfigDict(frozen=True)

    raw_query: str
    query: str
    mode: SearchMode = "hybrid"
    limit: int = 20
    offset: int = 0
    filters: SearchFilters = Field(default_factory=SearchFilters)


class SearchResultItem(BaseModel):
    """A single ranked listing returned to the caller."""

    id: str
    score: float
    post_name: str = ""
    post_description: str = ""
    category: str = ""
    pickup_address: str = ""
    location: Optional[Coordinates] = None
    distance_km: Optional[float] = None
    posted_at: str = ""
    dietary_tags: Optional[List[str]] = None
    images: Optional[List[str]] = None


class SearchOutcome(BaseModel):
    """Result of one retrieval mode before it is wrapped in a response."""

    results: List[SearchResultItem] = Field(default_factory=list)
    total: int = 0
    provider: Optional[str] = None
    degraded: bool = False


class SearchResponse(BaseModel):
    results: List[SearchResultItem]
    total: int
    mode: SearchMode
    took_ms: int
    provider: Optional[str] = None
    cached: bool = False
    degraded: bool = False

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        payload["results"] = [r.model_dump(exclude_none=True) for r in self.results]
        return payload


# ---------------------------------------------------------------------------
# Catalog boundary
# ---------------------------------------------------------------------------


class CatalogQuery(BaseModel):
    """Constraints pushed down to the relational catalog."""

    limit: int = 20
    offset: int = 0
    category_id: Optional[int] = None
    category_ids: Optional[List[int]] = None
    profile_id: Optional[str] = None
    posted_after: Optional[datetime] = None


class CatalogListingRow(BaseModel):
    """A listing row as read from the catalog or delivered by a webhook."""
    model_config = ConfigDict(extra="ignore")

    id: str
    post_name: str = ""
    post_description: str = ""
    post_address: str = ""
    post_type: str = ""
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    images: Optional[List[str]] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    profile_id: Optional[str] = None
    is_active: bool = True
    is_arranged: bool = False
    created_at: str = ""
    updated_at: Optional[str] = None
    pickup_time: Optional[str] = None
    available_hours: Optional[float] = None
    dietary_tags: Optional[List[str]] = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_raw_row(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("id") is not None:
            data["id"] = str(data["id"])
        categories = data.pop("categories", None)
        if isinstance(categories, dict) and categories.get("name") and not data.get("category_name"):
            data["category_name"] = categories["name"]
        for key in ("post_name", "post_description", "post_address", "post_type", "created_at"):
            if data.get(key) is None:
                data[key] = ""
        for key in ("is_active", "is_arranged"):
            if data.get(key) is None:
                data.pop(key, None)
        if data.get("profile_id") is not None:
            data["profile_id"] = str(data["profile_id"])
        return data

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CatalogListingRow":
        """Map a raw row, flattening the embedded ``categories(name)`` join."""
        return cls.model_validate(row)

    @property
    def is_indexable(self) -> bool:
        return self.is_active and not self.is_arranged

    @property
    def category_label(self) -> str:
        if self.category_name:
            return self.category_name
        if self.category_id is not None:
            return f"category_{self.category_id}"
        return ""

    def embedding_text(self, max_chars: int = 8000) -> str:
        """Text sent to the embedding provider: title, description, category."""
        return f"{self.post_name} {self.post_description} {self.category_label}"[:max_chars]

    def to_result_item(self, rank: int) -> SearchResultItem:
        """Map to a result, scoring by position since no relevance signal exists."""
        return SearchResultItem(
            id=self.id,
            score=round(1 - rank * 0.01, 6),
            post_name=self.post_name,
            post_description=self.post_description[:RESULT_DESCRIPTION_CHARS],
            category=self.category_name or "",
            pickup_address=self.post_address,
            location=to_coordinates(self.latitude, self.longitude),
            posted_at=self.created_at,
            dietary_tags=self.dietary_tags or None,
            images=self.images or None,
        )

    def to_vector_metadata(self) -> "VectorMetadata":
        return VectorMetadata(
            post_id=self.id,
            post_name=self.post_name,
            post_description=self.post_description[:METADATA_DESCRIPTION_CHARS],
            category=self.category_label,
            category_id=self.category_id,
            post_type=self.post_type,
            pickup_address=self.post_address,
            latitude=self.latitude,
            longitude=self.longitude,
            posted_at=self.created_at,
            profile_id=self.profile_id,
            is_active=self.is_active,
            dietary_tags=self.dietary_tags,
        )


# ---------------------------------------------------------------------------
# Vector store boundary
# ---------------------------------------------------------------------------


class VectorMetadata(BaseModel):
    """Denormalised listing fields stored next to each embedding."""
    model_config = ConfigDict(extra="allow")

    post_id: Optional[str] = None
    post_name: Optional[str] = None
    post_description: Optional[str] = None
    category: Optional[str] = None
    category_id: Optional[int] = None
    post_type: Optional[str] = None
    pickup_address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    posted_at: Optional[str] = None
    profile_id: Optional[str] = None
    is_active: Optional[bool] = None
    dietary_tags: Optional[List[str]] = None


class VectorRecord(BaseModel):
    id: str
    vector: List[float]
    metadata: VectorMetadata = Field(default_factory=VectorMetadata)


class VectorMatch(BaseModel):
    id: str
    score: float
    metadata: Optional[VectorMetadata] = None

    def to_result_item(self) -> SearchResultItem:
        m = self.metadata or VectorMetadata()
        return SearchResultItem(
            id=str(self.id),
            score=self.score,
            post_name=m.post_name or "",
            post_description=(m.post_description or "")[:RESULT_DESCRIPTION_CHARS],
            category=m.category or "",
            pickup_address=m.pickup_address or "",
            location=to_coordinates(m.latitude, m.longitude),
            posted_at=m.posted_at or "",
            dietary_tags=m.dietary_tags or None,
        )


class VectorFilter(BaseModel):
    """Backend-neutral metadata predicate for vector queries."""

    category: Optional[str] = None
    dietary: Optional[List[str]] = None
    is_active: Optional[bool] = None
    profile_id: Optional[str] = None
    posted_after: Optional[datetime] = None

    def is_empty(self) -> bool:
        return not any(
            value is not None and value != []
            for value in (self.category, self.dietary, self.is_active, self.profile_id, self.posted_after)
        )


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


class EmbeddingResult(BaseModel):
    embedding: List[float]
    provider: str
    model: str
    dimensions: int
    latency_ms: int


class BatchEmbeddingResult(BaseModel):
    embeddings: List[List[float]]
    provider: str
    model: str
    dimensions: int
    latency_ms: int


# ---------------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------------


class IndexResult(BaseModel):
    """Counts for one webhook call or batch run."""

    indexed: int = 0
    failed: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    duration_ms: int = 0

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_INDEX_ERRORS:
            self.errors.append(message)


class WebhookPayload(BaseModel):
    """Database change event for a single listing."""

    type: Literal["INSERT", "UPDATE", "DELETE"]
    table: Optional[str] = None
    schema_name: Optional[str] = Field(default=None, alias="schema")
    record: Optional[CatalogListingRow] = None
    old_record: Optional[CatalogListingRow] = None

    model_config = ConfigDict(populate_by_name=True)


class BatchIndexRequest(BaseModel):
    post_ids: Optional[List[str]] = None
    limit: Optional[int] = None
    offset: int = 0
    force: bool = False
