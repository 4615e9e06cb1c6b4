"""Query cleaning, request parsing and cache-key construction.

Sanitisation is lossy but permissive: odd input is cleaned rather than
rejected, so a search always returns something. Only a missing query on the
body route and malformed identifiers are treated as validation errors.
"""
import hashlib
import json
import math
import re
from typing import Any, Dict, List, Mapping, Optional

from listing_search.config import SearchSettings
from listing_search.errors import ValidationError
from listing_search.models import SEARCH_MODES, GeoLocation, SearchFilters, SearchRequest

MAX_QUERY_LENGTH = 500

_MARKUP_PATTERNS = [
    re.compile(r"[<>]"),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+=", re.IGNORECASE),
]
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")
_LIKE_SPECIAL = re.compile(r"([%_\\])")
_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def sanitize_input(value: str, max_length: int = MAX_QUERY_LENGTH) -> str:
    """Strip control characters, markup and script handlers, then bound length.

    Markup removal repeats until nothing changes, since deleting one match
    can join its neighbours into a new one (``javajavascript:script:``).
    """
    sanitized = _CONTROL_CHARS.sub("", value)
    previous = None
    while sanitized != previous:
        previous = sanitized
        for pattern in _MARKUP_PATTERNS:
            sanitized = pattern.sub("", sanitized)
    sanitized = _WHITESPACE.sub(" ", sanitized)
    return sanitized.strip()[:max_length]


def normalize_query(query: str) -> str:
    """Lower-cased, whitespace-collapsed form used for cache keys and matching."""
    return _WHITESPACE.sub(" ", query.lower()).strip()


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so the value matches literally."""
    return _LIKE_SPECIAL.sub(r"\\\1", value)


def validate_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID.match(value))


def cache_key(
    mode: str,
    query: str,
    filters: Optional[SearchFilters],
    limit: int,
    offset: int,
) -> str:
    """Deterministic key over (mode, normalised query, filters, limit, offset)."""
    material = {
        "m": mode,
        "q": normalize_query(query),
        "f": filters.to_key_dict() if filters else {},
        "l": limit,
        "o": offset,
    }
    digest = hashlib.sha256(
        json.dumps(material, sort_keys=True, separators=(",", ":")).encode("utf-8")
    ).hexdigest()
    return f"search:{digest}"


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


def _parse_mode(value: Any) -> str:
    return value if value in SEARCH_MODES else "hybrid"


def _parse_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed != 0 or default == 0 else default


def _clamp_limit(value: Any, settings: SearchSettings) -> int:
    limit = _parse_int(value, settings.default_limit)
    return min(max(1, limit), settings.max_limit)


def _clamp_offset(value: Any) -> int:
    return max(0, _parse_int(value, 0))


def _parse_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _parse_category_ids(raw: Optional[str]) -> Optional[List[int]]:
    if not raw:
        return None
    ids = []
    for part in raw.split(","):
        part = part.strip()
        try:
            ids.append(int(part))
        except ValueError:
            continue
    return ids or None


def parse_search_params(params: Mapping[str, str], settings: SearchSettings) -> SearchRequest:
    """Build a request from GET query-string parameters.

    The caller checks ``route`` first; this function requires ``q``.

    Raises:
        ValidationError: when ``q`` is missing or blank
    """
    raw_q = (params.get("q") or "")[: settings.max_query_length]
    if not raw_q.strip():
        raise ValidationError("q is required for search")

    query = sanitize_input(raw_q, settings.max_query_length)

    lat = _parse_float(params.get("lat"))
    lng = _parse_float(params.get("lng"))
    radius = _parse_float(params.get("radiusKm"))

    location = None
    if lat is not None and lng is not None:
        location = GeoLocation(
            lat=lat,
            lng=lng,
            radius_km=radius if radius and radius > 0 else settings.default_radius_km,
        )

    filters = SearchFilters(
        location=location,
        category_ids=_parse_category_ids(params.get("categoryIds")),
    )

    return SearchRequest(
        raw_query=raw_q,
        query=query,
        mode=_parse_mode(params.get("mode")),
        limit=_clamp_limit(params.get("limit"), settings),
        offset=_clamp_offset(params.get("offset")),
        filters=filters,
    )


def _parse_body_filters(raw: Any) -> SearchFilters:
    if not isinstance(raw, dict):
        return SearchFilters()

    values: Dict[str, Any] = {}

    category = raw.get("category")
    if isinstance(category, str) and sanitize_input(category):
        values["category"] = sanitize_input(category)

    dietary = raw.get("dietary")
    if isinstance(dietary, list):
        tags = [sanitize_input(d) for d in dietary if isinstance(d, str)]
        tags = [t for t in tags if t]
        if tags:
            values["dietary"] = tags

    location = raw.get("location")
    if isinstance(location, dict):
        lat, lng, radius = location.get("lat"), location.get("lng"), location.get("radiusKm")
        if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (lat, lng, radius)):
            values["location"] = GeoLocation(lat=lat, lng=lng, radius_km=radius)

    max_age = raw.get("maxAgeHours")
    if isinstance(max_age, (int, float)) and not isinstance(max_age, bool) and max_age > 0:
        values["max_age_hours"] = float(max_age)

    profile_id = raw.get("profileId")
    if validate_uuid(profile_id):
        values["profile_id"] = profile_id

    category_ids = raw.get("categoryIds")
    if isinstance(category_ids, list):
        ids = [i for i in category_ids if isinstance(i, int) and not isinstance(i, bool)]
        if ids:
            values["category_ids"] = ids

    return SearchFilters(**values)


def parse_search_body(body: Any, settings: SearchSettings) -> SearchRequest:
    """Build a request from a JSON body ``{query, mode, limit, offset, filters}``.

    Raises:
        ValidationError: when ``query`` is missing or not a non-empty string
    """
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    raw_q = body.get("query")
    if not isinstance(raw_q, str) or not raw_q.strip():
        raise ValidationError("query is required and must be a non-empty string")

    raw_q = raw_q[: settings.max_query_length]
    query = sanitize_input(raw_q, settings.max_query_length)

    return SearchRequest(
        raw_query=raw_q,
        query=query,
        mode=_parse_mode(body.get("mode")),
        limit=_clamp_limit(body.get("limit"), settings),
        offset=_clamp_offset(body.get("offset")),
        filters=_parse_body_filters(body.get("filters")),
    )
