"""Read access to the relational listing catalog through PostgREST."""
import logging
from typing import Any, List, Optional, Sequence, Tuple

import httpx

from listing_search.config import SearchSettings
from listing_search.errors import CatalogError
from listing_search.models import CatalogListingRow, CatalogQuery
from listing_search.service_interfaces import CatalogInterface

# Configure logging
logger = logging.getLogger(__name__)

LISTING_COLUMNS = (
    "id,post_name,post_description,post_address,post_type,category_id,images,"
    "latitude,longitude,profile_id,is_active,is_arranged,created_at,updated_at,"
    "pickup_time,available_hours,categories(name)"
)

Params = List[Tuple[str, str]]


def quote_value(value: str) -> str:
    """Double-quote a value for PostgREST filter syntax."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def parse_content_range(header: Optional[str], fallback: int) -> int:
    """Total row count from a ``Content-Range: 0-19/42`` header."""
    if not header or "/" not in header:
        return fallback
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else fallback


class PostgrestCatalog(CatalogInterface):
    """Catalog backed by the ``posts`` and ``categories`` tables."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.headers = headers

    async def _get(self, table: str, params: Params, count: bool = False, code: str = "SEARCH_ERROR"):
        headers = dict(self.headers)
        if count:
            headers["Prefer"] = "count=exact"
        try:
            response = await self.client.get(f"{self.base_url}/{table}", params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise CatalogError(f"Catalog request failed: {exc}", code) from exc
        if response.status_code >= 400:
            raise CatalogError(
                f"Catalog query on {table} failed: {response.status_code} - {response.text[:200]}",
                code,
            )
        return response

    @staticmethod
    def _listing_params(query: CatalogQuery) -> Params:
        params: Params = [
            ("select", LISTING_COLUMNS),
            ("is_active", "eq.true"),
            ("is_arranged", "eq.false"),
            ("order", "created_at.desc"),
            ("limit", str(query.limit)),
            ("offset", str(query.offset)),
        ]
        if query.category_id is not None:
            params.append(("category_id", f"eq.{query.category_id}"))
        if query.category_ids:
            params.append(("category_id", f"in.({','.join(str(i) for i in query.category_ids)})"))
        if query.profile_id:
            params.append(("profile_id", f"eq.{query.profile_id}"))
        if query.posted_after is not None:
            params.append(("created_at", f"gte.{query.posted_after.isoformat()}"))
        return params

    async def _search(self, params: Params) -> Tuple[List[CatalogListingRow], int]:
        response = await self._get("posts", params, count=True)
        rows = [CatalogListingRow.from_row(row) for row in response.json()]
        return rows, parse_content_range(response.headers.get("content-range"), len(rows))

    async def full_text_search(
        self, text: str, query: CatalogQuery
    ) -> Tuple[List[CatalogListingRow], int]:
        params = self._listing_params(query)
        params.append(("post_name", f"wfts(english).{text}"))
        return await self._search(params)

    async def substring_search(
        self, escaped_pattern: str, query: CatalogQuery
    ) -> Tuple[List[CatalogListingRow], int]:
        # PostgREST reads '*' as '%' in like patterns and has no escape for it
        literal = escaped_pattern.replace("*", "")
        pattern = quote_value(f"*{literal}*")
        params = self._listing_params(query)
        params.append(("or", f"(post_name.ilike.{pattern},post_description.ilike.{pattern})"))
        return await self._search(params)

    async def find_category_id(self, name: str) -> Optional[int]:
        response = await self._get(
            "categories",
            [("select", "id"), ("name", f"ilike.{quote_value(name)}"), ("limit", "1")],
        )
        rows = response.json()
        return rows[0]["id"] if rows else None

    async def get_category_name(self, category_id: int) -> Optional[str]:
        response = await self._get(
            "categories",
            [("select", "name"), ("id", f"eq.{category_id}"), ("limit", "1")],
            code="DB_ERROR",
        )
        rows = response.json()
        return rows[0].get("name") if rows else None

    async def fetch_listings(
        self,
        ids: Optional[Sequence[str]] = None,
        limit: int = 100,
        offset: int = 0,
        active_only: bool = True,
    ) -> List[CatalogListingRow]:
        params: Params = [
            ("select", LISTING_COLUMNS),
            ("order", "created_at.desc"),
            ("limit", str(limit)),
            ("offset", str(offset)),
        ]
        if active_only:
            params.append(("is_active", "eq.true"))
            params.append(("is_arranged", "eq.false"))
        if ids:
            params.append(("id", f"in.({','.join(ids)})"))

        response = await self._get("posts", params, code="DB_ERROR")
        rows: List[Any] = response.json()
        logger.debug(f"Fetched {len(rows)} listings (offset={offset}, limit={limit})")
        return [CatalogListingRow.from_row(row) for row in rows]

    async def is_healthy(self) -> bool:
        try:
            await self._get("posts", [("select", "id"), ("limit", "1")])
        except CatalogError as e:
            logger.warning(f"Catalog health check failed: {e}")
            return False
        return True

    async def aclose(self) -> None:
        await self.client.aclose()


def create_catalog(settings: SearchSettings) -> PostgrestCatalog:
    if not settings.catalog_url:
        raise CatalogError("CATALOG_URL must be configured", "CONFIG_ERROR", status_code=500)
    return PostgrestCatalog(
        settings.catalog_url,
        api_key=settings.catalog_api_key,
        timeout=settings.catalog_timeout_seconds,
    )
