"""HTTP surface and composition root for the listing search API.

Routes (all on ``/``):
    GET  ?q=pizza&mode=hybrid      search
    POST {query, mode, filters}    search
    GET  ?route=health|stats       introspection
    POST ?route=index              signed database webhook
    POST ?route=batch              admin batch reindex
"""
import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from listing_search.cache_service import RequestDeduplicator, ResultCache
from listing_search.catalog import create_catalog
from listing_search.config import VERSION, SearchSettings
from listing_search.embedding_service import create_embedding_service
from listing_search.errors import AppError, AuthenticationError, ValidationError
from listing_search.indexing_service import IndexingService
from listing_search.models import BatchIndexRequest, WebhookPayload
from listing_search.query_sanitizer import parse_search_body, parse_search_params
from listing_search.query_service import SearchService, SearchStats
from listing_search.vector_store import create_vector_store

# Configure logging
logger = logging.getLogger(__name__)


def ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data})


def error_response(exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


def _parse_json(raw: bytes) -> Any:
    try:
        return json.loads(raw or b"null")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Request body must be valid JSON") from exc


def _require_admin(request: Request, settings: SearchSettings) -> None:
    """Bearer-token check for admin routes; fails closed without a key."""
    header = request.headers.get("authorization", "")
    token = header[7:] if header.lower().startswith("bearer ") else ""
    if not settings.admin_api_key or not token:
        raise AuthenticationError()
    if not hmac.compare_digest(token.encode("utf-8"), settings.admin_api_key.encode("utf-8")):
        raise AuthenticationError()


def build_services(settings: SearchSettings):
    """Create one instance of every collaborator for this process."""
    embedding_service = create_embedding_service(settings)
    vector_store = create_vector_store(settings)
    catalog = create_catalog(settings)
    search_service = SearchService(
        settings,
        embedding_service,
        vector_store,
        catalog,
        cache=ResultCache(settings.cache_ttl_seconds, settings.cache_max_size),
        deduplicator=RequestDeduplicator(),
        stats=SearchStats(),
    )
    indexing_service = IndexingService(settings, embedding_service, vector_store, catalog)
    return search_service, indexing_service


def create_fastapi_app(
    settings: Optional[SearchSettings] = None,
    search_service: Optional[SearchService] = None,
    indexing_service: Optional[IndexingService] = None,
) -> FastAPI:
    """Create the FastAPI app, wiring services unless they are injected."""
    settings = settings or SearchSettings.from_env()
    if search_service is None or indexing_service is None:
        built_search, built_indexing = build_services(settings)
        search_service = search_service or built_search
        indexing_service = indexing_service or built_indexing

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await search_service.vector_store.ensure_ready()
        except AppError as e:
            logger.error(f"Vector store not ready at startup: {e}")
        logger.info(f"Listing search API {VERSION} started")
        yield
        await indexing_service.shutdown()
        await search_service.shutdown()

    app = FastAPI(title="Listing Search API", version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.search_service = search_service
    app.state.indexing_service = indexing_service

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return error_response(exc)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return error_response(AppError("An unexpected error occurred"))

    @app.get("/")
    async def get_root(request: Request):
        params = request.query_params
        route = params.get("route")

        if route == "health":
            health = await search_service.health_check()
            return ok(health, status_code=503 if health["status"] == "unhealthy" else 200)
        if route == "stats":
            return ok(search_service.stats_payload())

        search_request = parse_search_params(params, settings)
        response = await search_service.search(search_request)
        return ok(response.to_payload())

    @app.post("/")
    async def post_root(request: Request):
        route = request.query_params.get("route")
        raw_body = await request.body()

        if route == "index":
            indexing_service.verify_signature(raw_body, request.headers.get("x-webhook-signature"))
            try:
                payload = WebhookPayload.model_validate(_parse_json(raw_body))
            except PydanticValidationError as exc:
                raise ValidationError(
                    "Invalid webhook payload",
                    details=exc.errors(include_url=False, include_context=False),
                ) from exc
            result = await indexing_service.handle_webhook_index(payload)
            return ok(result.model_dump())

        if route == "batch":
            _require_admin(request, settings)
            body = _parse_json(raw_body) if raw_body.strip() else {}
            try:
                batch_request = BatchIndexRequest.model_validate(body or {})
            except PydanticValidationError as exc:
                raise ValidationError(
                    "Invalid batch request",
                    details=exc.errors(include_url=False, include_context=False),
                ) from exc
            result = await indexing_service.handle_batch_index(batch_request)
            return ok(result.model_dump())

        search_request = parse_search_body(_parse_json(raw_body), settings)
        response = await search_service.search(search_request)
        return ok(response.to_payload())

    return app
