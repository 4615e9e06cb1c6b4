"""Command-line entry point: run the API, reindex the catalog, try a query."""
import asyncio
import logging
import os

import click
from rich.console import Console
from rich.table import Table

from listing_search.config import VERSION, SearchSettings
from listing_search.models import BatchIndexRequest, IndexResult, SearchFilters, SearchRequest
from listing_search.query_sanitizer import sanitize_input

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'
)
logger = logging.getLogger(__name__)

console = Console()


def _print_index_result(result: IndexResult) -> None:
    table = Table(title="Index result")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    for name in ("indexed", "failed", "deleted", "skipped", "duration_ms"):
        table.add_row(name, str(getattr(result, name)))
    console.print(table)
    for error in result.errors:
        console.print(f"[red]{error}[/red]")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--env-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to .env file with environment variables (loaded before settings are read).",
)
@click.option("--log-level", default="INFO", show_default=True, help="Root logging level.")
@click.version_option(VERSION)
@click.pass_context
def cli(ctx: click.Context, env_file, log_level):
    """Hybrid listing search and vector index maintenance."""
    logging.getLogger().setLevel(log_level.upper())
    if env_file and os.path.isfile(env_file):
        from dotenv import load_dotenv

        load_dotenv(env_file, override=False)
        logger.info(f"Environment variables loaded from {env_file}")
    ctx.obj = SearchSettings.from_env()


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.pass_obj
def serve(settings: SearchSettings, host, port):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from listing_search.app import create_fastapi_app

    uvicorn.run(create_fastapi_app(settings), host=host, port=port)


@cli.command()
@click.option("--limit", type=int, default=None, help="Window size (capped at INDEX_MAX_BATCH_SIZE).")
@click.option("--offset", type=int, default=0, show_default=True)
@click.option("--force/--no-force", default=False, show_default=True,
              help="Include inactive listings so they are removed from the index.")
@click.option("--id", "post_ids", multiple=True, help="Reindex only these listing ids.")
@click.option("--all", "walk_all", is_flag=True, help="Walk the whole catalog window by window.")
@click.pass_obj
def reindex(settings: SearchSettings, limit, offset, force, post_ids, walk_all):
    """Reindex catalog listings into the vector store."""
    from listing_search.app import build_services

    async def run() -> IndexResult:
        search_service, indexing_service = build_services(settings)
        try:
            await search_service.vector_store.ensure_ready()
            if walk_all:
                return await indexing_service.reindex_all(force=force, window=limit)
            return await indexing_service.handle_batch_index(
                BatchIndexRequest(post_ids=list(post_ids) or None, limit=limit, offset=offset, force=force)
            )
        finally:
            await search_service.shutdown()

    result = asyncio.run(run())
    _print_index_result(result)
    if result.failed:
        raise SystemExit(1)


@cli.command()
@click.argument("query")
@click.option("--mode", type=click.Choice(["semantic", "text", "hybrid", "fuzzy"]), default="hybrid",
              show_default=True)
@click.option("--limit", type=int, default=10, show_default=True)
@click.option("--category", default=None, help="Restrict to a category name.")
@click.pass_obj
def search(settings: SearchSettings, query, mode, limit, category):
    """Run a single search and print the ranked results."""
    from listing_search.app import build_services

    request = SearchRequest(
        raw_query=query,
        query=sanitize_input(query, settings.max_query_length),
        mode=mode,
        limit=min(max(1, limit), settings.max_limit),
        filters=SearchFilters(category=category),
    )

    async def run():
        search_service, _ = build_services(settings)
        try:
            return await search_service.search(request)
        finally:
            await search_service.shutdown()

    response = asyncio.run(run())

    table = Table(title=f"{mode} search: {query!r} ({response.total} total, {response.took_ms}ms)")
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Title", style="cyan")
    table.add_column("Category")
    table.add_column("Id", style="dim")
    for rank, item in enumerate(response.results, start=1):
        table.add_row(str(rank), f"{item.score:.4f}", item.post_name, item.category, item.id)
    console.print(table)
    if response.degraded:
        console.print("[yellow]One retrieval branch failed; results are degraded.[/yellow]")


def main():
    cli()


if __name__ == "__main__":
    main()
