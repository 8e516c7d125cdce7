"""CLI interface for lz-bookmarks.

Commands:
    setup   - Configure the API base URL and query behaviour
    list    - Fetch a bookmark listing and print it as markdown
    link    - Print the route a tag link toggles to
    status  - Show config and cache status
"""

import asyncio
import sys
from pathlib import Path

import click

from .config import (
    CONFIG_FILE,
    ApiConfig,
    AppConfig,
    config_exists,
    load_config,
    save_config,
)
from .errors import LzError
from .logging_config import setup_logging


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--config", type=click.Path(), default=None, help="Config file path")
@click.pass_context
def main(ctx, verbose, config):
    """lz bookmarks: browse your bookmarks by tag from the terminal."""
    setup_logging(debug=verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else CONFIG_FILE


@main.command()
@click.pass_context
def setup(ctx):
    """Configure the API connection."""
    config_path = ctx.obj["config_path"]

    click.echo("lz bookmarks: Setup")
    click.echo("=" * 40)
    click.echo()
    base_url = click.prompt("API base URL", default="http://localhost:8080/api/v1/")
    per_page = click.prompt("Bookmarks per page", default=20, type=int)

    config = AppConfig(api=ApiConfig(base_url=base_url, per_page=per_page))
    save_config(config, config_path)
    click.echo(f"\nConfig saved to {config_path}")
    click.echo("Run 'lz-bookmarks list' to see your bookmarks.")


@main.command(name="list")
@click.argument("route", default="/")
@click.option("--pages", default=1, show_default=True, help="Number of pages to load")
@click.option("--all", "fetch_all", is_flag=True, help="Load every page")
@click.option("--offline", is_flag=True, help="Only show cached results")
@click.option("-o", "--output", type=click.Path(), default=None, help="Output file")
@click.pass_context
def list_bookmarks(ctx, route, pages, fetch_all, offline, output):
    """Print the listing for ROUTE ('/' or '/tag/<tags>') as markdown."""
    config = _require_config(ctx)

    from .render import render_listing
    from .routes import resolve_route

    try:
        resolved = resolve_route(route)
        listing = asyncio.run(
            _load_listing(config, resolved, pages, fetch_all, offline)
        )
    except LzError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if listing.data is None:
        if listing.error is not None:
            click.echo(f"Error: {listing.error}", err=True)
        else:
            click.echo("Error: Nothing cached for this listing yet.", err=True)
        sys.exit(1)
    if listing.error is not None:
        click.echo(f"Warning: showing cached results. {listing.error}", err=True)

    markdown = render_listing(
        listing.bookmarks,
        resolved.active_tags,
        title=resolved.title,
        has_next_page=listing.has_next_page,
    )
    if output:
        Path(output).write_text(markdown, encoding="utf-8")
        click.echo(f"Wrote {len(listing.bookmarks)} bookmarks to {output}", err=True)
    else:
        click.echo(markdown, nl=False)


async def _load_listing(config, resolved, pages, fetch_all, offline):
    from .cache import CacheStore, QueryCache
    from .client import BookmarksClient
    from .query import QueryClient

    store = CacheStore(config.cache_dir)
    cache = QueryCache()
    store.load(cache)

    async with BookmarksClient(
        config.api.base_url,
        timeout=config.api.timeout,
        per_page=config.api.per_page,
    ) as api:
        queries = QueryClient(api, cache, config.query.to_options())
        listing = queries.use_infinite_fetch(resolved.operation_id, resolved.params)
        if not offline:
            await listing.fetch()
            while (
                listing.has_next_page
                and not listing.is_error
                and (fetch_all or len(listing.pages) < pages)
            ):
                await listing.fetch_next_page()
        listing.close()
        await queries.aclose()

    if not offline:
        store.save(cache)
    return listing


@main.command()
@click.argument("route")
@click.argument("tag")
def link(route, tag):
    """Print where the link on TAG leads from ROUTE.

    The tag is added to the active filter, or removed if it is already part
    of it.
    """
    from .routes import resolve_route
    from .tags import tag_path, toggle_tag

    try:
        active = resolve_route(route).active_tags
        click.echo(tag_path(toggle_tag(active, tag)))
    except LzError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.pass_context
def status(ctx):
    """Show config and cache status."""
    config_path = ctx.obj["config_path"]
    has_config = config_exists(config_path)

    click.echo("lz bookmarks: Status")
    click.echo("=" * 40)
    click.echo(f"Config: {'Found' if has_config else 'Not configured'} ({config_path})")

    if not has_config:
        click.echo("\nRun 'lz-bookmarks setup' to get started.")
        return

    config = load_config(config_path)
    click.echo(f"API: {config.api.base_url}")
    click.echo(f"Network mode: {config.query.network_mode}")

    from .cache import CacheStore, QueryCache

    store = CacheStore(config.cache_dir)
    cache = QueryCache()
    store.load(cache)
    click.echo(f"Cached listings: {len(cache)}")
    if store.cache_file.exists():
        size = store.cache_file.stat().st_size
        click.echo(f"Cache file size: {size:,} bytes")
    else:
        click.echo("Cache file: Not yet created")


def _require_config(ctx) -> AppConfig:
    config_path = ctx.obj["config_path"]
    if not config_exists(config_path):
        click.echo(
            "Error: No config found. Run 'lz-bookmarks setup' first.",
            err=True,
        )
        sys.exit(1)
    return load_config(config_path)
