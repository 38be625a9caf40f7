"""FastMCP server exposing mediaweave lookups."""

import asyncio
import atexit
import logging
from datetime import timedelta

from fastmcp import FastMCP

from mediaweave.aggregation import (
    AggregationError,
    DataAggregator,
    IdentityMatcher,
    MetadataReconciler,
)
from mediaweave.cache import CacheFailure, CrossReferenceCache, SQLiteKeyValueStore
from mediaweave.config import configure_logging, get_settings
from mediaweave.models import MediaType
from mediaweave.output import format_cache_stats, format_record
from mediaweave.priority import PriorityTable
from mediaweave.providers import CatalogProvider, ProviderError, create_providers
from mediaweave.ratelimit import RateLimiter
from mediaweave.retry import RetryConfig, RetryExecutor

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("mediaweave")

# Global instances (initialized on first use)
_cache: CrossReferenceCache | None = None
_providers: dict[str, CatalogProvider] | None = None
_reconciler: MetadataReconciler | None = None


async def _get_cache() -> CrossReferenceCache:
    global _cache
    if _cache is None:
        settings = get_settings()
        _cache = CrossReferenceCache(
            SQLiteKeyValueStore(settings.cache_db_path),
            ttl=timedelta(days=settings.cache_ttl_days),
            max_size_bytes=settings.cache_max_size_bytes,
        )
    await _cache.init()
    return _cache


def _get_providers() -> dict[str, CatalogProvider]:
    global _providers
    if _providers is None:
        _providers = create_providers(get_settings())
    return _providers


async def _get_reconciler() -> MetadataReconciler:
    global _reconciler
    if _reconciler is None:
        settings = get_settings()
        providers = _get_providers()
        priority = PriorityTable.from_settings(settings)
        executor = RetryExecutor(
            RetryConfig.for_profile(settings.retry_profile),
            RateLimiter(default_cooldown=settings.rate_limit_cooldown),
            default_timeout=settings.call_timeout,
        )
        try:
            cache: CrossReferenceCache | None = await _get_cache()
        except CacheFailure as e:
            # Matching still works without cross-references, just slower
            logger.warning(f"Cross-reference cache unavailable: {e}")
            cache = None
        matcher = IdentityMatcher(providers, executor, priority, cache=cache)
        _reconciler = MetadataReconciler(providers, matcher, DataAggregator(priority), executor)
    return _reconciler


async def _cleanup_resources() -> None:
    """Close all open resources (provider clients, cache connection)."""
    global _cache, _providers, _reconciler

    _reconciler = None

    if _providers is not None:
        for provider in _providers.values():
            await provider.close()
        _providers = None

    if _cache is not None:
        await _cache.close()
        _cache = None

    logger.debug("All resources cleaned up")


def _atexit_cleanup() -> None:
    """Synchronous atexit handler that runs async cleanup."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            loop.create_task(_cleanup_resources())
        else:
            asyncio.run(_cleanup_resources())
    except Exception as e:
        # Don't let cleanup errors prevent shutdown
        logger.debug(f"Cleanup error (non-fatal): {e}")


atexit.register(_atexit_cleanup)


def _parse_media_type(value: str) -> MediaType | None:
    normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
    if normalized in ("tv", "show", "series"):
        normalized = MediaType.TV_SHOW.value
    try:
        return MediaType(normalized)
    except ValueError:
        return None


@mcp.tool()
async def lookup_media(provider: str, media_id: str, media_type: str = "anime") -> str:
    """Look up a title on one catalog and merge in data from the others.

    The title is fetched from the given provider, matched on every other
    enabled provider by title, year and type, and the results are merged
    into one record. Each field shows which provider supplied it.

    Args:
        provider: Catalog the id belongs to (anilist, jikan, kitsu, tmdb)
        media_id: The title's id on that catalog (e.g., "20" on anilist is Naruto)
        media_type: anime, manga, novel, movie or tv_show

    Returns:
        Formatted record with per-field attribution, or an error description.
    """
    provider = provider.strip().lower()
    media_id = media_id.strip()
    logger.info(f"Lookup requested: {provider}:{media_id} ({media_type})")

    if not provider or not media_id:
        return (
            "## Invalid Request\n\n"
            "Please provide both a `provider` and a `media_id`.\n\n"
            "**Example:**\n"
            '- `lookup_media(provider="anilist", media_id="20", media_type="anime")`'
        )

    parsed_type = _parse_media_type(media_type)
    if parsed_type is None:
        valid = ", ".join(t.value for t in MediaType)
        return f"## Invalid Media Type\n\n`{media_type}` is not one of: {valid}."

    providers = _get_providers()
    if provider not in providers:
        enabled = ", ".join(providers) or "none"
        return (
            f"## Unknown Provider\n\n"
            f"`{provider}` is not enabled.\n\n"
            f"**Enabled providers:** {enabled}"
        )

    reconciler = await _get_reconciler()
    try:
        record = await reconciler.reconcile(provider, media_id, parsed_type)
    except AggregationError as e:
        logger.warning(f"Aggregation failed for {provider}:{media_id}: {e}")
        return (
            f"## No Data Available\n\n"
            f"No provider returned data for **{provider}:{media_id}**.\n\n"
            f"**Suggestions:**\n"
            f"- Check that the id exists on {provider}\n"
            f"- Try again in a few moments"
        )
    except ProviderError as e:
        logger.error(f"Provider error during lookup of {provider}:{media_id}: {e}")
        return f"## Data Source Error\n\n**What happened:** {e.message}"

    return format_record(record)


@mcp.tool()
async def cache_stats() -> str:
    """Show how many cross-references are cached and how much space they use."""
    settings = get_settings()
    try:
        cache = await _get_cache()
        count = await cache.entry_count()
        size = await cache.approximate_byte_size()
    except CacheFailure as e:
        logger.error(f"Cache stats failed: {e}")
        return f"## Cache Unavailable\n\n{e}"
    return format_cache_stats(count, size, cache.max_size_bytes, settings.cache_ttl_days)


@mcp.tool()
async def clear_cache(expired_only: bool = True) -> str:
    """Remove cached cross-references.

    Args:
        expired_only: Only drop entries older than the cache TTL (default).
            Pass false to drop everything.
    """
    try:
        cache = await _get_cache()
        if expired_only:
            removed = await cache.clear_expired()
            return f"Removed {removed} expired cross-reference entries."
        removed = await cache.clear_all()
    except CacheFailure as e:
        logger.error(f"Cache clear failed: {e}")
        return f"## Cache Unavailable\n\n{e}"
    return f"Removed all {removed} cross-reference entries."


def main() -> None:
    """Run the mediaweave MCP server."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting mediaweave MCP server")
    mcp.run()


if __name__ == "__main__":
    main()
