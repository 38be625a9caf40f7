"""Catalog provider clients."""

import logging

from mediaweave.config import Settings
from mediaweave.providers.anilist import AniListProvider
from mediaweave.providers.base import (
    CatalogProvider,
    HTTPCatalogProvider,
    NetworkFailure,
    ProviderError,
    RateLimitFailure,
    ServerFailure,
    UnknownFailure,
    ValidationFailure,
    classify_exception,
    handle_http_status,
    parse_retry_after,
)
from mediaweave.providers.jikan import JikanProvider
from mediaweave.providers.kitsu import KitsuProvider
from mediaweave.providers.tmdb import TMDBProvider

logger = logging.getLogger(__name__)


def create_providers(settings: Settings) -> dict[str, CatalogProvider]:
    """Instantiate every enabled provider, keyed by provider id.

    TMDB is skipped with a warning when no API key is configured. Unknown
    ids in enabled_providers are ignored.
    """
    providers: dict[str, CatalogProvider] = {}
    for provider_id in settings.enabled_providers:
        if provider_id == "anilist":
            providers[provider_id] = AniListProvider()
        elif provider_id == "jikan":
            providers[provider_id] = JikanProvider()
        elif provider_id == "kitsu":
            providers[provider_id] = KitsuProvider()
        elif provider_id == "tmdb":
            api_key = settings.tmdb_api_key
            if api_key is None or not settings.has_tmdb_credentials():
                logger.warning("TMDB enabled but MEDIAWEAVE_TMDB_API_KEY is not set; skipping")
                continue
            providers[provider_id] = TMDBProvider(api_key.get_secret_value())
        else:
            logger.warning(f"Unknown provider '{provider_id}' in enabled_providers; ignoring")
    return providers


__all__ = [
    "AniListProvider",
    "CatalogProvider",
    "HTTPCatalogProvider",
    "JikanProvider",
    "KitsuProvider",
    "NetworkFailure",
    "ProviderError",
    "RateLimitFailure",
    "ServerFailure",
    "TMDBProvider",
    "UnknownFailure",
    "ValidationFailure",
    "classify_exception",
    "create_providers",
    "handle_http_status",
    "parse_retry_after",
]
