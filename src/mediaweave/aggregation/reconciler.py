"""One aggregation pass: primary lookup, matching, fan-out fetch and merge."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any, TypeVar

from mediaweave.aggregation.matcher import IdentityMatcher
from mediaweave.aggregation.merger import DataAggregator
from mediaweave.cache import CacheFailure
from mediaweave.models import (
    AttributedRecord,
    MatchCandidate,
    MediaDetailFragment,
    MediaType,
    ProviderId,
)
from mediaweave.providers.base import CatalogProvider, ProviderError
from mediaweave.retry import RetryExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AggregationError(Exception):
    """No provider produced data for the requested title.

    Attributes:
        provider: The primary provider of the failed pass.
        media_id: The requested title's id on the primary provider.
    """

    def __init__(self, provider: ProviderId, media_id: str, message: str) -> None:
        self.provider = provider
        self.media_id = media_id
        super().__init__(f"[{provider}:{media_id}] {message}")


class MetadataReconciler:
    """Builds one AttributedRecord per title from every enabled provider.

    A provider that fails at any stage contributes nothing but never stops
    the others. The pass only fails when no provider returns details.
    """

    def __init__(
        self,
        providers: Mapping[ProviderId, CatalogProvider],
        matcher: IdentityMatcher,
        aggregator: DataAggregator,
        executor: RetryExecutor,
    ) -> None:
        self.providers = providers
        self.matcher = matcher
        self.aggregator = aggregator
        self.executor = executor

    async def reconcile(
        self,
        primary_provider: ProviderId,
        primary_media_id: str,
        media_type: MediaType,
        *,
        target_providers: Iterable[ProviderId] | None = None,
    ) -> AttributedRecord:
        """Run one aggregation pass.

        Args:
            primary_provider: Provider the lookup starts from
            primary_media_id: Title id on the primary provider
            media_type: Kind of media being looked up
            target_providers: Providers to match against (defaults to all
                registered providers except the primary)

        Returns:
            The merged, attributed record

        Raises:
            AggregationError: If neither the primary nor any cached
                cross-reference yields details
        """
        if target_providers is None:
            target_providers = list(self.providers)
        targets = [p for p in dict.fromkeys(target_providers) if p != primary_provider]
        logger.info(
            f"Reconciling {primary_provider}:{primary_media_id} ({media_type.value}) "
            f"against {targets}"
        )

        primary = await self._call(
            primary_provider,
            "fetch_details",
            lambda p: p.fetch_details(primary_media_id, media_type),
        )

        if primary is None:
            return await self._reconcile_from_cache(primary_provider, primary_media_id, media_type)

        matches = await self.matcher.match(
            primary.title,
            primary_provider,
            primary_media_id,
            targets,
            media_type=media_type,
            year=primary.year,
            alternative_titles=[t for t in (primary.english_title, primary.native_title) if t],
        )

        return await self._fan_out_and_merge(primary, matches, media_type)

    async def _reconcile_from_cache(
        self, primary_provider: ProviderId, primary_media_id: str, media_type: MediaType
    ) -> AttributedRecord:
        cache = self.matcher.cache
        if cache is None:
            raise AggregationError(primary_provider, primary_media_id, "Primary provider failed")

        try:
            entry = await cache.lookup_entry(primary_provider, primary_media_id)
        except CacheFailure as e:
            raise AggregationError(
                primary_provider,
                primary_media_id,
                f"Primary provider failed and cache unavailable: {e}",
            ) from e

        if entry is None or cache.is_expired(entry.cached_at):
            raise AggregationError(
                primary_provider,
                primary_media_id,
                "Primary provider failed and no fresh cross-references",
            )

        logger.warning(
            f"Primary {primary_provider} failed, falling back to cached cross-references "
            f"{sorted(entry.mappings)}"
        )
        matches = {
            provider: MatchCandidate(
                provider=provider, media_id=media_id, confidence=1.0, from_cache=True
            )
            for provider, media_id in entry.mappings.items()
            if provider in self.providers
        }
        details = await self._fetch_all_details(matches, media_type)
        if not details:
            raise AggregationError(primary_provider, primary_media_id, "All providers failed")

        # The first surviving provider becomes the base of the record
        base_provider = next(iter(details))
        base = details[base_provider]
        rest = {p: m for p, m in matches.items() if p != base_provider}
        return await self._fan_out_and_merge(base, rest, media_type, prefetched=details)

    async def _fan_out_and_merge(
        self,
        primary: MediaDetailFragment,
        matches: dict[ProviderId, MatchCandidate],
        media_type: MediaType,
        prefetched: dict[ProviderId, MediaDetailFragment] | None = None,
    ) -> AttributedRecord:
        if prefetched is None:
            details_task = self._fetch_all_details(matches, media_type)
        else:
            details_task = _ready({p: d for p, d in prefetched.items() if p in matches})

        ids = {primary.provider: primary.media_id}
        ids.update({p: m.media_id for p, m in matches.items()})

        details, episodes, chapters = await asyncio.gather(
            details_task,
            self._fetch_lists(ids, "fetch_episodes", media_type.is_episodic),
            self._fetch_lists(ids, "fetch_chapters", media_type.is_readable),
        )

        record = self.aggregator.build_record(
            primary,
            alternatives=details,
            matches=matches,
            episodes_by_provider=episodes,
            chapters_by_provider=chapters,
        )
        logger.info(
            f"Aggregated {primary.provider}:{primary.media_id} from "
            f"{record.contributing_providers}"
        )
        return record

    async def _fetch_all_details(
        self, matches: Mapping[ProviderId, MatchCandidate], media_type: MediaType
    ) -> dict[ProviderId, MediaDetailFragment]:
        providers = list(matches)
        results = await asyncio.gather(
            *(
                self._call(
                    provider,
                    "fetch_details",
                    lambda p, media_id=matches[provider].media_id: p.fetch_details(
                        media_id, media_type
                    ),
                )
                for provider in providers
            )
        )
        return {p: r for p, r in zip(providers, results) if r is not None}

    async def _fetch_lists(
        self, ids: Mapping[ProviderId, str], operation: str, enabled: bool
    ) -> dict[ProviderId, list[Any]]:
        if not enabled:
            return {}
        providers = list(ids)
        results = await asyncio.gather(
            *(
                self._call(
                    provider,
                    operation,
                    lambda p, media_id=ids[provider]: getattr(p, operation)(media_id),
                )
                for provider in providers
            )
        )
        return {p: r for p, r in zip(providers, results) if r}

    async def _call(
        self,
        provider_id: ProviderId,
        operation: str,
        call: Callable[[CatalogProvider], Awaitable[T]],
    ) -> T | None:
        """Run one provider call through the executor; failures become None."""
        provider = self.providers.get(provider_id)
        if provider is None:
            logger.warning(f"No client registered for provider: {provider_id}")
            return None
        try:
            return await self.executor.execute(lambda: call(provider), provider_id, operation)
        except ProviderError as e:
            logger.warning(f"{provider_id}.{operation} failed: {e}")
            return None


async def _ready(value: T) -> T:
    return value


__all__ = ["AggregationError", "MetadataReconciler"]
