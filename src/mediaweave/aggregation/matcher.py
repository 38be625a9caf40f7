"""Cross-provider identity matching.

Finds the same title on other catalog providers. Cached cross-references
are trusted outright; everything else is searched concurrently and scored
by normalized title similarity with small bonuses for matching release
year and media type.
"""

import asyncio
import logging
import re
import unicodedata
from collections.abc import Callable, Iterable, Mapping, Sequence
from difflib import SequenceMatcher

from mediaweave.cache import CacheFailure, CrossReferenceCache
from mediaweave.models import MatchCandidate, MediaSummary, MediaType, ProviderId
from mediaweave.priority import PriorityTable
from mediaweave.providers.base import CatalogProvider, ProviderError
from mediaweave.retry import RetryExecutor

logger = logging.getLogger(__name__)

TITLE_WEIGHT = 0.8
SAME_YEAR_BONUS = 0.1
ADJACENT_YEAR_BONUS = 0.05
TYPE_BONUS = 0.1

_YEAR_MARKER = re.compile(r"[(\[\-]\s*\d{4}\s*[)\]]?")
_TRAILING_YEAR = re.compile(r"\s+\d{4}\s*$")
_SEASON_WORD = re.compile(r"\s+season\s+\d+")
_SEASON_SHORT = re.compile(r"\s+s\d+\b")
_SEASON_ORDINAL = re.compile(r"\s+\d+(st|nd|rd|th)\s+season")
_PUNCTUATION = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")

Scorer = Callable[[str, MediaSummary, MediaType | None, int | None, Sequence[str]], float]


def normalize_title(title: str) -> str:
    """Normalize a title for comparison.

    Lowercases, strips diacritics, drops year suffixes such as "(2002)" and
    season markers such as "Season 2", "S2" or "2nd Season", removes
    punctuation and collapses whitespace.
    """
    normalized = unicodedata.normalize("NFKD", title.lower())
    normalized = "".join(c for c in normalized if unicodedata.category(c) != "Mn")

    normalized = _YEAR_MARKER.sub("", normalized)
    normalized = _TRAILING_YEAR.sub("", normalized)

    normalized = _SEASON_WORD.sub("", normalized)
    normalized = _SEASON_SHORT.sub("", normalized)
    normalized = _SEASON_ORDINAL.sub("", normalized)

    normalized = _PUNCTUATION.sub("", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


def title_similarity(a: str, b: str) -> float:
    """SequenceMatcher ratio of two normalized titles (0.0 to 1.0)."""
    norm_a = normalize_title(a)
    norm_b = normalize_title(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    return SequenceMatcher(None, norm_a, norm_b).ratio()


def score_candidate(
    title: str,
    candidate: MediaSummary,
    media_type: MediaType | None = None,
    year: int | None = None,
    alternative_titles: Sequence[str] = (),
) -> float:
    """Identity confidence that candidate is the title being matched.

    confidence = 0.8 * best title similarity + year bonus + type bonus,
    clamped to [0, 1]. Similarity is the best over every pairing of the
    source titles with the candidate's titles.
    """
    sources = [t for t in (title, *alternative_titles) if t]
    similarity = max(
        (title_similarity(s, t) for s in sources for t in candidate.titles),
        default=0.0,
    )

    year_bonus = 0.0
    if year is not None and candidate.year is not None:
        if year == candidate.year:
            year_bonus = SAME_YEAR_BONUS
        elif abs(year - candidate.year) == 1:
            year_bonus = ADJACENT_YEAR_BONUS

    type_bonus = TYPE_BONUS if media_type is not None and candidate.media_type == media_type else 0.0

    confidence = similarity * TITLE_WEIGHT + year_bonus + type_bonus
    return min(1.0, max(0.0, confidence))


class IdentityMatcher:
    """Resolves a primary title to its ids on other providers.

    Attributes:
        providers: Provider id -> catalog client
        executor: Retry executor used for every search
        priority: Supplies the confidence threshold
        cache: Optional cross-reference cache, read first and updated after
    """

    def __init__(
        self,
        providers: Mapping[ProviderId, CatalogProvider],
        executor: RetryExecutor,
        priority: PriorityTable,
        cache: CrossReferenceCache | None = None,
        scorer: Scorer | None = None,
        search_timeout: float | None = None,
    ) -> None:
        self.providers = providers
        self.executor = executor
        self.priority = priority
        self.cache = cache
        self._scorer = scorer or score_candidate
        self._search_timeout = search_timeout

    async def match(
        self,
        title: str,
        primary_provider: ProviderId,
        primary_media_id: str,
        target_providers: Iterable[ProviderId],
        *,
        media_type: MediaType | None = None,
        year: int | None = None,
        alternative_titles: Sequence[str] = (),
    ) -> dict[ProviderId, MatchCandidate]:
        """Find the title on each target provider.

        Args:
            title: Primary title to match
            primary_provider: Provider the title came from
            primary_media_id: Id of the title on the primary provider
            target_providers: Providers to resolve; the primary is ignored
            media_type: Media type of the title, used for scoring and search
            year: Release year, used for scoring
            alternative_titles: English, native or other known titles

        Returns:
            Provider id -> accepted candidate. Providers that failed or had
            no candidate above the threshold are absent.
        """
        targets = [p for p in dict.fromkeys(target_providers) if p != primary_provider]
        results: dict[ProviderId, MatchCandidate] = {}

        cached = await self._cached_mappings(primary_provider, primary_media_id)
        for provider in targets:
            if provider in cached:
                results[provider] = MatchCandidate(
                    provider=provider,
                    media_id=cached[provider],
                    confidence=1.0,
                    from_cache=True,
                )

        to_search = [p for p in targets if p not in results]
        if results:
            logger.info(
                f"Cross-reference cache hit for {primary_provider}_{primary_media_id}: "
                f"{sorted(results)}"
            )
        if not to_search:
            return results

        logger.info(f"Searching {to_search} for '{title}' ({primary_provider}:{primary_media_id})")
        search_type = media_type or MediaType.ANIME
        found = await asyncio.gather(
            *(
                self._search_provider(p, title, search_type, media_type, year, alternative_titles)
                for p in to_search
            ),
            return_exceptions=True,
        )

        new_mappings: dict[ProviderId, str] = {}
        for provider, item in zip(to_search, found):
            if isinstance(item, BaseException):
                logger.error(f"Unexpected error matching on {provider}: {item!r}")
                continue
            if item is None:
                continue
            results[provider] = item
            new_mappings[provider] = item.media_id

        if new_mappings:
            await self._remember(primary_provider, primary_media_id, new_mappings)

        return results

    async def _cached_mappings(
        self, primary_provider: ProviderId, primary_media_id: str
    ) -> dict[ProviderId, str]:
        if self.cache is None:
            return {}
        try:
            entry = await self.cache.lookup_entry(primary_provider, primary_media_id)
        except CacheFailure as e:
            logger.warning(f"Cross-reference cache unavailable, searching live: {e}")
            return {}
        if entry is None:
            return {}
        if self.cache.is_expired(entry.cached_at):
            logger.debug(f"Ignoring stale cross-references for {entry.cache_key}")
            return {}
        return dict(entry.mappings)

    async def _remember(
        self, primary_provider: ProviderId, primary_media_id: str, mappings: dict[ProviderId, str]
    ) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.merge(primary_provider, primary_media_id, mappings)
        except CacheFailure as e:
            logger.warning(
                f"Failed to cache cross-references for {primary_provider}_{primary_media_id}: {e}"
            )

    async def _search_provider(
        self,
        provider_id: ProviderId,
        title: str,
        search_type: MediaType,
        media_type: MediaType | None,
        year: int | None,
        alternative_titles: Sequence[str],
    ) -> MatchCandidate | None:
        provider = self.providers.get(provider_id)
        if provider is None:
            logger.warning(f"No client registered for provider: {provider_id}")
            return None

        try:
            page = await self.executor.execute(
                lambda: provider.search(title, search_type),
                provider_id,
                "search",
                timeout=self._search_timeout,
            )
        except ProviderError as e:
            logger.warning(f"Search on {provider_id} failed: {e}")
            return None

        best: MatchCandidate | None = None
        for item in page.items:
            confidence = self._scorer(title, item, media_type, year, alternative_titles)
            if best is None or confidence > best.confidence:
                best = MatchCandidate(
                    provider=provider_id,
                    media_id=item.id,
                    confidence=confidence,
                    matched_title=item.title,
                )

        if best is None:
            logger.info(f"No results for '{title}' on {provider_id}")
            return None
        if not self.priority.meets_confidence_threshold(best.confidence):
            logger.info(
                f"Best match on {provider_id} below threshold: '{best.matched_title}' "
                f"(confidence: {best.confidence:.2f})"
            )
            return None

        logger.info(
            f"Matched '{title}' to {provider_id}:{best.media_id} "
            f"(confidence: {best.confidence:.2f})"
        )
        return best


__all__ = [
    "IdentityMatcher",
    "Scorer",
    "normalize_title",
    "score_candidate",
    "title_similarity",
]
