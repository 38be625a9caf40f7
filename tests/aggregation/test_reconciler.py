"""Tests for full aggregation passes."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeClock, FakeProvider
from mediaweave.aggregation import (
    AggregationError,
    DataAggregator,
    IdentityMatcher,
    MetadataReconciler,
)
from mediaweave.cache import CrossReferenceCache, MemoryKeyValueStore
from mediaweave.models import (
    ChapterFragment,
    EpisodeFragment,
    MediaDetailFragment,
    MediaSummary,
    MediaType,
    PersonFragment,
)
from mediaweave.priority import PriorityTable
from mediaweave.providers.base import NetworkFailure, ServerFailure
from mediaweave.retry import RetryExecutor


def naruto(provider: str, media_id: str, **fields) -> MediaDetailFragment:
    fields.setdefault("title", "Naruto")
    fields.setdefault("media_type", MediaType.ANIME)
    fields.setdefault("year", 2002)
    return MediaDetailFragment(provider=provider, media_id=media_id, **fields)


def hit(provider: str, media_id: str, title: str = "Naruto") -> MediaSummary:
    return MediaSummary(
        id=media_id, provider=provider, title=title, media_type=MediaType.ANIME, year=2002
    )


def build(
    providers: dict[str, FakeProvider],
    executor: RetryExecutor,
    cache: CrossReferenceCache | None = None,
    scorer=None,
) -> MetadataReconciler:
    priority = PriorityTable()
    matcher = IdentityMatcher(providers, executor, priority, cache=cache, scorer=scorer)
    return MetadataReconciler(providers, matcher, DataAggregator(priority), executor)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_naruto_across_providers(
        self, executor: RetryExecutor, fake_clock: FakeClock
    ) -> None:
        """TMDB recovers after two timeouts; Kitsu's weak match is dropped."""
        anilist = FakeProvider("anilist", details=naruto("anilist", "20"))
        tmdb = FakeProvider(
            "tmdb",
            search_results=[hit("tmdb", "46260")],
            details=naruto("tmdb", "46260", banner_image="https://image.tmdb.org/b.jpg"),
        )
        tmdb.fail_next("search", TimeoutError(), TimeoutError())
        kitsu = FakeProvider(
            "kitsu", search_results=[hit("kitsu", "11")], details=naruto("kitsu", "11")
        )

        def scorer(title, candidate, media_type, year, alternatives) -> float:
            return {"tmdb": 0.92, "kitsu": 0.5}[candidate.provider]

        reconciler = build(
            {"anilist": anilist, "tmdb": tmdb, "kitsu": kitsu}, executor, scorer=scorer
        )

        record = await reconciler.reconcile("anilist", "20", MediaType.ANIME)

        assert record.contributing_providers == ["anilist", "tmdb"]
        assert "kitsu" not in record.match_confidences
        assert "kitsu" not in record.cross_references
        assert record.match_confidences["tmdb"] == pytest.approx(0.92)
        assert record.cross_references == {"tmdb": "46260"}
        assert tmdb.count("search") == 3
        # Two backoff sleeps before the third attempt
        assert fake_clock.sleeps == [1.0, 2.0]
        assert kitsu.count("fetch_details") == 0
        assert record.banner_image == "https://image.tmdb.org/b.jpg"
        assert record.data_source_attribution["banner_image"] == "tmdb"


class TestReconcile:
    @pytest.mark.asyncio
    async def test_targets_default_to_other_providers(self, executor: RetryExecutor) -> None:
        anilist = FakeProvider("anilist", details=naruto("anilist", "20"))
        jikan = FakeProvider("jikan", search_results=[hit("jikan", "20")], details=naruto("jikan", "20"))

        record = await build({"anilist": anilist, "jikan": jikan}, executor).reconcile(
            "anilist", "20", MediaType.ANIME
        )

        assert record.contributing_providers == ["anilist", "jikan"]
        assert anilist.count("search") == 0

    @pytest.mark.asyncio
    async def test_explicit_targets(self, executor: RetryExecutor) -> None:
        anilist = FakeProvider("anilist", details=naruto("anilist", "20"))
        jikan = FakeProvider("jikan", search_results=[hit("jikan", "20")], details=naruto("jikan", "20"))
        kitsu = FakeProvider("kitsu", search_results=[hit("kitsu", "11")], details=naruto("kitsu", "11"))
        reconciler = build({"anilist": anilist, "jikan": jikan, "kitsu": kitsu}, executor)

        record = await reconciler.reconcile(
            "anilist", "20", MediaType.ANIME, target_providers=["kitsu"]
        )

        assert record.contributing_providers == ["anilist", "kitsu"]
        assert jikan.count("search") == 0

    @pytest.mark.asyncio
    async def test_alternative_details_failure_is_isolated(self, executor: RetryExecutor) -> None:
        """A provider that matched but fails to return details is left out."""
        anilist = FakeProvider("anilist", details=naruto("anilist", "20"))
        jikan = FakeProvider("jikan", search_results=[hit("jikan", "20")])
        jikan.fail_next("fetch_details", *(ServerFailure("jikan", 503) for _ in range(3)))
        kitsu = FakeProvider("kitsu", search_results=[hit("kitsu", "11")], details=naruto("kitsu", "11"))
        reconciler = build({"anilist": anilist, "jikan": jikan, "kitsu": kitsu}, executor)

        record = await reconciler.reconcile("anilist", "20", MediaType.ANIME)

        assert record.contributing_providers == ["anilist", "kitsu"]
        # The id is still known even though details failed
        assert record.cross_references["jikan"] == "20"
        assert "jikan" not in record.match_confidences

    @pytest.mark.asyncio
    async def test_primary_failure_without_cache_raises(self, executor: RetryExecutor) -> None:
        anilist = FakeProvider("anilist")
        anilist.fail_next("fetch_details", *(NetworkFailure("anilist", "down") for _ in range(3)))

        with pytest.raises(AggregationError) as exc_info:
            await build({"anilist": anilist}, executor).reconcile("anilist", "20", MediaType.ANIME)

        assert exc_info.value.provider == "anilist"
        assert exc_info.value.media_id == "20"

    @pytest.mark.asyncio
    async def test_unknown_primary_raises(self, executor: RetryExecutor) -> None:
        with pytest.raises(AggregationError):
            await build({}, executor).reconcile("simkl", "1", MediaType.ANIME)

    @pytest.mark.asyncio
    async def test_primary_titles_feed_matching(self, executor: RetryExecutor) -> None:
        """English and native titles are used as alternatives when scoring."""
        anilist = FakeProvider(
            "anilist",
            details=naruto(
                "anilist",
                "16498",
                title="Shingeki no Kyojin",
                english_title="Attack on Titan",
                year=2013,
            ),
        )
        tmdb = FakeProvider(
            "tmdb",
            search_results=[
                MediaSummary(
                    id="1429",
                    provider="tmdb",
                    title="Attack on Titan",
                    media_type=MediaType.ANIME,
                    year=2013,
                )
            ],
            details=naruto("tmdb", "1429", title="Attack on Titan"),
        )

        record = await build({"anilist": anilist, "tmdb": tmdb}, executor).reconcile(
            "anilist", "16498", MediaType.ANIME
        )

        assert record.cross_references == {"tmdb": "1429"}
        assert tmdb.calls[0] == ("search", ("Shingeki no Kyojin", MediaType.ANIME))


class TestListsFetching:
    @pytest.mark.asyncio
    async def test_episodes_fetched_for_episodic_media(self, executor: RetryExecutor) -> None:
        anilist = FakeProvider(
            "anilist",
            details=naruto("anilist", "20"),
            episodes=[EpisodeFragment(id="20-1", number=1, source_provider="anilist")],
        )
        tmdb = FakeProvider(
            "tmdb",
            search_results=[hit("tmdb", "46260")],
            details=naruto("tmdb", "46260"),
            episodes=[
                EpisodeFragment(
                    id="e1", number=1, thumbnail="https://t/1.jpg", source_provider="tmdb"
                )
            ],
        )

        record = await build({"anilist": anilist, "tmdb": tmdb}, executor).reconcile(
            "anilist", "20", MediaType.ANIME
        )

        assert [ep.thumbnail for ep in record.episodes] == ["https://t/1.jpg"]
        assert tmdb.calls.count(("fetch_episodes", ("46260",))) == 1
        assert anilist.count("fetch_chapters") == 0

    @pytest.mark.asyncio
    async def test_chapters_fetched_for_manga(self, executor: RetryExecutor) -> None:
        anilist = FakeProvider(
            "anilist", details=naruto("anilist", "30011", media_type=MediaType.MANGA)
        )
        kitsu = FakeProvider(
            "kitsu",
            search_results=[
                MediaSummary(
                    id="14", provider="kitsu", title="Naruto", media_type=MediaType.MANGA, year=2002
                )
            ],
            details=naruto("kitsu", "14", media_type=MediaType.MANGA),
            chapters=[ChapterFragment(id="c1", number=1, source_provider="kitsu")],
        )

        record = await build({"anilist": anilist, "kitsu": kitsu}, executor).reconcile(
            "anilist", "30011", MediaType.MANGA
        )

        assert [ch.id for ch in record.chapters] == ["c1"]
        assert record.data_source_attribution["chapters"] == "kitsu"
        assert kitsu.count("fetch_episodes") == 0

    @pytest.mark.asyncio
    async def test_episodes_from_provider_without_details_are_credited(
        self, executor: RetryExecutor
    ) -> None:
        """A match whose details fail but whose episodes are used still contributed."""
        anilist = FakeProvider("anilist", details=naruto("anilist", "20"))
        tmdb = FakeProvider(
            "tmdb",
            search_results=[hit("tmdb", "46260")],
            episodes=[EpisodeFragment(id="e1", number=1, source_provider="tmdb")],
        )
        tmdb.fail_next("fetch_details", *(ServerFailure("tmdb", 503) for _ in range(3)))

        record = await build({"anilist": anilist, "tmdb": tmdb}, executor).reconcile(
            "anilist", "20", MediaType.ANIME
        )

        assert [ep.id for ep in record.episodes] == ["e1"]
        assert record.data_source_attribution["episodes"] == "tmdb"
        assert record.contributing_providers == ["anilist", "tmdb"]
        assert "tmdb" in record.match_confidences

    @pytest.mark.asyncio
    async def test_thumbnail_fill_without_details_is_credited(
        self, executor: RetryExecutor
    ) -> None:
        anilist = FakeProvider(
            "anilist",
            details=naruto("anilist", "20"),
            episodes=[EpisodeFragment(id="20-1", number=1, source_provider="anilist")],
        )
        tmdb = FakeProvider(
            "tmdb",
            search_results=[hit("tmdb", "46260")],
            episodes=[
                EpisodeFragment(
                    id="e1", number=1, thumbnail="https://t/1.jpg", source_provider="tmdb"
                )
            ],
        )
        tmdb.fail_next("fetch_details", *(ServerFailure("tmdb", 503) for _ in range(3)))

        record = await build({"anilist": anilist, "tmdb": tmdb}, executor).reconcile(
            "anilist", "20", MediaType.ANIME
        )

        assert record.data_source_attribution["episodes"] == "anilist"
        assert record.data_source_attribution["episode_thumbnail"] == "tmdb"
        assert "tmdb" in record.contributing_providers

    @pytest.mark.asyncio
    async def test_episode_failure_does_not_fail_pass(self, executor: RetryExecutor) -> None:
        anilist = FakeProvider("anilist", details=naruto("anilist", "20"))
        anilist.fail_next("fetch_episodes", *(NetworkFailure("anilist", "down") for _ in range(3)))

        record = await build({"anilist": anilist}, executor).reconcile(
            "anilist", "20", MediaType.ANIME
        )

        assert record.episodes == []
        assert record.title == "Naruto"


class TestCacheFallback:
    @pytest.fixture
    async def cache(self):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        cache = CrossReferenceCache(MemoryKeyValueStore(), clock=lambda: now)
        await cache.init()
        yield cache
        await cache.close()

    @pytest.mark.asyncio
    async def test_matches_cached_after_first_pass(
        self, executor: RetryExecutor, cache: CrossReferenceCache
    ) -> None:
        anilist = FakeProvider("anilist", details=naruto("anilist", "20"))
        tmdb = FakeProvider("tmdb", search_results=[hit("tmdb", "46260")], details=naruto("tmdb", "46260"))
        reconciler = build({"anilist": anilist, "tmdb": tmdb}, executor, cache=cache)

        await reconciler.reconcile("anilist", "20", MediaType.ANIME)
        second = await reconciler.reconcile("anilist", "20", MediaType.ANIME)

        assert tmdb.count("search") == 1
        assert second.match_confidences == {"tmdb": 1.0}
        assert await cache.lookup("anilist", "20") == {"tmdb": "46260"}

    @pytest.mark.asyncio
    async def test_primary_failure_uses_cached_cross_references(
        self, executor: RetryExecutor, cache: CrossReferenceCache
    ) -> None:
        """With the primary down, the record is built from cached ids."""
        await cache.store("anilist", "20", {"tmdb": "46260", "jikan": "20"})
        anilist = FakeProvider("anilist")
        anilist.fail_next("fetch_details", *(NetworkFailure("anilist", "down") for _ in range(3)))
        tmdb = FakeProvider("tmdb", details=naruto("tmdb", "46260", synopsis="From TMDB"))
        jikan = FakeProvider(
            "jikan",
            details=naruto(
                "jikan", "20", characters=[PersonFragment(id="17", name="Naruto Uzumaki")]
            ),
        )
        reconciler = build({"anilist": anilist, "tmdb": tmdb, "jikan": jikan}, executor, cache=cache)

        record = await reconciler.reconcile("anilist", "20", MediaType.ANIME)

        assert record.primary_provider == "tmdb"
        assert record.contributing_providers == ["tmdb", "jikan"]
        assert record.synopsis == "From TMDB"
        assert [c.name for c in record.characters] == ["Naruto Uzumaki"]
        assert tmdb.count("search") == 0

    @pytest.mark.asyncio
    async def test_stale_cross_references_not_used(self, executor: RetryExecutor) -> None:
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        cache = CrossReferenceCache(
            MemoryKeyValueStore(), ttl=timedelta(days=7), clock=lambda: now
        )
        await cache.init()
        await cache.store("anilist", "20", {"tmdb": "46260"})
        now += timedelta(days=10)
        anilist = FakeProvider("anilist")
        tmdb = FakeProvider("tmdb", details=naruto("tmdb", "46260"))

        with pytest.raises(AggregationError, match="no fresh cross-references"):
            await build({"anilist": anilist, "tmdb": tmdb}, executor, cache=cache).reconcile(
                "anilist", "20", MediaType.ANIME
            )

    @pytest.mark.asyncio
    async def test_all_cached_providers_failing_raises(
        self, executor: RetryExecutor, cache: CrossReferenceCache
    ) -> None:
        await cache.store("anilist", "20", {"tmdb": "46260"})
        anilist = FakeProvider("anilist")
        tmdb = FakeProvider("tmdb")

        with pytest.raises(AggregationError, match="All providers failed"):
            await build({"anilist": anilist, "tmdb": tmdb}, executor, cache=cache).reconcile(
                "anilist", "20", MediaType.ANIME
            )
