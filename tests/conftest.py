"""Shared pytest fixtures for mediaweave tests."""

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from mediaweave import config
from mediaweave.cache import CrossReferenceCache, MemoryKeyValueStore
from mediaweave.models import (
    ChapterFragment,
    EpisodeFragment,
    MediaDetailFragment,
    MediaSummary,
    MediaType,
    SearchPage,
)
from mediaweave.providers.base import ValidationFailure
from mediaweave.ratelimit import RateLimiter
from mediaweave.retry import RetryConfig, RetryExecutor


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Keep the user's config file and environment out of every test."""
    monkeypatch.setattr(config, "CONFIG_FILE_PATH", tmp_path / "missing.toml")
    for name in list(os.environ):
        if name.startswith("MEDIAWEAVE_"):
            monkeypatch.delenv(name)
    config.reset_settings()
    yield
    config.reset_settings()


class FakeClock:
    """Monotonic clock whose time only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(fake_clock: FakeClock) -> RateLimiter:
    return RateLimiter(default_cooldown=60.0, clock=fake_clock, sleep=fake_clock.sleep)


@pytest.fixture
def executor(rate_limiter: RateLimiter, fake_clock: FakeClock) -> RetryExecutor:
    """Executor with the default profile, a fake sleep and no jitter."""
    return RetryExecutor(
        RetryConfig(use_jitter=False),
        rate_limiter,
        default_timeout=None,
        sleep=fake_clock.sleep,
    )


@pytest.fixture
async def memory_cache():
    """Initialized cross-reference cache over an in-memory store."""
    cache = CrossReferenceCache(MemoryKeyValueStore())
    await cache.init()
    yield cache
    await cache.close()


class FakeProvider:
    """In-memory CatalogProvider.

    Each method pops the next scripted outcome for its operation; an
    exception instance is raised, anything else is returned. When the
    script runs out the defaults are used.
    """

    def __init__(
        self,
        provider_id: str,
        search_results: list[MediaSummary] | None = None,
        details: MediaDetailFragment | None = None,
        episodes: list[EpisodeFragment] | None = None,
        chapters: list[ChapterFragment] | None = None,
    ) -> None:
        self._provider_id = provider_id
        self.search_results = search_results or []
        self.details = details
        self.episodes = episodes or []
        self.chapters = chapters or []
        self.script: dict[str, list[Any]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.closed = False

    @property
    def provider_id(self) -> str:
        return self._provider_id

    def fail_next(self, operation: str, *outcomes: Any) -> None:
        self.script.setdefault(operation, []).extend(outcomes)

    def _next(self, operation: str, default: Callable[[], Any]) -> Any:
        queue = self.script.get(operation)
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return default()

    async def search(
        self, query: str, media_type: MediaType, page: int = 1, per_page: int = 10
    ) -> SearchPage:
        self.calls.append(("search", (query, media_type)))
        return self._next(
            "search",
            lambda: SearchPage(items=self.search_results, total_count=len(self.search_results)),
        )

    async def fetch_details(self, media_id: str, media_type: MediaType) -> MediaDetailFragment:
        self.calls.append(("fetch_details", (media_id, media_type)))

        def default() -> MediaDetailFragment:
            if self.details is None:
                raise ValidationFailure(self.provider_id, f"{media_id} not found", status_code=404)
            return self.details

        return self._next("fetch_details", default)

    async def fetch_episodes(self, media_id: str) -> list[EpisodeFragment]:
        self.calls.append(("fetch_episodes", (media_id,)))
        return self._next("fetch_episodes", lambda: self.episodes)

    async def fetch_chapters(self, media_id: str) -> list[ChapterFragment]:
        self.calls.append(("fetch_chapters", (media_id,)))
        return self._next("fetch_chapters", lambda: self.chapters)

    async def close(self) -> None:
        self.closed = True

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)
