"""Pydantic models for mediaweave metadata aggregation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator

ProviderId = str

T = TypeVar("T")


class MediaType(str, Enum):
    """Kinds of media a catalog provider can describe."""

    ANIME = "anime"
    MANGA = "manga"
    NOVEL = "novel"
    MOVIE = "movie"
    TV_SHOW = "tv_show"

    @property
    def is_episodic(self) -> bool:
        """True for media that is watched in episodes."""
        return self in (MediaType.ANIME, MediaType.TV_SHOW)

    @property
    def is_readable(self) -> bool:
        """True for media that is read in chapters."""
        return self in (MediaType.MANGA, MediaType.NOVEL)


def _is_present(value: str | None) -> bool:
    """Empty strings count as missing values."""
    return value is not None and value != ""


class _Frozen(BaseModel):
    model_config = ConfigDict(
        str_strip_whitespace=True,
        frozen=True,
    )


class MediaSummary(_Frozen):
    """A single search hit from a catalog provider."""

    id: str
    provider: ProviderId
    title: str
    media_type: MediaType
    english_title: str | None = None
    native_title: str | None = None
    year: int | None = None
    cover_image: str | None = None
    total_episodes: int | None = None

    @property
    def titles(self) -> list[str]:
        """All non-empty titles, primary title first."""
        return [t for t in (self.title, self.english_title, self.native_title) if t]


class SearchPage(_Frozen):
    """One page of provider search results."""

    items: list[MediaSummary] = []
    total_count: int = 0
    has_next_page: bool = False


class ImageFragment(_Frozen):
    """Cover and banner art from one provider."""

    cover_image: str | None = None
    banner_image: str | None = None
    source_provider: ProviderId

    @property
    def has_cover_image(self) -> bool:
        return _is_present(self.cover_image)

    @property
    def has_banner_image(self) -> bool:
        return _is_present(self.banner_image)

    @property
    def has_any_image(self) -> bool:
        return self.has_cover_image or self.has_banner_image


class PersonFragment(_Frozen):
    """A character or staff member."""

    id: str
    name: str
    native_name: str | None = None
    image: str | None = None
    role: str = ""

    @property
    def completeness(self) -> int:
        """Number of populated optional fields."""
        return int(_is_present(self.image)) + int(_is_present(self.native_name))


class RecommendationFragment(_Frozen):
    """A related title recommended by a provider."""

    id: str
    title: str
    cover_image: str | None = None
    rating: int = 0


class EpisodeFragment(_Frozen):
    """One episode as described by a single provider."""

    id: str
    number: int
    title: str | None = None
    thumbnail: str | None = None
    air_date: str | None = None
    duration_minutes: int | None = None
    source_provider: ProviderId


class ChapterFragment(_Frozen):
    """One manga or novel chapter as described by a single provider."""

    id: str
    number: float
    title: str | None = None
    release_date: str | None = None
    page_count: int | None = None
    source_provider: ProviderId


class MediaDetailFragment(_Frozen):
    """Full detail payload for one title from one provider."""

    provider: ProviderId
    media_id: str
    title: str
    media_type: MediaType
    english_title: str | None = None
    native_title: str | None = None
    synopsis: str | None = None
    cover_image: str | None = None
    banner_image: str | None = None
    genres: list[str] = []
    average_score: float | None = None
    status: str | None = None
    year: int | None = None
    total_episodes: int | None = None
    total_chapters: int | None = None
    characters: list[PersonFragment] = []
    staff: list[PersonFragment] = []
    recommendations: list[RecommendationFragment] = []

    @property
    def images(self) -> ImageFragment:
        """Cover and banner as an ImageFragment."""
        return ImageFragment(
            cover_image=self.cover_image,
            banner_image=self.banner_image,
            source_provider=self.provider,
        )


class MatchCandidate(_Frozen):
    """A title on another provider believed to be the same as the primary."""

    provider: ProviderId
    media_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    matched_title: str | None = None
    from_cache: bool = False


class CrossReferenceEntry(_Frozen):
    """Persisted mapping from a primary title to its ids on other providers."""

    primary_provider: ProviderId
    primary_media_id: str
    mappings: dict[ProviderId, str]
    cached_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="before")
    @classmethod
    def drop_self_mapping(cls, data: Any) -> Any:
        """A title never cross-references its own primary provider."""
        if isinstance(data, dict):
            primary = data.get("primary_provider")
            mappings = data.get("mappings")
            if isinstance(mappings, dict) and primary in mappings:
                data = {**data, "mappings": {k: v for k, v in mappings.items() if k != primary}}
        return data

    @property
    def cache_key(self) -> str:
        return cross_reference_key(self.primary_provider, self.primary_media_id)

    @field_serializer("cached_at")
    def serialize_dt(self, dt: datetime) -> str:
        """Serialize datetime to ISO 8601 format with timezone."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()


def cross_reference_key(primary_provider: ProviderId, primary_media_id: str) -> str:
    """Identity key of a cross-reference entry."""
    return f"{primary_provider}_{primary_media_id}"


@dataclass(frozen=True)
class ProviderValue(Generic[T]):
    """A merged value together with the provider it came from."""

    provider: ProviderId
    value: T


class AttributedRecord(_Frozen):
    """The unified record produced by one aggregation pass."""

    primary_provider: ProviderId
    media_id: str
    media_type: MediaType
    title: str
    english_title: str | None = None
    native_title: str | None = None
    synopsis: str | None = None
    cover_image: str | None = None
    banner_image: str | None = None
    genres: list[str] = []
    average_score: float | None = None
    status: str | None = None
    year: int | None = None
    total_episodes: int | None = None
    total_chapters: int | None = None
    characters: list[PersonFragment] = []
    staff: list[PersonFragment] = []
    recommendations: list[RecommendationFragment] = []
    episodes: list[EpisodeFragment] = []
    chapters: list[ChapterFragment] = []
    data_source_attribution: dict[str, ProviderId] = {}
    contributing_providers: list[ProviderId] = []
    match_confidences: dict[ProviderId, float] = {}
    cross_references: dict[ProviderId, str] = {}
    aggregated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("aggregated_at")
    def serialize_dt(self, dt: datetime) -> str:
        """Serialize datetime to ISO 8601 format with timezone."""
        return dt.isoformat()


__all__ = [
    "AttributedRecord",
    "ChapterFragment",
    "CrossReferenceEntry",
    "EpisodeFragment",
    "ImageFragment",
    "MatchCandidate",
    "MediaDetailFragment",
    "MediaSummary",
    "MediaType",
    "PersonFragment",
    "ProviderId",
    "ProviderValue",
    "RecommendationFragment",
    "SearchPage",
    "cross_reference_key",
]
