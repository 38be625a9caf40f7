"""Per-data-type provider priority lists used to resolve merge conflicts."""

import logging
from collections.abc import Callable, Iterable
from enum import Enum
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, field_validator

from mediaweave.config import Settings
from mediaweave.models import ProviderId

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DataType(str, Enum):
    """Kinds of data that have their own provider ordering."""

    EPISODE_THUMBNAIL = "episode_thumbnail"
    IMAGE_QUALITY = "image_quality"
    ANIME_METADATA = "anime_metadata"
    MANGA_CHAPTER = "manga_chapter"
    CHARACTER = "character"


# Lookup keys are lowercased with "_" and "-" removed, so snake_case,
# kebab-case and camelCase spellings all resolve.
_ALIASES: dict[str, DataType] = {
    "episodethumbnail": DataType.EPISODE_THUMBNAIL,
    "episode": DataType.EPISODE_THUMBNAIL,
    "thumbnail": DataType.EPISODE_THUMBNAIL,
    "imagequality": DataType.IMAGE_QUALITY,
    "image": DataType.IMAGE_QUALITY,
    "cover": DataType.IMAGE_QUALITY,
    "banner": DataType.IMAGE_QUALITY,
    "animemetadata": DataType.ANIME_METADATA,
    "anime": DataType.ANIME_METADATA,
    "metadata": DataType.ANIME_METADATA,
    "mangachapter": DataType.MANGA_CHAPTER,
    "chapter": DataType.MANGA_CHAPTER,
    "character": DataType.CHARACTER,
    "characters": DataType.CHARACTER,
    "staff": DataType.CHARACTER,
}

_IMAGE_ORDER = ["tmdb", "jikan", "mal", "myanimelist", "anilist", "kitsu", "simkl"]


def resolve_data_type(data_type: "DataType | str") -> DataType:
    """Map a data type name or alias onto DataType.

    Unknown names fall back to ANIME_METADATA.
    """
    if isinstance(data_type, DataType):
        return data_type
    key = data_type.lower().replace("_", "").replace("-", "").strip()
    resolved = _ALIASES.get(key)
    if resolved is None:
        logger.debug(f"Unknown data type '{data_type}', using anime_metadata priority")
        return DataType.ANIME_METADATA
    return resolved


class PriorityTable(BaseModel):
    """Ordered provider preferences per data type plus the match threshold.

    Providers earlier in a list win conflicts for that data type. Providers
    not listed are still usable; they rank after every listed provider.
    """

    model_config = ConfigDict(frozen=True)

    episode_thumbnail: list[ProviderId] = list(_IMAGE_ORDER)
    image_quality: list[ProviderId] = list(_IMAGE_ORDER)
    anime_metadata: list[ProviderId] = ["jikan", "mal", "myanimelist", "anilist", "kitsu", "simkl"]
    manga_chapter: list[ProviderId] = ["kitsu", "anilist"]
    character: list[ProviderId] = ["anilist", "jikan", "kitsu"]
    min_confidence_threshold: float = 0.8

    @field_validator("min_confidence_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"min_confidence_threshold must be between 0.0 and 1.0, got {v}")
        return v

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriorityTable":
        """Build a table from Settings, applying its priority overrides."""
        table = cls(min_confidence_threshold=settings.min_confidence_threshold)
        if settings.priority_overrides:
            table = table.with_overrides(settings.priority_overrides)
        return table

    def priority_for(self, data_type: DataType | str) -> list[ProviderId]:
        """Ordered provider list for a data type or alias."""
        return list(getattr(self, resolve_data_type(data_type).value))

    def sort_by_priority(
        self,
        candidates: Iterable[T],
        data_type: DataType | str,
        key: Callable[[T], ProviderId] | None = None,
    ) -> list[T]:
        """Order candidates by priority, dropping duplicate providers.

        Candidates whose provider is in the priority list come first, in list
        order, followed by the rest in their original order. Unlike a plain
        partition this also removes items whose provider was already seen,
        keeping the first occurrence, so the result can be shorter than the
        input.

        Args:
            candidates: Provider ids, or arbitrary items when key is given
            data_type: Data type or alias selecting the priority list
            key: Extracts the provider id from an item
        """
        get_provider = key or (lambda item: item)  # type: ignore[assignment,return-value]
        items: list[T] = []
        seen: set[ProviderId] = set()
        for item in candidates:
            provider = get_provider(item)
            if provider not in seen:
                seen.add(provider)
                items.append(item)

        order = self.priority_for(data_type)
        listed = sorted(
            (item for item in items if get_provider(item) in order),
            key=lambda item: order.index(get_provider(item)),
        )
        rest = [item for item in items if get_provider(item) not in order]
        return listed + rest

    def meets_confidence_threshold(self, score: float) -> bool:
        return score >= self.min_confidence_threshold

    def with_overrides(
        self,
        overrides: dict[str, list[ProviderId]] | None = None,
        min_confidence_threshold: float | None = None,
    ) -> "PriorityTable":
        """Copy of this table with some priority lists replaced.

        Args:
            overrides: Data type name or alias -> new provider order
            min_confidence_threshold: New threshold, if given

        Returns:
            A new validated PriorityTable
        """
        data = self.model_dump()
        for name, providers in (overrides or {}).items():
            data[resolve_data_type(name).value] = [p.lower().strip() for p in providers]
        if min_confidence_threshold is not None:
            data["min_confidence_threshold"] = min_confidence_threshold
        return PriorityTable(**data)


__all__ = ["DataType", "PriorityTable", "resolve_data_type"]
