"""Pure merge functions that combine per-provider fragments.

Nothing here performs I/O. Every function accepts empty input and returns
an empty or absent result rather than raising.
"""

import logging
import re
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from mediaweave.models import (
    AttributedRecord,
    ChapterFragment,
    EpisodeFragment,
    ImageFragment,
    MatchCandidate,
    MediaDetailFragment,
    PersonFragment,
    ProviderId,
    ProviderValue,
    RecommendationFragment,
)
from mediaweave.priority import DataType, PriorityTable

logger = logging.getLogger(__name__)

# Scalar fields of a detail fragment copied onto the record, in output order.
SCALAR_FIELDS = (
    "title",
    "english_title",
    "native_title",
    "synopsis",
    "genres",
    "average_score",
    "status",
    "year",
    "total_episodes",
    "total_chapters",
)

_IMAGE_FIELDS = ("cover_image", "banner_image")

_IMAGE_SIZE_SUFFIX = re.compile(
    r"[_-]?(small|medium|large|original|l|m|s)\.(jpg|jpeg|png|webp)$", re.IGNORECASE
)
_IMAGE_EXTENSION = re.compile(r"\.(jpg|jpeg|png|webp)$", re.IGNORECASE)


def is_present(value: Any) -> bool:
    """None, empty strings and empty lists count as absent."""
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) > 0
    return True


def normalize_name(name: str) -> str:
    """Identity key for people and titles: casefolded, whitespace collapsed."""
    return " ".join(name.split()).casefold()


def normalize_image_url(url: str) -> str:
    """Strip size suffixes, extension and query so resized copies compare equal."""
    normalized = url.split("?", 1)[0]
    normalized = _IMAGE_SIZE_SUFFIX.sub("", normalized)
    normalized = _IMAGE_EXTENSION.sub("", normalized)
    return normalized.lower()


def is_fallback_cover(thumbnail: str | None, cover_image: str | None) -> bool:
    """True when an episode thumbnail is just the series cover art."""
    if not thumbnail or not cover_image:
        return False
    return normalize_image_url(thumbnail) == normalize_image_url(cover_image)


def _attribute_fills(
    attribution: dict[str, ProviderId],
    contributing: list[ProviderId],
    prefix: str,
    fills: Mapping[str, Counter[ProviderId]],
) -> None:
    """Attribute per-item fills as "<prefix>_<field>" and credit every filler.

    The provider that filled the most items is named; ties go to the one
    that filled first.
    """
    for field, counts in fills.items():
        attribution[f"{prefix}_{field}"] = counts.most_common(1)[0][0]
        for provider in counts:
            if provider not in contributing:
                contributing.append(provider)


def _merge_people(lists: Iterable[Iterable[PersonFragment]]) -> list[PersonFragment]:
    merged: dict[str, PersonFragment] = {}
    for people in lists:
        for person in people:
            key = normalize_name(person.name)
            if not key:
                continue
            existing = merged.get(key)
            if existing is None:
                merged[key] = person
                continue

            if person.completeness > existing.completeness:
                keep, other = person, existing
            else:
                keep, other = existing, person

            # Fill whatever the kept record is still missing from the duplicate
            updates = {
                field: getattr(other, field)
                for field in ("image", "native_name", "role")
                if not is_present(getattr(keep, field)) and is_present(getattr(other, field))
            }
            merged[key] = keep.model_copy(update=updates) if updates else keep
    return list(merged.values())


class DataAggregator:
    """Merges fragments from several providers using a PriorityTable."""

    def __init__(self, priority: PriorityTable | None = None) -> None:
        self.priority = priority or PriorityTable()

    def resolve_image(
        self,
        field: str,
        primary: ImageFragment,
        alternatives: Mapping[ProviderId, ImageFragment],
    ) -> ProviderValue[str] | None:
        """Pick one image field from the primary or the best alternative.

        Args:
            field: "cover_image" or "banner_image"
            primary: The primary provider's images
            alternatives: Other providers' images

        Returns:
            The chosen URL and its provider, or None if nobody has one
        """
        value = getattr(primary, field)
        if is_present(value):
            return ProviderValue(primary.source_provider, value)

        for provider in self.priority.sort_by_priority(alternatives, DataType.IMAGE_QUALITY):
            value = getattr(alternatives[provider], field)
            if is_present(value):
                return ProviderValue(provider, value)
        return None

    def merge_images(
        self, primary: ImageFragment, alternatives: Mapping[ProviderId, ImageFragment]
    ) -> ImageFragment:
        """Resolve cover and banner independently.

        The result's source_provider is the cover's provider when a cover was
        found, otherwise the primary's.
        """
        cover = self.resolve_image("cover_image", primary, alternatives)
        banner = self.resolve_image("banner_image", primary, alternatives)
        return ImageFragment(
            cover_image=cover.value if cover else None,
            banner_image=banner.value if banner else None,
            source_provider=cover.provider if cover else primary.source_provider,
        )

    def merge_characters(self, lists: Iterable[Iterable[PersonFragment]]) -> list[PersonFragment]:
        """Deduplicate characters by name, keeping the most complete record.

        Names are compared case-insensitively with whitespace collapsed. On a
        collision the entry with strictly more of image/native_name wins (ties
        keep the first seen) and any field it lacks is filled from the other.
        Output keeps first-seen order.
        """
        return _merge_people(lists)

    def merge_staff(self, lists: Iterable[Iterable[PersonFragment]]) -> list[PersonFragment]:
        """Same rules as merge_characters."""
        return _merge_people(lists)

    def merge_recommendations(
        self, lists: Iterable[Iterable[RecommendationFragment]]
    ) -> list[RecommendationFragment]:
        """Deduplicate by normalized title; the higher rating wins, ties keep the first."""
        merged: dict[str, RecommendationFragment] = {}
        for recommendations in lists:
            for rec in recommendations:
                key = normalize_name(rec.title)
                if not key:
                    continue
                existing = merged.get(key)
                if existing is None or rec.rating > existing.rating:
                    merged[key] = rec
        return list(merged.values())

    def merge_episodes(
        self,
        primary_provider: ProviderId,
        episodes_by_provider: Mapping[ProviderId, list[EpisodeFragment]],
        primary_cover_image: str | None = None,
    ) -> list[EpisodeFragment]:
        """Combine episode lists.

        The primary's list is the base. Missing thumbnails, and thumbnails
        that are only the series cover, are replaced from other providers in
        episode_thumbnail priority order, matching by episode number. Air
        date and duration are filled from any provider. If the primary has no
        episodes, the first non-empty list in priority order is used as is.
        """
        episodes, _ = self.merge_episodes_with_sources(
            primary_provider, episodes_by_provider, primary_cover_image
        )
        return episodes

    def merge_episodes_with_sources(
        self,
        primary_provider: ProviderId,
        episodes_by_provider: Mapping[ProviderId, list[EpisodeFragment]],
        primary_cover_image: str | None = None,
    ) -> tuple[list[EpisodeFragment], dict[str, Counter[ProviderId]]]:
        """merge_episodes, plus which providers filled which episode fields.

        Returns:
            The merged list and, per filled field (thumbnail, air_date,
            duration_minutes, title), a count of episodes filled by each
            provider. Fields nobody filled are absent.
        """
        fills: dict[str, Counter[ProviderId]] = {}
        primary_episodes = episodes_by_provider.get(primary_provider) or []
        if not primary_episodes:
            return self._select_episode_list(episodes_by_provider), fills

        others = [
            p
            for p in self.priority.sort_by_priority(episodes_by_provider, DataType.EPISODE_THUMBNAIL)
            if p != primary_provider
        ]
        by_number: dict[ProviderId, dict[int, EpisodeFragment]] = {
            p: {ep.number: ep for ep in reversed(episodes_by_provider[p])} for p in others
        }

        merged = []
        for episode in primary_episodes:
            updates: dict[str, Any] = {}
            matches = [by_number[p][episode.number] for p in others if episode.number in by_number[p]]

            if not is_present(episode.thumbnail) or is_fallback_cover(
                episode.thumbnail, primary_cover_image
            ):
                for match in matches:
                    if is_present(match.thumbnail) and not is_fallback_cover(
                        match.thumbnail, primary_cover_image
                    ):
                        updates["thumbnail"] = match.thumbnail
                        fills.setdefault("thumbnail", Counter())[match.source_provider] += 1
                        logger.debug(
                            f"Episode {episode.number} thumbnail from {match.source_provider}"
                        )
                        break

            for field in ("air_date", "duration_minutes", "title"):
                if is_present(getattr(episode, field)):
                    continue
                for match in matches:
                    if is_present(getattr(match, field)):
                        updates[field] = getattr(match, field)
                        fills.setdefault(field, Counter())[match.source_provider] += 1
                        break

            merged.append(episode.model_copy(update=updates) if updates else episode)

        logger.info(f"Merged {len(merged)} episodes from {len(others) + 1} providers")
        return merged, fills

    def _select_episode_list(
        self, episodes_by_provider: Mapping[ProviderId, list[EpisodeFragment]]
    ) -> list[EpisodeFragment]:
        for provider in self.priority.sort_by_priority(
            episodes_by_provider, DataType.EPISODE_THUMBNAIL
        ):
            episodes = episodes_by_provider[provider]
            if episodes:
                logger.info(f"Using episodes from {provider} ({len(episodes)} episodes)")
                return list(episodes)
        return []

    def merge_chapters(
        self,
        primary_provider: ProviderId,
        chapters_by_provider: Mapping[ProviderId, list[ChapterFragment]],
    ) -> list[ChapterFragment]:
        """Combine chapter lists.

        The primary's list is the base; release date and page count are
        filled by chapter number from other providers. Without primary
        chapters the most complete list is chosen.
        """
        chapters, _ = self.merge_chapters_with_sources(primary_provider, chapters_by_provider)
        return chapters

    def merge_chapters_with_sources(
        self,
        primary_provider: ProviderId,
        chapters_by_provider: Mapping[ProviderId, list[ChapterFragment]],
    ) -> tuple[list[ChapterFragment], dict[str, Counter[ProviderId]]]:
        """merge_chapters, plus per-field counts of chapters filled by each provider."""
        fills: dict[str, Counter[ProviderId]] = {}
        primary_chapters = chapters_by_provider.get(primary_provider) or []
        if not primary_chapters:
            return self._select_chapter_list(chapters_by_provider), fills

        others = [
            p
            for p in self.priority.sort_by_priority(chapters_by_provider, DataType.MANGA_CHAPTER)
            if p != primary_provider
        ]
        by_number: dict[ProviderId, dict[float, ChapterFragment]] = {
            p: {ch.number: ch for ch in reversed(chapters_by_provider[p])} for p in others
        }

        merged = []
        for chapter in primary_chapters:
            updates: dict[str, Any] = {}
            matches = [by_number[p][chapter.number] for p in others if chapter.number in by_number[p]]
            for field in ("release_date", "page_count", "title"):
                if is_present(getattr(chapter, field)):
                    continue
                for match in matches:
                    if is_present(getattr(match, field)):
                        updates[field] = getattr(match, field)
                        fills.setdefault(field, Counter())[match.source_provider] += 1
                        break
            merged.append(chapter.model_copy(update=updates) if updates else chapter)
        return merged, fills

    @staticmethod
    def chapter_list_score(chapters: list[ChapterFragment]) -> float:
        """Completeness score: count + 0.5 per dated chapter + 0.3 per paged chapter."""
        dated = sum(1 for ch in chapters if is_present(ch.release_date))
        paged = sum(1 for ch in chapters if ch.page_count is not None)
        return len(chapters) + dated * 0.5 + paged * 0.3

    def _select_chapter_list(
        self, chapters_by_provider: Mapping[ProviderId, list[ChapterFragment]]
    ) -> list[ChapterFragment]:
        scores = {p: self.chapter_list_score(ch) for p, ch in chapters_by_provider.items() if ch}
        if not scores:
            return []
        best_score = max(scores.values())

        # A preferred provider wins while it stays within 80% of the best list
        for provider in self.priority.priority_for(DataType.MANGA_CHAPTER):
            if provider in scores and scores[provider] >= best_score * 0.8:
                logger.info(f"Using chapters from {provider} (score: {scores[provider]:.1f})")
                return list(chapters_by_provider[provider])

        provider = next(p for p, s in scores.items() if s == best_score)
        logger.info(f"Using chapters from {provider} (score: {best_score:.1f})")
        return list(chapters_by_provider[provider])

    def _resolve_scalar(
        self,
        field: str,
        ordered: list[MediaDetailFragment],
    ) -> ProviderValue[Any] | None:
        for fragment in ordered:
            value = getattr(fragment, field)
            if is_present(value):
                return ProviderValue(fragment.provider, value)
        return None

    def _ordered_people(
        self,
        fragments: list[MediaDetailFragment],
        getter: Callable[[MediaDetailFragment], list[PersonFragment]],
    ) -> tuple[list[list[PersonFragment]], ProviderId | None]:
        ordered = self.priority.sort_by_priority(
            fragments, DataType.CHARACTER, key=lambda f: f.provider
        )
        lists = [getter(f) for f in ordered]
        source = next((f.provider for f in ordered if getter(f)), None)
        return lists, source

    def build_record(
        self,
        primary: MediaDetailFragment,
        alternatives: Mapping[ProviderId, MediaDetailFragment] | None = None,
        matches: Mapping[ProviderId, MatchCandidate] | None = None,
        episodes_by_provider: Mapping[ProviderId, list[EpisodeFragment]] | None = None,
        chapters_by_provider: Mapping[ProviderId, list[ChapterFragment]] | None = None,
    ) -> AttributedRecord:
        """Merge one title's fragments into an AttributedRecord.

        Scalar fields come from the primary when present, otherwise from the
        alternatives in anime_metadata priority order. Images follow
        merge_images, people follow character priority. Every populated
        field is attributed to the provider that supplied it.

        Args:
            primary: Detail fragment from the primary provider
            alternatives: Detail fragments from matched providers
            matches: Accepted match candidates, for confidences and ids
            episodes_by_provider: Episode lists keyed by provider
            chapters_by_provider: Chapter lists keyed by provider
        """
        alternatives = {p: f for p, f in (alternatives or {}).items() if p != primary.provider}
        matches = matches or {}
        attribution: dict[str, ProviderId] = {}
        values: dict[str, Any] = {}

        ordered = [primary] + [
            alternatives[p]
            for p in self.priority.sort_by_priority(alternatives, DataType.ANIME_METADATA)
        ]
        for field in SCALAR_FIELDS:
            resolved = self._resolve_scalar(field, ordered)
            if resolved is not None:
                values[field] = resolved.value
                attribution[field] = resolved.provider

        for field in _IMAGE_FIELDS:
            resolved_image = self.resolve_image(
                field, primary.images, {p: f.images for p, f in alternatives.items()}
            )
            if resolved_image is not None:
                values[field] = resolved_image.value
                attribution[field] = resolved_image.provider

        fragments = list(ordered)
        characters, source = self._ordered_people(fragments, lambda f: f.characters)
        values["characters"] = self.merge_characters(characters)
        if source and values["characters"]:
            attribution["characters"] = source

        staff, source = self._ordered_people(fragments, lambda f: f.staff)
        values["staff"] = self.merge_staff(staff)
        if source and values["staff"]:
            attribution["staff"] = source

        values["recommendations"] = self.merge_recommendations(f.recommendations for f in ordered)
        rec_source = next((f.provider for f in ordered if f.recommendations), None)
        if rec_source:
            attribution["recommendations"] = rec_source

        contributing = [primary.provider, *alternatives]

        episodes, episode_fills = self.merge_episodes_with_sources(
            primary.provider, episodes_by_provider or {}, primary_cover_image=primary.cover_image
        )
        if episodes:
            values["episodes"] = episodes
            attribution["episodes"] = episodes[0].source_provider
            _attribute_fills(attribution, contributing, "episode", episode_fills)

        chapters, chapter_fills = self.merge_chapters_with_sources(
            primary.provider, chapters_by_provider or {}
        )
        if chapters:
            values["chapters"] = chapters
            attribution["chapters"] = chapters[0].source_provider
            _attribute_fills(attribution, contributing, "chapter", chapter_fills)

        # Every provider credited for any field contributed, even without details
        for provider in attribution.values():
            if provider not in contributing:
                contributing.append(provider)
        values.setdefault("title", primary.title)

        return AttributedRecord(
            primary_provider=primary.provider,
            media_id=primary.media_id,
            media_type=primary.media_type,
            data_source_attribution=attribution,
            contributing_providers=contributing,
            match_confidences={p: m.confidence for p, m in matches.items() if p in contributing},
            cross_references={p: m.media_id for p, m in matches.items()},
            **values,
        )


__all__ = [
    "DataAggregator",
    "SCALAR_FIELDS",
    "is_fallback_cover",
    "is_present",
    "normalize_image_url",
    "normalize_name",
]
