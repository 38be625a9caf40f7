"""Kitsu JSON:API client."""

import logging
from typing import Any

from mediaweave.models import (
    ChapterFragment,
    EpisodeFragment,
    MediaDetailFragment,
    MediaSummary,
    MediaType,
    SearchPage,
)
from mediaweave.providers.base import HTTPCatalogProvider, ValidationFailure

logger = logging.getLogger(__name__)

PAGE_LIMIT = 20  # Kitsu caps page[limit] at 20


def _catalog(media_type: MediaType) -> str:
    return "manga" if media_type.is_readable else "anime"


def _media_type(attributes: dict[str, Any], catalog: str) -> MediaType:
    subtype = (attributes.get("subtype") or "").lower()
    if catalog == "manga":
        return MediaType.NOVEL if subtype == "novel" else MediaType.MANGA
    return MediaType.MOVIE if subtype == "movie" else MediaType.ANIME


def _year(date: str | None) -> int | None:
    if date and len(date) >= 4 and date[:4].isdigit():
        return int(date[:4])
    return None


def _image(image: dict[str, Any] | None, *sizes: str) -> str | None:
    if not image:
        return None
    for size in sizes:
        if image.get(size):
            return image[size]
    return None


class KitsuProvider(HTTPCatalogProvider):
    """Client for the Kitsu edge API. No API key required."""

    BASE_URL = "https://kitsu.io/api/edge"

    @property
    def provider_id(self) -> str:
        return "kitsu"

    def _default_headers(self) -> dict[str, str]:
        return {
            "User-Agent": self.USER_AGENT,
            "Accept": "application/vnd.api+json",
        }

    def _summary(self, resource: dict[str, Any], catalog: str) -> MediaSummary:
        attributes = resource.get("attributes") or {}
        titles = attributes.get("titles") or {}
        return MediaSummary(
            id=str(resource["id"]),
            provider=self.provider_id,
            title=attributes.get("canonicalTitle") or titles.get("en_jp") or "",
            media_type=_media_type(attributes, catalog),
            english_title=titles.get("en") or titles.get("en_us"),
            native_title=titles.get("ja_jp"),
            year=_year(attributes.get("startDate")),
            cover_image=_image(attributes.get("posterImage"), "large", "original"),
            total_episodes=attributes.get("episodeCount"),
        )

    async def search(
        self, query: str, media_type: MediaType, page: int = 1, per_page: int = 10
    ) -> SearchPage:
        catalog = _catalog(media_type)
        limit = min(per_page, PAGE_LIMIT)
        payload = await self._get_json(
            f"/{catalog}",
            params={
                "filter[text]": query,
                "page[limit]": limit,
                "page[offset]": (page - 1) * limit,
            },
        )
        items = [self._summary(r, catalog) for r in payload.get("data") or [] if r.get("id")]
        logger.debug(f"Kitsu search '{query}' returned {len(items)} results")
        return SearchPage(
            items=items,
            total_count=(payload.get("meta") or {}).get("count") or len(items),
            has_next_page=bool((payload.get("links") or {}).get("next")),
        )

    async def fetch_details(self, media_id: str, media_type: MediaType) -> MediaDetailFragment:
        catalog = _catalog(media_type)
        payload = await self._get_json(
            f"/{catalog}/{media_id}", params={"include": "categories"}
        )
        resource = payload.get("data")
        if not resource:
            raise ValidationFailure(self.provider_id, f"{catalog} {media_id} not found")

        summary = self._summary(resource, catalog)
        attributes = resource.get("attributes") or {}
        genres = [
            inc["attributes"]["title"]
            for inc in payload.get("included") or []
            if inc.get("type") == "categories" and (inc.get("attributes") or {}).get("title")
        ]

        rating = attributes.get("averageRating")
        try:
            average_score = float(rating) if rating else None
        except ValueError:
            average_score = None

        return MediaDetailFragment(
            provider=self.provider_id,
            media_id=summary.id,
            title=summary.title,
            media_type=summary.media_type,
            english_title=summary.english_title,
            native_title=summary.native_title,
            synopsis=attributes.get("synopsis"),
            cover_image=_image(attributes.get("posterImage"), "original", "large"),
            banner_image=_image(attributes.get("coverImage"), "original", "large"),
            genres=genres,
            average_score=average_score,
            status=attributes.get("status"),
            year=summary.year,
            total_episodes=attributes.get("episodeCount"),
            total_chapters=attributes.get("chapterCount"),
        )

    async def fetch_episodes(self, media_id: str) -> list[EpisodeFragment]:
        payload = await self._get_json(
            f"/anime/{media_id}/episodes",
            params={"page[limit]": PAGE_LIMIT, "sort": "number"},
        )
        episodes = []
        for resource in payload.get("data") or []:
            attributes = resource.get("attributes") or {}
            if attributes.get("number") is None:
                continue
            episodes.append(
                EpisodeFragment(
                    id=str(resource["id"]),
                    number=int(attributes["number"]),
                    title=attributes.get("canonicalTitle"),
                    thumbnail=_image(attributes.get("thumbnail"), "original"),
                    air_date=attributes.get("airdate"),
                    duration_minutes=attributes.get("length"),
                    source_provider=self.provider_id,
                )
            )
        return episodes

    async def fetch_chapters(self, media_id: str) -> list[ChapterFragment]:
        payload = await self._get_json(
            f"/manga/{media_id}/chapters",
            params={"page[limit]": PAGE_LIMIT, "sort": "number"},
        )
        chapters = []
        for resource in payload.get("data") or []:
            attributes = resource.get("attributes") or {}
            if attributes.get("number") is None:
                continue
            chapters.append(
                ChapterFragment(
                    id=str(resource["id"]),
                    number=float(attributes["number"]),
                    title=attributes.get("canonicalTitle"),
                    release_date=attributes.get("published"),
                    page_count=attributes.get("length"),
                    source_provider=self.provider_id,
                )
            )
        return chapters


__all__ = ["KitsuProvider"]
