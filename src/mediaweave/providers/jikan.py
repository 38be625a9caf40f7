"""Jikan (unofficial MyAnimeList) REST client."""

import asyncio
import logging
from typing import Any

from mediaweave.models import (
    EpisodeFragment,
    MediaDetailFragment,
    MediaSummary,
    MediaType,
    PersonFragment,
    RecommendationFragment,
    SearchPage,
)
from mediaweave.providers.base import HTTPCatalogProvider, ValidationFailure

logger = logging.getLogger(__name__)


def _catalog(media_type: MediaType) -> str:
    return "manga" if media_type.is_readable else "anime"


def _media_type(item: dict[str, Any], catalog: str) -> MediaType:
    kind = (item.get("type") or "").lower()
    if catalog == "manga":
        return MediaType.NOVEL if kind in ("novel", "light novel") else MediaType.MANGA
    return MediaType.MOVIE if kind == "movie" else MediaType.ANIME


def _year(item: dict[str, Any]) -> int | None:
    if item.get("year"):
        return int(item["year"])
    for key in ("aired", "published"):
        prop = ((item.get(key) or {}).get("prop") or {}).get("from") or {}
        if prop.get("year"):
            return int(prop["year"])
    return None


def _display_name(name: str) -> str:
    """MyAnimeList lists people as "Family, Given"; flip to "Given Family"."""
    family, sep, given = name.partition(", ")
    return f"{given} {family}" if sep and given else name


def _image(item: dict[str, Any], size: str = "large_image_url") -> str | None:
    jpg = (item.get("images") or {}).get("jpg") or {}
    return jpg.get(size) or jpg.get("image_url")


class JikanProvider(HTTPCatalogProvider):
    """Client for the Jikan v4 API (MyAnimeList data). No API key required.

    Jikan throttles aggressively (3 requests per second); 429 responses are
    surfaced as RateLimitFailure for the retry executor to handle.
    """

    BASE_URL = "https://api.jikan.moe/v4"

    @property
    def provider_id(self) -> str:
        return "jikan"

    def _summary(self, item: dict[str, Any], catalog: str) -> MediaSummary:
        return MediaSummary(
            id=str(item["mal_id"]),
            provider=self.provider_id,
            title=item.get("title") or "",
            media_type=_media_type(item, catalog),
            english_title=item.get("title_english"),
            native_title=item.get("title_japanese"),
            year=_year(item),
            cover_image=_image(item),
            total_episodes=item.get("episodes"),
        )

    async def search(
        self, query: str, media_type: MediaType, page: int = 1, per_page: int = 10
    ) -> SearchPage:
        catalog = _catalog(media_type)
        payload = await self._get_json(
            f"/{catalog}", params={"q": query, "page": page, "limit": per_page}
        )
        items = [self._summary(m, catalog) for m in payload.get("data") or [] if m.get("mal_id")]
        pagination = payload.get("pagination") or {}
        logger.debug(f"Jikan search '{query}' returned {len(items)} results")
        return SearchPage(
            items=items,
            total_count=(pagination.get("items") or {}).get("total") or len(items),
            has_next_page=bool(pagination.get("has_next_page")),
        )

    async def fetch_details(self, media_id: str, media_type: MediaType) -> MediaDetailFragment:
        catalog = _catalog(media_type)
        full, characters, recommendations = await asyncio.gather(
            self._get_json(f"/{catalog}/{media_id}/full"),
            self._get_json(f"/{catalog}/{media_id}/characters"),
            self._get_json(f"/{catalog}/{media_id}/recommendations"),
        )
        item = full.get("data")
        if not item:
            raise ValidationFailure(self.provider_id, f"{catalog} {media_id} not found")

        summary = self._summary(item, catalog)
        people = []
        for entry in characters.get("data") or []:
            character = entry.get("character") or {}
            if not character.get("mal_id") or not character.get("name"):
                continue
            people.append(
                PersonFragment(
                    id=str(character["mal_id"]),
                    name=_display_name(character["name"]),
                    image=_image(character, "image_url"),
                    role=entry.get("role") or "",
                )
            )

        score = item.get("score")
        return MediaDetailFragment(
            provider=self.provider_id,
            media_id=summary.id,
            title=summary.title,
            media_type=summary.media_type,
            english_title=summary.english_title,
            native_title=summary.native_title,
            synopsis=item.get("synopsis"),
            cover_image=summary.cover_image,
            genres=[g["name"] for g in item.get("genres") or [] if g.get("name")],
            # MyAnimeList scores are out of 10
            average_score=float(score) * 10 if score is not None else None,
            status=item.get("status"),
            year=summary.year,
            total_episodes=item.get("episodes"),
            total_chapters=item.get("chapters"),
            characters=people,
            recommendations=[
                RecommendationFragment(
                    id=str(rec["entry"]["mal_id"]),
                    title=rec["entry"].get("title") or "",
                    cover_image=_image(rec["entry"]),
                    rating=rec.get("votes") or 0,
                )
                for rec in (recommendations.get("data") or [])[:10]
                if (rec.get("entry") or {}).get("mal_id")
            ],
        )

    async def fetch_episodes(self, media_id: str) -> list[EpisodeFragment]:
        """First page of episodes (Jikan pages at 100)."""
        payload = await self._get_json(f"/anime/{media_id}/episodes")
        episodes = []
        for item in payload.get("data") or []:
            number = item.get("mal_id")
            if number is None:
                continue
            aired = item.get("aired")
            episodes.append(
                EpisodeFragment(
                    id=f"{media_id}-{number}",
                    number=int(number),
                    title=item.get("title"),
                    air_date=aired[:10] if aired else None,
                    source_provider=self.provider_id,
                )
            )
        return episodes


__all__ = ["JikanProvider"]
