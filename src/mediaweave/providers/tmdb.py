"""The Movie Database (TMDB) v3 client."""

import asyncio
import logging
from typing import Any

import httpx

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

IMAGE_BASE_URL = "https://image.tmdb.org/t/p"


def _image_url(path: str | None, size: str = "original") -> str | None:
    if not path:
        return None
    return f"{IMAGE_BASE_URL}/{size}{path}"


def _year(date: str | None) -> int | None:
    if date and len(date) >= 4 and date[:4].isdigit():
        return int(date[:4])
    return None


def _catalog(media_type: MediaType) -> str:
    return "movie" if media_type == MediaType.MOVIE else "tv"


class TMDBProvider(HTTPCatalogProvider):
    """Client for the TMDB v3 API.

    Anime and TV shows map onto TMDB's "tv" catalog and movies onto
    "movie". TMDB has no print media, so manga and novel searches return an
    empty page.

    Requires an API key, passed as the api_key query parameter.
    """

    BASE_URL = "https://api.themoviedb.org/3"

    def __init__(self, api_key: str | None, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(client)
        self._api_key = api_key

    @property
    def provider_id(self) -> str:
        return "tmdb"

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        if not self._api_key:
            raise ValidationFailure(self.provider_id, "TMDB API key not configured")
        return await super()._get_json(path, params={**(params or {}), "api_key": self._api_key})

    def _summary(self, item: dict[str, Any], requested: MediaType) -> MediaSummary:
        if _catalog(requested) == "movie":
            title, original = item.get("title"), item.get("original_title")
            date = item.get("release_date")
            media_type = MediaType.MOVIE
        else:
            title, original = item.get("name"), item.get("original_name")
            date = item.get("first_air_date")
            # TMDB files anime under tv; keep the caller's label
            media_type = requested if requested.is_episodic else MediaType.TV_SHOW
        return MediaSummary(
            id=str(item["id"]),
            provider=self.provider_id,
            title=title or original or "",
            media_type=media_type,
            english_title=title,
            native_title=original if original != title else None,
            year=_year(date),
            cover_image=_image_url(item.get("poster_path"), "w500"),
            total_episodes=item.get("number_of_episodes"),
        )

    async def search(
        self, query: str, media_type: MediaType, page: int = 1, per_page: int = 10
    ) -> SearchPage:
        if media_type.is_readable:
            return SearchPage()
        catalog = _catalog(media_type)
        payload = await self._get_json(f"/search/{catalog}", params={"query": query, "page": page})
        # TMDB pages are fixed at 20 results
        items = [self._summary(r, media_type) for r in (payload.get("results") or [])[:per_page]]
        logger.debug(f"TMDB search '{query}' returned {len(items)} results")
        return SearchPage(
            items=items,
            total_count=payload.get("total_results") or len(items),
            has_next_page=(payload.get("page") or 1) < (payload.get("total_pages") or 1),
        )

    async def fetch_details(self, media_id: str, media_type: MediaType) -> MediaDetailFragment:
        catalog = _catalog(media_type)
        item = await self._get_json(
            f"/{catalog}/{media_id}", params={"append_to_response": "credits,recommendations"}
        )
        if not isinstance(item, dict) or "id" not in item:
            raise ValidationFailure(self.provider_id, f"{catalog} {media_id} not found")

        summary = self._summary(item, media_type)
        credits = item.get("credits") or {}
        characters = [
            PersonFragment(
                id=str(c["id"]),
                name=c["character"],
                image=_image_url(c.get("profile_path"), "w185"),
                role="Main" if (c.get("order") or 0) < 5 else "Supporting",
            )
            for c in (credits.get("cast") or [])[:25]
            if c.get("id") and c.get("character")
        ]
        staff = [
            PersonFragment(
                id=str(c["id"]),
                name=c["name"],
                image=_image_url(c.get("profile_path"), "w185"),
                role=c.get("job") or "",
            )
            for c in (credits.get("crew") or [])[:25]
            if c.get("id") and c.get("name")
        ]
        recommendations = [
            RecommendationFragment(
                id=str(r["id"]),
                title=r.get("title") or r.get("name") or "",
                cover_image=_image_url(r.get("poster_path"), "w500"),
                rating=round((r.get("vote_average") or 0) * 10),
            )
            for r in ((item.get("recommendations") or {}).get("results") or [])[:10]
            if r.get("id")
        ]

        vote = item.get("vote_average")
        return MediaDetailFragment(
            provider=self.provider_id,
            media_id=summary.id,
            title=summary.title,
            media_type=summary.media_type,
            english_title=summary.english_title,
            native_title=summary.native_title,
            synopsis=item.get("overview") or None,
            cover_image=_image_url(item.get("poster_path")),
            banner_image=_image_url(item.get("backdrop_path")),
            genres=[g["name"] for g in item.get("genres") or [] if g.get("name")],
            # TMDB votes are out of 10
            average_score=float(vote) * 10 if vote else None,
            status=item.get("status"),
            year=summary.year,
            total_episodes=item.get("number_of_episodes"),
            characters=characters,
            staff=staff,
            recommendations=recommendations,
        )

    async def fetch_episodes(self, media_id: str) -> list[EpisodeFragment]:
        """All regular-season episodes, numbered absolutely across seasons.

        Season 0 (specials) is skipped. Seasons are fetched concurrently.
        """
        show = await self._get_json(f"/tv/{media_id}")
        season_numbers = sorted(
            s["season_number"]
            for s in show.get("seasons") or []
            if (s.get("season_number") or 0) > 0
        )
        seasons = await asyncio.gather(
            *(self._get_json(f"/tv/{media_id}/season/{n}") for n in season_numbers)
        )

        episodes = []
        for season in seasons:
            for item in season.get("episodes") or []:
                number = len(episodes) + 1
                episodes.append(
                    EpisodeFragment(
                        id=str(item.get("id") or f"{media_id}-{number}"),
                        number=number,
                        title=item.get("name"),
                        thumbnail=_image_url(item.get("still_path"), "w300"),
                        air_date=item.get("air_date"),
                        duration_minutes=item.get("runtime"),
                        source_provider=self.provider_id,
                    )
                )
        return episodes


__all__ = ["TMDBProvider"]
