"""AniList GraphQL client."""

import logging
import re
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

_MEDIA_FIELDS = """
    id
    type
    format
    title { romaji english native }
    startDate { year }
    coverImage { extraLarge large }
    episodes
"""

SEARCH_QUERY = (
    """
query ($search: String, $type: MediaType, $page: Int, $perPage: Int) {
  Page(page: $page, perPage: $perPage) {
    pageInfo { total hasNextPage }
    media(search: $search, type: $type) {"""
    + _MEDIA_FIELDS
    + """}
  }
}
"""
)

DETAILS_QUERY = (
    """
query ($id: Int) {
  Media(id: $id) {"""
    + _MEDIA_FIELDS
    + """
    chapters
    description(asHtml: false)
    bannerImage
    genres
    averageScore
    status
    characters(perPage: 25, sort: [ROLE, RELEVANCE]) {
      edges { role node { id name { full native } image { large } } }
    }
    staff(perPage: 25, sort: RELEVANCE) {
      edges { role node { id name { full native } image { large } } }
    }
    recommendations(perPage: 10, sort: RATING_DESC) {
      nodes { rating mediaRecommendation { id title { romaji english } coverImage { large } } }
    }
  }
}
"""
)

EPISODES_QUERY = """
query ($id: Int) {
  Media(id: $id) {
    streamingEpisodes { title thumbnail }
  }
}
"""

_EPISODE_NUMBER = re.compile(r"episode\s+(\d+)", re.IGNORECASE)
_HTML_TAG = re.compile(r"<[^>]+>")


def _media_type(item: dict[str, Any]) -> MediaType:
    fmt = item.get("format") or ""
    if fmt == "NOVEL":
        return MediaType.NOVEL
    if fmt == "MOVIE":
        return MediaType.MOVIE
    if item.get("type") == "MANGA":
        return MediaType.MANGA
    return MediaType.ANIME


def _int_id(provider: str, media_id: str) -> int:
    try:
        return int(media_id)
    except ValueError as e:
        raise ValidationFailure(provider, f"Invalid media id: {media_id!r}") from e


def _graphql_type(media_type: MediaType) -> str:
    return "MANGA" if media_type.is_readable else "ANIME"


def _person(edge: dict[str, Any]) -> PersonFragment | None:
    node = edge.get("node") or {}
    name = node.get("name") or {}
    if not node.get("id") or not name.get("full"):
        return None
    return PersonFragment(
        id=str(node["id"]),
        name=name["full"],
        native_name=name.get("native"),
        image=(node.get("image") or {}).get("large"),
        role=(edge.get("role") or "").title(),
    )


class AniListProvider(HTTPCatalogProvider):
    """Client for the AniList GraphQL API. No API key required."""

    BASE_URL = "https://graphql.anilist.co"

    @property
    def provider_id(self) -> str:
        return "anilist"

    async def _query(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        payload = await self._post_json("/", {"query": query, "variables": variables})
        if not isinstance(payload, dict):
            raise ValidationFailure(self.provider_id, "Unexpected response shape")
        if payload.get("errors") and not payload.get("data"):
            message = payload["errors"][0].get("message", "GraphQL error")
            raise ValidationFailure(self.provider_id, message)
        return payload.get("data") or {}

    def _summary(self, item: dict[str, Any]) -> MediaSummary:
        title = item.get("title") or {}
        return MediaSummary(
            id=str(item["id"]),
            provider=self.provider_id,
            title=title.get("romaji") or title.get("english") or title.get("native") or "",
            media_type=_media_type(item),
            english_title=title.get("english"),
            native_title=title.get("native"),
            year=(item.get("startDate") or {}).get("year"),
            cover_image=(item.get("coverImage") or {}).get("large"),
            total_episodes=item.get("episodes"),
        )

    async def search(
        self, query: str, media_type: MediaType, page: int = 1, per_page: int = 10
    ) -> SearchPage:
        data = await self._query(
            SEARCH_QUERY,
            {"search": query, "type": _graphql_type(media_type), "page": page, "perPage": per_page},
        )
        page_data = data.get("Page") or {}
        items = [self._summary(m) for m in page_data.get("media") or [] if m.get("id")]
        info = page_data.get("pageInfo") or {}
        logger.debug(f"AniList search '{query}' returned {len(items)} results")
        return SearchPage(
            items=items,
            total_count=info.get("total") or len(items),
            has_next_page=bool(info.get("hasNextPage")),
        )

    async def fetch_details(self, media_id: str, media_type: MediaType) -> MediaDetailFragment:
        data = await self._query(DETAILS_QUERY, {"id": _int_id(self.provider_id, media_id)})
        media = data.get("Media")
        if not media:
            raise ValidationFailure(self.provider_id, f"Media {media_id} not found")

        summary = self._summary(media)
        description = media.get("description")
        if description:
            description = _HTML_TAG.sub("", description).strip()

        characters = [
            p for p in (_person(e) for e in (media.get("characters") or {}).get("edges") or []) if p
        ]
        staff = [p for p in (_person(e) for e in (media.get("staff") or {}).get("edges") or []) if p]

        recommendations = []
        for node in (media.get("recommendations") or {}).get("nodes") or []:
            rec = node.get("mediaRecommendation")
            if not rec:
                continue
            rec_title = rec.get("title") or {}
            recommendations.append(
                RecommendationFragment(
                    id=str(rec["id"]),
                    title=rec_title.get("romaji") or rec_title.get("english") or "",
                    cover_image=(rec.get("coverImage") or {}).get("large"),
                    rating=node.get("rating") or 0,
                )
            )

        score = media.get("averageScore")
        return MediaDetailFragment(
            provider=self.provider_id,
            media_id=summary.id,
            title=summary.title,
            media_type=summary.media_type,
            english_title=summary.english_title,
            native_title=summary.native_title,
            synopsis=description,
            cover_image=(media.get("coverImage") or {}).get("extraLarge") or summary.cover_image,
            banner_image=media.get("bannerImage"),
            genres=media.get("genres") or [],
            average_score=float(score) if score is not None else None,
            status=media.get("status"),
            year=summary.year,
            total_episodes=media.get("episodes"),
            total_chapters=media.get("chapters"),
            characters=characters,
            staff=staff,
            recommendations=recommendations,
        )

    async def fetch_episodes(self, media_id: str) -> list[EpisodeFragment]:
        """Episodes from AniList's streaming listings.

        AniList only knows episodes that a streaming service lists, so this
        is often partial. Entries without a recognizable number are skipped.
        """
        data = await self._query(EPISODES_QUERY, {"id": _int_id(self.provider_id, media_id)})
        streaming = (data.get("Media") or {}).get("streamingEpisodes") or []

        episodes = []
        for item in streaming:
            title = item.get("title") or ""
            match = _EPISODE_NUMBER.search(title)
            if not match:
                continue
            number = int(match.group(1))
            episodes.append(
                EpisodeFragment(
                    id=f"{media_id}-{number}",
                    number=number,
                    title=title,
                    thumbnail=item.get("thumbnail"),
                    source_provider=self.provider_id,
                )
            )
        episodes.sort(key=lambda ep: ep.number)
        return episodes


__all__ = ["AniListProvider"]
