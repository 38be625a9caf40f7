"""Plain-text rendering of aggregated records for the tool server."""

import logging

from mediaweave.models import AttributedRecord, PersonFragment

logger = logging.getLogger(__name__)

DIVIDER_PRIMARY = "═" * 55
DIVIDER_SECONDARY = "─" * 55

MAX_PEOPLE = 10
MAX_RECOMMENDATIONS = 5
MAX_EPISODES = 12
SYNOPSIS_LIMIT = 600


def _attributed(record: AttributedRecord, field: str, value: object) -> str:
    provider = record.data_source_attribution.get(field)
    return f"{value} [{provider}]" if provider else str(value)


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def _format_people(heading: str, people: list[PersonFragment]) -> list[str]:
    if not people:
        return []
    lines = ["", f"{heading} ({len(people)})", DIVIDER_SECONDARY]
    for person in people[:MAX_PEOPLE]:
        line = f"  • {person.name}"
        if person.native_name:
            line += f" ({person.native_name})"
        if person.role:
            line += f" - {person.role}"
        lines.append(line)
    if len(people) > MAX_PEOPLE:
        lines.append(f"  … and {len(people) - MAX_PEOPLE} more")
    return lines


def format_record(record: AttributedRecord) -> str:
    """Render an AttributedRecord as a text report.

    Each scalar field is followed by the provider that supplied it in
    square brackets.
    """
    lines = [
        DIVIDER_PRIMARY,
        record.title.upper(),
        DIVIDER_PRIMARY,
        f"Primary: {record.primary_provider}:{record.media_id} ({record.media_type.value})",
    ]

    for label, field in (
        ("English title", "english_title"),
        ("Native title", "native_title"),
        ("Year", "year"),
        ("Status", "status"),
        ("Score", "average_score"),
        ("Episodes", "total_episodes"),
        ("Chapters", "total_chapters"),
    ):
        value = getattr(record, field)
        if value is not None and value != "":
            lines.append(f"{label}: {_attributed(record, field, value)}")

    if record.genres:
        lines.append(f"Genres: {_attributed(record, 'genres', ', '.join(record.genres))}")
    if record.cover_image:
        lines.append(f"Cover: {_attributed(record, 'cover_image', record.cover_image)}")
    if record.banner_image:
        lines.append(f"Banner: {_attributed(record, 'banner_image', record.banner_image)}")

    if record.synopsis:
        lines += ["", "SYNOPSIS", DIVIDER_SECONDARY, _truncate(record.synopsis, SYNOPSIS_LIMIT)]

    lines += _format_people("CHARACTERS", record.characters)
    lines += _format_people("STAFF", record.staff)

    if record.recommendations:
        lines += ["", "RECOMMENDATIONS", DIVIDER_SECONDARY]
        for rec in record.recommendations[:MAX_RECOMMENDATIONS]:
            lines.append(f"  • {rec.title} (rating {rec.rating})")

    if record.episodes:
        lines += ["", f"EPISODES ({len(record.episodes)})", DIVIDER_SECONDARY]
        for ep in record.episodes[:MAX_EPISODES]:
            line = f"  {ep.number:>4}. {ep.title or 'Untitled'}"
            if ep.air_date:
                line += f" ({ep.air_date})"
            lines.append(line)
        if len(record.episodes) > MAX_EPISODES:
            lines.append(f"  … and {len(record.episodes) - MAX_EPISODES} more")

    if record.chapters:
        lines += ["", f"CHAPTERS ({len(record.chapters)})", DIVIDER_SECONDARY]
        for ch in record.chapters[:MAX_EPISODES]:
            line = f"  {ch.number:>6g}. {ch.title or 'Untitled'}"
            if ch.release_date:
                line += f" ({ch.release_date})"
            lines.append(line)

    lines += ["", "SOURCES", DIVIDER_SECONDARY]
    lines.append(f"Contributing providers: {', '.join(record.contributing_providers)}")
    for provider, media_id in record.cross_references.items():
        confidence = record.match_confidences.get(provider)
        suffix = f" (confidence {confidence:.0%})" if confidence is not None else " (no data)"
        lines.append(f"  {provider}: {media_id}{suffix}")

    lines.append(DIVIDER_PRIMARY)
    return "\n".join(lines)


def format_cache_stats(entry_count: int, byte_size: int, max_size_bytes: int, ttl_days: int) -> str:
    """Render cross-reference cache diagnostics."""
    usage = byte_size / max_size_bytes if max_size_bytes else 0.0
    return "\n".join(
        [
            "CROSS-REFERENCE CACHE",
            DIVIDER_SECONDARY,
            f"Entries: {entry_count}",
            f"Size: {byte_size:,} bytes of {max_size_bytes:,} ({usage:.1%})",
            f"TTL: {ttl_days} days",
        ]
    )


__all__ = ["format_cache_stats", "format_record"]
