"""Pydantic models describing catalog and ledger payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import format_runtime, parse_duration, strip_disambiguation


def _first_name(entries: Any) -> str | None:
    if not isinstance(entries, list):
        return None
    for entry in entries:
        if isinstance(entry, Mapping):
            name = str(entry.get("name") or "").strip()
            if name:
                return name
    return None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(entry) for entry in value if entry not in (None, "")]


def _positive_year(value: Any) -> int | None:
    try:
        year = int(value)
    except (TypeError, ValueError):
        return None
    return year if year > 0 else None


class CatalogItem(BaseModel):
    """A record in an owner's collection."""

    model_config = ConfigDict(from_attributes=True)

    external_id: str
    title: str
    artist: str
    cover_url: str | None = None
    added_at: datetime | None = None
    genres: list[str] = Field(default_factory=list)
    styles: list[str] = Field(default_factory=list)
    year: int | None = None
    label: str | None = None
    format: str | None = None

    @field_validator("genres", "styles", mode="before")
    @classmethod
    def _as_sorted_set(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, (list, tuple, set, frozenset)):
            return sorted({str(entry) for entry in value if entry not in (None, "")})
        return value

    @classmethod
    def from_discogs_release(cls, item: Mapping[str, Any]) -> "CatalogItem":
        """Normalise one entry of a collection ``releases`` listing."""

        raw_id = item.get("id")
        if raw_id in (None, ""):
            raise ValueError("Discogs release is missing an id")
        info = item.get("basic_information")
        if not isinstance(info, Mapping):
            info = {}
        artist = _first_name(info.get("artists"))
        cover = info.get("cover_image") or info.get("thumb") or None
        return cls(
            external_id=str(raw_id),
            title=str(info.get("title") or ""),
            artist=strip_disambiguation(artist) if artist else "Unknown",
            cover_url=str(cover) if cover else None,
            genres=_string_list(info.get("genres")),
            styles=_string_list(info.get("styles")),
            year=_positive_year(info.get("year")),
            label=_first_name(info.get("labels")),
            format=_first_name(info.get("formats")),
        )

    def to_row(self, owner_username: str) -> dict[str, Any]:
        """Return the column values written on sync; ``added_at`` is left out."""

        return {
            "owner_username": owner_username,
            "external_id": self.external_id,
            "title": self.title,
            "artist": self.artist,
            "cover_url": self.cover_url,
            "genres": self.genres,
            "styles": self.styles,
            "year": self.year,
            "label": self.label,
            "format": self.format,
        }


class PlayAggregate(BaseModel):
    """Play totals for one record."""

    external_id: str
    play_count: int = Field(ge=0)
    last_played: datetime | None = None


class Track(BaseModel):
    position: str = ""
    title: str = ""
    duration: str = ""


class ReleaseDetail(BaseModel):
    """Extra release metadata fetched live for the detail view."""

    year: int | None = None
    label: str | None = None
    genres: list[str] = Field(default_factory=list)
    styles: list[str] = Field(default_factory=list)
    tracklist: list[Track] = Field(default_factory=list)
    runtime: str = ""

    @classmethod
    def from_discogs_release(cls, data: Mapping[str, Any]) -> "ReleaseDetail":
        raw_tracks = data.get("tracklist")
        tracks: list[Track] = []
        if isinstance(raw_tracks, list):
            for entry in raw_tracks:
                if not isinstance(entry, Mapping) or entry.get("type_") != "track":
                    continue
                tracks.append(
                    Track(
                        position=str(entry.get("position") or ""),
                        title=str(entry.get("title") or ""),
                        duration=str(entry.get("duration") or ""),
                    )
                )
        total_seconds = sum(parse_duration(track.duration) for track in tracks)
        return cls(
            year=_positive_year(data.get("year")),
            label=_first_name(data.get("labels")),
            genres=_string_list(data.get("genres")),
            styles=_string_list(data.get("styles")),
            tracklist=tracks,
            runtime=format_runtime(total_seconds),
        )
