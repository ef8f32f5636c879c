"""Turn a Jellyfin user's items into catalog item descriptors."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Mapping

from ..config import Settings
from ..models import Chapter, CatalogItem, MediaFile, Person, SubtitleTrack
from ..utils import ticks_to_ms
from .jellyfin import JellyfinClient

logger = logging.getLogger(__name__)


class LibraryBuilder:
    """Fetches a user's movies and episodes and normalises them."""

    def __init__(self, settings: Settings, jellyfin: JellyfinClient):
        self._settings = settings
        self._jellyfin = jellyfin

    async def build(self, user_id: str, access_token: str) -> list[CatalogItem]:
        raw_items = await self._jellyfin.fetch_items(user_id, access_token)
        items: list[CatalogItem] = []
        for raw in raw_items:
            item = self.to_catalog_item(raw, access_token)
            if item is not None:
                items.append(item)
        logger.debug(
            "Built %s catalog items for user %s (%s raw)",
            len(items),
            user_id,
            len(raw_items),
        )
        return items

    def to_catalog_item(
        self, raw: Mapping[str, Any], access_token: str
    ) -> CatalogItem | None:
        """Map one Jellyfin ``BaseItemDto``; virtual (missing) items map to ``None``."""

        if raw.get("LocationType") == "Virtual":
            return None
        item_id = _clean_id(raw.get("Id"))
        if not item_id:
            logger.warning("Skipping Jellyfin item without an Id: %s", raw.get("Name"))
            return None

        kind = str(raw.get("Type") or "")
        base = self._settings.jellyfin_base_url
        runtime_ms = ticks_to_ms(raw.get("RunTimeTicks"))

        studios: list[str] = []
        if kind == "Episode":
            if raw.get("SeriesStudio"):
                studios.append(str(raw["SeriesStudio"]))
        else:
            for studio in raw.get("Studios") or []:
                if isinstance(studio, Mapping):
                    studios.append(str(studio.get("Name") or "Unknown"))

        user_data = raw.get("UserData") or {}
        image_kind = "Backdrop" if kind == "Movie" else "Primary"

        return CatalogItem(
            stable_id=item_id,
            display_title=_display_title(raw),
            kind=kind,
            runtime_ms=runtime_ms,
            release_date=_parse_date(raw.get("PremiereDate")),
            added_date=_parse_date(raw.get("DateCreated")),
            community_rating=raw.get("CommunityRating"),
            overview=str(raw.get("Overview") or ""),
            chapters=[
                Chapter(
                    name=str(chapter.get("Name") or "Unknown"),
                    start_ms=ticks_to_ms(chapter.get("StartPositionTicks")),
                )
                for chapter in raw.get("Chapters") or []
                if isinstance(chapter, Mapping)
            ],
            genres=[str(genre) for genre in raw.get("Genres") or []],
            freeform_tags=[str(tag) for tag in raw.get("Tags") or []],
            people=[
                Person(
                    name=str(person["Name"]),
                    type=person.get("Type"),
                    role=person.get("Role") or None,
                )
                for person in raw.get("People") or []
                if isinstance(person, Mapping) and person.get("Name")
            ],
            studios=studios,
            series_name=raw.get("SeriesName"),
            season_name=raw.get("SeasonName"),
            media_files=self._media_files(raw, access_token),
            subtitle_tracks=self._subtitle_tracks(item_id, raw, access_token),
            thumbnail_url=(
                f"{base}/Items/{item_id}/Images/{image_kind}"
                f"?maxHeight=300&maxWidth=300&quality=90&api_key={access_token}"
            ),
            watched=bool(user_data.get("Played")),
            favorite=bool(user_data.get("IsFavorite")),
        )

    def _media_files(
        self, raw: Mapping[str, Any], access_token: str
    ) -> list[MediaFile]:
        base = self._settings.jellyfin_base_url
        files: list[MediaFile] = []
        for source in raw.get("MediaSources") or []:
            if not isinstance(source, Mapping) or not source.get("Id"):
                continue
            files.append(
                MediaFile(
                    container=str(source.get("Container") or "mp4"),
                    url=f"{base}/Items/{source['Id']}/Download?api_key={access_token}",
                )
            )
        return files

    def _subtitle_tracks(
        self, item_id: str, raw: Mapping[str, Any], access_token: str
    ) -> list[SubtitleTrack]:
        base = self._settings.jellyfin_base_url
        tracks: list[SubtitleTrack] = []
        for source in raw.get("MediaSources") or []:
            if not isinstance(source, Mapping):
                continue
            source_id = source.get("Id")
            for stream in source.get("MediaStreams") or []:
                if not isinstance(stream, Mapping) or stream.get("Type") != "Subtitle":
                    continue
                # Image based subtitles cannot be served as a text stream.
                if stream.get("IsTextSubtitleStream") is False:
                    continue
                language = str(stream.get("Language") or "")
                tracks.append(
                    SubtitleTrack(
                        language=language,
                        display_name=str(stream.get("DisplayTitle") or language),
                        url=(
                            f"{base}/Videos/{item_id}/{source_id}/Subtitles/"
                            f"{stream.get('Index') or 0}/Stream.{stream.get('Codec') or ''}"
                            f"?api_key={access_token}"
                        ),
                    )
                )
        return tracks


def _clean_id(value: object) -> str:
    return str(value or "").replace("-", "").strip()


def _display_title(raw: Mapping[str, Any]) -> str:
    name = str(raw.get("Name") or "")
    if raw.get("Type") == "Episode":
        season = int(raw.get("ParentIndexNumber") or 0)
        episode = int(raw.get("IndexNumber") or 0)
        return f"S{season:02d}E{episode:02d} - {name}"
    return name


def _parse_date(value: object) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None
