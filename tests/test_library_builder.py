from __future__ import annotations

import asyncio
from typing import Any, cast

from app.config import Settings
from app.services.jellyfin import JellyfinClient
from app.services.library import LibraryBuilder


class StubJellyfin:
    def __init__(self, items: list[dict[str, Any]]):
        self.items = items
        self.calls: list[tuple[str, str]] = []

    async def fetch_items(self, user_id: str, access_token: str) -> list[dict[str, Any]]:
        self.calls.append((user_id, access_token))
        return self.items


EPISODE = {
    "Id": "aaaa-bbbb-cccc",
    "Name": "Pilot",
    "Type": "Episode",
    "ParentIndexNumber": 1,
    "IndexNumber": 2,
    "SeriesName": "Deep Space",
    "SeasonName": "Season 1",
    "SeriesStudio": "Orbit TV",
    "RunTimeTicks": 6_000_000_000,
    "PremiereDate": "2021-03-04T00:00:00.0000000Z",
    "DateCreated": "2022-01-02T10:11:12.0000000Z",
    "CommunityRating": 8.0,
    "UserData": {"Played": True, "IsFavorite": True},
    "MediaSources": [
        {
            "Id": "source1",
            "Container": "mkv",
            "MediaStreams": [
                {"Type": "Video", "Index": 0},
                {
                    "Type": "Subtitle",
                    "Index": 2,
                    "Codec": "srt",
                    "Language": "eng",
                    "DisplayTitle": "English",
                    "IsTextSubtitleStream": True,
                },
                {
                    "Type": "Subtitle",
                    "Index": 3,
                    "Codec": "PGSSUB",
                    "Language": "eng",
                    "IsTextSubtitleStream": False,
                },
            ],
        }
    ],
}


def _builder(items: list[dict[str, Any]]) -> tuple[LibraryBuilder, StubJellyfin]:
    settings = Settings(_env_file=None, JELLYFIN_URL="https://jf.example.com/")
    jellyfin = StubJellyfin(items)
    return LibraryBuilder(settings, cast(JellyfinClient, jellyfin)), jellyfin


def test_episode_is_mapped_with_links_and_titles() -> None:
    builder, jellyfin = _builder([EPISODE])

    items = asyncio.run(builder.build("user-1", "token-1"))

    assert jellyfin.calls == [("user-1", "token-1")]
    (item,) = items
    assert item.stable_id == "aaaabbbbcccc"
    assert item.display_title == "S01E02 - Pilot"
    assert item.runtime_ms == 600_000
    assert item.release_date.isoformat() == "2021-03-04"
    assert item.added_date.isoformat() == "2022-01-02"
    assert item.studios == ["Orbit TV"]
    assert item.favorite and item.watched
    assert item.thumbnail_url.startswith(
        "https://jf.example.com/Items/aaaabbbbcccc/Images/Primary?"
    )
    assert [media.url for media in item.media_files] == [
        "https://jf.example.com/Items/source1/Download?api_key=token-1"
    ]
    assert [track.url for track in item.subtitle_tracks] == [
        "https://jf.example.com/Videos/aaaabbbbcccc/source1/Subtitles/2/Stream.srt?api_key=token-1"
    ]


def test_virtual_and_id_less_items_are_skipped() -> None:
    builder, _ = _builder(
        [
            {"Id": "v1", "Name": "Missing", "Type": "Episode", "LocationType": "Virtual"},
            {"Name": "No id", "Type": "Movie"},
            {"Id": "m1", "Name": "Kept", "Type": "Movie"},
        ]
    )

    items = asyncio.run(builder.build("user-1", "token-1"))

    assert [item.display_title for item in items] == ["Kept"]
    assert "Backdrop" in items[0].thumbnail_url


def test_unparseable_dates_fall_back_to_unknown() -> None:
    builder, _ = _builder([])

    item = builder.to_catalog_item(
        {"Id": "m1", "Name": "Odd", "Type": "Movie", "PremiereDate": "soon"}, "token"
    )

    assert item is not None
    assert item.release_date is None
    assert item.to_scan_entry().date_released == "1970-01-01"
