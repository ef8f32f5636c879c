"""Pydantic models describing catalog items and HereSphere payloads."""

from __future__ import annotations

from datetime import date, datetime
from enum import IntEnum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

HERESPHERE_HEADER = "HereSphere-JSON-Version"
HERESPHERE_PATH = "/heresphere"
LIBRARY_NAME = "Library"
LOGIN_LIBRARY_NAME = "Login required"
UNKNOWN_DATE = "1970-01-01"
WATCHED_TAG = "Status:Watched"


class HereSphereModel(BaseModel):
    """Base class for payloads exchanged with the HereSphere player."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Tag(HereSphereModel):
    name: str
    start: float | None = None
    end: float | None = None
    track: int | None = None
    rating: float | None = None


class MediaSource(HereSphereModel):
    url: str


class Media(HereSphereModel):
    name: str
    sources: list[MediaSource] = Field(default_factory=list)


class Subtitle(HereSphereModel):
    name: str
    language: str
    url: str


class Library(HereSphereModel):
    """A named list of video links."""

    name: str
    links: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("list", "links"),
        serialization_alias="list",
    )


class Index(HereSphereModel):
    """Top-level library response."""

    access: int = 1
    library: list[Library] = Field(default_factory=list)

    @classmethod
    def login_required(cls) -> "Index":
        """Payload telling HereSphere the credentials were not accepted."""

        return cls(access=-1, library=[Library(name=LOGIN_LIBRARY_NAME)])


class ScanEntry(HereSphereModel):
    """One entry of the flattened scan listing."""

    link: str
    title: str
    date_released: str = UNKNOWN_DATE
    date_added: str = UNKNOWN_DATE
    duration: float = 0.0
    rating: float = 0.0
    favorites: int = 0
    comments: int = 0
    is_favorite: bool = False
    tags: list[Tag] = Field(default_factory=list)
    thumbnail_image: str = ""
    media: list[Media] = Field(default_factory=list)
    projection: str = "perspective"
    stereo: str = "mono"
    subtitles: list[Subtitle] = Field(default_factory=list)


class VideoData(HereSphereModel):
    """Full per-item payload returned by the video endpoint."""

    access: int = 1
    title: str
    description: str = ""
    thumbnail_image: str = ""
    date_released: str = UNKNOWN_DATE
    date_added: str = UNKNOWN_DATE
    duration: float = 0.0
    rating: float = 0.0
    is_favorite: bool = False
    projection: str = "perspective"
    stereo: str = "mono"
    event_server: str | None = None
    subtitles: list[Subtitle] = Field(default_factory=list)
    tags: list[Tag] = Field(default_factory=list)
    media: list[Media] = Field(default_factory=list)
    write_hsp: bool = Field(default=True, alias="writeHSP")


class HereSphereRequest(HereSphereModel):
    """Body HereSphere sends with every library/video request."""

    username: str
    password: str
    is_favorite: bool | None = None
    rating: float | None = None
    tags: list[Tag] | None = None
    hsp: str | None = None
    delete_file: bool | None = None
    needs_media_source: bool | None = None


class EventType(IntEnum):
    OPEN = 0
    PLAY = 1
    PAUSE = 2
    CLOSE = 3


class HereSphereEvent(HereSphereModel):
    """Playback event posted to the event server URL."""

    event: EventType
    time: float = 0.0
    speed: float = 1.0
    username: str | None = None
    id: str | None = None
    title: str | None = None
    utc: float | None = None
    connection_key: str | None = None


class Chapter(BaseModel):
    name: str
    start_ms: float = 0.0


class Person(BaseModel):
    name: str
    type: str | None = None
    role: str | None = None


class MediaFile(BaseModel):
    container: str
    url: str


class SubtitleTrack(BaseModel):
    language: str
    display_name: str
    url: str


class CatalogItem(BaseModel):
    """A playable Jellyfin item, independent of the HereSphere field layout."""

    stable_id: str
    display_title: str
    kind: str
    runtime_ms: float = 0.0
    release_date: date | None = None
    added_date: date | None = None
    community_rating: float | None = None
    overview: str = ""
    chapters: list[Chapter] = Field(default_factory=list)
    genres: list[str] = Field(default_factory=list)
    freeform_tags: list[str] = Field(default_factory=list)
    people: list[Person] = Field(default_factory=list)
    studios: list[str] = Field(default_factory=list)
    series_name: str | None = None
    season_name: str | None = None
    media_files: list[MediaFile] = Field(default_factory=list)
    subtitle_tracks: list[SubtitleTrack] = Field(default_factory=list)
    thumbnail_url: str = ""
    watched: bool = False
    favorite: bool = False

    @property
    def link_path(self) -> str:
        """Path of the video endpoint, relative to the public base URL."""

        return f"{HERESPHERE_PATH}/{self.stable_id}"

    def build_tags(self) -> list[Tag]:
        """Flatten chapters, genres, credits, grouping and watched status into tags."""

        tags: list[Tag] = []
        for index, chapter in enumerate(self.chapters):
            if index + 1 < len(self.chapters):
                end = self.chapters[index + 1].start_ms
            else:
                end = self.runtime_ms
            tags.append(
                Tag(
                    name=f"Chapter:{chapter.name}",
                    start=chapter.start_ms,
                    end=end,
                    track=0,
                )
            )

        tags.extend(Tag(name=f"Genre:{genre}") for genre in self.genres)
        tags.extend(Tag(name=f"Tag:{tag}") for tag in self.freeform_tags)
        if self.kind:
            tags.append(Tag(name=f"Type:{self.kind}"))

        if self.kind == "Movie":
            tags.append(Tag(name=f"Movie:{self.display_title}"))
            tags.extend(Tag(name=f"Studio:{studio}") for studio in self.studios)
        elif self.kind == "Episode":
            if self.series_name:
                tags.append(Tag(name=f"Series:{self.series_name}"))
            tags.extend(Tag(name=f"Studio:{studio}") for studio in self.studios)

        if self.season_name:
            tags.append(Tag(name=f"Season:{self.season_name}"))
        if self.watched:
            tags.append(Tag(name=WATCHED_TAG))

        for person in self.people:
            if not person.type:
                continue
            if person.role:
                tags.append(Tag(name=f"{person.type}:{person.name} ({person.role})"))
            tags.append(Tag(name=f"{person.type}:{person.name}"))
        return tags

    def build_media(self) -> list[Media]:
        return [
            Media(name=media.container, sources=[MediaSource(url=media.url)])
            for media in self.media_files
        ]

    def build_subtitles(self, language: str | None = None) -> list[Subtitle]:
        """Return subtitle tracks, optionally restricted to one language."""

        return [
            Subtitle(
                name=track.display_name,
                language=track.language,
                url=track.url,
            )
            for track in self.subtitle_tracks
            if language is None or track.language == language
        ]

    def heresphere_rating(self) -> float:
        """Convert the 0-10 community rating to HereSphere's 0-5 stars."""

        return (self.community_rating or 0.0) / 2.0

    def to_scan_entry(self) -> ScanEntry:
        return ScanEntry(
            link=self.link_path,
            title=self.display_title,
            date_released=_format_date(self.release_date),
            date_added=_format_date(self.added_date),
            duration=self.runtime_ms,
            rating=self.heresphere_rating(),
            is_favorite=self.favorite,
            tags=self.build_tags(),
            thumbnail_image=self.thumbnail_url,
            media=self.build_media(),
            subtitles=self.build_subtitles(),
        )

    def to_video_data(self, *, subtitle_language: str | None = None) -> VideoData:
        return VideoData(
            title=self.display_title,
            description=self.overview,
            thumbnail_image=self.thumbnail_url,
            date_released=_format_date(self.release_date),
            date_added=_format_date(self.added_date),
            duration=self.runtime_ms,
            rating=self.heresphere_rating(),
            is_favorite=self.favorite,
            tags=self.build_tags(),
            media=self.build_media(),
            subtitles=self.build_subtitles(subtitle_language),
        )


class PlaybackState(BaseModel):
    """Last known playback of a signed-in session."""

    play_session_id: str
    item_id: str
    duration_ms: int = 0
    position_ms: int = 0
    speed: float = 1.0
    paused: bool = True
    started_at: datetime
    last_update: datetime

    def predict_position(self, now: datetime) -> int:
        """Extrapolate the position from the last observation to ``now``."""

        elapsed_ms = max((now - self.last_update).total_seconds() * 1000.0, 0.0)
        return self.position_ms + int(round(elapsed_ms * max(self.speed, 0.0)))

    def has_overrun(self, position_ms: int) -> bool:
        return self.duration_ms > 0 and position_ms > self.duration_ms


def _format_date(value: date | None) -> str:
    if value is None:
        return UNKNOWN_DATE
    return value.strftime("%Y-%m-%d")
