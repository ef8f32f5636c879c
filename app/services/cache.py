"""Per-user library cache with freshness control and single-flight rebuilds."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import LibraryIndexRecord, VideoCacheRecord
from ..models import LIBRARY_NAME, CatalogItem, Index, Library, ScanEntry, VideoData
from ..utils import SingleFlight, utcnow
from .library import LibraryBuilder
from .sessions import AuthenticatedUser

logger = logging.getLogger(__name__)


class ItemNotFound(KeyError):
    """The requested item is not part of the user's cached library."""


@dataclass(slots=True)
class CacheEntry:
    """Library listing and scan payload of one user, with relative links."""

    user_id: str
    libraries: list[Library]
    scan: list[ScanEntry]
    last_updated: datetime

    def index_payload(self, base_url: str) -> dict[str, object]:
        """Return the HereSphere library response with absolute links."""

        libraries = [
            Library(name=library.name, links=[f"{base_url}{link}" for link in library.links])
            for library in self.libraries
        ]
        return Index(access=1, library=libraries).to_payload()

    def scan_payload(self, base_url: str) -> dict[str, object]:
        return {
            "scanData": [
                entry.model_copy(update={"link": f"{base_url}{entry.link}"}).to_payload()
                for entry in self.scan
            ]
        }


@dataclass(slots=True)
class VideoRecord:
    user_id: str
    item_id: str
    data: VideoData
    last_updated: datetime


class CacheStore:
    """Owns cached library data; rebuilds it through the LibraryBuilder when stale."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        builder: LibraryBuilder,
        *,
        ttl_seconds: int,
        subtitle_language: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._builder = builder
        self._ttl_seconds = ttl_seconds
        self._subtitle_language = subtitle_language
        self._clock = clock
        self._rebuilds: SingleFlight[str, CacheEntry] = SingleFlight()

    def is_stale(self, entry: CacheEntry) -> bool:
        age = (self._clock() - entry.last_updated).total_seconds()
        return age > self._ttl_seconds

    def is_rebuilding(self, user_id: str) -> bool:
        return self._rebuilds.in_flight(user_id)

    async def get_or_refresh(self, user: AuthenticatedUser) -> CacheEntry:
        """Return the user's entry, rebuilding it first when missing or stale.

        Concurrent callers for the same user share a single rebuild.
        """

        entry = await self._load_entry(user.user_id)
        if entry is not None and not self.is_stale(entry):
            return entry
        return await self._rebuilds.run(
            user.user_id, lambda: self._refresh_if_stale(user)
        )

    async def _refresh_if_stale(self, user: AuthenticatedUser) -> CacheEntry:
        # A rebuild may have completed between the caller's read and this one.
        entry = await self._load_entry(user.user_id)
        if entry is not None and not self.is_stale(entry):
            logger.debug("Cache for %s was refreshed concurrently", user.user_id)
            return entry
        if entry is None:
            logger.debug("No cache found for %s, creating initial cache", user.user_id)
        else:
            logger.info("Cache for %s is too old, updating", user.user_id)
        return await self._rebuild(user)

    async def _rebuild(self, user: AuthenticatedUser) -> CacheEntry:
        items = await self._builder.build(user.user_id, user.access_token)
        unique: dict[str, CatalogItem] = {}
        for item in items:
            unique.setdefault(item.stable_id, item)

        now = self._clock()
        entry = CacheEntry(
            user_id=user.user_id,
            libraries=[
                Library(
                    name=LIBRARY_NAME,
                    links=[item.link_path for item in unique.values()],
                )
            ],
            scan=[item.to_scan_entry() for item in unique.values()],
            last_updated=now,
        )

        async with self._session_factory() as db:
            await db.execute(
                delete(LibraryIndexRecord).where(LibraryIndexRecord.user_id == user.user_id)
            )
            await db.execute(
                delete(VideoCacheRecord).where(VideoCacheRecord.user_id == user.user_id)
            )
            db.add(
                LibraryIndexRecord(
                    user_id=user.user_id,
                    libraries=[library.to_payload() for library in entry.libraries],
                    scan=[scan.to_payload() for scan in entry.scan],
                    last_updated=now,
                )
            )
            for item_id, item in unique.items():
                video = item.to_video_data(subtitle_language=self._subtitle_language)
                db.add(
                    VideoCacheRecord(
                        user_id=user.user_id,
                        item_id=item_id,
                        payload=video.to_payload(),
                        last_updated=now,
                    )
                )
            await db.commit()

        logger.debug(
            "Primed cache for %s: %s links, %s scan entries",
            user.user_id,
            sum(len(library.links) for library in entry.libraries),
            len(entry.scan),
        )
        return entry

    async def get_video(self, user_id: str, item_id: str) -> VideoRecord:
        """Point lookup of a cached item; never triggers a rebuild."""

        async with self._session_factory() as db:
            stmt = select(VideoCacheRecord).where(
                VideoCacheRecord.user_id == user_id,
                VideoCacheRecord.item_id == item_id,
            )
            record = (await db.execute(stmt)).scalar_one_or_none()
            if record is None:
                raise ItemNotFound(f"Item {item_id} not found for user {user_id}")
            return VideoRecord(
                user_id=record.user_id,
                item_id=record.item_id,
                data=VideoData.model_validate(record.payload),
                last_updated=record.last_updated,
            )

    async def _load_entry(self, user_id: str) -> CacheEntry | None:
        async with self._session_factory() as db:
            record = await db.get(LibraryIndexRecord, user_id)
            if record is None:
                return None
            return CacheEntry(
                user_id=record.user_id,
                libraries=[Library.model_validate(data) for data in record.libraries],
                scan=[ScanEntry.model_validate(data) for data in record.scan],
                last_updated=record.last_updated,
            )
