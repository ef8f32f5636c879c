from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import cast

import pytest

from app.database import Database
from app.models import CatalogItem, MediaFile
from app.services.cache import CacheStore, ItemNotFound
from app.services.library import LibraryBuilder
from app.services.sessions import AuthenticatedUser

USER = AuthenticatedUser(
    user_id="user-1", access_token="token-1", username="alice", password="pw"
)
BASE = "https://vr.example.com"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class CountingBuilder:
    """LibraryBuilder stand-in counting how often a rebuild happens."""

    def __init__(self) -> None:
        self.builds = 0
        self.fail = False
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def build(self, user_id: str, access_token: str) -> list[CatalogItem]:
        self.builds += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("listing failed")
        return [
            CatalogItem(
                stable_id="movie1",
                display_title=f"Movie build {self.builds}",
                kind="Movie",
                runtime_ms=600_000,
                media_files=[MediaFile(container="mp4", url="https://jf/Items/movie1/Download")],
            ),
            CatalogItem(stable_id="movie1", display_title="Duplicate", kind="Movie"),
            CatalogItem(stable_id="movie2", display_title="Second", kind="Movie"),
        ]


async def _cache(tmp_path, name: str) -> tuple[Database, CacheStore, CountingBuilder, FakeClock]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / name}")
    await database.create_all()
    builder = CountingBuilder()
    clock = FakeClock()
    cache = CacheStore(
        database.session_factory,
        cast(LibraryBuilder, builder),
        ttl_seconds=120,
        clock=clock,
    )
    return database, cache, builder, clock


def test_entry_is_reused_within_ttl_and_rebuilt_after(tmp_path) -> None:
    async def runner() -> None:
        database, cache, builder, clock = await _cache(tmp_path, "ttl.db")

        first = await cache.get_or_refresh(USER)
        assert builder.builds == 1

        clock.advance(119)
        cached = await cache.get_or_refresh(USER)
        assert cached.last_updated == first.last_updated
        assert cached.index_payload(BASE) == first.index_payload(BASE)
        assert cached.scan_payload(BASE) == first.scan_payload(BASE)
        assert builder.builds == 1

        clock.advance(2)
        refreshed = await cache.get_or_refresh(USER)
        assert builder.builds == 2
        assert refreshed.last_updated == clock.now

        await database.dispose()

    asyncio.run(runner())


def test_concurrent_requests_share_one_rebuild(tmp_path) -> None:
    async def runner() -> None:
        database, cache, builder, _ = await _cache(tmp_path, "single-flight.db")
        builder.gate = asyncio.Event()

        requests = [asyncio.create_task(cache.get_or_refresh(USER)) for _ in range(8)]
        await asyncio.wait_for(builder.started.wait(), timeout=5)
        assert cache.is_rebuilding(USER.user_id)
        builder.gate.set()
        entries = await asyncio.gather(*requests)

        assert builder.builds == 1
        # Callers that arrive after the rebuild read the stored entry instead.
        assert {entry.last_updated for entry in entries} == {entries[0].last_updated}
        assert all(
            entry.index_payload(BASE) == entries[0].index_payload(BASE)
            and entry.scan_payload(BASE) == entries[0].scan_payload(BASE)
            for entry in entries
        )
        assert not cache.is_rebuilding(USER.user_id)

        await database.dispose()

    asyncio.run(runner())


def test_failed_rebuild_releases_the_lease(tmp_path) -> None:
    async def runner() -> None:
        database, cache, builder, _ = await _cache(tmp_path, "failure.db")
        builder.fail = True

        with pytest.raises(RuntimeError):
            await cache.get_or_refresh(USER)
        assert not cache.is_rebuilding(USER.user_id)

        builder.fail = False
        entry = await cache.get_or_refresh(USER)
        assert builder.builds == 2
        assert entry.scan

        await database.dispose()

    asyncio.run(runner())


def test_duplicate_items_are_listed_once(tmp_path) -> None:
    async def runner() -> None:
        database, cache, _, _ = await _cache(tmp_path, "dedupe.db")

        entry = await cache.get_or_refresh(USER)
        index = entry.index_payload("https://vr.example.com")
        scan = entry.scan_payload("https://vr.example.com")

        assert index["access"] == 1
        assert index["library"] == [
            {
                "name": "Library",
                "list": [
                    "https://vr.example.com/heresphere/movie1",
                    "https://vr.example.com/heresphere/movie2",
                ],
            }
        ]
        assert [item["title"] for item in scan["scanData"]] == ["Movie build 1", "Second"]

        await database.dispose()

    asyncio.run(runner())


def test_get_video_is_a_point_lookup(tmp_path) -> None:
    async def runner() -> None:
        database, cache, builder, clock = await _cache(tmp_path, "video.db")
        await cache.get_or_refresh(USER)
        clock.advance(3600)

        record = await cache.get_video(USER.user_id, "movie1")

        assert record.data.title == "Movie build 1"
        assert record.data.media[0].sources[0].url == "https://jf/Items/movie1/Download"
        assert builder.builds == 1
        with pytest.raises(ItemNotFound):
            await cache.get_video(USER.user_id, "missing")
        with pytest.raises(ItemNotFound):
            await cache.get_video("someone-else", "movie1")

        await database.dispose()

    asyncio.run(runner())


def test_rebuild_replaces_items_that_disappeared(tmp_path) -> None:
    async def runner() -> None:
        database, cache, builder, clock = await _cache(tmp_path, "replace.db")
        await cache.get_or_refresh(USER)

        async def only_second(user_id: str, access_token: str) -> list[CatalogItem]:
            builder.builds += 1
            return [CatalogItem(stable_id="movie2", display_title="Second", kind="Movie")]

        builder.build = only_second  # type: ignore[method-assign]
        clock.advance(121)
        entry = await cache.get_or_refresh(USER)

        assert [scan.link for scan in entry.scan] == ["/heresphere/movie2"]
        with pytest.raises(ItemNotFound):
            await cache.get_video(USER.user_id, "movie1")

        await database.dispose()

    asyncio.run(runner())
