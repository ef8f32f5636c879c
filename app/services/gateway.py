"""Glue between HereSphere requests and the session, cache and Jellyfin layers."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from ..config import Settings
from ..models import (
    HERESPHERE_PATH,
    EventType,
    HereSphereEvent,
    HereSphereRequest,
    Media,
    MediaSource,
    PlaybackState,
    VideoData,
)
from ..utils import utcnow
from .cache import CacheEntry, CacheStore
from .jellyfin import JellyfinClient, UpstreamUnavailable
from .sessions import (
    AuthenticatedUser,
    InvalidCredentials,
    Session,
    SessionNotFound,
    SessionStore,
)

logger = logging.getLogger(__name__)


class GatewayService:
    """Coordinates sign in, cached library access and playback tracking."""

    def __init__(
        self,
        settings: Settings,
        sessions: SessionStore,
        cache: CacheStore,
        jellyfin: JellyfinClient,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings
        self._sessions = sessions
        self._cache = cache
        self._jellyfin = jellyfin
        self._clock = clock

    @property
    def settings(self) -> Settings:
        return self._settings

    async def bootstrap(self, session_ref: str | None) -> Session:
        """Resolve the cookie session and try to finish a pending pairing."""

        session = await self._sessions.resolve(session_ref)
        return await self._sessions.poll_and_maybe_promote(session)

    async def authenticate(
        self, request: HereSphereRequest
    ) -> tuple[Session, AuthenticatedUser]:
        session = await self._sessions.lookup_by_credentials(
            request.username, request.password
        )
        user = session.user if session is not None else None
        if session is None or user is None:
            raise InvalidCredentials(f"No signed-in session for {request.username!r}")
        return session, user

    async def library(self, user: AuthenticatedUser) -> CacheEntry:
        return await self._cache.get_or_refresh(user)

    async def video(
        self,
        session: Session,
        user: AuthenticatedUser,
        item_id: str,
        request: HereSphereRequest,
        *,
        base_url: str,
    ) -> VideoData:
        """Return an item's payload, minting a stream when the player asks for one."""

        await self._cache.get_or_refresh(user)
        record = await self._cache.get_video(user.user_id, item_id)
        video = record.data
        if request.needs_media_source:
            video = await self._start_playback(
                session, user, item_id, video, base_url=base_url
            )
        return video

    async def _start_playback(
        self,
        session: Session,
        user: AuthenticatedUser,
        item_id: str,
        video: VideoData,
        *,
        base_url: str,
    ) -> VideoData:
        info = await self._jellyfin.playback_info(
            user.user_id, user.access_token, item_id
        )
        if info.transcoding_url:
            stream_path = info.transcoding_url
        else:
            stream_path = (
                f"/Videos/{item_id}/master.m3u8?playSessionId={info.play_session_id}"
                f"&api_key={user.access_token}"
                f"&mediaSourceId={info.media_source_id or item_id}"
            )
        stream_url = f"{self._settings.jellyfin_base_url}{stream_path}"

        media = [
            Media(name=entry.name, sources=[source.model_copy() for source in entry.sources])
            for entry in video.media
        ]
        if not media:
            media.append(Media(name="stream", sources=[]))
        if media[0].sources:
            media[0].sources[0] = MediaSource(url=stream_url)
        else:
            media[0].sources.append(MediaSource(url=stream_url))

        video = video.model_copy(
            update={
                "media": media,
                "event_server": f"{base_url}{HERESPHERE_PATH}/events/{session.id}/{item_id}",
            }
        )

        previous = user.playback
        if previous is not None and previous.play_session_id != info.play_session_id:
            await self._stop_previous(user, previous)

        now = self._clock()
        playback = PlaybackState(
            play_session_id=info.play_session_id,
            item_id=item_id,
            duration_ms=int(round(video.duration)),
            position_ms=0,
            speed=1.0,
            paused=True,
            started_at=now,
            last_update=now,
        )
        await self._sessions.update_playback(session.id, playback)
        await self._jellyfin.report_playback_start(
            user.access_token,
            item_id=item_id,
            play_session_id=info.play_session_id,
            media_source_id=info.media_source_id,
        )
        return video

    async def _stop_previous(
        self, user: AuthenticatedUser, previous: PlaybackState
    ) -> None:
        logger.debug(
            "Replacing play session %s with a new one", previous.play_session_id
        )
        try:
            await self._jellyfin.report_playback_stopped(
                user.access_token,
                item_id=previous.item_id,
                play_session_id=previous.play_session_id,
                position_ms=previous.position_ms,
            )
        except UpstreamUnavailable as exc:
            logger.warning(
                "Could not stop play session %s: %s", previous.play_session_id, exc
            )

    async def handle_event(
        self, session_ref: str, item_id: str, event: HereSphereEvent
    ) -> PlaybackState | None:
        """Apply a HereSphere playback event to the tracked playback."""

        session = await self._sessions.get(session_ref)
        if session is None:
            # Older callback URLs carried the Jellyfin user id instead.
            session = await self._sessions.lookup_by_user_id(session_ref)
        if session is None:
            raise SessionNotFound(f"No session for event reference {session_ref}")

        user = session.user
        if user is None:
            logger.debug("Ignoring event for pending session %s", session.id)
            return None

        if event.event in (EventType.OPEN, EventType.CLOSE):
            # Close is not delivered reliably; running past the end stops tracking.
            logger.debug("Received %s event for %s", event.event.name, item_id)
            return user.playback
        if event.event in (EventType.PLAY, EventType.PAUSE):
            playback = user.playback
            if playback is None:
                logger.warning(
                    "Received %s for session %s without a tracked playback",
                    event.event.name,
                    session.id,
                )
                return None
            if playback.item_id != item_id:
                logger.warning(
                    "Ignoring %s for %s; session %s is tracking %s",
                    event.event.name,
                    item_id,
                    session.id,
                    playback.item_id,
                )
                return playback
            updated = playback.model_copy(
                update={
                    "paused": event.event == EventType.PAUSE,
                    "speed": event.speed,
                    "position_ms": int(round(event.time)),
                    "last_update": self._clock(),
                }
            )
            await self._sessions.update_playback(session.id, updated)
            return updated
        raise ValueError(f"Unsupported event type {event.event!r}")
