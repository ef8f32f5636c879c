"""Background loop keeping Jellyfin's resume points close to the real position."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from ..models import PlaybackState
from ..utils import utcnow
from .jellyfin import JellyfinClient, UpstreamUnavailable
from .sessions import AuthenticatedUser, Session, SessionNotFound, SessionStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickReport:
    """What a single pass over the tracked sessions did."""

    updated: int = 0
    stopped: int = 0
    failed: int = 0
    skipped: int = 0


class ProgressExtrapolator:
    """Extrapolates playing sessions on a fixed interval and reports upstream.

    The exact position is only known when HereSphere sends a Play or Pause
    event; in between, the position is predicted from the last observation
    and the playback speed.
    """

    def __init__(
        self,
        sessions: SessionStore,
        jellyfin: JellyfinClient,
        *,
        interval_seconds: float = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = sessions
        self._jellyfin = jellyfin
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Launch the periodic loop."""

        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stop the periodic loop."""

        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                report = await self.tick()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Failed to update progress: %s", exc)
                continue
            logger.info(
                "Updated playback positions: %s updated, %s stopped, %s failed",
                report.updated,
                report.stopped,
                report.failed,
            )

    async def tick(self) -> TickReport:
        """Advance every non-paused playback once; sessions run concurrently."""

        report = TickReport()
        sessions = await self._sessions.list_tracked()
        results = await asyncio.gather(
            *(self._advance(session) for session in sessions), return_exceptions=True
        )
        for session, outcome in zip(sessions, results):
            if isinstance(outcome, UpstreamUnavailable):
                logger.warning(
                    "Progress report for session %s failed: %s", session.id, outcome
                )
                report.failed += 1
                continue
            if isinstance(outcome, (SQLAlchemyError, SessionNotFound)):
                logger.warning(
                    "Could not persist progress for session %s: %s", session.id, outcome
                )
                report.failed += 1
                continue
            if isinstance(outcome, Exception):
                logger.error(
                    "Unexpected error advancing session %s",
                    session.id,
                    exc_info=outcome,
                )
                report.failed += 1
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome == "updated":
                report.updated += 1
            elif outcome == "stopped":
                report.stopped += 1
            else:
                report.skipped += 1
        return report

    async def _advance(self, session: Session) -> str:
        user = session.user
        if not isinstance(user, AuthenticatedUser) or user.playback is None:
            return "skipped"
        playback = user.playback
        if playback.paused:
            return "skipped"

        now = self._clock()
        predicted = playback.predict_position(now)
        if playback.has_overrun(predicted):
            # The client never reliably says it closed, so running past the end
            # is what ends tracking. The position stays at the last value
            # reported upstream instead of the overshoot.
            logger.debug(
                "Playback of %s (%s) predicted past its duration, stopping",
                playback.item_id,
                playback.play_session_id,
            )
            stopped = playback.model_copy(update={"paused": True, "last_update": now})
            written = await self._sessions.update_playback(
                session.id, stopped, expected=playback
            )
            return "stopped" if written else "skipped"

        logger.debug(
            "Updating playback position of %s from %s to %s",
            playback.item_id,
            playback.position_ms,
            predicted,
        )
        await self._jellyfin.report_playback_progress(
            user.access_token,
            item_id=playback.item_id,
            play_session_id=playback.play_session_id,
            position_ms=predicted,
            paused=False,
            started_at=playback.started_at,
        )
        advanced: PlaybackState = playback.model_copy(
            update={"position_ms": predicted, "last_update": now}
        )
        written = await self._sessions.update_playback(
            session.id, advanced, expected=playback
        )
        return "updated" if written else "skipped"
