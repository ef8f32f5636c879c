"""Session persistence and the Quick Connect pairing state machine."""

from __future__ import annotations

import dataclasses
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Union

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import SESSION_AUTHENTICATED, SESSION_PENDING, SessionRecord
from ..models import PlaybackState
from ..utils import SingleFlight, generate_password, utcnow
from .jellyfin import JellyfinClient, UpstreamUnavailable

logger = logging.getLogger(__name__)


class SessionNotFound(LookupError):
    """No session matches the given reference."""


class InvalidCredentials(LookupError):
    """The username/password pair does not belong to a signed-in session."""


@dataclass(frozen=True, slots=True)
class PendingPairing:
    """Waiting for the user to approve ``code`` in another Jellyfin client."""

    secret: str
    code: str


@dataclass(frozen=True, slots=True)
class AuthenticatedUser:
    """Signed in; ``password`` is the generated credential HereSphere uses."""

    user_id: str
    access_token: str
    username: str
    password: str
    playback: PlaybackState | None = None


SessionVariant = Union[PendingPairing, AuthenticatedUser]


@dataclass(frozen=True, slots=True)
class Session:
    id: str
    state: SessionVariant

    @property
    def user(self) -> AuthenticatedUser | None:
        if isinstance(self.state, AuthenticatedUser):
            return self.state
        return None

    def with_playback(self, playback: PlaybackState | None) -> "Session":
        """Return a copy carrying ``playback``; only signed-in sessions track playback."""

        state = self.state
        if isinstance(state, AuthenticatedUser):
            return Session(self.id, dataclasses.replace(state, playback=playback))
        if isinstance(state, PendingPairing):
            raise ValueError("Pending sessions cannot track playback")
        raise TypeError(f"Unknown session state {state!r}")


class SessionStore:
    """Reads and writes sessions; the only place sessions change state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        jellyfin: JellyfinClient,
        *,
        password_length: int = 6,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._jellyfin = jellyfin
        self._password_length = password_length
        self._clock = clock
        self._promotions: SingleFlight[str, Session] = SingleFlight()

    async def create_pending(self) -> Session:
        """Start a Quick Connect pairing and persist it as a new session."""

        pairing = await self._jellyfin.initiate_quick_connect()
        session = Session(
            id=secrets.token_hex(16),
            state=PendingPairing(secret=pairing.secret, code=pairing.code),
        )
        now = self._clock()
        async with self._session_factory() as db:
            db.add(
                SessionRecord(
                    id=session.id,
                    status=SESSION_PENDING,
                    pairing_secret=pairing.secret,
                    pairing_code=pairing.code,
                    created_at=now,
                    updated_at=now,
                )
            )
            await db.commit()
        logger.info("Created new pending session %s", session.id)
        return session

    async def get(self, session_id: str) -> Session | None:
        async with self._session_factory() as db:
            record = await db.get(SessionRecord, session_id)
            if record is None:
                return None
            return self._record_to_session(record)

    async def resolve(self, session_ref: str | None) -> Session:
        """Load the referenced session, or start a new pairing when it is unknown."""

        if session_ref:
            session = await self.get(session_ref)
            if session is not None:
                return session
            logger.debug("Session %s not found, starting a new pairing", session_ref)
        return await self.create_pending()

    async def poll_and_maybe_promote(self, session: Session) -> Session:
        """Promote a pending session once its pairing code has been approved.

        Signed-in sessions are returned untouched. A pending session comes back
        unchanged when the code is not approved yet or Jellyfin fails; it is
        only rewritten after the whole sign-in handshake succeeded.
        """

        state = session.state
        if isinstance(state, AuthenticatedUser):
            return session
        if isinstance(state, PendingPairing):
            return await self._promotions.run(
                session.id, lambda: self._promote(session, state)
            )
        raise TypeError(f"Unknown session state {state!r}")

    async def _promote(self, session: Session, pairing: PendingPairing) -> Session:
        current = await self.get(session.id)
        if current is not None and current.user is not None:
            logger.debug("Session %s was signed in concurrently", session.id)
            return current
        try:
            approved = await self._jellyfin.poll_quick_connect(pairing.secret)
            if not approved:
                return session
            user = await self._jellyfin.authenticate_quick_connect(pairing.secret)
        except UpstreamUnavailable as exc:
            logger.warning(
                "Quick Connect check for session %s failed: %s", session.id, exc
            )
            return session

        promoted = Session(
            id=session.id,
            state=AuthenticatedUser(
                user_id=user.id,
                access_token=user.token,
                username=user.username,
                password=generate_password(self._password_length),
            ),
        )
        async with self._session_factory() as db:
            result = await db.execute(
                update(SessionRecord)
                .where(
                    SessionRecord.id == session.id,
                    SessionRecord.status == SESSION_PENDING,
                )
                .values(
                    status=SESSION_AUTHENTICATED,
                    user_id=user.id,
                    access_token=user.token,
                    username=user.username,
                    password=promoted.state.password,
                    playback=None,
                    updated_at=self._clock(),
                )
            )
            await db.commit()
        if result.rowcount == 0:
            # Someone else finished the handshake first; theirs wins.
            current = await self.get(session.id)
            return current if current is not None else session
        logger.info("Session %s signed in as %s", session.id, user.username)
        return promoted

    async def lookup_by_credentials(self, username: str, password: str) -> Session | None:
        """Find the signed-in session owning the exact username/password pair."""

        if not (username and password):
            return None
        async with self._session_factory() as db:
            stmt = (
                select(SessionRecord)
                .where(
                    SessionRecord.status == SESSION_AUTHENTICATED,
                    SessionRecord.username == username,
                    SessionRecord.password == password,
                )
                .limit(1)
            )
            record = (await db.execute(stmt)).scalar_one_or_none()
            if record is None:
                return None
            return self._record_to_session(record)

    async def lookup_by_user_id(self, user_id: str) -> Session | None:
        """Return the most recently updated signed-in session of a Jellyfin user."""

        async with self._session_factory() as db:
            stmt = (
                select(SessionRecord)
                .where(
                    SessionRecord.status == SESSION_AUTHENTICATED,
                    SessionRecord.user_id == user_id,
                )
                .order_by(SessionRecord.updated_at.desc())
                .limit(1)
            )
            record = (await db.execute(stmt)).scalar_one_or_none()
            if record is None:
                return None
            return self._record_to_session(record)

    async def list_tracked(self) -> list[Session]:
        """Return signed-in sessions that have a playback attached."""

        async with self._session_factory() as db:
            stmt = select(SessionRecord).where(
                SessionRecord.status == SESSION_AUTHENTICATED,
                SessionRecord.playback.is_not(None),
            )
            records = (await db.execute(stmt)).scalars().all()
            return [self._record_to_session(record) for record in records]

    async def update(self, session: Session) -> Session:
        """Persist the session as given; last writer wins.

        Pending sessions are only written while still pending so a late
        writer can never undo a sign in.
        """

        state = session.state
        now = self._clock()
        if isinstance(state, AuthenticatedUser):
            stmt = (
                update(SessionRecord)
                .where(SessionRecord.id == session.id)
                .values(
                    status=SESSION_AUTHENTICATED,
                    user_id=state.user_id,
                    access_token=state.access_token,
                    username=state.username,
                    password=state.password,
                    playback=_dump_playback(state.playback),
                    updated_at=now,
                )
            )
        elif isinstance(state, PendingPairing):
            stmt = (
                update(SessionRecord)
                .where(
                    SessionRecord.id == session.id,
                    SessionRecord.status == SESSION_PENDING,
                )
                .values(
                    pairing_secret=state.secret,
                    pairing_code=state.code,
                    updated_at=now,
                )
            )
        else:
            raise TypeError(f"Unknown session state {state!r}")

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()
        if result.rowcount == 0:
            raise SessionNotFound(f"Session {session.id} could not be updated")
        return session

    async def update_playback(
        self,
        session_id: str,
        playback: PlaybackState,
        *,
        expected: PlaybackState | None = None,
    ) -> bool:
        """Write only the playback of a signed-in session.

        When ``expected`` is given the write is skipped (returning ``False``)
        if the stored playback no longer equals it, so a client event that
        landed in the meantime is not overwritten.
        """

        async with self._session_factory() as db:
            record = await db.get(SessionRecord, session_id)
            if record is None or record.status != SESSION_AUTHENTICATED:
                raise SessionNotFound(f"Session {session_id} is not signed in")
            if expected is not None and _load_playback(record.playback) != expected:
                logger.debug("Playback of session %s changed concurrently", session_id)
                return False
            record.playback = _dump_playback(playback)
            record.updated_at = self._clock()
            await db.commit()
        return True

    def _record_to_session(self, record: SessionRecord) -> Session:
        if record.status == SESSION_AUTHENTICATED:
            return Session(
                id=record.id,
                state=AuthenticatedUser(
                    user_id=record.user_id or "",
                    access_token=record.access_token or "",
                    username=record.username or "",
                    password=record.password or "",
                    playback=_load_playback(record.playback),
                ),
            )
        return Session(
            id=record.id,
            state=PendingPairing(
                secret=record.pairing_secret or "",
                code=record.pairing_code or "",
            ),
        )


def _dump_playback(playback: PlaybackState | None) -> dict[str, object] | None:
    if playback is None:
        return None
    return playback.model_dump(mode="json")


def _load_playback(payload: object) -> PlaybackState | None:
    if not payload:
        return None
    try:
        return PlaybackState.model_validate(payload)
    except ValidationError:
        logger.warning("Discarding unreadable playback payload: %s", payload)
        return None
