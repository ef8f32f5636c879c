"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base
from .utils import utcnow

SESSION_PENDING = "pending"
SESSION_AUTHENTICATED = "authenticated"


class SessionRecord(Base):
    """A browser/headset session, either waiting for pairing or signed in."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), default=SESSION_PENDING)
    pairing_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    pairing_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    user_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )
    access_token: Mapped[str | None] = mapped_column(String(200), nullable=True)
    username: Mapped[str | None] = mapped_column(String(200), nullable=True)
    password: Mapped[str | None] = mapped_column(String(64), nullable=True)
    playback: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class LibraryIndexRecord(Base):
    """Cached library listing and scan payload for one Jellyfin user."""

    __tablename__ = "library_index"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    libraries: Mapped[list[dict[str, Any]]] = mapped_column(JSON)
    scan: Mapped[list[dict[str, Any]]] = mapped_column(JSON)
    last_updated: Mapped[datetime] = mapped_column(DateTime)


class VideoCacheRecord(Base):
    """Per-item HereSphere video payload, rebuilt together with the index."""

    __tablename__ = "videos"
    __table_args__ = (
        UniqueConstraint("user_id", "item_id", name="uq_video_user_item"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    item_id: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    last_updated: Mapped[datetime] = mapped_column(DateTime)
