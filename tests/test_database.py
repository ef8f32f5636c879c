from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect, select

from app.database import Database
from app.db_models import SESSION_PENDING, SessionRecord


def test_create_all_creates_gateway_tables(tmp_path) -> None:
    database_path = tmp_path / "schema.db"
    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(inspector_engine)
        tables = set(inspector.get_table_names())
        session_columns = {column["name"] for column in inspector.get_columns("sessions")}
    finally:
        inspector_engine.dispose()

    assert {"sessions", "library_index", "videos"} <= tables
    assert {"status", "pairing_secret", "user_id", "password", "playback"} <= session_columns


def test_create_all_is_idempotent(tmp_path) -> None:
    """Running create_all twice keeps existing rows."""

    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'idempotent.db'}")
        await database.create_all()
        async with database.session() as session:
            session.add(SessionRecord(id="abc", status=SESSION_PENDING))
            await session.commit()

        await database.create_all()
        async with database.session() as session:
            ids = (await session.execute(select(SessionRecord.id))).scalars().all()
        await database.dispose()

        assert ids == ["abc"]

    asyncio.run(runner())
