"""Utility helpers for the JellyVR gateway."""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

TICKS_PER_MILLISECOND = 10_000

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, as stored in SQLite."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_password(length: int) -> str:
    """Return a random password made of lowercase ASCII letters."""

    if length <= 0:
        raise ValueError("Password length must be positive")
    return "".join(secrets.choice(string.ascii_lowercase) for _ in range(length))


def ticks_to_ms(ticks: int | float | None) -> float:
    """Convert Jellyfin ticks (100ns units) to milliseconds."""

    if not ticks:
        return 0.0
    return float(ticks) / TICKS_PER_MILLISECOND


def ms_to_ticks(milliseconds: int | float) -> int:
    """Convert milliseconds to Jellyfin ticks."""

    return int(round(milliseconds * TICKS_PER_MILLISECOND))


class SingleFlight(Generic[K, T]):
    """Share one in-flight coroutine between concurrent callers of the same key.

    The first caller for a key starts the work as a task; callers arriving
    while it runs await the same task and receive its result or exception.
    The key is released as soon as the task finishes, successfully or not.
    The task is shielded, so a caller going away does not cancel work other
    callers are waiting on.
    """

    def __init__(self) -> None:
        self._inflight: dict[K, asyncio.Task[T]] = {}

    def in_flight(self, key: K) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    async def run(self, key: K, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda finished: self._release(key, finished))
        else:
            logger.debug("Joining in-flight operation for %s", key)
        return await asyncio.shield(task)

    def _release(self, key: K, task: asyncio.Task[T]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved when every waiter has gone away.
            task.exception()
