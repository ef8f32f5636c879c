"""Utilities for communicating with the Jellyfin API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from ..config import Settings
from ..utils import ms_to_ticks

logger = logging.getLogger(__name__)


class UpstreamUnavailable(Exception):
    """Jellyfin could not be reached or answered with an error."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class QuickConnectCode:
    """One-time pairing secret and the short code shown to the user."""

    secret: str
    code: str


@dataclass(slots=True)
class JellyfinUser:
    """Identity and access token returned by a successful sign in."""

    id: str
    token: str
    username: str


@dataclass(slots=True)
class PlaybackInfo:
    """Streaming details minted by Jellyfin for one playback attempt."""

    play_session_id: str
    media_source_id: str | None = None
    transcoding_url: str | None = None


class JellyfinClient:
    """Thin wrapper around the Jellyfin HTTP API."""

    _ITEM_FIELDS = (
        "DateCreated,MediaSources,BasicSyncInfo,Genres,Tags,Studios,"
        "SeriesStudio,People,Chapters,Overview"
    )

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
    ):
        self._settings = settings
        self._client = http_client
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff

    @property
    def base_url(self) -> str:
        return self._settings.jellyfin_base_url

    def _authorization(self, access_token: str | None = None) -> str:
        parts = [
            f'Client="{self._settings.app_name}"',
            f'Device="{self._settings.device_name}"',
            f'DeviceId="{self._settings.device_id}"',
            f'Version="{self._settings.client_version}"',
        ]
        if access_token:
            parts.append(f'Token="{access_token}"')
        return "MediaBrowser " + ", ".join(parts)

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Emby-Authorization": self._authorization(access_token),
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        expect_json: bool = True,
    ) -> Any:
        attempt = 0
        while True:
            try:
                response = await self._client.request(
                    method,
                    path,
                    headers=self._headers(access_token),
                    params=params,
                    json=json,
                )
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = self._backoff(attempt)
                    logger.info(
                        "Transient error talking to Jellyfin (%s) on %s %s. Retrying in %.1fs",
                        exc.__class__.__name__,
                        method,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise UpstreamUnavailable(
                    f"Jellyfin request {method} {path} failed: {exc}"
                ) from exc

            if 500 <= response.status_code < 600 and attempt < self._max_retries:
                attempt += 1
                backoff = self._backoff(attempt)
                logger.info(
                    "Jellyfin %s on %s %s. Retrying in %.1fs",
                    response.status_code,
                    method,
                    path,
                    backoff,
                )
                await asyncio.sleep(backoff)
                continue
            break

        if response.status_code >= 400:
            raise UpstreamUnavailable(
                f"Jellyfin rejected {method} {path} with {response.status_code}",
                status_code=response.status_code,
            )
        if not expect_json:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(
                f"Unexpected non-JSON Jellyfin response for {method} {path}"
            ) from exc

    def _backoff(self, attempt: int) -> float:
        return self._retry_backoff * (min(2 ** (attempt - 1), 5) + (0.1 * attempt))

    async def initiate_quick_connect(self) -> QuickConnectCode:
        """Start a Quick Connect pairing and return its secret and code."""

        data = await self._request("POST", "/QuickConnect/Initiate")
        secret = _get_str(data, "Secret")
        code = _get_str(data, "Code")
        if not (secret and code):
            raise UpstreamUnavailable("Quick Connect response lacked a secret or code")
        return QuickConnectCode(secret=secret, code=code)

    async def poll_quick_connect(self, secret: str) -> bool:
        """Return whether the pairing code has been approved by a user."""

        try:
            data = await self._request(
                "GET", "/QuickConnect/Connect", params={"Secret": secret}
            )
        except UpstreamUnavailable as exc:
            if exc.status_code == 404:
                logger.warning("Jellyfin no longer knows this Quick Connect secret")
                return False
            raise
        return bool(isinstance(data, dict) and data.get("Authenticated"))

    async def authenticate_quick_connect(self, secret: str) -> JellyfinUser:
        """Exchange an approved secret for an access token."""

        data = await self._request(
            "POST",
            "/Users/AuthenticateWithQuickConnect",
            json={"Secret": secret},
        )
        token = _get_str(data, "AccessToken")
        user = data.get("User") if isinstance(data, dict) else None
        user_id = _get_str(user, "Id")
        username = _get_str(user, "Name")
        if not (token and user_id and username):
            raise UpstreamUnavailable(
                "Quick Connect authentication did not return a token and user"
            )
        await self._request(
            "POST",
            "/Sessions/Capabilities/Full",
            access_token=token,
            json={
                "PlayableMediaTypes": ["Video"],
                "SupportedCommands": [],
                "SupportsMediaControl": False,
                "SupportsPersistentIdentifier": False,
            },
            expect_json=False,
        )
        return JellyfinUser(id=user_id, token=token, username=username)

    async def fetch_items(self, user_id: str, access_token: str) -> list[dict[str, Any]]:
        """Fetch every movie and episode visible to the user."""

        data = await self._request(
            "GET",
            f"/Users/{user_id}/Items",
            access_token=access_token,
            params={
                "SortBy": "SortName,ProductionYear",
                "SortOrder": "Ascending",
                "IncludeItemTypes": "Movie,Episode",
                "Recursive": "true",
                "Fields": self._ITEM_FIELDS,
                "ImageTypeLimit": "1",
                "EnableImageTypes": "Primary,Backdrop",
                "StartIndex": "0",
                "IsMissing": "false",
            },
        )
        items = data.get("Items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise UpstreamUnavailable("Jellyfin item listing lacked an Items array")
        return [item for item in items if isinstance(item, dict)]

    async def playback_info(
        self, user_id: str, access_token: str, item_id: str
    ) -> PlaybackInfo:
        """Ask Jellyfin for a play session and streaming source for an item."""

        data = await self._request(
            "POST",
            f"/Items/{item_id}/PlaybackInfo",
            access_token=access_token,
            params={"UserId": user_id},
            json={"UserId": user_id},
        )
        play_session_id = _get_str(data, "PlaySessionId")
        if not play_session_id:
            raise UpstreamUnavailable("Jellyfin did not return a play session ID")
        sources = data.get("MediaSources") if isinstance(data, dict) else None
        first = sources[0] if isinstance(sources, list) and sources else {}
        return PlaybackInfo(
            play_session_id=play_session_id,
            media_source_id=_get_str(first, "Id"),
            transcoding_url=_get_str(first, "TranscodingUrl"),
        )

    async def report_playback_start(
        self,
        access_token: str,
        *,
        item_id: str,
        play_session_id: str,
        media_source_id: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "ItemId": item_id,
            "PlaySessionId": play_session_id,
            "PositionTicks": 0,
            "IsPaused": True,
            "CanSeek": True,
        }
        if media_source_id:
            payload["MediaSourceId"] = media_source_id
        await self._request(
            "POST",
            "/Sessions/Playing",
            access_token=access_token,
            json=payload,
            expect_json=False,
        )

    async def report_playback_progress(
        self,
        access_token: str,
        *,
        item_id: str,
        play_session_id: str,
        position_ms: int,
        paused: bool,
        started_at: datetime,
    ) -> None:
        """Update the resume point Jellyfin keeps for the item."""

        await self._request(
            "POST",
            "/Sessions/Playing/Progress",
            access_token=access_token,
            json={
                "ItemId": item_id,
                "PlaySessionId": play_session_id,
                "PositionTicks": ms_to_ticks(position_ms),
                "IsPaused": paused,
                "CanSeek": True,
                "PlaybackStartTimeTicks": _epoch_ticks(started_at),
            },
            expect_json=False,
        )

    async def report_playback_stopped(
        self,
        access_token: str,
        *,
        item_id: str,
        play_session_id: str,
        position_ms: int,
    ) -> None:
        await self._request(
            "POST",
            "/Sessions/Playing/Stopped",
            access_token=access_token,
            json={
                "ItemId": item_id,
                "PlaySessionId": play_session_id,
                "PositionTicks": ms_to_ticks(position_ms),
            },
            expect_json=False,
        )


def _get_str(data: object, key: str) -> str | None:
    if not isinstance(data, dict):
        return None
    value = data.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _epoch_ticks(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return ms_to_ticks(moment.timestamp() * 1000)
