from __future__ import annotations

from datetime import datetime

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import register_routes
from app.models import HereSphereEvent, HereSphereRequest, Library, ScanEntry, VideoData
from app.services.cache import CacheEntry, ItemNotFound
from app.services.gateway import GatewayService
from app.services.jellyfin import UpstreamUnavailable
from app.services.sessions import (
    AuthenticatedUser,
    InvalidCredentials,
    PendingPairing,
    Session,
    SessionNotFound,
)

USER = AuthenticatedUser(
    user_id="user-1", access_token="token-1", username="alice", password="secret"
)
SIGNED_IN = Session(id="session-1", state=USER)


class DummyGateway(GatewayService):
    """Minimal GatewayService stub for route testing."""

    def __init__(self) -> None:
        # No stores or Jellyfin client; every call is answered in memory.
        self._settings = Settings(_env_file=None)
        self.bootstrapped: list[str | None] = []
        self.events: list[tuple[str, str, HereSphereEvent]] = []
        self.video_base_url: str | None = None
        self.upstream_down = False

    async def bootstrap(self, session_ref: str | None) -> Session:  # type: ignore[override]
        self.bootstrapped.append(session_ref)
        if self.upstream_down:
            raise UpstreamUnavailable("Jellyfin down")
        if session_ref == SIGNED_IN.id:
            return SIGNED_IN
        return Session(id="pending-1", state=PendingPairing(secret="s", code="123456"))

    async def authenticate(self, request: HereSphereRequest):  # type: ignore[override]
        if (request.username, request.password) != (USER.username, USER.password):
            raise InvalidCredentials("bad credentials")
        return SIGNED_IN, USER

    async def library(self, user: AuthenticatedUser) -> CacheEntry:  # type: ignore[override]
        return CacheEntry(
            user_id=user.user_id,
            libraries=[Library(name="Library", links=["/heresphere/movie1"])],
            scan=[ScanEntry(link="/heresphere/movie1", title="Space Trip")],
            last_updated=datetime(2024, 1, 1),
        )

    async def video(self, session, user, item_id, request, *, base_url):  # type: ignore[override]
        if item_id != "movie1":
            raise ItemNotFound(item_id)
        self.video_base_url = base_url
        return VideoData(title="Space Trip", duration=600_000)

    async def handle_event(self, session_ref, item_id, event):  # type: ignore[override]
        if session_ref == "missing":
            raise SessionNotFound(session_ref)
        self.events.append((session_ref, item_id, event))
        return None


def _client() -> tuple[TestClient, DummyGateway]:
    app = FastAPI()
    register_routes(app)
    gateway = DummyGateway()
    app.state.gateway = gateway
    return TestClient(app), gateway


CREDENTIALS = {"username": "alice", "password": "secret"}


def test_bootstrap_sets_cookie_and_shows_pairing_code() -> None:
    client, gateway = _client()

    with client:
        response = client.get("/")

    assert response.status_code == 200
    assert "123456" in response.text
    assert 'http-equiv="refresh"' in response.text
    assert response.cookies.get("jellyvr_session") == "pending-1"
    assert gateway.bootstrapped == [None]


def test_bootstrap_shows_credentials_once_signed_in() -> None:
    client, gateway = _client()

    with client:
        client.cookies.set("jellyvr_session", "session-1")
        response = client.get("/")

    assert "alice" in response.text and "secret" in response.text
    assert gateway.bootstrapped == ["session-1"]


def test_bootstrap_reports_unavailable_upstream() -> None:
    client, gateway = _client()
    gateway.upstream_down = True

    with client:
        response = client.get("/")

    assert response.status_code == 502
    assert "detail" in response.json()


def test_library_listing_uses_request_host() -> None:
    client, _ = _client()

    with client:
        response = client.post(
            "/heresphere",
            json=CREDENTIALS,
            headers={"X-Forwarded-Proto": "https", "X-Forwarded-Host": "vr.example.com"},
        )

    assert response.status_code == 200
    assert response.headers["HereSphere-JSON-Version"] == "1"
    assert response.json() == {
        "access": 1,
        "library": [{"name": "Library", "list": ["https://vr.example.com/heresphere/movie1"]}],
    }


def test_scan_returns_scan_data() -> None:
    client, _ = _client()

    with client:
        response = client.post("/heresphere/scan", json=CREDENTIALS)

    data = response.json()["scanData"]
    assert data[0]["link"] == "http://testserver/heresphere/movie1"
    assert data[0]["title"] == "Space Trip"


def test_wrong_or_missing_credentials_get_login_payload() -> None:
    client, _ = _client()
    login_required = {"access": -1, "library": [{"name": "Login required", "list": []}]}

    with client:
        wrong = client.post("/heresphere", json={"username": "alice", "password": "nope"})
        empty = client.post("/heresphere/scan", content=b"not json")
        video = client.post("/heresphere/movie1", json={})

    for response in (wrong, empty, video):
        assert response.status_code == 200
        assert response.json() == login_required
        assert response.headers["HereSphere-JSON-Version"] == "1"


def test_video_endpoint_and_unknown_item() -> None:
    client, gateway = _client()

    with client:
        found = client.post("/heresphere/movie1", json=CREDENTIALS)
        missing = client.post("/heresphere/other", json=CREDENTIALS)

    assert found.status_code == 200
    assert found.json()["title"] == "Space Trip"
    assert gateway.video_base_url == "http://testserver"
    assert missing.status_code == 404


def test_events_are_forwarded_to_the_gateway() -> None:
    client, gateway = _client()

    with client:
        accepted = client.post(
            "/heresphere/events/session-1/movie1", json={"event": 1, "time": 1200, "speed": 1}
        )
        unknown = client.post("/heresphere/events/missing/movie1", json={"event": 2})
        invalid = client.post("/heresphere/events/session-1/movie1", json={"event": 9})

    assert accepted.status_code == 200
    assert unknown.status_code == 404
    assert invalid.status_code == 400
    ((session_ref, item_id, event),) = gateway.events
    assert (session_ref, item_id, event.time) == ("session-1", "movie1", 1200)


def test_unknown_routes_return_plain_not_found() -> None:
    client, _ = _client()

    with client:
        response = client.get("/nothing/here")
        health = client.get("/healthz")

    assert response.status_code == 404
    assert response.text == "nothing to see here"
    assert health.json() == {"status": "ok"}
