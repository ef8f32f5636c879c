"""Entry point for the FastAPI-powered HereSphere gateway."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .database import Database
from .models import (
    HERESPHERE_HEADER,
    HereSphereEvent,
    HereSphereRequest,
    Index,
)
from .services.cache import CacheStore, ItemNotFound
from .services.gateway import GatewayService
from .services.jellyfin import JellyfinClient, UpstreamUnavailable
from .services.library import LibraryBuilder
from .services.progress import ProgressExtrapolator
from .services.sessions import (
    AuthenticatedUser,
    InvalidCredentials,
    Session,
    SessionNotFound,
    SessionStore,
)
from .web import render_session_page

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=settings.jellyfin_base_url,
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    jellyfin = JellyfinClient(settings, http_client)
    sessions = SessionStore(
        database.session_factory,
        jellyfin,
        password_length=settings.password_length,
    )
    cache = CacheStore(
        database.session_factory,
        LibraryBuilder(settings, jellyfin),
        ttl_seconds=settings.cache_lifetime_seconds,
        subtitle_language=settings.preferred_subtitle_language,
    )
    progress = ProgressExtrapolator(
        sessions,
        jellyfin,
        interval_seconds=settings.progress_interval_seconds,
    )

    fastapi_app.state.gateway = GatewayService(settings, sessions, cache, jellyfin)
    fastapi_app.state.database = database
    fastapi_app.state.progress = progress
    if settings.progress_tracking:
        await progress.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await progress.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Browse and play a Jellyfin library from HereSphere",
        version="0.1.0",
        lifespan=lifespan,
    )
    register_routes(fastapi_app)
    return fastapi_app


def get_gateway(app: FastAPI) -> GatewayService:
    service = getattr(app.state, "gateway", None)
    if not isinstance(service, GatewayService):
        raise RuntimeError("Gateway service not initialised")
    return service


def heresphere_response(payload: Any, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        payload, status_code=status_code, headers={HERESPHERE_HEADER: "1"}
    )


def register_routes(fastapi_app: FastAPI) -> None:
    async def _login_required(_: Request, exc: Exception) -> JSONResponse:
        logger.warning("Failed to resolve HereSphere session: %s", exc)
        return heresphere_response(Index.login_required().to_payload())

    async def _upstream_unavailable(_: Request, exc: Exception) -> JSONResponse:
        logger.warning("Jellyfin unavailable: %s", exc)
        return JSONResponse(
            {"detail": "Jellyfin is unavailable, please try again shortly."},
            status_code=502,
        )

    async def _not_found(request: Request, exc: Exception) -> Response:
        if (
            isinstance(exc, StarletteHTTPException)
            and exc.status_code == 404
            and "endpoint" not in request.scope
        ):
            logger.debug(
                "Unknown route or method: %s %s", request.method, request.url.path
            )
            return PlainTextResponse("nothing to see here", status_code=404)
        return await http_exception_handler(request, exc)  # type: ignore[arg-type]

    fastapi_app.add_exception_handler(InvalidCredentials, _login_required)
    fastapi_app.add_exception_handler(UpstreamUnavailable, _upstream_unavailable)
    fastapi_app.add_exception_handler(StarletteHTTPException, _not_found)

    async def _heresphere_session(
        request: Request,
    ) -> tuple[Session, AuthenticatedUser, HereSphereRequest]:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidCredentials("Request body is not JSON") from exc
        try:
            body = HereSphereRequest.model_validate(payload)
        except ValidationError as exc:
            raise InvalidCredentials("Request body lacks credentials") from exc
        session, user = await get_gateway(fastapi_app).authenticate(body)
        return session, user, body

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/", response_class=HTMLResponse)
    async def bootstrap(request: Request) -> HTMLResponse:
        service = get_gateway(fastapi_app)
        cookie_name = service.settings.session_cookie_name
        session = await service.bootstrap(request.cookies.get(cookie_name))
        response = HTMLResponse(render_session_page(service.settings, session))
        response.set_cookie(cookie_name, session.id, httponly=True, samesite="lax")
        return response

    @fastapi_app.post("/heresphere")
    async def heresphere_libraries(request: Request) -> JSONResponse:
        _, user, _ = await _heresphere_session(request)
        entry = await get_gateway(fastapi_app).library(user)
        return heresphere_response(entry.index_payload(_external_base(request)))

    @fastapi_app.post("/heresphere/scan")
    async def heresphere_scan(request: Request) -> JSONResponse:
        _, user, _ = await _heresphere_session(request)
        entry = await get_gateway(fastapi_app).library(user)
        return heresphere_response(entry.scan_payload(_external_base(request)))

    @fastapi_app.post("/heresphere/{item_id}")
    async def heresphere_video(request: Request, item_id: str) -> JSONResponse:
        session, user, body = await _heresphere_session(request)
        try:
            video = await get_gateway(fastapi_app).video(
                session, user, item_id, body, base_url=_external_base(request)
            )
        except ItemNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return heresphere_response(video.to_payload())

    @fastapi_app.post("/heresphere/events/{session_ref}/{item_id}")
    async def heresphere_event(
        request: Request, session_ref: str, item_id: str
    ) -> Response:
        try:
            event = HereSphereEvent.model_validate(await request.json())
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise HTTPException(status_code=400, detail="Invalid payload") from exc
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        logger.debug("Received event %s for session %s", event.event.name, session_ref)
        try:
            await get_gateway(fastapi_app).handle_event(session_ref, item_id, event)
        except SessionNotFound as exc:
            logger.warning("Failed to resolve session: %s", exc)
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return Response(status_code=200)


def _external_base(request: Request) -> str:
    """Return the scheme://host[/prefix] clients use to reach this service."""

    headers = request.headers
    scheme = _first_forwarded_value(headers.get("x-forwarded-proto")) or request.url.scheme

    host = _first_forwarded_value(headers.get("x-forwarded-host"))
    if not host:
        host_header = headers.get("host")
        host = _first_forwarded_value(host_header) if host_header else None
    if not host:
        host = request.url.netloc

    prefix = (
        _first_forwarded_value(headers.get("x-forwarded-prefix"))
        or request.scope.get("root_path")
        or ""
    )
    if prefix and not prefix.startswith("/"):
        prefix = f"/{prefix}"
    prefix = prefix.rstrip("/")
    return f"{scheme}://{host}{prefix}"


def _first_forwarded_value(header_value: str | None) -> str | None:
    if not header_value:
        return None
    return header_value.split(",", 1)[0].strip()


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
