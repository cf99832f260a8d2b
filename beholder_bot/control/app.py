from __future__ import annotations

import json
import logging
import secrets
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import Settings
from ..signals import CrossProcessSignal
from ..storage.store import ChannelRepository
from ..storage.utils import ConnectionProvider, normalize_channel

logger = logging.getLogger("beholder_bot")


def _json(status_code: int, payload: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=payload)


def _channel_or_none(raw: object) -> str | None:
    if not isinstance(raw, str):
        return None
    try:
        return normalize_channel(raw)
    except ValueError:
        return None


async def _channel_from_body(request: Request) -> str | None:
    body = await request.body()
    try:
        payload = json.loads(body or b"{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return _channel_or_none(payload.get("channel"))


def create_app(
    settings: Settings,
    repository: ChannelRepository | None = None,
    signal: CrossProcessSignal | None = None,
) -> FastAPI:
    if repository is None:
        settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        repository = ChannelRepository(
            settings.sqlite_path,
            connections=ConnectionProvider(
                settings.sqlite_path,
                max_attempts=settings.db_connect_attempts,
                retry_delay_seconds=settings.db_connect_retry_seconds,
                busy_timeout_ms=settings.db_busy_timeout_ms,
            ),
        )
    if signal is None:
        signal = CrossProcessSignal(
            settings.signal_host,
            settings.signal_port,
            timeout_seconds=settings.signal_timeout_seconds,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await repository.prepare()
        if not signal.enabled:
            logger.info("[API] no bot signal target configured; running standalone")
        yield

    app = FastAPI(title="Beholder channel control", lifespan=lifespan)
    app.state.repository = repository
    app.state.signal = signal

    @app.middleware("http")
    async def guard(request: Request, call_next):
        supplied = request.headers.get("X-API-Key", "")
        if not settings.api_key or not secrets.compare_digest(supplied, settings.api_key):
            return _json(401, {"error": "unauthorised"})
        try:
            return await call_next(request)
        except Exception:
            logger.exception("[API] %s %s failed", request.method, request.url.path)
            return _json(500, {"error": "internal"})

    @app.exception_handler(404)
    async def not_found(request: Request, exc: Exception) -> JSONResponse:
        return _json(404, {"error": "not found"})

    async def _add_membership(channel: str | None) -> JSONResponse:
        if channel is None:
            return _json(400, {"error": "channel required"})
        await repository.add_membership(channel)
        signalled = await signal.raise_signal()
        return _json(200, {"added": channel, "signalled": signalled})

    async def _remove_membership(channel: str | None) -> JSONResponse:
        if channel is None:
            return _json(400, {"error": "channel required"})
        await repository.remove_membership(channel)
        signalled = await signal.raise_signal()
        return _json(200, {"removed": channel, "signalled": signalled})

    async def _add_watch(channel: str | None) -> JSONResponse:
        if channel is None:
            return _json(400, {"error": "channel required"})
        await repository.add_watch(channel)
        return _json(200, {"watch_added": channel})

    async def _remove_watch(channel: str | None) -> JSONResponse:
        if channel is None:
            return _json(400, {"error": "channel required"})
        await repository.remove_watch(channel)
        return _json(200, {"watch_removed": channel})

    @app.get("/channels")
    async def list_channels() -> JSONResponse:
        # The control process has no reason to trust a cached view.
        entries = await repository.refresh_membership()
        return _json(200, {"channels": list(entries.values())})

    @app.post("/channels")
    async def add_channel(request: Request) -> JSONResponse:
        return await _add_membership(await _channel_from_body(request))

    @app.delete("/channels")
    async def remove_channel_by_body(request: Request) -> JSONResponse:
        return await _remove_membership(await _channel_from_body(request))

    @app.delete("/channels/{channel}")
    async def remove_channel(channel: str) -> JSONResponse:
        return await _remove_membership(_channel_or_none(channel))

    @app.get("/watch")
    async def list_watch() -> JSONResponse:
        return _json(200, {"watch": await repository.list_watch()})

    @app.post("/watch")
    async def add_watch(request: Request) -> JSONResponse:
        return await _add_watch(await _channel_from_body(request))

    @app.delete("/watch")
    async def remove_watch_by_body(request: Request) -> JSONResponse:
        return await _remove_watch(await _channel_from_body(request))

    @app.delete("/watch/{channel}")
    async def remove_watch(channel: str) -> JSONResponse:
        return await _remove_watch(_channel_or_none(channel))

    return app


def run() -> None:
    import uvicorn

    from ..app import configure_logging

    settings = Settings.from_env()
    configure_logging(settings.debug_mode)
    settings.validate_control()
    logger.info("[API] listening on http://%s:%s", settings.api_host, settings.api_port)
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
