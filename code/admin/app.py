# =============================================================================
#  Archivecord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import asyncio
import contextlib
import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import (
    JSONResponse,
    PlainTextResponse,
    StreamingResponse,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.middleware.base import BaseHTTPMiddleware
import uvicorn

from common.config import Config, CURRENT_VERSION
from common.constants import CATEGORY_CHANNEL_TYPE, THREAD_PARENT_TYPES
from common.errors import (
    DiscordAPIError,
    Forbidden,
    NotFound,
    TransientNetworkError,
    Unauthorized,
)
from common.job_registry import (
    STATUS_CONNECTED,
    JobRegistry,
    JobUpdate,
    SinkClosed,
    WebSocketSink,
)
from common.logging_setup import (
    client_var,
    configure_app_logging,
    get_logger,
    mask_form,
    req_id_var,
    route_var,
)
from exporter.discord_api import DiscordAPI
from exporter.export_runners import ExportManager

APP_TITLE = "Archivecord"

config = Config()
LOGGER = configure_app_logging(config.LOG_LEVEL, config.LOG_FORMAT, config.LOG_FILE)

app = FastAPI(title=APP_TITLE)
BASE_DIR = Path(__file__).parent
app.mount("/static", StaticFiles(directory=BASE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

app.state.config = config
app.state.registry = JobRegistry()
app.state.manager = ExportManager(config, app.state.registry)
app.state.api = DiscordAPI(
    timeout=config.API_TIMEOUT_SEC, rate_limit_margin=config.RATE_LIMIT_MARGIN_SEC
)

GUILD_ERRORS = {
    401: "Invalid Discord Token provided.",
}
CHANNEL_ERRORS = {
    401: "Invalid Discord Token.",
    403: "Missing permissions to view channels in that server.",
    404: "Server not found or you are no longer a member.",
}


def _set_ws_context(route: str, ws: WebSocket):
    route_var.set(route)

    c = getattr(ws, "client", None)
    if c:
        client_var.set(f"{getattr(c, 'host', '?')}:{getattr(c, 'port', '?')}")
    else:
        client_var.set("-")

    req_id_var.set(uuid.uuid4().hex[:8])


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token_r = req_id_var.set(rid)
        token_s = route_var.set(request.url.path or "-")
        token_c = client_var.set(
            f"{getattr(request.client, 'host', '?')}:{getattr(request.client, 'port', '?')}"
        )
        LOGGER.debug("Request received: %s %s", request.method, request.url.path)
        response = None
        try:
            response = await call_next(request)
        finally:
            if response is not None:
                response.headers["X-Request-ID"] = rid
            req_id_var.reset(token_r)
            route_var.reset(token_s)
            client_var.reset(token_c)
        return response


app.add_middleware(RequestContextMiddleware)


async def _read_payload(request: Request) -> Dict[str, Any]:
    """JSON or form body as a plain dict; anything unparsable is empty."""
    ctype = (request.headers.get("content-type") or "").lower()
    if "application/json" in ctype:
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            LOGGER.warning("%s | body is not valid JSON", request.url.path)
            return {}
        payload = data if isinstance(data, dict) else {}
    else:
        form = await request.form()
        payload = {k: form.get(k) for k in form.keys()}
    LOGGER.info("%s | body=%s", request.url.path, mask_form(payload))
    return payload


def _field(payload: Dict[str, Any], key: str) -> Optional[str]:
    v = payload.get(key)
    if isinstance(v, list):
        v = next((x for x in v if isinstance(x, str)), None)
    if isinstance(v, int) and not isinstance(v, bool):
        v = str(v)
    if not isinstance(v, str):
        return None
    return v.strip() or None


def _error_response(
    exc: DiscordAPIError | TransientNetworkError, messages: Dict[int, str]
) -> JSONResponse:
    if isinstance(exc, DiscordAPIError):
        if isinstance(exc, (Unauthorized, Forbidden, NotFound)):
            code = exc.status
            msg = messages.get(exc.status) or exc.friendly
        else:
            code = 502
            msg = "Discord API request failed. Check logs for details."
    else:
        code = 502
        msg = exc.friendly
    return JSONResponse({"ok": False, "error": msg}, status_code=code)


def _sort_channels(channels: List[dict]) -> List[dict]:
    return sorted(
        channels,
        key=lambda c: (
            c.get("type") != CATEGORY_CHANNEL_TYPE,
            (c.get("name") or "").lower(),
        ),
    )


@app.get("/", response_class=None)
async def index(request: Request):
    return templates.TemplateResponse(
        "index.html",
        {
            "request": request,
            "title": APP_TITLE,
            "version": CURRENT_VERSION,
        },
    )


@app.get("/health", response_class=PlainTextResponse)
async def health(request: Request):
    manager: ExportManager = request.app.state.manager
    LOGGER.debug("Health check | active_jobs=%d", len(manager.active_jobs))
    return "ok"


@app.post("/api/guilds", response_class=JSONResponse)
async def api_guilds(request: Request):
    payload = await _read_payload(request)
    token = _field(payload, "token")
    if not token:
        LOGGER.warning("Attempted to fetch guilds without providing a token.")
        return JSONResponse(
            {"ok": False, "error": "Token is required."}, status_code=400
        )

    api: DiscordAPI = request.app.state.api
    try:
        guilds = await api.fetch_guilds(token)
    except (DiscordAPIError, TransientNetworkError) as e:
        LOGGER.error("Failed to fetch guilds: %s", e)
        return _error_response(e, GUILD_ERRORS)

    guilds = sorted(guilds, key=lambda g: (g.get("name") or "").lower())
    LOGGER.info("Successfully fetched %d guilds.", len(guilds))
    return {"ok": True, "guilds": guilds}


@app.post("/api/channels", response_class=JSONResponse)
async def api_channels(request: Request):
    payload = await _read_payload(request)
    token = _field(payload, "token")
    guild_id = _field(payload, "guildId")
    if not token or not guild_id:
        LOGGER.warning(
            "Attempted to fetch channels without token or guildId | token=%s guild=%s",
            bool(token),
            bool(guild_id),
        )
        return JSONResponse(
            {"ok": False, "error": "Missing token or server ID."}, status_code=400
        )

    cfg: Config = request.app.state.config
    api: DiscordAPI = request.app.state.api
    try:
        channels = await api.fetch_channels(token, guild_id)
    except (DiscordAPIError, TransientNetworkError) as e:
        LOGGER.error("Failed to fetch channels for guild %s: %s", guild_id, e)
        return _error_response(e, CHANNEL_ERRORS)

    threads_map: Dict[str, List[dict]] = {}
    if cfg.INCLUDE_THREADS:
        parents = [c for c in channels if c.get("type") in THREAD_PARENT_TYPES]
        LOGGER.info(
            "Starting sequential thread fetch for %d channels in guild %s",
            len(parents),
            guild_id,
        )
        delay = cfg.THREAD_FETCH_DELAY_MS / 1000.0
        for ch in parents:
            try:
                threads_map[ch["id"]] = await api.fetch_threads(
                    token, ch["id"], ch.get("type")
                )
            except (DiscordAPIError, TransientNetworkError) as e:
                LOGGER.warning(
                    "Failed to fetch threads for channel %s (%s): %s",
                    ch.get("id"),
                    ch.get("name"),
                    e,
                )
                threads_map[ch["id"]] = []
                continue
            LOGGER.debug(
                "Fetched %d threads for %s",
                len(threads_map[ch["id"]]),
                ch.get("name"),
            )
            if delay:
                await asyncio.sleep(delay)

    out = [{**c, "threads": threads_map.get(c.get("id"), [])} for c in channels]
    LOGGER.info(
        "Successfully fetched %d channels/categories for guild %s", len(out), guild_id
    )
    return {"ok": True, "guildId": guild_id, "channels": _sort_channels(out)}


@app.post("/start-export", response_class=JSONResponse)
async def start_export(request: Request):
    payload = await _read_payload(request)
    token = _field(payload, "token")
    channel_id = _field(payload, "channelId")
    guild_id = _field(payload, "guildId")
    if not token or not channel_id:
        LOGGER.warning(
            "Attempted to start export with missing token/channelId | token=%s channel=%s",
            bool(token),
            bool(channel_id),
        )
        return JSONResponse(
            {"ok": False, "error": "Missing token or channel ID for export."},
            status_code=400,
        )

    manager: ExportManager = request.app.state.manager
    job_id = await manager.start_export(token, channel_id, guild_id)
    LOGGER.info(
        "Export requested for channel %s (guild %s) | job=%s",
        channel_id,
        guild_id or "N/A",
        job_id,
    )
    return JSONResponse({"ok": True, "job_id": job_id}, status_code=202)


@app.get("/export-status/{job_id}")
async def export_status(request: Request, job_id: str):
    conn_id = uuid.uuid4().hex[:8]
    local_log = get_logger("archivecord.sse", conn_id=conn_id)
    registry: JobRegistry = request.app.state.registry
    manager: ExportManager = request.app.state.manager
    keepalive = request.app.state.config.SSE_KEEPALIVE_SEC

    local_log.info("Client connected | job=%s", job_id)

    async def gen():
        if not manager.is_active(job_id):
            local_log.info("Job %s is not running; closing after ack", job_id)
            yield JobUpdate(
                STATUS_CONNECTED, f"Connected to export job {job_id}"
            ).to_sse()
            return

        sink = await registry.subscribe(job_id)
        loop = asyncio.get_running_loop()
        last_write = loop.time()
        events_sent = 0
        heartbeats_sent = 0
        try:
            while True:
                if await request.is_disconnected():
                    local_log.info(
                        "Client disconnected",
                        extra={"events_sent": events_sent, "heartbeats": heartbeats_sent},
                    )
                    return
                try:
                    ev = await sink.get(timeout=1.0)
                except asyncio.TimeoutError:
                    if sink.queue.empty() and (
                        sink.closed or not manager.is_active(job_id)
                    ):
                        return
                    if loop.time() - last_write >= keepalive:
                        yield ":ka\n\n"
                        heartbeats_sent += 1
                        last_write = loop.time()
                    continue
                if ev is None:
                    return
                yield ev.to_sse()
                events_sent += 1
                last_write = loop.time()
                if ev.is_terminal:
                    return
        except asyncio.CancelledError:
            local_log.debug(
                "Closed by client",
                extra={"events_sent": events_sent, "heartbeats": heartbeats_sent},
            )
            raise
        finally:
            await registry.unsubscribe(job_id, sink)
            local_log.info(
                "Closed",
                extra={"events_sent": events_sent, "heartbeats": heartbeats_sent},
            )

    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


@app.websocket("/ws/export/{job_id}")
async def ws_export(ws: WebSocket, job_id: str):
    await ws.accept()
    _set_ws_context("/ws/export", ws)
    local_log = get_logger("archivecord.ws", socket_id=id(ws))
    registry: JobRegistry = ws.app.state.registry
    manager: ExportManager = ws.app.state.manager

    if not manager.is_active(job_id):
        local_log.info("Job %s is not running; closing after ack", job_id)
        sink = WebSocketSink(ws)
        with contextlib.suppress(SinkClosed):
            await sink.send(
                JobUpdate(STATUS_CONNECTED, f"Connected to export job {job_id}")
            )
        await sink.close()
        return

    sink = WebSocketSink(ws)
    await registry.subscribe(job_id, sink)
    local_log.info("Connected | job=%s", job_id)
    try:
        while not sink.closed:
            try:
                await asyncio.wait_for(ws.receive_text(), timeout=1.0)
            except asyncio.TimeoutError:
                if not manager.is_active(job_id):
                    break
                continue
    except WebSocketDisconnect:
        local_log.info("Disconnected | job=%s", job_id)
    except RuntimeError as e:
        # receive after the registry closed the socket
        local_log.debug("Socket already closed | job=%s err=%s", job_id, e)
    finally:
        await registry.unsubscribe(job_id, sink)
        await sink.close()


@app.on_event("startup")
async def _startup_banner():
    cfg: Config = app.state.config
    LOGGER.info(
        "Starting %s %s | %s",
        APP_TITLE,
        CURRENT_VERSION,
        cfg.describe(),
    )


@app.on_event("shutdown")
async def on_shutdown():
    LOGGER.info("Shutdown initiated")
    await app.state.manager.shutdown()
    await app.state.registry.close_all()
    await app.state.api.close()
    LOGGER.info("Shutdown complete")


def main() -> None:
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_level="warning")


if __name__ == "__main__":
    main()
