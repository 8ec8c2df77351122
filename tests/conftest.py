"""Shared fixtures: a fake Discord REST API + CDN on one aiohttp test server."""

import os

os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("EXPORTS_ROOT", "./exports-test")

from collections import Counter
from typing import Dict, List, Tuple

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from common.config import Config

TOKEN = "test-token-0123456789abcdef"

PNG_A = b"\x89PNG\r\n\x1a\n" + b"A" * 64
PNG_B = b"\x89PNG\r\n\x1a\n" + b"B" * 64


class FakeDiscord:
    """
    Minimal stand-in for discord.com/api and cdn.discordapp.com.
    Every request is counted in `hits` keyed by "METHOD /path".
    """

    def __init__(self):
        self.hits: Counter = Counter()
        self.guilds: List[dict] = []
        self.channels: Dict[str, List[dict]] = {}
        self.channel_info: Dict[str, dict] = {}
        # newest first, like the real endpoint
        self.messages: Dict[str, List[dict]] = {}
        self.threads: Dict[Tuple[str, bool], List[dict]] = {}
        self.files: Dict[str, Tuple[bytes, str]] = {}
        self.rate_limit_once: set = set()
        self.fail_once: Dict[str, int] = {}
        # path -> statuses returned by the next requests, in order
        self.fail_next: Dict[str, List[int]] = {}
        self.server: TestServer = None

    # ---------- lifecycle ----------
    async def start(self):
        self.server = TestServer(self._build_app())
        await self.server.start_server()

    async def close(self):
        if self.server is not None:
            await self.server.close()

    @property
    def api_base(self) -> str:
        return str(self.server.make_url("/api/v10"))

    @property
    def messages_base(self) -> str:
        return str(self.server.make_url("/api/v9"))

    @property
    def cdn_base(self) -> str:
        return str(self.server.make_url("/cdn"))

    def cdn_url(self, path: str) -> str:
        return f"{self.cdn_base}/{path}"

    def api_options(self) -> dict:
        return {
            "base_url": self.api_base,
            "messages_base_url": self.messages_base,
            "thread_page_delay": 0,
        }

    # ---------- app ----------
    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/v10/users/@me/guilds", self._guilds)
        app.router.add_get("/api/v10/guilds/{gid}/channels", self._channels)
        app.router.add_get("/api/v10/channels/{cid}/threads/search", self._threads)
        app.router.add_get("/api/v10/channels/{cid}", self._channel)
        app.router.add_get("/api/v9/channels/{cid}/messages", self._messages)
        app.router.add_get("/cdn/{path:.*}", self._cdn)
        return app

    def _gate(self, request: web.Request):
        key = f"{request.method} {request.path}"
        self.hits[key] += 1
        if request.path.startswith("/api/") and request.headers.get("Authorization") != TOKEN:
            return web.json_response({"message": "401: Unauthorized", "code": 0}, status=401)
        if request.path in self.rate_limit_once:
            self.rate_limit_once.discard(request.path)
            return web.json_response(
                {"message": "You are being rate limited.", "retry_after": 0.01},
                status=429,
            )
        status = self.fail_once.pop(request.path, None)
        if status is None and self.fail_next.get(request.path):
            status = self.fail_next[request.path].pop(0)
        if status is not None:
            return web.json_response({"message": "boom"}, status=status)
        return None

    async def _guilds(self, request):
        denied = self._gate(request)
        if denied is not None:
            return denied
        return web.json_response(self.guilds)

    async def _channels(self, request):
        denied = self._gate(request)
        if denied is not None:
            return denied
        gid = request.match_info["gid"]
        if gid not in self.channels:
            return web.json_response({"message": "Unknown Guild", "code": 10004}, status=404)
        return web.json_response(self.channels[gid])

    async def _channel(self, request):
        cid = request.match_info["cid"]
        denied = self._gate(request)
        if denied is not None:
            return denied
        if cid not in self.channel_info:
            return web.json_response({"message": "Unknown Channel", "code": 10003}, status=404)
        return web.json_response(self.channel_info[cid])

    async def _threads(self, request):
        denied = self._gate(request)
        if denied is not None:
            return denied
        cid = request.match_info["cid"]
        archived = request.query.get("archived") == "true"
        limit = int(request.query.get("limit", "25"))
        offset = int(request.query.get("offset", "0"))
        items = self.threads.get((cid, archived), [])
        page = items[offset : offset + limit]
        return web.json_response(
            {"threads": page, "has_more": offset + limit < len(items)}
        )

    async def _messages(self, request):
        denied = self._gate(request)
        if denied is not None:
            return denied
        cid = request.match_info["cid"]
        items = self.messages.get(cid, [])
        limit = int(request.query.get("limit", "50"))
        before = request.query.get("before")
        if before:
            items = [m for m in items if int(m["id"]) < int(before)]
        return web.json_response(items[:limit])

    async def _cdn(self, request):
        denied = self._gate(request)
        if denied is not None:
            return denied
        path = request.match_info["path"]
        if path not in self.files:
            return web.Response(status=404, text="not found")
        body, ctype = self.files[path]
        return web.Response(body=body, content_type=ctype)


def make_message(mid, *, content="", author_id="100", avatar=None, ts=None, **extra):
    msg = {
        "id": str(mid),
        "type": 0,
        "channel_id": "500",
        "content": content,
        "timestamp": ts or "2024-05-01T12:00:00.000000+00:00",
        "edited_timestamp": None,
        "author": {
            "id": str(author_id),
            "username": f"user{author_id}",
            "global_name": None,
            "avatar": avatar,
        },
        "attachments": [],
        "embeds": [],
        "mentions": [],
    }
    msg.update(extra)
    return msg


@pytest_asyncio.fixture
async def fake_discord():
    fake = FakeDiscord()
    await fake.start()
    try:
        yield fake
    finally:
        await fake.close()


@pytest_asyncio.fixture
async def http_session():
    async with aiohttp.ClientSession() as s:
        yield s


@pytest.fixture
def config(tmp_path):
    cfg = Config()
    cfg.EXPORTS_ROOT = str(tmp_path / "exports")
    cfg.BATCH_SIZE = 2
    cfg.BATCH_DELAY_MS = 0
    cfg.MAX_BATCHES = 0
    cfg.FETCH_RETRY_DELAY_SEC = 0.0
    cfg.RATE_LIMIT_MARGIN_SEC = 0.0
    cfg.SUBSCRIBER_GRACE_SEC = 0.0
    cfg.THREAD_FETCH_DELAY_MS = 0
    cfg.MESSAGES_PER_PAGE = 500
    return cfg
