import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from admin import app as app_module
from common.job_registry import JobRegistry
from exporter.discord_api import DiscordAPI
from exporter.export_runners import ExportManager

from conftest import TOKEN, make_message

CHANNEL = "500"


@pytest_asyncio.fixture
async def client(fake_discord, http_session, config):
    app = app_module.app
    saved = {k: getattr(app.state, k) for k in ("config", "registry", "manager", "api")}
    registry = JobRegistry()
    app.state.config = config
    app.state.registry = registry
    app.state.manager = ExportManager(
        config,
        registry,
        api_options=fake_discord.api_options(),
        cdn_base=fake_discord.cdn_base,
    )
    app.state.api = DiscordAPI(http_session, rate_limit_margin=0.0, **fake_discord.api_options())
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            yield c
    finally:
        await app.state.manager.shutdown()
        for k, v in saved.items():
            setattr(app.state, k, v)


def _sse_events(text):
    events = []
    for block in text.split("\n\n"):
        lines = [ln for ln in block.splitlines() if ln and not ln.startswith(":")]
        if not lines:
            continue
        name = "message"
        data = None
        for ln in lines:
            if ln.startswith("event: "):
                name = ln[len("event: "):]
            elif ln.startswith("data: "):
                data = json.loads(ln[len("data: "):])
        events.append((name, data))
    return events


@pytest.mark.asyncio
async def test_health_and_index(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.text == "ok"
    assert "X-Request-ID" in r.headers

    r = await client.get("/")
    assert r.status_code == 200
    assert "Archivecord" in r.text
    assert "export-client.js" in r.text


@pytest.mark.asyncio
async def test_guilds_are_sorted_by_name(client, fake_discord):
    fake_discord.guilds = [{"id": "2", "name": "zeta"}, {"id": "1", "name": "Alpha"}]
    r = await client.post("/api/guilds", json={"token": TOKEN})
    assert r.status_code == 200
    assert [g["name"] for g in r.json()["guilds"]] == ["Alpha", "zeta"]


@pytest.mark.asyncio
async def test_guilds_error_mapping(client):
    r = await client.post("/api/guilds", json={})
    assert r.status_code == 400

    r = await client.post("/api/guilds", json={"token": "wrong"})
    assert r.status_code == 401
    assert r.json() == {"ok": False, "error": "Invalid Discord Token provided."}


@pytest.mark.asyncio
async def test_channels_with_threads_categories_first(client, fake_discord):
    fake_discord.channels["10"] = [
        {"id": "3", "type": 0, "name": "random"},
        {"id": "1", "type": 4, "name": "Text"},
        {"id": "2", "type": 0, "name": "general"},
        {"id": "4", "type": 5, "name": "announcements"},
    ]
    fake_discord.threads[("2", False)] = [{"id": "20", "name": "a thread"}]

    r = await client.post("/api/channels", data={"token": TOKEN, "guildId": "10"})

    assert r.status_code == 200
    chans = r.json()["channels"]
    assert [c["id"] for c in chans] == ["1", "4", "2", "3"]
    by_id = {c["id"]: c for c in chans}
    assert [t["id"] for t in by_id["2"]["threads"]] == ["20"]
    assert by_id["1"]["threads"] == []
    assert by_id["4"]["threads"] == []


@pytest.mark.asyncio
async def test_channels_error_mapping(client):
    r = await client.post("/api/channels", json={"token": TOKEN})
    assert r.status_code == 400

    r = await client.post("/api/channels", json={"token": TOKEN, "guildId": "404"})
    assert r.status_code == 404
    assert r.json()["error"] == "Server not found or you are no longer a member."


@pytest.mark.asyncio
async def test_start_export_validates_input(client):
    r = await client.post("/start-export", json={"token": TOKEN})
    assert r.status_code == 400
    assert r.json()["ok"] is False


@pytest.mark.asyncio
async def test_status_for_unknown_job_acks_and_closes(client):
    r = await client.get("/export-status/nope")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["cache-control"] == "no-cache"
    events = _sse_events(r.text)
    assert len(events) == 1
    assert events[0][0] == "message"
    assert events[0][1]["status"] == "connected"


@pytest.mark.asyncio
async def test_export_end_to_end_over_sse(client, fake_discord, config):
    config.SUBSCRIBER_GRACE_SEC = 5.0
    fake_discord.channel_info[CHANNEL] = {"id": CHANNEL, "name": "general"}
    fake_discord.messages[CHANNEL] = [
        make_message(103, content="three"),
        make_message(102, content="two"),
        make_message(101, content="one"),
    ]

    r = await client.post(
        "/start-export", json={"token": TOKEN, "guildId": "10", "channelId": CHANNEL}
    )
    assert r.status_code == 202
    job_id = r.json()["job_id"]

    r = await asyncio.wait_for(client.get(f"/export-status/{job_id}"), timeout=20)

    events = _sse_events(r.text)
    names = [name for name, _ in events]
    statuses = [data["status"] for _, data in events]
    assert statuses[0] == "connected"
    assert statuses[1] == "starting"
    assert statuses.count("progress") == 2
    assert names[-1] == "complete"
    assert "3 message(s)" in events[-1][1]["summary"]
    assert TOKEN not in r.text


class _RunningJobs:
    def is_active(self, job_id):
        return True


class _StubRequest:
    def __init__(self, registry, config):
        self.app = SimpleNamespace(
            state=SimpleNamespace(registry=registry, manager=_RunningJobs(), config=config)
        )

    async def is_disconnected(self):
        return False


@pytest.mark.asyncio
async def test_status_stream_propagates_cancellation(config):
    registry = JobRegistry()
    response = await app_module.export_status(_StubRequest(registry, config), "job-x")
    stream = response.body_iterator

    first = await stream.__anext__()
    assert '"status":"connected"' in first
    assert registry.subscriber_count("job-x") == 1

    pending = asyncio.create_task(stream.__anext__())
    await asyncio.sleep(0.05)
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending
    assert registry.subscriber_count("job-x") == 0
