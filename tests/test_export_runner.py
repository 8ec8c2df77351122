import asyncio
from pathlib import Path

import pytest

from common.constants import MARKER_FAILED, MARKER_WARNING_MOVE
from common.job_registry import JobRegistry
from exporter.export_runners import (
    STATE_FAILED,
    STATE_SUCCEEDED,
    ExportJob,
    ExportManager,
    ExportRunner,
    sanitize_dirname,
)
from exporter.discord_api import DiscordAPI
from exporter.content_rewriter import ContentRewriter
from exporter.downloader import AssetDownloader
from exporter import export_runners

from conftest import PNG_A, TOKEN, make_message

CHANNEL = "500"
AVATAR_HASH = "0123456789abcdef0123"


async def _drain(sink):
    events = []
    while True:
        ev = await sink.get(timeout=5)
        if ev is None:
            return events
        events.append(ev)


async def _run(fake, http_session, config, token=TOKEN):
    registry = JobRegistry()
    job = ExportJob(job_id=f"{CHANNEL}-1", token=token, channel_id=CHANNEL, guild_id="10")
    sink = await registry.subscribe(job.job_id)
    runner = ExportRunner(
        job,
        config=config,
        registry=registry,
        api=DiscordAPI(http_session, rate_limit_margin=0.0, **fake.api_options()),
        downloader=AssetDownloader(http_session, cdn_base=fake.cdn_base),
    )
    state = await runner.run()
    events = await _drain(sink)
    return job, state, events


def test_sanitize_dirname():
    assert sanitize_dirname("general chat!") == "general_chat"
    assert sanitize_dirname("") == "channel"
    assert sanitize_dirname("../..") == "channel"
    assert len(sanitize_dirname("x" * 200)) == 64


@pytest.mark.asyncio
async def test_empty_channel_exports_cleanly(fake_discord, http_session, config):
    fake_discord.channel_info[CHANNEL] = {"id": CHANNEL, "name": "quiet"}

    job, state, events = await _run(fake_discord, http_session, config)

    assert state == STATE_SUCCEEDED
    assert [e.status for e in events] == ["connected", "starting", "complete"]
    assert job.export_dir.name.startswith(f"quiet_{CHANNEL}_")
    assert (job.export_dir / "EXPORT_SUCCESS.txt").is_file()
    index = job.export_dir / "processed_html" / "index.html"
    assert "No messages to display." in index.read_text(encoding="utf-8")
    assert list((job.export_dir / "messages").iterdir()) == []


@pytest.mark.asyncio
async def test_full_export_dedups_assets_and_orders_events(
    fake_discord, http_session, config
):
    fake_discord.channel_info[CHANNEL] = {"id": CHANNEL, "name": "general"}
    fake_discord.files["attachments/1/cat.png"] = (PNG_A, "image/png")
    fake_discord.files[f"avatars/100/{AVATAR_HASH}.png"] = (PNG_A, "image/png")
    url = fake_discord.cdn_url("attachments/1/cat.png")
    fake_discord.messages[CHANNEL] = [
        make_message(105, content=f"again {url}", avatar=AVATAR_HASH),
        make_message(104, content="four", avatar=AVATAR_HASH),
        make_message(103, content=url, avatar=AVATAR_HASH),
        make_message(102, content="two", avatar=AVATAR_HASH),
        make_message(101, content="one", avatar=AVATAR_HASH),
    ]

    job, state, events = await _run(fake_discord, http_session, config)

    assert state == STATE_SUCCEEDED
    statuses = [e.status for e in events]
    assert statuses == ["connected", "starting", "progress", "progress", "progress", "complete"]
    assert [e.batch for e in events if e.status == "progress"] == [1, 2, 3]
    assert "5 message(s)" in events[-1].summary

    # one download per distinct URL across all batches
    assert fake_discord.hits["GET /cdn/attachments/1/cat.png"] == 1
    assert fake_discord.hits[f"GET /cdn/avatars/100/{AVATAR_HASH}.png"] == 1

    root = job.export_dir
    assert len(list((root / "messages").glob("messages_batch_*.json"))) == 3
    assert len(list((root / "processed_messages").glob("processed_messages_batch_*.json"))) == 3
    assets = root / "processed_html" / "downloaded_files"
    # avatar and attachment share bytes but live in different category folders
    assert len(list((assets / "attachments").iterdir())) == 1
    assert len(list((assets / "avatars").iterdir())) == 1
    assert not (root / "downloaded_files").exists()

    page = (root / "processed_html" / "processed_html_0.html").read_text(encoding="utf-8")
    assert page.index('id="message-101"') < page.index('id="message-105"')
    assert "downloaded_files/attachments/" in page
    assert url not in page


@pytest.mark.asyncio
async def test_bad_token_fails_with_marker(fake_discord, http_session, config):
    job, state, events = await _run(fake_discord, http_session, config, token="bad")

    assert state == STATE_FAILED
    assert events[-1].status == "error"
    assert "Invalid Discord Token" in events[-1].message
    assert (job.export_dir / "EXPORT_FAILED.txt").is_file()
    assert not (job.export_dir / "EXPORT_SUCCESS.txt").exists()
    # the channel name lookup failed too, so the folder uses the fallback
    assert job.export_dir.name.startswith(f"channel_{CHANNEL}_")


@pytest.mark.asyncio
async def test_transient_batch_failure_is_retried_once(fake_discord, http_session, config):
    fake_discord.messages[CHANNEL] = [make_message(101, content="only")]
    fake_discord.fail_once[f"/api/v9/channels/{CHANNEL}/messages"] = 500

    job, state, events = await _run(fake_discord, http_session, config)

    assert state == STATE_SUCCEEDED
    assert "warning" in [e.status for e in events]
    assert job.total_messages == 1


@pytest.mark.asyncio
async def test_max_batches_stops_early(fake_discord, http_session, config):
    config.MAX_BATCHES = 1
    fake_discord.messages[CHANNEL] = [make_message(i) for i in range(110, 100, -1)]

    job, state, events = await _run(fake_discord, http_session, config)

    assert state == STATE_SUCCEEDED
    assert job.batch_index == 1
    assert job.total_messages == 2


@pytest.mark.asyncio
async def test_manager_runs_jobs_in_background(fake_discord, config):
    fake_discord.channel_info[CHANNEL] = {"id": CHANNEL, "name": "bg"}
    fake_discord.messages[CHANNEL] = [make_message(101, content="hello")]
    registry = JobRegistry()
    manager = ExportManager(
        config,
        registry,
        api_options=fake_discord.api_options(),
        cdn_base=fake_discord.cdn_base,
    )

    job_id = await manager.start_export(TOKEN, CHANNEL, "10")
    assert job_id.startswith(f"{CHANNEL}-")
    assert manager.is_active(job_id)
    sink = await registry.subscribe(job_id)
    events = await asyncio.wait_for(_drain(sink), timeout=10)

    assert events[-1].status == "complete"
    for _ in range(200):
        if not manager.is_active(job_id):
            break
        await asyncio.sleep(0.01)
    assert not manager.is_active(job_id)
    job = manager.get_job(job_id)
    assert job.state == STATE_SUCCEEDED
    # finished jobs keep their outcome but not the credential
    assert job.token == ""
    assert manager._jobs == {}
    assert Path(config.EXPORTS_ROOT) in job.export_dir.parents
    await manager.shutdown()


@pytest.mark.asyncio
async def test_repeated_fetch_failure_fails_the_job(fake_discord, http_session, config):
    fake_discord.messages[CHANNEL] = [make_message(101, content="only")]
    fake_discord.fail_next[f"/api/v9/channels/{CHANNEL}/messages"] = [500, 502]

    job, state, events = await _run(fake_discord, http_session, config)

    assert state == STATE_FAILED
    statuses = [e.status for e in events]
    assert statuses.count("warning") == 1
    assert statuses[-1] == "error"
    assert statuses.count("error") == 1
    assert (job.export_dir / MARKER_FAILED).is_file()
    assert job.total_messages == 0


@pytest.mark.asyncio
async def test_rewriter_crash_is_fatal(fake_discord, http_session, config, monkeypatch):
    fake_discord.messages[CHANNEL] = [make_message(101, content="only")]

    async def _explode(self, batch):
        raise RuntimeError("rewriter exploded")

    monkeypatch.setattr(ContentRewriter, "process_batch", _explode)

    job, state, events = await _run(fake_discord, http_session, config)

    assert state == STATE_FAILED
    assert "process batch 0 failed: rewriter exploded" in job.error
    assert events[-1].status == "error"
    marker = (job.export_dir / MARKER_FAILED).read_text(encoding="utf-8")
    assert "Stage: processing" in marker
    assert not list((job.export_dir / "processed_messages").iterdir())


@pytest.mark.asyncio
async def test_asset_move_failure_still_succeeds(
    fake_discord, http_session, config, monkeypatch
):
    fake_discord.files["attachments/1/cat.png"] = (PNG_A, "image/png")
    url = fake_discord.cdn_url("attachments/1/cat.png")
    fake_discord.messages[CHANNEL] = [make_message(101, content=url)]

    def _refuse(src, dst, *a, **kw):
        raise OSError("read-only destination")

    monkeypatch.setattr(export_runners.shutil, "move", _refuse)

    job, state, events = await _run(fake_discord, http_session, config)

    assert state == STATE_SUCCEEDED
    statuses = [e.status for e in events]
    assert "warning" in statuses
    assert statuses[-1] == "complete"
    assert (job.export_dir / MARKER_WARNING_MOVE).is_file()
    assert (job.export_dir / "EXPORT_SUCCESS.txt").is_file()
    # assets stay where the downloader left them
    assert len(list((job.export_dir / "downloaded_files" / "attachments").iterdir())) == 1


@pytest.mark.asyncio
async def test_missing_asset_keeps_remote_link(fake_discord, http_session, config):
    url = fake_discord.cdn_url("attachments/9/gone.png")
    fake_discord.messages[CHANNEL] = [make_message(101, content=f"look {url}")]

    job, state, events = await _run(fake_discord, http_session, config)

    assert state == STATE_SUCCEEDED
    assert events[-1].status == "complete"
    assert fake_discord.hits["GET /cdn/attachments/9/gone.png"] == 1
    page = (job.export_dir / "processed_html" / "processed_html_0.html").read_text(
        encoding="utf-8"
    )
    assert url in page
    assert not (job.export_dir / MARKER_FAILED).exists()
