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
import json
import logging
import re
import shutil
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp

from common.config import Config
from common.constants import (
    CDN_BASE_URL,
    DOWNLOAD_DIRNAME,
    HTML_DIRNAME,
    MARKER_FAILED,
    MARKER_SUCCESS,
    MARKER_WARNING_MOVE,
    PROCESSED_BATCH_FMT,
    PROCESSED_DIRNAME,
    RAW_BATCH_FMT,
    RAW_DIRNAME,
)
from common.errors import (
    DiscordAPIError,
    FatalPipelineError,
    Forbidden,
    NotFound,
    TransientNetworkError,
    Unauthorized,
)
from common.job_registry import (
    STATUS_COMPLETE,
    STATUS_ERROR,
    STATUS_PROGRESS,
    STATUS_STARTING,
    STATUS_WARNING,
    JobRegistry,
    JobUpdate,
)
from common.logging_setup import forget_secret, get_logger, job_id_var, register_secret
from exporter.content_rewriter import ContentRewriter
from exporter.discord_api import DiscordAPI
from exporter.downloader import AssetDownloader
from exporter.message_fetcher import fetch_messages_batch
from exporter.renderer import HtmlRenderer

STATE_STARTING = "starting"
STATE_FETCHING = "fetching"
STATE_PROCESSING = "processing"
STATE_RENDERING = "rendering"
STATE_MOVING_ASSETS = "moving-assets"
STATE_FINALIZING = "finalizing"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"

_DIRNAME_RE = re.compile(r"[^A-Za-z0-9_-]+")

# never worth a second attempt
_NON_RETRYABLE = (Unauthorized, Forbidden, NotFound)


def sanitize_dirname(name: Optional[str], fallback: str = "channel", n: int = 64) -> str:
    cleaned = _DIRNAME_RE.sub("_", (name or "").strip()).strip("_")
    return (cleaned[:n] or fallback)


def friendly_error(exc: BaseException) -> str:
    if isinstance(exc, (DiscordAPIError, TransientNetworkError)):
        return f"{exc.friendly} ({exc})"
    return str(exc) or exc.__class__.__name__


@dataclass
class ExportJob:
    job_id: str
    token: str = field(repr=False)
    channel_id: str
    guild_id: Optional[str] = None
    channel_name: str = "channel"
    export_dir: Optional[Path] = None
    state: str = STATE_STARTING
    batch_index: int = 0
    total_messages: int = 0
    started_at: float = field(default_factory=time.monotonic)
    started_wall: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    @property
    def raw_dir(self) -> Path:
        return self.export_dir / RAW_DIRNAME

    @property
    def processed_dir(self) -> Path:
        return self.export_dir / PROCESSED_DIRNAME

    @property
    def html_dir(self) -> Path:
        return self.export_dir / HTML_DIRNAME

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


class ExportRunner:
    """
    Drives one job: fetch -> rewrite -> persist per batch, then render, move
    assets and write the terminal marker. Exactly one terminal event
    (complete or error) is published, after which the job's sinks are closed.
    """

    def __init__(
        self,
        job: ExportJob,
        *,
        config: Config,
        registry: JobRegistry,
        api: DiscordAPI,
        downloader: AssetDownloader,
        renderer: Optional[HtmlRenderer] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.job = job
        self.config = config
        self.registry = registry
        self.api = api
        self.downloader = downloader
        self.renderer = renderer or HtmlRenderer(config.MESSAGES_PER_PAGE)
        self.log = logger or get_logger(
            "archivecord.export", job_id=job.job_id, channel_id=job.channel_id
        )
        self.rewriter: Optional[ContentRewriter] = None

    async def run(self) -> str:
        job = self.job
        job_id_var.set(job.job_id)
        try:
            await self._prepare()
            await self._fetch_loop()
            await self._render()
            await self._move_assets()
            await self._finalize()
        except asyncio.CancelledError:
            await self._fail(FatalPipelineError(job.state, "export cancelled"))
            raise
        except Exception as e:
            await self._fail(e)
        finally:
            await self.registry.drop(job.job_id)
        return job.state

    # ---------- stages ----------
    async def _prepare(self) -> None:
        job = self.job
        job.state = STATE_STARTING
        await self._emit(
            STATUS_STARTING, f"Export started for channel {job.channel_id}."
        )

        try:
            info = await self.api.fetch_channel(job.token, job.channel_id)
            job.channel_name = info.get("name") or job.channel_name
        except (DiscordAPIError, TransientNetworkError) as e:
            self.log.warning(
                "[⚠️] Could not resolve channel name for %s, using '%s': %s",
                job.channel_id,
                job.channel_name,
                e,
            )

        root = Path(self.config.EXPORTS_ROOT)
        stamp = job.started_wall.strftime("%Y%m%d_%H%M%S")
        base = f"{sanitize_dirname(job.channel_name)}_{job.channel_id}_{stamp}"
        try:
            root.mkdir(parents=True, exist_ok=True)
            job.export_dir = self._claim_dir(root, base)
            for sub in (job.raw_dir, job.processed_dir, job.html_dir):
                sub.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FatalPipelineError("create export directories", e) from e

        self.rewriter = ContentRewriter(self.downloader, job.export_dir)
        self.log.info(
            "[📁] Export directory ready: %s (channel=%s #%s)",
            job.export_dir,
            job.channel_id,
            job.channel_name,
        )

    @staticmethod
    def _claim_dir(root: Path, base: str) -> Path:
        n = 0
        while True:
            candidate = root / (base if n == 0 else f"{base}-{n}")
            try:
                candidate.mkdir()
                return candidate
            except FileExistsError:
                n += 1

    async def _fetch_loop(self) -> None:
        job = self.job
        cap = self.config.max_batches
        before: Optional[str] = None

        while True:
            if cap is not None and job.batch_index >= cap:
                self.log.info(
                    "[⏹️] Reached MAX_BATCHES=%d; stopping fetch early", cap
                )
                break

            job.state = STATE_FETCHING
            batch = await self._fetch_with_retry(before)
            if not batch:
                self.log.info(
                    "[📭] History exhausted after %d batch(es), %d message(s)",
                    job.batch_index,
                    job.total_messages,
                )
                break

            job.state = STATE_PROCESSING
            await self._process_batch(batch)

            job.total_messages += len(batch)
            job.batch_index += 1
            before = str(batch[-1].get("id") or "") or None

            await self._emit(
                STATUS_PROGRESS,
                f"Processed batch {job.batch_index} ({len(batch)} messages, "
                f"{job.total_messages} total).",
                batch=job.batch_index,
            )

            if before is None:
                self.log.warning("[⚠️] Last message in batch has no id; stopping fetch")
                break
            if self.config.batch_delay:
                await asyncio.sleep(self.config.batch_delay)

    async def _fetch_with_retry(self, before: Optional[str]) -> List[dict]:
        job = self.job
        try:
            return await fetch_messages_batch(
                self.api, job.token, job.channel_id, self.config.BATCH_SIZE, before=before
            )
        except _NON_RETRYABLE:
            raise
        except (DiscordAPIError, TransientNetworkError) as e:
            delay = self.config.FETCH_RETRY_DELAY_SEC
            self.log.warning(
                "[🔁] Batch %d fetch failed (%s); retrying once in %.1fs",
                job.batch_index + 1,
                e,
                delay,
            )
            await self._emit(
                STATUS_WARNING,
                f"Fetching batch {job.batch_index + 1} failed, retrying in {delay:g}s.",
                batch=job.batch_index + 1,
            )
            await asyncio.sleep(delay)

        return await fetch_messages_batch(
            self.api, job.token, job.channel_id, self.config.BATCH_SIZE, before=before
        )

    async def _process_batch(self, batch: List[dict]) -> None:
        job = self.job
        ts = int(time.time() * 1000)
        raw_path = job.raw_dir / RAW_BATCH_FMT.format(index=job.batch_index, ts=ts)
        processed_path = job.processed_dir / PROCESSED_BATCH_FMT.format(
            index=job.batch_index, ts=ts
        )
        t0 = time.perf_counter()

        _write_json(raw_path, batch)
        try:
            processed = await self.rewriter.process_batch(batch)
        except FatalPipelineError:
            raise
        except Exception as e:
            raise FatalPipelineError(f"process batch {job.batch_index}", e) from e
        _write_json(processed_path, processed)

        self.log.debug(
            "[💾] Batch %d persisted (%d messages)",
            job.batch_index,
            len(batch),
            extra={"batch": job.batch_index, "took_ms": int((time.perf_counter() - t0) * 1000)},
        )

    async def _render(self) -> None:
        job = self.job
        job.state = STATE_RENDERING
        title = f"#{job.channel_name} ({job.channel_id})"
        try:
            result = await asyncio.to_thread(
                self.renderer.render_export, job.processed_dir, job.html_dir, title=title
            )
        except Exception as e:
            raise FatalPipelineError("render HTML", e) from e
        self.log.info(
            "[🖨️] Rendered %d message(s) into %d page(s)", result.messages, result.pages
        )

    async def _move_assets(self) -> None:
        job = self.job
        job.state = STATE_MOVING_ASSETS
        src = job.export_dir / DOWNLOAD_DIRNAME
        dst = job.html_dir / DOWNLOAD_DIRNAME
        if not src.exists():
            self.log.info("[📦] No downloaded assets to move")
            return
        try:
            if dst.exists():
                shutil.copytree(src, dst, dirs_exist_ok=True)
                shutil.rmtree(src)
            else:
                shutil.move(str(src), str(dst))
            self.log.info("[📦] Moved downloaded assets into %s", dst)
        except OSError as e:
            self.log.warning("[⚠️] Could not move downloaded assets to %s: %s", dst, e)
            self._write_marker(
                MARKER_WARNING_MOVE,
                f"Export completed, but downloaded files could not be moved.\n"
                f"Source: {src}\nDestination: {dst}\nError: {e}\n",
            )
            await self._emit(
                STATUS_WARNING,
                "Downloaded files could not be moved next to the HTML pages; "
                "they remain in the export folder.",
            )

    async def _finalize(self) -> None:
        job = self.job
        job.state = STATE_FINALIZING
        stats = self.downloader.stats
        summary = (
            f"Export finished in {job.elapsed:.1f}s: {job.batch_index} batch(es), "
            f"{job.total_messages} message(s)."
        )
        self._write_marker(
            MARKER_SUCCESS,
            "\n".join(
                [
                    "Export completed successfully.",
                    f"Channel: #{job.channel_name} ({job.channel_id})",
                    f"Guild: {job.guild_id or '-'}",
                    f"Started: {job.started_wall.isoformat()}",
                    f"Duration: {job.elapsed:.1f}s",
                    f"Batches: {job.batch_index}",
                    f"Messages: {job.total_messages}",
                    f"Downloads: {stats['downloads']} "
                    f"(cache hits {stats['cache_hits']}, duplicates {stats['content_dedup']}, "
                    f"failures {stats['failures']})",
                    "",
                ]
            ),
        )
        job.state = STATE_SUCCEEDED
        self.log.info("[✅] %s dir=%s", summary, job.export_dir)
        await self._emit(STATUS_COMPLETE, "Export complete.", summary=summary)

    async def _fail(self, exc: BaseException) -> None:
        job = self.job
        failed_stage = job.state
        job.state = STATE_FAILED
        job.error = friendly_error(exc)
        self.log.error(
            "[⛔] Export failed during %s: %s", failed_stage, exc, exc_info=exc
        )
        if job.export_dir is not None:
            self._write_marker(
                MARKER_FAILED,
                "\n".join(
                    [
                        "Export failed.",
                        f"Stage: {failed_stage}",
                        f"Error: {exc}",
                        f"Batches completed: {job.batch_index}",
                        f"Messages saved: {job.total_messages}",
                        f"Time: {datetime.now(timezone.utc).isoformat()}",
                        "",
                    ]
                ),
            )
        await self._emit(STATUS_ERROR, f"Export failed: {job.error}")

    # ---------- helpers ----------
    async def _emit(self, status: str, message: str, **kw: Any) -> None:
        try:
            await self.registry.publish(self.job.job_id, JobUpdate(status, message, **kw))
        except Exception as e:
            self.log.debug("[export] publish %s failed: %s", status, e)

    def _write_marker(self, name: str, text: str) -> None:
        try:
            (self.job.export_dir / name).write_text(text, encoding="utf-8")
        except OSError as e:
            self.log.error("[⛔] Could not write %s: %s", name, e)


def _write_json(path: Path, data: Any) -> None:
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
    except (OSError, TypeError, ValueError) as e:
        raise FatalPipelineError(f"write {path.name}", e) from e


class ExportManager:
    """
    Spawns export jobs as background tasks that outlive the triggering
    request. Holds a strong reference per task until it finishes.
    Finished jobs are kept as token-free records, only the most recent
    `history_size` of them.
    """

    def __init__(
        self,
        config: Config,
        registry: JobRegistry,
        *,
        api_options: Optional[Dict[str, Any]] = None,
        cdn_base: str = CDN_BASE_URL,
        history_size: int = 50,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.history_size = max(0, history_size)
        self.api_options = dict(api_options or {})
        self.cdn_base = cdn_base
        self.log = logger or logging.getLogger("archivecord.export")
        self._tasks: Dict[str, asyncio.Task] = {}
        self._jobs: Dict[str, ExportJob] = {}
        self._finished: OrderedDict[str, ExportJob] = OrderedDict()
        self._bg: set[asyncio.Task] = set()

    def new_job_id(self, channel_id: str) -> str:
        ms = int(time.time() * 1000)
        job_id = f"{channel_id}-{ms}"
        while job_id in self._tasks:
            ms += 1
            job_id = f"{channel_id}-{ms}"
        return job_id

    def is_active(self, job_id: str) -> bool:
        t = self._tasks.get(job_id)
        return t is not None and not t.done()

    def get_job(self, job_id: str) -> Optional[ExportJob]:
        return self._jobs.get(job_id) or self._finished.get(job_id)

    @property
    def active_jobs(self) -> List[str]:
        return [jid for jid, t in self._tasks.items() if not t.done()]

    async def start_export(
        self, token: str, channel_id: str, guild_id: Optional[str] = None
    ) -> str:
        job = ExportJob(
            job_id=self.new_job_id(channel_id),
            token=token,
            channel_id=str(channel_id),
            guild_id=str(guild_id) if guild_id else None,
        )
        register_secret(token)
        self._jobs[job.job_id] = job
        task = asyncio.create_task(self._run_job(job), name=f"export-{job.job_id}")
        self._tasks[job.job_id] = task

        def _done_cb(t: asyncio.Task, j=job):
            self._on_task_done(j, t)

        task.add_done_callback(_done_cb)
        self.log.info(
            "[🚀] Export job %s queued | channel=%s guild=%s",
            job.job_id,
            job.channel_id,
            job.guild_id or "-",
        )
        return job.job_id

    async def _run_job(self, job: ExportJob) -> str:
        grace = self.config.SUBSCRIBER_GRACE_SEC
        if grace:
            await self.registry.wait_for_subscriber(job.job_id, grace)

        timeout = aiohttp.ClientTimeout(total=None)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            api = DiscordAPI(
                session,
                timeout=self.config.API_TIMEOUT_SEC,
                rate_limit_margin=self.config.RATE_LIMIT_MARGIN_SEC,
                **self.api_options,
            )
            downloader = AssetDownloader(
                session,
                timeout=self.config.DOWNLOAD_TIMEOUT_SEC,
                cdn_base=self.cdn_base,
            )
            runner = ExportRunner(
                job,
                config=self.config,
                registry=self.registry,
                api=api,
                downloader=downloader,
            )
            return await runner.run()

    def _on_task_done(self, job: ExportJob, task: asyncio.Task) -> None:
        self._tasks.pop(job.job_id, None)
        self._retire(job)

        if task.cancelled():
            self.log.warning("[export] Job %s was cancelled", job.job_id)
            return
        exc = task.exception()
        if exc is None:
            self.log.debug("[export] Job %s finished state=%s", job.job_id, job.state)
            return

        # the runner handles its own failures; anything here escaped it
        self.log.error(
            "[⛔] Export job %s crashed: %s", job.job_id, exc, exc_info=exc
        )
        job.state = STATE_FAILED
        job.error = friendly_error(exc)
        if job.export_dir is not None:
            try:
                (job.export_dir / MARKER_FAILED).write_text(
                    f"Export failed.\nError: {exc}\n", encoding="utf-8"
                )
            except OSError as e:
                self.log.error("[⛔] Could not write %s: %s", MARKER_FAILED, e)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        t = loop.create_task(self._publish_crash(job))
        self._bg.add(t)
        t.add_done_callback(self._bg.discard)

    def _retire(self, job: ExportJob) -> None:
        forget_secret(job.token)
        job.token = ""
        self._jobs.pop(job.job_id, None)
        if not self.history_size:
            return
        self._finished[job.job_id] = job
        while len(self._finished) > self.history_size:
            self._finished.popitem(last=False)

    async def _publish_crash(self, job: ExportJob) -> None:
        await self.registry.publish(
            job.job_id, JobUpdate(STATUS_ERROR, f"Export failed: {job.error}")
        )
        await self.registry.drop(job.job_id)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
