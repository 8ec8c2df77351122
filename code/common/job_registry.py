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
from contextlib import suppress
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

LOGGER = logging.getLogger("archivecord.jobs")

STATUS_CONNECTED = "connected"
STATUS_STARTING = "starting"
STATUS_PROGRESS = "progress"
STATUS_WARNING = "warning"
STATUS_ERROR = "error"
STATUS_COMPLETE = "complete"
TERMINAL_STATUSES = {STATUS_COMPLETE, STATUS_ERROR}


@dataclass
class JobUpdate:
    status: str
    message: str
    batch: Optional[int] = None
    percent: Optional[float] = None
    summary: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @property
    def event_name(self) -> str:
        if self.status in TERMINAL_STATUSES:
            return self.status
        return "message"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_sse(self) -> str:
        return f"event: {self.event_name}\ndata: {self.to_json()}\n\n"


class SinkClosed(Exception):
    pass


class QueueSink:
    """
    Buffer between the registry and one streaming HTTP response.
    The response generator drains it; `None` means the job is over.
    """

    def __init__(self, maxsize: int = 200):
        self.queue: asyncio.Queue[Optional[JobUpdate]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def send(self, event: JobUpdate) -> None:
        if self.closed:
            raise SinkClosed("sink closed")
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.closed = True
            raise SinkClosed("observer is not draining its queue")

    async def close(self) -> None:
        # a full queue drops the sentinel; readers also check `closed`
        self.closed = True
        with suppress(asyncio.QueueFull):
            self.queue.put_nowait(None)

    async def get(self, timeout: Optional[float] = None) -> Optional[JobUpdate]:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


class WebSocketSink:
    def __init__(self, ws: Any):
        self.ws = ws
        self.closed = False

    async def send(self, event: JobUpdate) -> None:
        if self.closed:
            raise SinkClosed("socket closed")
        try:
            await self.ws.send_text(
                json.dumps(
                    {"event": event.event_name, **event.to_dict()},
                    separators=(",", ":"),
                    ensure_ascii=False,
                )
            )
        except Exception as e:
            self.closed = True
            raise SinkClosed(str(e)) from e

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        with suppress(Exception):
            await self.ws.close()


class JobRegistry:
    """
    Fan-out bus: job_id -> live sinks. No buffering and no replay; a sink only
    sees events published after it subscribed.

    The registry lock only guards the job map. Deliveries run under a lock
    owned by the job, and each send is bounded by `send_timeout`, so a stuck
    observer can delay its own job by at most that long and never another.
    """

    def __init__(self, queue_size: int = 200, send_timeout: float = 2.0):
        self.queue_size = queue_size
        self.send_timeout = send_timeout
        self._jobs: Dict[str, List[Any]] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    def new_queue_sink(self) -> QueueSink:
        return QueueSink(maxsize=self.queue_size)

    def _job_lock(self, job_id: str) -> asyncio.Lock:
        lock = self._send_locks.get(job_id)
        if lock is None:
            lock = self._send_locks[job_id] = asyncio.Lock()
        return lock

    async def _deliver(self, sink: Any, event: JobUpdate) -> None:
        try:
            await asyncio.wait_for(sink.send(event), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            raise SinkClosed(f"send timed out after {self.send_timeout}s")

    async def _close_sink(self, sink: Any) -> None:
        with suppress(Exception):
            await asyncio.wait_for(sink.close(), timeout=self.send_timeout)

    async def subscribe(self, job_id: str, sink: Any = None) -> Any:
        sink = sink or self.new_queue_sink()
        async with self._lock:
            self._jobs.setdefault(job_id, []).append(sink)
            job_lock = self._job_lock(job_id)
        async with job_lock:
            try:
                await self._deliver(
                    sink, JobUpdate(STATUS_CONNECTED, f"Connected to export job {job_id}")
                )
            except SinkClosed:
                async with self._lock:
                    self._discard_locked(job_id, sink)
                await self._close_sink(sink)
        LOGGER.debug(
            "JobRegistry.subscribe | job=%s sinks=%d", job_id, self.subscriber_count(job_id)
        )
        return sink

    async def unsubscribe(self, job_id: str, sink: Any) -> None:
        async with self._lock:
            self._discard_locked(job_id, sink)
        LOGGER.debug(
            "JobRegistry.unsubscribe | job=%s sinks=%d",
            job_id,
            self.subscriber_count(job_id),
        )

    async def publish(self, job_id: str, event: JobUpdate) -> int:
        async with self._lock:
            if not self._jobs.get(job_id):
                return 0
            job_lock = self._job_lock(job_id)
        delivered = 0
        dead = []
        async with job_lock:
            async with self._lock:
                sinks = list(self._jobs.get(job_id, []))
            for sink in sinks:
                try:
                    await self._deliver(sink, event)
                    delivered += 1
                except SinkClosed:
                    dead.append(sink)
        if dead:
            async with self._lock:
                for sink in dead:
                    self._discard_locked(job_id, sink)
            for sink in dead:
                await self._close_sink(sink)
        LOGGER.debug(
            "JobRegistry.publish | job=%s status=%s delivered=%d pruned=%d",
            job_id,
            event.status,
            delivered,
            len(dead),
        )
        return delivered

    async def drop(self, job_id: str) -> None:
        async with self._lock:
            sinks = self._jobs.pop(job_id, [])
            self._send_locks.pop(job_id, None)
        for sink in sinks:
            await self._close_sink(sink)
        if sinks:
            LOGGER.debug("JobRegistry.drop | job=%s closed=%d", job_id, len(sinks))

    async def close_all(self) -> None:
        async with self._lock:
            jobs = list(self._jobs)
        for job_id in jobs:
            await self.drop(job_id)

    async def wait_for_subscriber(
        self, job_id: str, timeout: float, poll: float = 0.05
    ) -> bool:
        """True once `job_id` has a sink, False if `timeout` passes first."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        while not self._jobs.get(job_id):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(poll)
        return True

    def subscriber_count(self, job_id: str) -> int:
        return len(self._jobs.get(job_id, []))

    def has_job(self, job_id: str) -> bool:
        return job_id in self._jobs

    def _discard_locked(self, job_id: str, sink: Any) -> None:
        sinks = self._jobs.get(job_id)
        if sinks is None:
            return
        with suppress(ValueError):
            sinks.remove(sink)
        if not sinks:
            self._jobs.pop(job_id, None)
            self._send_locks.pop(job_id, None)
