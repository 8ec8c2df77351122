# =============================================================================
#  Archivecord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import contextvars
import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional


REDACTED = "***REDACTED***"
REDACT_KEYS = {"token", "authorization"}

req_id_var = contextvars.ContextVar("req_id", default="-")
route_var = contextvars.ContextVar("route", default="-")
client_var = contextvars.ContextVar("client", default="-")
job_id_var = contextvars.ContextVar("job_id", default="-")

# Extra record attributes worth printing when a call site passes them.
EXTRA_FIELDS = (
    "conn_id",
    "socket_id",
    "channel_id",
    "guild_id",
    "batch",
    "events_sent",
    "heartbeats",
    "took_ms",
)

LEVEL_MARK = {
    logging.DEBUG: "🧩",
    logging.INFO: "✅",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "💥",
}


class _SecretStore:
    """Tokens held by running jobs, reference counted so overlapping jobs
    with the same token keep it masked until the last one finishes."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {}

    def add(self, secret: Optional[str]) -> None:
        if not secret:
            return
        with self._lock:
            self._counts[secret] = self._counts.get(secret, 0) + 1

    def discard(self, secret: Optional[str]) -> None:
        if not secret:
            return
        with self._lock:
            left = self._counts.get(secret, 0) - 1
            if left > 0:
                self._counts[secret] = left
            else:
                self._counts.pop(secret, None)

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._counts)


SECRETS = _SecretStore()


def register_secret(secret: Optional[str]) -> None:
    SECRETS.add(secret)


def forget_secret(secret: Optional[str]) -> None:
    SECRETS.discard(secret)


def _scrub_text(text: str) -> str:
    for secret in SECRETS.snapshot():
        text = text.replace(secret, REDACTED)
    return text


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _scrub_text(value)
    if isinstance(value, dict):
        return {
            k: (REDACTED if str(k).lower() in REDACT_KEYS and v else _scrub(v))
            for k, v in value.items()
        }
    return value


def mask_form(values: dict) -> dict:
    """Copy of a request payload that is safe to log."""
    return _scrub(dict(values or {}))


class RedactFilter(logging.Filter):
    """Stamps request/job context onto the record and masks live tokens."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.req_id = req_id_var.get()
        record.scope = route_var.get()
        record.client = client_var.get()
        if not getattr(record, "job_id", None):
            record.job_id = job_id_var.get()

        if isinstance(record.msg, str):
            record.msg = _scrub_text(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: _scrub(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_scrub(a) for a in record.args)
        return True


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    out = {}
    for key in EXTRA_FIELDS:
        val = getattr(record, key, None)
        if val not in (None, "", []):
            out[key] = val
    return out


class HumanFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = (
            f"{_timestamp()} {LEVEL_MARK.get(record.levelno, '•')} "
            f"{record.levelname:<8} [{getattr(record, 'scope', '-')}] "
            f"(rid={getattr(record, 'req_id', '-')} job={getattr(record, 'job_id', '-')}) "
            f"{super().format(record)}"
        )
        extras = _extras(record)
        if extras:
            line += " | " + " ".join(f"{k}={v}" for k, v in extras.items())
        return line


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        doc = {
            "time": _timestamp(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "scope": getattr(record, "scope", "-"),
            "req_id": getattr(record, "req_id", "-"),
            "client": getattr(record, "client", "-"),
            "job_id": getattr(record, "job_id", "-"),
        }
        doc.update(_extras(record))
        if record.exc_info:
            doc["exc"] = self.formatException(record.exc_info)
        return json.dumps(doc, separators=(",", ":"), default=str)


class ContextAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        for k, v in self.extra.items():
            extra.setdefault(k, v)
        return msg, kwargs


def get_logger(name="archivecord", **ctx):
    return ContextAdapter(logging.getLogger(name), dict(ctx))


def _prepare_handler(handler: logging.Handler, fmt: str) -> logging.Handler:
    formatter = JSONFormatter() if fmt == "JSON" else HumanFormatter("%(message)s")
    handler.setFormatter(formatter)
    handler.addFilter(RedactFilter())
    return handler


def _file_handlers(log_file: str, fmt: str) -> list[logging.Handler]:
    os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
    info = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    errors = logging.FileHandler(f"{log_file}.error", mode="a", encoding="utf-8")
    errors.setLevel(logging.WARNING)
    return [_prepare_handler(info, fmt), _prepare_handler(errors, fmt)]


def configure_app_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    log_file: Optional[str] = None,
):
    """
    Set up the ``archivecord`` logger tree.

    LOG_FORMAT picks HUMAN (default) or JSON lines, LOG_LEVEL the threshold.
    With LOG_FILE set, records are appended there and warnings and errors are
    mirrored into ``<LOG_FILE>.error``. When running under uvicorn its
    handlers are reused so both share one stream.
    """
    fmt = (fmt or os.getenv("LOG_FORMAT", "HUMAN")).strip().upper()
    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    log_file = log_file or os.getenv("LOG_FILE") or None

    root = logging.getLogger("archivecord")
    for old in root.handlers:
        if isinstance(old, logging.FileHandler):
            old.close()

    uvicorn_handlers = logging.getLogger("uvicorn.error").handlers
    if uvicorn_handlers:
        handlers = [_prepare_handler(h, fmt) for h in uvicorn_handlers]
    else:
        handlers = [_prepare_handler(logging.StreamHandler(stream=sys.stdout), fmt)]
    if log_file:
        handlers.extend(_file_handlers(log_file, fmt))

    root.handlers = handlers
    root.propagate = False
    root.setLevel(getattr(logging, lvl, logging.INFO))

    for noisy in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(
        logging.DEBUG if root.level <= logging.DEBUG else logging.WARNING
    )
    return get_logger("archivecord")
