# =============================================================================
#  Archivecord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from typing import Any, Optional


class ArchivecordError(Exception):
    """Base class for every error raised by the export pipeline."""


class DiscordAPIError(ArchivecordError):
    """A non-success response from the Discord REST API (other than 429)."""

    def __init__(
        self,
        status: int,
        message: str = "",
        *,
        body: Any = None,
        url: Optional[str] = None,
    ):
        self.status = int(status)
        self.body = body
        self.url = url
        text = f"Discord API Error: Status {self.status}"
        if message:
            text += f" - {message}"
        code = body.get("code") if isinstance(body, dict) else None
        if code is not None:
            text += f" (Code: {code})"
        super().__init__(text)

    @property
    def friendly(self) -> str:
        return "Discord API request failed. Check logs for details."


class Unauthorized(DiscordAPIError):
    @property
    def friendly(self) -> str:
        return "Invalid Discord Token provided."


class Forbidden(DiscordAPIError):
    @property
    def friendly(self) -> str:
        return "Missing permissions for that server or channel."


class NotFound(DiscordAPIError):
    @property
    def friendly(self) -> str:
        return "Server or channel not found, or you are no longer a member."


class TransientNetworkError(ArchivecordError):
    """Connection-level failure talking to Discord (DNS, reset, refused)."""

    def __init__(self, message: str, *, url: Optional[str] = None):
        self.url = url
        super().__init__(message)

    @property
    def friendly(self) -> str:
        return "Network error or timeout connecting to Discord API."


class RequestTimeout(TransientNetworkError):
    pass


class DownloadError(ArchivecordError):
    def __init__(self, url: str, cause: Any = None):
        self.url = url
        self.cause = cause
        super().__init__(f"Download failed for {url}: {cause}")


class FatalPipelineError(ArchivecordError):
    """Anything that makes continuing the export meaningless."""

    def __init__(self, stage: str, cause: Any = None):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {cause}")


def classify_status(status: int):
    if status == 401:
        return Unauthorized
    if status == 403:
        return Forbidden
    if status == 404:
        return NotFound
    return DiscordAPIError
