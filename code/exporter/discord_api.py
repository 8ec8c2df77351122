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
import base64
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from common.constants import (
    API_BASE_URL,
    LISTED_CHANNEL_TYPES,
    MESSAGES_API_BASE_URL,
    THREAD_PARENT_TYPES,
)
from common.errors import (
    DiscordAPIError,
    RequestTimeout,
    TransientNetworkError,
    classify_status,
)

BROWSER_UA = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/135.0.0.0 Safari/537.36"
)
_SUPER_PROPERTIES = {
    "os": "Linux",
    "browser": "Chrome",
    "device": "",
    "system_locale": "en-US",
    "has_client_mods": False,
    "browser_user_agent": BROWSER_UA,
    "browser_version": "135.0.0.0",
    "os_version": "",
    "referrer": "",
    "referring_domain": "",
    "referrer_current": "",
    "referring_domain_current": "",
    "release_channel": "stable",
    "client_build_number": 388773,
    "client_event_source": None,
}


def _super_properties() -> str:
    raw = json.dumps(_SUPER_PROPERTIES, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


class DiscordAPI:
    """
    Thin authenticated wrapper over the Discord REST API.

    Only 429 is retried here: the request is re-issued after the
    server-provided delay until Discord lets it through. Everything else is
    classified and raised.
    """

    DEFAULT_RETRY_AFTER = 5.0
    THREAD_PAGE_LIMIT = 25
    THREAD_MAX_CONSECUTIVE_ERRORS = 3

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        base_url: str = API_BASE_URL,
        messages_base_url: str = MESSAGES_API_BASE_URL,
        timeout: float = 20.0,
        rate_limit_margin: float = 0.5,
        thread_page_delay: float = 0.45,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session = session
        self._owns_session = session is None
        self.base_url = base_url.rstrip("/")
        self.messages_base_url = messages_base_url.rstrip("/")
        self.timeout = float(timeout)
        self.rate_limit_margin = float(rate_limit_margin)
        self.thread_page_delay = float(thread_page_delay)
        self.log = logger or logging.getLogger("archivecord.api")
        self._super_props = _super_properties()

    # ---------- lifecycle ----------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    # ---------- request core ----------
    def build_headers(self, token: str, url: str) -> Dict[str, str]:
        if "/channels/" in url:
            cid = url.split("/channels/", 1)[1].split("/", 1)[0].split("?", 1)[0]
            referer = f"https://discord.com/channels/@me/{cid}"
        else:
            referer = "https://discord.com/"
        return {
            "Accept": "*/*",
            "Accept-Language": "en-US,en;q=0.9",
            "Authorization": token,
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
            "User-Agent": BROWSER_UA,
            "X-Debug-Options": "bugReporterEnabled",
            "X-Discord-Locale": "en-US",
            "X-Super-Properties": self._super_props,
            "Referer": referer,
        }

    async def request(self, token: str, url: str, method: str = "GET") -> Any:
        """Return parsed JSON, raw text, or None for empty-body statuses."""
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        attempt = 0
        while True:
            attempt += 1
            self.log.debug("Discord API request %s %s attempt=%d", method, url, attempt)
            try:
                async with session.request(
                    method, url, headers=self.build_headers(token, url), timeout=timeout
                ) as resp:
                    if resp.status == 429:
                        delay = await self._retry_after(resp) + self.rate_limit_margin
                        self.log.warning(
                            "[⏱️] Rate limited by Discord API, sleeping %.2fs then retrying %s %s",
                            delay,
                            method,
                            url,
                        )
                    elif resp.status >= 400:
                        raise await self._error_for(resp, url)
                    else:
                        return await self._read_success(resp, method, url)
            except DiscordAPIError:
                raise
            except asyncio.TimeoutError as e:
                self.log.error("Discord API request timed out: %s %s", method, url)
                raise RequestTimeout(
                    f"Discord API Error: Request timed out ({url})", url=url
                ) from e
            except aiohttp.ClientError as e:
                self.log.error(
                    "Network error during Discord API request: %s %s err=%s",
                    method,
                    url,
                    e,
                )
                raise TransientNetworkError(
                    f"Network or other error during Discord API request: {e}", url=url
                ) from e

            await self._wait(delay)

    async def _wait(self, delay: float) -> None:
        await asyncio.sleep(delay)

    async def _retry_after(self, resp: aiohttp.ClientResponse) -> float:
        hdr = resp.headers.get("Retry-After")
        if hdr:
            try:
                return max(0.0, float(hdr))
            except ValueError:
                pass
        try:
            body = await resp.json(content_type=None)
            if isinstance(body, dict) and "retry_after" in body:
                return max(0.0, float(body["retry_after"]))
        except Exception:
            pass
        return self.DEFAULT_RETRY_AFTER

    async def _error_for(self, resp: aiohttp.ClientResponse, url: str) -> DiscordAPIError:
        body: Any = None
        message = resp.reason or ""
        try:
            text = await resp.text()
        except Exception:
            text = ""
        if text:
            try:
                body = json.loads(text)
            except ValueError:
                body = text
        if isinstance(body, dict) and body.get("message"):
            message = f"{message} - {body['message']}" if message else str(body["message"])
        if resp.status == 401:
            message = "Unauthorized (Invalid Token or Headers/Flags issue)"
        elif resp.status == 403:
            message = "Forbidden (Missing Permissions or endpoint requires different auth)"

        self.log.error(
            "Discord API request failed (%s) status=%s body=%s",
            url,
            resp.status,
            str(body)[:300] if body is not None else None,
        )
        cls = classify_status(resp.status)
        return cls(resp.status, message, body=body, url=url)

    async def _read_success(
        self, resp: aiohttp.ClientResponse, method: str, url: str
    ) -> Any:
        ctype = (resp.headers.get("Content-Type") or "").lower()
        if "application/json" in ctype:
            return await resp.json(content_type=None)
        if resp.status == 204:
            self.log.debug("Discord API 204 No Content: %s %s", method, url)
            return None
        text = await resp.text()
        self.log.warning(
            "Discord API response for %s was not JSON (Content-Type: %s). Status: %s",
            url,
            ctype or "-",
            resp.status,
        )
        return text or None

    # ---------- endpoints ----------
    async def fetch_guilds(self, token: str) -> List[dict]:
        url = f"{self.base_url}/users/@me/guilds"
        data = await self.request(token, url)
        if not isinstance(data, list):
            self.log.warning("Unexpected response format from GET %s: %r", url, type(data))
            raise DiscordAPIError(200, "Unexpected response format when fetching guilds.", url=url)
        self.log.info("Fetched %d guilds", len(data))
        return data

    async def fetch_channels(self, token: str, guild_id: str) -> List[dict]:
        url = f"{self.base_url}/guilds/{guild_id}/channels"
        data = await self.request(token, url)
        if not isinstance(data, list):
            raise DiscordAPIError(
                200,
                f"Unexpected response format when fetching channels for guild {guild_id}.",
                url=url,
            )
        relevant = [ch for ch in data if ch.get("type") in LISTED_CHANNEL_TYPES]
        self.log.info(
            "Fetched %d channels for guild %s, filtered to %d",
            len(data),
            guild_id,
            len(relevant),
        )
        return relevant

    async def fetch_channel(self, token: str, channel_id: str) -> dict:
        url = f"{self.base_url}/channels/{channel_id}"
        data = await self.request(token, url)
        return data if isinstance(data, dict) else {}

    async def fetch_threads(
        self, token: str, channel_id: str, channel_type: Optional[int]
    ) -> List[dict]:
        """Active + archived threads under a text/news channel, de-duplicated by id."""
        if channel_type not in THREAD_PARENT_TYPES:
            self.log.debug(
                "Skipping thread fetch for channel %s (type %s)", channel_id, channel_type
            )
            return []

        active, archived = await asyncio.gather(
            self._search_threads(token, channel_id, archived=False),
            self._search_threads(token, channel_id, archived=True),
        )
        unique: Dict[str, dict] = {}
        for th in active + archived:
            tid = th.get("id")
            if tid is not None and tid not in unique:
                unique[tid] = th
        self.log.info(
            "Thread search for channel %s: active=%d archived=%d unique=%d",
            channel_id,
            len(active),
            len(archived),
            len(unique),
        )
        return list(unique.values())

    async def _search_threads(
        self, token: str, channel_id: str, *, archived: bool
    ) -> List[dict]:
        label = "archived" if archived else "active"
        threads: List[dict] = []
        offset = 0
        errors = 0
        limit = self.THREAD_PAGE_LIMIT

        while errors < self.THREAD_MAX_CONSECUTIVE_ERRORS:
            params = {
                "sort_by": "last_message_time",
                "sort_order": "desc",
                "limit": str(limit),
                "offset": str(offset),
                "tag_setting": "match_some",
            }
            if archived:
                params["archived"] = "true"
            url = f"{self.base_url}/channels/{channel_id}/threads/search?{urlencode(params)}"
            try:
                data = await self.request(token, url)
            except (DiscordAPIError, TransientNetworkError) as e:
                errors += 1
                status = getattr(e, "status", None)
                if status in (403, 404):
                    self.log.warning(
                        "Cannot search %s threads for channel %s (HTTP %s); stopping",
                        label,
                        channel_id,
                        status,
                    )
                    break
                self.log.warning(
                    "Error fetching %s threads for channel %s offset=%d (%d/%d): %s",
                    label,
                    channel_id,
                    offset,
                    errors,
                    self.THREAD_MAX_CONSECUTIVE_ERRORS,
                    e,
                )
                if errors < self.THREAD_MAX_CONSECUTIVE_ERRORS:
                    await asyncio.sleep(1.0 * errors)
                continue

            errors = 0
            batch = data.get("threads") if isinstance(data, dict) else None
            if not isinstance(batch, list):
                self.log.warning(
                    "Unexpected %s thread search payload for channel %s; stopping",
                    label,
                    channel_id,
                )
                break

            threads.extend(batch)
            if data.get("has_more") is True and len(batch) == limit:
                offset += limit
                if self.thread_page_delay:
                    await asyncio.sleep(self.thread_page_delay)
                continue
            break

        return threads
