# =============================================================================
#  Archivecord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import copy
import logging
import re
from pathlib import Path
from typing import Any, List, Optional, Set

from common.constants import (
    ASSET_CATEGORIES,
    CATEGORY_ATTACHMENTS,
    CATEGORY_AVATARS,
    CATEGORY_EMOTES,
    CIRCULAR_REFERENCE,
    DOWNLOAD_DIRNAME,
    EMOTE_MARKER_PREFIX,
    EMOTE_RE,
    FILE_URL_RE,
    GIF_HOST_RE,
)
from common.errors import DownloadError, FatalPipelineError
from exporter.downloader import AssetDownloader

_WS_RE = re.compile(r"\s+")


def is_user_object(node: Any) -> bool:
    return (
        isinstance(node, dict)
        and isinstance(node.get("id"), str)
        and isinstance(node.get("username"), str)
        and "avatar" in node
    )


def emote_alt_text(name: str) -> str:
    return _WS_RE.sub(" ", name.replace("|", "")).strip()


def make_emote_marker(rel_path: str, name: str) -> str:
    return f"{EMOTE_MARKER_PREFIX}{rel_path}|{emote_alt_text(name)}"


class _Walk:
    __slots__ = ("path", "users")

    def __init__(self):
        self.path: Set[int] = set()
        self.users: Set[int] = set()


class ContentRewriter:
    """
    Walks a JSON-like tree and swaps remote media for local files.

    - strings: media URLs become relative paths, `<a:name:id>` emote markup
      becomes an EMOTE_MARKER token; failures leave the text untouched
    - user objects: `avatar` hash becomes a relative path or None
    - dicts/lists: rebuilt into fresh containers
    - a node met again on its own traversal path becomes "[Circular Reference]"
    """

    def __init__(
        self,
        downloader: AssetDownloader,
        export_root: str | Path,
        logger: Optional[logging.Logger] = None,
    ):
        self.downloader = downloader
        self.export_root = Path(export_root)
        self.download_root = self.export_root / DOWNLOAD_DIRNAME
        self.log = logger or logging.getLogger("archivecord.rewriter")

    def category_dir(self, category: str) -> Path:
        return self.download_root / category

    def ensure_dirs(self) -> None:
        try:
            for cat in ASSET_CATEGORIES:
                self.category_dir(cat).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.log.error(
                "[⛔] Failed to create download directories in %s: %s",
                self.export_root,
                e,
            )
            raise FatalPipelineError("create download directories", e) from e

    async def process_batch(self, messages: List[dict]) -> List[dict]:
        """Rewrite a deep copy of one fetched batch; the input is left as is."""
        if not isinstance(messages, list):
            raise TypeError("messages batch must be a list")
        self.ensure_dirs()
        working = copy.deepcopy(messages)
        result = await self.rewrite(working)
        self.log.debug("[🧹] Processed batch of %d messages", len(messages))
        return result

    async def rewrite(self, data: Any) -> Any:
        return await self._walk(data, _Walk())

    async def _walk(self, data: Any, walk: "_Walk") -> Any:
        if isinstance(data, str):
            return await self._rewrite_string(data)
        if not isinstance(data, (dict, list, tuple)):
            return data

        key = id(data)
        if key in walk.path:
            return CIRCULAR_REFERENCE
        walk.path.add(key)
        try:
            if isinstance(data, dict):
                return await self._rewrite_dict(data, walk)
            return [await self._walk(item, walk) for item in data]
        finally:
            walk.path.discard(key)

    # ---------- node kinds ----------
    async def _rewrite_dict(self, node: dict, walk: "_Walk") -> dict:
        avatar_done = False
        if is_user_object(node):
            # a user dict shared by several messages is rewritten once
            if id(node) not in walk.users:
                walk.users.add(id(node))
                await self._process_avatar(node)
            avatar_done = True

        out = {}
        for k, v in node.items():
            if avatar_done and k == "avatar":
                out[k] = v
            else:
                out[k] = await self._walk(v, walk)
        return out

    async def _process_avatar(self, user: dict) -> None:
        info = self.downloader.avatar_url(user["id"], user.get("avatar"))
        if info is None:
            user["avatar"] = None
            return
        url, ext = info
        try:
            user["avatar"] = await self.downloader.fetch_and_store(
                url, self.category_dir(CATEGORY_AVATARS), self.export_root, ext
            )
        except DownloadError as e:
            self.log.warning(
                "Avatar processing failed for user %s. Setting avatar to null. Error: %s",
                user.get("id"),
                e,
            )
            user["avatar"] = None

    async def _rewrite_string(self, text: str) -> str:
        if "http" in text:
            text = await self._substitute(text, FILE_URL_RE, self._resolve_url)
        if "<" in text and ":" in text and ">" in text:
            text = await self._substitute(text, EMOTE_RE, self._resolve_emote)
        return text

    @staticmethod
    async def _substitute(text: str, pattern: re.Pattern, resolve) -> str:
        matches = list(pattern.finditer(text))
        if not matches:
            return text
        parts = []
        last = 0
        for m in matches:
            parts.append(text[last : m.start()])
            parts.append(await resolve(m))
            last = m.end()
        parts.append(text[last:])
        return "".join(parts)

    async def _resolve_url(self, m: re.Match) -> str:
        url = m.group(0)
        if GIF_HOST_RE.match(url):
            return url
        try:
            return await self.downloader.fetch_and_store(
                url, self.category_dir(CATEGORY_ATTACHMENTS), self.export_root
            )
        except DownloadError as e:
            self.log.warning("Keeping original URL %s (download failed in string): %s", url, e)
            return url

    async def _resolve_emote(self, m: re.Match) -> str:
        markup = m.group(0)
        animated, name, emote_id = m.group(1), m.group(2), m.group(3)
        info = await self.downloader.find_emote_url(emote_id, animated=bool(animated))
        if info is None:
            self.log.warning(
                "No CDN URL found for emote %s(%s). Keeping markdown.", name, emote_id
            )
            return markup
        url, ext = info
        try:
            rel = await self.downloader.fetch_and_store(
                url, self.category_dir(CATEGORY_EMOTES), self.export_root, ext
            )
        except DownloadError as e:
            self.log.warning(
                "Emote processing failed for %s(%s). Keeping markdown. Error: %s",
                name,
                emote_id,
                e,
            )
            return markup
        return make_emote_marker(rel, name)
