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
import errno
import hashlib
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit

import aiohttp

from common.constants import CDN_BASE_URL, MIN_AVATAR_HASH_LEN, AVATAR_SIZE
from common.errors import DownloadError

_EXT_SANITIZE_RE = re.compile(r"[^a-z0-9.]")


def resolve_extension(url: str, forced_ext: Optional[str] = None) -> str:
    """'.png' style extension from a forced hint, else the URL path, else '.unknown'."""
    if forced_ext:
        ext = forced_ext if forced_ext.startswith(".") else f".{forced_ext}"
    else:
        try:
            path = urlsplit(url).path
        except ValueError:
            path = url.split("?", 1)[0]
        ext = os.path.splitext(path)[1]
    ext = _EXT_SANITIZE_RE.sub("", ext.split("?", 1)[0].lower())
    if len(ext) <= 1:
        return ".unknown"
    return ext


def avatar_cdn_url(
    user_id: str, avatar_hash: Optional[str], cdn_base: str = CDN_BASE_URL
) -> Optional[Tuple[str, str]]:
    """(url, ext) for a user's avatar, or None when the hash can't be valid."""
    if not isinstance(avatar_hash, str) or len(avatar_hash) < MIN_AVATAR_HASH_LEN:
        return None
    fmt = "gif" if avatar_hash.startswith("a_") else "png"
    return (
        f"{cdn_base.rstrip('/')}/avatars/{user_id}/{avatar_hash}.{fmt}?size={AVATAR_SIZE}",
        fmt,
    )


class AssetDownloader:
    """
    Per-job content-addressed downloader.

    Every URL is fetched at most once per instance: completed results live in
    `cache` (url -> relative path) and concurrent callers for the same URL
    await one shared future. Files are named `<md5><ext>`, so byte-identical
    content from different URLs lands on the same file.
    """

    CHUNK_SIZE = 1 << 14
    EMOTE_PROBE_TIMEOUT = 7.0
    EMOTE_FORMATS_ANIMATED = ("gif", "png", "webp", "jpg")
    EMOTE_FORMATS_STATIC = ("png", "webp", "jpg")

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        timeout: float = 60.0,
        cdn_base: str = CDN_BASE_URL,
        tmp_root: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.timeout = float(timeout)
        self.cdn_base = cdn_base.rstrip("/")
        self.tmp_root = tmp_root
        self.log = logger or logging.getLogger("archivecord.downloader")

        self.cache: Dict[str, str] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._emote_cache: Dict[str, Optional[Tuple[str, str]]] = {}

        self.stats = {
            "downloads": 0,
            "cache_hits": 0,
            "content_dedup": 0,
            "failures": 0,
        }

    # ---------- public ----------
    async def fetch_and_store(
        self,
        url: str,
        target_dir: str | os.PathLike,
        export_root: str | os.PathLike,
        forced_ext: Optional[str] = None,
    ) -> str:
        """
        Download `url` into `target_dir` and return its path relative to
        `export_root` (always '/'-separated). Raises DownloadError.
        """
        cached = self.cache.get(url)
        if cached is not None:
            self.stats["cache_hits"] += 1
            self.log.debug("[♻️] Cache hit %s -> %s", url, cached)
            return cached

        pending = self._inflight.get(url)
        if pending is not None:
            self.stats["cache_hits"] += 1
            return await asyncio.shield(pending)

        fut = asyncio.get_running_loop().create_future()
        self._inflight[url] = fut
        try:
            rel = await self._download(url, Path(target_dir), Path(export_root), forced_ext)
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            # mark retrieved; waiters re-raise it themselves
            fut.exception()
            raise
        else:
            self.cache[url] = rel
            fut.set_result(rel)
            return rel
        finally:
            self._inflight.pop(url, None)

    async def find_emote_url(
        self, emote_id: str, animated: bool = False
    ) -> Optional[Tuple[str, str]]:
        """First CDN format answering a HEAD request, as (url, ext); cached per emote id."""
        if emote_id in self._emote_cache:
            return self._emote_cache[emote_id]

        formats = self.EMOTE_FORMATS_ANIMATED if animated else self.EMOTE_FORMATS_STATIC
        timeout = aiohttp.ClientTimeout(total=self.EMOTE_PROBE_TIMEOUT)
        found: Optional[Tuple[str, str]] = None
        for ext in formats:
            url = f"{self.cdn_base}/emojis/{emote_id}.{ext}"
            try:
                async with self.session.head(url, timeout=timeout) as resp:
                    if 200 <= resp.status < 300:
                        found = (url, ext)
                        break
                    if resp.status != 404:
                        self.log.warning(
                            "Error checking emote HEAD %s (Status: %s)", url, resp.status
                        )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.log.warning("Error checking emote HEAD %s: %s", url, e)

        if found is None:
            self.log.warning("No valid image format found for emote ID %s on CDN.", emote_id)
        self._emote_cache[emote_id] = found
        return found

    def avatar_url(self, user_id: str, avatar_hash: Optional[str]) -> Optional[Tuple[str, str]]:
        return avatar_cdn_url(user_id, avatar_hash, self.cdn_base)

    # ---------- internals ----------
    async def _download(
        self, url: str, target_dir: Path, export_root: Path, forced_ext: Optional[str]
    ) -> str:
        ext = resolve_extension(url, forced_ext)
        tmp_dir = None
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            tmp_dir = tempfile.mkdtemp(prefix="archivecord-", dir=self.tmp_root)
            tmp_path = os.path.join(tmp_dir, f"download{ext}")

            digest = await self._stream_to(url, tmp_path)
            self.stats["downloads"] += 1

            final_path = target_dir / f"{digest}{ext}"
            if final_path.exists():
                self.stats["content_dedup"] += 1
                self.log.debug("[♻️] Deduplicated: %s already exists", final_path.name)
            else:
                self._promote(tmp_path, final_path)
                self.log.debug("[💾] Saved new file %s for %s", final_path.name, url)

            return self._relative(final_path, export_root)
        except DownloadError:
            self.stats["failures"] += 1
            raise
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as e:
            self.stats["failures"] += 1
            self.log.warning("Download timed out for %s", url)
            raise DownloadError(url, f"Timeout processing {url}") from e
        except (aiohttp.ClientError, OSError, ValueError) as e:
            self.stats["failures"] += 1
            self.log.warning("Download/Hash/Save failed for %s: %s", url, e)
            raise DownloadError(url, e) from e
        finally:
            if tmp_dir:
                shutil.rmtree(tmp_dir, ignore_errors=True)

    async def _stream_to(self, url: str, dest: str) -> str:
        """Write the body to `dest`, hashing chunks as they are written."""
        md5 = hashlib.md5()
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with self.session.get(url, timeout=timeout) as resp:
            if not (200 <= resp.status < 300):
                raise DownloadError(url, f"HTTP {resp.status} {resp.reason or ''}".strip())
            with open(dest, "wb") as f:
                async for chunk in resp.content.iter_chunked(self.CHUNK_SIZE):
                    if chunk:
                        md5.update(chunk)
                        f.write(chunk)
        return md5.hexdigest()

    @staticmethod
    def _promote(src: str, dest: Path) -> None:
        try:
            os.replace(src, dest)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            shutil.copy2(src, dest)
            os.remove(src)

    @staticmethod
    def _relative(path: Path, export_root: Path) -> str:
        rel = path.resolve().relative_to(export_root.resolve()).as_posix()
        if rel.startswith("/") or ".." in rel.split("/"):
            raise ValueError(f"unsafe relative path {rel!r}")
        return rel
