# =============================================================================
#  Archivecord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import Markup, escape

from common.constants import (
    CDN_BASE_URL,
    EMOTE_MARKER_PREFIX,
    MEDIA_BASE_URL,
    PROCESSED_BATCH_RE,
    SPOILER_FLAG,
)

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "templates"
STATIC_DIR = BASE_DIR / "static"
STATIC_FILES = ("style.css", "archive.js")

PAGE_FMT = "processed_html_{index}.html"
GROUP_WINDOW = timedelta(minutes=7)
PREVIEW_MAX = 80

logger = logging.getLogger("archivecord.renderer")

_MARKER_RE = re.compile(
    re.escape(EMOTE_MARKER_PREFIX) + r"([\w/.\-]+)\|([A-Za-z0-9_]{1,32})"
)
_LINK_RE = re.compile(r"(?:https?://|downloaded_files/)[^\s<>\"']+")
_MD_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^\s)]+)\)")
_BOLD_ITALIC_RE = re.compile(r"\*\*\*(.+?)\*\*\*")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_UNDERLINE_RE = re.compile(r"__(.+?)__")
_ITALIC_STAR_RE = re.compile(r"\*(.+?)\*")
_ITALIC_UNDERSCORE_RE = re.compile(r"(?<![\w])_(.+?)_(?![\w])")
_STRIKE_RE = re.compile(r"~~(.+?)~~")
_SPOILER_RE = re.compile(r"\|\|(.+?)\|\|")
_CODE_RE = re.compile(r"`([^`]+)`")
_USER_MENTION_RE = re.compile(r"&lt;@!?(\d+)&gt;")
_CHANNEL_MENTION_RE = re.compile(r"&lt;#(\d+)&gt;")
_ROLE_MENTION_RE = re.compile(r"&lt;@&amp;(\d+)&gt;")
_RAW_MENTION_RE = re.compile(r"<[@#][!&]?\d+>")


# ---------- small helpers (also exposed to templates) ----------
def is_safe_relpath(p: Any) -> bool:
    return (
        isinstance(p, str)
        and "/" in p
        and not p.startswith("/")
        and ".." not in p
        and "://" not in p
    )


def default_avatar_url(user_id: Any, size: int = 64) -> str:
    s = str(user_id or "")
    idx = int(s[-1]) % 6 if s[-1:].isdigit() else 0
    return f"{CDN_BASE_URL}/embed/avatars/{idx}.png?size={size}"


def avatar_src(user: Optional[dict], size: int = 64) -> str:
    if not isinstance(user, dict) or not isinstance(user.get("id"), str):
        return default_avatar_url("0", size)
    av = user.get("avatar")
    if isinstance(av, str) and "/" in av:
        if is_safe_relpath(av):
            return av
        logger.warning(
            "Invalid avatar path detected for user %s: %s. Using default.", user["id"], av
        )
    return default_avatar_url(user["id"], size)


def display_name(user: Optional[dict]) -> str:
    if not isinstance(user, dict):
        return "Unknown User"
    return user.get("global_name") or user.get("username") or "Unknown User"


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def format_timestamp(value: Any) -> str:
    dt = parse_timestamp(value)
    if dt is None:
        return value if isinstance(value, str) else ""
    hour = dt.hour % 12 or 12
    suffix = "AM" if dt.hour < 12 else "PM"
    return f"{dt.month}/{dt.day}/{dt.year}, {hour}:{dt.minute:02d} {suffix}"


def embed_color(embed: dict) -> str:
    color = embed.get("color")
    if isinstance(color, int) and color >= 0:
        return f"#{color:06x}"
    return "#202225"


def attachment_kind(att: dict) -> str:
    ct = (att.get("content_type") or "").lower()
    for kind in ("image", "video", "audio"):
        if ct.startswith(f"{kind}/"):
            return kind
    return "file"


def is_spoiler(att: dict) -> bool:
    try:
        return (int(att.get("flags") or 0) & SPOILER_FLAG) == SPOILER_FLAG
    except (TypeError, ValueError):
        return False


def filesize(size: Any) -> str:
    try:
        return f"({int(size) / 1024:.1f} KB)"
    except (TypeError, ValueError):
        return ""


def sticker_url(sticker: dict) -> Optional[str]:
    sid = sticker.get("id")
    fmt = sticker.get("format_type")
    if fmt in (1, 2):
        return f"{MEDIA_BASE_URL}/stickers/{sid}.png?size=160"
    if fmt == 4:
        return f"{MEDIA_BASE_URL}/stickers/{sid}.gif?size=160"
    return None


def reaction_emoji_url(emoji: dict) -> Optional[str]:
    if emoji.get("id"):
        return f"{CDN_BASE_URL}/emojis/{emoji['id']}.webp?size=48"
    return None


# ---------- content formatting ----------
def _emote_img(m: re.Match) -> str:
    path, alt = m.group(1), m.group(2)
    if not path or path.startswith("/") or ".." in path:
        return str(escape(f"[Invalid Emote Path: {alt}]"))
    return (
        f'<img src="{escape(path)}" alt="{escape(alt)}" title=":{escape(alt)}:" '
        f'class="discord-emote" loading="lazy">'
    )


def _link(url: str) -> str:
    target = escape(url)
    return f'<a href="{target}" target="_blank" rel="noopener noreferrer">{target}</a>'


def _markdown(escaped: str) -> str:
    s = _CODE_RE.sub(r"<code>\1</code>", escaped)
    s = _BOLD_ITALIC_RE.sub(r"<strong><em>\1</em></strong>", s)
    s = _BOLD_RE.sub(r"<strong>\1</strong>", s)
    s = _UNDERLINE_RE.sub(r"<u>\1</u>", s)
    s = _ITALIC_STAR_RE.sub(r"<em>\1</em>", s)
    s = _ITALIC_UNDERSCORE_RE.sub(r"<em>\1</em>", s)
    s = _STRIKE_RE.sub(r"<del>\1</del>", s)
    s = _SPOILER_RE.sub(r'<span class="spoiler-inline">\1</span>', s)
    return s


def _mentions(s: str, message: dict) -> str:
    users: Dict[str, str] = {}
    for m in message.get("mentions") or []:
        if isinstance(m, dict) and m.get("id"):
            users[str(m["id"])] = m.get("global_name") or m.get("username") or f"User {m['id']}"
    channels = {
        str(ch.get("id")): ch.get("name")
        for ch in (message.get("mention_channels") or [])
        if isinstance(ch, dict)
    }

    def user_sub(m: re.Match) -> str:
        uid = m.group(1)
        name = escape(users.get(uid, f"User {uid}"))
        return f'<span class="mention user-mention" title="{name} (ID: {uid})">@{name}</span>'

    def channel_sub(m: re.Match) -> str:
        cid = m.group(1)
        name = escape(channels.get(cid) or f"channel-{cid}")
        return f'<span class="mention channel-mention" title="Channel ID: {cid}">#{name}</span>'

    def role_sub(m: re.Match) -> str:
        rid = m.group(1)
        return f'<span class="mention role-mention" title="Role ID: {rid}">@Role {rid}</span>'

    s = _ROLE_MENTION_RE.sub(role_sub, s)
    s = _USER_MENTION_RE.sub(user_sub, s)
    s = _CHANNEL_MENTION_RE.sub(channel_sub, s)
    return s


def _format_text(text: str, message: dict, *, markdown_links: bool = False) -> str:
    """Escape, then apply links/markdown/mentions. Links and markers are kept out of markdown."""
    out: List[str] = []
    pos = 0
    protected = sorted(
        list(_MARKER_RE.finditer(text))
        + (list(_MD_LINK_RE.finditer(text)) if markdown_links else [])
        + list(_LINK_RE.finditer(text)),
        key=lambda m: m.start(),
    )
    for m in protected:
        if m.start() < pos:
            continue
        out.append(_mentions(_markdown(str(escape(text[pos : m.start()]))), message))
        if m.re is _MARKER_RE:
            out.append(_emote_img(m))
        elif m.re is _MD_LINK_RE:
            out.append(
                f'<a href="{escape(m.group(2))}" target="_blank" '
                f'rel="noopener noreferrer">{escape(m.group(1))}</a>'
            )
        else:
            out.append(_link(m.group(0)))
        pos = m.end()
    out.append(_mentions(_markdown(str(escape(text[pos:]))), message))
    return "".join(out).replace("\n", "<br>\n")


def format_content(content: Any, message: Optional[dict] = None) -> Markup:
    if not isinstance(content, str) or not content:
        return Markup("")
    return Markup(_format_text(content, message or {}))


def format_embed_text(text: Any) -> Markup:
    if not isinstance(text, str) or not text:
        return Markup("")
    return Markup(_format_text(text, {}, markdown_links=True))


def reply_preview(replied: dict) -> Markup:
    content = replied.get("content")
    if isinstance(content, str) and content:
        preview = _RAW_MENTION_RE.sub("@mention", content)
        if len(preview) > PREVIEW_MAX:
            cut = PREVIEW_MAX
            # never cut through an emote marker; drop the whole marker instead
            for m in _MARKER_RE.finditer(preview):
                if m.start() < PREVIEW_MAX < m.end():
                    cut = m.start()
                    break
            idx = preview.rfind(EMOTE_MARKER_PREFIX, 0, cut)
            if idx != -1 and "|" not in preview[idx:cut]:
                cut = idx
            preview = preview[:cut].rstrip() + "..."
        return Markup(_format_text(preview.replace("\n", " "), replied))
    stickers = replied.get("sticker_items") or []
    if stickers:
        return Markup(escape(f"[Sticker: {stickers[0].get('name', '')}]"))
    attachments = replied.get("attachments") or []
    if attachments:
        return Markup(escape(f"[Attachment: {attachments[0].get('filename', '')}]"))
    embeds = replied.get("embeds") or []
    if embeds:
        return Markup(escape(f"[Embed: {embeds[0].get('title') or 'Embed'}]"))
    return Markup("[Empty Message]")


def is_reply(message: dict) -> bool:
    return bool(
        (message.get("type") == 19 or message.get("message_reference"))
        and message.get("referenced_message") is not None
    )


def should_group(prev: Optional[dict], cur: dict) -> bool:
    """Discord-style grouping: same author, plain messages, within 7 minutes."""
    if not prev:
        return False
    pa, ca = prev.get("author") or {}, cur.get("author") or {}
    if not ca.get("id") or pa.get("id") != ca.get("id"):
        return False
    if cur.get("referenced_message") or cur.get("message_reference"):
        return False
    if cur.get("type") not in (0, 19) or prev.get("type") not in (0, 19):
        return False
    if cur.get("call") or cur.get("webhook_id") != prev.get("webhook_id"):
        return False
    if bool(ca.get("bot")) != bool(pa.get("bot")):
        return False
    t0, t1 = parse_timestamp(prev.get("timestamp")), parse_timestamp(cur.get("timestamp"))
    if t0 is None or t1 is None:
        return False
    return timedelta(0) <= t1 - t0 < GROUP_WINDOW


def is_renderable(message: Any) -> bool:
    return (
        isinstance(message, dict)
        and bool(message.get("id"))
        and isinstance(message.get("author"), dict)
        and bool(message.get("timestamp"))
    )


# ---------- input loading ----------
def list_processed_batches(processed_dir: str | os.PathLike) -> List[Tuple[int, Path]]:
    found: List[Tuple[int, Path]] = []
    root = Path(processed_dir)
    if not root.is_dir():
        return found
    for entry in root.iterdir():
        m = PROCESSED_BATCH_RE.match(entry.name)
        if not m:
            logger.debug("Skipping file that doesn't match pattern: %s", entry.name)
            continue
        found.append((int(m.group(1)), entry))
    found.sort(key=lambda t: t[0])
    return found


def load_processed_messages(processed_dir: str | os.PathLike) -> List[dict]:
    """All processed messages, oldest first (batch 0 holds the newest page)."""
    messages: List[dict] = []
    for index, path in list_processed_batches(processed_dir):
        try:
            with open(path, "r", encoding="utf-8") as f:
                batch = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Error reading or parsing file %s: %s", path.name, e)
            continue
        if not isinstance(batch, list):
            logger.warning("Skipping file %s: Content is not a JSON array.", path.name)
            continue
        # each batch is newest-first, and older batches have higher indexes
        messages[:0] = list(reversed(batch))
    return messages


# ---------- engine ----------
@dataclass
class RenderResult:
    pages: int = 0
    messages: int = 0
    files: List[str] = field(default_factory=list)


class HtmlRenderer:
    def __init__(
        self,
        messages_per_page: int = 500,
        *,
        templates_dir: str | os.PathLike = TEMPLATES_DIR,
        static_dir: str | os.PathLike = STATIC_DIR,
        logger: Optional[logging.Logger] = None,
    ):
        self.messages_per_page = max(1, int(messages_per_page))
        self.static_dir = Path(static_dir)
        self.log = logger or logging.getLogger("archivecord.renderer")
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.globals.update(
            avatar_src=avatar_src,
            display_name=display_name,
            format_timestamp=format_timestamp,
            format_content=format_content,
            format_embed_text=format_embed_text,
            reply_preview=reply_preview,
            is_reply=is_reply,
            embed_color=embed_color,
            attachment_kind=attachment_kind,
            is_spoiler=is_spoiler,
            filesize=filesize,
            sticker_url=sticker_url,
            reaction_emoji_url=reaction_emoji_url,
        )

    def paginate(self, messages: List[dict]) -> List[List[dict]]:
        n = self.messages_per_page
        return [messages[i : i + n] for i in range(0, len(messages), n)]

    def build_rows(self, messages: List[dict]) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        prev: Optional[dict] = None
        for msg in messages:
            if not is_renderable(msg):
                mid = msg.get("id") if isinstance(msg, dict) else None
                self.log.warning("Skipping rendering invalid message object: %s", mid or "No ID")
                continue
            rows.append({"message": msg, "grouped": should_group(prev, msg)})
            prev = msg
        return rows

    def render_page(
        self,
        messages: List[dict],
        *,
        page_index: int,
        total_pages: int,
        title: str,
        total_messages: int,
    ) -> str:
        tpl = self.env.get_template("page.html")
        return tpl.render(
            title=title,
            rows=self.build_rows(messages),
            page_index=page_index,
            total_pages=total_pages,
            total_messages=total_messages,
            prev_href=PAGE_FMT.format(index=page_index - 1) if page_index > 0 else None,
            next_href=(
                PAGE_FMT.format(index=page_index + 1)
                if page_index + 1 < total_pages
                else None
            ),
        )

    def render_index(self, title: str, pages: List[Dict[str, Any]], total_messages: int) -> str:
        tpl = self.env.get_template("index.html")
        return tpl.render(title=title, pages=pages, total_messages=total_messages)

    def copy_static(self, html_dir: Path) -> None:
        dest = html_dir / "static"
        dest.mkdir(parents=True, exist_ok=True)
        for name in STATIC_FILES:
            src = self.static_dir / name
            if src.is_file():
                shutil.copy2(src, dest / name)
            else:
                self.log.warning("Static asset %s missing; pages will lack it", src)

    def render_export(
        self,
        processed_dir: str | os.PathLike,
        html_dir: str | os.PathLike,
        *,
        title: str = "Chat Export",
    ) -> RenderResult:
        """
        Read every processed batch under `processed_dir` and write paginated
        pages plus index.html into `html_dir`.
        """
        out = Path(html_dir)
        out.mkdir(parents=True, exist_ok=True)
        self.copy_static(out)

        messages = load_processed_messages(processed_dir)
        chunks = self.paginate(messages)
        result = RenderResult(pages=len(chunks), messages=len(messages))
        self.log.info(
            "[🖨️] Rendering %d messages into %d page(s) -> %s",
            len(messages),
            len(chunks),
            out,
        )

        index_pages: List[Dict[str, Any]] = []
        for i, chunk in enumerate(chunks):
            name = PAGE_FMT.format(index=i)
            html = self.render_page(
                chunk,
                page_index=i,
                total_pages=len(chunks),
                title=title,
                total_messages=len(messages),
            )
            (out / name).write_text(html, encoding="utf-8")
            result.files.append(name)
            index_pages.append(
                {
                    "href": name,
                    "number": i + 1,
                    "count": len(chunk),
                    "first": format_timestamp(chunk[0].get("timestamp")) if chunk else "",
                    "last": format_timestamp(chunk[-1].get("timestamp")) if chunk else "",
                }
            )

        (out / "index.html").write_text(
            self.render_index(title, index_pages, len(messages)), encoding="utf-8"
        )
        result.files.append("index.html")
        return result
