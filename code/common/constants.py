# =============================================================================
#  Archivecord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Shared constants used across Archivecord services."""

import re

API_BASE_URL = "https://discord.com/api/v10"
MESSAGES_API_BASE_URL = "https://discord.com/api/v9"
CDN_BASE_URL = "https://cdn.discordapp.com"
MEDIA_BASE_URL = "https://media.discordapp.net"

EMOTE_MARKER_PREFIX = "EMOTE_MARKER:"
CIRCULAR_REFERENCE = "[Circular Reference]"

DOWNLOAD_DIRNAME = "downloaded_files"
CATEGORY_AVATARS = "avatars"
CATEGORY_EMOTES = "emotes"
CATEGORY_ATTACHMENTS = "attachments"
ASSET_CATEGORIES = (CATEGORY_AVATARS, CATEGORY_EMOTES, CATEGORY_ATTACHMENTS)

RAW_DIRNAME = "messages"
PROCESSED_DIRNAME = "processed_messages"
HTML_DIRNAME = "processed_html"

MARKER_SUCCESS = "EXPORT_SUCCESS.txt"
MARKER_FAILED = "EXPORT_FAILED.txt"
MARKER_WARNING_MOVE = "EXPORT_WARNING_MOVE_FAILED.txt"

RAW_BATCH_FMT = "messages_batch_{index}_{ts}.json"
PROCESSED_BATCH_FMT = "processed_messages_batch_{index}_{ts}.json"
PROCESSED_BATCH_RE = re.compile(r"^processed_messages_batch_(\d+)_\d+\.json$")

MIN_AVATAR_HASH_LEN = 10
AVATAR_SIZE = 128

# Channel types worth listing in the picker: text, category, news, threads.
LISTED_CHANNEL_TYPES = {0, 4, 5, 10, 11, 12}
THREAD_PARENT_TYPES = {0, 5}
CATEGORY_CHANNEL_TYPE = 4

SPOILER_FLAG = 1 << 13

FILE_URL_RE = re.compile(
    r"https?://[^\s]+\.(?:jpg|jpeg|png|gif|mp4|mov|avi|mkv|webm|webp|mp3|ogg|wav|pdf)(?:\?[^\s]*)?",
    re.I,
)
EMOTE_RE = re.compile(r"<(a?):([a-zA-Z0-9_]{2,32}):(\d{17,20})>")
GIF_HOST_RE = re.compile(
    r"^https?://(?:media\.tenor\.com|(?:[\w-]+\.)*giphy\.com|gfycat\.com)", re.I
)
