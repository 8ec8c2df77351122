# =============================================================================
#  Archivecord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging
from typing import List, Optional
from urllib.parse import urlencode

from exporter.discord_api import DiscordAPI

logger = logging.getLogger("archivecord.fetcher")

MAX_FETCH_LIMIT = 100


async def fetch_messages_batch(
    api: DiscordAPI,
    token: str,
    channel_id: str,
    limit: int = MAX_FETCH_LIMIT,
    before: Optional[str] = None,
    after: Optional[str] = None,
) -> List[dict]:
    """
    One page of channel history, newest first.
    An empty list means history is exhausted; API failures propagate.
    """
    limit = max(1, min(MAX_FETCH_LIMIT, int(limit or MAX_FETCH_LIMIT)))
    params = {"limit": str(limit)}
    if before:
        params["before"] = str(before)
    elif after:
        params["after"] = str(after)

    url = f"{api.messages_base_url}/channels/{channel_id}/messages?{urlencode(params)}"
    logger.debug(
        "[📥] Fetching batch | channel=%s limit=%d before=%s after=%s",
        channel_id,
        limit,
        before or "-",
        after or "-",
    )
    data = await api.request(token, url)
    if not isinstance(data, list):
        logger.warning(
            "[⚠️] Unexpected message payload for channel %s (%s); treating as empty",
            channel_id,
            type(data).__name__,
        )
        return []
    logger.debug("[📥] Fetched %d messages for channel %s", len(data), channel_id)
    return data
