# =============================================================================
#  Archivecord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)
CURRENT_VERSION = "v1.2.0"


class Config:
    def __init__(self, logger: Optional[logging.Logger] = None):

        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = os.getenv(key)
            if v is None or v.strip() == "":
                v = env_default
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(env_default)
                except Exception:
                    return 0

        def _float(key: str, env_default: str = "0") -> float:
            raw = _str(key, env_default)
            try:
                return float(str(raw).strip())
            except Exception:
                return float(env_default)

        def _bool(key: str, env_default: str = "false") -> bool:
            raw = (_str(key, env_default) or "").strip().lower()
            return raw in ("1", "true", "yes", "y", "on")

        # --- Output ---
        self.EXPORTS_ROOT = _str("EXPORTS_ROOT", "./exports")
        self.MESSAGES_PER_PAGE = max(1, _int("MESSAGES_PER_PAGE", "500"))

        # --- Fetch loop ---
        self.BATCH_SIZE = max(1, min(100, _int("BATCH_SIZE", "100")))
        self.BATCH_DELAY_MS = max(0, _int("BATCH_DELAY_MS", "1000"))
        # 0 means "no ceiling"
        self.MAX_BATCHES = max(0, _int("MAX_BATCHES", "0"))
        self.FETCH_RETRY_DELAY_SEC = max(0.0, _float("FETCH_RETRY_DELAY_SEC", "5"))

        # --- HTTP ---
        self.API_TIMEOUT_SEC = max(1.0, _float("API_TIMEOUT_SEC", "20"))
        self.DOWNLOAD_TIMEOUT_SEC = max(1.0, _float("DOWNLOAD_TIMEOUT_SEC", "60"))
        self.RATE_LIMIT_MARGIN_SEC = max(0.0, _float("RATE_LIMIT_MARGIN_SEC", "0.5"))

        # --- Web ---
        self.HOST = _str("HOST", "0.0.0.0") or "0.0.0.0"
        self.PORT = _int("PORT", "3000")
        self.SSE_KEEPALIVE_SEC = max(1.0, _float("SSE_KEEPALIVE_SEC", "15"))
        # how long a new job waits for its first observer before fetching
        self.SUBSCRIBER_GRACE_SEC = max(0.0, _float("SUBSCRIBER_GRACE_SEC", "3"))
        self.INCLUDE_THREADS = _bool("INCLUDE_THREADS", "true")
        self.THREAD_FETCH_DELAY_MS = max(0, _int("THREAD_FETCH_DELAY_MS", "300"))

        # --- Logging / misc ---
        self.LOG_LEVEL = (_str("LOG_LEVEL", "INFO") or "INFO").upper()
        self.LOG_FORMAT = (_str("LOG_FORMAT", "HUMAN") or "HUMAN").upper()
        self.LOG_FILE = _str("LOG_FILE")

        self.logger = (logger or logging.getLogger(__name__)).getChild(
            self.__class__.__name__
        )

    @property
    def batch_delay(self) -> float:
        return self.BATCH_DELAY_MS / 1000.0

    @property
    def max_batches(self) -> Optional[int]:
        return self.MAX_BATCHES or None

    def describe(self) -> dict:
        return {
            "exports_root": self.EXPORTS_ROOT,
            "batch_size": self.BATCH_SIZE,
            "batch_delay_ms": self.BATCH_DELAY_MS,
            "max_batches": self.MAX_BATCHES,
            "messages_per_page": self.MESSAGES_PER_PAGE,
            "port": self.PORT,
        }
