# In-memory LRU of signed avatar URLs, keyed by "<normalized path>|<ttl>[|<user>]".
# Repeated lookups hand back the same URL so browsers can keep the image cached.

from __future__ import annotations

import logging
from typing import Optional

from cachetools import LRUCache

from .paths import normalize_avatar_path

logger = logging.getLogger(__name__)

DEFAULT_MAXSIZE = 500


class SignedUrlCache:
    """Bounded, recency-ordered map of signed URLs.

    Not locked: every caller runs on the same event loop and no mutation awaits.
    """

    def __init__(self, maxsize: int = DEFAULT_MAXSIZE) -> None:
        if maxsize < 1:
            raise ValueError(f"maxsize must be at least 1, got {maxsize}")
        self.maxsize = maxsize
        self._entries: LRUCache = LRUCache(maxsize=maxsize)

    @staticmethod
    def key(path: str, ttl: int, scope: Optional[str] = None) -> str:
        """Cache key for *path* signed with *ttl*; *scope* separates per-user signatures."""
        if scope:
            return f"{path}|{ttl}|{scope}"
        return f"{path}|{ttl}"

    def get(self, key: str) -> Optional[str]:
        """Return the cached URL for *key*, marking it most recently used."""
        return self._entries.get(key)

    def set(self, key: str, url: str) -> None:
        self._entries[key] = url

    def invalidate(self, path: Optional[str]) -> int:
        """Drop every TTL variant cached for *path*; returns how many were removed."""
        normalized = normalize_avatar_path(path)
        if not normalized:
            return 0
        prefix = f"{normalized}|"
        stale = [key for key in list(self._entries.keys()) if key.startswith(prefix)]
        for key in stale:
            self._entries.pop(key, None)
        if stale:
            logger.debug("Invalidated %s signed URL(s) for %s", len(stale), normalized)
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
