"""
Cache Store

Key/value persistence with a per-entry expiry. Values live one JSON file per
key in the cache directory, and expiries live together in an index file so
they can be inspected without opening every entry. A missing value file is
always a miss, whatever the index says.
"""

import logging
import os
import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, Union

from expiry import FOREVER, parse_timestamp, utcnow
from storage import ensure_directory, read_json, remove_path, write_json

logger = logging.getLogger(__name__)

INDEX_FILE = "cache.json"
FOREVER_MARKER = "forever"

ExpiryPolicy = Union[datetime, Callable[[Any, datetime], datetime]]


class CacheStore:
    """On-disk cache with computed expiries."""

    def __init__(self, directory: str, clock: Callable[[], datetime] = utcnow):
        self.directory = directory
        self.clock = clock
        ensure_directory(directory)
        self._index_path = os.path.join(directory, INDEX_FILE)
        self._index: Dict[str, str] = read_json(self._index_path, {}) or {}

    def _path_for(self, key: str) -> str:
        safe_key = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return os.path.join(self.directory, f"{safe_key}.json")

    def expiry_of(self, key: str) -> Optional[datetime]:
        raw = self._index.get(key)
        if raw is None:
            return None
        if raw == FOREVER_MARKER:
            return FOREVER
        try:
            return parse_timestamp(raw)
        except ValueError:
            logger.warning(f"Ignoring unreadable expiry for cache key {key}: {raw}")
            return None

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss."""
        path = self._path_for(key)
        if not os.path.exists(path):
            logger.debug(f"Cache miss for {key} (no file)")
            return None

        expiry = self.expiry_of(key)
        if expiry is None or self.clock() >= expiry:
            logger.debug(f"Cache miss for {key} (expired)")
            return None

        value = read_json(path)
        if value is None:
            return None
        logger.debug(f"Cache hit for {key}")
        return value

    def put(self, key: str, value: Any, expiry: ExpiryPolicy) -> datetime:
        """
        Store a value with an expiry.

        Args:
            key: Cache key (date string, content id, game id, "week", ...)
            value: JSON-serialisable value
            expiry: Absolute expiry, or a policy called as policy(value, now)

        Returns:
            The expiry that was recorded
        """
        if callable(expiry):
            expiry = expiry(value, self.clock())

        write_json(self._path_for(key), value)
        self._index[key] = FOREVER_MARKER if expiry >= FOREVER else expiry.isoformat()
        write_json(self._index_path, self._index)
        logger.debug(f"Cached {key} until {self._index[key]}")
        return expiry

    def delete(self, key: str):
        remove_path(self._path_for(key))
        if self._index.pop(key, None) is not None:
            write_json(self._index_path, self._index)

    def clear(self):
        """Drop every entry and the index."""
        for name in os.listdir(self.directory):
            if name.endswith(".json"):
                remove_path(os.path.join(self.directory, name))
        self._index = {}
        logger.info("Cache cleared")


class MemoryCache:
    """Process-lifetime cache with the same get/put contract."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._entries: Dict[str, Tuple[Any, datetime]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expiry = entry
        if self.clock() >= expiry:
            del self._entries[key]
            return None
        return value

    def put(self, key: str, value: Any, expiry: Optional[ExpiryPolicy] = None) -> datetime:
        if expiry is None:
            expiry = FOREVER
        elif callable(expiry):
            expiry = expiry(value, self.clock())
        self._entries[key] = (value, expiry)
        return expiry

    def delete(self, key: str):
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
