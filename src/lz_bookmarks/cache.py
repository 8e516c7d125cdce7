"""Process-wide query cache.

The cache maps a query key to the last completed result for that key. It is
created once per session and handed to the QueryClient; only completed,
non-cancelled fetches write to it. A write replaces the whole entry and then
notifies the key's listeners, so observers never see a half-updated value.

Listings can also be persisted so they are readable without the network.
The persisted file is .cache/query_cache.json:
    {
        "saved_at": "2025-01-15T14:30:00+00:00",
        "entries": [
            {"key": ["infinite", "list_bookmarks", "{}"],
             "updated_at": 1736951400.0,
             "pages": [{"bookmarks": [...], "nextCursor": 42}]}
        ]
    }
"""

import json
import logging
import time
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import DecodeError
from .models import BookmarkPage, InfiniteData
from .parser import parse_list_result, serialize_page

logger = logging.getLogger(__name__)

QueryKey = tuple[str, str, str]  # (kind, operation id, serialized params)

LOADING = "loading"
SUCCESS = "success"
ERROR = "error"


def make_query_key(
    operation_id: str, params: Mapping[str, Any] | None = None, kind: str = "fetch"
) -> QueryKey:
    """Build a stable key: equal operation and params give equal keys."""
    cleaned = {k: v for k, v in (params or {}).items() if v is not None}
    serialized = json.dumps(cleaned, sort_keys=True, separators=(",", ":"), default=str)
    return (kind, operation_id, serialized)


@dataclass(frozen=True)
class CacheEntry:
    data: Any = None
    error: Exception | None = None
    status: str = LOADING
    updated_at: float | None = None  # time of the last successful write

    def with_data(self, data: Any) -> "CacheEntry":
        return CacheEntry(data=data, error=None, status=SUCCESS, updated_at=time.time())

    def with_error(self, error: Exception) -> "CacheEntry":
        # Previous data stays available next to the error
        return replace(self, error=error, status=ERROR)

    def is_stale(self, stale_time: float) -> bool:
        if self.updated_at is None:
            return True
        return time.time() - self.updated_at >= stale_time


Listener = Callable[[CacheEntry], None]


class QueryCache:
    def __init__(self) -> None:
        self._entries: dict[QueryKey, CacheEntry] = {}
        self._listeners: dict[QueryKey, list[Listener]] = defaultdict(list)

    def get(self, key: QueryKey) -> CacheEntry | None:
        return self._entries.get(key)

    def put(self, key: QueryKey, entry: CacheEntry) -> None:
        self._entries[key] = entry
        for listener in list(self._listeners.get(key, ())):
            listener(entry)

    def subscribe(self, key: QueryKey, listener: Listener) -> Callable[[], None]:
        """Register listener for writes to key; returns the unsubscribe function."""
        self._listeners[key].append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[key]

        return unsubscribe

    def observer_count(self, key: QueryKey) -> int:
        return len(self._listeners.get(key, ()))

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    def invalidate(self, key: QueryKey | None = None) -> None:
        """Drop one entry, or every entry when key is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        self._listeners.clear()

    def __contains__(self, key: QueryKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class CacheStore:
    """Saves and restores the listing entries of a QueryCache."""

    def __init__(self, cache_dir: Path = Path(".cache")):
        self.cache_dir = cache_dir
        self.cache_file = cache_dir / "query_cache.json"

    def load(self, cache: QueryCache) -> int:
        """Load persisted entries into cache; returns how many were restored."""
        if not self.cache_file.exists():
            logger.info("No persisted cache found. Starting fresh.")
            return 0

        try:
            data = json.loads(self.cache_file.read_text())
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            logger.warning("Ignoring corrupt cache file %s: %s", self.cache_file, e)
            return 0

        restored = 0
        for raw in data.get("entries", []):
            try:
                key = tuple(raw["key"])
                value = _restore_value(raw)
            except (DecodeError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable cache entry: %r", e)
                continue
            cache.put(
                key,
                CacheEntry(data=value, status=SUCCESS, updated_at=raw.get("updated_at")),
            )
            restored += 1
        logger.info("Loaded %d cached queries from %s", restored, self.cache_file)
        return restored

    def save(self, cache: QueryCache) -> int:
        """Persist successful listing entries; returns how many were written."""
        entries = []
        for key in cache.keys():
            entry = cache.get(key)
            if entry is None or entry.data is None:
                continue
            if isinstance(entry.data, InfiniteData):
                entries.append(
                    {
                        "key": list(key),
                        "updated_at": entry.updated_at,
                        "pages": [serialize_page(p) for p in entry.data.pages],
                    }
                )
            elif isinstance(entry.data, BookmarkPage):
                entries.append(
                    {
                        "key": list(key),
                        "updated_at": entry.updated_at,
                        "page": serialize_page(entry.data),
                    }
                )

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        data = {
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "entries": entries,
        }
        self.cache_file.write_text(json.dumps(data, indent=2))
        return len(entries)

    def reset(self) -> None:
        if self.cache_file.exists():
            self.cache_file.unlink()


def _restore_value(raw: dict) -> Any:
    if "pages" in raw:
        return InfiniteData(pages=tuple(parse_list_result(p) for p in raw["pages"]))
    if "page" in raw:
        return parse_list_result(raw["page"])
    raise DecodeError("Cache entry has neither 'page' nor 'pages'")
