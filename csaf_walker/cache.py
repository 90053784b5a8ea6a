"""Cross-pass cache store: validators and prior verdicts keyed by document URL."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from .models import CacheEntry

logger = logging.getLogger(__name__)

CACHE_FILE_NAME = "walker_cache.json"


class CacheStore(Protocol):
    """Key-value store read before and written after each descriptor."""

    def get(self, url: str) -> Optional[CacheEntry]: ...

    def put(self, url: str, entry: CacheEntry) -> None: ...

    def flush(self) -> None: ...


def _read_json(path: Path) -> Dict[str, Any]:
    """Read a JSON file. Returns empty dict if file doesn't exist."""
    if not path.exists():
        return {}
    return json.loads(path.read_text(encoding="utf-8"))


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON atomically via tmp-file rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)


class MemoryCacheStore:
    """In-process store; lives as long as the object does."""

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, url: str) -> Optional[CacheEntry]:
        return self._entries.get(url)

    def put(self, url: str, entry: CacheEntry) -> None:
        self._entries[url] = entry

    def flush(self) -> None:
        pass

    def __len__(self) -> int:
        return len(self._entries)


class JsonFileCacheStore:
    """Store backed by a single JSON file, loaded on open and written on flush.

    A corrupt cache file is logged and treated as empty so the next pass
    re-downloads everything instead of failing.
    """

    def __init__(self, cache_dir: Path) -> None:
        self.path = cache_dir / CACHE_FILE_NAME
        self._entries: Dict[str, CacheEntry] = {}
        self._dirty = False
        self._load()

    def _load(self) -> None:
        try:
            raw = _read_json(self.path)
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring unreadable cache file %s: %s", self.path, exc)
            return
        for url, payload in raw.items():
            self._entries[url] = CacheEntry.model_validate(payload)
        logger.debug("Loaded %d cache entries from %s", len(self._entries), self.path)

    def get(self, url: str) -> Optional[CacheEntry]:
        return self._entries.get(url)

    def put(self, url: str, entry: CacheEntry) -> None:
        self._entries[url] = entry
        self._dirty = True

    def flush(self) -> None:
        if not self._dirty:
            return
        payload = {url: e.model_dump(mode="json") for url, e in self._entries.items()}
        write_json_atomic(self.path, payload)
        self._dirty = False
        logger.info("Saved %d cache entries to %s", len(self._entries), self.path)

    def __len__(self) -> int:
        return len(self._entries)
