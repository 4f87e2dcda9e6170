"""
File-Backed Local Cache

DESIGN DECISION: The on-device cache is a single JSON document.
The data is tiny (a handful of keys per user) and must survive restarts,
so a file is enough. Writes go through a temp file and os.replace so a
crash mid-write never leaves a half-written cache behind.

A corrupt or unreadable file is treated as an empty cache: the cache is
advisory, and the remote store remains the source of truth.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import structlog

from cashflow_billing.services.storage.interface import LocalCacheInterface, StorageError


logger = structlog.get_logger(__name__)


class JsonFileCache(LocalCacheInterface):
    """Key-value cache persisted to a JSON file."""

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._data: Optional[dict[str, Any]] = None

    def _load(self) -> dict[str, Any]:
        if self._data is None:
            try:
                with self._path.open("r", encoding="utf-8") as fh:
                    loaded = json.load(fh)
                self._data = loaded if isinstance(loaded, dict) else {}
            except FileNotFoundError:
                self._data = {}
            except (OSError, ValueError) as e:
                logger.warning("local_cache_unreadable", path=str(self._path), error=str(e))
                self._data = {}
        return self._data

    def _flush(self, data: dict[str, Any]) -> None:
        """Write `data` to disk, then adopt it. Memory is untouched if the write fails."""
        tmp_path = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self._path.parent),
                prefix=self._path.name,
                suffix=".tmp",
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise StorageError(f"Failed to write local cache: {e}") from e
        self._data = data

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            return self._load().get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = dict(self._load())
            data[key] = value
            self._flush(data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._load()
            if key in data:
                remaining = {k: v for k, v in data.items() if k != key}
                self._flush(remaining)
