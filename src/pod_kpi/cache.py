"""
TTL-based file cache for Linear API responses.

One JSON file per entry under the cache directory. Entries expire lazily on
read; there is no background sweep and no per-key lock, so two concurrent
misses for the same key both fetch and the last write wins.
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = os.getenv("POD_KPI_CACHE_DIR", os.path.join("output", "cache"))
DEFAULT_TTL_SECONDS = 300  # 5 minutes

# distinguishes a miss from a stored null
_MISS = object()


def cache_key(namespace: str, *args: Any, **kwargs: Any) -> str:
    """Stable hash of (namespace, args). Identical inputs map to the same file."""
    parts: list[Any] = [namespace, *args]
    if kwargs:
        parts.append(dict(sorted(kwargs.items())))
    payload = json.dumps(parts, sort_keys=True, default=str)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


class TtlCache:
    """File-backed cache with lazy expiry."""

    def __init__(
        self,
        directory: str | os.PathLike[str] = DEFAULT_CACHE_DIR,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._dir = Path(directory)
        self._default_ttl = default_ttl
        self._clock = clock

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, key: str) -> Path:
        return self._dir / f"{key}.json"

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove cache entry %s: %s", path.name, exc)

    def get(self, key: str, ttl: float | None = None, default: Any = None) -> Any:
        """Return the stored value, or ``default`` on miss, expiry or corruption."""
        ttl = self._default_ttl if ttl is None else ttl
        path = self._path(key)
        try:
            written_at = path.stat().st_mtime
        except FileNotFoundError:
            return default
        except OSError as exc:
            logger.warning("Cache stat failed for %s: %s", path.name, exc)
            return default

        if self._clock() - written_at > ttl:
            self._discard(path)
            return default

        try:
            with path.open("r", encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Discarding corrupt cache entry %s: %s", path.name, exc)
            self._discard(path)
            return default

    def set(self, key: str, value: Any) -> None:
        """Write one full value per key; readers never see a partial file."""
        self._dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(value, fh)
            os.replace(tmp_name, self._path(key))
            # mtime is the write timestamp; keep it on the injected clock
            now = self._clock()
            os.utime(self._path(key), (now, now))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def with_cache(
        self,
        namespace: str,
        fn: Callable[..., Any],
        ttl: float | None = None,
    ) -> Callable[..., Any]:
        """Wrap ``fn`` (sync or async) so results are memoized per argument tuple."""
        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                key = cache_key(namespace, *args, **kwargs)
                cached = self.get(key, ttl, _MISS)
                if cached is not _MISS:
                    return cached
                result = await fn(*args, **kwargs)
                self.set(key, result)
                return result

            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            key = cache_key(namespace, *args, **kwargs)
            cached = self.get(key, ttl, _MISS)
            if cached is not _MISS:
                return cached
            result = fn(*args, **kwargs)
            self.set(key, result)
            return result

        return wrapper

    def clear(self) -> int:
        """Remove all entries. Returns the number of files deleted."""
        if not self._dir.exists():
            return 0
        removed = 0
        for path in self._dir.glob("*.json"):
            try:
                path.unlink()
                removed += 1
            except OSError as exc:
                logger.warning("Could not remove cache entry %s: %s", path.name, exc)
        return removed

    def stats(self) -> dict[str, Any]:
        if not self._dir.exists():
            return {"entries": 0, "totalSize": 0, "totalSizeKb": 0}

        entries = 0
        total_size = 0
        for path in self._dir.glob("*.json"):
            try:
                total_size += path.stat().st_size
                entries += 1
            except OSError:
                continue
        return {
            "entries": entries,
            "totalSize": total_size,
            "totalSizeKb": round(total_size / 1024),
        }
