"""
Shared render cache.

`RenderCache` is an in-memory, thread-safe LRU keyed by hashable render keys
(`(trait_id, seed, width, height)` for trait renders, a content hash for
remote jobs). Concurrent misses for the same key coalesce onto a single
in-flight computation. Cached arrays are frozen read-only so a shared entry
can never be mutated by a consumer.

`BlobStore` persists content-addressed byte payloads (remote AI results)
under a cache directory so identical jobs survive process restarts.
"""

from __future__ import annotations

from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from hashlib import sha256
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Any, Callable, Dict, Hashable, Mapping, Optional, Tuple

import numpy as np

LOG = logging.getLogger("layerforge.cache")

DEFAULT_MAX_BYTES = 100 * 1024 * 1024


def render_key(trait_id: str, seed: str, width: int, height: int) -> Tuple[str, str, int, int]:
    return (trait_id, seed, int(width), int(height))


def content_hash(spec: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON encoding of `spec`."""
    canonical = json.dumps(spec, sort_keys=True, separators=(",", ":"), default=str)
    return sha256(canonical.encode("utf-8")).hexdigest()


def _sizeof(value: Any) -> int:
    if isinstance(value, np.ndarray):
        return int(value.nbytes)
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    return int(getattr(value, "nbytes", 0) or 0)


@dataclass
class CacheStats:
    entries: int
    size_bytes: int
    max_bytes: int
    hits: int
    misses: int
    coalesced: int
    evictions: int


class RenderCache:
    """Thread-safe LRU cache with single-flight population."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive.")
        self._max_bytes = max_bytes
        self._entries: "OrderedDict[Hashable, Any]" = OrderedDict()
        self._sizes: Dict[Hashable, int] = {}
        self._size = 0
        self._inflight: Dict[Hashable, Future] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            if key not in self._entries:
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return self._entries[key]

    def put(self, key: Hashable, value: Any) -> Any:
        if isinstance(value, np.ndarray):
            value.setflags(write=False)
        size = _sizeof(value)
        with self._lock:
            self._store(key, value, size)
        return value

    def _store(self, key: Hashable, value: Any, size: int) -> None:
        if key in self._entries:
            self._size -= self._sizes.pop(key)
            del self._entries[key]
        if size > self._max_bytes:
            LOG.debug("Entry %s (%d bytes) exceeds cache capacity; not cached.", key, size)
            return
        while self._entries and self._size + size > self._max_bytes:
            evicted, _ = self._entries.popitem(last=False)
            self._size -= self._sizes.pop(evicted)
            self._evictions += 1
            LOG.debug("Evicted render cache entry %s", evicted)
        self._entries[key] = value
        self._sizes[key] = size
        self._size += size

    def get_or_create(self, key: Hashable, factory: Callable[[], Any]) -> Tuple[Any, bool]:
        """
        Return `(value, hit)` for `key`, calling `factory` at most once per key
        across concurrent callers. Factory errors propagate to every waiter and
        nothing is cached.
        """
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                self._hits += 1
                return self._entries[key], True
            pending = self._inflight.get(key)
            if pending is None:
                owner = True
                pending = Future()
                self._inflight[key] = pending
                self._misses += 1
            else:
                owner = False
                self._coalesced += 1

        if not owner:
            return pending.result(), True

        try:
            value = factory()
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
            pending.set_exception(exc)
            raise
        value = self.put(key, value)
        with self._lock:
            self._inflight.pop(key, None)
        pending.set_result(value)
        return value, False

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._sizes.clear()
            self._size = 0

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                entries=len(self._entries),
                size_bytes=self._size,
                max_bytes=self._max_bytes,
                hits=self._hits,
                misses=self._misses,
                coalesced=self._coalesced,
                evictions=self._evictions,
            )


def _atomic_write(path: Path, data: bytes) -> None:
    """Write-then-rename so readers never observe a partial file."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class BlobStore:
    """Content-addressed byte store on disk (`<root>/<hash[:2]>/<hash>.bin`)."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, digest: str) -> Path:
        return self.root / digest[:2] / f"{digest}.bin"

    def get(self, digest: str) -> Optional[bytes]:
        path = self._path(digest)
        if not path.exists():
            return None
        data = path.read_bytes()
        if sha256(data).hexdigest() != self._payload_digest(path):
            LOG.warning("Discarding corrupt cache blob %s", path)
            path.unlink(missing_ok=True)
            return None
        return data

    def put(self, digest: str, data: bytes) -> Path:
        path = self._path(digest)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Marker lands before the blob: a visible blob always has its digest.
        _atomic_write(path.with_suffix(".sha256"), sha256(data).hexdigest().encode("ascii"))
        _atomic_write(path, data)
        return path

    def _payload_digest(self, path: Path) -> str:
        marker = path.with_suffix(".sha256")
        return marker.read_text().strip() if marker.exists() else ""


__all__ = [
    "BlobStore",
    "CacheStats",
    "RenderCache",
    "content_hash",
    "render_key",
]
