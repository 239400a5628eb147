"""
Zip archive output for exported collections.

The archive is assembled in a temporary file beside the destination and only
renamed into place once the manifest has been written, so a failed export
never leaves a truncated archive behind.
"""

from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Any, Mapping, Optional, Tuple
import zipfile

from .token import GenerationRecord

LOG = logging.getLogger("layerforge.archive_writer")

MANIFEST_NAME = "manifest.json"
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class ArchiveError(RuntimeError):
    """Raised when the archive cannot be written or finalised."""


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _zip_time(timestamp_ms: Optional[int]) -> Tuple[int, int, int, int, int, int]:
    if timestamp_ms is None:
        return ZIP_EPOCH
    moment = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
    stamp = (moment.year, moment.month, moment.day, moment.hour, moment.minute, moment.second)
    return max(stamp, ZIP_EPOCH)


class ArchiveWriter:
    def __init__(
        self,
        output_path: Path,
        *,
        timestamp: Optional[int] = None,
        compression: int = zipfile.ZIP_DEFLATED,
    ) -> None:
        self.output_path = Path(output_path)
        self.compression = compression
        self.date_time = _zip_time(timestamp)
        self.tokens_written = 0
        self.images_written = 0
        self._manifest_written = False
        self._closed = False

        try:
            _ensure_parent(self.output_path)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.output_path.parent, prefix=f".{self.output_path.name}.", suffix=".partial"
            )
            os.close(fd)
            self._tmp_path = Path(tmp_name)
            self._zip = zipfile.ZipFile(self._tmp_path, "w", compression=compression)
        except OSError as exc:
            raise ArchiveError(f"Cannot create archive at '{self.output_path}': {exc}") from exc

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def __enter__(self) -> "ArchiveWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.abort()
        elif not self._closed:
            self.close()

    # ------------------------------------------------------------------ #
    # Writing
    # ------------------------------------------------------------------ #

    def _write(self, name: str, data: bytes) -> None:
        if self._closed:
            raise ArchiveError("Archive is already closed.")
        info = zipfile.ZipInfo(name, date_time=self.date_time)
        info.compress_type = self.compression
        info.external_attr = 0o644 << 16
        try:
            self._zip.writestr(info, data)
        except (OSError, ValueError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Failed writing '{name}' to archive: {exc}") from exc

    def write_token(self, record: GenerationRecord) -> None:
        if record.composite_image is not None:
            self._write(f"images/{record.edition}.png", record.composite_image)
            self.images_written += 1
        payload = json.dumps(record.metadata, indent=2).encode("utf-8")
        self._write(f"metadata/{record.edition}.json", payload)
        self.tokens_written += 1

    def write_manifest(self, manifest: Mapping[str, Any]) -> None:
        self._write(MANIFEST_NAME, json.dumps(manifest, indent=2).encode("utf-8"))
        self._manifest_written = True

    # ------------------------------------------------------------------ #
    # Close & metadata
    # ------------------------------------------------------------------ #

    def close(self) -> Path:
        """Finalise the archive and move it to `output_path`."""
        if self._closed:
            return self.output_path
        if not self._manifest_written:
            self.abort()
            raise ArchiveError("Refusing to finalise an archive without a manifest.")
        try:
            self._zip.close()
            os.replace(self._tmp_path, self.output_path)
        except OSError as exc:
            self._discard()
            raise ArchiveError(f"Cannot finalise archive '{self.output_path}': {exc}") from exc
        self._closed = True
        LOG.info(
            "Archive written | path=%s tokens=%d images=%d",
            self.output_path,
            self.tokens_written,
            self.images_written,
        )
        return self.output_path

    def abort(self) -> None:
        """Discard the partial archive."""
        if self._closed:
            return
        try:
            self._zip.close()
        except (OSError, ValueError) as exc:
            LOG.debug("Ignoring error while closing aborted archive: %s", exc)
        self._discard()
        LOG.warning("Discarded partial archive for %s", self.output_path)

    def _discard(self) -> None:
        self._tmp_path.unlink(missing_ok=True)
        self._closed = True

    def to_metadata(self) -> dict:
        return {
            "output": str(self.output_path),
            "tokens": self.tokens_written,
            "images": self.images_written,
        }


def compute_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = [
    "ArchiveError",
    "ArchiveWriter",
    "MANIFEST_NAME",
    "compute_sha256",
]
