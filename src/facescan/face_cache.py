"""Per-directory face cache persisted as a versioned JSON document."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "face_cache"})

# Bump this when the cache payload format changes in a non-backwards compatible way.
CACHE_FORMAT_VERSION: int = 1
DEFAULT_CACHE_FILENAME = ".facescan-faces.json"

_ENTRY_KEYS = {
    "mtime",
    "faces",
    "scannedAt",
    "processingTime",
    "facesCount",
    "fileSize",
    "extension",
    "fileType",
}


def normalize_cache_key(path: str | Path) -> str:
    """Return the canonical cache key for ``path`` (forward slashes only)."""

    return str(path).replace("\\", "/")


def cache_path(root: Path, filename: str = DEFAULT_CACHE_FILENAME) -> Path:
    return Path(root) / filename


@dataclass
class FaceBox:
    """Face bounding box in source pixel coordinates."""

    x: float
    y: float
    width: float
    height: float

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, raw: Any) -> FaceBox | None:
        if not isinstance(raw, dict):
            return None
        try:
            return cls(
                x=float(raw["x"]),
                y=float(raw["y"]),
                width=float(raw["width"]),
                height=float(raw["height"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass
class DetectionRecord:
    """A single cached face: embedding plus references used for display."""

    embedding: list[float]
    box: FaceBox | None = None
    thumbnail: str | None = None
    face_thumbnail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "descriptor": [float(value) for value in self.embedding],
            "box": self.box.to_dict() if self.box else None,
            "thumbnail": self.thumbnail,
            "faceThumb": self.face_thumbnail,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> DetectionRecord | None:
        if not isinstance(raw, dict):
            return None
        descriptor = raw.get("descriptor")
        if not isinstance(descriptor, list) or not descriptor:
            return None
        try:
            embedding = [float(value) for value in descriptor]
        except (TypeError, ValueError):
            return None
        thumbnail = raw.get("thumbnail")
        face_thumbnail = raw.get("faceThumb")
        return cls(
            embedding=embedding,
            box=FaceBox.from_dict(raw.get("box")),
            thumbnail=thumbnail if isinstance(thumbnail, str) else None,
            face_thumbnail=face_thumbnail if isinstance(face_thumbnail, str) else None,
        )


@dataclass
class FileCacheEntry:
    """Cached detection results for one media file."""

    mtime: int
    faces: list[DetectionRecord] = field(default_factory=list)
    scanned_at: str | None = None
    processing_time_ms: int | None = None
    file_size: int | None = None
    extension: str | None = None
    file_type: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def faces_count(self) -> int:
        return len(self.faces)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "mtime": self.mtime,
                "scannedAt": self.scanned_at,
                "processingTime": self.processing_time_ms,
                "facesCount": self.faces_count,
                "fileSize": self.file_size,
                "extension": self.extension,
                "fileType": self.file_type,
                "faces": [face.to_dict() for face in self.faces],
            }
        )
        return payload

    @classmethod
    def from_dict(cls, raw: Any) -> FileCacheEntry | None:
        if not isinstance(raw, dict):
            return None
        mtime_raw = raw.get("mtime")
        if isinstance(mtime_raw, bool) or not isinstance(mtime_raw, (int, float)):
            return None

        faces: list[DetectionRecord] = []
        for face_raw in raw.get("faces") or []:
            record = DetectionRecord.from_dict(face_raw)
            if record is not None:
                faces.append(record)

        def _opt_int(key: str) -> int | None:
            value = raw.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
            return int(value)

        def _opt_str(key: str) -> str | None:
            value = raw.get(key)
            return value if isinstance(value, str) else None

        return cls(
            mtime=int(mtime_raw),
            faces=faces,
            scanned_at=_opt_str("scannedAt"),
            processing_time_ms=_opt_int("processingTime"),
            file_size=_opt_int("fileSize"),
            extension=_opt_str("extension"),
            file_type=_opt_str("fileType"),
            extra={key: value for key, value in raw.items() if key not in _ENTRY_KEYS},
        )


@dataclass
class CacheDocument:
    """Root cache object for one scanned directory."""

    version: int = CACHE_FORMAT_VERSION
    last_scan: str | None = None
    files: dict[str, FileCacheEntry] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "lastScan": self.last_scan,
            "files": {key: entry.to_dict() for key, entry in self.files.items()},
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CacheDocument:
        files: dict[str, FileCacheEntry] = {}
        for key, entry_raw in _as_dict(raw.get("files")).items():
            entry = FileCacheEntry.from_dict(entry_raw)
            if entry is None:
                LOGGER.warning("face_cache_entry_invalid", extra={"path": str(key)})
                continue
            files[normalize_cache_key(key)] = entry
        last_scan = raw.get("lastScan")
        return cls(
            version=int(raw.get("version", CACHE_FORMAT_VERSION)),
            last_scan=last_scan if isinstance(last_scan, str) else None,
            files=files,
        )


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def load_face_cache(root: Path, filename: str = DEFAULT_CACHE_FILENAME) -> CacheDocument | None:
    """Load the face cache for ``root``.

    Returns ``None`` when the file is missing, unreadable, malformed, or was
    written with a different :data:`CACHE_FORMAT_VERSION`. Callers treat that
    as a cold start; this function never raises for cache problems.
    """

    path = cache_path(root, filename)
    if not path.exists():
        return None

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOGGER.error("face_cache_load_error", extra={"path": str(path), "error": str(exc)})
        return None

    if not isinstance(raw, dict):
        LOGGER.error("face_cache_load_error", extra={"path": str(path), "error": "payload is not an object"})
        return None

    version = raw.get("version")
    if isinstance(version, bool) or version != CACHE_FORMAT_VERSION:
        LOGGER.info(
            "face_cache_version_mismatch",
            extra={"path": str(path), "found": version, "expected": CACHE_FORMAT_VERSION},
        )
        return None

    document = CacheDocument.from_dict(raw)
    LOGGER.info("face_cache_loaded", extra={"path": str(path), "file_count": len(document.files)})
    return document


def save_face_cache(root: Path, document: CacheDocument, filename: str = DEFAULT_CACHE_FILENAME) -> bool:
    """Persist ``document`` for ``root``.

    The payload is written to a temporary file next to the target and moved
    into place with :func:`os.replace`, so a concurrent reader sees either the
    previous or the new document. Failures are logged and reported through the
    return value; the in-memory document stays authoritative.
    """

    path = cache_path(root, filename)
    document.version = CACHE_FORMAT_VERSION
    document.last_scan = datetime.now(timezone.utc).isoformat()

    tmp_name: str | None = None
    try:
        payload = json.dumps(document.to_dict(), ensure_ascii=False, indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp_name, path)
        tmp_name = None
    except (OSError, TypeError, ValueError) as exc:
        LOGGER.error("face_cache_save_error", extra={"path": str(path), "error": str(exc)})
        return False
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass

    LOGGER.info("face_cache_saved", extra={"path": str(path), "file_count": len(document.files)})
    return True


def delete_face_cache(root: Path, filename: str = DEFAULT_CACHE_FILENAME) -> bool:
    """Remove the cache file for ``root``; returns ``True`` when a file was deleted."""

    path = cache_path(root, filename)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    LOGGER.info("face_cache_deleted", extra={"path": str(path)})
    return True


__all__ = [
    "CACHE_FORMAT_VERSION",
    "DEFAULT_CACHE_FILENAME",
    "CacheDocument",
    "DetectionRecord",
    "FaceBox",
    "FileCacheEntry",
    "cache_path",
    "delete_face_cache",
    "load_face_cache",
    "normalize_cache_key",
    "save_face_cache",
]
