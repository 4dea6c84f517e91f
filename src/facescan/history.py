"""Read-only views over a directory's face cache."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any

from facescan.config import Settings
from facescan.errors import SourcePathError
from facescan.face_cache import DEFAULT_CACHE_FILENAME, FileCacheEntry, load_face_cache
from facescan.scanner import clean_path


@dataclass
class HistoryFile:
    path: str
    filename: str
    mtime: int
    scanned_at: str | None
    processing_time_ms: int | None
    faces_count: int
    file_size: int | None
    extension: str
    file_type: str
    thumbnail: str
    face_thumbnail: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "filename": self.filename,
            "mtime": self.mtime,
            "scannedAt": self.scanned_at,
            "processingTime": self.processing_time_ms,
            "facesCount": self.faces_count,
            "fileSize": self.file_size,
            "extension": self.extension,
            "fileType": self.file_type,
            "thumbnail": self.thumbnail,
            "faceThumb": self.face_thumbnail,
        }


@dataclass
class ScanHistory:
    files: list[HistoryFile] = field(default_factory=list)
    last_scan: str | None = None
    stats: dict[str, Any] = field(default_factory=dict)

    @property
    def total_files(self) -> int:
        return len(self.files)

    def to_dict(self) -> dict[str, Any]:
        return {
            "files": [item.to_dict() for item in self.files],
            "lastScan": self.last_scan,
            "totalFiles": self.total_files,
            "stats": dict(self.stats),
        }


def _history_file(key: str, entry: FileCacheEntry) -> HistoryFile:
    first = entry.faces[0] if entry.faces else None
    return HistoryFile(
        path=key,
        filename=PurePosixPath(key).name,
        mtime=entry.mtime,
        scanned_at=entry.scanned_at,
        processing_time_ms=entry.processing_time_ms,
        faces_count=entry.faces_count,
        file_size=entry.file_size,
        extension=entry.extension or PurePosixPath(key).suffix.lower(),
        file_type=entry.file_type or "unknown",
        thumbnail=(first.thumbnail if first and first.thumbnail else key),
        face_thumbnail=first.face_thumbnail if first else None,
    )


def _scanned_at_sort_key(item: HistoryFile) -> tuple[int, float]:
    # Entries without a parseable timestamp go last.
    if not item.scanned_at:
        return (1, 0.0)
    try:
        stamp = datetime.fromisoformat(item.scanned_at.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return (1, 0.0)
    return (0, -stamp)


def summarize(files: list[HistoryFile]) -> dict[str, Any]:
    total_processing = sum(item.processing_time_ms or 0 for item in files)
    return {
        "total_processing_time_ms": total_processing,
        "avg_processing_time_ms": round(total_processing / len(files)) if files else 0,
        "total_faces": sum(item.faces_count for item in files),
        "files_with_faces": sum(1 for item in files if item.faces_count > 0),
        "total_size": sum(item.file_size or 0 for item in files),
        "images_count": sum(1 for item in files if item.file_type == "image"),
        "videos_count": sum(1 for item in files if item.file_type == "video"),
        "extension_counts": dict(Counter(item.extension or "unknown" for item in files)),
    }


def get_scan_history(root: str | Path, settings: Settings | None = None) -> ScanHistory:
    """List cached files for ``root``, newest scan first, with aggregate stats.

    A root without a cache yields an empty history.
    """

    root_path = clean_path(root)
    if root_path is None:
        raise SourcePathError("Source path is required")
    if not root_path.exists():
        raise SourcePathError(f"Source path not found: {root_path}", path=str(root_path))

    filename = settings.cache.filename if settings is not None else DEFAULT_CACHE_FILENAME
    document = load_face_cache(root_path, filename)
    if document is None:
        return ScanHistory(stats=summarize([]))

    files = [_history_file(key, entry) for key, entry in document.files.items()]
    files.sort(key=_scanned_at_sort_key)
    return ScanHistory(files=files, last_scan=document.last_scan, stats=summarize(files))


__all__ = ["HistoryFile", "ScanHistory", "get_scan_history", "summarize"]
