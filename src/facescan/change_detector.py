"""Split enumerated media files against the face cache by modification time."""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from facescan.face_cache import CacheDocument, FileCacheEntry, normalize_cache_key


@dataclass
class CacheDiff:
    """Result of comparing the current file set with a cache document."""

    unchanged: list[tuple[Path, FileCacheEntry]] = field(default_factory=list)
    to_process: list[Path] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


def file_mtime_ms(path: Path) -> int:
    """Return the modification time of ``path`` in whole milliseconds, or 0 if it cannot be read."""

    try:
        return os.stat(path).st_mtime_ns // 1_000_000
    except OSError:
        return 0


def categorize_files(files: Iterable[Path], document: CacheDocument | None) -> CacheDiff:
    """Classify ``files`` as unchanged, to-process, or removed relative to ``document``.

    A file is unchanged only when its cached ``mtime`` equals the current one
    exactly. Older and newer timestamps both force a rescan.
    """

    cached_files = document.files if document is not None else {}
    remaining = set(cached_files)
    diff = CacheDiff()

    for path in files:
        key = normalize_cache_key(path)
        entry = cached_files.get(key)
        if entry is None:
            diff.to_process.append(path)
            continue

        remaining.discard(key)
        if file_mtime_ms(path) == entry.mtime:
            diff.unchanged.append((path, entry))
        else:
            diff.to_process.append(path)

    diff.removed = sorted(remaining)
    return diff


__all__ = ["CacheDiff", "categorize_files", "file_mtime_ms"]
