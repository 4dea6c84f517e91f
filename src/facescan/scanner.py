"""Filesystem scanner for photo and video roots."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

from utils.logging import get_logger

LOGGER = get_logger(__name__)

IMAGE_EXTENSIONS: frozenset[str] = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"})
VIDEO_EXTENSIONS: frozenset[str] = frozenset({".mp4", ".mov", ".avi", ".mkv", ".webm", ".m4v"})


def is_image(path: str | Path) -> bool:
    return Path(path).suffix.lower() in IMAGE_EXTENSIONS


def is_video(path: str | Path) -> bool:
    return Path(path).suffix.lower() in VIDEO_EXTENSIONS


def is_media(path: str | Path) -> bool:
    return is_image(path) or is_video(path)


def clean_path(raw: str | Path | None) -> Path | None:
    """Strip whitespace and wrapping quotes from a user-supplied path and resolve it."""

    if raw is None:
        return None
    text = str(raw).strip()
    if len(text) >= 2 and text[0] == text[-1] == '"':
        text = text[1:-1]
    if not text:
        return None
    return Path(text).expanduser().resolve()


def iter_media_files(root: Path) -> Iterator[Path]:
    """Walk ``root`` depth-first and yield absolute paths of supported media files.

    Directories that cannot be listed (permissions, broken symlinks, races with
    deletion) are skipped. Symlinked directories are not followed so a link
    cycle cannot trap the walk.
    """

    stack: list[Path] = [root.resolve()]

    while stack:
        current = stack.pop()
        try:
            entries = list(os.scandir(current))
        except OSError as exc:
            LOGGER.warning("scan_dir_skipped", extra={"path": str(current), "error": str(exc)})
            continue

        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    stack.append(Path(entry.path))
                elif entry.is_file() and is_media(entry.name):
                    yield Path(entry.path)
            except OSError as exc:
                LOGGER.warning("scan_entry_skipped", extra={"path": entry.path, "error": str(exc)})


def collect_media(root: Path) -> list[Path]:
    """Return every supported media file under ``root``, sorted by path."""

    return sorted(iter_media_files(root))


__all__ = [
    "IMAGE_EXTENSIONS",
    "VIDEO_EXTENSIONS",
    "clean_path",
    "collect_media",
    "is_image",
    "is_media",
    "is_video",
    "iter_media_files",
]
