"""Exact-duplicate detection for images by size and content hash."""

from __future__ import annotations

import os
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

import xxhash

from facescan.errors import SourcePathError
from facescan.scanner import clean_path, is_image, iter_media_files
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "duplicates"})

CONTENT_HASH_ALGO: Final[str] = "xxhash64-v1"


def compute_content_hash(path: Path, chunk_size: int = 1 << 20) -> str:
    """Return the 16-character hex ``xxh64`` digest of the file's bytes."""

    hasher = xxhash.xxh64()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            hasher.update(chunk)
    return f"{hasher.intdigest():016x}"


@dataclass
class DuplicateGroup:
    size: int
    content_hash: str
    paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"size": self.size, "hash": self.content_hash, "paths": list(self.paths)}


def find_duplicates(root: str | Path) -> list[DuplicateGroup]:
    """Group images under ``root`` whose size and content hash both match.

    Files that cannot be read are skipped. Only groups with two or more
    members are returned, largest files first.
    """

    root_path = clean_path(root)
    if root_path is None or not root_path.is_dir():
        raise SourcePathError(f"Source path not found: {root}", path=str(root_path) if root_path else None)

    by_key: dict[tuple[int, str], list[str]] = defaultdict(list)
    for path in iter_media_files(root_path):
        if not is_image(path):
            continue
        try:
            size = os.stat(path).st_size
            digest = compute_content_hash(path)
        except OSError as exc:
            LOGGER.warning("duplicate_hash_skipped", extra={"path": str(path), "error": str(exc)})
            continue
        by_key[(size, digest)].append(str(path))

    groups = [
        DuplicateGroup(size=size, content_hash=digest, paths=sorted(paths))
        for (size, digest), paths in by_key.items()
        if len(paths) > 1
    ]
    groups.sort(key=lambda group: (-group.size, group.paths[0]))
    LOGGER.info("duplicates_found", extra={"root": str(root_path), "groups": len(groups)})
    return groups


__all__ = ["CONTENT_HASH_ALGO", "DuplicateGroup", "compute_content_hash", "find_duplicates"]
