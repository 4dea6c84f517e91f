"""Media and face-crop thumbnails cached on disk by source path and version."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

from PIL import Image
from PIL.Image import Resampling

from facescan.config import ThumbnailConfig
from facescan.media import load_rgb_image
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "thumbnailing"})


def build_thumbnail_image(image: Image.Image, max_side: int) -> Image.Image:
    """Produce a resized copy of an image constrained to ``max_side`` pixels."""

    safe_side = max(1, int(max_side))
    resized = image.copy()
    resized.thumbnail((safe_side, safe_side), resample=Resampling.LANCZOS)
    return resized


def padded_crop_box(
    box: tuple[float, float, float, float],
    image_size: tuple[int, int],
    padding: float,
) -> tuple[int, int, int, int] | None:
    """Expand an ``(x, y, width, height)`` box by ``padding`` of its size and clip it to the image.

    Returns a Pillow ``(left, upper, right, lower)`` tuple, or ``None`` when the
    clipped box is empty.
    """

    x, y, width, height = box
    img_width, img_height = image_size
    pad_x = width * padding
    pad_y = height * padding
    left = max(0, int(round(x - pad_x)))
    upper = max(0, int(round(y - pad_y)))
    right = min(img_width, int(round(x + width + pad_x)))
    lower = min(img_height, int(round(y + height + pad_y)))
    if right <= left or lower <= upper:
        return None
    return left, upper, right, lower


def _face_suffix(box: tuple[float, float, float, float]) -> str:
    x, y, width, height = (int(round(value)) for value in box)
    return f"_face_{x}_{y}_{width}_{height}"


class ThumbnailStore:
    """Write JPEG thumbnails keyed by the source path and its current version.

    A thumbnail name digests the path together with the file's mtime and size,
    and face crops carry their rounded box, so a rewritten file or a moved box
    gets fresh output while repeated scans of unchanged media reuse the files
    already on disk. All failures are logged and reported as ``None``.
    """

    def __init__(self, config: ThumbnailConfig | None = None) -> None:
        self._config = config or ThumbnailConfig()
        self._root = self._config.resolved_cache_dir()

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def root(self) -> Path:
        return self._root

    def _target(self, source: Path, suffix: str) -> Path:
        key = str(source)
        try:
            stat = os.stat(source)
        except OSError:
            pass
        else:
            key = f"{key}|{stat.st_mtime_ns}|{stat.st_size}"
        digest = hashlib.md5(key.encode("utf-8")).hexdigest()
        return self._root / f"{digest}{suffix}.jpg"

    def _save(self, image: Image.Image, target: Path, max_side: int) -> str | None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            build_thumbnail_image(image, max_side).save(target, format="JPEG", quality=self._config.quality)
        except (OSError, ValueError) as exc:
            LOGGER.error("thumbnail_save_error", extra={"path": str(target), "error": str(exc)})
            return None
        return str(target)

    def _load(self, source: Path) -> Image.Image | None:
        try:
            return load_rgb_image(source)
        except (OSError, ValueError) as exc:
            LOGGER.warning("thumbnail_source_error", extra={"path": str(source), "error": str(exc)})
            return None

    def media_thumbnail(self, source: Path, image: Image.Image | None = None) -> str | None:
        """Return a thumbnail for the whole image (or video poster frame)."""

        if not self.enabled:
            return None
        target = self._target(source, "")
        if target.exists():
            return str(target)

        if image is None:
            image = self._load(source)
            if image is None:
                return None
        return self._save(image, target, self._config.size)

    def face_thumbnail(
        self,
        source: Path,
        box: tuple[float, float, float, float],
        image: Image.Image | None = None,
    ) -> str | None:
        """Return a padded crop around the ``(x, y, width, height)`` face ``box`` of ``source``."""

        if not self.enabled:
            return None
        target = self._target(source, _face_suffix(box))
        if target.exists():
            return str(target)

        if image is None:
            image = self._load(source)
            if image is None:
                return None

        crop_box = padded_crop_box(box, image.size, self._config.face_padding)
        if crop_box is None:
            return None
        return self._save(image.crop(crop_box), target, self._config.face_size)


__all__ = ["ThumbnailStore", "build_thumbnail_image", "padded_crop_box"]
