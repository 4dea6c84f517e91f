"""Decode images and video poster frames into arrays for detection and thumbnails."""

from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image, ImageOps

from facescan.scanner import is_image, is_video
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "media"})

VIDEO_FRAME_OFFSET_MS = 1000.0


def read_video_frame(path: Path, offset_ms: float = VIDEO_FRAME_OFFSET_MS) -> np.ndarray | None:
    """Grab one BGR frame from ``path`` around ``offset_ms``; ``None`` if the video cannot be read."""

    import cv2

    capture = cv2.VideoCapture(str(path))
    try:
        if not capture.isOpened():
            return None
        capture.set(cv2.CAP_PROP_POS_MSEC, offset_ms)
        ok, frame = capture.read()
        if not ok or frame is None:
            # Clips shorter than the offset: fall back to the first frame.
            capture.set(cv2.CAP_PROP_POS_MSEC, 0.0)
            ok, frame = capture.read()
        return frame if ok else None
    finally:
        capture.release()


def load_rgb_image(path: Path) -> Image.Image | None:
    """Return an EXIF-oriented RGB Pillow image for an image or video file."""

    if is_image(path):
        with Image.open(path) as image:
            return ImageOps.exif_transpose(image).convert("RGB")

    if is_video(path):
        frame = read_video_frame(path)
        if frame is None:
            LOGGER.warning("video_frame_unavailable", extra={"path": str(path)})
            return None
        return Image.fromarray(np.ascontiguousarray(frame[:, :, ::-1]))

    return None


def load_bgr_array(path: Path) -> np.ndarray | None:
    """Return a BGR ``uint8`` array suitable for OpenCV-based detectors."""

    if is_video(path):
        return read_video_frame(path)

    image = load_rgb_image(path)
    if image is None:
        return None
    return np.ascontiguousarray(np.asarray(image)[:, :, ::-1])


__all__ = ["load_bgr_array", "load_rgb_image", "read_video_frame"]
