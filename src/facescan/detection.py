"""Face detection + embedding backends used by the scanner."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Protocol

import numpy as np

from facescan.config import DetectorConfig, Settings
from facescan.errors import DetectionTimeout
from facescan.media import load_bgr_array
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "detection"})


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned face box in source pixel coordinates."""

    x: float
    y: float
    width: float
    height: float


@dataclass
class Detection:
    """A detected face and its identity embedding."""

    box: BoundingBox | None
    embedding: np.ndarray
    score: float | None = None


class FaceDetector(Protocol):
    """Protocol for face detectors.

    ``detect`` returns an empty list when a file has no faces and may raise for
    I/O or model errors. Embeddings from one detector instance must be
    comparable with Euclidean distance.
    """

    def init(self) -> None:
        """Load models; called once before the first ``detect``."""

    def detect(self, path: Path) -> List[Detection]:
        """Detect faces in the image or video at ``path``."""

    def close(self) -> None:
        """Release model resources."""


def _providers_for_device(device: str) -> list[str]:
    normalized = (device or "auto").strip().lower()
    if normalized == "cpu":
        return ["CPUExecutionProvider"]

    try:
        import onnxruntime as ort
    except ImportError:
        return ["CPUExecutionProvider"]

    available = set(ort.get_available_providers())
    if normalized in {"auto", "cuda", "gpu"} and "CUDAExecutionProvider" in available:
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    if normalized == "cuda":
        LOGGER.warning("cuda_provider_unavailable", extra={"available": sorted(available)})
    return ["CPUExecutionProvider"]


class InsightFaceDetector:
    """InsightFace ``FaceAnalysis`` wrapper producing L2-normalized embeddings."""

    def __init__(self, config: DetectorConfig | None = None) -> None:
        self._config = config or DetectorConfig()
        self._app: Any | None = None
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._app is not None

    def init(self) -> None:
        with self._lock:
            if self._app is not None:
                return

            from insightface.app import FaceAnalysis

            providers = _providers_for_device(self._config.device)
            app = FaceAnalysis(name=self._config.model_name, providers=providers)
            ctx_id = 0 if "CUDAExecutionProvider" in providers else -1
            det_size = max(32, int(self._config.det_size))
            app.prepare(ctx_id=ctx_id, det_size=(det_size, det_size))
            self._app = app

            LOGGER.info(
                "face_detector_ready",
                extra={"model_name": self._config.model_name, "providers": providers, "det_size": det_size},
            )

    def detect(self, path: Path) -> List[Detection]:
        if self._app is None:
            raise RuntimeError("InsightFaceDetector.detect called before init()")

        image = load_bgr_array(path)
        if image is None:
            return []

        faces = self._app.get(image)
        results: List[Detection] = []
        for face in faces:
            score = float(getattr(face, "det_score", 1.0))
            if score < self._config.min_score:
                continue

            x1, y1, x2, y2 = (float(value) for value in face.bbox)
            width, height = x2 - x1, y2 - y1
            if min(width, height) < self._config.min_face_size:
                continue

            embedding = np.asarray(face.embedding, dtype=np.float32)
            norm = float(np.linalg.norm(embedding))
            if norm > 0:
                embedding = embedding / norm

            results.append(
                Detection(
                    box=BoundingBox(x=x1, y=y1, width=width, height=height),
                    embedding=embedding,
                    score=score,
                )
            )
        return results

    def close(self) -> None:
        with self._lock:
            self._app = None


def detect_with_deadline(detector: FaceDetector, path: Path, timeout: float | None) -> List[Detection]:
    """Call ``detector.detect(path)`` and give up after ``timeout`` seconds.

    The call runs on a daemon thread. When the deadline passes the caller gets
    :class:`DetectionTimeout` and its worker slot is released; the abandoned
    thread keeps running until the detector returns on its own.
    """

    if timeout is None:
        return detector.detect(path)

    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["result"] = detector.detect(path)
        except BaseException as exc:  # re-raised on the calling thread
            outcome["error"] = exc

    worker = threading.Thread(target=_target, name=f"facescan-detect-{path.name}", daemon=True)
    worker.start()
    worker.join(timeout)

    if worker.is_alive():
        raise DetectionTimeout(f"detection exceeded {timeout:.1f}s for {path}")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result", [])


def build_detector(settings: Settings) -> FaceDetector:
    """Instantiate the detector backend configured in ``settings``."""

    backend = settings.detector.backend.strip().lower()
    if backend == "insightface":
        return InsightFaceDetector(settings.detector)
    raise ValueError(f"Unsupported detector backend: {settings.detector.backend!r}")


__all__ = [
    "BoundingBox",
    "Detection",
    "FaceDetector",
    "InsightFaceDetector",
    "build_detector",
    "detect_with_deadline",
]
