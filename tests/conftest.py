"""Shared fixtures: a fake face detector and scanner settings without thumbnails."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path

import numpy as np
import pytest

from facescan.config import Settings
from facescan.detection import BoundingBox, Detection


class FakeDetector:
    """Detector returning canned embeddings keyed by file name."""

    def __init__(
        self,
        embeddings: dict[str, Sequence[Sequence[float]]] | None = None,
        *,
        failing: set[str] | None = None,
        delays: dict[str, float] | None = None,
        on_detect: Callable[[Path], None] | None = None,
    ) -> None:
        self.embeddings = dict(embeddings or {})
        self.failing = set(failing or ())
        self.delays = dict(delays or {})
        self.on_detect = on_detect
        self.calls: list[str] = []
        self.init_calls = 0
        self.close_calls = 0
        self.max_in_flight = 0
        self._in_flight = 0
        self._lock = threading.Lock()

    def init(self) -> None:
        self.init_calls += 1

    def close(self) -> None:
        self.close_calls += 1

    def detect(self, path: Path) -> list[Detection]:
        with self._lock:
            self.calls.append(path.name)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            delay = self.delays.get(path.name)
            if delay:
                time.sleep(delay)
            if self.on_detect is not None:
                self.on_detect(path)
            if path.name in self.failing:
                raise OSError(f"cannot decode {path.name}")
            return [
                Detection(
                    box=BoundingBox(x=10.0 * index, y=5.0, width=20.0, height=20.0),
                    embedding=np.asarray(vector, dtype=np.float32),
                    score=0.99,
                )
                for index, vector in enumerate(self.embeddings.get(path.name, []))
            ]
        finally:
            with self._lock:
                self._in_flight -= 1


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    config = Settings()
    config.thumbnails.enabled = False
    config.thumbnails.cache_dir = str(tmp_path / "thumbs")
    config.clustering.similarity_threshold = 1.0
    return config


@pytest.fixture
def photo_root(tmp_path: Path) -> Path:
    root = tmp_path / "photos"
    root.mkdir()
    return root


def write_media(root: Path, *names: str) -> list[Path]:
    """Create placeholder media files; the fake detector never reads them."""

    paths = []
    for name in names:
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"not-really-an-image")
        paths.append(path)
    return paths
