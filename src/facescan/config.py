"""Configuration loader and typed settings for the face scanner."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class DetectorConfig:
    """Configuration for the face detection + embedding backend."""

    backend: str = "insightface"
    model_name: str = "buffalo_l"
    device: str = "auto"
    det_size: int = 640
    min_score: float = 0.5
    min_face_size: int = 20
    timeout_seconds: float = 120.0

    def resolved_timeout(self) -> float | None:
        """Return the per-file detection deadline, or ``None`` when disabled."""

        if self.timeout_seconds is None or self.timeout_seconds <= 0:
            return None
        return float(self.timeout_seconds)


@dataclass
class CacheConfig:
    """Location and checkpoint cadence of the per-directory face cache."""

    filename: str = ".facescan-faces.json"
    checkpoint_interval: int = 5


@dataclass
class ClusteringConfig:
    """Online clustering thresholds and result caps.

    ``similarity_threshold`` is a Euclidean distance between embeddings; the
    default suits L2-normalized ArcFace embeddings as produced by InsightFace.
    """

    similarity_threshold: float = 1.0
    max_samples_per_file: int = 96
    max_results_per_cluster: int = 96


@dataclass
class RunnerConfig:
    """Worker pool sizing for detection tasks."""

    default_concurrency: int | None = None
    min_concurrency: int = 5
    max_concurrency: int = 20
    memory_per_task_gb: float = 0.5


@dataclass
class ThumbnailConfig:
    """Thumbnail generation for media files and cropped faces."""

    enabled: bool = True
    cache_dir: str | None = None
    size: int = 220
    face_size: int = 150
    face_padding: float = 0.3
    quality: int = 85

    def resolved_cache_dir(self) -> Path:
        """Return the directory thumbnails are written to."""

        if self.cache_dir:
            return Path(self.cache_dir).expanduser().resolve()

        return Path(tempfile.gettempdir()) / "facescan-faces"


@dataclass
class Settings:
    """Top-level application settings."""

    detector: DetectorConfig = field(default_factory=DetectorConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    thumbnails: ThumbnailConfig = field(default_factory=ThumbnailConfig)


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover
        return module_path.parent


def _build_default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    cwd_candidate = (Path.cwd() / "config" / "settings.yaml").resolve()
    repo_candidate = (_project_root() / "config" / "settings.yaml").resolve()

    candidates: list[Path] = []
    for candidate in (cwd_candidate, repo_candidate):
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("FACESCAN_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    candidates = _build_default_settings_paths()
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    If the file is missing or malformed it returns a :class:`Settings` instance
    populated with default values; fields with the wrong type are ignored one
    by one.
    """

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    try:
        with path.open("r", encoding="utf-8") as fp:
            raw = yaml.safe_load(fp) or {}
    except yaml.YAMLError:
        return settings

    if not isinstance(raw, dict):
        return settings

    detector_raw = _as_dict(raw.get("detector"))
    detector_cfg = settings.detector
    if isinstance(detector_raw.get("backend"), str):
        detector_cfg.backend = detector_raw["backend"]
    if isinstance(detector_raw.get("model_name"), str):
        detector_cfg.model_name = detector_raw["model_name"]
    if isinstance(detector_raw.get("device"), str):
        detector_cfg.device = detector_raw["device"]
    if _is_int(detector_raw.get("det_size")):
        detector_cfg.det_size = detector_raw["det_size"]
    if _is_number(detector_raw.get("min_score")):
        detector_cfg.min_score = float(detector_raw["min_score"])
    if _is_int(detector_raw.get("min_face_size")):
        detector_cfg.min_face_size = detector_raw["min_face_size"]
    if _is_number(detector_raw.get("timeout_seconds")):
        detector_cfg.timeout_seconds = float(detector_raw["timeout_seconds"])

    cache_raw = _as_dict(raw.get("cache"))
    cache_cfg = settings.cache
    if isinstance(cache_raw.get("filename"), str) and cache_raw["filename"].strip():
        cache_cfg.filename = cache_raw["filename"].strip()
    if _is_int(cache_raw.get("checkpoint_interval")) and cache_raw["checkpoint_interval"] > 0:
        cache_cfg.checkpoint_interval = cache_raw["checkpoint_interval"]

    clustering_raw = _as_dict(raw.get("clustering"))
    clustering_cfg = settings.clustering
    if _is_number(clustering_raw.get("similarity_threshold")):
        clustering_cfg.similarity_threshold = float(clustering_raw["similarity_threshold"])
    if _is_int(clustering_raw.get("max_samples_per_file")) and clustering_raw["max_samples_per_file"] > 0:
        clustering_cfg.max_samples_per_file = clustering_raw["max_samples_per_file"]
    if _is_int(clustering_raw.get("max_results_per_cluster")) and clustering_raw["max_results_per_cluster"] > 0:
        clustering_cfg.max_results_per_cluster = clustering_raw["max_results_per_cluster"]

    runner_raw = _as_dict(raw.get("runner"))
    runner_cfg = settings.runner
    if _is_int(runner_raw.get("default_concurrency")) and runner_raw["default_concurrency"] > 0:
        runner_cfg.default_concurrency = runner_raw["default_concurrency"]
    if _is_int(runner_raw.get("min_concurrency")) and runner_raw["min_concurrency"] > 0:
        runner_cfg.min_concurrency = runner_raw["min_concurrency"]
    if _is_int(runner_raw.get("max_concurrency")) and runner_raw["max_concurrency"] > 0:
        runner_cfg.max_concurrency = runner_raw["max_concurrency"]
    if _is_number(runner_raw.get("memory_per_task_gb")) and runner_raw["memory_per_task_gb"] > 0:
        runner_cfg.memory_per_task_gb = float(runner_raw["memory_per_task_gb"])

    thumbnails_raw = _as_dict(raw.get("thumbnails"))
    thumbnails_cfg = settings.thumbnails
    if isinstance(thumbnails_raw.get("enabled"), bool):
        thumbnails_cfg.enabled = thumbnails_raw["enabled"]
    if isinstance(thumbnails_raw.get("cache_dir"), str):
        thumbnails_cfg.cache_dir = thumbnails_raw["cache_dir"]
    if _is_int(thumbnails_raw.get("size")):
        thumbnails_cfg.size = thumbnails_raw["size"]
    if _is_int(thumbnails_raw.get("face_size")):
        thumbnails_cfg.face_size = thumbnails_raw["face_size"]
    if _is_number(thumbnails_raw.get("face_padding")):
        thumbnails_cfg.face_padding = float(thumbnails_raw["face_padding"])
    if _is_int(thumbnails_raw.get("quality")):
        thumbnails_cfg.quality = thumbnails_raw["quality"]

    return settings


__all__ = [
    "CacheConfig",
    "ClusteringConfig",
    "DetectorConfig",
    "RunnerConfig",
    "Settings",
    "ThumbnailConfig",
    "load_settings",
]
