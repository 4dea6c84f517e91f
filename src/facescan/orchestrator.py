"""Incremental scan-and-cluster driver.

``FaceScanner.scan`` walks a directory, reuses cached detections for files
whose modification time has not changed, runs the detector on everything
else through a :class:`BoundedTaskRunner`, and folds every face into the
online clusters. Worker threads only compute; the calling thread is the only
one that touches the clusters or the cache document.
"""

from __future__ import annotations

import os
import queue
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List

import numpy as np

from facescan.change_detector import CacheDiff, categorize_files, file_mtime_ms
from facescan.clustering import Cluster, FaceGroup, FaceSample, assign_to_cluster, clusters_to_faces
from facescan.config import Settings, load_settings
from facescan.detection import Detection, FaceDetector, build_detector, detect_with_deadline
from facescan.errors import FaceScanError, SourcePathError
from facescan.face_cache import (
    CacheDocument,
    DetectionRecord,
    FaceBox,
    FileCacheEntry,
    load_face_cache,
    normalize_cache_key,
    save_face_cache,
)
from facescan.media import load_rgb_image
from facescan.progress import ActiveFile, ProgressEvent, ProgressReporter, ProgressSink, ScanPhase
from facescan.resources import recommend_concurrency
from facescan.scanner import clean_path, collect_media, is_video
from facescan.task_runner import SKIPPED, BoundedTaskRunner, CancellationToken
from facescan.thumbnailing import ThumbnailStore
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "orchestrator"})

_POLL_INTERVAL_SECONDS = 0.1


@dataclass
class CacheStats:
    unchanged: int = 0
    processed: int = 0
    removed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"unchanged": self.unchanged, "processed": self.processed, "removed": self.removed}


@dataclass
class ScanSummary:
    """Final result of one scan."""

    faces: list[FaceGroup] = field(default_factory=list)
    total_files: int = 0
    group_count: int = 0
    cancelled: bool = False
    cache_stats: CacheStats = field(default_factory=CacheStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "faces": [group.to_dict() for group in self.faces],
            "totalFiles": self.total_files,
            "groupCount": self.group_count,
            "cancelled": self.cancelled,
            "cacheStats": self.cache_stats.to_dict(),
        }


@dataclass
class _Started:
    path: Path
    started_at: float
    mtime: int
    file_size: int | None


@dataclass
class _Finished:
    path: Path
    result: Any
    finished_at: float


class FaceScanner:
    """Run incremental face scans with an injected detector."""

    def __init__(
        self,
        detector: FaceDetector,
        settings: Settings | None = None,
        *,
        thumbnails: ThumbnailStore | None = None,
    ) -> None:
        self._detector = detector
        self._settings = settings or Settings()
        self._thumbnails = thumbnails if thumbnails is not None else ThumbnailStore(self._settings.thumbnails)

    @property
    def settings(self) -> Settings:
        return self._settings

    def scan(
        self,
        root: str | Path,
        concurrency_limit: int | None = None,
        progress_sink: ProgressSink | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ScanSummary:
        """Scan ``root`` and return the clustered faces.

        Raises:
            SourcePathError: ``root`` is missing, not a directory, or unreadable.
            FaceScanError: the detector could not be initialised.
        """

        reporter = ProgressReporter(progress_sink)

        def _cancelled() -> bool:
            return cancel_token is not None and bool(cancel_token.is_set())

        reporter.report(ProgressEvent(phase=ScanPhase.INIT, message="Initializing face detection"))
        root_path = self._validate_root(root, reporter)

        try:
            self._detector.init()
        except Exception as exc:
            LOGGER.error("detector_init_error", extra={"error": str(exc), "error_type": type(exc).__name__})
            reporter.report(ProgressEvent(phase=ScanPhase.ERROR, message="Face detector failed to start", error=str(exc)))
            raise FaceScanError(f"Face detector failed to initialise: {exc}") from exc

        reporter.report(ProgressEvent(phase=ScanPhase.ENUMERATE, message="Collecting media files"))
        files = collect_media(root_path)
        LOGGER.info("scan_files_collected", extra={"root": str(root_path), "file_count": len(files)})

        if not files:
            removed = self._evict_all(root_path)
            reporter.report(ProgressEvent(phase=ScanPhase.DONE, message="No media files found", faces=[]))
            return ScanSummary(cache_stats=CacheStats(removed=removed))

        if _cancelled():
            LOGGER.info("scan_cancelled_before_cache_check", extra={"root": str(root_path)})
            reporter.report(ProgressEvent(phase=ScanPhase.DONE, message="Scan cancelled", cancelled=True))
            return ScanSummary(cancelled=True)

        reporter.report(ProgressEvent(phase=ScanPhase.CACHE_CHECK, message="Checking cache"))
        cache_filename = self._settings.cache.filename
        document = load_face_cache(root_path, cache_filename) or CacheDocument()
        diff = categorize_files(files, document)
        for key in diff.removed:
            document.files.pop(key, None)

        LOGGER.info(
            "scan_cache_diff",
            extra={
                "root": str(root_path),
                "unchanged": len(diff.unchanged),
                "to_process": len(diff.to_process),
                "removed": len(diff.removed),
            },
        )

        clusters: list[Cluster] = []
        self._seed_from_cache(clusters, diff)

        run = _ScanRun(
            scanner=self,
            root=root_path,
            document=document,
            diff=diff,
            clusters=clusters,
            reporter=reporter,
            total_files=len(files),
        )
        run.report_scanning(
            f"{len(diff.unchanged)} files cached, scanning {len(diff.to_process)} new or changed"
            if diff.unchanged
            else "Starting scan"
        )

        if diff.to_process:
            limit = concurrency_limit if concurrency_limit is not None else recommend_concurrency(self._settings.runner)
            run.process(limit, cancel_token)

        cancelled = _cancelled()
        saved = save_face_cache(root_path, document, cache_filename)
        faces = clusters_to_faces(clusters, self._settings.clustering.max_results_per_cluster)
        summary = ScanSummary(
            faces=faces,
            total_files=len(files),
            group_count=len(faces),
            cancelled=cancelled,
            cache_stats=CacheStats(
                unchanged=len(diff.unchanged),
                processed=run.processed,
                removed=len(diff.removed),
            ),
        )

        LOGGER.info(
            "scan_complete",
            extra={
                "root": str(root_path),
                "cancelled": cancelled,
                "groups": summary.group_count,
                "processed": run.processed,
                "cache_saved": saved,
            },
        )
        reporter.report(
            ProgressEvent(
                phase=ScanPhase.DONE,
                message="Scan cancelled" if cancelled else "Scan complete",
                current=len(diff.unchanged) + run.processed,
                total=len(files),
                faces_found=len(clusters),
                cached=len(diff.unchanged),
                scanned=run.processed,
                to_scan=len(diff.to_process),
                faces=[group.to_dict() for group in faces],
                cancelled=cancelled,
            )
        )
        return summary

    def _validate_root(self, root: str | Path, reporter: ProgressReporter) -> Path:
        root_path = clean_path(root)
        problem: str | None = None
        if root_path is None:
            problem = "Source path is required"
        elif not root_path.exists():
            problem = f"Source path not found: {root_path}"
        elif not root_path.is_dir():
            problem = f"Source path is not a directory: {root_path}"
        elif not os.access(root_path, os.R_OK | os.X_OK):
            problem = f"Source path is not readable: {root_path}"

        if problem is not None:
            LOGGER.error("scan_root_invalid", extra={"root": str(root), "error": problem})
            reporter.report(ProgressEvent(phase=ScanPhase.ERROR, message=problem, error=problem))
            raise SourcePathError(problem, path=str(root_path) if root_path is not None else None)
        return root_path

    def _seed_from_cache(self, clusters: list[Cluster], diff: CacheDiff) -> None:
        cap = self._settings.clustering.max_samples_per_file
        threshold = self._settings.clustering.similarity_threshold
        for path, entry in diff.unchanged:
            for record in entry.faces[:cap]:
                assign_to_cluster(clusters, _sample_from_record(str(path), record), threshold=threshold)

    def _evict_all(self, root_path: Path) -> int:
        """Drop every cached entry of a directory that no longer holds media."""

        cache_filename = self._settings.cache.filename
        document = load_face_cache(root_path, cache_filename)
        if document is None or not document.files:
            return 0
        removed = len(document.files)
        document.files.clear()
        saved = save_face_cache(root_path, document, cache_filename)
        LOGGER.info(
            "scan_cache_emptied",
            extra={"root": str(root_path), "removed": removed, "cache_saved": saved},
        )
        return removed

    def detect_file(self, path: Path) -> List[DetectionRecord]:
        """Detect faces in one file and render their thumbnails; runs on a worker thread."""

        timeout = self._settings.detector.resolved_timeout()
        detections = detect_with_deadline(self._detector, path, timeout)
        detections = detections[: self._settings.clustering.max_samples_per_file]
        if not detections:
            return []
        return self._to_records(path, detections)

    def _to_records(self, path: Path, detections: List[Detection]) -> List[DetectionRecord]:
        image = None
        media_thumb: str | None = None
        if self._thumbnails.enabled:
            try:
                image = load_rgb_image(path)
            except (OSError, ValueError) as exc:
                LOGGER.warning("thumbnail_source_error", extra={"path": str(path), "error": str(exc)})
            if image is not None:
                media_thumb = self._thumbnails.media_thumbnail(path, image)

        records: List[DetectionRecord] = []
        for detection in detections:
            box = None
            face_thumb = None
            if detection.box is not None:
                box = FaceBox(
                    x=detection.box.x,
                    y=detection.box.y,
                    width=detection.box.width,
                    height=detection.box.height,
                )
                if image is not None:
                    face_thumb = self._thumbnails.face_thumbnail(path, (box.x, box.y, box.width, box.height), image)
            records.append(
                DetectionRecord(
                    embedding=np.asarray(detection.embedding, dtype=np.float32).tolist(),
                    box=box,
                    thumbnail=media_thumb,
                    face_thumbnail=face_thumb,
                )
            )
        return records


class _ScanRun:
    """Mutable state of the scanning phase, owned by the calling thread."""

    def __init__(
        self,
        *,
        scanner: FaceScanner,
        root: Path,
        document: CacheDocument,
        diff: CacheDiff,
        clusters: list[Cluster],
        reporter: ProgressReporter,
        total_files: int,
    ) -> None:
        self.scanner = scanner
        self.root = root
        self.document = document
        self.diff = diff
        self.clusters = clusters
        self.reporter = reporter
        self.total_files = total_files
        self.processed = 0
        self.skipped = 0
        self.active: dict[str, tuple[ActiveFile, _Started]] = {}
        self._last_checkpoint = 0
        self._events: queue.Queue[_Started | _Finished] = queue.Queue()

    def _faces_payload(self) -> list[dict[str, Any]] | None:
        if not self.reporter.enabled:
            return None
        limit = self.scanner.settings.clustering.max_results_per_cluster
        return [group.to_dict() for group in clusters_to_faces(self.clusters, limit)]

    def report_scanning(self, message: str) -> None:
        if not self.reporter.enabled:
            return
        self.reporter.report(
            ProgressEvent(
                phase=ScanPhase.SCANNING,
                message=message,
                current=len(self.diff.unchanged) + self.processed,
                total=self.total_files,
                faces_found=len(self.clusters),
                cached=len(self.diff.unchanged),
                scanned=self.processed,
                to_scan=len(self.diff.to_process),
                active_files=[item for item, _ in self.active.values()],
                faces=self._faces_payload(),
            )
        )

    def _task(self, path: Path) -> List[DetectionRecord]:
        try:
            stat = os.stat(path)
            mtime, size = stat.st_mtime_ns // 1_000_000, stat.st_size
        except OSError:
            mtime, size = 0, None
        self._events.put(_Started(path=path, started_at=time.time(), mtime=mtime, file_size=size))
        return self.scanner.detect_file(path)

    def process(self, concurrency_limit: int, cancel_token: CancellationToken | None) -> None:
        pending = len(self.diff.to_process)
        LOGGER.info("scan_processing_start", extra={"files": pending, "concurrency": concurrency_limit})

        with BoundedTaskRunner(concurrency_limit, cancel_token, fallback=list) as runner:
            for path in self.diff.to_process:
                future = runner.submit(self._task, path, label=str(path))
                future.add_done_callback(
                    lambda done, file_path=path: self._events.put(
                        _Finished(path=file_path, result=done.result(), finished_at=time.time())
                    )
                )

            while pending:
                try:
                    message = self._events.get(timeout=_POLL_INTERVAL_SECONDS)
                except queue.Empty:
                    runner.poll_cancellation()
                    continue

                if isinstance(message, _Started):
                    self._on_started(message)
                    continue

                pending -= 1
                self._on_finished(message)

        if self.skipped:
            LOGGER.info("scan_tasks_skipped", extra={"skipped": self.skipped})

    def _on_started(self, message: _Started) -> None:
        key = normalize_cache_key(message.path)
        active = ActiveFile(filename=message.path.name, path=str(message.path), start_time=message.started_at)
        self.active[key] = (active, message)
        self.report_scanning(f"Scanning {self.processed}/{len(self.diff.to_process)} new files")

    def _on_finished(self, message: _Finished) -> None:
        key = normalize_cache_key(message.path)
        tracked = self.active.pop(key, None)
        if message.result is SKIPPED:
            self.skipped += 1
            return

        records: List[DetectionRecord] = list(message.result or [])
        started = tracked[1] if tracked is not None else None
        mtime = started.mtime if started is not None else file_mtime_ms(message.path)
        elapsed_ms = int(round((message.finished_at - started.started_at) * 1000)) if started is not None else None
        suffix = message.path.suffix.lower()

        self.document.files[key] = FileCacheEntry(
            mtime=mtime,
            faces=records,
            scanned_at=_utc_now_iso(),
            processing_time_ms=elapsed_ms,
            file_size=started.file_size if started is not None else None,
            extension=suffix or None,
            file_type="video" if is_video(message.path) else "image",
        )

        settings = self.scanner.settings
        for record in records:
            assign_to_cluster(
                self.clusters,
                _sample_from_record(str(message.path), record),
                threshold=settings.clustering.similarity_threshold,
            )

        self.processed += 1
        interval = max(1, settings.cache.checkpoint_interval)
        if self.processed - self._last_checkpoint >= interval:
            self._checkpoint()
        self.report_scanning(f"Scanning {self.processed}/{len(self.diff.to_process)} new files")

    def _checkpoint(self) -> None:
        saved = save_face_cache(self.root, self.document, self.scanner.settings.cache.filename)
        self._last_checkpoint = self.processed
        LOGGER.info(
            "scan_checkpoint_saved" if saved else "scan_checkpoint_skipped",
            extra={"processed": self.processed, "to_process": len(self.diff.to_process)},
        )
        self.reporter.report(
            ProgressEvent(
                phase=ScanPhase.CHECKPOINT,
                message="Cache checkpoint saved" if saved else "Cache checkpoint failed",
                current=len(self.diff.unchanged) + self.processed,
                total=self.total_files,
                faces_found=len(self.clusters),
                cached=len(self.diff.unchanged),
                scanned=self.processed,
                to_scan=len(self.diff.to_process),
            )
        )


def _sample_from_record(path: str, record: DetectionRecord) -> FaceSample:
    return FaceSample(
        embedding=np.asarray(record.embedding, dtype=np.float32),
        path=path,
        box=record.box.to_dict() if record.box else None,
        thumbnail=record.thumbnail,
        face_thumbnail=record.face_thumbnail,
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def scan_faces(
    root: str | Path,
    *,
    settings: Settings | None = None,
    detector: FaceDetector | None = None,
    concurrency_limit: int | None = None,
    progress_sink: ProgressSink | None = None,
    cancel_token: CancellationToken | None = None,
) -> ScanSummary:
    """One-shot helper: load settings, build the detector, scan, and release the detector."""

    resolved_settings = settings or load_settings()
    owned = detector is None
    active_detector = detector if detector is not None else build_detector(resolved_settings)
    try:
        return FaceScanner(active_detector, resolved_settings).scan(
            root,
            concurrency_limit=concurrency_limit,
            progress_sink=progress_sink,
            cancel_token=cancel_token,
        )
    finally:
        if owned:
            active_detector.close()


__all__ = ["CacheStats", "FaceScanner", "ScanSummary", "scan_faces"]
