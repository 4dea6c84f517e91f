"""Progress events emitted while a scan runs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "progress"})


class ScanPhase(str, Enum):
    INIT = "init"
    ENUMERATE = "enumerate"
    CACHE_CHECK = "cache-check"
    SCANNING = "scanning"
    CHECKPOINT = "checkpoint"
    DONE = "done"
    ERROR = "error"


@dataclass
class ActiveFile:
    filename: str
    path: str
    start_time: float

    def to_dict(self) -> dict[str, Any]:
        return {"filename": self.filename, "path": self.path, "startTime": self.start_time}


@dataclass
class ProgressEvent:
    """Snapshot of scan progress.

    ``current``/``total`` count files handled out of files enumerated, so cached
    files are included in ``current`` from the start of the scanning phase.
    """

    phase: ScanPhase
    message: str = ""
    current: int = 0
    total: int = 0
    faces_found: int = 0
    cached: int = 0
    scanned: int = 0
    to_scan: int = 0
    active_files: list[ActiveFile] = field(default_factory=list)
    faces: list[dict[str, Any]] | None = None
    cancelled: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "phase": self.phase.value,
            "message": self.message,
            "current": self.current,
            "total": self.total,
            "facesFound": self.faces_found,
            "cached": self.cached,
            "scanned": self.scanned,
            "toScan": self.to_scan,
            "activeFiles": [item.to_dict() for item in self.active_files],
            "activeCount": len(self.active_files),
        }
        if self.faces is not None:
            payload["faces"] = self.faces
        if self.cancelled:
            payload["cancelled"] = True
        if self.error is not None:
            payload["error"] = self.error
        return payload


ProgressSink = Callable[[ProgressEvent], Any]


class ProgressReporter:
    """Deliver events to an optional sink without ever failing the scan."""

    def __init__(self, sink: ProgressSink | None = None) -> None:
        self._sink = sink

    @property
    def enabled(self) -> bool:
        return self._sink is not None

    def report(self, event: ProgressEvent) -> None:
        if self._sink is None:
            return
        try:
            self._sink(event)
        except Exception as exc:
            LOGGER.warning(
                "progress_sink_error",
                extra={"phase": event.phase.value, "error": str(exc), "error_type": type(exc).__name__},
            )


__all__ = ["ActiveFile", "ProgressEvent", "ProgressReporter", "ProgressSink", "ScanPhase"]
