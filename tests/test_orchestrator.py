"""End-to-end scans with a fake detector: caching, invalidation, cancellation."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest
from PIL import Image

from conftest import FakeDetector, write_media
from facescan.config import Settings
from facescan.errors import FaceScanError, SourcePathError
from facescan.face_cache import load_face_cache, normalize_cache_key
from facescan.orchestrator import FaceScanner, scan_faces
from facescan.progress import ProgressEvent, ScanPhase

ALICE = [0.0, 0.0]
ALICE_AGAIN = [0.3, 0.0]
BOB = [5.0, 0.0]


def _three_file_detector() -> FakeDetector:
    return FakeDetector({"a.jpg": [ALICE], "b.jpg": [ALICE_AGAIN], "c.jpg": [BOB]})


def _group_view(summary) -> list[tuple[int, list[str]]]:
    return [(group.count, sorted(Path(p).name for p in group.paths)) for group in summary.faces]


def test_three_files_cluster_into_two_identities(photo_root: Path, settings: Settings) -> None:
    write_media(photo_root, "a.jpg", "b.jpg", "c.jpg")

    summary = FaceScanner(_three_file_detector(), settings).scan(photo_root, concurrency_limit=2)

    assert summary.cancelled is False
    assert summary.total_files == 3
    assert summary.group_count == 2
    assert _group_view(summary) == [(2, ["a.jpg", "b.jpg"]), (1, ["c.jpg"])]
    assert summary.cache_stats.to_dict() == {"unchanged": 0, "processed": 3, "removed": 0}


def test_second_scan_reuses_cache_and_matches_first(photo_root: Path, settings: Settings) -> None:
    write_media(photo_root, "a.jpg", "b.jpg", "c.jpg")
    detector = _three_file_detector()
    scanner = FaceScanner(detector, settings)

    first = scanner.scan(photo_root, concurrency_limit=1)
    calls_after_first = len(detector.calls)
    second = scanner.scan(photo_root, concurrency_limit=1)

    assert len(detector.calls) == calls_after_first
    assert second.cache_stats.processed == 0
    assert second.cache_stats.unchanged == 3
    assert _group_view(second) == _group_view(first)


def test_touched_file_is_rescanned(photo_root: Path, settings: Settings) -> None:
    a, _b, _c = write_media(photo_root, "a.jpg", "b.jpg", "c.jpg")
    detector = _three_file_detector()
    scanner = FaceScanner(detector, settings)
    scanner.scan(photo_root, concurrency_limit=1)

    stat = os.stat(a)
    os.utime(a, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
    detector.calls.clear()

    summary = scanner.scan(photo_root, concurrency_limit=1)

    assert detector.calls == ["a.jpg"]
    assert summary.cache_stats.processed == 1
    assert summary.cache_stats.unchanged == 2
    document = load_face_cache(photo_root)
    assert document is not None
    assert document.files[normalize_cache_key(a)].mtime == os.stat(a).st_mtime_ns // 1_000_000


def test_removed_file_is_evicted_from_cache(photo_root: Path, settings: Settings) -> None:
    _a, _b, c = write_media(photo_root, "a.jpg", "b.jpg", "c.jpg")
    scanner = FaceScanner(_three_file_detector(), settings)
    scanner.scan(photo_root, concurrency_limit=1)

    c.unlink()
    summary = scanner.scan(photo_root, concurrency_limit=1)

    document = load_face_cache(photo_root)
    assert document is not None
    assert normalize_cache_key(c) not in document.files
    assert len(document.files) == 2
    assert summary.cache_stats.removed == 1
    assert summary.group_count == 1


def test_cache_file_uses_camel_case_layout(photo_root: Path, settings: Settings) -> None:
    (a,) = write_media(photo_root, "a.jpg")
    FaceScanner(FakeDetector({"a.jpg": [ALICE]}), settings).scan(photo_root, concurrency_limit=1)

    payload = json.loads((photo_root / ".facescan-faces.json").read_text(encoding="utf-8"))
    entry = payload["files"][normalize_cache_key(a)]

    assert payload["version"] == 1
    assert isinstance(payload["lastScan"], str)
    assert entry["mtime"] == os.stat(a).st_mtime_ns // 1_000_000
    assert entry["facesCount"] == 1
    assert entry["fileType"] == "image"
    assert entry["faces"][0]["descriptor"] == ALICE
    assert entry["faces"][0]["box"] == {"x": 0.0, "y": 5.0, "width": 20.0, "height": 20.0}


def test_samples_per_file_are_capped(photo_root: Path, settings: Settings) -> None:
    (crowd,) = write_media(photo_root, "crowd.jpg")
    settings.clustering.max_samples_per_file = 3
    detector = FakeDetector({"crowd.jpg": [[float(i * 10), 0.0] for i in range(5)]})

    summary = FaceScanner(detector, settings).scan(photo_root, concurrency_limit=1)

    document = load_face_cache(photo_root)
    assert document is not None
    assert len(document.files[normalize_cache_key(crowd)].faces) == 3
    assert summary.group_count == 3


def test_failing_file_is_cached_with_no_faces(photo_root: Path, settings: Settings) -> None:
    write_media(photo_root, "a.jpg", "broken.jpg")
    detector = FakeDetector({"a.jpg": [ALICE]}, failing={"broken.jpg"})

    summary = FaceScanner(detector, settings).scan(photo_root, concurrency_limit=2)

    document = load_face_cache(photo_root)
    assert document is not None
    broken = document.files[normalize_cache_key(photo_root / "broken.jpg")]
    assert broken.faces == []
    assert summary.cache_stats.processed == 2
    assert summary.group_count == 1


def test_detector_timeout_counts_as_no_faces(photo_root: Path, settings: Settings) -> None:
    write_media(photo_root, "a.jpg", "slow.jpg")
    settings.detector.timeout_seconds = 0.05
    detector = FakeDetector({"a.jpg": [ALICE], "slow.jpg": [BOB]}, delays={"slow.jpg": 1.0})

    summary = FaceScanner(detector, settings).scan(photo_root, concurrency_limit=2)

    assert summary.cancelled is False
    assert summary.group_count == 1
    assert _group_view(summary) == [(1, ["a.jpg"])]


def test_concurrency_limit_is_respected(photo_root: Path, settings: Settings) -> None:
    names = [f"img{i}.jpg" for i in range(8)]
    write_media(photo_root, *names)
    detector = FakeDetector(delays={name: 0.02 for name in names})

    FaceScanner(detector, settings).scan(photo_root, concurrency_limit=3)

    assert sorted(detector.calls) == sorted(names)
    assert 1 <= detector.max_in_flight <= 3


def test_cancelled_scan_saves_progress_and_resumes(photo_root: Path, settings: Settings) -> None:
    names = ["a.jpg", "b.jpg", "c.jpg", "d.jpg"]
    write_media(photo_root, *names)
    cancel = threading.Event()
    detector = FakeDetector({"a.jpg": [ALICE], "b.jpg": [ALICE_AGAIN]}, on_detect=lambda _path: cancel.set())
    scanner = FaceScanner(detector, settings)

    first = scanner.scan(photo_root, concurrency_limit=1, cancel_token=cancel)

    assert first.cancelled is True
    assert first.cache_stats.processed == 1
    document = load_face_cache(photo_root)
    assert document is not None
    assert len(document.files) == 1

    detector.on_detect = None
    detector.calls.clear()
    second = scanner.scan(photo_root, concurrency_limit=1)

    assert second.cancelled is False
    assert second.cache_stats.unchanged == 1
    assert second.cache_stats.processed == 3
    assert "a.jpg" not in detector.calls
    assert _group_view(second) == [(2, ["a.jpg", "b.jpg"])]


def test_cancel_before_cache_check_returns_empty_summary(photo_root: Path, settings: Settings) -> None:
    write_media(photo_root, "a.jpg")
    cancel = threading.Event()
    cancel.set()
    events: list[ProgressEvent] = []

    summary = FaceScanner(FakeDetector(), settings).scan(
        photo_root, concurrency_limit=1, progress_sink=events.append, cancel_token=cancel
    )

    assert summary.cancelled is True
    assert summary.total_files == 0
    assert summary.faces == []
    assert not (photo_root / ".facescan-faces.json").exists()
    assert events[-1].phase is ScanPhase.DONE
    assert events[-1].cancelled is True


def test_empty_directory_finishes_without_cache(photo_root: Path, settings: Settings) -> None:
    events: list[ProgressEvent] = []

    summary = FaceScanner(FakeDetector(), settings).scan(photo_root, progress_sink=events.append)

    assert summary.total_files == 0
    assert summary.group_count == 0
    assert not (photo_root / ".facescan-faces.json").exists()
    assert [event.phase for event in events] == [ScanPhase.INIT, ScanPhase.ENUMERATE, ScanPhase.DONE]


def test_emptied_directory_evicts_every_cached_file(photo_root: Path, settings: Settings) -> None:
    paths = write_media(photo_root, "a.jpg", "b.jpg", "c.jpg")
    scanner = FaceScanner(_three_file_detector(), settings)
    scanner.scan(photo_root, concurrency_limit=1)
    for path in paths:
        path.unlink()

    summary = scanner.scan(photo_root, concurrency_limit=1)

    assert summary.total_files == 0
    assert summary.cache_stats.removed == 3
    document = load_face_cache(photo_root)
    assert document is not None
    assert document.files == {}


def test_rewritten_file_gets_fresh_thumbnails(photo_root: Path, settings: Settings) -> None:
    settings.thumbnails.enabled = True
    source = photo_root / "a.jpg"
    Image.new("RGB", (200, 200), color=(255, 0, 0)).save(source, format="JPEG")
    scanner = FaceScanner(FakeDetector({"a.jpg": [ALICE]}), settings)
    first = scanner.scan(photo_root, concurrency_limit=1)

    Image.new("RGB", (200, 200), color=(0, 0, 255)).save(source, format="JPEG")
    stat = os.stat(source)
    os.utime(source, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
    second = scanner.scan(photo_root, concurrency_limit=1)

    assert second.cache_stats.processed == 1
    (group,) = second.faces
    assert group.thumbnail is not None and group.thumbnail != first.faces[0].thumbnail
    assert group.face_thumbnail is not None
    for rendered_path in (group.thumbnail, group.face_thumbnail):
        with Image.open(rendered_path) as rendered:
            red, _green, blue = rendered.convert("RGB").getpixel((rendered.width // 2, rendered.height // 2))
        assert blue > 200
        assert red < 60


def test_missing_root_raises_and_reports_error(tmp_path: Path, settings: Settings) -> None:
    events: list[ProgressEvent] = []
    detector = FakeDetector()

    with pytest.raises(SourcePathError):
        FaceScanner(detector, settings).scan(tmp_path / "nope", progress_sink=events.append)

    assert events[-1].phase is ScanPhase.ERROR
    assert detector.init_calls == 0


def test_file_root_is_rejected(tmp_path: Path, settings: Settings) -> None:
    (file_path,) = write_media(tmp_path, "single.jpg")

    with pytest.raises(SourcePathError):
        FaceScanner(FakeDetector(), settings).scan(file_path)


def test_detector_init_failure_is_fatal(photo_root: Path, settings: Settings) -> None:
    class BrokenDetector(FakeDetector):
        def init(self) -> None:
            raise RuntimeError("model files missing")

    with pytest.raises(FaceScanError, match="model files missing"):
        FaceScanner(BrokenDetector(), settings).scan(photo_root)


def test_progress_events_follow_scan_phases(photo_root: Path, settings: Settings) -> None:
    names = [f"img{i}.jpg" for i in range(6)]
    write_media(photo_root, *names)
    settings.cache.checkpoint_interval = 2
    events: list[ProgressEvent] = []

    FaceScanner(FakeDetector({name: [ALICE] for name in names}), settings).scan(
        photo_root, concurrency_limit=2, progress_sink=events.append
    )

    phases = [event.phase for event in events]
    assert phases[:3] == [ScanPhase.INIT, ScanPhase.ENUMERATE, ScanPhase.CACHE_CHECK]
    assert phases.count(ScanPhase.CHECKPOINT) == 3
    assert phases[-1] is ScanPhase.DONE

    final = events[-1]
    assert final.current == final.total == 6
    assert final.scanned == 6
    assert final.faces is not None and final.faces[0]["count"] == 6

    scanning = [event for event in events if event.phase is ScanPhase.SCANNING]
    assert all(len(event.active_files) <= 2 for event in scanning)
    assert any(event.active_files for event in scanning)


def test_failing_progress_sink_does_not_abort_scan(photo_root: Path, settings: Settings) -> None:
    write_media(photo_root, "a.jpg")

    def _sink(_event: ProgressEvent) -> None:
        raise RuntimeError("transport closed")

    summary = FaceScanner(FakeDetector({"a.jpg": [ALICE]}), settings).scan(
        photo_root, concurrency_limit=1, progress_sink=_sink
    )

    assert summary.group_count == 1


def test_scan_faces_closes_only_owned_detector(photo_root: Path, settings: Settings, monkeypatch) -> None:
    write_media(photo_root, "a.jpg")
    built = FakeDetector({"a.jpg": [ALICE]})
    monkeypatch.setattr("facescan.orchestrator.build_detector", lambda _settings: built)

    summary = scan_faces(photo_root, settings=settings, concurrency_limit=1)
    assert summary.group_count == 1
    assert built.close_calls == 1

    injected = FakeDetector()
    scan_faces(photo_root, settings=settings, detector=injected, concurrency_limit=1)
    assert injected.close_calls == 0


def test_summary_to_dict_shape(photo_root: Path, settings: Settings) -> None:
    write_media(photo_root, "a.jpg", "b.jpg", "c.jpg")

    payload = FaceScanner(_three_file_detector(), settings).scan(photo_root, concurrency_limit=1).to_dict()

    assert payload["totalFiles"] == 3
    assert payload["groupCount"] == 2
    assert payload["cancelled"] is False
    assert payload["faces"][0]["id"] == "face-1"
    assert payload["faces"][0]["label"] == "Face #1"
    assert payload["cacheStats"] == {"unchanged": 0, "processed": 3, "removed": 0}
