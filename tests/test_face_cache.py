from __future__ import annotations

import json
from pathlib import Path

from facescan.face_cache import (
    CACHE_FORMAT_VERSION,
    CacheDocument,
    DetectionRecord,
    FaceBox,
    FileCacheEntry,
    cache_path,
    delete_face_cache,
    load_face_cache,
    normalize_cache_key,
    save_face_cache,
)


def _document() -> CacheDocument:
    entry = FileCacheEntry(
        mtime=1_700_000_000_123,
        faces=[
            DetectionRecord(
                embedding=[0.25, -0.5],
                box=FaceBox(x=1.0, y=2.0, width=30.0, height=40.0),
                thumbnail="/tmp/thumb.jpg",
                face_thumbnail="/tmp/face.jpg",
            )
        ],
        scanned_at="2026-01-01T00:00:00+00:00",
        processing_time_ms=12,
        file_size=2048,
        extension=".jpg",
        file_type="image",
    )
    return CacheDocument(files={"/photos/a.jpg": entry})


def test_missing_cache_loads_as_none(tmp_path: Path) -> None:
    assert load_face_cache(tmp_path) is None


def test_saved_cache_loads_back(tmp_path: Path) -> None:
    assert save_face_cache(tmp_path, _document()) is True

    loaded = load_face_cache(tmp_path)

    assert loaded is not None
    assert loaded.version == CACHE_FORMAT_VERSION
    assert loaded.last_scan is not None
    entry = loaded.files["/photos/a.jpg"]
    assert entry.mtime == 1_700_000_000_123
    assert entry.faces_count == 1
    assert entry.faces[0].embedding == [0.25, -0.5]
    assert entry.faces[0].box == FaceBox(x=1.0, y=2.0, width=30.0, height=40.0)
    assert entry.faces[0].face_thumbnail == "/tmp/face.jpg"


def test_save_leaves_no_temporary_files(tmp_path: Path) -> None:
    save_face_cache(tmp_path, _document())
    save_face_cache(tmp_path, _document())

    assert sorted(path.name for path in tmp_path.iterdir()) == [".facescan-faces.json"]


def test_malformed_json_is_treated_as_cold_start(tmp_path: Path) -> None:
    cache_path(tmp_path).write_text("{not json", encoding="utf-8")

    assert load_face_cache(tmp_path) is None


def test_non_object_payload_is_ignored(tmp_path: Path) -> None:
    cache_path(tmp_path).write_text("[1, 2, 3]", encoding="utf-8")

    assert load_face_cache(tmp_path) is None


def test_version_mismatch_is_treated_as_cold_start(tmp_path: Path) -> None:
    payload = _document().to_dict()
    payload["version"] = CACHE_FORMAT_VERSION + 1
    cache_path(tmp_path).write_text(json.dumps(payload), encoding="utf-8")

    assert load_face_cache(tmp_path) is None


def test_unknown_entry_keys_survive_a_resave(tmp_path: Path) -> None:
    payload = _document().to_dict()
    payload["files"]["/photos/a.jpg"]["camera"] = {"model": "X100V"}
    cache_path(tmp_path).write_text(json.dumps(payload), encoding="utf-8")

    loaded = load_face_cache(tmp_path)
    assert loaded is not None
    save_face_cache(tmp_path, loaded)

    raw = json.loads(cache_path(tmp_path).read_text(encoding="utf-8"))
    assert raw["files"]["/photos/a.jpg"]["camera"] == {"model": "X100V"}


def test_invalid_entries_are_dropped(tmp_path: Path) -> None:
    payload = {
        "version": CACHE_FORMAT_VERSION,
        "files": {"/ok.jpg": {"mtime": 5, "faces": []}, "/bad.jpg": {"faces": []}},
    }
    cache_path(tmp_path).write_text(json.dumps(payload), encoding="utf-8")

    loaded = load_face_cache(tmp_path)

    assert loaded is not None
    assert list(loaded.files) == ["/ok.jpg"]


def test_save_failure_returns_false(tmp_path: Path) -> None:
    assert save_face_cache(tmp_path / "does-not-exist", _document()) is False


def test_keys_use_forward_slashes() -> None:
    assert normalize_cache_key("C:\\photos\\a.jpg") == "C:/photos/a.jpg"


def test_delete_face_cache(tmp_path: Path) -> None:
    save_face_cache(tmp_path, _document())

    assert delete_face_cache(tmp_path) is True
    assert delete_face_cache(tmp_path) is False
