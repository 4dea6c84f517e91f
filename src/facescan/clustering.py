"""Greedy online clustering of face embeddings into identity groups."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

DistanceFn = Callable[[np.ndarray, np.ndarray], float]


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.linalg.norm(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)))


@dataclass
class FaceSample:
    """One detected face ready to be clustered."""

    embedding: np.ndarray
    path: str
    box: dict[str, float] | None = None
    thumbnail: str | None = None
    face_thumbnail: str | None = None


@dataclass
class Cluster:
    """In-memory identity cluster; rebuilt from cached embeddings on every scan."""

    centroid: np.ndarray
    paths: list[str] = field(default_factory=list)
    sample_thumbnails: list[str] = field(default_factory=list)
    face_thumbnail: str | None = None
    embeddings: list[np.ndarray] = field(default_factory=list, repr=False)
    _path_set: set[str] = field(default_factory=set, repr=False)

    @classmethod
    def from_sample(cls, sample: FaceSample) -> Cluster:
        cluster = cls(centroid=np.asarray(sample.embedding, dtype=np.float32))
        cluster.add(sample)
        return cluster

    @property
    def member_count(self) -> int:
        return len(self.embeddings)

    @property
    def file_count(self) -> int:
        return len(self.paths)

    def add(self, sample: FaceSample) -> None:
        """Add ``sample`` and recompute the centroid as the mean of all member embeddings."""

        self.embeddings.append(np.asarray(sample.embedding, dtype=np.float32))
        self.centroid = np.stack(self.embeddings).mean(axis=0, dtype=np.float64).astype(np.float32)

        if sample.path not in self._path_set:
            self._path_set.add(sample.path)
            self.paths.append(sample.path)
        if sample.thumbnail:
            self.sample_thumbnails.append(sample.thumbnail)
        if self.face_thumbnail is None and sample.face_thumbnail:
            self.face_thumbnail = sample.face_thumbnail


@dataclass
class FaceGroup:
    """Presentation view of a cluster."""

    id: str
    label: str
    count: int
    thumbnail: str | None
    face_thumbnail: str | None
    paths: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "count": self.count,
            "thumbnail": self.thumbnail,
            "faceThumb": self.face_thumbnail,
            "paths": list(self.paths),
        }


def assign_to_cluster(
    clusters: list[Cluster],
    sample: FaceSample,
    *,
    threshold: float,
    distance: DistanceFn = euclidean_distance,
) -> Cluster:
    """Place ``sample`` into the nearest cluster or start a new one.

    The sample joins the cluster with the smallest centroid distance when that
    distance is ``<= threshold``. Ties keep the earliest cluster. Results
    depend on the order samples arrive in.
    """

    best: Cluster | None = None
    best_distance = float("inf")
    for cluster in clusters:
        current = distance(sample.embedding, cluster.centroid)
        if current < best_distance:
            best, best_distance = cluster, current

    if best is not None and best_distance <= threshold:
        best.add(sample)
        return best

    created = Cluster.from_sample(sample)
    clusters.append(created)
    return created


def clusters_to_faces(clusters: Sequence[Cluster], max_results: int = 96) -> list[FaceGroup]:
    """Convert clusters into ``face-N`` groups ordered by distinct file count."""

    limit = max(0, int(max_results))
    groups: list[FaceGroup] = []
    for index, cluster in enumerate(clusters, start=1):
        thumbnail = cluster.sample_thumbnails[0] if cluster.sample_thumbnails else None
        if thumbnail is None and cluster.paths:
            thumbnail = cluster.paths[0]
        groups.append(
            FaceGroup(
                id=f"face-{index}",
                label=f"Face #{index}",
                count=cluster.file_count,
                thumbnail=thumbnail,
                face_thumbnail=cluster.face_thumbnail,
                paths=cluster.paths[:limit],
            )
        )

    groups.sort(key=lambda group: group.count, reverse=True)
    return groups


__all__ = [
    "Cluster",
    "DistanceFn",
    "FaceGroup",
    "FaceSample",
    "assign_to_cluster",
    "clusters_to_faces",
    "euclidean_distance",
]
