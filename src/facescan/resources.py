"""Pick a worker count from the host's CPU and memory."""

from __future__ import annotations

import math
import os

import psutil

from facescan.config import RunnerConfig
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "resources"})

TASKS_PER_CORE = 5
USABLE_FRACTION = 0.9


def recommend_concurrency(
    config: RunnerConfig | None = None,
    *,
    cpu_count: int | None = None,
    total_memory_bytes: int | None = None,
) -> int:
    """Return ``max(cpu_based, memory_based)`` clamped to the configured bounds.

    ``cpu_based`` allows five in-flight detector calls per core and
    ``memory_based`` budgets ``memory_per_task_gb`` per call, each using 90%
    of the resource.
    """

    cfg = config or RunnerConfig()
    if cfg.default_concurrency is not None:
        return max(1, int(cfg.default_concurrency))

    lower = max(1, int(cfg.min_concurrency))
    upper = max(lower, int(cfg.max_concurrency))

    cores = cpu_count if cpu_count is not None else (psutil.cpu_count(logical=True) or os.cpu_count() or 1)
    total_bytes = total_memory_bytes if total_memory_bytes is not None else psutil.virtual_memory().total
    total_gb = total_bytes / (1024**3)

    cpu_based = math.floor(cores * TASKS_PER_CORE * USABLE_FRACTION)
    per_task = cfg.memory_per_task_gb if cfg.memory_per_task_gb > 0 else 0.5
    memory_based = math.floor(total_gb * USABLE_FRACTION / per_task)

    recommended = min(upper, max(lower, max(cpu_based, memory_based)))
    LOGGER.info(
        "concurrency_recommended",
        extra={
            "cores": cores,
            "total_gb": round(total_gb, 2),
            "cpu_based": cpu_based,
            "memory_based": memory_based,
            "recommended": recommended,
        },
    )
    return recommended


__all__ = ["recommend_concurrency"]
