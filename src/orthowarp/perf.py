"""Stage timing for job runs."""

from __future__ import annotations

import json
import os
import tracemalloc
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Any, Iterator

PROFILE_DIR_ENV = "ORTHOWARP_PROFILE_DIR"
METRICS_NAME = "run_metrics.json"


@dataclass(frozen=True)
class StageTiming:
    name: str
    seconds: float


class PerfTracker:
    """Record wall time per pipeline stage and, optionally, peak Python memory.

    A disabled tracker accepts the same calls and records nothing, so callers
    never need to branch on whether profiling is on.
    """

    def __init__(self, *, enabled: bool, track_memory: bool = False) -> None:
        self.enabled = enabled
        self.track_memory = track_memory
        self._stages: list[StageTiming] = []
        self._started: float | None = None
        self._elapsed: float | None = None
        self._peak_mb: float | None = None
        self._owns_tracing = False

    def start(self) -> None:
        if not self.enabled or self._started is not None:
            return
        self._started = perf_counter()
        if self.track_memory and not tracemalloc.is_tracing():
            tracemalloc.start()
            self._owns_tracing = True

    def stop(self) -> None:
        if not self.enabled or self._started is None or self._elapsed is not None:
            return
        self._elapsed = perf_counter() - self._started
        if self.track_memory and tracemalloc.is_tracing():
            self._peak_mb = tracemalloc.get_traced_memory()[1] / (1024 * 1024)
            if self._owns_tracing:
                tracemalloc.stop()
                self._owns_tracing = False

    @contextmanager
    def span(self, name: str) -> Iterator[None]:
        """Time the enclosed stage, even when it raises."""
        if not self.enabled:
            yield
            return
        start = perf_counter()
        try:
            yield
        finally:
            self._stages.append(StageTiming(name, perf_counter() - start))

    def summary(self) -> dict[str, Any]:
        if not self.enabled:
            return {}
        stages: dict[str, dict[str, Any]] = {}
        for stage in self._stages:
            entry = stages.setdefault(stage.name, {"seconds": 0.0, "count": 0})
            entry["seconds"] += stage.seconds
            entry["count"] += 1
        for entry in stages.values():
            entry["seconds"] = round(entry["seconds"], 6)
        summary: dict[str, Any] = {
            "total_seconds": round(self._elapsed or 0.0, 6),
            "stages": dict(sorted(stages.items())),
        }
        if self._peak_mb is not None:
            summary["peak_memory_mb"] = round(self._peak_mb, 3)
        return summary

    def write(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.summary(), indent=2), encoding="utf-8")
        return path


def resolve_metrics_path(metrics_json: str | None) -> Path | None:
    """Return where to write run metrics: CLI flag first, then the profile dir."""
    if metrics_json:
        return Path(metrics_json)
    profile_dir = os.environ.get(PROFILE_DIR_ENV)
    if profile_dir:
        return Path(profile_dir) / METRICS_NAME
    return None
