"""Job config loading and normalization helpers."""

from __future__ import annotations

import glob
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from orthowarp.contracts import validate_job_config
from orthowarp.raster.errors import ConfigurationError
from orthowarp.raster.mask import MaskOptions
from orthowarp.raster.reproject import WarpOptions

ENV_THREADS = "ORTHOWARP_THREADS"


@dataclass(frozen=True)
class MaskSource:
    """Where the valid-data polygon comes from."""

    path: Path | None = None
    cycles: Path | None = None
    footprints: Path | None = None
    crs: str | None = None
    options: MaskOptions = field(default_factory=MaskOptions)


@dataclass(frozen=True)
class JobConfig:
    """Normalized job configuration."""

    sources: tuple[Path, ...]
    output: Path
    work_dir: Path
    target_crs: str
    source_crs: str | None
    pipeline: Any
    warp: WarpOptions
    mask: MaskSource | None
    mosaic_method: str = "first"
    overviews: bool = True
    overview_factors: tuple[int, ...] | None = None
    keep_intermediate: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "sources": [str(path) for path in self.sources],
            "output": str(self.output),
            "work_dir": str(self.work_dir),
            "target_crs": self.target_crs,
            "source_crs": self.source_crs,
            "zoom": self.warp.zoom,
            "resolution": self.warp.resolution,
            "resampling": self.warp.resampling,
            "threads": self.warp.threads,
            "block_size": self.warp.block_size,
            "mosaic_method": self.mosaic_method,
            "overviews": self.overviews,
        }


def _resolve(base: Path, value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else base / path


def _expand_sources(base: Path, patterns: list[str]) -> tuple[Path, ...]:
    """Expand glob patterns; literal paths must exist."""
    sources: list[Path] = []
    for pattern in patterns:
        resolved = _resolve(base, pattern)
        if glob.has_magic(str(resolved)):
            matches = sorted(Path(match) for match in glob.glob(str(resolved)))
            if not matches:
                raise ConfigurationError(f"Source pattern matched no files: {pattern}")
            sources.extend(matches)
        else:
            if not resolved.exists():
                raise ConfigurationError(f"Source raster not found: {resolved}")
            sources.append(resolved)
    return tuple(sources)


def _threads_override(value: int) -> int:
    env_value = os.environ.get(ENV_THREADS)
    if not env_value:
        return value
    try:
        threads = int(env_value)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_THREADS} must be an integer, got {env_value!r}") from exc
    if threads < 0:
        raise ConfigurationError(f"{ENV_THREADS} must be >= 0")
    return threads


def _mask_source(base: Path, payload: Mapping[str, Any]) -> MaskSource | None:
    raw_mask = payload.get("mask")
    raw_coverage = payload.get("coverage")
    if raw_mask and raw_coverage:
        raise ConfigurationError("Use either 'mask' or 'coverage', not both.")
    if raw_mask:
        options = MaskOptions(
            init_value=raw_mask.get("init_value", MaskOptions.init_value),
            burn_value=raw_mask.get("burn_value", MaskOptions.burn_value),
            invert=raw_mask.get("invert", False),
            align=raw_mask.get("align", True),
            all_touched=raw_mask.get("all_touched", False),
        )
        return MaskSource(
            path=_resolve(base, raw_mask["path"]),
            crs=raw_mask.get("crs"),
            options=options,
        )
    if raw_coverage:
        return MaskSource(
            cycles=_resolve(base, raw_coverage["cycles"]),
            footprints=_resolve(base, raw_coverage["footprints"]),
            crs=raw_coverage.get("crs"),
        )
    return None


def normalize_job_config(payload: Mapping[str, Any], *, base_dir: Path) -> JobConfig:
    """Validate a raw job payload and resolve paths against ``base_dir``."""
    validate_job_config(payload)
    output = _resolve(base_dir, payload["output"])
    work_dir = (
        _resolve(base_dir, payload["work_dir"])
        if payload.get("work_dir")
        else output.parent / f"{output.stem}_work"
    )
    warp = WarpOptions(
        zoom=payload.get("zoom"),
        resolution=payload.get("resolution"),
        tile_size=payload.get("tile_size", 256),
        resampling=payload.get("resampling", "lanczos"),
        mask_resampling=payload.get("mask_resampling", "bilinear"),
        target_aligned=payload.get("target_aligned", True),
        threads=_threads_override(payload.get("threads", 0)),
        block_size=payload.get("block_size", 512),
        creation_options=dict(payload.get("creation_options", {})),
        continue_on_error=payload.get("continue_on_error", False),
    )
    factors = payload.get("overview_factors")
    return JobConfig(
        sources=_expand_sources(base_dir, list(payload["sources"])),
        output=output,
        work_dir=work_dir,
        target_crs=payload["target_crs"],
        source_crs=payload.get("source_crs"),
        pipeline=payload.get("pipeline"),
        warp=warp,
        mask=_mask_source(base_dir, payload),
        mosaic_method=payload.get("mosaic_method", "first"),
        overviews=payload.get("overviews", True),
        overview_factors=tuple(factors) if factors is not None else None,
        keep_intermediate=payload.get("keep_intermediate", False),
    )


def load_job_config(path: Path) -> JobConfig:
    """Load and normalize a job config file."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Job config not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Job config is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError("Job config must be a JSON object.")
    return normalize_job_config(payload, base_dir=path.resolve().parent)
