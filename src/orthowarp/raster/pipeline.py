"""End-to-end job runner: mosaic, mask, warp and overviews."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from orthowarp.contracts import SCHEMA_VERSION, validate_run_report
from orthowarp.perf import PerfTracker
from orthowarp.raster.coordops import pipeline_from_config
from orthowarp.raster.coverage import derive_coverage, load_coverage, write_coverage
from orthowarp.raster.crs import crs_equal
from orthowarp.raster.mask import mask_grid_for_raster, rasterize_mask
from orthowarp.raster.models import MaskResult, MosaicResult, OverviewResult, WarpResult
from orthowarp.raster.mosaic import build_mosaic
from orthowarp.raster.overviews import build_overviews
from orthowarp.raster.reproject import CancelToken, plan_warp, warp_raster
from orthowarp.raster.tilegrid import xyz_tiles_for_bounds

if TYPE_CHECKING:
    from orthowarp.config import JobConfig, MaskSource

LOGGER = logging.getLogger(__name__)

REPORT_NAME = "run_report.json"


@dataclass(frozen=True)
class JobResult:
    """Outputs from a complete job run."""

    mosaic: MosaicResult
    warp: WarpResult
    mask: MaskResult | None = None
    overviews: OverviewResult | None = None
    report_path: Path | None = None
    perf: dict[str, Any] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return self.warp.complete


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _build_mask(source: "MaskSource", mosaic: MosaicResult, work_dir: Path) -> MaskResult:
    """Load or derive the coverage polygon and burn it on the mosaic grid."""
    if source.path is not None:
        coverage = load_coverage(source.path, crs=source.crs)
    else:
        coverage = derive_coverage(
            load_coverage(source.cycles, crs=source.crs),
            load_coverage(source.footprints, crs=source.crs),
        )
        write_coverage(coverage, work_dir / "coverage.geojson")
    grid = mask_grid_for_raster(mosaic.path)
    return rasterize_mask(coverage, grid, work_dir / "alpha_mask.tif", options=source.options)


def _xyz_tile_count(config: "JobConfig", warp: WarpResult) -> int | None:
    if config.warp.zoom is None or not crs_equal(warp.crs, "EPSG:3857"):
        return None
    return len(xyz_tiles_for_bounds(warp.bounds, config.warp.zoom))


def build_report(
    config: "JobConfig",
    *,
    mosaic: MosaicResult,
    warp: WarpResult,
    pipeline: list[dict[str, object]],
    mask: MaskResult | None,
    overviews: OverviewResult | None,
    perf: dict[str, Any],
) -> dict[str, Any]:
    """Return the JSON run report for a job."""
    report: dict[str, Any] = {
        "schema_version": SCHEMA_VERSION,
        "created_at": _timestamp(),
        "status": "complete" if warp.complete else "incomplete",
        "inputs": {
            "sources": [str(path) for path in config.sources],
            "target_crs": config.target_crs,
            "pipeline": pipeline,
        },
        "mosaic": {
            "path": str(mosaic.path),
            "crs": mosaic.crs,
            "bounds": list(mosaic.bounds),
        },
        "mask": None,
        "warp": {
            "path": str(warp.path),
            "complete": warp.complete,
            "blocks_total": warp.blocks_total,
            "blocks_done": warp.blocks_done,
            "plan": warp.plan.as_dict(),
            "errors": dict(warp.errors),
        },
        "overviews": None,
    }
    if mask is not None:
        report["mask"] = {
            "path": str(mask.path),
            "width": mask.width,
            "height": mask.height,
            "healed": mask.healed,
            "kept": config.keep_intermediate,
        }
    if overviews is not None:
        report["overviews"] = {
            "factors": list(overviews.factors),
            "resampling": overviews.resampling,
        }
    tiles = _xyz_tile_count(config, warp)
    if tiles is not None:
        report["xyz_tiles"] = tiles
    if perf:
        report["perf"] = perf
    return report


def run_job(
    config: "JobConfig",
    *,
    resume: bool = False,
    cancel: CancelToken | None = None,
    perf: PerfTracker | None = None,
) -> JobResult:
    """Run a job end to end and write ``run_report.json`` to its work dir.

    Configuration problems surface before the warp writes any pixel.
    Overviews are only built once the warp is complete.
    """
    perf = perf or PerfTracker(enabled=False)
    perf.start()
    work_dir = config.work_dir
    work_dir.mkdir(parents=True, exist_ok=True)

    with perf.span("mosaic"):
        mosaic = build_mosaic(
            list(config.sources),
            work_dir / "mosaic.vrt",
            method=config.mosaic_method,
        )
    pipeline = pipeline_from_config(
        config.pipeline,
        source_crs=config.source_crs or mosaic.crs,
        target_crs=config.target_crs,
    )
    # Pipeline and CRS problems surface here, before the mask is burned.
    plan_warp(mosaic.path, pipeline, config.target_crs, config.warp)

    mask: MaskResult | None = None
    if config.mask is not None:
        with perf.span("mask"):
            mask = _build_mask(config.mask, mosaic, work_dir)

    options = config.warp
    if resume != options.resume:
        options = replace(options, resume=resume)
    try:
        with perf.span("warp"):
            warp = warp_raster(
                mosaic.path,
                config.output,
                pipeline=pipeline,
                target_crs=config.target_crs,
                options=options,
                mask_path=mask.path if mask else None,
                cancel=cancel,
            )
    finally:
        if mask is not None and not config.keep_intermediate:
            mask.path.unlink(missing_ok=True)

    overviews: OverviewResult | None = None
    if config.overviews and warp.complete:
        with perf.span("overviews"):
            overviews = build_overviews(
                config.output,
                resampling=options.resampling,
                factors=config.overview_factors,
            )
    elif config.overviews:
        LOGGER.warning("Skipping overviews; %s is incomplete.", config.output)

    perf.stop()
    summary = perf.summary()
    report = build_report(
        config,
        mosaic=mosaic,
        warp=warp,
        pipeline=pipeline.describe(),
        mask=mask,
        overviews=overviews,
        perf=summary,
    )
    validate_run_report(report)
    report_path = work_dir / REPORT_NAME
    report_path.write_text(json.dumps(report, indent=2), encoding="utf-8")
    LOGGER.info("Run report written to %s.", report_path)
    return JobResult(
        mosaic=mosaic,
        warp=warp,
        mask=mask,
        overviews=overviews,
        report_path=report_path,
        perf=summary,
    )
