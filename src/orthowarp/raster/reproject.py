"""Block-parallel reprojection of a mosaic through a coordinate pipeline.

Every output block is independent: workers inverse-transform the block's
pixel centres, read the bounded source neighbourhood through their own
thread-local dataset handles, resample in float64 and hand the buffer back.
Only the coordinating thread writes, quantizing at write time. Finished
blocks are recorded in a progress sidecar so an interrupted run can resume.
"""

from __future__ import annotations

import json
import logging
import math
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping

import numpy as np
import rasterio
from rasterio.enums import ColorInterp
from rasterio.windows import Window

from orthowarp.raster.coordops import CoordinatePipeline
from orthowarp.raster.crs import bounds_through, crs_equal, normalize_crs
from orthowarp.raster.errors import ConfigurationError, TileProcessingError
from orthowarp.raster.kernels import Kernel, get_kernel, quantize, sample
from orthowarp.raster.models import WarpPlan, WarpResult
from orthowarp.raster.tilegrid import (
    aligned_grid,
    iter_blocks,
    resolution_for_zoom,
    validate_block_size,
)

LOGGER = logging.getLogger(__name__)

STATUS_TAG = "ORTHOWARP_STATUS"
STATUS_COMPLETE = "complete"
STATUS_INCOMPLETE = "incomplete"

# Largest source window a single block may read, in pixels.
MAX_SOURCE_PIXELS = 64 * 1024 * 1024
# Blocks between progress sidecar checkpoints.
_CHECKPOINT_EVERY = 32


@dataclass(frozen=True)
class WarpOptions:
    """Reprojection settings; ``creation_options`` pass straight to GDAL."""

    zoom: int | None = None
    resolution: float | None = None
    tile_size: int = 256
    resampling: str = "lanczos"
    mask_resampling: str = "bilinear"
    target_aligned: bool = True
    threads: int = 0
    block_size: int = 512
    densify_pts: int = 21
    add_alpha: bool = False
    dst_nodata: float | None = None
    creation_options: Mapping[str, Any] = field(default_factory=dict)
    continue_on_error: bool = False
    resume: bool = False

    def target_resolution(self) -> float:
        if self.zoom is not None:
            return resolution_for_zoom(self.zoom, self.tile_size)
        if self.resolution is None:
            raise ConfigurationError("A zoom level or target resolution is required.")
        if self.resolution <= 0:
            raise ConfigurationError("Target resolution must be positive.")
        return float(self.resolution)


class CancelToken:
    """Cooperative cancellation shared between a caller and a warp run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _coerce_threads(threads: int, block_count: int) -> int:
    """Normalize requested worker count for per-block processing."""
    jobs = int(threads)
    if jobs < 0:
        raise ConfigurationError("threads must be >= 0")
    if block_count <= 0:
        return 1
    if jobs == 0:
        cpu_count = os.cpu_count() or 1
        return max(1, min(cpu_count, block_count))
    return min(jobs, block_count)


def _color_bands(dataset: Any) -> list[int]:
    """Return 1-based indexes of non-alpha bands."""
    return [
        index + 1
        for index, interp in enumerate(dataset.colorinterp)
        if interp != ColorInterp.alpha
    ] or list(range(1, dataset.count + 1))


def plan_warp(
    src_path: Path,
    pipeline: CoordinatePipeline,
    target_crs: str,
    options: WarpOptions,
    *,
    mask_path: Path | None = None,
) -> WarpPlan:
    """Validate inputs and fix the target-aligned output grid.

    Everything that can be wrong with the configuration is detected here,
    before a single pixel is resampled.
    """
    resolution = options.target_resolution()
    block_size = validate_block_size(options.block_size)
    get_kernel(options.resampling)
    get_kernel(options.mask_resampling)
    dst_crs = normalize_crs(target_crs)
    pipeline.validate()
    if pipeline.target_crs and not crs_equal(pipeline.target_crs, dst_crs):
        raise ConfigurationError(
            f"Pipeline target {pipeline.target_crs} does not match target CRS {target_crs}."
        )

    with rasterio.open(src_path) as src:
        if src.crs is None:
            raise ConfigurationError(f"Source raster CRS is required: {src_path}")
        if pipeline.source_crs and not crs_equal(pipeline.source_crs, src.crs.to_wkt()):
            raise ConfigurationError(
                f"Source raster CRS {src.crs.to_string()} does not match pipeline source "
                f"{pipeline.source_crs}."
            )
        bounds = src.bounds
        src_bounds = (bounds.left, bounds.bottom, bounds.right, bounds.top)
        src_crs = src.crs

    if mask_path is not None:
        with rasterio.open(mask_path) as mask:
            if mask.count != 1:
                raise ConfigurationError("Alpha mask must have exactly one band.")
            if mask.crs is None or mask.crs != src_crs:
                raise ConfigurationError("Alpha mask must share the source raster CRS.")

    target_bounds = bounds_through(
        pipeline.forward, src_bounds, densify_pts=options.densify_pts
    )
    out_bounds, width, height = aligned_grid(
        target_bounds, resolution, target_aligned=options.target_aligned
    )
    return WarpPlan(
        crs=dst_crs.to_string(),
        bounds=out_bounds,
        resolution=resolution,
        width=width,
        height=height,
        block_size=block_size,
    )


class _ThreadLocalDatasets:
    """Per-thread read handles; GDAL handles must not cross threads."""

    def __init__(self, paths: Mapping[str, Path]) -> None:
        self._paths = dict(paths)
        self._local = threading.local()
        self._lock = threading.Lock()
        self._opened: list[Any] = []

    def get(self, key: str) -> Any:
        handles = getattr(self._local, "handles", None)
        if handles is None:
            handles = {}
            self._local.handles = handles
        dataset = handles.get(key)
        if dataset is None:
            dataset = rasterio.open(self._paths[key])
            handles[key] = dataset
            with self._lock:
                self._opened.append(dataset)
        return dataset

    def close(self) -> None:
        with self._lock:
            for dataset in self._opened:
                dataset.close()
            self._opened.clear()


class ProgressLog:
    """Sidecar JSON tracking which output blocks are on disk.

    ``settings`` holds everything besides the grid that shapes output
    pixels; a resume with different settings is refused.
    """

    def __init__(
        self,
        output_path: Path,
        plan: WarpPlan,
        settings: Mapping[str, Any] | None = None,
    ) -> None:
        self.path = output_path.with_name(output_path.name + ".progress.json")
        self.plan = plan
        self.settings = dict(settings or {})
        self.done: set[str] = set()
        self.status = STATUS_INCOMPLETE

    def load(self) -> bool:
        """Load existing progress; False if there is none to resume from."""
        if not self.path.exists():
            return False
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if data.get("plan") != self.plan.as_dict() or data.get("settings", {}) != self.settings:
            raise ConfigurationError(
                f"Existing output {self.path.name} was planned with different settings; "
                "remove it or run without resume."
            )
        self.done = set(data.get("done", []))
        self.status = data.get("status", STATUS_INCOMPLETE)
        return True

    def save(self) -> None:
        payload = {
            "status": self.status,
            "plan": self.plan.as_dict(),
            "settings": self.settings,
            "done": sorted(self.done),
        }
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)


@dataclass
class _BlockContext:
    plan: WarpPlan
    pipeline: CoordinatePipeline
    kernel: Kernel
    mask_kernel: Kernel
    datasets: _ThreadLocalDatasets
    color_bands: list[int]
    has_mask: bool
    has_alpha: bool
    alpha_max: float
    nodata: float


def _pixel_centres(plan: WarpPlan, window: Window) -> tuple[np.ndarray, np.ndarray]:
    left, top = plan.bounds[0], plan.bounds[3]
    res = plan.resolution
    cols = np.arange(int(window.col_off), int(window.col_off + window.width)) + 0.5
    rows = np.arange(int(window.row_off), int(window.row_off + window.height)) + 0.5
    xs = left + cols * res
    ys = top - rows * res
    return np.meshgrid(xs, ys)


def _local_scale(cols: np.ndarray, rows: np.ndarray, axis: int) -> float:
    """Source pixels advanced per output pixel along an axis (median)."""
    if cols.shape[axis] < 2:
        return 1.0
    step = np.hypot(np.diff(cols, axis=axis), np.diff(rows, axis=axis))
    step = step[np.isfinite(step)]
    if step.size == 0:
        return 1.0
    return max(1.0, float(np.median(step)))


def _read_neighbourhood(
    dataset: Any,
    cols: np.ndarray,
    rows: np.ndarray,
    reach: int,
    indexes: list[int],
    *,
    with_mask: bool,
) -> tuple[np.ndarray, np.ndarray | None, int, int] | None:
    """Read the source window covering the sample positions plus kernel reach."""
    finite = np.isfinite(cols) & np.isfinite(rows)
    if not finite.any():
        return None
    col0 = max(0, int(math.floor(cols[finite].min())) - reach)
    col1 = min(dataset.width, int(math.ceil(cols[finite].max())) + reach)
    row0 = max(0, int(math.floor(rows[finite].min())) - reach)
    row1 = min(dataset.height, int(math.ceil(rows[finite].max())) + reach)
    if col0 >= col1 or row0 >= row1:
        return None
    if (col1 - col0) * (row1 - row0) > MAX_SOURCE_PIXELS:
        raise MemoryError(
            f"Source window {col1 - col0}x{row1 - row0} too large; use a smaller block size."
        )
    window = Window(col0, row0, col1 - col0, row1 - row0)
    data = dataset.read(indexes, window=window).astype("float64")
    valid = None
    if with_mask:
        masks = dataset.read_masks(indexes, window=window)
        valid = np.all(masks > 0, axis=0)
    return data, valid, col0, row0


def _to_pixel(transform: Any, xs: np.ndarray, ys: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    inv = ~transform
    cols = inv.a * xs + inv.b * ys + inv.c
    rows = inv.d * xs + inv.e * ys + inv.f
    return cols, rows


def _warp_block(ctx: _BlockContext, window: Window) -> tuple[np.ndarray, np.ndarray]:
    """Resample one output block.

    Returns a float64 (bands, h, w) buffer and a boolean (h, w) plane that is
    True where the output pixel has source data.
    """
    xs, ys = _pixel_centres(ctx.plan, window)
    sx, sy = ctx.pipeline.inverse(xs.ravel(), ys.ravel())
    sx = sx.reshape(xs.shape)
    sy = sy.reshape(xs.shape)

    src = ctx.datasets.get("source")
    cols, rows = _to_pixel(src.transform, sx, sy)
    scale = (_local_scale(cols, rows, axis=1), _local_scale(cols, rows, axis=0))
    reach = max(ctx.kernel.support(scale[0]), ctx.kernel.support(scale[1])) + 1

    band_count = len(ctx.color_bands)
    out_count = band_count + (1 if ctx.has_alpha else 0)
    out = np.zeros((out_count, *xs.shape), dtype="float64")

    neighbourhood = _read_neighbourhood(
        src, cols, rows, reach, ctx.color_bands, with_mask=True
    )
    if neighbourhood is None:
        if not ctx.has_alpha:
            out[:band_count] = ctx.nodata
        return out, np.zeros(xs.shape, dtype=bool)
    data, valid, col0, row0 = neighbourhood
    result = sample(data, valid, cols - col0, rows - row0, ctx.kernel, scale=scale)

    alpha = result.valid.astype("float64")
    if ctx.has_mask:
        mask_ds = ctx.datasets.get("mask")
        mcols, mrows = _to_pixel(mask_ds.transform, sx, sy)
        mreach = ctx.mask_kernel.support(max(scale)) + 1
        mask_hood = _read_neighbourhood(mask_ds, mcols, mrows, mreach, [1], with_mask=False)
        if mask_hood is None:
            alpha[:] = 0.0
        else:
            mdata, _, mcol0, mrow0 = mask_hood
            mres = sample(mdata, None, mcols - mcol0, mrows - mrow0, ctx.mask_kernel, scale=scale)
            coverage = np.clip(mres.values[0] / 255.0, 0.0, 1.0)
            alpha = np.where(mres.valid, coverage, 0.0) * alpha

    if ctx.has_alpha:
        alpha_out = alpha * ctx.alpha_max
        transparent = np.rint(alpha_out) <= 0
        values = result.values
        values[:, transparent] = 0.0
        out[:band_count] = values
        out[band_count] = alpha_out
        return out, ~transparent
    values = result.values
    values[:, ~result.valid] = ctx.nodata
    out[:band_count] = values
    return out, result.valid


def _open_output(
    output_path: Path,
    plan: WarpPlan,
    *,
    count: int,
    dtype: str,
    nodata: float | None,
    has_alpha: bool,
    creation_options: Mapping[str, Any],
) -> Any:
    profile: dict[str, Any] = {
        "driver": "GTiff",
        "width": plan.width,
        "height": plan.height,
        "count": count,
        "dtype": dtype,
        "crs": normalize_crs(plan.crs).to_wkt(),
        "transform": plan.transform,
        "tiled": True,
        "blockxsize": plan.block_size,
        "blockysize": plan.block_size,
        "bigtiff": "IF_SAFER",
    }
    if not has_alpha and nodata is not None:
        profile["nodata"] = nodata
    for key, value in creation_options.items():
        profile[str(key).lower()] = value
    output_path.parent.mkdir(parents=True, exist_ok=True)
    dest = rasterio.open(output_path, "w", **profile)
    if has_alpha:
        if count == 4:
            dest.colorinterp = [
                ColorInterp.red,
                ColorInterp.green,
                ColorInterp.blue,
                ColorInterp.alpha,
            ]
        else:
            dest.colorinterp = [ColorInterp.gray] * (count - 1) + [ColorInterp.alpha]
    return dest


def _alpha_max(dtype: str) -> float:
    np_dtype = np.dtype(dtype)
    if np.issubdtype(np_dtype, np.integer):
        return float(np.iinfo(np_dtype).max)
    return 255.0


def _warp_settings(
    options: WarpOptions,
    pipeline: CoordinatePipeline,
    *,
    count: int,
    dtype: str,
    has_alpha: bool,
    nodata: float | None,
) -> dict[str, Any]:
    """Output-shaping settings recorded next to the plan for resume checks."""
    return {
        "pipeline": pipeline.definition,
        "resampling": options.resampling,
        "mask_resampling": options.mask_resampling,
        "has_alpha": has_alpha,
        "count": count,
        "dtype": dtype,
        "nodata": None if nodata is None else str(float(nodata)),
    }


def warp_raster(
    src_path: Path,
    output_path: Path,
    *,
    pipeline: CoordinatePipeline,
    target_crs: str,
    options: WarpOptions | None = None,
    mask_path: Path | None = None,
    cancel: CancelToken | None = None,
) -> WarpResult:
    """Reproject ``src_path`` into a tiled GeoTIFF on a target-aligned grid.

    With a ``mask_path`` (or ``options.add_alpha``) an alpha band is
    appended; pixels outside the mask or the source are fully transparent.
    Without alpha or a nodata value, pixels outside the source are flagged
    in an internal dataset mask. Cancellation lets in-flight blocks finish,
    schedules nothing new and leaves the output tagged ``incomplete``.
    """
    options = options or WarpOptions()
    cancel = cancel or CancelToken()
    plan = plan_warp(src_path, pipeline, target_crs, options, mask_path=mask_path)
    kernel = get_kernel(options.resampling)
    mask_kernel = get_kernel(options.mask_resampling)

    with rasterio.open(src_path) as src:
        color_bands = _color_bands(src)
        dtype = src.dtypes[color_bands[0] - 1]
        src_nodata = src.nodata

    has_alpha = mask_path is not None or options.add_alpha
    nodata = options.dst_nodata if options.dst_nodata is not None else src_nodata
    count = len(color_bands) + (1 if has_alpha else 0)
    write_mask = not has_alpha and nodata is None

    settings = _warp_settings(
        options, pipeline, count=count, dtype=dtype, has_alpha=has_alpha, nodata=nodata
    )
    progress = ProgressLog(output_path, plan, settings)
    resuming = False
    if options.resume and output_path.exists():
        resuming = progress.load()
        if not resuming:
            LOGGER.warning("No progress record for %s; rebuilding from scratch.", output_path)
    elif progress.path.exists():
        progress.path.unlink()

    blocks = list(iter_blocks(plan.width, plan.height, plan.block_size))
    total = len(blocks)
    if resuming and progress.status == STATUS_COMPLETE and len(progress.done) == total:
        LOGGER.info("Output %s is already complete.", output_path)
        return WarpResult(
            path=output_path,
            plan=plan,
            complete=True,
            blocks_total=total,
            blocks_done=total,
            has_alpha=has_alpha,
        )
    todo = [(bid, window) for bid, window in blocks if bid not in progress.done]

    paths = {"source": src_path}
    if mask_path is not None:
        paths["mask"] = mask_path
    datasets = _ThreadLocalDatasets(paths)
    ctx = _BlockContext(
        plan=plan,
        pipeline=pipeline,
        kernel=kernel,
        mask_kernel=mask_kernel,
        datasets=datasets,
        color_bands=color_bands,
        has_mask=mask_path is not None,
        has_alpha=has_alpha,
        alpha_max=_alpha_max(dtype),
        nodata=float(nodata) if nodata is not None else 0.0,
    )
    threads = _coerce_threads(options.threads, len(todo))
    LOGGER.info(
        "Warping %s to %s: %sx%s px at %.6f, %s/%s block(s) to do on %s thread(s).",
        src_path,
        plan.crs,
        plan.width,
        plan.height,
        plan.resolution,
        len(todo),
        total,
        threads,
    )

    errors: dict[str, str] = {}
    first_error: BaseException | None = None
    failed_block: str | None = None
    with rasterio.Env(GDAL_TIFF_INTERNAL_MASK=True):
        if resuming:
            dest = rasterio.open(output_path, "r+")
        else:
            dest = _open_output(
                output_path,
                plan,
                count=count,
                dtype=dtype,
                nodata=nodata,
                has_alpha=has_alpha,
                creation_options=options.creation_options,
            )
        try:
            dest.update_tags(**{STATUS_TAG: STATUS_INCOMPLETE})
            queue: Iterator[tuple[str, Window]] = iter(todo)
            max_inflight = threads * 2
            since_checkpoint = 0
            with ThreadPoolExecutor(max_workers=threads) as executor:
                pending: dict[Future, tuple[str, Window]] = {}

                def submit_next() -> bool:
                    if cancel.cancelled or first_error is not None:
                        return False
                    try:
                        bid, window = next(queue)
                    except StopIteration:
                        return False
                    pending[executor.submit(_warp_block, ctx, window)] = (bid, window)
                    return True

                while len(pending) < max_inflight and submit_next():
                    pass
                while pending:
                    done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
                    for future in done:
                        bid, window = pending.pop(future)
                        try:
                            buffer, valid = future.result()
                        except Exception as exc:
                            LOGGER.error("Block %s failed: %s", bid, exc, extra={"block": bid})
                            if options.continue_on_error:
                                errors[bid] = str(exc)
                            elif first_error is None:
                                first_error = exc
                                failed_block = bid
                            continue
                        dest.write(quantize(buffer, dtype), window=window)
                        if write_mask:
                            dest.write_mask(
                                np.where(valid, 255, 0).astype("uint8"), window=window
                            )
                        progress.done.add(bid)
                        since_checkpoint += 1
                        LOGGER.debug("Block %s written.", bid, extra={"block": bid})
                    if since_checkpoint >= _CHECKPOINT_EVERY:
                        # Blocks listed in the sidecar must already be flushed.
                        dest.close()
                        progress.save()
                        dest = rasterio.open(output_path, "r+")
                        since_checkpoint = 0
                        LOGGER.info("%s/%s block(s) written.", len(progress.done), total)
                    while len(pending) < max_inflight and submit_next():
                        pass
            complete = len(progress.done) == total and not errors
            progress.status = STATUS_COMPLETE if complete else STATUS_INCOMPLETE
            dest.update_tags(**{STATUS_TAG: progress.status})
        finally:
            dest.close()
            datasets.close()
            progress.save()

    if first_error is not None:
        if isinstance(first_error, ConfigurationError):
            raise first_error
        raise TileProcessingError(failed_block or "?", str(first_error)) from first_error
    if cancel.cancelled:
        LOGGER.warning(
            "Warp cancelled with %s/%s block(s) written; output marked incomplete.",
            len(progress.done),
            total,
        )
    return WarpResult(
        path=output_path,
        plan=plan,
        complete=progress.status == STATUS_COMPLETE,
        blocks_total=total,
        blocks_done=len(progress.done),
        has_alpha=has_alpha,
        errors=errors,
    )


def read_status(path: Path) -> str | None:
    """Return the completion tag of a warped output, if present."""
    with rasterio.open(path) as dataset:
        return dataset.tags().get(STATUS_TAG)
