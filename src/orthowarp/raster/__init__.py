"""Raster processing helpers and exports."""

from orthowarp.raster.coordops import CoordinatePipeline, PipelineStep, pipeline_from_config
from orthowarp.raster.coverage import Coverage, derive_coverage, heal_geometry, load_coverage
from orthowarp.raster.crs import normalize_crs, transform_bounds, transformer
from orthowarp.raster.errors import (
    ConfigurationError,
    GeometryError,
    OrthowarpError,
    TileProcessingError,
)
from orthowarp.raster.info import inspect_raster
from orthowarp.raster.kernels import KERNELS, get_kernel
from orthowarp.raster.mask import MaskGrid, MaskOptions, mask_grid_for_raster, rasterize_mask
from orthowarp.raster.models import (
    MaskResult,
    MosaicResult,
    OverviewResult,
    RasterInfo,
    WarpPlan,
    WarpResult,
)
from orthowarp.raster.mosaic import build_mosaic
from orthowarp.raster.overviews import build_overviews
from orthowarp.raster.reproject import CancelToken, WarpOptions, plan_warp, read_status, warp_raster
from orthowarp.raster.tilegrid import (
    grid_shape,
    resolution_for_zoom,
    snap_bounds,
    xyz_tile_bounds,
    xyz_tiles_for_bounds,
)
from orthowarp.raster.window import read_tile_rgba

__all__ = [
    "CancelToken",
    "ConfigurationError",
    "CoordinatePipeline",
    "Coverage",
    "GeometryError",
    "KERNELS",
    "MaskGrid",
    "MaskOptions",
    "MaskResult",
    "MosaicResult",
    "OrthowarpError",
    "OverviewResult",
    "PipelineStep",
    "RasterInfo",
    "TileProcessingError",
    "WarpOptions",
    "WarpPlan",
    "WarpResult",
    "build_mosaic",
    "build_overviews",
    "derive_coverage",
    "get_kernel",
    "grid_shape",
    "heal_geometry",
    "inspect_raster",
    "load_coverage",
    "mask_grid_for_raster",
    "normalize_crs",
    "pipeline_from_config",
    "plan_warp",
    "rasterize_mask",
    "read_status",
    "read_tile_rgba",
    "resolution_for_zoom",
    "snap_bounds",
    "transform_bounds",
    "transformer",
    "warp_raster",
    "xyz_tile_bounds",
    "xyz_tiles_for_bounds",
]
