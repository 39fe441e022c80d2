"""Mosaic builder for same-projection orthophoto tiles.

Overlap policy: with ``method="first"`` the first listed source wins where
sources overlap, with ``method="last"`` the last listed one does. When the
sources declare a nodata value, nodata pixels never cover valid pixels of
another source.
"""

from __future__ import annotations

import logging
import math
import os
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Sequence

import rasterio
from rasterio.dtypes import dtype_rev, typename_fwd
from rasterio.merge import merge
from rasterio.transform import from_origin

from orthowarp.raster.errors import ConfigurationError
from orthowarp.raster.models import MosaicResult

LOGGER = logging.getLogger(__name__)

MOSAIC_METHODS = ("first", "last")

# Sources must sit on a shared pixel grid within this fraction of a pixel.
_GRID_TOLERANCE = 1e-3


def _check_compatible(sources: Sequence[rasterio.io.DatasetReader]) -> None:
    """Reject source sets that cannot share one pixel grid."""
    base = sources[0]
    if base.crs is None:
        raise ConfigurationError(f"Source raster CRS is required for mosaics: {base.name}")
    res_x, res_y = abs(base.res[0]), abs(base.res[1])
    for src in sources[1:]:
        if src.crs != base.crs:
            raise ConfigurationError(
                f"All mosaic sources must share the same CRS: {src.name} is "
                f"{src.crs.to_string() if src.crs else None}, expected {base.crs.to_string()}."
            )
        if src.count != base.count:
            raise ConfigurationError("All mosaic sources must share the same band count.")
        if src.dtypes[0] != base.dtypes[0]:
            raise ConfigurationError("All mosaic sources must share the same dtype.")
        if not (
            math.isclose(abs(src.res[0]), res_x, rel_tol=1e-9)
            and math.isclose(abs(src.res[1]), res_y, rel_tol=1e-9)
        ):
            raise ConfigurationError("All mosaic sources must share the same resolution.")
        if src.nodata != base.nodata:
            LOGGER.warning(
                "Source %s nodata %s differs from %s; using %s.",
                src.name,
                src.nodata,
                base.nodata,
                base.nodata,
            )


def _grid_offset(value: float, origin: float, res: float, name: str) -> int:
    offset = (value - origin) / res
    rounded = int(round(offset))
    if abs(offset - rounded) > _GRID_TOLERANCE:
        raise ConfigurationError(f"Source {name} is not aligned to the mosaic pixel grid.")
    return rounded


def _build_vrt_mosaic(
    raster_paths: Sequence[Path],
    output_path: Path,
    *,
    method: str,
) -> MosaicResult:
    """Build a VRT mosaic from source rasters."""
    sources = [rasterio.open(path) for path in raster_paths]
    try:
        _check_compatible(sources)
        base = sources[0]
        crs = base.crs
        res_x, res_y = abs(base.res[0]), abs(base.res[1])
        band_count = base.count
        nodata = base.nodata

        min_x = min(src.bounds.left for src in sources)
        min_y = min(src.bounds.bottom for src in sources)
        max_x = max(src.bounds.right for src in sources)
        max_y = max(src.bounds.top for src in sources)
        width = max(1, int(round((max_x - min_x) / res_x)))
        height = max(1, int(round((max_y - min_y) / res_y)))
        transform = from_origin(min_x, max_y, res_x, res_y)
        geotransform = ", ".join(
            f"{value:.10f}" for value in transform.to_gdal()  # type: ignore[reportAttributeAccessIssue]
        )
        srs = crs.to_wkt()
        if srs:
            srs = " ".join(srs.split())

        # VRT sources are painted in order, so the winner goes last.
        ordered_sources = list(reversed(sources)) if method == "first" else sources

        root = ET.Element(
            "VRTDataset",
            rasterXSize=str(width),
            rasterYSize=str(height),
        )
        ET.SubElement(root, "SRS").text = srs
        ET.SubElement(root, "GeoTransform").text = geotransform

        relative_root = output_path.parent
        dtype_name = typename_fwd[dtype_rev[base.dtypes[0]]]
        for band_index in range(1, band_count + 1):
            band_node = ET.SubElement(
                root,
                "VRTRasterBand",
                dataType=dtype_name,
                band=str(band_index),
            )
            color = base.colorinterp[band_index - 1]
            ET.SubElement(band_node, "ColorInterp").text = color.name.capitalize()
            if nodata is not None:
                ET.SubElement(band_node, "NoDataValue").text = repr(float(nodata))
            for src in ordered_sources:
                bounds = src.bounds
                dst_x_off = _grid_offset(bounds.left, min_x, res_x, src.name)
                dst_y_off = _grid_offset(max_y, bounds.top, res_y, src.name)
                source_tag = "ComplexSource" if nodata is not None else "SimpleSource"
                source_node = ET.SubElement(band_node, source_tag)
                rel_path = os.path.relpath(src.name, relative_root)
                ET.SubElement(
                    source_node,
                    "SourceFilename",
                    relativeToVRT="1",
                ).text = Path(rel_path).as_posix()
                ET.SubElement(source_node, "SourceBand").text = str(band_index)
                ET.SubElement(
                    source_node,
                    "SrcRect",
                    xOff="0",
                    yOff="0",
                    xSize=str(src.width),
                    ySize=str(src.height),
                )
                ET.SubElement(
                    source_node,
                    "DstRect",
                    xOff=str(dst_x_off),
                    yOff=str(dst_y_off),
                    xSize=str(src.width),
                    ySize=str(src.height),
                )
                if nodata is not None:
                    ET.SubElement(source_node, "NODATA").text = repr(float(nodata))

        output_path.parent.mkdir(parents=True, exist_ok=True)
        tree = ET.ElementTree(root)
        tree.write(output_path, encoding="utf-8", xml_declaration=True)
        LOGGER.info(
            "Mosaic VRT of %s source(s) written to %s (%sx%s).",
            len(sources),
            output_path,
            width,
            height,
        )
        return MosaicResult(
            path=output_path,
            crs=crs.to_string(),
            bounds=(min_x, min_y, max_x, max_y),
            resolution=(res_x, res_y),
            count=band_count,
            sources=tuple(Path(path) for path in raster_paths),
        )
    finally:
        for src in sources:
            src.close()


def build_mosaic(
    raster_paths: Sequence[Path],
    output_path: Path,
    *,
    method: str = "first",
    driver: str = "VRT",
    compression: str | None = None,
) -> MosaicResult:
    """Compose source rasters into a single mosaic dataset.

    The default VRT driver is lazy: no pixel data is copied. ``GTiff``
    materializes the mosaic through ``rasterio.merge``.
    """
    if not raster_paths:
        raise ConfigurationError("At least one source raster path is required.")
    if method not in MOSAIC_METHODS:
        raise ConfigurationError(f"Mosaic method must be one of {MOSAIC_METHODS}, got {method!r}")

    if driver.upper() == "VRT":
        return _build_vrt_mosaic(raster_paths, output_path, method=method)

    sources = [rasterio.open(path) for path in raster_paths]
    try:
        _check_compatible(sources)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        dst_kwds = {"driver": driver}
        if compression:
            dst_kwds["compress"] = compression
        merge(
            sources,
            method=method,
            dst_path=output_path,
            dst_kwds=dst_kwds,
        )
    finally:
        for src in sources:
            src.close()

    with rasterio.open(output_path) as dataset:
        bounds = dataset.bounds
        LOGGER.info("Mosaic of %s source(s) written to %s.", len(raster_paths), output_path)
        return MosaicResult(
            path=output_path,
            crs=dataset.crs.to_string(),
            bounds=(bounds.left, bounds.bottom, bounds.right, bounds.top),
            resolution=(abs(dataset.res[0]), abs(dataset.res[1])),
            count=dataset.count,
            sources=tuple(Path(path) for path in raster_paths),
        )
