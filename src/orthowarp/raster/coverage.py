"""Valid-data coverage polygons: loading, healing, dissolve and intersection."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from shapely import make_valid
from shapely.geometry import GeometryCollection, MultiPolygon, Polygon, mapping, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform as transform_geometry
from shapely.ops import unary_union

from orthowarp.raster.crs import crs_equal, transformer
from orthowarp.raster.errors import GeometryError

LOGGER = logging.getLogger(__name__)

DEFAULT_COVERAGE_CRS = "EPSG:4326"


@dataclass(frozen=True)
class Coverage:
    """Healed polygon coverage in a single CRS."""

    geometries: tuple[BaseGeometry, ...]
    crs: str
    healed: int = 0
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def union(self) -> BaseGeometry:
        return unary_union(list(self.geometries))

    def shapes(self) -> list[dict[str, Any]]:
        """Return GeoJSON-like geometry mappings."""
        return [mapping(geom) for geom in self.geometries]


def _extract_geojson_shapes(data: Mapping[str, Any]) -> list[dict[str, Any]]:
    shapes: list[dict[str, Any]] = []
    if data.get("type") == "FeatureCollection":
        for feature in data.get("features", []):
            geometry = feature.get("geometry")
            if geometry:
                shapes.append(geometry)
    elif data.get("type") == "Feature":
        geometry = data.get("geometry")
        if geometry:
            shapes.append(geometry)
    elif data.get("type") in {"Polygon", "MultiPolygon", "GeometryCollection"}:
        shapes.append(dict(data))
    return shapes


def _extract_geojson_crs(data: Mapping[str, Any]) -> str | None:
    crs = data.get("crs")
    if isinstance(crs, dict):
        properties = crs.get("properties")
        if isinstance(properties, dict):
            name = properties.get("name")
            if isinstance(name, str):
                return name
    if isinstance(crs, str):
        return crs
    return None


def _polygonal_part(geom: BaseGeometry) -> BaseGeometry:
    """Drop non-areal members left behind by make_valid."""
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    if isinstance(geom, GeometryCollection):
        polygons = [
            part for part in geom.geoms if isinstance(part, (Polygon, MultiPolygon))
        ]
        return unary_union(polygons) if polygons else Polygon()
    return Polygon()


def heal_geometry(geom: BaseGeometry) -> tuple[BaseGeometry, bool]:
    """Return a valid polygonal geometry and whether healing was applied.

    Invalid input goes through ``make_valid`` followed by ``buffer(0)``;
    anything still empty or invalid afterwards raises GeometryError.
    """
    if geom.is_empty:
        raise GeometryError("Coverage geometry is empty.")
    if geom.geom_type not in {"Polygon", "MultiPolygon", "GeometryCollection"}:
        raise GeometryError(f"Coverage geometry must be polygonal, got {geom.geom_type}.")
    if geom.is_valid:
        polygonal = _polygonal_part(geom)
        if polygonal.is_empty:
            raise GeometryError("Coverage geometry has no polygon area.")
        return polygonal, False
    healed = _polygonal_part(make_valid(geom)).buffer(0)
    if healed.is_empty or not healed.is_valid:
        raise GeometryError("Coverage geometry is invalid and could not be healed.")
    return healed, True


def heal_geometries(geometries: Iterable[BaseGeometry]) -> tuple[list[BaseGeometry], int]:
    """Heal every geometry, returning the valid list and the number healed."""
    healed_count = 0
    result: list[BaseGeometry] = []
    for geom in geometries:
        fixed, healed = heal_geometry(geom)
        healed_count += int(healed)
        result.append(fixed)
    if not result:
        raise GeometryError("No polygon geometries in coverage.")
    return result, healed_count


def coverage_from_shapes(
    shapes: Iterable[Mapping[str, Any] | BaseGeometry],
    crs: str,
    *,
    warnings: tuple[str, ...] = (),
) -> Coverage:
    """Build a healed Coverage from GeoJSON-like mappings or shapely geometries."""
    geometries = [
        item if isinstance(item, BaseGeometry) else shape(item) for item in shapes
    ]
    if not geometries:
        raise GeometryError("No polygon geometries in coverage.")
    healed, count = heal_geometries(geometries)
    if count:
        LOGGER.warning("Healed %s invalid coverage geometr%s.", count, "y" if count == 1 else "ies")
    return Coverage(geometries=tuple(healed), crs=crs, healed=count, warnings=warnings)


def _read_geojson(path: Path) -> tuple[list[dict[str, Any]], str | None]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise GeometryError("Coverage file must be a GeoJSON object.")
    return _extract_geojson_shapes(data), _extract_geojson_crs(data)


def _read_vector_file(path: Path) -> tuple[list[dict[str, Any]], str | None]:
    try:
        import fiona  # type: ignore[import-not-found]
    except ImportError as exc:
        raise GeometryError(
            f"{path.suffix} coverage requires the optional 'fiona' dependency."
        ) from exc
    shapes: list[dict[str, Any]] = []
    with fiona.open(path) as dataset:
        crs_value = dataset.crs_wkt or None
        for feature in dataset:
            geometry = feature.geometry
            if geometry:
                shapes.append(dict(geometry))
    return shapes, crs_value


def load_coverage(path: Path, *, crs: str | None = None) -> Coverage:
    """Load coverage polygons from GeoJSON, or a shapefile/GeoPackage via fiona."""
    suffix = path.suffix.lower()
    if suffix in {".json", ".geojson"}:
        shapes, embedded = _read_geojson(path)
    elif suffix in {".shp", ".gpkg"}:
        shapes, embedded = _read_vector_file(path)
    else:
        raise GeometryError(f"Unsupported coverage format: {path.suffix}")
    if not shapes:
        raise GeometryError(f"No polygon geometries found in {path}")

    warnings: list[str] = []
    if crs and embedded and not crs_equal(crs, embedded):
        warnings.append(f"Coverage CRS mismatch: embedded {embedded} differs from {crs}.")
    resolved = crs or embedded
    if resolved is None:
        warnings.append(f"Coverage CRS missing; assuming {DEFAULT_COVERAGE_CRS}.")
        resolved = DEFAULT_COVERAGE_CRS
    for message in warnings:
        LOGGER.warning(message)
    return coverage_from_shapes(shapes, resolved, warnings=tuple(warnings))


def reproject_coverage(coverage: Coverage, dst_crs: str) -> Coverage:
    """Reproject coverage polygons into another CRS."""
    if crs_equal(coverage.crs, dst_crs):
        return coverage
    tx = transformer(coverage.crs, dst_crs)
    projected = [transform_geometry(tx.transform, geom) for geom in coverage.geometries]
    healed, count = heal_geometries(projected)
    return Coverage(
        geometries=tuple(healed),
        crs=dst_crs,
        healed=coverage.healed + count,
        warnings=coverage.warnings,
    )


def derive_coverage(cycles: Coverage, footprints: Coverage) -> Coverage:
    """Dissolve both polygon sets and keep the area they share.

    ``footprints`` is reprojected into the CRS of ``cycles`` first.
    """
    footprints = reproject_coverage(footprints, cycles.crs)
    dissolved = _polygonal_part(cycles.union().intersection(footprints.union()))
    if dissolved.is_empty:
        raise GeometryError("Coverage sets do not overlap.")
    result, healed = heal_geometry(dissolved)
    return Coverage(
        geometries=(result,),
        crs=cycles.crs,
        healed=cycles.healed + footprints.healed + int(healed),
        warnings=cycles.warnings + footprints.warnings,
    )


def write_coverage(coverage: Coverage, path: Path) -> Path:
    """Write coverage polygons as a GeoJSON FeatureCollection."""
    payload = {
        "type": "FeatureCollection",
        "crs": {"type": "name", "properties": {"name": coverage.crs}},
        "features": [
            {"type": "Feature", "properties": {}, "geometry": geometry}
            for geometry in coverage.shapes()
        ],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path
