"""Command-line interface for orthowarp."""

from __future__ import annotations

import argparse
import json
import logging
import signal
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable

import rasterio

from orthowarp import __version__
from orthowarp.config import load_job_config
from orthowarp.logging_utils import LogOptions, configure_logging
from orthowarp.perf import PerfTracker, resolve_metrics_path
from orthowarp.raster.coordops import pipeline_from_config
from orthowarp.raster.coverage import derive_coverage, load_coverage
from orthowarp.raster.errors import GeometryError, OrthowarpError, TileProcessingError
from orthowarp.raster.info import inspect_raster
from orthowarp.raster.kernels import KERNELS
from orthowarp.raster.mask import MaskOptions, mask_grid_for_raster, rasterize_mask
from orthowarp.raster.mosaic import MOSAIC_METHODS, build_mosaic
from orthowarp.raster.overviews import build_overviews
from orthowarp.raster.pipeline import run_job
from orthowarp.raster.reproject import CancelToken, WarpOptions, warp_raster
from orthowarp.raster.tilegrid import resolution_for_zoom
from orthowarp.raster.window import read_tile_rgba

RESAMPLING_CHOICES = tuple(KERNELS)
LOGGER = logging.getLogger("orthowarp.cli")

EXIT_OK = 0
EXIT_INCOMPLETE = 1
EXIT_CONFIG = 2


def _parse_creation_option(value: str) -> tuple[str, str]:
    key, sep, option = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {value!r}")
    return key.strip(), option.strip()


def _add_run_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the job runner subcommand."""
    run = subparsers.add_parser("run", help="Run a job config end to end.")
    run.add_argument("config", help="Path to the job config JSON.")
    run.add_argument(
        "--resume",
        action="store_true",
        help="Continue an interrupted warp from its progress record.",
    )
    run.add_argument(
        "--metrics-json",
        help="Write stage timings to this path (or $ORTHOWARP_PROFILE_DIR).",
    )
    run.add_argument(
        "--profile-memory",
        action="store_true",
        help="Also record peak Python memory in the metrics.",
    )


def _add_mosaic_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the mosaic subcommand."""
    mosaic = subparsers.add_parser("mosaic", help="Combine source tiles into one mosaic.")
    mosaic.add_argument("sources", nargs="+", help="Source rasters, in priority order.")
    mosaic.add_argument("-o", "--output", required=True, help="Mosaic output path.")
    mosaic.add_argument(
        "--method",
        choices=MOSAIC_METHODS,
        default="first",
        help="Which source wins where tiles overlap.",
    )
    mosaic.add_argument(
        "--driver",
        choices=("VRT", "GTiff"),
        default="VRT",
        help="VRT references the sources; GTiff copies pixels.",
    )


def _add_mask_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the alpha mask subcommand."""
    mask = subparsers.add_parser("mask", help="Burn a coverage polygon into an alpha raster.")
    mask.add_argument("coverage", help="GeoJSON coverage polygons.")
    mask.add_argument("--template", required=True, help="Raster whose grid the mask follows.")
    mask.add_argument("-o", "--output", required=True, help="Mask GeoTIFF output path.")
    mask.add_argument("--crs", help="Coverage CRS when the GeoJSON does not declare one.")
    mask.add_argument(
        "--intersect",
        help="Second polygon set; the mask covers only the area both share.",
    )
    mask.add_argument("--invert", action="store_true", help="Burn outside the polygons.")
    mask.add_argument(
        "--all-touched",
        action="store_true",
        help="Burn every pixel the polygon boundary touches.",
    )
    mask.add_argument(
        "--no-align",
        action="store_true",
        help="Keep the template extent instead of snapping it to whole pixels.",
    )


def _add_warp_options(parser: argparse.ArgumentParser) -> None:
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--zoom", type=int, help="Web mercator zoom defining the resolution.")
    target.add_argument("--resolution", type=float, help="Target pixel size in target units.")
    parser.add_argument("--tile-size", type=int, default=256, help="Tile size for --zoom.")
    parser.add_argument(
        "--resampling",
        choices=RESAMPLING_CHOICES,
        default="lanczos",
        help="Resampling kernel.",
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=0,
        help="Worker threads (0 = one per CPU).",
    )
    parser.add_argument("--block-size", type=int, default=512, help="Output block size.")
    parser.add_argument(
        "--co",
        dest="creation_options",
        action="append",
        type=_parse_creation_option,
        default=[],
        metavar="KEY=VALUE",
        help="GDAL creation option (repeatable).",
    )
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Record failed blocks and keep going.",
    )


def _add_warp_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the warp subcommand."""
    warp = subparsers.add_parser("warp", help="Reproject a raster through a PROJ pipeline.")
    warp.add_argument("source", help="Source raster or mosaic.")
    warp.add_argument("-o", "--output", required=True, help="Warped GeoTIFF output path.")
    warp.add_argument("--target-crs", required=True, help="Target CRS, e.g. EPSG:3857.")
    warp.add_argument("--source-crs", help="Expected source CRS (defaults to the raster's).")
    warp.add_argument(
        "--pipeline",
        help="PROJ pipeline string; omit to let PROJ pick the CRS-to-CRS operation.",
    )
    warp.add_argument("--mask", help="Alpha mask GeoTIFF on the source grid.")
    warp.add_argument(
        "--resume",
        action="store_true",
        help="Continue an interrupted warp from its progress record.",
    )
    _add_warp_options(warp)


def _add_overviews_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the overviews subcommand."""
    overviews = subparsers.add_parser("overviews", help="Build overviews in place.")
    overviews.add_argument("raster", help="Raster to add overviews to.")
    overviews.add_argument(
        "--resampling",
        choices=RESAMPLING_CHOICES,
        default="lanczos",
        help="Resampling kernel for overview levels.",
    )
    overviews.add_argument(
        "--factor",
        dest="factors",
        type=int,
        action="append",
        help="Overview factor (repeatable, powers of two).",
    )


def _add_info_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the info subcommand."""
    info = subparsers.add_parser("info", help="Print raster metadata as JSON.")
    info.add_argument("raster", help="Raster to inspect.")


def _add_resolution_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the resolution subcommand."""
    resolution = subparsers.add_parser(
        "resolution", help="Print the web mercator pixel size of a zoom level."
    )
    resolution.add_argument("zoom", type=int, help="Zoom level (0-30).")
    resolution.add_argument("--tile-size", type=int, default=256, help="Tile size in pixels.")


def _add_tile_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the XYZ tile extraction subcommand."""
    tile = subparsers.add_parser("tile", help="Cut one XYZ tile from a web mercator raster.")
    tile.add_argument("raster", help="Warped EPSG:3857 raster.")
    tile.add_argument("z", type=int)
    tile.add_argument("x", type=int)
    tile.add_argument("y", type=int)
    tile.add_argument("-o", "--output", required=True, help="PNG output path.")
    tile.add_argument("--tile-size", type=int, default=256, help="Tile size in pixels.")


def _install_cancel_handler(token: CancelToken) -> Callable[[], None]:
    """Route the first Ctrl-C to ``token``; a second one interrupts."""
    previous = signal.getsignal(signal.SIGINT)

    def handler(signum: int, frame: Any) -> None:
        if token.cancelled:
            raise KeyboardInterrupt
        LOGGER.warning("Cancelling; waiting for in-flight blocks. Press Ctrl-C again to abort.")
        token.cancel()

    signal.signal(signal.SIGINT, handler)
    return lambda: signal.signal(signal.SIGINT, previous)


def _write_png(path: Path, tile: Any) -> None:
    height, width, bands = tile.shape
    path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(
        path,
        "w",
        driver="PNG",
        width=width,
        height=height,
        count=bands,
        dtype="uint8",
    ) as dest:
        dest.write(tile.transpose(2, 0, 1))


def _run_command(args: argparse.Namespace) -> int:
    if args.command == "run":
        config = load_job_config(Path(args.config))
        metrics_path = resolve_metrics_path(args.metrics_json)
        perf = PerfTracker(
            enabled=metrics_path is not None,
            track_memory=bool(args.profile_memory),
        )
        token = CancelToken()
        restore = _install_cancel_handler(token)
        try:
            result = run_job(config, resume=args.resume, cancel=token, perf=perf)
        finally:
            restore()
        if metrics_path is not None:
            perf.write(metrics_path)
            LOGGER.info("Metrics written to %s.", metrics_path)
        if result.warp.errors:
            for block, error in sorted(result.warp.errors.items()):
                LOGGER.error("Block %s: %s", block, error, extra={"block": block})
        if not result.complete:
            LOGGER.error(
                "Run incomplete: %s/%s block(s) written. Rerun with --resume.",
                result.warp.blocks_done,
                result.warp.blocks_total,
            )
            return EXIT_INCOMPLETE
        LOGGER.info("Wrote %s.", result.warp.path)
        return EXIT_OK
    if args.command == "mosaic":
        result = build_mosaic(
            [Path(path) for path in args.sources],
            Path(args.output),
            method=args.method,
            driver=args.driver,
        )
        LOGGER.info("Mosaic %s covers %s.", result.path, result.bounds)
        return EXIT_OK
    if args.command == "mask":
        coverage = load_coverage(Path(args.coverage), crs=args.crs)
        if args.intersect:
            coverage = derive_coverage(coverage, load_coverage(Path(args.intersect), crs=args.crs))
        options = MaskOptions(
            invert=args.invert,
            align=not args.no_align,
            all_touched=args.all_touched,
        )
        grid = mask_grid_for_raster(Path(args.template))
        result = rasterize_mask(coverage, grid, Path(args.output), options=options)
        if result.healed:
            LOGGER.warning("%s coverage geometr(ies) were repaired.", result.healed)
        return EXIT_OK
    if args.command == "warp":
        source = Path(args.source)
        with rasterio.open(source) as dataset:
            source_crs = args.source_crs or (dataset.crs.to_string() if dataset.crs else None)
        if source_crs is None:
            LOGGER.error("Source raster has no CRS; pass --source-crs.")
            return EXIT_CONFIG
        pipeline = pipeline_from_config(
            args.pipeline, source_crs=source_crs, target_crs=args.target_crs
        )
        options = WarpOptions(
            zoom=args.zoom,
            resolution=args.resolution,
            tile_size=args.tile_size,
            resampling=args.resampling,
            threads=args.threads,
            block_size=args.block_size,
            creation_options=dict(args.creation_options),
            continue_on_error=args.continue_on_error,
            resume=args.resume,
        )
        token = CancelToken()
        restore = _install_cancel_handler(token)
        try:
            result = warp_raster(
                source,
                Path(args.output),
                pipeline=pipeline,
                target_crs=args.target_crs,
                options=options,
                mask_path=Path(args.mask) if args.mask else None,
                cancel=token,
            )
        finally:
            restore()
        if not result.complete:
            LOGGER.error(
                "Warp incomplete: %s/%s block(s) written.",
                result.blocks_done,
                result.blocks_total,
            )
            return EXIT_INCOMPLETE
        return EXIT_OK
    if args.command == "overviews":
        build_overviews(Path(args.raster), resampling=args.resampling, factors=args.factors)
        return EXIT_OK
    if args.command == "info":
        info = asdict(inspect_raster(Path(args.raster)))
        info["path"] = str(info["path"])
        print(json.dumps(info, indent=2))
        return EXIT_OK
    if args.command == "resolution":
        print(f"{resolution_for_zoom(args.zoom, args.tile_size):.10f}")
        return EXIT_OK
    if args.command == "tile":
        tile = read_tile_rgba(
            Path(args.raster), args.z, args.x, args.y, tile_size=args.tile_size
        )
        _write_png(Path(args.output), tile)
        LOGGER.info("Tile %s/%s/%s written to %s.", args.z, args.x, args.y, args.output)
        return EXIT_OK
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    """Run the CLI entrypoint and return an exit code."""
    parser = argparse.ArgumentParser(
        prog="orthowarp",
        description="Mosaic, mask and reproject orthophotos to web mercator.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Reduce log output to warnings and errors.",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Emit logs as JSON on stderr.",
    )
    parser.add_argument(
        "--log-file",
        help="Optional path for JSON log output.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    _add_run_parser(subparsers)
    _add_mosaic_parser(subparsers)
    _add_mask_parser(subparsers)
    _add_warp_parser(subparsers)
    _add_overviews_parser(subparsers)
    _add_info_parser(subparsers)
    _add_resolution_parser(subparsers)
    _add_tile_parser(subparsers)

    args = parser.parse_args(argv)
    configure_logging(
        LogOptions(
            verbose=args.verbose or 0,
            quiet=bool(args.quiet),
            log_file=Path(args.log_file) if args.log_file else None,
            json_console=bool(args.log_json),
        )
    )

    try:
        return _run_command(args)
    except GeometryError as exc:
        LOGGER.error("Coverage error: %s", exc)
        return EXIT_CONFIG
    except TileProcessingError as exc:
        LOGGER.error("%s", exc, extra={"block": exc.block})
        return EXIT_INCOMPLETE
    except OrthowarpError as exc:
        LOGGER.error("Configuration error: %s", exc)
        return EXIT_CONFIG


if __name__ == "__main__":
    raise SystemExit(main())
