"""Command-line entry point.

Usage::

    forest-agreement geodata --geodata plots.shp --type Polygon
    forest-agreement roi --bbox -60.5 -3.2 -60.1 -2.9 --tile-rows 3 --tile-cols 3
    forest-agreement roi --roi region.geojson --export-target catalog \\
        --asset-id users/someone/ForestAgreement_2020

Every flag overrides the matching ``FA_*`` environment variable; unset
flags fall back to the environment, then to the defaults of
``AgreementConfig``. Exit code is 0 on success (even when some export
units were skipped or failed, as recorded in the run summary) and 1 on
a run-level ``PipelineError``.
"""

from __future__ import annotations

import argparse
import logging
import sys

from forest_agreement import __version__
from forest_agreement.core.config import (
    EXPORT_TARGETS,
    GEODATA_TYPES,
    RESAMPLING_METHODS,
    STORAGE_BACKENDS,
    AgreementConfig,
)
from forest_agreement.core.constants import TABLE_FORMATS
from forest_agreement.core.exceptions import PipelineError

logger = logging.getLogger("forest_agreement.cli")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s | %(message)s"


def _add_common_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--resolution", type=float, help="Target grid resolution in metres")
    p.add_argument("--mmu-pixels", type=int, help="Explicit sieve threshold in pixels")
    p.add_argument("--mmu-ha", type=float, help="Minimum mapping unit in hectares")
    p.add_argument("--radius", type=int, help="Majority window radius in pixels")
    p.add_argument("--forest-height", type=int, help="Minimum canopy height (m) for ETH")
    p.add_argument("--resampling", choices=RESAMPLING_METHODS)
    p.add_argument("--export-target", choices=EXPORT_TARGETS)
    p.add_argument("--export-folder", help="Folder receiving path exports")
    p.add_argument("--description", help="Prefix of exported raster names")
    p.add_argument("--asset-id", help="Catalog id prefix for catalog exports")
    p.add_argument("--provider", help="Dataset provider (local, stac)")
    p.add_argument("--provider-root", help="Local dataset tree or STAC cache directory")
    p.add_argument("--stac-url", help="STAC API root")
    p.add_argument("--storage", choices=STORAGE_BACKENDS)
    p.add_argument("--output", help="Root directory of the local store")
    p.add_argument("--max-workers", type=int, help="Worker pool size")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="forest-agreement",
        description="Multi-dataset forest agreement layer for 2020.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command", required=True)

    geodata = sub.add_parser("geodata", help="Assess polygons or points from a vector file")
    geodata.add_argument("--geodata", help="Vector file (SHP, KML, GeoJSON, GPKG)")
    geodata.add_argument("--type", dest="geodata_type", choices=GEODATA_TYPES)
    geodata.add_argument("--buffer-ha", type=float, help="Target area of buffered points")
    geodata.add_argument("--buffer-radius", type=float, help="Explicit point buffer radius (m)")
    geodata.add_argument("--min-area-ha", type=float, help="Minimum polygon area")
    geodata.add_argument("--majority-min", type=int, help="Lowest majority agreement score")
    geodata.add_argument("--join-distance", type=float, help="Cluster join distance (m)")
    geodata.add_argument("--format", dest="export_format", choices=TABLE_FORMATS)
    _add_common_arguments(geodata)

    roi = sub.add_parser("roi", help="Map agreement over one region of interest")
    area = roi.add_mutually_exclusive_group(required=True)
    area.add_argument("--roi", dest="roi_path", help="Vector file holding the ROI polygon")
    area.add_argument(
        "--bbox",
        nargs=4,
        type=float,
        metavar=("WEST", "SOUTH", "EAST", "NORTH"),
        help="ROI as a WGS 84 bounding box",
    )
    roi.add_argument("--tile-rows", type=int)
    roi.add_argument("--tile-cols", type=int)
    _add_common_arguments(roi)
    return p


def config_from_args(args: argparse.Namespace) -> AgreementConfig:
    """Environment configuration with command-line overrides applied."""
    overrides = {
        "target_resolution_m": args.resolution,
        "sieve_threshold_pixels": args.mmu_pixels,
        "mmu_area_ha": args.mmu_ha,
        "agreement_radius": args.radius,
        "forest_height_min_m": args.forest_height,
        "resampling": args.resampling,
        "export_target": args.export_target,
        "export_folder": args.export_folder,
        "export_description": args.description,
        "export_asset_id": args.asset_id,
        "provider": args.provider,
        "provider_root": args.provider_root,
        "stac_url": args.stac_url,
        "storage": args.storage,
        "storage_root": args.output,
        "max_workers": args.max_workers,
    }
    if args.command == "geodata":
        overrides.update(
            {
                "geodata_path": args.geodata,
                "geodata_type": args.geodata_type,
                "point_buffer_ha": args.buffer_ha,
                "point_buffer_radius_m": args.buffer_radius,
                "min_polygon_area_ha": args.min_area_ha,
                "majority_min_agreement": args.majority_min,
                "cluster_join_distance_m": args.join_distance,
                "export_format": args.export_format,
            }
        )
    else:
        overrides.update({"tile_rows": args.tile_rows, "tile_cols": args.tile_cols})
    return AgreementConfig.from_env().with_overrides(**overrides)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=_LOG_FORMAT,
    )

    from forest_agreement.orchestrators.pipeline import run_geodata_pipeline, run_roi_pipeline
    from forest_agreement.stages.resolve_region import load_roi, roi_from_bbox

    try:
        config = config_from_args(args)
        if args.command == "geodata":
            summary = run_geodata_pipeline(config)
        else:
            roi = roi_from_bbox(*args.bbox) if args.bbox else load_roi(args.roi_path)
            summary = run_roi_pipeline(config, roi)
    except PipelineError as exc:
        logger.error("Run failed | code=%s | stage=%s | error=%s", exc.code, exc.stage, exc)
        return 1

    print(summary.to_json())
    return 0


if __name__ == "__main__":
    sys.exit(main())
