"""Export stage: split the filtered agreement raster into export units.

Geodata mode exports one raster per cluster (bounding box of a group of
nearby geometries), ROI mode one raster per tile of a rows x cols grid
over the ROI bounds. Every unit is reprojected to its own best-fit UTM
CRS by the store and written independently: an empty unit is skipped
with a warning and a failing unit never aborts its siblings.

Export encodings:
- Cluster mode: ``int16``, nodata ``-1``
- ROI mode: ``uint8``, nodata ``255``
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from forest_agreement.core.constants import EXPORT_NODATA
from forest_agreement.core.exceptions import (
    EmptyRegionWarning,
    PipelineError,
    PixelBudgetExceeded,
    ValidationError,
)
from forest_agreement.models.raster import Raster
from forest_agreement.models.summary import (
    STATUS_EXPORTED,
    STATUS_FAILED,
    STATUS_SKIPPED,
    UNIT_CLUSTER,
    UNIT_TILE,
    UnitOutcome,
)
from forest_agreement.stages.reclassify import clip_to_region
from forest_agreement.stages.statistics import best_utm_epsg, grid_window, subgrid
from forest_agreement.storage.base import StorageTarget
from forest_agreement.utils.export_names import (
    TARGET_CATALOG,
    TARGET_PATH,
    cluster_export_name,
    tile_export_name,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shapely.geometry.base import BaseGeometry

    from forest_agreement.core.config import AgreementConfig
    from forest_agreement.models.geometry import Cluster
    from forest_agreement.storage.base import RasterStore

logger = logging.getLogger("forest_agreement.stages.export")

CLUSTER_DTYPE = "int16"
TILE_DTYPE = "uint8"
RASTER_FORMAT = "GeoTIFF"


# ---------------------------------------------------------------------------
# Units of work
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Tile:
    """One non-empty tile of the ROI grid.

    Attributes:
        index: 0-based position among the kept tiles, column-major.
        bounds: ``(west, south, east, north)`` of the full tile.
        region: Tile intersected with the ROI.
        crs: Best-fit UTM CRS of ``region``.
    """

    index: int
    bounds: tuple[float, float, float, float]
    region: BaseGeometry
    crs: str


@dataclass(frozen=True)
class ExportTask:
    """One raster export.

    Attributes:
        name: Output name (``{prefix}_Cluster_{n}`` or ``{prefix}_tile_{i}``).
        kind: ``cluster`` or ``tile``.
        region: WGS 84 region covered by the export.
        crs: UTM CRS the raster is written in.
        raster: Agreement raster cropped and clipped to ``region``.
        dtype: Export data type.
        max_value: Highest valid agreement score (dataset count).
    """

    name: str
    kind: str
    region: BaseGeometry
    crs: str
    raster: Raster
    dtype: str
    max_value: int


def partition_tiles(roi: BaseGeometry, rows: int, cols: int) -> list[Tile]:
    """Split the ROI bounds into ``rows x cols`` equal-angle tiles.

    Tiles are enumerated column by column (west to east, south to north
    within a column); tiles that do not intersect the ROI are dropped and
    the remaining ones are numbered consecutively from 0.

    Raises:
        ValidationError: If *rows* or *cols* is below 1.
    """
    from shapely.geometry import box

    if rows < 1 or cols < 1:
        msg = f"Tile grid must be at least 1x1, got {rows}x{cols}"
        raise ValidationError(msg, stage="export", code="INVALID_TILE_GRID")

    west, south, east, north = roi.bounds
    width = (east - west) / cols
    height = (north - south) / rows

    tiles: list[Tile] = []
    for col in range(cols):
        for row in range(rows):
            bounds = (
                west + col * width,
                south + row * height,
                west + (col + 1) * width,
                south + (row + 1) * height,
            )
            region = box(*bounds).intersection(roi)
            if region.is_empty or region.area == 0:
                continue
            tiles.append(
                Tile(index=len(tiles), bounds=bounds, region=region, crs=best_utm_epsg(region))
            )
    logger.info("Tiles partitioned | grid=%dx%d | kept=%d", rows, cols, len(tiles))
    return tiles


def crop_to_region(raster: Raster, region: BaseGeometry) -> Raster:
    """Window of *raster* covering *region*, nodata outside the region."""
    rows, cols = grid_window(raster.grid, region.bounds)
    window = subgrid(raster.grid, rows, cols)
    cropped = Raster(raster.data[rows, cols].copy(), window.transform, raster.crs, raster.nodata)
    if cropped.data.size == 0:
        return cropped
    return clip_to_region(cropped, region, raster.nodata)


def cluster_export_tasks(
    filtered: Raster,
    clusters: Sequence[Cluster],
    *,
    max_value: int,
    description: str,
    target_kind: str = TARGET_PATH,
    asset_id: str = "",
) -> list[ExportTask]:
    """One ``int16`` task per cluster, in cluster order."""
    tasks = []
    for cluster in clusters:
        region = cluster.region
        tasks.append(
            ExportTask(
                name=cluster_export_name(
                    cluster.number,
                    description=description,
                    target_kind=target_kind,
                    asset_id=asset_id,
                ),
                kind=UNIT_CLUSTER,
                region=region,
                crs=best_utm_epsg(region),
                raster=crop_to_region(filtered, region),
                dtype=CLUSTER_DTYPE,
                max_value=max_value,
            )
        )
    return tasks


def tile_export_tasks(
    filtered: Raster,
    tiles: Sequence[Tile],
    *,
    max_value: int,
    description: str,
    target_kind: str = TARGET_PATH,
    asset_id: str = "",
) -> list[ExportTask]:
    """One ``uint8`` task per tile, in tile order."""
    return [
        ExportTask(
            name=tile_export_name(
                tile.index,
                description=description,
                target_kind=target_kind,
                asset_id=asset_id,
            ),
            kind=UNIT_TILE,
            region=tile.region,
            crs=tile.crs,
            raster=crop_to_region(filtered, tile.region),
            dtype=TILE_DTYPE,
            max_value=max_value,
        )
        for tile in tiles
    ]


# ---------------------------------------------------------------------------
# Encoding and execution
# ---------------------------------------------------------------------------


def to_export_dtype(raster: Raster, dtype: str, max_value: int) -> Raster:
    """Re-encode an agreement raster for export.

    Nodata becomes 255 (``uint8``) or -1 (``int16``).

    Raises:
        ValidationError: On an unsupported dtype or a valid value outside
            ``[0, max_value]``.
    """
    nodata = EXPORT_NODATA.get(dtype)
    if nodata is None:
        msg = f"Unsupported export dtype: {dtype!r}"
        raise ValidationError(msg, stage="export", code="INVALID_EXPORT_DTYPE")

    valid = raster.valid_mask()
    values = raster.data[valid]
    if values.size and (values.min() < 0 or values.max() > max_value):
        msg = (
            f"Agreement values [{values.min()}, {values.max()}] "
            f"fall outside [0, {max_value}]"
        )
        raise ValidationError(msg, stage="export", code="VALUE_OUT_OF_RANGE")

    # int16 nodata (-1) does not fit the uint8 source dtype
    data = np.where(valid, raster.data.astype(dtype), np.asarray(nodata, dtype=dtype))
    return raster.with_data(data, nodata=nodata)


def export_target(config: AgreementConfig, name: str) -> StorageTarget:
    """Storage target of an export under the configured folder or catalog."""
    if config.export_target == TARGET_CATALOG:
        return StorageTarget(kind=TARGET_CATALOG, location="", name=name)
    return StorageTarget(kind=TARGET_PATH, location=config.export_folder, name=name)


def run_export_task(
    task: ExportTask,
    store: RasterStore,
    target: StorageTarget,
    resolution_m: float,
    *,
    max_pixels: float = 1e13,
) -> UnitOutcome:
    """Write one export unit and report its outcome.

    An empty unit yields a ``skipped`` outcome; any pipeline error
    (budget, encoding, storage) yields a ``failed`` outcome carrying the
    structured error. Nothing is raised.
    """
    start = time.monotonic()
    try:
        if task.raster.data.size > max_pixels:
            msg = f"Export {task.name} covers {task.raster.data.size} pixels"
            raise PixelBudgetExceeded(msg, stage="export", unit=task.name)
        if task.raster.data.size == 0 or not task.raster.valid_mask().any():
            msg = f"No valid pixels in {task.name}"
            raise EmptyRegionWarning(msg, unit=task.name)

        encoded = to_export_dtype(task.raster, task.dtype, task.max_value)
        location = store.write_raster(
            encoded, task.region, task.crs, resolution_m, RASTER_FORMAT, target
        )
    except EmptyRegionWarning as exc:
        logger.warning("Export skipped | unit=%s | reason=%s", task.name, exc.message)
        return UnitOutcome(
            unit=task.name,
            kind=task.kind,
            status=STATUS_SKIPPED,
            crs=task.crs,
            duration_s=time.monotonic() - start,
            error=exc.to_error_dict(),
        )
    except PipelineError as exc:
        logger.error(
            "Export failed | unit=%s | code=%s | error=%s", task.name, exc.code, exc.message
        )
        return UnitOutcome(
            unit=task.name,
            kind=task.kind,
            status=STATUS_FAILED,
            crs=task.crs,
            duration_s=time.monotonic() - start,
            error=exc.to_error_dict(),
        )

    logger.info(
        "Export written | unit=%s | kind=%s | crs=%s | location=%s",
        task.name,
        task.kind,
        task.crs,
        location,
    )
    return UnitOutcome(
        unit=task.name,
        kind=task.kind,
        status=STATUS_EXPORTED,
        location=location,
        crs=task.crs,
        duration_s=time.monotonic() - start,
    )
