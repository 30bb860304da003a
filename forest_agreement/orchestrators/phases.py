"""Bounded phase helpers for the forest agreement pipeline.

Each phase is a plain function returning a typed result contract. The
top-level runs in ``pipeline.py`` call these phases sequentially.

Phases
------
1. **Region**: load the geodata or ROI, build clusters and the
   reference grid.
2. **Masks**: fan-out fetch + reclassify per dataset.
3. **Agreement**: combine masks and apply the MMU sieve.
4. **Statistics**: fan-out extent per dataset, per-polygon assessment.
5. **Export**: fan-out one raster per cluster or tile.
6. **Report**: write the extent and polygon tables.

Fan-out runs on a ``ThreadPoolExecutor``; results are collected in
submission order. A failing statistics or export unit is recorded as a
``failed`` outcome and never aborts its siblings; a failing dataset fetch
aborts the run, since the agreement score needs every dataset.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, TypedDict, TypeVar

from forest_agreement.core.constants import EXTENT_SUMMARY_NAME, POLYGON_TABLE_NAME
from forest_agreement.core.exceptions import PipelineError
from forest_agreement.models.geometry import KIND_POINT, MODE_GEODATA
from forest_agreement.models.summary import (
    STATUS_COMPUTED,
    STATUS_FAILED,
    UNIT_DATASET,
    UNIT_POLYGON,
    UnitOutcome,
)
from forest_agreement.stages import agreement as agreement_stage
from forest_agreement.stages import export as export_stage
from forest_agreement.stages import reclassify, report, resolve_region, statistics
from forest_agreement.storage.base import StorageTarget
from forest_agreement.utils.export_names import TARGET_PATH

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from shapely.geometry.base import BaseGeometry

    from forest_agreement.catalog import Catalog
    from forest_agreement.core.config import AgreementConfig
    from forest_agreement.models.geometry import ResolvedRegion
    from forest_agreement.models.raster import Grid, Raster
    from forest_agreement.models.statistics import PolygonAgreementRow, StatsRow
    from forest_agreement.providers.base import DatasetProvider
    from forest_agreement.stages.agreement import AgreementResult
    from forest_agreement.storage.base import RasterStore

logger = logging.getLogger("forest_agreement.orchestrators.phases")

T = TypeVar("T")
R = TypeVar("R")


# ---------------------------------------------------------------------------
# Phase result contracts
# ---------------------------------------------------------------------------


class RegionResult(TypedDict):
    """Output contract for the region phase."""

    region: ResolvedRegion
    grid: Grid
    analysis_crs: str


class MaskResult(TypedDict):
    """Output contract for the mask phase."""

    dataset_keys: list[str]
    masks: list[Raster]


class StatisticsResult(TypedDict):
    """Output contract for the statistics phase."""

    extent_rows: list[StatsRow]
    polygon_rows: list[PolygonAgreementRow]
    outcomes: list[UnitOutcome]


class ExportResult(TypedDict):
    """Output contract for the export phase."""

    outcomes: list[UnitOutcome]
    exported: int
    skipped: int
    failed: int
    tile_count: int


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------


def map_units(
    func: Callable[[T], R],
    items: Sequence[T],
    *,
    max_workers: int,
) -> list[R | BaseException]:
    """Run *func* over *items* on a thread pool.

    Returns one entry per item, in submission order: the result, or the
    exception the call raised.
    """
    if not items:
        return []
    results: list[R | BaseException] = []
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as pool:
        futures = [pool.submit(func, item) for item in items]
        for future in futures:
            exc = future.exception()
            results.append(exc if exc is not None else future.result())
    return results


def _elapsed(start: float) -> float:
    return time.monotonic() - start


def _failed_outcome(unit: str, kind: str, exc: BaseException, duration_s: float) -> UnitOutcome:
    if isinstance(exc, PipelineError):
        error: dict[str, Any] = exc.to_error_dict()
    else:
        error = {"category": "unexpected", "message": str(exc), "unit": unit}
    return UnitOutcome(
        unit=unit, kind=kind, status=STATUS_FAILED, duration_s=duration_s, error=error
    )


# ---------------------------------------------------------------------------
# Phase 1: Region
# ---------------------------------------------------------------------------


def run_region_phase(
    config: AgreementConfig,
    *,
    roi: BaseGeometry | None = None,
) -> RegionResult:
    """Resolve the working region and build the reference grid.

    Geodata mode when *roi* is ``None`` (reads ``config.geodata_path``),
    ROI mode otherwise.
    """
    start = time.monotonic()
    if roi is None:
        features = resolve_region.load_geodata(
            config.require_geodata_path(), config.geodata_type
        )
        radius = (
            resolve_region.resolve_buffer_radius(config)
            if config.geodata_type == KIND_POINT
            else None
        )
        region = resolve_region.resolve_geodata(
            features,
            config.geodata_type,
            buffer_radius_m=radius,
            join_distance_m=config.cluster_join_distance_m,
        )
    else:
        region = resolve_region.resolve_roi(roi)

    grid = reclassify.build_reference_grid(region.roi, config.target_resolution_m)
    crs = statistics.analysis_crs(region.roi)
    logger.info(
        "phase=region completed | mode=%s | geometries=%d | clusters=%d | "
        "grid=%s | analysis_crs=%s | duration=%.1fs",
        region.mode,
        len(region.geometries),
        len(region.clusters),
        grid.shape,
        crs,
        _elapsed(start),
    )
    return RegionResult(region=region, grid=grid, analysis_crs=crs)


# ---------------------------------------------------------------------------
# Phase 2: Masks
# ---------------------------------------------------------------------------


def run_mask_phase(
    provider: DatasetProvider,
    catalog: Catalog,
    region: ResolvedRegion,
    grid: Grid,
    config: AgreementConfig,
) -> MaskResult:
    """Build one aligned binary forest mask per catalog entry, in catalog order.

    Raises:
        PipelineError: The first dataset failure, after retries.
    """
    start = time.monotonic()
    datasets = list(catalog)

    def _build(dataset: Any) -> Raster:
        return reclassify.build_forest_mask(
            provider,
            dataset,
            region.roi,
            grid,
            resampling=config.resampling,
            max_retries=config.provider_max_retries,
            retry_base_seconds=config.retry_base_seconds,
        )

    results = map_units(_build, datasets, max_workers=config.max_workers)
    masks: list[Raster] = []
    for dataset, result in zip(datasets, results, strict=True):
        if isinstance(result, BaseException):
            logger.error(
                "phase=masks failed | dataset=%s | error=%s", dataset.key, result
            )
            raise result
        masks.append(result)

    logger.info(
        "phase=masks completed | datasets=%d | provider=%s | duration=%.1fs",
        len(masks),
        provider.name,
        _elapsed(start),
    )
    return MaskResult(dataset_keys=[d.key for d in datasets], masks=masks)


# ---------------------------------------------------------------------------
# Phase 3: Agreement
# ---------------------------------------------------------------------------


def run_agreement_phase(
    masks: Sequence[Raster],
    region: ResolvedRegion,
    config: AgreementConfig,
) -> AgreementResult:
    """Combine the masks over the working region and sieve the result."""
    start = time.monotonic()
    result = agreement_stage.compute_agreement(masks, region.roi, config)
    logger.info(
        "phase=agreement completed | datasets=%d | mmu=%d px | duration=%.1fs",
        result.dataset_count,
        config.mmu_pixels,
        _elapsed(start),
    )
    return result


# ---------------------------------------------------------------------------
# Phase 4: Statistics
# ---------------------------------------------------------------------------


def run_statistics_phase(
    mask_result: MaskResult,
    agreement: AgreementResult,
    region: ResolvedRegion,
    catalog: Catalog,
    config: AgreementConfig,
) -> StatisticsResult:
    """Rank datasets by forest extent and assess each polygon.

    Extent is measured over the analysis geometries; the percentage is
    relative to their summed pixel area. Polygon assessment runs in
    geodata mode only.
    """
    start = time.monotonic()
    zones = [g.geometry for g in region.geometries]
    labels = {key: catalog.get(key).label for key in mask_result["dataset_keys"]}
    units = list(zip(mask_result["dataset_keys"], mask_result["masks"], strict=True))

    def _extent(unit: tuple[str, Raster]) -> tuple[StatsRow, float]:
        unit_start = time.monotonic()
        key, mask = unit
        row = statistics.dataset_extent_row(
            labels[key], mask, zones, max_pixels=config.max_pixels
        )
        return row, _elapsed(unit_start)

    outcomes: list[UnitOutcome] = []
    rows: list[StatsRow] = []
    for (key, _mask), result in zip(
        units, map_units(_extent, units, max_workers=config.max_workers), strict=True
    ):
        if isinstance(result, BaseException):
            logger.error("Extent failed | dataset=%s | error=%s", key, result)
            outcomes.append(_failed_outcome(key, UNIT_DATASET, result, 0.0))
            continue
        row, duration = result
        rows.append(row)
        outcomes.append(
            UnitOutcome(unit=key, kind=UNIT_DATASET, status=STATUS_COMPUTED, duration_s=duration)
        )

    ranked = statistics.rank_datasets(rows)

    polygon_rows: list[PolygonAgreementRow] = []
    if region.mode == MODE_GEODATA:
        majority_max = agreement.dataset_count
        if config.majority_min_agreement > majority_max:
            logger.warning(
                "Majority threshold above dataset count | min=%d | datasets=%d",
                config.majority_min_agreement,
                majority_max,
            )
        polygon_rows = statistics.assess_polygons(
            agreement.filtered,
            region.geometries,
            majority_min=config.majority_min_agreement,
            majority_max=majority_max,
            min_area_ha=config.min_polygon_area_ha,
            resolution_m=config.target_resolution_m,
            max_pixels=config.max_pixels,
        )
        outcomes.extend(
            UnitOutcome(
                unit=row.feature_id, kind=UNIT_POLYGON, status=STATUS_FAILED, error=row.error
            )
            for row in polygon_rows
            if row.failed
        )

    logger.info(
        "phase=statistics completed | datasets=%d/%d | polygons=%d | duration=%.1fs",
        len(ranked),
        len(units),
        len(polygon_rows),
        _elapsed(start),
    )
    return StatisticsResult(extent_rows=ranked, polygon_rows=polygon_rows, outcomes=outcomes)


# ---------------------------------------------------------------------------
# Phase 5: Export
# ---------------------------------------------------------------------------


def run_export_phase(
    agreement: AgreementResult,
    region: ResolvedRegion,
    store: RasterStore,
    config: AgreementConfig,
) -> ExportResult:
    """Export the filtered agreement raster per cluster (geodata) or tile (ROI)."""
    start = time.monotonic()
    asset_id = config.require_asset_id() if config.export_target != TARGET_PATH else ""
    naming = {
        "max_value": agreement.dataset_count,
        "description": config.export_description,
        "target_kind": config.export_target,
        "asset_id": asset_id,
    }

    tile_count = 0
    if region.mode == MODE_GEODATA:
        tasks = export_stage.cluster_export_tasks(agreement.filtered, region.clusters, **naming)
    else:
        tiles = export_stage.partition_tiles(region.roi, config.tile_rows, config.tile_cols)
        tile_count = len(tiles)
        tasks = export_stage.tile_export_tasks(agreement.filtered, tiles, **naming)

    def _export(task: export_stage.ExportTask) -> UnitOutcome:
        return export_stage.run_export_task(
            task,
            store,
            export_stage.export_target(config, task.name),
            config.target_resolution_m,
            max_pixels=config.max_pixels,
        )

    outcomes: list[UnitOutcome] = []
    for task, result in zip(
        tasks, map_units(_export, tasks, max_workers=config.max_workers), strict=True
    ):
        if isinstance(result, BaseException):
            logger.error("Export raised | unit=%s | error=%s", task.name, result)
            outcomes.append(_failed_outcome(task.name, task.kind, result, 0.0))
        else:
            outcomes.append(result)

    exported = sum(1 for o in outcomes if o.ok)
    failed = sum(1 for o in outcomes if o.status == STATUS_FAILED)
    skipped = len(outcomes) - exported - failed
    logger.info(
        "phase=export completed | units=%d | exported=%d | skipped=%d | failed=%d | "
        "duration=%.1fs",
        len(outcomes),
        exported,
        skipped,
        failed,
        _elapsed(start),
    )
    return ExportResult(
        outcomes=outcomes,
        exported=exported,
        skipped=skipped,
        failed=failed,
        tile_count=tile_count,
    )


# ---------------------------------------------------------------------------
# Phase 6: Report
# ---------------------------------------------------------------------------


def run_report_phase(
    stats: StatisticsResult,
    region: ResolvedRegion,
    store: RasterStore,
    config: AgreementConfig,
) -> dict[str, str]:
    """Write the extent table (CSV) and, in geodata mode, the polygon table.

    Returns:
        Table name to written location.
    """
    start = time.monotonic()
    tables: dict[str, str] = {}

    extent_target = StorageTarget(
        kind=TARGET_PATH, location=config.export_folder, name=EXTENT_SUMMARY_NAME
    )
    tables[EXTENT_SUMMARY_NAME] = store.write_table(
        report.extent_table(stats["extent_rows"]), "CSV", extent_target
    )

    if region.mode == MODE_GEODATA and stats["polygon_rows"]:
        polygon_target = StorageTarget(
            kind=TARGET_PATH, location=config.export_folder, name=POLYGON_TABLE_NAME
        )
        tables[POLYGON_TABLE_NAME] = store.write_table(
            report.polygon_table(stats["polygon_rows"]), config.export_format, polygon_target
        )

    logger.info(
        "phase=report completed | tables=%d | duration=%.1fs", len(tables), _elapsed(start)
    )
    return tables
