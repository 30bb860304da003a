"""Report stage: shape statistics into output tables and the run summary."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from forest_agreement.models.summary import STATUS_FAILED, RunSummary

if TYPE_CHECKING:
    from collections.abc import Sequence

    from forest_agreement.core.config import AgreementConfig
    from forest_agreement.models.statistics import PolygonAgreementRow, StatsRow
    from forest_agreement.models.summary import UnitOutcome

logger = logging.getLogger("forest_agreement.stages.report")

EXTENT_COLUMNS = ("Layer", "Forest_area_ha", "Forest_pct_total", "Rank")
POLYGON_COLUMNS = ("area_m2", "area_ha", "area_check", "forestagree")


def extent_table(rows: Sequence[StatsRow]) -> list[dict[str, Any]]:
    """Forest extent ranking as table rows, in the given (ranked) order."""
    return [
        {
            "Layer": row.layer,
            "Forest_area_ha": row.forest_area_ha,
            "Forest_pct_total": row.forest_pct_total,
            "Rank": row.rank,
        }
        for row in rows
    ]


def polygon_table(rows: Sequence[PolygonAgreementRow]) -> list[dict[str, Any]]:
    """Per-polygon assessment as feature rows.

    Each row keeps the source attributes, then adds ``area_m2``,
    ``area_ha``, ``area_check`` and ``forestagree`` (overwriting source
    attributes of the same name) and the polygon under ``geometry``.
    """
    table = []
    for row in rows:
        record: dict[str, Any] = dict(row.properties)
        record.update(
            {
                "area_m2": row.area_m2,
                "area_ha": row.area_ha,
                "area_check": row.area_check,
                "forestagree": row.forestagree,
                "geometry": row.geometry,
            }
        )
        table.append(record)
    return table


def build_run_summary(
    *,
    run_id: str,
    mode: str,
    timestamp: str,
    config: AgreementConfig,
    dataset_keys: Sequence[str],
    analysis_crs: str,
    outcomes: Sequence[UnitOutcome],
    tables: dict[str, str],
    cluster_count: int = 0,
    tile_count: int = 0,
    duration_s: float = 0.0,
) -> RunSummary:
    """Assemble the run summary from the run parameters and unit outcomes."""
    summary = RunSummary(
        run_id=run_id,
        mode=mode,
        timestamp=timestamp,
        dataset_keys=list(dataset_keys),
        dataset_count=len(dataset_keys),
        resolution_m=config.target_resolution_m,
        mmu_pixels=config.mmu_pixels,
        agreement_radius=config.agreement_radius,
        analysis_crs=analysis_crs,
        cluster_count=cluster_count,
        tile_count=tile_count,
        outcomes=list(outcomes),
        tables=dict(tables),
        duration_s=duration_s,
    )
    logger.info(
        "Run summary | run=%s | mode=%s | datasets=%d | outcomes=%d | failed=%d",
        run_id,
        mode,
        summary.dataset_count,
        len(summary.outcomes),
        summary.count(STATUS_FAILED),
    )
    return summary
