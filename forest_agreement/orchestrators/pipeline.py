"""End-to-end forest agreement runs.

Two entry points share one sequence of phases:

- ``run_geodata_pipeline``: polygons or points from a vector file;
  exports one raster per cluster and writes the per-polygon table.
- ``run_roi_pipeline``: a single region of interest; exports one raster
  per tile.

Both write the ranked forest extent table and a JSON run summary, and
return the ``RunSummary``. Run-level errors (configuration, geometry,
provider failures after retries, contract violations) propagate;
per-unit failures are recorded in the summary.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from forest_agreement.catalog import build_catalog
from forest_agreement.core.constants import RUN_SUMMARY_NAME
from forest_agreement.models.geometry import MODE_GEODATA, MODE_ROI
from forest_agreement.orchestrators import phases
from forest_agreement.providers.factory import provider_from_config
from forest_agreement.stages.report import build_run_summary
from forest_agreement.storage import store_from_config
from forest_agreement.storage.base import StorageTarget
from forest_agreement.utils.export_names import TARGET_PATH
from forest_agreement.utils.helpers import new_run_id, utc_timestamp

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry

    from forest_agreement.catalog import Catalog
    from forest_agreement.core.config import AgreementConfig
    from forest_agreement.models.summary import RunSummary
    from forest_agreement.providers.base import DatasetProvider
    from forest_agreement.storage.base import RasterStore

logger = logging.getLogger("forest_agreement.orchestrators.pipeline")


def run_geodata_pipeline(
    config: AgreementConfig,
    *,
    provider: DatasetProvider | None = None,
    store: RasterStore | None = None,
    catalog: Catalog | None = None,
) -> RunSummary:
    """Run the agreement workflow over the geodata named by ``config.geodata_path``."""
    return _run(MODE_GEODATA, config, None, provider=provider, store=store, catalog=catalog)


def run_roi_pipeline(
    config: AgreementConfig,
    roi: BaseGeometry,
    *,
    provider: DatasetProvider | None = None,
    store: RasterStore | None = None,
    catalog: Catalog | None = None,
) -> RunSummary:
    """Run the agreement workflow over a single WGS 84 region of interest."""
    return _run(MODE_ROI, config, roi, provider=provider, store=store, catalog=catalog)


def _run(
    mode: str,
    config: AgreementConfig,
    roi: BaseGeometry | None,
    *,
    provider: DatasetProvider | None,
    store: RasterStore | None,
    catalog: Catalog | None,
) -> RunSummary:
    start = time.monotonic()
    run_id = new_run_id()
    timestamp = utc_timestamp()
    catalog = catalog or build_catalog(config.forest_height_min_m)
    provider = provider or provider_from_config(config)
    store = store or store_from_config(config)

    logger.info(
        "Run started | run=%s | mode=%s | datasets=%d | provider=%s | resolution=%sm",
        run_id,
        mode,
        len(catalog),
        provider.name,
        config.target_resolution_m,
    )

    region_result = phases.run_region_phase(config, roi=roi)
    region = region_result["region"]
    mask_result = phases.run_mask_phase(
        provider, catalog, region, region_result["grid"], config
    )
    agreement = phases.run_agreement_phase(mask_result["masks"], region, config)
    stats = phases.run_statistics_phase(mask_result, agreement, region, catalog, config)
    exports = phases.run_export_phase(agreement, region, store, config)
    tables = phases.run_report_phase(stats, region, store, config)

    summary = build_run_summary(
        run_id=run_id,
        mode=mode,
        timestamp=timestamp,
        config=config,
        dataset_keys=mask_result["dataset_keys"],
        analysis_crs=region_result["analysis_crs"],
        outcomes=[*stats["outcomes"], *exports["outcomes"]],
        tables=tables,
        cluster_count=len(region.clusters),
        tile_count=exports["tile_count"],
        duration_s=time.monotonic() - start,
    )
    store.write_text(
        summary.to_json(),
        StorageTarget(
            kind=TARGET_PATH,
            location=config.export_folder,
            name=f"{RUN_SUMMARY_NAME}_{run_id}",
        ),
    )

    logger.info(
        "Run completed | run=%s | mode=%s | exported=%d | skipped=%d | failed=%d | "
        "duration=%.1fs",
        run_id,
        mode,
        exports["exported"],
        exports["skipped"],
        exports["failed"],
        summary.duration_s,
    )
    return summary
