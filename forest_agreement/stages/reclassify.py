"""Reclassify stage: dataset raster -> binary forest mask on the target grid.

For every catalog entry the stage fetches one composited raster through the
active ``DatasetProvider``, maps its forest classes to 1 and everything else
(nodata included) to 0, applies the dataset's land mask when it has one,
resamples onto the shared reference grid and clips to the working region.

The reference grid is EPSG:4326 with a pixel size of the target resolution
converted at the equator, snapped to the global lattice anchored at
(0°, 0°) so that independent runs over overlapping regions share pixel
edges.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

import numpy as np

from forest_agreement.core.constants import METRES_PER_DEGREE_AT_EQUATOR, REFERENCE_CRS
from forest_agreement.core.exceptions import ValidationError
from forest_agreement.models.dataset import ClassRange
from forest_agreement.models.raster import Grid, Raster, UnalignedRasterError
from forest_agreement.providers.base import NoImagesFound
from forest_agreement.stages.statistics import region_mask
from forest_agreement.utils.helpers import call_with_retry

if TYPE_CHECKING:
    from collections.abc import Iterable

    from shapely.geometry.base import BaseGeometry

    from forest_agreement.models.dataset import DatasetSpec, LandMask
    from forest_agreement.providers.base import DatasetProvider

logger = logging.getLogger("forest_agreement.stages.reclassify")

RESAMPLING_NEAREST = "nearest"
RESAMPLING_BILINEAR = "bilinear"

# Bilinear values of a resampled binary mask at or above this become forest.
BINARY_THRESHOLD = 0.5


# ---------------------------------------------------------------------------
# Reclassification
# ---------------------------------------------------------------------------


def reclassify(raster: Raster, classes: Iterable[int] | ClassRange) -> Raster:
    """Map forest classes to 1 and everything else to 0.

    Args:
        raster: Source raster in its native grid.
        classes: Set of forest class values, or an inclusive ``ClassRange``.

    Returns:
        ``uint8`` mask on the same grid with no nodata; nodata and NaN
        pixels of the source are 0.
    """
    data = raster.data
    if isinstance(classes, ClassRange):
        forest = (data >= classes.minimum) & (data <= classes.maximum)
    else:
        forest = np.isin(data, np.fromiter(classes, dtype=np.float64))
    forest &= raster.valid_mask()
    return raster.with_data(forest.astype(np.uint8), nodata=None)


def apply_land_mask(mask: Raster, land: Raster, max_valid: int) -> Raster:
    """Zero *mask* wherever *land* is missing or above *max_valid*.

    *land* is resampled onto the grid of *mask* (nearest) first.
    """
    aligned = land if land.is_aligned_with(mask) else _reproject(land, mask.grid, RESAMPLING_NEAREST)
    keep = aligned.valid_mask() & (aligned.data <= max_valid)
    data = np.where(keep, mask.data, 0).astype(np.uint8)
    return mask.with_data(data, nodata=None)


# ---------------------------------------------------------------------------
# Reference grid and alignment
# ---------------------------------------------------------------------------


def degrees_per_pixel(resolution_m: float) -> float:
    """Target resolution converted to degrees at the equator."""
    return resolution_m / METRES_PER_DEGREE_AT_EQUATOR


def build_reference_grid(roi: BaseGeometry, resolution_m: float) -> Grid:
    """EPSG:4326 grid covering *roi*, snapped to the lattice anchored at (0°, 0°).

    Raises:
        ValidationError: If the ROI is empty or the resolution not positive.
    """
    from rasterio.transform import from_origin

    if resolution_m <= 0:
        msg = f"Resolution must be positive, got {resolution_m}"
        raise ValidationError(msg, stage="reclassify", code="INVALID_RESOLUTION")
    if roi is None or roi.is_empty:
        msg = "Cannot build a reference grid over an empty region"
        raise ValidationError(msg, stage="reclassify", code="EMPTY_REGION")

    step = degrees_per_pixel(resolution_m)
    min_x, min_y, max_x, max_y = roi.bounds
    col0 = math.floor(min_x / step)
    col1 = max(col0 + 1, math.ceil(max_x / step))
    row0 = math.floor(min_y / step)
    row1 = max(row0 + 1, math.ceil(max_y / step))

    grid = Grid(
        crs=REFERENCE_CRS,
        transform=from_origin(col0 * step, row1 * step, step, step),
        width=col1 - col0,
        height=row1 - row0,
    )
    logger.info(
        "Reference grid | resolution=%sm | step=%.10f deg | shape=%s | bounds=%s",
        resolution_m,
        step,
        grid.shape,
        grid.bounds,
    )
    return grid


def _is_binary(raster: Raster) -> bool:
    return raster.nodata is None and bool(np.isin(raster.data, (0, 1)).all())


def _reproject(raster: Raster, grid: Grid, resampling: str) -> Raster:
    from rasterio.enums import Resampling
    from rasterio.warp import reproject

    binary = _is_binary(raster)
    if resampling == RESAMPLING_BILINEAR:
        nodata = raster.nodata if raster.nodata is not None else np.nan
        destination = np.full(grid.shape, np.nan, dtype=np.float32)
        source = raster.data.astype(np.float32)
    else:
        nodata = raster.nodata
        fill = 0 if nodata is None else nodata
        destination = np.full(grid.shape, fill, dtype=raster.data.dtype)
        source = raster.data

    reproject(
        source=source,
        destination=destination,
        src_transform=raster.transform,
        src_crs=raster.crs,
        src_nodata=raster.nodata,
        dst_transform=grid.transform,
        dst_crs=grid.crs,
        dst_nodata=nodata,
        resampling=Resampling[resampling],
    )

    if resampling == RESAMPLING_BILINEAR and binary:
        forest = np.nan_to_num(destination, nan=0.0) >= BINARY_THRESHOLD
        return Raster(forest.astype(np.uint8), grid.transform, grid.crs, None)
    if resampling == RESAMPLING_BILINEAR:
        return Raster(destination, grid.transform, grid.crs, np.nan)
    return Raster(destination, grid.transform, grid.crs, raster.nodata)


def align(raster: Raster, grid: Grid, resampling: str = RESAMPLING_NEAREST) -> Raster:
    """Resample *raster* onto *grid*.

    Binary masks stay binary: bilinear output is re-thresholded at 0.5 and
    areas outside the source coverage are 0.

    Raises:
        ValidationError: On an unsupported resampling method.
        UnalignedRasterError: If the result does not match *grid*.
    """
    if resampling not in (RESAMPLING_NEAREST, RESAMPLING_BILINEAR):
        msg = f"Unsupported resampling method: {resampling!r}"
        raise ValidationError(msg, stage="reclassify", code="INVALID_RESAMPLING")
    if raster.is_aligned_with(grid):
        return raster

    aligned = _reproject(raster, grid, resampling)
    if not aligned.is_aligned_with(grid):
        msg = f"Resampled raster shape {aligned.shape} does not match grid {grid.shape}"
        raise UnalignedRasterError(msg, stage="reclassify")
    return aligned


def clip_to_region(raster: Raster, region: BaseGeometry, fill: int | float) -> Raster:
    """Set pixels whose centre is outside *region* to *fill*."""
    inside = region_mask(raster.grid, [region])
    data = np.where(inside, raster.data, fill).astype(raster.data.dtype)
    return raster.with_data(data, nodata=raster.nodata)


# ---------------------------------------------------------------------------
# Stage entry point
# ---------------------------------------------------------------------------


def _fetch_land_mask(
    provider: DatasetProvider,
    land_mask: LandMask,
    roi: BaseGeometry,
    native_resolution_m: float,
    *,
    max_retries: int,
    retry_base_seconds: float,
) -> Raster:
    return call_with_retry(
        lambda: provider.fetch_land_mask(land_mask, roi, native_resolution_m),
        max_retries=max_retries,
        retry_base_seconds=retry_base_seconds,
        description=f"fetch land mask {land_mask.key}",
    )


def build_forest_mask(
    provider: DatasetProvider,
    dataset: DatasetSpec,
    roi: BaseGeometry,
    grid: Grid,
    *,
    resampling: str = RESAMPLING_NEAREST,
    max_retries: int = 2,
    retry_base_seconds: float = 2.0,
) -> Raster:
    """Fetch, reclassify, land-mask, align and clip one dataset.

    A dataset with no image over the region contributes an all-zero mask
    (a warning is logged); every other provider failure propagates after
    the retries for transient errors are spent.

    Returns:
        ``uint8`` binary mask aligned with *grid*, 0 outside *roi*.
    """
    try:
        source = call_with_retry(
            lambda: provider.fetch(dataset, roi),
            max_retries=max_retries,
            retry_base_seconds=retry_base_seconds,
            description=f"fetch {dataset.key}",
        )
    except NoImagesFound as exc:
        logger.warning(
            "No images, dataset counted as non-forest | dataset=%s | error=%s",
            dataset.key,
            exc,
        )
        return Raster(np.zeros(grid.shape, dtype=np.uint8), grid.transform, grid.crs, None)

    mask = reclassify(source, dataset.forest_classes)
    if dataset.land_mask is not None:
        land = _fetch_land_mask(
            provider,
            dataset.land_mask,
            roi,
            dataset.native_resolution_m,
            max_retries=max_retries,
            retry_base_seconds=retry_base_seconds,
        )
        mask = apply_land_mask(mask, land, dataset.land_mask.max_valid)

    aligned = align(mask, grid, resampling)
    clipped = clip_to_region(aligned, roi, 0)
    logger.info(
        "Forest mask built | dataset=%s | forest_pixels=%d | shape=%s",
        dataset.key,
        int(clipped.data.sum()),
        clipped.shape,
    )
    return clipped
