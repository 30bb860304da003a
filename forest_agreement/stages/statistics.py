"""Geo-statistics stage.

UTM zone selection, per-pixel geodesic area, and zonal area/percentage
statistics over analysis geometries:

- Extent ranking: forest area of every dataset mask over the analysis
  geometries, as a percentage of their summed pixel area, ranked by
  count of strictly greater percentages.
- Per-polygon assessment: share of each polygon with majority agreement
  (score between ``majority_min`` and the dataset count). Polygons below
  the minimum area are flagged and get no percentage.

Areas are always summed from per-pixel geodesic areas, never from pixel
count times the nominal resolution, so geographic grids stay correct at
any latitude. A pixel belongs to a geometry when its centre falls inside.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

import numpy as np

from forest_agreement.core.constants import SQ_METRES_PER_HECTARE
from forest_agreement.core.exceptions import PipelineError, PixelBudgetExceeded, ValidationError
from forest_agreement.models.statistics import (
    AREA_CHECK_OK,
    PolygonAgreementRow,
    StatsRow,
    ZonalResult,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from shapely.geometry.base import BaseGeometry

    from forest_agreement.models.geometry import AnalysisGeometry
    from forest_agreement.models.raster import Grid, Raster

    Predicate = Callable[[np.ndarray], np.ndarray]

logger = logging.getLogger("forest_agreement.stages.statistics")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MIN_UTM_ZONE = 1
MAX_UTM_ZONE = 60
UTM_ZONE_WIDTH_DEG = 6

DEFAULT_MAX_PIXELS = 1e13


# ---------------------------------------------------------------------------
# UTM selection
# ---------------------------------------------------------------------------


def utm_zone(lon: float) -> int:
    """UTM zone number of a longitude, clamped to ``[1, 60]``.

    ``floor((lon + 180) / 6) + 1``; longitude 180 would give zone 61 and
    is clamped to 60.

    Raises:
        ValidationError: If *lon* is not finite or outside ``[-180, 180]``.
    """
    if not math.isfinite(lon) or lon < -180 or lon > 180:
        msg = f"Longitude {lon!r} is outside [-180, 180]"
        raise ValidationError(msg, stage="statistics", code="INVALID_LONGITUDE")
    zone = math.floor((lon + 180) / UTM_ZONE_WIDTH_DEG) + 1
    return max(MIN_UTM_ZONE, min(MAX_UTM_ZONE, zone))


def utm_epsg(lon: float, lat: float) -> str:
    """``EPSG:326zz`` north of the equator, ``EPSG:327zz`` otherwise (lat 0 is south)."""
    zone = utm_zone(lon)
    prefix = "326" if lat > 0 else "327"
    return f"EPSG:{prefix}{zone:02d}"


def best_utm_epsg(geometry: BaseGeometry) -> str:
    """Best-fit UTM CRS of a WGS 84 geometry, from its centroid."""
    centroid = geometry.centroid
    return utm_epsg(centroid.x, centroid.y)


def analysis_crs(region: BaseGeometry) -> str:
    """UTM CRS of the whole working region, recorded in the run summary."""
    return best_utm_epsg(region)


# ---------------------------------------------------------------------------
# Pixel geometry
# ---------------------------------------------------------------------------


def pixel_area_m2(grid: Grid) -> np.ndarray:
    """Per-pixel area in square metres, shape ``(height, width)``.

    Geographic grids use the geodesic area of each cell on the WGS 84
    ellipsoid (constant along a row, varying with latitude). Projected
    grids use ``|a * e|`` of the transform.
    """
    from pyproj import CRS, Geod

    t = grid.transform
    if not CRS.from_user_input(grid.crs).is_geographic:
        return np.full(grid.shape, abs(t.a * t.e), dtype=np.float64)

    geod = Geod(ellps="WGS84")
    west = t.c
    east = t.c + t.a
    row_areas = np.empty(grid.height, dtype=np.float64)
    for row in range(grid.height):
        top = t.f + row * t.e
        bottom = top + t.e
        area, _perimeter = geod.polygon_area_perimeter(
            [west, east, east, west], [top, top, bottom, bottom]
        )
        row_areas[row] = abs(area)
    return np.repeat(row_areas[:, np.newaxis], grid.width, axis=1)


def region_mask(grid: Grid, geometries: Sequence[BaseGeometry]) -> np.ndarray:
    """Boolean mask, ``True`` for pixels whose centre lies inside any geometry."""
    from rasterio.features import geometry_mask

    shapes = [g for g in geometries if g is not None and not g.is_empty]
    if not shapes:
        return np.zeros(grid.shape, dtype=bool)
    return geometry_mask(
        shapes,
        out_shape=grid.shape,
        transform=grid.transform,
        all_touched=False,
        invert=True,
    )


def grid_window(grid: Grid, bounds: tuple[float, float, float, float]) -> tuple[slice, slice]:
    """Row and column slices of *grid* covering *bounds* (clipped to the grid)."""
    inverse = ~grid.transform
    cols, rows = zip(
        *(inverse * (x, y) for x in (bounds[0], bounds[2]) for y in (bounds[1], bounds[3])),
        strict=True,
    )
    row0 = max(0, math.floor(min(rows)))
    row1 = min(grid.height, math.ceil(max(rows)))
    col0 = max(0, math.floor(min(cols)))
    col1 = min(grid.width, math.ceil(max(cols)))
    return slice(row0, max(row0, row1)), slice(col0, max(col0, col1))


def subgrid(grid: Grid, rows: slice, cols: slice) -> Grid:
    """Grid of the ``rows`` x ``cols`` window of *grid*."""
    from forest_agreement.models.raster import Grid as GridModel

    transform = grid.transform * grid.transform.translation(cols.start, rows.start)
    return GridModel(
        crs=grid.crs,
        transform=transform,
        width=cols.stop - cols.start,
        height=rows.stop - rows.start,
    )


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def equals(value: int) -> Predicate:
    """Predicate matching pixels equal to *value*."""
    return lambda data: data == value


def between(minimum: int, maximum: int) -> Predicate:
    """Predicate matching pixels in ``[minimum, maximum]``."""
    return lambda data: (data >= minimum) & (data <= maximum)


# ---------------------------------------------------------------------------
# Zonal statistics
# ---------------------------------------------------------------------------


def zonal_stats(
    raster: Raster,
    geometries: Sequence[BaseGeometry],
    predicate: Predicate,
    total_area_m2: float | None = None,
    *,
    max_pixels: float = DEFAULT_MAX_PIXELS,
) -> ZonalResult:
    """Area of valid pixels matching *predicate* inside *geometries*.

    Args:
        raster: Raster to evaluate (geographic or projected).
        geometries: Zone geometries, in the raster's CRS.
        predicate: Vectorised test applied to the pixel values.
        total_area_m2: Denominator of the percentage; defaults to the
            summed pixel area of the zone.
        max_pixels: Budget of zone pixels for this call.

    Raises:
        PixelBudgetExceeded: If the zone covers more than *max_pixels*.
    """
    from shapely.ops import unary_union

    shapes = [g for g in geometries if g is not None and not g.is_empty]
    if not shapes:
        return ZonalResult(area_m2=0.0, total_area_m2=total_area_m2 or 0.0)

    grid = raster.grid
    rows, cols = grid_window(grid, unary_union(shapes).bounds)
    window_pixels = (rows.stop - rows.start) * (cols.stop - cols.start)
    if window_pixels > max_pixels:
        msg = f"Zone covers {window_pixels} pixels, above the budget of {max_pixels:.0f}"
        raise PixelBudgetExceeded(msg)
    if window_pixels == 0:
        return ZonalResult(area_m2=0.0, total_area_m2=total_area_m2 or 0.0)

    sub = subgrid(grid, rows, cols)
    data = raster.data[rows, cols]
    inside = region_mask(sub, shapes)
    areas = pixel_area_m2(sub)
    valid = raster.valid_mask()[rows, cols]
    matching = inside & valid & np.asarray(predicate(data), dtype=bool)

    area = float(areas[matching].sum())
    total = float(areas[inside].sum()) if total_area_m2 is None else float(total_area_m2)
    return ZonalResult(area_m2=area, total_area_m2=total, pixel_count=int(matching.sum()))


# ---------------------------------------------------------------------------
# Extent ranking
# ---------------------------------------------------------------------------


def dataset_extent_row(
    label: str,
    mask: Raster,
    geometries: Sequence[BaseGeometry],
    *,
    total_area_m2: float | None = None,
    max_pixels: float = DEFAULT_MAX_PIXELS,
) -> StatsRow:
    """Unranked extent row of one binary forest mask (forest where ``== 1``)."""
    result = zonal_stats(
        mask, geometries, equals(1), total_area_m2, max_pixels=max_pixels
    )
    logger.info(
        "Extent computed | layer=%s | forest=%.2f ha | pct=%.2f",
        label,
        result.area_ha,
        result.percentage,
    )
    return StatsRow(
        layer=label,
        forest_area_ha=result.area_ha,
        forest_pct_total=result.percentage,
    )


def rank_datasets(rows: Sequence[StatsRow]) -> list[StatsRow]:
    """Rank rows by ``forest_pct_total`` descending.

    ``rank = 1 + number of rows with a strictly greater percentage``, so
    equal percentages share a rank and the next rank skips accordingly
    (``[50, 50, 30]`` ranks ``[1, 1, 3]``). Rows are returned sorted,
    ties kept in input order.
    """
    percentages = [r.forest_pct_total for r in rows]
    ranked = [
        row.with_rank(1 + sum(1 for p in percentages if p > row.forest_pct_total))
        for row in rows
    ]
    return sorted(ranked, key=lambda r: r.forest_pct_total, reverse=True)


# ---------------------------------------------------------------------------
# Per-polygon assessment
# ---------------------------------------------------------------------------


def area_check(geometry: AnalysisGeometry, min_area_ha: float, resolution_m: float) -> str:
    """Flag polygons too small for a meaningful agreement percentage.

    A polygon is flagged when its area is below *min_area_ha*, or when the
    number of target-resolution pixels it could hold is below the pixel
    equivalent of *min_area_ha*. Returns ``""`` for polygons that pass.
    """
    pixel_area = resolution_m * resolution_m
    min_pixels = min_area_ha * SQ_METRES_PER_HECTARE / pixel_area
    approx_pixels = geometry.area_m2 / pixel_area
    if approx_pixels < min_pixels or geometry.area_ha < min_area_ha:
        return f"below {min_area_ha:g}ha"
    return AREA_CHECK_OK


def assess_polygons(
    filtered: Raster,
    geometries: Sequence[AnalysisGeometry],
    *,
    majority_min: int,
    majority_max: int,
    min_area_ha: float = 0.5,
    resolution_m: float = 30.0,
    max_pixels: float = DEFAULT_MAX_PIXELS,
) -> list[PolygonAgreementRow]:
    """Per-polygon share of majority agreement.

    Polygons passing ``area_check`` get ``forestagree = 100 * area(majority_min
    <= score <= majority_max) / area_m2``; flagged ones are kept with
    ``forestagree = None``. A polygon whose zonal statistics raise a
    ``PipelineError`` (e.g. over the pixel budget) keeps its row with
    ``forestagree = None`` and the error payload; the others still run.
    Assessed and failed rows come first, then flagged rows, each group in
    input order.
    """
    predicate = between(majority_min, majority_max)
    assessed: list[PolygonAgreementRow] = []
    flagged: list[PolygonAgreementRow] = []
    for geometry in geometries:
        check = area_check(geometry, min_area_ha, resolution_m)
        if check:
            flagged.append(
                PolygonAgreementRow(
                    feature_id=geometry.feature_id,
                    geometry=geometry.geometry,
                    area_m2=geometry.area_m2,
                    area_ha=geometry.area_ha,
                    area_check=check,
                    forestagree=None,
                    properties=dict(geometry.properties),
                )
            )
            continue
        try:
            result = zonal_stats(
                filtered,
                [geometry.geometry],
                predicate,
                total_area_m2=geometry.area_m2,
                max_pixels=max_pixels,
            )
        except PipelineError as exc:
            logger.error(
                "Polygon failed | feature=%s | code=%s | error=%s",
                geometry.feature_id,
                exc.code,
                exc.message,
            )
            assessed.append(
                PolygonAgreementRow(
                    feature_id=geometry.feature_id,
                    geometry=geometry.geometry,
                    area_m2=geometry.area_m2,
                    area_ha=geometry.area_ha,
                    forestagree=None,
                    properties=dict(geometry.properties),
                    error={**exc.to_error_dict(), "unit": exc.unit or geometry.feature_id},
                )
            )
            continue
        assessed.append(
            PolygonAgreementRow(
                feature_id=geometry.feature_id,
                geometry=geometry.geometry,
                area_m2=geometry.area_m2,
                area_ha=geometry.area_ha,
                area_check=AREA_CHECK_OK,
                forestagree=result.percentage,
                properties=dict(geometry.properties),
            )
        )
    logger.info(
        "Polygons assessed | assessed=%d | flagged=%d | majority=[%d, %d]",
        len(assessed),
        len(flagged),
        majority_min,
        majority_max,
    )
    return assessed + flagged
