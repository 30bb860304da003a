"""Tests for the geo-statistics stage.

Covers:
- UTM zone selection, clamping and hemisphere choice
- Per-pixel geodesic area
- Zonal statistics and the pixel budget
- Extent ranking with shared ranks
- Area checks (including the 0.5 ha boundary) and per-polygon agreement
- Per-polygon failure isolation
"""

from __future__ import annotations

import math

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box

from forest_agreement.core.exceptions import PixelBudgetExceeded, ValidationError
from forest_agreement.models.geometry import AnalysisGeometry, geodesic_area_m2
from forest_agreement.models.raster import Grid
from forest_agreement.models.statistics import StatsRow
from forest_agreement.stages.statistics import (
    area_check,
    assess_polygons,
    between,
    best_utm_epsg,
    dataset_extent_row,
    equals,
    pixel_area_m2,
    rank_datasets,
    utm_epsg,
    utm_zone,
    zonal_stats,
)

WEST_PLOT = box(10.0005, 0.501, 10.003, 0.509)
EAST_PLOT = box(10.0065, 0.501, 10.009, 0.509)
TINY_PLOT = box(10.001, 0.501, 10.0012, 0.5012)


class TestUtm:
    """UTM zone and hemisphere selection."""

    @pytest.mark.parametrize(
        ("lon", "zone"),
        [(-180.0, 1), (-177.5, 1), (0.0, 31), (-0.1, 30), (10.005, 32), (179.9, 60), (180.0, 60)],
    )
    def test_zone(self, lon: float, zone: int) -> None:
        assert utm_zone(lon) == zone

    @pytest.mark.parametrize("lon", [-180.5, 181.0, math.nan, math.inf])
    def test_invalid_longitude(self, lon: float) -> None:
        with pytest.raises(ValidationError):
            utm_zone(lon)

    def test_north(self) -> None:
        assert utm_epsg(10.0, 0.5) == "EPSG:32632"

    def test_equator_is_south(self) -> None:
        assert utm_epsg(10.0, 0.0) == "EPSG:32732"

    def test_south(self) -> None:
        assert utm_epsg(-70.0, -10.0) == "EPSG:32719"

    def test_zone_padding(self) -> None:
        assert utm_epsg(-175.0, 10.0) == "EPSG:32601"

    def test_best_fit_from_centroid(self, roi) -> None:
        assert best_utm_epsg(roi) == "EPSG:32632"


class TestPixelArea:
    """Per-pixel geodesic area."""

    def test_equator_pixels(self, reference_grid) -> None:
        areas = pixel_area_m2(reference_grid)
        assert areas.shape == reference_grid.shape
        assert areas.mean() == pytest.approx(900.0, rel=0.01)

    def test_shrinks_with_latitude(self) -> None:
        step = 30.0 / 111_319.49
        grid = Grid(crs="EPSG:4326", transform=from_origin(10.0, 60.0, step, step), width=2, height=2)
        assert pixel_area_m2(grid)[0, 0] == pytest.approx(450.0, rel=0.02)

    def test_projected_grid(self) -> None:
        grid = Grid(
            crs="EPSG:32632", transform=from_origin(500_000, 100_000, 30, 30), width=3, height=2
        )
        assert (pixel_area_m2(grid) == 900.0).all()


class TestZonalStats:
    """Area and percentage inside zones."""

    def test_full_coverage(self, grid_raster, roi) -> None:
        result = zonal_stats(grid_raster(1), [roi], equals(1))
        assert result.percentage == pytest.approx(100.0)
        assert result.area_m2 == pytest.approx(geodesic_area_m2(roi), rel=0.05)

    def test_half_coverage(self, grid_raster, roi) -> None:
        raster = grid_raster(lambda rows, cols: cols < cols.shape[1] // 2)
        result = zonal_stats(raster, [roi], equals(1))
        assert result.percentage == pytest.approx(50.0, abs=5.0)

    def test_nodata_excluded(self, grid_raster, roi) -> None:
        raster = grid_raster(255, nodata=255)
        assert zonal_stats(raster, [roi], lambda data: data >= 0).area_m2 == 0.0

    def test_explicit_denominator(self, grid_raster, roi) -> None:
        result = zonal_stats(grid_raster(1), [roi], equals(1), total_area_m2=1.0)
        assert result.total_area_m2 == 1.0

    def test_empty_zone(self, grid_raster) -> None:
        result = zonal_stats(grid_raster(1), [], equals(1))
        assert result.area_m2 == 0.0
        assert result.percentage == 0.0

    def test_zone_outside_raster(self, grid_raster) -> None:
        result = zonal_stats(grid_raster(1), [box(50.0, 10.0, 50.1, 10.1)], equals(1))
        assert result.area_m2 == 0.0

    def test_pixel_budget(self, grid_raster, roi) -> None:
        with pytest.raises(PixelBudgetExceeded):
            zonal_stats(grid_raster(1), [roi], equals(1), max_pixels=10)

    def test_between_is_inclusive(self) -> None:
        data = np.array([5, 6, 9, 10])
        assert between(6, 9)(data).tolist() == [False, True, True, False]


class TestRanking:
    """Extent rows and shared ranks."""

    def test_extent_row(self, grid_raster, roi) -> None:
        row = dataset_extent_row("JRC", grid_raster(1), [roi])
        assert row.layer == "JRC"
        assert row.forest_pct_total == pytest.approx(100.0)
        assert row.forest_area_ha == pytest.approx(geodesic_area_m2(roi) / 10_000, rel=0.05)
        assert row.rank is None

    def test_ties_share_rank(self) -> None:
        rows = [StatsRow("A", 1.0, 30.0), StatsRow("B", 2.0, 50.0), StatsRow("C", 2.0, 50.0)]
        ranked = rank_datasets(rows)
        assert [(r.layer, r.rank) for r in ranked] == [("B", 1), ("C", 1), ("A", 3)]

    def test_all_zero(self) -> None:
        ranked = rank_datasets([StatsRow("A", 0.0, 0.0), StatsRow("B", 0.0, 0.0)])
        assert [r.rank for r in ranked] == [1, 1]

    def test_empty(self) -> None:
        assert rank_datasets([]) == []


class TestPolygonAssessment:
    """Per-polygon majority agreement."""

    def test_area_check(self) -> None:
        tiny = AnalysisGeometry.from_geometry("tiny", TINY_PLOT)
        plot = AnalysisGeometry.from_geometry("plot", WEST_PLOT)
        assert area_check(tiny, 0.5, 30.0) == "below 0.5ha"
        assert area_check(plot, 0.5, 30.0) == ""

    def test_assess(self, grid_raster) -> None:
        filtered = grid_raster(
            lambda rows, cols: np.where(cols < cols.shape[1] // 2, 9, 0), nodata=255
        )
        geometries = [
            AnalysisGeometry.from_geometry("tiny", TINY_PLOT, properties={"farm": "T"}),
            AnalysisGeometry.from_geometry("west", WEST_PLOT, properties={"farm": "W"}),
            AnalysisGeometry.from_geometry("east", EAST_PLOT, properties={"farm": "E"}),
        ]
        rows = assess_polygons(filtered, geometries, majority_min=6, majority_max=9)

        assert [r.feature_id for r in rows] == ["west", "east", "tiny"]
        west, east, tiny = rows
        assert west.forestagree == pytest.approx(100.0, abs=10.0)
        assert east.forestagree == pytest.approx(0.0)
        assert tiny.forestagree is None
        assert tiny.flagged
        assert tiny.area_check == "below 0.5ha"
        assert west.properties == {"farm": "W"}
        assert west.area_ha == pytest.approx(geodesic_area_m2(WEST_PLOT) / 10_000)

    def test_score_below_majority(self, grid_raster) -> None:
        filtered = grid_raster(5, nodata=255)
        geometry = AnalysisGeometry.from_geometry("west", WEST_PLOT)
        (row,) = assess_polygons(filtered, [geometry], majority_min=6, majority_max=9)
        assert row.forestagree == 0.0


def _square_of_area(target_m2: float, west: float = 10.0, south: float = 0.5):
    """Near-square box whose geodesic area is *target_m2* (to well under 0.1%)."""
    unit = 0.001
    scale = math.sqrt(target_m2 / geodesic_area_m2(box(west, south, west + unit, south + unit)))
    return box(west, south, west + unit * scale, south + unit * scale)


class TestAreaCheckBoundary:
    """The 0.5 ha threshold at 30 m."""

    @pytest.mark.parametrize(("area_ha", "flag"), [(0.49, "below 0.5ha"), (0.51, "")])
    def test_threshold(self, area_ha: float, flag: str) -> None:
        polygon = _square_of_area(area_ha * 10_000)
        geometry = AnalysisGeometry.from_geometry("plot", polygon)
        assert geometry.area_ha == pytest.approx(area_ha, rel=1e-3)
        assert area_check(geometry, 0.5, 30.0) == flag


class TestPolygonFailures:
    """One polygon over the pixel budget does not stop the others."""

    def test_budget_failure_is_isolated(self, grid_raster) -> None:
        filtered = grid_raster(9, nodata=255)
        small = box(10.0065, 0.501, 10.0075, 0.503)
        geometries = [
            AnalysisGeometry.from_geometry("west", WEST_PLOT),
            AnalysisGeometry.from_geometry("small", small),
        ]
        rows = assess_polygons(
            filtered, geometries, majority_min=6, majority_max=9, max_pixels=100
        )

        west, small_row = rows
        assert west.feature_id == "west"
        assert west.failed
        assert west.forestagree is None
        assert west.error["code"] == "PIXEL_BUDGET_EXCEEDED"
        assert west.error["unit"] == "west"
        assert not small_row.failed
        assert small_row.forestagree == pytest.approx(100.0, abs=5.0)
