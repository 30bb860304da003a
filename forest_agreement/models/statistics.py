"""Result models for the statistics stage.

- ``ZonalResult``: Area of pixels matching a predicate inside a region
- ``StatsRow``: One row of the forest extent ranking table
- ``PolygonAgreementRow``: One row of the per-polygon agreement table
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from forest_agreement.core.constants import SQ_METRES_PER_HECTARE

#: ``area_check`` value for polygons large enough to assess.
AREA_CHECK_OK = ""


@dataclass(frozen=True, slots=True)
class ZonalResult:
    """Area of matching pixels and of the whole zone, in square metres."""

    area_m2: float
    total_area_m2: float
    pixel_count: int = 0

    @property
    def area_ha(self) -> float:
        return self.area_m2 / SQ_METRES_PER_HECTARE

    @property
    def percentage(self) -> float:
        """Share of the zone covered by matching pixels; 0 for an empty zone."""
        if self.total_area_m2 <= 0:
            return 0.0
        return 100.0 * self.area_m2 / self.total_area_m2


@dataclass(frozen=True, slots=True)
class StatsRow:
    """Forest extent of one dataset over the working region.

    ``rank`` stays ``None`` until ``rank_datasets`` orders the rows.
    """

    layer: str
    forest_area_ha: float
    forest_pct_total: float
    rank: int | None = None

    def with_rank(self, rank: int) -> StatsRow:
        return replace(self, rank=rank)


@dataclass(frozen=True, slots=True)
class PolygonAgreementRow:
    """Agreement assessment of one analysis polygon.

    Attributes:
        feature_id: Identifier of the source feature.
        properties: Original feature attributes.
        geometry: Polygon in EPSG:4326.
        area_m2: Geodesic area in square metres.
        area_ha: Geodesic area in hectares.
        area_check: Empty, or the flag (``"below 0.5ha"``) excluding the
            polygon from the agreement percentage.
        forestagree: Percentage of the polygon with majority agreement;
            ``None`` for flagged or failed polygons.
        error: Structured error payload when the zonal statistics failed.
    """

    feature_id: str
    geometry: Any
    area_m2: float
    area_ha: float
    area_check: str = AREA_CHECK_OK
    forestagree: float | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    error: dict[str, Any] | None = None

    @property
    def flagged(self) -> bool:
        return bool(self.area_check)

    @property
    def failed(self) -> bool:
        return self.error is not None
