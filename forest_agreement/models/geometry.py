"""Data models for analysis geometries and clusters.

An ``AnalysisGeometry`` is an input polygon (or a buffered point) in WGS 84
with its geodesic area computed exactly once, at construction through
``AnalysisGeometry.from_geometry``. A ``Cluster`` is the bounding rectangle
of one connected group of nearby geometries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from forest_agreement.core.constants import SQ_METRES_PER_HECTARE
from forest_agreement.core.exceptions import ValidationError

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry

KIND_POLYGON = "Polygon"
KIND_POINT = "Point"
KIND_REGION = "Region"

MODE_GEODATA = "geodata"
MODE_ROI = "roi"


class GeometryTypeMismatch(ValidationError):
    """A loaded feature's geometry type differs from the declared kind."""

    default_stage = "resolve_region"
    default_code = "GEOMETRY_TYPE_MISMATCH"


def geodesic_area_m2(geometry: BaseGeometry) -> float:
    """Geodesic area of a WGS 84 geometry in square metres (winding agnostic).

    Every polygon part is oriented counter-clockwise first; pyproj sums
    signed part areas, so mixed windings would otherwise cancel out.
    """
    from pyproj import Geod
    from shapely.geometry import MultiPolygon
    from shapely.geometry.polygon import orient

    if geometry.geom_type == "Polygon":
        geometry = orient(geometry, sign=1.0)
    elif geometry.geom_type == "MultiPolygon":
        geometry = MultiPolygon([orient(part, sign=1.0) for part in geometry.geoms])

    geod = Geod(ellps="WGS84")
    area_m2, _perimeter = geod.geometry_area_perimeter(geometry)
    return abs(area_m2)


@dataclass(frozen=True, slots=True)
class AnalysisGeometry:
    """A polygon used for statistics, with its area cached.

    Attributes:
        feature_id: Stable identifier (source ``id`` property or index).
        geometry: Shapely polygon or multipolygon in EPSG:4326.
        kind: Declared input kind (``Polygon``, ``Point`` or ``Region``).
        properties: Original feature attributes, carried into the tables.
        area_m2: Geodesic area in square metres.
        buffer_radius_m: Radius used when the input was a point.
    """

    feature_id: str
    geometry: Any
    kind: str = KIND_POLYGON
    properties: dict[str, Any] = field(default_factory=dict)
    area_m2: float = 0.0
    buffer_radius_m: float | None = None

    @classmethod
    def from_geometry(
        cls,
        feature_id: str,
        geometry: BaseGeometry,
        *,
        kind: str = KIND_POLYGON,
        properties: dict[str, Any] | None = None,
        buffer_radius_m: float | None = None,
    ) -> AnalysisGeometry:
        """Build the entity, computing the geodesic area once."""
        if geometry.geom_type not in ("Polygon", "MultiPolygon"):
            msg = (
                f"Feature {feature_id!r} must be a polygon for statistics, "
                f"got {geometry.geom_type}"
            )
            raise GeometryTypeMismatch(msg)
        return cls(
            feature_id=feature_id,
            geometry=geometry,
            kind=kind,
            properties=dict(properties or {}),
            area_m2=geodesic_area_m2(geometry),
            buffer_radius_m=buffer_radius_m,
        )

    @property
    def area_ha(self) -> float:
        return self.area_m2 / SQ_METRES_PER_HECTARE

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return tuple(self.geometry.bounds)  # type: ignore[return-value]


@dataclass(frozen=True, slots=True)
class Cluster:
    """Bounding rectangle of one connected group of input geometries.

    Attributes:
        index: Zero-based position in production order.
        bounds: ``(min_lon, min_lat, max_lon, max_lat)``.
        member_ids: Feature ids of the geometries inside the group.
    """

    index: int
    bounds: tuple[float, float, float, float]
    member_ids: tuple[str, ...] = ()

    @property
    def number(self) -> int:
        """One-based cluster number used in export names."""
        return self.index + 1

    @property
    def region(self) -> BaseGeometry:
        from shapely.geometry import box

        return box(*self.bounds)


@dataclass(frozen=True, slots=True)
class ResolvedRegion:
    """Output of the region resolver.

    Attributes:
        mode: ``geodata`` or ``roi``.
        roi: Working region scoping every dataset fetch.
        clusters: Cluster rectangles (geodata mode only).
        geometries: Geometries whose statistics are reported.
    """

    mode: str
    roi: Any
    clusters: tuple[Cluster, ...] = ()
    geometries: tuple[AnalysisGeometry, ...] = ()
