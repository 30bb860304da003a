"""Region resolver stage.

Turns the run input into the working region:

- **Geodata mode**: production polygons or points read from a vector file.
  Points are buffered to circles whose area reaches the configured target.
  Every geometry is then buffered by the join distance; each connected
  component of the union becomes one ``Cluster`` (its bounding rectangle),
  and the ROI is the union of the cluster rectangles.
- **ROI mode**: a single region geometry; no clusters.

Buffers are applied in the geometry's local UTM CRS and projected back to
WGS 84, never by adding degrees.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from forest_agreement.core.config import GEODATA_TYPES, ConfigurationError
from forest_agreement.core.constants import REFERENCE_CRS, SQ_METRES_PER_HECTARE
from forest_agreement.models.geometry import (
    KIND_POINT,
    KIND_POLYGON,
    KIND_REGION,
    MODE_GEODATA,
    MODE_ROI,
    AnalysisGeometry,
    Cluster,
    GeometryTypeMismatch,
    ResolvedRegion,
)
from forest_agreement.stages.statistics import best_utm_epsg

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shapely.geometry.base import BaseGeometry

    from forest_agreement.core.config import AgreementConfig

logger = logging.getLogger("forest_agreement.stages.resolve_region")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Vertices of the polygon approximating a buffered point (16 per quadrant).
CIRCLE_VERTICES = 64
_QUAD_SEGS = CIRCLE_VERTICES // 4

#: Geometry types accepted for each declared kind.
_ACCEPTED_TYPES = {
    KIND_POLYGON: ("Polygon", "MultiPolygon"),
    KIND_POINT: ("Point", "MultiPoint"),
}

#: Property names tried, in order, for a stable feature id.
_ID_PROPERTIES = ("id", "ID", "Id", "fid", "FID", "name", "Name")


@dataclass(frozen=True, slots=True)
class LoadedFeature:
    """A raw feature read from the geodata file (WGS 84)."""

    feature_id: str
    geometry: Any
    properties: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_geodata(path: str, declared_kind: str) -> list[LoadedFeature]:
    """Read every feature of a vector file and check its geometry type.

    The file is read with fiona (SHP, GeoJSON, KML, GPKG...) and reprojected
    to WGS 84 when its CRS differs.

    Raises:
        ConfigurationError: If *declared_kind* is unsupported, the file
            cannot be read, or it holds no features.
        GeometryTypeMismatch: If any feature's type differs from the
            declared kind (checked before any processing).
    """
    if declared_kind not in GEODATA_TYPES:
        raise ConfigurationError(
            "FA_GEODATA_TYPE", declared_kind, f"must be one of {', '.join(GEODATA_TYPES)}"
        )

    features = _read_features(path)
    if not features:
        raise ConfigurationError("FA_GEODATA_PATH", path, "the geodata file holds no features")

    accepted = _ACCEPTED_TYPES[declared_kind]
    for feature in features:
        actual = feature.geometry.geom_type if feature.geometry is not None else "None"
        if actual not in accepted:
            msg = (
                f"Feature {feature.feature_id!r} in {path} is a {actual}, "
                f"but the geodata was declared as {declared_kind}"
            )
            raise GeometryTypeMismatch(msg)

    logger.info(
        "Geodata loaded | path=%s | kind=%s | features=%d",
        path,
        declared_kind,
        len(features),
    )
    return features


def load_roi(path: str) -> BaseGeometry:
    """Read a region file and return the union of its geometries (WGS 84)."""
    from shapely.ops import unary_union

    features = _read_features(path)
    geometries = [f.geometry for f in features if f.geometry is not None]
    if not geometries:
        raise ConfigurationError("--roi", path, "the region file holds no geometry")
    roi = unary_union(geometries)
    if roi.geom_type not in ("Polygon", "MultiPolygon"):
        msg = f"Region in {path} must be a polygon, got {roi.geom_type}"
        raise GeometryTypeMismatch(msg)
    return roi


def roi_from_bbox(west: float, south: float, east: float, north: float) -> BaseGeometry:
    """Rectangle ROI from WGS 84 bounds."""
    from shapely.geometry import box

    if not (-180 <= west < east <= 180 and -90 <= south < north <= 90):
        raise ConfigurationError(
            "--bbox", (west, south, east, north), "must satisfy W < E and S < N in degrees"
        )
    return box(west, south, east, north)


def _read_features(path: str) -> list[LoadedFeature]:
    import fiona
    from shapely.geometry import shape

    try:
        with fiona.open(path) as collection:
            transform = _to_wgs84_transform(collection.crs)
            features: list[LoadedFeature] = []
            for index, record in enumerate(collection):
                properties = dict(record.properties or {})
                geometry = shape(record.geometry) if record.geometry is not None else None
                if geometry is not None and transform is not None:
                    geometry = transform(geometry)
                features.append(
                    LoadedFeature(
                        feature_id=_feature_id(properties, index),
                        geometry=geometry,
                        properties=properties,
                    )
                )
    except (fiona.errors.FionaError, OSError) as exc:
        raise ConfigurationError("FA_GEODATA_PATH", path, f"cannot read vector file: {exc}") from exc
    return features


def _to_wgs84_transform(crs: Any) -> Any:
    """Return a shapely transform to WGS 84, or ``None`` if already there."""
    if crs is None or not crs:
        return None
    from pyproj import CRS, Transformer
    from shapely.ops import transform as shapely_transform

    source = CRS.from_user_input(crs.to_wkt() if hasattr(crs, "to_wkt") else crs)
    if source.equals(CRS.from_user_input(REFERENCE_CRS), ignore_axis_order=True):
        return None
    transformer = Transformer.from_crs(source, REFERENCE_CRS, always_xy=True)
    return lambda geom: shapely_transform(transformer.transform, geom)


def _feature_id(properties: dict[str, Any], index: int) -> str:
    for key in _ID_PROPERTIES:
        value = properties.get(key)
        if value not in (None, ""):
            return str(value)
    return str(index)


# ---------------------------------------------------------------------------
# Buffering
# ---------------------------------------------------------------------------


def circle_polygon_area_m2(radius_m: float) -> float:
    """Area of the 64-vertex polygon inscribed in a circle of *radius_m*."""
    n = CIRCLE_VERTICES
    return 0.5 * n * radius_m * radius_m * math.sin(2 * math.pi / n)


def point_buffer_radius_m(buffer_ha: float) -> float:
    """Radius whose buffered polygon covers at least *buffer_ha* hectares.

    The buffer is a 64-vertex polygon inscribed in the circle, slightly
    smaller than the circle itself; the radius is enlarged to compensate.
    """
    if buffer_ha <= 0:
        raise ConfigurationError("FA_POINT_BUFFER_HA", buffer_ha, "must be > 0 (hectares)")
    target_m2 = buffer_ha * SQ_METRES_PER_HECTARE
    n = CIRCLE_VERTICES
    return math.sqrt(target_m2 / (0.5 * n * math.sin(2 * math.pi / n)))


def resolve_buffer_radius(config: AgreementConfig) -> float:
    """Radius used for point buffers under *config*.

    Raises:
        ConfigurationError: If an explicit radius yields polygons smaller
            than the minimum polygon area.
    """
    if config.point_buffer_radius_m is None:
        return point_buffer_radius_m(config.point_buffer_ha)
    radius = config.point_buffer_radius_m
    area_ha = circle_polygon_area_m2(radius) / SQ_METRES_PER_HECTARE
    if area_ha < config.min_polygon_area_ha:
        raise ConfigurationError(
            "FA_POINT_BUFFER_RADIUS_M",
            radius,
            f"buffered points would cover {area_ha:.3f} ha, below the "
            f"{config.min_polygon_area_ha} ha minimum polygon area",
        )
    return radius


def buffer_geometry(geometry: BaseGeometry, distance_m: float) -> BaseGeometry:
    """Buffer a WGS 84 geometry by *distance_m* metres in its local UTM CRS."""
    from pyproj import Transformer
    from shapely.ops import transform as shapely_transform

    utm_crs = best_utm_epsg(geometry)
    to_utm = Transformer.from_crs(REFERENCE_CRS, utm_crs, always_xy=True)
    to_wgs = Transformer.from_crs(utm_crs, REFERENCE_CRS, always_xy=True)

    projected = shapely_transform(to_utm.transform, geometry)
    buffered = projected.buffer(distance_m, quad_segs=_QUAD_SEGS)
    return shapely_transform(to_wgs.transform, buffered)


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------


def cluster_geometries(
    geometries: Sequence[AnalysisGeometry],
    join_distance_m: float = 10_000.0,
) -> list[Cluster]:
    """Group geometries whose join buffers touch into clusters.

    Every geometry is buffered by *join_distance_m*; each connected
    component of the union is one cluster whose bounds are the component's
    bounding rectangle. Geometries all within one union collapse to a
    single cluster.
    """
    from shapely.ops import unary_union

    if not geometries:
        return []

    buffered = [buffer_geometry(g.geometry, join_distance_m) for g in geometries]
    union = unary_union(buffered)
    components = list(union.geoms) if hasattr(union, "geoms") else [union]

    clusters: list[Cluster] = []
    for index, component in enumerate(components):
        members = tuple(
            g.feature_id for g, b in zip(geometries, buffered, strict=True) if component.intersects(b)
        )
        clusters.append(
            Cluster(index=index, bounds=tuple(component.bounds), member_ids=members)  # type: ignore[arg-type]
        )
        logger.debug(
            "Cluster built | cluster=%d | members=%d | bounds=[%.4f, %.4f, %.4f, %.4f]",
            index + 1,
            len(members),
            *component.bounds,
        )
    return clusters


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def analysis_geometries(
    features: Sequence[LoadedFeature],
    declared_kind: str,
    *,
    buffer_radius_m: float | None = None,
) -> list[AnalysisGeometry]:
    """Materialise features as polygons with their area computed once."""
    geometries: list[AnalysisGeometry] = []
    for feature in features:
        geometry = feature.geometry
        radius = None
        if declared_kind == KIND_POINT:
            if buffer_radius_m is None:
                raise ConfigurationError(
                    "FA_POINT_BUFFER_RADIUS_M", None, "point geodata needs a buffer radius"
                )
            radius = buffer_radius_m
            geometry = buffer_geometry(geometry, radius)
        geometries.append(
            AnalysisGeometry.from_geometry(
                feature.feature_id,
                geometry,
                kind=declared_kind,
                properties=feature.properties,
                buffer_radius_m=radius,
            )
        )
    return geometries


def resolve_geodata(
    features: Sequence[LoadedFeature],
    declared_kind: str,
    *,
    buffer_radius_m: float | None = None,
    join_distance_m: float = 10_000.0,
) -> ResolvedRegion:
    """Build the working region, clusters and analysis geometries."""
    from shapely.ops import unary_union

    geometries = analysis_geometries(features, declared_kind, buffer_radius_m=buffer_radius_m)
    clusters = cluster_geometries(geometries, join_distance_m)
    roi = unary_union([c.region for c in clusters])

    logger.info(
        "Region resolved | mode=%s | kind=%s | geometries=%d | clusters=%d | "
        "roi=[%.4f, %.4f, %.4f, %.4f]",
        MODE_GEODATA,
        declared_kind,
        len(geometries),
        len(clusters),
        *roi.bounds,
    )
    return ResolvedRegion(
        mode=MODE_GEODATA,
        roi=roi,
        clusters=tuple(clusters),
        geometries=tuple(geometries),
    )


def resolve_roi(geometry: BaseGeometry, *, feature_id: str = "ROI") -> ResolvedRegion:
    """Use a single region geometry as the ROI; no clusters."""
    region = AnalysisGeometry.from_geometry(feature_id, geometry, kind=KIND_REGION)
    logger.info(
        "Region resolved | mode=%s | area=%.2f ha | roi=[%.4f, %.4f, %.4f, %.4f]",
        MODE_ROI,
        region.area_ha,
        *geometry.bounds,
    )
    return ResolvedRegion(mode=MODE_ROI, roi=geometry, clusters=(), geometries=(region,))
