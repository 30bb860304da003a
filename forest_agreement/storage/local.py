"""Local filesystem store.

Writes every run output under a root directory:

- Rasters: single-band GeoTIFF (tiled, DEFLATE), reprojected from the
  EPSG:4326 analysis grid to the unit's UTM CRS at the target resolution
  with nearest-neighbour resampling, so agreement scores are never
  interpolated.
- Tables: CSV (``csv`` module), Shapefile and GeoJSON (fiona), KML and
  KMZ (lxml). Geometries are written in EPSG:4326. Shapefile attribute
  names are cut to the 10-character DBF limit (``forestagree`` becomes
  ``forestagre``); every renamed column is logged.
- Text: the JSON run summary.

Writes are idempotent: an existing output of the same name is replaced.
"""

from __future__ import annotations

import csv
import logging
import math
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

from forest_agreement.core.constants import REFERENCE_CRS
from forest_agreement.models.raster import Raster
from forest_agreement.storage.base import RasterStore, StorageError, StorageTarget

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shapely.geometry.base import BaseGeometry

logger = logging.getLogger("forest_agreement.storage.local")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

KML_NAMESPACE = "http://www.opengis.net/kml/2.2"

GEOMETRY_KEY = "geometry"

_TABLE_SUFFIXES = {
    "CSV": ".csv",
    "SHP": ".shp",
    "GeoJSON": ".geojson",
    "KML": ".kml",
    "KMZ": ".kmz",
}

_FIONA_DRIVERS = {"SHP": "ESRI Shapefile", "GeoJSON": "GeoJSON"}

#: DBF attribute names hold at most 10 characters.
SHAPEFILE_FIELD_LIMIT = 10

_GTIFF_PROFILE = {
    "driver": "GTiff",
    "count": 1,
    "tiled": True,
    "blockxsize": 256,
    "blockysize": 256,
    "compress": "deflate",
}


class LocalFileStore(RasterStore):
    """Store writing under a local root directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, target: StorageTarget, suffix: str) -> Path:
        """Destination file of *target*, parent directories created."""
        base = self._root / target.location if target.location else self._root
        path = base / f"{target.name}{suffix}"
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    # ------------------------------------------------------------------
    # Rasters
    # ------------------------------------------------------------------

    def write_raster(
        self,
        raster: Raster,
        region: BaseGeometry,
        crs: str,
        resolution_m: float,
        fmt: str,
        target: StorageTarget,
    ) -> str:
        if fmt != "GeoTIFF":
            msg = f"Unsupported raster format: {fmt!r}"
            raise StorageError(msg, location=target.name)

        import rasterio
        from rasterio.errors import RasterioError

        path = self.path_for(target, ".tif")
        try:
            projected = reproject_to_utm(raster, region, crs, resolution_m)
            profile = {
                **_GTIFF_PROFILE,
                "width": projected.width,
                "height": projected.height,
                "dtype": projected.data.dtype.name,
                "crs": projected.crs,
                "transform": projected.transform,
                "nodata": projected.nodata,
            }
            with rasterio.open(path, "w", **profile) as dst:
                dst.write(projected.data, 1)
        except (RasterioError, OSError, ValueError) as exc:
            msg = f"Failed to write raster {path}: {exc}"
            raise StorageError(msg, location=str(path)) from exc

        logger.info(
            "Raster written | path=%s | crs=%s | shape=%s | dtype=%s",
            path,
            crs,
            projected.shape,
            projected.data.dtype,
        )
        return str(path)

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def write_table(
        self,
        rows: Sequence[dict[str, Any]],
        fmt: str,
        target: StorageTarget,
    ) -> str:
        suffix = _TABLE_SUFFIXES.get(fmt)
        if suffix is None:
            msg = f"Unsupported table format: {fmt!r}"
            raise StorageError(msg, location=target.name)
        if fmt != "CSV" and any(row.get(GEOMETRY_KEY) is None for row in rows):
            msg = f"{fmt} tables need a geometry on every row"
            raise StorageError(msg, location=target.name)

        path = self.path_for(target, suffix)
        try:
            if fmt == "CSV":
                _write_csv(path, rows)
            elif fmt in _FIONA_DRIVERS:
                _write_features(path, rows, _FIONA_DRIVERS[fmt])
            else:
                document = kml_document(target.name, rows)
                if fmt == "KMZ":
                    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                        archive.writestr("doc.kml", document)
                else:
                    path.write_bytes(document)
        except OSError as exc:
            msg = f"Failed to write table {path}: {exc}"
            raise StorageError(msg, location=str(path)) from exc

        logger.info("Table written | path=%s | format=%s | rows=%d", path, fmt, len(rows))
        return str(path)

    def write_text(self, text: str, target: StorageTarget, *, suffix: str = ".json") -> str:
        path = self.path_for(target, suffix)
        try:
            path.write_text(text, encoding="utf-8")
        except OSError as exc:
            msg = f"Failed to write {path}: {exc}"
            raise StorageError(msg, location=str(path)) from exc
        return str(path)


# ---------------------------------------------------------------------------
# Raster reprojection
# ---------------------------------------------------------------------------


def reproject_to_utm(
    raster: Raster, region: BaseGeometry, crs: str, resolution_m: float
) -> Raster:
    """Nearest-neighbour reprojection of *raster* onto a *resolution_m* grid in *crs*.

    The output grid covers the bounds of *region* (EPSG:4326) projected to
    *crs*; pixels outside the source coverage hold the raster's nodata.
    """
    from rasterio.enums import Resampling
    from rasterio.transform import from_origin
    from rasterio.warp import reproject, transform_bounds

    west, south, east, north = transform_bounds(
        REFERENCE_CRS, crs, *region.bounds, densify_pts=21
    )
    west = math.floor(west / resolution_m) * resolution_m
    north = math.ceil(north / resolution_m) * resolution_m
    width = max(1, math.ceil((east - west) / resolution_m))
    height = max(1, math.ceil((north - south) / resolution_m))
    transform = from_origin(west, north, resolution_m, resolution_m)

    fill = raster.nodata if raster.nodata is not None else 0
    destination = np.full((height, width), fill, dtype=raster.data.dtype)
    reproject(
        source=raster.data,
        destination=destination,
        src_transform=raster.transform,
        src_crs=raster.crs,
        src_nodata=raster.nodata,
        dst_transform=transform,
        dst_crs=crs,
        dst_nodata=raster.nodata,
        resampling=Resampling.nearest,
    )
    return Raster(destination, transform, crs, raster.nodata)


# ---------------------------------------------------------------------------
# Table writers
# ---------------------------------------------------------------------------


def _columns(rows: Sequence[dict[str, Any]]) -> list[str]:
    """Attribute columns in first-seen order, geometry excluded."""
    seen: dict[str, None] = {}
    for row in rows:
        for key in row:
            if key != GEOMETRY_KEY:
                seen.setdefault(key, None)
    return list(seen)


def _write_csv(path: Path, rows: Sequence[dict[str, Any]]) -> None:
    columns = _columns(rows)
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: ("" if row.get(k) is None else row.get(k)) for k in columns})


def _field_type(values: list[Any]) -> str:
    """Fiona field type of a column from its non-null values."""
    present = [v for v in values if v is not None]
    if not present:
        return "str"
    if all(isinstance(v, int) and not isinstance(v, bool) for v in present):
        return "int"
    if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in present):
        return "float"
    return "str"


def _coerce(value: Any, field_type: str) -> Any:
    if value is None:
        return None
    if field_type == "str":
        return str(value)
    if field_type == "float":
        return float(value)
    return value


def shapefile_field_names(columns: Sequence[str]) -> dict[str, str]:
    """Map table columns to DBF-safe names, logging each rename.

    Names are cut to ``SHAPEFILE_FIELD_LIMIT`` characters; a cut name
    already taken gets a numeric suffix (``forest_a_1``), as OGR does.
    """
    names: dict[str, str] = {}
    taken: set[str] = set()
    for column in columns:
        name = column[:SHAPEFILE_FIELD_LIMIT]
        counter = 1
        while name in taken:
            suffix = f"_{counter}"
            name = column[: SHAPEFILE_FIELD_LIMIT - len(suffix)] + suffix
            counter += 1
        taken.add(name)
        names[column] = name
        if name != column:
            logger.warning("Shapefile field renamed | column=%s | field=%s", column, name)
    return names


def _write_features(path: Path, rows: Sequence[dict[str, Any]], driver: str) -> None:
    import fiona
    from fiona.errors import FionaError
    from shapely.geometry import mapping

    columns = _columns(rows)
    types = {c: _field_type([row.get(c) for row in rows]) for c in columns}
    if driver == "ESRI Shapefile":
        geometry_type = "Polygon"
        names = shapefile_field_names(columns)
    else:
        geometry_type = "Unknown"
        names = {c: c for c in columns}
    schema = {"geometry": geometry_type, "properties": {names[c]: types[c] for c in columns}}

    try:
        with fiona.open(
            path, "w", driver=driver, schema=schema, crs=REFERENCE_CRS
        ) as collection:
            for row in rows:
                collection.write(
                    {
                        "geometry": mapping(row[GEOMETRY_KEY]),
                        "properties": {
                            names[c]: _coerce(row.get(c), types[c]) for c in columns
                        },
                    }
                )
    except FionaError as exc:
        msg = f"fiona could not write {path}: {exc}"
        raise StorageError(msg, location=str(path)) from exc


# ---------------------------------------------------------------------------
# KML
# ---------------------------------------------------------------------------


def _coordinates_text(coords: Any) -> str:
    return " ".join(f"{x:.8f},{y:.8f}" for x, y, *_ in coords)


def _add_polygon(parent: Any, polygon: BaseGeometry) -> None:
    from lxml import etree  # type: ignore[attr-defined]

    ns = f"{{{KML_NAMESPACE}}}"
    element = etree.SubElement(parent, f"{ns}Polygon")
    outer = etree.SubElement(element, f"{ns}outerBoundaryIs")
    ring = etree.SubElement(outer, f"{ns}LinearRing")
    etree.SubElement(ring, f"{ns}coordinates").text = _coordinates_text(polygon.exterior.coords)
    for interior in polygon.interiors:
        inner = etree.SubElement(element, f"{ns}innerBoundaryIs")
        ring = etree.SubElement(inner, f"{ns}LinearRing")
        etree.SubElement(ring, f"{ns}coordinates").text = _coordinates_text(interior.coords)


def kml_document(name: str, rows: Sequence[dict[str, Any]]) -> bytes:
    """KML document with one Placemark per row.

    Attributes go to ``ExtendedData/Data``; polygons and multipolygons are
    written as ``Polygon`` and ``MultiGeometry``.
    """
    from lxml import etree  # type: ignore[attr-defined]

    ns = f"{{{KML_NAMESPACE}}}"
    root = etree.Element(f"{ns}kml", nsmap={None: KML_NAMESPACE})
    document = etree.SubElement(root, f"{ns}Document")
    etree.SubElement(document, f"{ns}name").text = name
    columns = _columns(rows)

    for index, row in enumerate(rows):
        placemark = etree.SubElement(document, f"{ns}Placemark")
        label = row.get("name") or index
        etree.SubElement(placemark, f"{ns}name").text = str(label)
        extended = etree.SubElement(placemark, f"{ns}ExtendedData")
        for column in columns:
            data = etree.SubElement(extended, f"{ns}Data", name=column)
            value = row.get(column)
            etree.SubElement(data, f"{ns}value").text = "" if value is None else str(value)

        geometry = row[GEOMETRY_KEY]
        if geometry.geom_type == "MultiPolygon":
            multi = etree.SubElement(placemark, f"{ns}MultiGeometry")
            for part in geometry.geoms:
                _add_polygon(multi, part)
        else:
            _add_polygon(placemark, geometry)

    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)
