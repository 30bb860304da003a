"""Shared pipeline constants.

Centralises unit conversions, CRS identifiers, nodata markers and the
default output names that would otherwise be duplicated across stages,
storage adapters and the orchestrator.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Units and geodesy
# ---------------------------------------------------------------------------

SQ_METRES_PER_HECTARE: float = 10_000.0

METRES_PER_DEGREE_AT_EQUATOR: float = 111_319.49079327357
"""Length of one degree of longitude on the WGS 84 equator (2*pi*a/360)."""

REFERENCE_CRS: str = "EPSG:4326"
"""Geographic CRS every dataset is aligned to before combination."""

# ---------------------------------------------------------------------------
# Agreement raster encoding
# ---------------------------------------------------------------------------

AGREEMENT_NODATA: int = 255
"""Nodata marker of the in-memory ``uint8`` agreement raster."""

EXPORT_NODATA: dict[str, int] = {"uint8": 255, "int16": -1}
"""Nodata marker written for each supported export data type."""

# ---------------------------------------------------------------------------
# Output names
# ---------------------------------------------------------------------------

EXTENT_SUMMARY_NAME: str = "ForestExtentSummary_2020"
"""Table of forest extent per dataset, ranked."""

POLYGON_TABLE_NAME: str = "Geodata_ForestAgreement_2020"
"""Per-polygon agreement assessment table (geodata mode only)."""

RUN_SUMMARY_NAME: str = "RunSummary"
"""JSON run summary written next to the tables."""

# ---------------------------------------------------------------------------
# Input placeholders that must be replaced before a run
# ---------------------------------------------------------------------------

GEODATA_PLACEHOLDER: str = "your_geodata_here"
ASSET_ID_PLACEHOLDER: str = "your_username"

# ---------------------------------------------------------------------------
# Supported formats
# ---------------------------------------------------------------------------

RASTER_FORMATS: tuple[str, ...] = ("GeoTIFF",)
TABLE_FORMATS: tuple[str, ...] = ("CSV", "SHP", "KML", "KMZ", "GeoJSON")
