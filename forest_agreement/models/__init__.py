"""Data models and schemas.

Defines the data structures used throughout the pipeline:
- DatasetSpec: One catalog entry and its reclassification rule
- Raster / Grid: In-memory rasters and the common target grid
- AnalysisGeometry / Cluster: Input geometries and their groupings
- StatsRow / PolygonAgreementRow: Report table rows
- RunSummary: Per-run audit record (pydantic)
"""

from forest_agreement.models.dataset import (
    ClassRange,
    DatasetSpec,
    DateRange,
    LandMask,
    ModelValidationError,
)
from forest_agreement.models.geometry import (
    AnalysisGeometry,
    Cluster,
    GeometryTypeMismatch,
    ResolvedRegion,
)
from forest_agreement.models.raster import Grid, Raster, UnalignedRasterError
from forest_agreement.models.statistics import PolygonAgreementRow, StatsRow, ZonalResult
from forest_agreement.models.summary import RunSummary, UnitOutcome

__all__ = [
    "AnalysisGeometry",
    "ClassRange",
    "Cluster",
    "DatasetSpec",
    "DateRange",
    "GeometryTypeMismatch",
    "Grid",
    "LandMask",
    "ModelValidationError",
    "PolygonAgreementRow",
    "Raster",
    "ResolvedRegion",
    "RunSummary",
    "StatsRow",
    "UnalignedRasterError",
    "UnitOutcome",
    "ZonalResult",
]
