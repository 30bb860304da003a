"""Pydantic run summary model.

The run summary is the audit trail of a pipeline run: which datasets
entered the agreement score, which grid and MMU were used, and what
happened to every unit of work (dataset statistics, cluster or tile
export). It is written as JSON next to the output tables.

The schema is split into two parts:
- **UnitOutcome**: One record per unit of work
- **RunSummary**: Run-level parameters, outcomes and written locations
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field

# Schema version for forward compatibility
SCHEMA_VERSION = "forest-agreement-run-v1"

STATUS_EXPORTED = "exported"
STATUS_COMPUTED = "computed"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"

UNIT_DATASET = "dataset"
UNIT_CLUSTER = "cluster"
UNIT_TILE = "tile"
UNIT_POLYGON = "polygon"


class UnitOutcome(BaseModel):
    """Result of one independent unit of work.

    Attributes:
        unit: Unit name (dataset key or export name).
        kind: ``dataset``, ``polygon``, ``cluster`` or ``tile``.
        status: ``exported``, ``computed``, ``skipped`` or ``failed``.
        location: Where the output was written (empty when nothing was).
        crs: Projected CRS used for the export.
        duration_s: Wall-clock time spent on the unit.
        error: Structured error payload (``PipelineError.to_error_dict``).
    """

    unit: str
    kind: str
    status: str
    location: str = ""
    crs: str = ""
    duration_s: float = 0.0
    error: dict[str, object] | None = None

    @property
    def ok(self) -> bool:
        return self.status in (STATUS_EXPORTED, STATUS_COMPUTED)


class RunSummary(BaseModel):
    """Top-level run summary record.

    Attributes:
        schema_version: Schema identifier for forward compatibility.
        run_id: Unique identifier of the run.
        mode: ``geodata`` or ``roi``.
        timestamp: Run start time (ISO 8601, UTC).
        dataset_keys: Datasets in agreement order.
        dataset_count: Maximum agreement score (D).
        resolution_m: Common grid resolution in metres.
        mmu_pixels: Sieve threshold applied to the agreement raster.
        agreement_radius: Majority window radius in pixels.
        analysis_crs: UTM CRS of the whole working region.
        cluster_count: Number of clusters (geodata mode).
        tile_count: Number of non-empty tiles (ROI mode).
        outcomes: Per-unit outcomes in submission order.
        tables: Table name to written location.
        duration_s: Total run duration.
    """

    schema_version: str = Field(default=SCHEMA_VERSION, alias="$schema")
    run_id: str = ""
    mode: str = ""
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    dataset_keys: list[str] = Field(default_factory=list)
    dataset_count: int = 0
    resolution_m: float = 30.0
    mmu_pixels: int = 0
    agreement_radius: int = 1
    analysis_crs: str = ""
    cluster_count: int = 0
    tile_count: int = 0
    outcomes: list[UnitOutcome] = Field(default_factory=list)
    tables: dict[str, str] = Field(default_factory=dict)
    duration_s: float = 0.0

    model_config = {"populate_by_name": True}

    def count(self, status: str) -> int:
        """Number of outcomes with the given status."""
        return sum(1 for o in self.outcomes if o.status == status)

    def to_json(self, *, indent: int = 2) -> str:
        """Serialise to a JSON string with the ``$schema`` alias."""
        return self.model_dump_json(indent=indent, by_alias=True)
