"""Typed models for the dataset catalog.

Defines the immutable description of each source product:

- ``DateRange``: Inclusive acquisition window used to filter collections
- ``ClassRange``: Inclusive range of forest values for continuous datasets
- ``LandMask``: Optional companion mask restricting a dataset to land pixels
- ``DatasetSpec``: One catalog entry (forest classes, resolution, compositing)

Design notes:
- All models are frozen dataclasses; the catalog is built once per run.
- Invariants are checked in ``__post_init__`` and raise
  ``ModelValidationError`` with the offending field and value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from forest_agreement.core.exceptions import ValidationError

if TYPE_CHECKING:
    from datetime import date

#: How a provider reduces a multi-image collection to one raster.
COMPOSITE_MOSAIC = "mosaic"
COMPOSITE_MODE = "mode"
COMPOSITE_MEAN = "mean"
COMPOSITES = (COMPOSITE_MOSAIC, COMPOSITE_MODE, COMPOSITE_MEAN)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ModelValidationError(ValueError, ValidationError):
    """Raised when a domain model is constructed with invalid field values.

    Attributes:
        model: Name of the model class that failed validation.
        field_name: The field that violated the invariant.
        value: The invalid value.
    """

    default_stage = "model_validation"
    default_code = "MODEL_VALIDATION_FAILED"

    def __init__(self, model: str, field_name: str, value: object, message: str) -> None:
        self.model = model
        self.field_name = field_name
        self.value = value
        ValidationError.__init__(self, f"{model}.{field_name}={value!r}: {message}")


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive acquisition window ``start <= date <= end``."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ModelValidationError(
                "DateRange", "start", self.start, f"must be <= end ({self.end})"
            )

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end

    def to_interval(self) -> str:
        """Return the window as an RFC 3339 interval (``start/end``)."""
        return f"{self.start.isoformat()}/{self.end.isoformat()}"


@dataclass(frozen=True, slots=True)
class ClassRange:
    """Inclusive range of values counted as forest.

    Used for continuous products such as canopy height, where every value
    between ``minimum`` and ``maximum`` (both ends included) is forest.
    """

    minimum: int
    maximum: int

    def __post_init__(self) -> None:
        if self.minimum > self.maximum:
            raise ModelValidationError(
                "ClassRange", "minimum", self.minimum, f"must be <= maximum ({self.maximum})"
            )

    def __contains__(self, value: object) -> bool:
        try:
            return bool(self.minimum <= value <= self.maximum)  # type: ignore[operator]
        except TypeError:
            return False


@dataclass(frozen=True, slots=True)
class LandMask:
    """Companion raster restricting a dataset to land pixels.

    A pixel is land when the mask value is ``<= max_valid``; every other
    pixel of the parent dataset is forced to non-forest.

    Attributes:
        key: Identifier the provider resolves (directory or collection).
        source_id: Upstream product identifier.
        max_valid: Largest mask value still counted as land.
    """

    key: str
    source_id: str = ""
    max_valid: int = 1
    band: str | None = None

    def as_dataset(self, native_resolution_m: float) -> DatasetSpec:
        """Describe the mask as a dataset whose "forest" class is land."""
        return DatasetSpec(
            key=self.key,
            label=self.key,
            source_id=self.source_id,
            forest_classes=ClassRange(0, self.max_valid),
            native_resolution_m=native_resolution_m,
            band=self.band,
        )


# ---------------------------------------------------------------------------
# Dataset specification
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DatasetSpec:
    """One entry of the dataset catalog.

    Attributes:
        key: Stable identifier (``"JRC"``, ``"ESRI_LULC"``...).
        label: Name used in report tables (``"ESRI-10m"``...).
        source_id: Upstream product identifier.
        forest_classes: Discrete class codes or an inclusive ``ClassRange``.
        native_resolution_m: Native pixel size of the product in metres.
        date_range: Optional acquisition window applied before compositing.
        composite: ``mosaic`` (last valid pixel wins), ``mode`` or ``mean``.
        band: Band or asset name to read; ``None`` reads the first band.
        land_mask: Optional land mask applied after reclassification.
    """

    key: str
    label: str
    source_id: str
    forest_classes: frozenset[int] | ClassRange
    native_resolution_m: float
    date_range: DateRange | None = None
    composite: str = COMPOSITE_MOSAIC
    band: str | None = None
    land_mask: LandMask | None = None

    def __post_init__(self) -> None:
        if not self.key or not self.key.strip():
            raise ModelValidationError("DatasetSpec", "key", self.key, "must not be empty")
        if self.native_resolution_m <= 0:
            raise ModelValidationError(
                "DatasetSpec", "native_resolution_m", self.native_resolution_m, "must be > 0"
            )
        if self.composite not in COMPOSITES:
            raise ModelValidationError(
                "DatasetSpec", "composite", self.composite, f"must be one of {COMPOSITES}"
            )
        if isinstance(self.forest_classes, frozenset) and not self.forest_classes:
            raise ModelValidationError(
                "DatasetSpec", "forest_classes", self.forest_classes, "must not be empty"
            )

    @property
    def is_range(self) -> bool:
        """``True`` when forest is a value range rather than discrete codes."""
        return isinstance(self.forest_classes, ClassRange)
