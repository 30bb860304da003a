"""Unified pipeline exception taxonomy.

Provides a shared base exception hierarchy for every pipeline stage,
provider, and storage adapter. Every domain exception inherits from
``PipelineError`` and carries structured context fields that enable
consistent retry decisions, per-unit failure reporting, and operator
diagnostics.

Taxonomy categories
-------------------
- ``ValidationError``:   input/contract violations, never retryable.
- ``TransientError``:    temporary failures (network, throttle), retryable.
- ``PermanentError``:    unrecoverable domain failures, not retryable.
- ``ContractError``:     invariant drift between stages, never retryable.

Every exception exposes ``to_error_dict()`` for a stable structured
error payload suitable for the run summary and logging.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline-domain errors.

    Attributes:
        message: Human-readable error description.
        stage: Pipeline stage where the error occurred
            (e.g. ``"reclassify"``, ``"export"``).
        code: Machine-readable error code (e.g. ``"UNKNOWN_DATASET"``).
        retryable: Whether the caller may retry the operation.
        unit: Unit of work the error belongs to (cluster, tile, dataset),
            empty for run-level errors.
    """

    #: Default stage for subclasses (override via class attribute or kwarg).
    default_stage: str = ""
    #: Default code for subclasses (override via class attribute or kwarg).
    default_code: str = ""

    def __init__(
        self,
        message: str = "",
        *,
        stage: str = "",
        code: str = "",
        retryable: bool = False,
        unit: str = "",
    ) -> None:
        self.message = message
        self.stage = stage or self.default_stage
        self.code = code or self.default_code
        self.retryable = retryable
        self.unit = unit
        super().__init__(message)

    @property
    def category(self) -> str:
        """Return the error category based on concrete class."""
        if isinstance(self, ContractError):
            return "contract"
        if isinstance(self, ValidationError):
            return "validation"
        if isinstance(self, TransientError):
            return "transient"
        if isinstance(self, PermanentError):
            return "permanent"
        return "transient" if self.retryable else "permanent"

    def to_error_dict(self) -> dict[str, object]:
        """Return a structured error payload with stable keys."""
        return {
            "category": self.category,
            "code": self.code,
            "stage": self.stage,
            "message": self.message,
            "retryable": self.retryable,
            "unit": self.unit,
        }


# ---------------------------------------------------------------------------
# Category base classes
# ---------------------------------------------------------------------------


class ValidationError(PipelineError):
    """Input or domain-model validation failure. Never retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class TransientError(PipelineError):
    """Temporary failure that may succeed on retry."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class PermanentError(PipelineError):
    """Unrecoverable domain failure. Not retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class ContractError(PipelineError):
    """Invariant violated between pipeline stages. Never retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Per-unit outcomes shared by statistics and export
# ---------------------------------------------------------------------------


class EmptyRegionWarning(PermanentError):
    """A cluster or tile holds no valid pixels; the unit is skipped."""

    default_stage = "export"
    default_code = "EMPTY_REGION"


class PixelBudgetExceeded(PermanentError):
    """A unit of work would touch more pixels than ``max_pixels`` allows."""

    default_stage = "statistics"
    default_code = "PIXEL_BUDGET_EXCEEDED"
