"""RasterStore abstract base class.

A store persists the three kinds of run output: agreement GeoTIFFs,
attribute/feature tables and the JSON run summary. Stages only talk to
this interface, so the same run can write to a local folder or to Azure
Blob Storage.

Targets:
    ``StorageTarget(kind="path")`` writes under a folder named by
    ``location``. ``StorageTarget(kind="catalog")`` treats ``name`` as a
    catalog identifier (``users/someone/ForestAgreement_Cluster_1``) and
    keeps its path separators.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from forest_agreement.core.exceptions import PipelineError
from forest_agreement.utils.export_names import TARGET_CATALOG, TARGET_PATH

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shapely.geometry.base import BaseGeometry

    from forest_agreement.models.raster import Raster


class StorageError(PipelineError):
    """Writing an output failed.

    Attributes:
        location: Destination that could not be written.
    """

    default_stage = "storage"
    default_code = "STORAGE_WRITE_FAILED"

    def __init__(self, message: str, *, location: str = "", retryable: bool = False) -> None:
        self.location = location
        super().__init__(message, retryable=retryable)


@dataclass(frozen=True, slots=True)
class StorageTarget:
    """Destination of one output.

    Attributes:
        kind: ``path`` or ``catalog``.
        location: Folder (path targets) or catalog root (catalog targets).
        name: Output name without extension.
    """

    kind: str
    location: str
    name: str

    def __post_init__(self) -> None:
        if self.kind not in (TARGET_PATH, TARGET_CATALOG):
            msg = f"Unsupported storage target kind: {self.kind!r}"
            raise ValueError(msg)
        if not self.name:
            msg = "StorageTarget.name must not be empty"
            raise ValueError(msg)

    def renamed(self, name: str) -> StorageTarget:
        return StorageTarget(kind=self.kind, location=self.location, name=name)


class RasterStore(abc.ABC):
    """Abstract output store."""

    @abc.abstractmethod
    def write_raster(
        self,
        raster: Raster,
        region: BaseGeometry,
        crs: str,
        resolution_m: float,
        fmt: str,
        target: StorageTarget,
    ) -> str:
        """Write *raster* over *region*, reprojected to *crs* at *resolution_m*.

        Returns:
            Location of the written raster.

        Raises:
            StorageError: If the raster cannot be written.
        """

    @abc.abstractmethod
    def write_table(
        self,
        rows: Sequence[dict[str, Any]],
        fmt: str,
        target: StorageTarget,
    ) -> str:
        """Write a table. Rows carrying a ``geometry`` key are written as features.

        Returns:
            Location of the written table.

        Raises:
            StorageError: If the table cannot be written or the format
                needs geometries the rows do not have.
        """

    @abc.abstractmethod
    def write_text(self, text: str, target: StorageTarget, *, suffix: str = ".json") -> str:
        """Write a UTF-8 text document (the run summary)."""
