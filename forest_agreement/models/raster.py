"""In-memory raster and grid models.

A ``Raster`` is a 2-D numpy array tagged with its affine transform, CRS and
nodata policy. Two rasters are *aligned* when they share the CRS, the pixel
size and origin (transform) and the shape. Every pixel-wise combination
checks alignment first and raises ``UnalignedRasterError`` otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

import numpy as np

from forest_agreement.core.exceptions import ContractError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from affine import Affine

# Transform coefficients closer than this are treated as equal (degrees/metres).
_TRANSFORM_TOLERANCE = 1e-9


class UnalignedRasterError(ContractError):
    """Rasters that must share a grid do not. Always a programming error."""

    default_stage = "agreement"
    default_code = "UNALIGNED_RASTER"


def same_crs(a: str, b: str) -> bool:
    """Return ``True`` when two CRS definitions describe the same system."""
    if a == b:
        return True
    from rasterio.crs import CRS

    return CRS.from_user_input(a) == CRS.from_user_input(b)


@dataclass(frozen=True, slots=True)
class Grid:
    """Target pixel grid: CRS, affine transform and shape.

    Attributes:
        crs: CRS identifier (``"EPSG:4326"`` for the reference grid).
        transform: Affine transform of the upper-left pixel corner.
        width: Number of columns.
        height: Number of rows.
    """

    crs: str
    transform: Affine
    width: int
    height: int

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height, self.width)

    @property
    def res(self) -> tuple[float, float]:
        """Pixel size as positive ``(x, y)``."""
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        """``(min_x, min_y, max_x, max_y)`` of the grid extent."""
        from rasterio.transform import array_bounds

        west, south, east, north = array_bounds(self.height, self.width, self.transform)
        return (west, south, east, north)

    def matches(self, other: Grid) -> bool:
        return (
            self.shape == other.shape
            and np.allclose(
                tuple(self.transform)[:6],
                tuple(other.transform)[:6],
                rtol=0.0,
                atol=_TRANSFORM_TOLERANCE,
            )
            and same_crs(self.crs, other.crs)
        )


@dataclass(frozen=True, eq=False)
class Raster:
    """A single-band raster held in memory.

    Attributes:
        data: 2-D array of pixel values.
        transform: Affine transform of the upper-left pixel corner.
        crs: CRS identifier.
        nodata: Value marking missing pixels, or ``None`` when every pixel
            is valid (NaN is always treated as missing).
    """

    data: np.ndarray
    transform: Affine
    crs: str
    nodata: float | int | None = None

    def __post_init__(self) -> None:
        if self.data.ndim != 2:
            msg = f"Raster data must be 2-D, got shape {self.data.shape}"
            raise ValueError(msg)

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape  # type: ignore[return-value]

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def grid(self) -> Grid:
        return Grid(crs=self.crs, transform=self.transform, width=self.width, height=self.height)

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return self.grid.bounds

    def valid_mask(self) -> np.ndarray:
        """Boolean array, ``True`` where the pixel holds data."""
        valid = np.ones(self.shape, dtype=bool)
        if np.issubdtype(self.data.dtype, np.floating):
            valid &= ~np.isnan(self.data)
        if self.nodata is not None and not (
            isinstance(self.nodata, float) and np.isnan(self.nodata)
        ):
            valid &= self.data != self.nodata
        return valid

    def is_aligned_with(self, other: Raster | Grid) -> bool:
        target = other.grid if isinstance(other, Raster) else other
        return self.grid.matches(target)

    def with_data(self, data: np.ndarray, *, nodata: float | int | None = None) -> Raster:
        """Return a new raster on the same grid holding *data*."""
        return replace(self, data=data, nodata=nodata)


def check_aligned(rasters: Iterable[Raster], *, stage: str = "") -> None:
    """Raise ``UnalignedRasterError`` unless every raster shares the first one's grid."""
    rasters = list(rasters)
    if not rasters:
        return
    reference = rasters[0].grid
    for index, raster in enumerate(rasters[1:], start=1):
        if not raster.grid.matches(reference):
            msg = (
                f"Raster {index} is not aligned with raster 0: "
                f"crs={raster.crs} shape={raster.shape} transform={tuple(raster.transform)[:6]} "
                f"vs crs={reference.crs} shape={reference.shape} "
                f"transform={tuple(reference.transform)[:6]}"
            )
            raise UnalignedRasterError(msg, stage=stage)
