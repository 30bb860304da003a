"""Agreement stage: combine binary forest masks and remove speckle.

The agreement score of a pixel is the number of datasets classifying it
as forest (0..D). Isolated patches smaller than the minimum mapping unit
are replaced by the modal score of their neighbourhood, mirroring a
connected-pixel-count sieve followed by a focal mode.

Engineering decisions:
- Connectivity is 8-neighbour (3x3 structuring element).
- The focal mode counts valid pixels only; nodata never wins a window.
- Ties in the focal mode resolve to the lowest value.
- Pixels outside the working region hold ``AGREEMENT_NODATA`` and are
  never modified by the sieve.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy import ndimage

from forest_agreement.core.constants import AGREEMENT_NODATA
from forest_agreement.core.exceptions import ValidationError
from forest_agreement.models.raster import Raster, check_aligned
from forest_agreement.stages.reclassify import clip_to_region

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shapely.geometry.base import BaseGeometry

    from forest_agreement.core.config import AgreementConfig

logger = logging.getLogger("forest_agreement.stages.agreement")

EIGHT_CONNECTED = np.ones((3, 3), dtype=bool)


@dataclass(frozen=True)
class AgreementResult:
    """Raw and speckle-filtered agreement rasters of one run.

    Attributes:
        raw: Pixel-wise sum of the masks, nodata outside the region.
        filtered: ``raw`` after the MMU sieve. Exported and used for
            statistics.
        dataset_count: Number of masks combined (maximum score).
    """

    raw: Raster
    filtered: Raster
    dataset_count: int


def combine(masks: Sequence[Raster]) -> Raster:
    """Pixel-wise sum of aligned binary masks as ``uint8``.

    Raises:
        ValidationError: If *masks* is empty.
        UnalignedRasterError: If the masks do not share a grid.
    """
    if not masks:
        msg = "At least one forest mask is required"
        raise ValidationError(msg, stage="agreement", code="NO_MASKS")
    check_aligned(masks, stage="agreement")

    total = np.zeros(masks[0].shape, dtype=np.uint8)
    for mask in masks:
        total += mask.data.astype(np.uint8)
    return masks[0].with_data(total, nodata=None)


def connected_pixel_count(data: np.ndarray, valid: np.ndarray) -> np.ndarray:
    """Size of the 8-connected same-value component of every valid pixel.

    Invalid pixels get 0.
    """
    counts = np.zeros(data.shape, dtype=np.int64)
    for value in np.unique(data[valid]):
        labels, _n = ndimage.label(valid & (data == value), structure=EIGHT_CONNECTED)
        sizes = np.bincount(labels.ravel())
        sizes[0] = 0
        component = labels > 0
        counts[component] = sizes[labels[component]]
    return counts


def focal_mode(data: np.ndarray, valid: np.ndarray, radius: int) -> np.ndarray:
    """Most frequent valid value in the ``(2r+1)^2`` window around each pixel.

    Ties resolve to the lowest value. Pixels whose window holds no valid
    value keep their own value.
    """
    if radius < 1:
        return data.copy()
    values = np.unique(data[valid])
    if values.size == 0:
        return data.copy()

    kernel = np.ones((2 * radius + 1, 2 * radius + 1), dtype=np.int32)
    counts = np.stack(
        [
            ndimage.convolve(
                (valid & (data == value)).astype(np.int32), kernel, mode="constant", cval=0
            )
            for value in values
        ]
    )
    # argmax returns the first maximum, i.e. the lowest value on ties
    modal = values[np.argmax(counts, axis=0)]
    has_neighbours = counts.max(axis=0) > 0
    return np.where(has_neighbours, modal, data).astype(data.dtype)


def sieve_filter(agreement: Raster, mmu_pixels: int, radius: int) -> Raster:
    """Replace components smaller than *mmu_pixels* with their focal mode.

    Nodata pixels are left untouched. With no small components the raster
    is returned unchanged.
    """
    valid = agreement.valid_mask()
    sizes = connected_pixel_count(agreement.data, valid)
    small = valid & (sizes < mmu_pixels)
    if not small.any():
        return agreement

    modal = focal_mode(agreement.data, valid, radius)
    data = np.where(small, modal, agreement.data).astype(agreement.data.dtype)
    logger.info(
        "Sieve applied | mmu=%d px | radius=%d | small_pixels=%d | changed=%d",
        mmu_pixels,
        radius,
        int(small.sum()),
        int((data != agreement.data).sum()),
    )
    return agreement.with_data(data, nodata=agreement.nodata)


def compute_agreement(
    masks: Sequence[Raster],
    region: BaseGeometry,
    config: AgreementConfig,
) -> AgreementResult:
    """Combine *masks*, clip to *region* and apply the MMU sieve."""
    combined = combine(masks)
    tagged = combined.with_data(combined.data, nodata=AGREEMENT_NODATA)
    raw = clip_to_region(tagged, region, AGREEMENT_NODATA)
    filtered = sieve_filter(raw, config.mmu_pixels, config.agreement_radius)
    logger.info(
        "Agreement computed | datasets=%d | mmu=%d px | radius=%d | shape=%s",
        len(masks),
        config.mmu_pixels,
        config.agreement_radius,
        raw.shape,
    )
    return AgreementResult(raw=raw, filtered=filtered, dataset_count=len(masks))
