"""Reading and compositing helpers shared by every dataset provider.

- ``read_region``: windowed single-band read of a GeoTIFF over a WGS 84 box
- ``mosaic``: last valid pixel wins (``rasterio.merge`` with ``method="last"``)
- ``mode``: per-pixel most frequent value; ties keep the lowest value
- ``mean``: per-pixel mean of valid values

Images are expected oldest first, so the most recent acquisition ends on
top of a mosaic.
"""

from __future__ import annotations

import contextlib
import logging
import math
from typing import TYPE_CHECKING

import numpy as np

from forest_agreement.core.constants import REFERENCE_CRS
from forest_agreement.models.raster import Raster, same_crs

if TYPE_CHECKING:
    from rasterio.io import DatasetReader

logger = logging.getLogger("forest_agreement.providers.composite")


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def band_index(src: DatasetReader, band: str | None) -> int:
    """Return the 1-based index of *band* in *src*.

    Single-band files always resolve to band 1. Multi-band files are
    matched against the band descriptions.

    Raises:
        LookupError: If a named band cannot be found in a multi-band file.
    """
    if band is None or src.count == 1:
        return 1
    descriptions = list(src.descriptions or ())
    if band in descriptions:
        return descriptions.index(band) + 1
    msg = f"Band {band!r} not found in {src.name} (bands: {descriptions})"
    raise LookupError(msg)


def read_region(
    path: str,
    bounds: tuple[float, float, float, float],
    band: str | None = None,
) -> Raster | None:
    """Read the part of a raster file covering WGS 84 *bounds*.

    Returns:
        The windowed raster in the file's own CRS, or ``None`` when the
        file does not intersect *bounds*.
    """
    import rasterio
    from rasterio.warp import transform_bounds
    from rasterio.windows import Window, from_bounds

    with rasterio.open(path) as src:
        if src.crs is None:
            msg = f"Raster {path} has no CRS"
            raise ValueError(msg)
        west, south, east, north = transform_bounds(
            REFERENCE_CRS, src.crs, *bounds, densify_pts=21
        )
        approx = from_bounds(west, south, east, north, transform=src.transform)
        col0 = max(0, math.floor(approx.col_off))
        row0 = max(0, math.floor(approx.row_off))
        col1 = min(src.width, math.ceil(approx.col_off + approx.width))
        row1 = min(src.height, math.ceil(approx.row_off + approx.height))
        if col1 <= col0 or row1 <= row0:
            return None
        window = Window(col0, row0, col1 - col0, row1 - row0)
        data = src.read(band_index(src, band), window=window)
        return Raster(
            data=data,
            transform=src.window_transform(window),
            crs=src.crs.to_string(),
            nodata=src.nodata,
        )


# ---------------------------------------------------------------------------
# Compositing
# ---------------------------------------------------------------------------


def mosaic(images: list[Raster]) -> Raster:
    """Mosaic *images*; at each pixel the last valid image wins."""
    if len(images) == 1:
        return images[0]
    from rasterio.merge import merge

    images = _to_common_crs(images)
    with contextlib.ExitStack() as stack:
        sources = [_open_in_memory(image, stack) for image in images]
        merged, transform = merge(sources, method="last", nodata=images[0].nodata)
    return Raster(data=merged[0], transform=transform, crs=images[0].crs, nodata=images[0].nodata)


def mode(images: list[Raster]) -> Raster:
    """Per-pixel mode of valid values; ties resolve to the lowest value."""
    stack, valid, template = _stack(images)
    nodata = template.nodata
    fill = nodata if nodata is not None else 0
    best_value = np.full(template.shape, fill, dtype=stack.dtype)
    best_count = np.zeros(template.shape, dtype=np.int32)
    # np.unique is sorted, so a strictly-greater test keeps the lowest value on ties.
    for value in np.unique(stack[valid]):
        count = ((stack == value) & valid).sum(axis=0)
        better = count > best_count
        best_value[better] = value
        best_count[better] = count[better]
    return template.with_data(best_value, nodata=nodata)


def mean(images: list[Raster]) -> Raster:
    """Per-pixel mean of valid values (``float32``, NaN where none)."""
    stack, valid, template = _stack(images)
    sums = np.where(valid, stack.astype(np.float64), 0.0).sum(axis=0)
    counts = valid.sum(axis=0)
    out = np.full(template.shape, np.nan, dtype=np.float64)
    np.divide(sums, counts, out=out, where=counts > 0)
    return template.with_data(out.astype(np.float32), nodata=float("nan"))


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _open_in_memory(image: Raster, stack: contextlib.ExitStack) -> DatasetReader:
    from rasterio.io import MemoryFile

    memfile = stack.enter_context(MemoryFile())
    with memfile.open(
        driver="GTiff",
        height=image.height,
        width=image.width,
        count=1,
        dtype=image.data.dtype,
        crs=image.crs,
        transform=image.transform,
        nodata=image.nodata,
    ) as dst:
        dst.write(image.data, 1)
    return stack.enter_context(memfile.open())


def _to_common_crs(images: list[Raster]) -> list[Raster]:
    """Reproject every image to the CRS of the first one (nearest)."""
    target = images[0].crs
    return [image if same_crs(image.crs, target) else _reproject(image, target) for image in images]


def _reproject(image: Raster, crs: str) -> Raster:
    from rasterio.warp import Resampling, calculate_default_transform, reproject

    transform, width, height = calculate_default_transform(
        image.crs, crs, image.width, image.height, *image.bounds
    )
    fill = image.nodata if image.nodata is not None else 0
    destination = np.full((height, width), fill, dtype=image.data.dtype)
    reproject(
        source=image.data,
        destination=destination,
        src_transform=image.transform,
        src_crs=image.crs,
        src_nodata=image.nodata,
        dst_transform=transform,
        dst_crs=crs,
        dst_nodata=image.nodata,
        resampling=Resampling.nearest,
    )
    logger.debug("Image reprojected | from=%s | to=%s | shape=%s", image.crs, crs, destination.shape)
    return Raster(data=destination, transform=transform, crs=crs, nodata=image.nodata)


def _stack(images: list[Raster]) -> tuple[np.ndarray, np.ndarray, Raster]:
    """Resample *images* onto their union extent; return values, validity, template."""
    from rasterio.merge import merge

    images = _to_common_crs(images)
    if len(images) == 1 or all(img.is_aligned_with(images[0]) for img in images[1:]):
        stack = np.stack([img.data for img in images])
        valid = np.stack([img.valid_mask() for img in images])
        return stack, valid, images[0]

    west = min(img.bounds[0] for img in images)
    south = min(img.bounds[1] for img in images)
    east = max(img.bounds[2] for img in images)
    north = max(img.bounds[3] for img in images)
    res = (
        min(abs(img.transform.a) for img in images),
        min(abs(img.transform.e) for img in images),
    )
    layers: list[np.ndarray] = []
    validity: list[np.ndarray] = []
    templates: list[Raster] = []
    with contextlib.ExitStack() as exit_stack:
        for image in images:
            source = _open_in_memory(image, exit_stack)
            fill = image.nodata if image.nodata is not None else 0
            merged, transform = merge(
                [source], bounds=(west, south, east, north), res=res, nodata=fill
            )
            resampled = Raster(
                data=merged[0], transform=transform, crs=image.crs, nodata=fill
            )
            layers.append(resampled.data)
            validity.append(resampled.valid_mask())
            templates.append(
                Raster(data=resampled.data, transform=transform, crs=image.crs, nodata=image.nodata)
            )
    return np.stack(layers), np.stack(validity), templates[0]
