"""Local GeoTIFF tree provider.

Reads datasets from a directory tree laid out as::

    {root}/{dataset key}/*.tif

Each file is one image of the dataset. The acquisition date is parsed
from the file name: ``YYYY-MM-DD`` (or ``YYYYMMDD``) gives a day, a lone
four-digit year gives the whole year. Files without a date are kept for
every acquisition window. Images are returned oldest first, undated files
before dated ones, so the latest acquisition wins a mosaic.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, Any

from forest_agreement.models.dataset import DateRange
from forest_agreement.providers import _composite
from forest_agreement.providers.base import (
    DatasetProvider,
    ProviderConfig,
    ProviderFetchError,
)

if TYPE_CHECKING:
    from forest_agreement.models.dataset import DatasetSpec
    from forest_agreement.models.raster import Raster

logger = logging.getLogger(__name__)

_RASTER_SUFFIXES = (".tif", ".tiff")

_DAY_RE = re.compile(r"(?<!\d)(\d{4})-?(\d{2})-?(\d{2})(?!\d)")
_YEAR_RE = re.compile(r"(?<!\d)((?:19|20)\d{2})(?!\d)")


def parse_acquisition_window(filename: str) -> DateRange | None:
    """Return the acquisition window encoded in *filename*, if any.

    >>> parse_acquisition_window("esri_2020-07-01.tif")
    DateRange(start=datetime.date(2020, 7, 1), end=datetime.date(2020, 7, 1))
    >>> parse_acquisition_window("palsar_fnf_2020.tif").start
    datetime.date(2020, 1, 1)
    """
    stem = Path(filename).stem
    match = _DAY_RE.search(stem)
    if match:
        try:
            day = date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            day = None
        if day is not None:
            return DateRange(day, day)
    match = _YEAR_RE.search(stem)
    if match:
        year = int(match.group(1))
        return DateRange(date(year, 1, 1), date(year, 12, 31))
    return None


def _overlaps(a: DateRange, b: DateRange) -> bool:
    return a.start <= b.end and b.start <= a.end


class LocalRasterProvider(DatasetProvider):
    """Provider backed by a local directory of GeoTIFFs."""

    def __init__(self, config: ProviderConfig) -> None:
        super().__init__(config)
        self._root = Path(config.root or ".")

    @property
    def root(self) -> Path:
        return self._root

    def dataset_dir(self, dataset: DatasetSpec) -> Path:
        return self._root / dataset.key

    def list_files(self, dataset: DatasetSpec, date_range: DateRange | None = None) -> list[Path]:
        """Return the files of *dataset* inside *date_range*, oldest first."""
        directory = self.dataset_dir(dataset)
        if not directory.is_dir():
            msg = f"Dataset directory not found: {directory}"
            raise ProviderFetchError(provider=self.name, message=msg)

        dated: list[tuple[date, Path]] = []
        undated: list[Path] = []
        for path in sorted(directory.iterdir()):
            if path.suffix.lower() not in _RASTER_SUFFIXES:
                continue
            window = parse_acquisition_window(path.name)
            if window is None:
                undated.append(path)
            elif date_range is None or _overlaps(window, date_range):
                dated.append((window.start, path))
            else:
                logger.debug(
                    "File outside acquisition window | dataset=%s | file=%s | window=%s",
                    dataset.key,
                    path.name,
                    date_range.to_interval(),
                )
        dated.sort(key=lambda item: (item[0], item[1].name))
        return undated + [path for _, path in dated]

    def load_images(
        self,
        dataset: DatasetSpec,
        roi: Any,
        date_range: DateRange | None = None,
    ) -> list[Raster]:
        bounds = tuple(roi.bounds)
        images: list[Raster] = []
        for path in self.list_files(dataset, date_range):
            try:
                raster = _composite.read_region(str(path), bounds, dataset.band)  # type: ignore[arg-type]
            except (OSError, ValueError, LookupError) as exc:
                msg = f"Failed to read {path}: {exc}"
                raise ProviderFetchError(provider=self.name, message=msg) from exc
            if raster is not None:
                images.append(raster)
        logger.debug(
            "Local images loaded | dataset=%s | root=%s | images=%d",
            dataset.key,
            self._root,
            len(images),
        )
        return images
