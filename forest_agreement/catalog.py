"""Dataset catalog: the per-dataset reclassification rule table.

Each entry declares which pixel values of a source product mean "forest",
the product's native resolution, its optional acquisition window and how a
multi-image collection is composited. Entry order is the agreement order and
the order of the extent ranking table.

The catalog is built once per run with ``build_catalog`` and passed to every
stage that needs it. Adding a dataset is a new row in ``_catalog_rows``; no
combination logic changes.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING

from forest_agreement.core.exceptions import ValidationError
from forest_agreement.models.dataset import (
    COMPOSITE_MEAN,
    COMPOSITE_MODE,
    ClassRange,
    DatasetSpec,
    DateRange,
    LandMask,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger("forest_agreement.catalog")

#: Largest canopy height value stored by the height product (metres).
MAX_CANOPY_HEIGHT = 255

YEAR_2020 = DateRange(date(2020, 1, 1), date(2020, 12, 31))


class UnknownDataset(ValidationError):
    """A dataset key is not registered in the catalog."""

    default_stage = "catalog"
    default_code = "UNKNOWN_DATASET"

    def __init__(self, key: str, available: list[str]) -> None:
        self.key = key
        super().__init__(f"Unknown dataset {key!r}. Available: {', '.join(available)}")


def _catalog_rows(forest_height_min_m: int) -> list[DatasetSpec]:
    return [
        DatasetSpec(
            key="JRC",
            label="JRC",
            source_id="JRC/GFC2020/V2",
            forest_classes=frozenset({1}),
            native_resolution_m=10,
        ),
        DatasetSpec(
            key="ESRI_LULC",
            label="ESRI-10m",
            source_id="projects/sat-io/open-datasets/landcover/ESRI_Global-LULC_10m_TS",
            forest_classes=frozenset({2}),
            native_resolution_m=10,
            date_range=YEAR_2020,
        ),
        DatasetSpec(
            key="DynamicWorld",
            label="DynamicWorld",
            source_id="GOOGLE/DYNAMICWORLD/V1",
            forest_classes=frozenset({1}),
            native_resolution_m=10,
            date_range=YEAR_2020,
            composite=COMPOSITE_MODE,
            band="label",
        ),
        DatasetSpec(
            key="GLCFCS30D",
            label="GLC-FCS30D",
            source_id="projects/sat-io/open-datasets/GLC-FCS30D/annual",
            forest_classes=frozenset({51, 52, 61, 62, 71, 72, 81, 82, 91, 92}),
            native_resolution_m=30,
            composite=COMPOSITE_MEAN,
            band="b21",
        ),
        DatasetSpec(
            key="GLC10",
            label="FROM-GLC10",
            source_id="projects/sat-io/open-datasets/FROM-GLC10",
            forest_classes=frozenset({20}),
            native_resolution_m=10,
        ),
        DatasetSpec(
            key="GLCLU",
            label="GLCLU2020",
            source_id="projects/glad/GLCLU2020/Forest_type",
            forest_classes=frozenset({1, 3, 4}),
            native_resolution_m=30,
            land_mask=LandMask(key="OceanMask", source_id="projects/glad/OceanMask", max_valid=1),
        ),
        DatasetSpec(
            key="PALSAR",
            label="PALSAR-2 FNF",
            source_id="JAXA/ALOS/PALSAR/YEARLY/FNF4",
            forest_classes=frozenset({1, 2}),
            native_resolution_m=25,
            date_range=YEAR_2020,
        ),
        DatasetSpec(
            key="ETH",
            label="ETH",
            source_id="users/nlang/ETH_GlobalCanopyHeight_2020_10m_v1",
            forest_classes=ClassRange(forest_height_min_m, MAX_CANOPY_HEIGHT),
            native_resolution_m=10,
        ),
        DatasetSpec(
            key="GFT",
            label="GFT",
            source_id="JRC/GFC2020_subtypes/V0",
            forest_classes=frozenset({1, 10}),
            native_resolution_m=10,
        ),
    ]


class Catalog:
    """Immutable, ordered collection of ``DatasetSpec`` entries."""

    __slots__ = ("_by_key", "_entries")

    def __init__(self, entries: list[DatasetSpec]) -> None:
        keys = [e.key for e in entries]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            msg = f"Duplicate dataset keys in catalog: {', '.join(duplicates)}"
            raise ValidationError(msg, stage="catalog", code="DUPLICATE_DATASET")
        self._entries: tuple[DatasetSpec, ...] = tuple(entries)
        self._by_key: dict[str, DatasetSpec] = {e.key: e for e in entries}

    def __iter__(self) -> Iterator[DatasetSpec]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    @property
    def keys(self) -> list[str]:
        return [e.key for e in self._entries]

    def get(self, key: str) -> DatasetSpec:
        """Return the entry for *key*.

        Raises:
            UnknownDataset: If *key* is not registered.
        """
        spec = self._by_key.get(key)
        if spec is None:
            raise UnknownDataset(key, self.keys)
        return spec

    def classes_for(self, key: str) -> frozenset[int] | ClassRange:
        """Return the forest class codes (or inclusive range) of *key*."""
        return self.get(key).forest_classes

    def subset(self, keys: list[str]) -> Catalog:
        """Return a catalog restricted to *keys*, keeping catalog order."""
        for key in keys:
            self.get(key)
        wanted = set(keys)
        return Catalog([e for e in self._entries if e.key in wanted])


def build_catalog(forest_height_min_m: int = 5) -> Catalog:
    """Build the reference catalog of nine forest products.

    Args:
        forest_height_min_m: Canopy height (metres) at or above which the
            height product counts as forest.
    """
    catalog = Catalog(_catalog_rows(forest_height_min_m))
    logger.debug(
        "Catalog built | datasets=%d | forest_height_min=%d m",
        len(catalog),
        forest_height_min_m,
    )
    return catalog
