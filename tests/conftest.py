"""Shared pytest fixtures for the forest agreement test suite."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box, mapping

from forest_agreement.core.config import AgreementConfig
from forest_agreement.models.raster import Grid, Raster
from forest_agreement.providers.base import DatasetProvider, ProviderConfig
from forest_agreement.stages.reclassify import build_reference_grid

if TYPE_CHECKING:
    from collections.abc import Callable

    from forest_agreement.models.dataset import DatasetSpec, DateRange

# ---------------------------------------------------------------------------
# Regions
# ---------------------------------------------------------------------------

#: ~1.1 km square just north of the equator, ~37 x 37 pixels at 30 m.
ROI_BOUNDS = (10.0, 0.5, 10.01, 0.51)


@pytest.fixture()
def roi():
    """Small WGS 84 region of interest."""
    return box(*ROI_BOUNDS)


@pytest.fixture()
def reference_grid(roi) -> Grid:
    """30 m reference grid over ``roi``."""
    return build_reference_grid(roi, 30.0)


@pytest.fixture()
def config(tmp_path: Path) -> AgreementConfig:
    """Default configuration writing into a temporary directory."""
    return AgreementConfig(
        storage_root=str(tmp_path / "outputs"),
        provider_root=str(tmp_path / "data"),
        retry_base_seconds=0.0,
        max_workers=2,
    )


# ---------------------------------------------------------------------------
# Raster factories
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_raster() -> Callable[..., Raster]:
    """Factory: raster from an array, geographic by default."""

    def _make(
        data: Any,
        *,
        west: float = 0.0,
        north: float = 0.0,
        step: float = 0.001,
        crs: str = "EPSG:4326",
        nodata: float | int | None = None,
    ) -> Raster:
        array = np.asarray(data)
        return Raster(array, from_origin(west, north, step, step), crs, nodata)

    return _make


@pytest.fixture()
def grid_raster(reference_grid: Grid) -> Callable[..., Raster]:
    """Factory: raster on ``reference_grid`` filled by a callable of (rows, cols)."""

    def _make(
        fill: Callable[[np.ndarray, np.ndarray], np.ndarray] | int,
        *,
        dtype: str = "uint8",
        nodata: float | int | None = None,
    ) -> Raster:
        rows, cols = np.indices(reference_grid.shape)
        data = fill(rows, cols) if callable(fill) else np.full(reference_grid.shape, fill)
        return Raster(
            np.asarray(data).astype(dtype),
            reference_grid.transform,
            reference_grid.crs,
            nodata,
        )

    return _make


@pytest.fixture()
def write_geotiff() -> Callable[[Path, Raster], Path]:
    """Write a single-band GeoTIFF and return its path."""
    import rasterio

    def _write(path: Path, raster: Raster, *, description: str | None = None) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with rasterio.open(
            path,
            "w",
            driver="GTiff",
            width=raster.width,
            height=raster.height,
            count=1,
            dtype=raster.data.dtype,
            crs=raster.crs,
            transform=raster.transform,
            nodata=raster.nodata,
        ) as dst:
            dst.write(raster.data, 1)
            if description:
                dst.set_band_description(1, description)
        return path

    return _write


# ---------------------------------------------------------------------------
# Vector fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def write_geojson(tmp_path: Path) -> Callable[..., Path]:
    """Write shapely geometries (with properties) as a GeoJSON file."""

    def _write(features: list[tuple[Any, dict[str, Any]]], name: str = "geodata.geojson") -> Path:
        path = tmp_path / name
        collection = {
            "type": "FeatureCollection",
            "features": [
                {"type": "Feature", "geometry": mapping(geom), "properties": props}
                for geom, props in features
            ],
        }
        path.write_text(json.dumps(collection), encoding="utf-8")
        return path

    return _write


# ---------------------------------------------------------------------------
# In-memory provider
# ---------------------------------------------------------------------------


class FakeProvider(DatasetProvider):
    """Provider serving prepared rasters keyed by dataset key.

    Keys without images behave like an empty collection. ``failures``
    maps a key to exceptions raised on successive calls before the
    images are served.
    """

    def __init__(
        self,
        images: dict[str, list[Raster]] | None = None,
        *,
        failures: dict[str, list[Exception]] | None = None,
    ) -> None:
        super().__init__(ProviderConfig(name="fake"))
        self.images = images or {}
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: list[str] = []

    def load_images(
        self,
        dataset: DatasetSpec,
        roi: Any,
        date_range: DateRange | None = None,
    ) -> list[Raster]:
        self.calls.append(dataset.key)
        pending = self.failures.get(dataset.key)
        if pending:
            raise pending.pop(0)
        return list(self.images.get(dataset.key, []))


@pytest.fixture()
def fake_provider_cls() -> type[FakeProvider]:
    return FakeProvider


#: Value that counts as forest for every catalog entry (first class code).
FOREST_VALUES = {
    "JRC": 1,
    "ESRI_LULC": 2,
    "DynamicWorld": 1,
    "GLCFCS30D": 51,
    "GLC10": 20,
    "GLCLU": 1,
    "PALSAR": 1,
    "ETH": 30,
    "GFT": 1,
}

#: Value that is non-forest for every catalog entry.
NON_FOREST_VALUE = 0


@pytest.fixture()
def agreeing_provider(grid_raster: Callable[..., Raster]) -> FakeProvider:
    """Every dataset maps the western half of the grid as forest.

    GLCLU's ocean mask marks all land as valid (0).
    """

    def _west_half(value: int) -> Callable[[np.ndarray, np.ndarray], np.ndarray]:
        def _fill(rows: np.ndarray, cols: np.ndarray) -> np.ndarray:
            half = cols.shape[1] // 2
            return np.where(cols < half, value, NON_FOREST_VALUE)

        return _fill

    images = {key: [grid_raster(_west_half(value))] for key, value in FOREST_VALUES.items()}
    images["OceanMask"] = [grid_raster(0)]
    return FakeProvider(images)
