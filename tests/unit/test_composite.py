"""Tests for image compositing shared by every provider.

Covers:
- Label mode with lowest-value tie-break and nodata handling
- Mean of valid values
- Mosaic where the last valid image wins
- Windowed reads and band lookup
"""

from __future__ import annotations

import numpy as np
import pytest

from forest_agreement.providers import _composite


class TestMode:
    """Per-pixel most frequent label."""

    def test_majority_label(self, make_raster) -> None:
        images = [
            make_raster(np.array([[1, 2], [3, 3]], dtype="uint8")),
            make_raster(np.array([[2, 2], [1, 3]], dtype="uint8")),
            make_raster(np.array([[2, 1], [3, 1]], dtype="uint8")),
        ]
        result = _composite.mode(images)
        assert result.data.tolist() == [[2, 2], [3, 3]]

    def test_tie_keeps_lowest_value(self, make_raster) -> None:
        images = [
            make_raster(np.array([[4, 1]], dtype="uint8")),
            make_raster(np.array([[2, 7]], dtype="uint8")),
        ]
        assert _composite.mode(images).data.tolist() == [[2, 1]]

    def test_nodata_is_ignored(self, make_raster) -> None:
        images = [
            make_raster(np.array([[0, 0]], dtype="uint8"), nodata=0),
            make_raster(np.array([[5, 0]], dtype="uint8"), nodata=0),
        ]
        result = _composite.mode(images)
        assert result.data.tolist() == [[5, 0]]
        assert result.nodata == 0
        assert result.valid_mask().tolist() == [[True, False]]

    def test_keeps_grid(self, make_raster) -> None:
        image = make_raster(np.ones((3, 4), dtype="uint8"), west=10.0, north=1.0)
        result = _composite.mode([image, image])
        assert result.is_aligned_with(image)


class TestMean:
    """Per-pixel mean of valid values."""

    def test_mean_of_valid(self, make_raster) -> None:
        images = [
            make_raster(np.array([[1.0, np.nan, 60.0]], dtype="float32")),
            make_raster(np.array([[3.0, np.nan, np.nan]], dtype="float32")),
        ]
        result = _composite.mean(images)
        assert result.data[0, 0] == pytest.approx(2.0)
        assert np.isnan(result.data[0, 1])
        assert result.data[0, 2] == pytest.approx(60.0)
        assert result.data.dtype == np.float32

    def test_integer_nodata(self, make_raster) -> None:
        images = [
            make_raster(np.array([[51, 255]], dtype="uint8"), nodata=255),
            make_raster(np.array([[61, 255]], dtype="uint8"), nodata=255),
        ]
        result = _composite.mean(images)
        assert result.data[0, 0] == pytest.approx(56.0)
        assert not result.valid_mask()[0, 1]


class TestMosaic:
    """Last valid image wins."""

    def test_single_image_is_returned(self, make_raster) -> None:
        image = make_raster(np.ones((2, 2), dtype="uint8"))
        assert _composite.mosaic([image]) is image

    def test_later_image_on_top(self, make_raster) -> None:
        older = make_raster(np.array([[1, 1]], dtype="uint8"), nodata=0, west=10.0, north=1.0)
        newer = make_raster(np.array([[0, 2]], dtype="uint8"), nodata=0, west=10.0, north=1.0)
        result = _composite.mosaic([older, newer])
        assert result.data.tolist() == [[1, 2]]

    def test_disjoint_images_are_joined(self, make_raster) -> None:
        west = make_raster(np.full((2, 2), 1, dtype="uint8"), nodata=0, west=10.0, north=1.0)
        east = make_raster(np.full((2, 2), 2, dtype="uint8"), nodata=0, west=10.002, north=1.0)
        result = _composite.mosaic([west, east])
        assert result.shape == (2, 4)
        assert result.data[:, :2].tolist() == [[1, 1], [1, 1]]
        assert result.data[:, 2:].tolist() == [[2, 2], [2, 2]]


class TestReadRegion:
    """Windowed reads of GeoTIFF files."""

    def test_reads_window(self, tmp_path, make_raster, write_geotiff) -> None:
        data = np.arange(100, dtype="uint8").reshape(10, 10)
        path = write_geotiff(tmp_path / "a.tif", make_raster(data, west=10.0, north=0.51))
        raster = _composite.read_region(str(path), (10.0, 0.505, 10.005, 0.51))
        assert raster is not None
        assert raster.crs == "EPSG:4326"
        assert raster.data[0, 0] == 0
        assert raster.height <= 6
        assert raster.width <= 6

    def test_outside_returns_none(self, tmp_path, make_raster, write_geotiff) -> None:
        path = write_geotiff(
            tmp_path / "a.tif", make_raster(np.ones((10, 10), dtype="uint8"), west=10.0, north=0.51)
        )
        assert _composite.read_region(str(path), (20.0, 5.0, 20.1, 5.1)) is None

    def test_single_band_ignores_band_name(self, tmp_path, make_raster, write_geotiff) -> None:
        path = write_geotiff(
            tmp_path / "a.tif", make_raster(np.ones((4, 4), dtype="uint8"), west=10.0, north=0.51)
        )
        raster = _composite.read_region(str(path), (10.0, 0.506, 10.004, 0.51), band="label")
        assert raster is not None
