"""Tests for the STAC dataset provider.

Covers:
- Search parameters and oldest-first ordering
- Search failures mapped to retryable fetch errors
- Asset resolution, local hrefs and the download cache
- HTTP auth and server errors
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from unittest.mock import MagicMock, patch

import httpx
import numpy as np
import pytest
from shapely.geometry import box

from forest_agreement.catalog import build_catalog
from forest_agreement.models.dataset import DateRange
from forest_agreement.providers.base import ProviderAuthError, ProviderConfig, ProviderFetchError
from forest_agreement.providers.stac import StacDatasetProvider, _resolve_asset

STAC_URL = "https://stac.example.com"
ROI = box(10.0, 0.5, 10.01, 0.51)


def _asset(href: str, media_type: str = "image/tiff; application=geotiff") -> MagicMock:
    asset = MagicMock()
    asset.href = href
    asset.media_type = media_type
    return asset


def _item(item_id: str, when: datetime | None, assets: dict[str, MagicMock]) -> MagicMock:
    item = MagicMock()
    item.id = item_id
    item.datetime = when
    item.assets = assets
    return item


@pytest.fixture()
def provider(tmp_path) -> StacDatasetProvider:
    return StacDatasetProvider(
        ProviderConfig(
            name="stac",
            api_base_url=STAC_URL,
            cache_dir=str(tmp_path / "cache"),
            extra_params={"JRC": "jrc-gfc2020"},
        )
    )


class TestSearch:
    """STAC item search."""

    @patch("forest_agreement.providers.stac.pystac_client.Client.open")
    def test_search_parameters(self, mock_open: MagicMock, provider) -> None:
        mock_open.return_value.search.return_value.items.return_value = []
        window = DateRange(date(2020, 1, 1), date(2020, 12, 31))
        provider.search(build_catalog().get("JRC"), ROI.bounds, window)

        mock_open.assert_called_once_with(STAC_URL)
        kwargs = mock_open.return_value.search.call_args.kwargs
        assert kwargs["collections"] == ["jrc-gfc2020"]
        assert kwargs["bbox"] == list(ROI.bounds)
        assert kwargs["datetime"] == "2020-01-01/2020-12-31"

    @patch("forest_agreement.providers.stac.pystac_client.Client.open")
    def test_collection_defaults_to_key(self, mock_open: MagicMock, provider) -> None:
        mock_open.return_value.search.return_value.items.return_value = []
        provider.search(build_catalog().get("ETH"), ROI.bounds)
        kwargs = mock_open.return_value.search.call_args.kwargs
        assert kwargs["collections"] == ["ETH"]
        assert kwargs["datetime"] is None

    @patch("forest_agreement.providers.stac.pystac_client.Client.open")
    def test_items_oldest_first(self, mock_open: MagicMock, provider) -> None:
        items = [
            _item("late", datetime(2020, 9, 1, tzinfo=UTC), {}),
            _item("undated", None, {}),
            _item("early", datetime(2020, 2, 1, tzinfo=UTC), {}),
        ]
        mock_open.return_value.search.return_value.items.return_value = items
        found = provider.search(build_catalog().get("JRC"), ROI.bounds)
        assert [i.id for i in found] == ["undated", "early", "late"]

    @patch("forest_agreement.providers.stac.pystac_client.Client.open")
    def test_search_failure_is_retryable(self, mock_open: MagicMock, provider) -> None:
        mock_open.side_effect = ConnectionError("connection reset")
        with pytest.raises(ProviderFetchError) as exc_info:
            provider.search(build_catalog().get("JRC"), ROI.bounds)
        assert exc_info.value.retryable is True


class TestResolveAsset:
    """Asset selection."""

    def test_named_band(self) -> None:
        item = _item("x", None, {"label": _asset("a.tif"), "data": _asset("b.tif")})
        assert _resolve_asset(item, "label") == ("label", "a.tif")

    def test_fallback_key(self) -> None:
        item = _item("x", None, {"thumbnail": _asset("t.png", "image/png"), "map": _asset("m.tif")})
        assert _resolve_asset(item, None) == ("map", "m.tif")

    def test_media_type(self) -> None:
        item = _item("x", None, {"B01": _asset("b01.tif")})
        assert _resolve_asset(item, None) == ("B01", "b01.tif")

    def test_nothing(self) -> None:
        item = _item("x", None, {"thumbnail": _asset("t.png", "image/png")})
        assert _resolve_asset(item, None) == ("", "")


class TestLoadImages:
    """Reading assets through the cache."""

    @patch("forest_agreement.providers.stac.pystac_client.Client.open")
    def test_local_href(
        self, mock_open: MagicMock, provider, tmp_path, make_raster, write_geotiff
    ) -> None:
        path = write_geotiff(
            tmp_path / "jrc.tif",
            make_raster(np.ones((10, 10), dtype="uint8"), west=10.0, north=0.51),
        )
        item = _item("jrc-1", None, {"data": _asset(str(path))})
        mock_open.return_value.search.return_value.items.return_value = [item]
        images = provider.load_images(build_catalog().get("JRC"), ROI)
        assert len(images) == 1
        assert images[0].data.max() == 1

    @patch("forest_agreement.providers.stac.pystac_client.Client.open")
    def test_missing_asset(self, mock_open: MagicMock, provider) -> None:
        item = _item("jrc-1", None, {"thumbnail": _asset("t.png", "image/png")})
        mock_open.return_value.search.return_value.items.return_value = [item]
        with pytest.raises(ProviderFetchError, match="No GeoTIFF asset"):
            provider.load_images(build_catalog().get("JRC"), ROI)


class TestDownload:
    """HTTP downloads into the cache."""

    @staticmethod
    def _patched_client(handler):
        real_client = httpx.Client
        transport = httpx.MockTransport(handler)
        return patch(
            "forest_agreement.providers.stac.httpx.Client",
            side_effect=lambda **kwargs: real_client(transport=transport, **kwargs),
        )

    def test_download_and_cache_hit(self, provider) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, content=b"tiff-bytes")

        item = _item("jrc-1", None, {"data": _asset("https://data.example.com/jrc.tif")})
        dataset = build_catalog().get("JRC")
        with self._patched_client(handler):
            first = provider._cached_asset(dataset, item)
            second = provider._cached_asset(dataset, item)

        assert first == second
        assert first.read_bytes() == b"tiff-bytes"
        assert first.name == "jrc-1_data.tif"
        assert calls == ["https://data.example.com/jrc.tif"]
        assert not first.with_suffix(".part").exists()

    def test_forbidden(self, provider) -> None:
        item = _item("jrc-1", None, {"data": _asset("https://data.example.com/jrc.tif")})
        with self._patched_client(lambda _request: httpx.Response(403)):
            with pytest.raises(ProviderAuthError):
                provider._cached_asset(build_catalog().get("JRC"), item)

    def test_server_error_is_retryable(self, provider) -> None:
        item = _item("jrc-1", None, {"data": _asset("https://data.example.com/jrc.tif")})
        with self._patched_client(lambda _request: httpx.Response(503)):
            with pytest.raises(ProviderFetchError) as exc_info:
                provider._cached_asset(build_catalog().get("JRC"), item)
        assert exc_info.value.retryable is True
        assert not list((provider._cache_dir / "JRC").glob("*.part"))


class TestConstruction:
    def test_requires_url(self) -> None:
        with pytest.raises(ProviderFetchError, match="FA_STAC_URL"):
            StacDatasetProvider(ProviderConfig(name="stac"))
