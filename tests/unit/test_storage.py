"""Tests for the output stores.

Covers:
- Local CSV, GeoJSON, Shapefile, KML and KMZ tables
- Shapefile field names cut to the DBF limit
- GeoTIFF writes reprojected to UTM, int16 nodata kept at -1
- Blob uploads (mocked BlobServiceClient) including Shapefile sidecars
- Store selection from configuration
"""

from __future__ import annotations

import csv
import json
import logging
import os
import zipfile
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from lxml import etree
from shapely.geometry import MultiPolygon, box

from forest_agreement.core.config import AgreementConfig
from forest_agreement.stages.export import to_export_dtype
from forest_agreement.storage import BLOB, LocalFileStore, store_from_config
from forest_agreement.storage.base import StorageError, StorageTarget
from forest_agreement.storage.blob import BlobStore
from forest_agreement.storage.local import (
    KML_NAMESPACE,
    kml_document,
    reproject_to_utm,
    shapefile_field_names,
)

PLOT = box(10.0005, 0.501, 10.003, 0.509)

ROWS = [
    {"farm": "North", "area_ha": 24.7, "area_check": "", "forestagree": 81.5, "geometry": PLOT},
    {
        "farm": "South",
        "area_ha": 0.1,
        "area_check": "below 0.5ha",
        "forestagree": None,
        "geometry": MultiPolygon([box(10.0, 0.5, 10.0002, 0.5002), box(10.001, 0.5, 10.0012, 0.5002)]),
    },
]


@pytest.fixture()
def store(tmp_path) -> LocalFileStore:
    return LocalFileStore(tmp_path)


def _target(name: str = "Polygons") -> StorageTarget:
    return StorageTarget(kind="path", location="exports", name=name)


class TestStorageTarget:
    def test_invalid_kind(self) -> None:
        with pytest.raises(ValueError):
            StorageTarget(kind="drive", location="", name="x")

    def test_empty_name(self) -> None:
        with pytest.raises(ValueError):
            StorageTarget(kind="path", location="", name="")

    def test_renamed(self) -> None:
        assert _target().renamed("Other").name == "Other"


class TestLocalTables:
    """Table writers."""

    def test_csv(self, store, tmp_path) -> None:
        rows = [
            {"Layer": "JRC", "Forest_area_ha": 12.5, "Rank": 1},
            {"Layer": "ETH", "Forest_area_ha": 10.0, "Rank": 2},
        ]
        path = store.write_table(rows, "CSV", _target("Extent"))
        assert path == str(tmp_path / "exports" / "Extent.csv")
        with open(path, newline="", encoding="utf-8") as fh:
            read = list(csv.DictReader(fh))
        assert read[0] == {"Layer": "JRC", "Forest_area_ha": "12.5", "Rank": "1"}

    def test_csv_excludes_geometry_and_blanks_none(self, store) -> None:
        path = store.write_table(ROWS, "CSV", _target())
        with open(path, newline="", encoding="utf-8") as fh:
            read = list(csv.DictReader(fh))
        assert "geometry" not in read[0]
        assert read[1]["forestagree"] == ""

    def test_geojson(self, store) -> None:
        path = store.write_table(ROWS, "GeoJSON", _target())
        with open(path, encoding="utf-8") as fh:
            collection = json.load(fh)
        assert len(collection["features"]) == 2
        first = collection["features"][0]
        assert first["properties"]["farm"] == "North"
        assert first["properties"]["forestagree"] == pytest.approx(81.5)
        assert collection["features"][1]["geometry"]["type"] == "MultiPolygon"
        assert collection["features"][1]["properties"]["forestagree"] is None

    def test_shapefile(self, store, tmp_path) -> None:
        import fiona

        path = store.write_table(ROWS, "SHP", _target())
        assert path.endswith(".shp")
        for suffix in (".shx", ".dbf", ".prj"):
            assert (tmp_path / "exports" / f"Polygons{suffix}").exists()
        with fiona.open(path) as collection:
            records = list(collection)
            fields = set(collection.schema["properties"])
        assert len(records) == 2
        assert "forestagre" in fields
        assert "forestagree" not in fields
        assert records[0].properties["farm"] == "North"
        assert records[0].properties["forestagre"] == pytest.approx(81.5)

    def test_shapefile_renames_are_logged(self, store, caplog) -> None:
        with caplog.at_level(logging.WARNING, logger="forest_agreement.storage.local"):
            store.write_table(ROWS, "SHP", _target())
        assert "column=forestagree | field=forestagre" in caplog.text

    def test_shapefile_name_collision(self) -> None:
        names = shapefile_field_names(["forest_agreement", "forest_agreement_pct", "farm"])
        assert names == {
            "forest_agreement": "forest_agr",
            "forest_agreement_pct": "forest_a_1",
            "farm": "farm",
        }

    def test_geojson_keeps_long_names(self, store) -> None:
        path = store.write_table(ROWS, "GeoJSON", _target())
        with open(path, encoding="utf-8") as fh:
            properties = json.load(fh)["features"][0]["properties"]
        assert properties["forestagree"] == 81.5

    def test_kml(self, store) -> None:
        path = store.write_table(ROWS, "KML", _target())
        tree = etree.parse(path)
        ns = {"kml": KML_NAMESPACE}
        placemarks = tree.findall(".//kml:Placemark", ns)
        assert len(placemarks) == 2
        data = {
            d.get("name"): d.findtext("kml:value", namespaces=ns)
            for d in placemarks[0].findall(".//kml:Data", ns)
        }
        assert data["farm"] == "North"
        assert data["forestagree"] == "81.5"
        assert placemarks[1].find("kml:MultiGeometry", ns) is not None

    def test_kmz(self, store) -> None:
        path = store.write_table(ROWS, "KMZ", _target())
        with zipfile.ZipFile(path) as archive:
            assert archive.namelist() == ["doc.kml"]
            root = etree.fromstring(archive.read("doc.kml"))
        assert root.tag == f"{{{KML_NAMESPACE}}}kml"

    def test_geometry_required(self, store) -> None:
        with pytest.raises(StorageError, match="geometry"):
            store.write_table([{"Layer": "JRC"}], "SHP", _target())

    def test_unknown_format(self, store) -> None:
        with pytest.raises(StorageError):
            store.write_table(ROWS, "XLSX", _target())

    def test_overwrite(self, store) -> None:
        first = store.write_table([{"a": 1}], "CSV", _target("T"))
        second = store.write_table([{"a": 2}], "CSV", _target("T"))
        assert first == second
        with open(second, encoding="utf-8") as fh:
            assert fh.read().splitlines() == ["a", "2"]

    def test_text(self, store, tmp_path) -> None:
        path = store.write_text('{"ok": true}', _target("RunSummary_abc"))
        assert path == str(tmp_path / "exports" / "RunSummary_abc.json")

    def test_kml_document_name(self) -> None:
        root = etree.fromstring(kml_document("Agreement", ROWS[:1]))
        assert root.findtext(f".//{{{KML_NAMESPACE}}}Document/{{{KML_NAMESPACE}}}name") == "Agreement"


class TestLocalRasters:
    """GeoTIFF writes."""

    def test_reproject_to_utm(self, grid_raster, roi) -> None:
        raster = grid_raster(3, nodata=255)
        projected = reproject_to_utm(raster, roi, "EPSG:32632", 30.0)
        assert projected.crs == "EPSG:32632"
        assert projected.transform.a == 30.0
        assert projected.transform.c % 30.0 == 0
        values = set(np.unique(projected.data))
        assert values <= {3, 255}
        assert 3 in values

    def test_write_raster(self, store, grid_raster, roi) -> None:
        import rasterio

        path = store.write_raster(
            grid_raster(2, nodata=255), roi, "EPSG:32632", 30.0, "GeoTIFF", _target("FA_tile_0")
        )
        with rasterio.open(path) as src:
            assert src.crs.to_epsg() == 32632
            assert src.profile["compress"].lower() == "deflate"

    def test_int16_nodata_round_trip(self, store, grid_raster, roi) -> None:
        import rasterio

        agreement = grid_raster(lambda rows, cols: np.where(cols < 5, 255, 9), nodata=255)
        encoded = to_export_dtype(agreement, "int16", 9)
        path = store.write_raster(
            encoded, roi, "EPSG:32632", 30.0, "GeoTIFF", _target("FA_Cluster_1")
        )
        with rasterio.open(path) as src:
            assert src.nodata == -1
            scores = src.read(1, masked=True)
        assert set(np.unique(scores.compressed()).tolist()) == {9}

    def test_unsupported_raster_format(self, store, grid_raster, roi) -> None:
        with pytest.raises(StorageError):
            store.write_raster(grid_raster(1), roi, "EPSG:32632", 30.0, "PNG", _target("x"))


class TestBlobStore:
    """Uploads through a mocked BlobServiceClient."""

    def test_upload_table_with_sidecars(self, tmp_path) -> None:
        client = MagicMock()
        store = BlobStore("outputs", client=client, staging_dir=tmp_path)
        uri = store.write_table(ROWS, "SHP", _target())

        assert uri == "outputs/exports/Polygons.shp"
        blobs = sorted(c.kwargs["blob"] for c in client.get_blob_client.call_args_list)
        assert "exports/Polygons.shp" in blobs
        assert "exports/Polygons.dbf" in blobs
        assert "exports/Polygons.shx" in blobs
        upload = client.get_blob_client.return_value.upload_blob
        assert all(c.kwargs["overwrite"] is True for c in upload.call_args_list)

    def test_upload_text(self, tmp_path) -> None:
        client = MagicMock()
        store = BlobStore("outputs", client=client, staging_dir=tmp_path)
        uri = store.write_text("{}", StorageTarget("path", "runs", "RunSummary_1"))
        assert uri == "outputs/runs/RunSummary_1.json"
        client.get_blob_client.assert_called_once_with(
            container="outputs", blob="runs/RunSummary_1.json"
        )

    def test_catalog_name_keeps_separators(self, tmp_path) -> None:
        store = BlobStore("outputs", client=MagicMock(), staging_dir=tmp_path)
        target = StorageTarget("catalog", "", "users/jdoe/FA_Cluster_1")
        assert store.blob_path(target, "FA_Cluster_1.tif") == "users/jdoe/FA_Cluster_1.tif"

    def test_upload_failure_is_retryable(self, tmp_path) -> None:
        client = MagicMock()
        client.get_blob_client.return_value.upload_blob.side_effect = RuntimeError("503")
        store = BlobStore("outputs", client=client, staging_dir=tmp_path)
        with pytest.raises(StorageError) as exc_info:
            store.write_text("{}", _target("RunSummary_1"))
        assert exc_info.value.retryable is True

    def test_requires_connection_string(self, tmp_path) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(StorageError, match="AzureWebJobsStorage"):
                BlobStore("outputs", staging_dir=tmp_path)

    @patch("azure.storage.blob.BlobServiceClient.from_connection_string")
    def test_connection_string_from_env(self, mock_from_cs: MagicMock, tmp_path) -> None:
        env = {"AzureWebJobsStorage": "UseDevelopmentStorage=true"}
        with patch.dict(os.environ, env, clear=True):
            BlobStore("outputs", staging_dir=tmp_path)
        mock_from_cs.assert_called_once_with("UseDevelopmentStorage=true")


class TestStoreFromConfig:
    def test_local(self, tmp_path) -> None:
        store = store_from_config(AgreementConfig(storage_root=str(tmp_path)))
        assert isinstance(store, LocalFileStore)
        assert store.root == tmp_path

    @patch("azure.storage.blob.BlobServiceClient.from_connection_string")
    def test_blob(self, _mock_from_cs: MagicMock) -> None:
        env = {"AzureWebJobsStorage": "UseDevelopmentStorage=true"}
        with patch.dict(os.environ, env, clear=True):
            store = store_from_config(AgreementConfig(storage=BLOB, blob_container="runs"))
        assert isinstance(store, BlobStore)
        assert store.container == "runs"
