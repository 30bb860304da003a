"""Azure Blob Storage store.

Outputs are rendered by a ``LocalFileStore`` in a staging directory, then
every produced file (a Shapefile brings its ``.shx``/``.dbf``/``.prj``
sidecars) is uploaded to ``{container}/{location}/{name}{suffix}`` with
``overwrite=True`` so a re-run replaces earlier outputs.

The connection string is read from ``AzureWebJobsStorage`` unless a
``BlobServiceClient`` is passed in.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

from forest_agreement.storage.base import RasterStore, StorageError, StorageTarget
from forest_agreement.storage.local import LocalFileStore

if TYPE_CHECKING:
    from collections.abc import Sequence

    from azure.storage.blob import BlobServiceClient
    from shapely.geometry.base import BaseGeometry

    from forest_agreement.models.raster import Raster

logger = logging.getLogger("forest_agreement.storage.blob")

CONNECTION_STRING_ENV = "AzureWebJobsStorage"


class BlobStore(RasterStore):
    """Store uploading to one Azure Blob Storage container."""

    def __init__(
        self,
        container: str,
        *,
        client: BlobServiceClient | None = None,
        connection_string: str = "",
        staging_dir: str | Path | None = None,
    ) -> None:
        if client is None:
            connection_string = connection_string or os.environ.get(CONNECTION_STRING_ENV, "")
            if not connection_string:
                msg = f"Blob storage needs a connection string ({CONNECTION_STRING_ENV})"
                raise StorageError(msg, location=container)
            from azure.storage.blob import BlobServiceClient

            client = BlobServiceClient.from_connection_string(connection_string)
        self._client = client
        self._container = container
        self._staging_dir = Path(staging_dir or tempfile.mkdtemp(prefix="forest-agreement-"))
        self._staging = LocalFileStore(self._staging_dir)

    @property
    def container(self) -> str:
        return self._container

    def write_raster(
        self,
        raster: Raster,
        region: BaseGeometry,
        crs: str,
        resolution_m: float,
        fmt: str,
        target: StorageTarget,
    ) -> str:
        staged = self._staging.write_raster(raster, region, crs, resolution_m, fmt, target)
        return self._upload_staged(Path(staged), target)

    def write_table(
        self,
        rows: Sequence[dict[str, Any]],
        fmt: str,
        target: StorageTarget,
    ) -> str:
        staged = self._staging.write_table(rows, fmt, target)
        return self._upload_staged(Path(staged), target)

    def write_text(self, text: str, target: StorageTarget, *, suffix: str = ".json") -> str:
        staged = self._staging.write_text(text, target, suffix=suffix)
        return self._upload_staged(Path(staged), target)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def blob_path(self, target: StorageTarget, filename: str) -> str:
        parent = Path(target.name).parent.as_posix()
        parts = [p for p in (target.location, "" if parent == "." else parent) if p]
        return "/".join([*parts, filename])

    def _upload_staged(self, staged: Path, target: StorageTarget) -> str:
        """Upload *staged* and its sidecars; return the blob URI of the main file."""
        files = sorted(staged.parent.glob(f"{staged.stem}.*"))
        main_uri = ""
        for path in files:
            blob = self.blob_path(target, path.name)
            try:
                blob_client = self._client.get_blob_client(container=self._container, blob=blob)
                with path.open("rb") as fh:
                    blob_client.upload_blob(fh, overwrite=True)
            except Exception as exc:
                msg = f"Failed to upload {path.name} to {self._container}/{blob}: {exc}"
                raise StorageError(msg, location=blob, retryable=True) from exc
            if path == staged:
                main_uri = f"{self._container}/{blob}"
            logger.debug("Blob uploaded | container=%s | blob=%s", self._container, blob)

        logger.info("Output uploaded | uri=%s | files=%d", main_uri, len(files))
        return main_uri
