"""STAC API dataset provider.

Concrete ``DatasetProvider`` searching a STAC API with ``pystac-client``
and downloading the matching assets with ``httpx`` into a local cache
directory. Cached files are reused across runs; a download is written to
a temporary name and renamed once complete.

Configuration:
    ``ProviderConfig.api_base_url`` is the STAC root. Collection ids
    default to the dataset key and can be overridden per dataset through
    ``ProviderConfig.extra_params`` (``{"JRC": "jrc-gfc2020"}``).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import pystac_client

from forest_agreement.providers import _composite
from forest_agreement.providers.base import (
    DatasetProvider,
    ProviderAuthError,
    ProviderConfig,
    ProviderFetchError,
)

if TYPE_CHECKING:
    import pystac

    from forest_agreement.models.dataset import DatasetSpec, DateRange
    from forest_agreement.models.raster import Raster

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Asset keys tried, in order, when the dataset names no band.
_FALLBACK_ASSET_KEYS = ("data", "map", "visual")

_GEOTIFF_MEDIA_PREFIX = "image/tiff"

_MAX_ITEMS = 500

_AUTH_STATUS_CODES = (401, 403)


class StacDatasetProvider(DatasetProvider):
    """STAC-backed provider with an on-disk asset cache."""

    def __init__(self, config: ProviderConfig) -> None:
        super().__init__(config)
        if not config.api_base_url:
            msg = "STAC provider needs api_base_url (FA_STAC_URL)"
            raise ProviderFetchError(provider=config.name, message=msg)
        self._stac_url = config.api_base_url
        self._cache_dir = Path(config.cache_dir or "./.stac-cache")

    def collection_for(self, dataset: DatasetSpec) -> str:
        return self.config.extra_params.get(dataset.key, dataset.key)

    # ------------------------------------------------------------------
    # load_images
    # ------------------------------------------------------------------

    def load_images(
        self,
        dataset: DatasetSpec,
        roi: Any,
        date_range: DateRange | None = None,
    ) -> list[Raster]:
        bounds = tuple(roi.bounds)
        items = self.search(dataset, bounds, date_range)  # type: ignore[arg-type]
        images: list[Raster] = []
        for item in items:
            path = self._cached_asset(dataset, item)
            try:
                raster = _composite.read_region(str(path), bounds, dataset.band)  # type: ignore[arg-type]
            except (OSError, ValueError, LookupError) as exc:
                msg = f"Failed to read asset of {item.id}: {exc}"
                raise ProviderFetchError(provider=self.name, message=msg) from exc
            if raster is not None:
                images.append(raster)
        return images

    def search(
        self,
        dataset: DatasetSpec,
        bounds: tuple[float, float, float, float],
        date_range: DateRange | None = None,
    ) -> list[pystac.Item]:
        """Search the collection of *dataset*; items are returned oldest first.

        Raises:
            ProviderFetchError: On STAC API errors (retryable).
        """
        collection = self.collection_for(dataset)
        try:
            catalogue = pystac_client.Client.open(self._stac_url)
            search = catalogue.search(
                collections=[collection],
                bbox=list(bounds),
                datetime=date_range.to_interval() if date_range else None,
                max_items=_MAX_ITEMS,
            )
            items = list(search.items())
        except Exception as exc:
            msg = f"STAC search failed for {collection}: {exc}"
            raise ProviderFetchError(provider=self.name, message=msg, retryable=True) from exc

        items.sort(key=lambda item: (item.datetime is not None, item.datetime or 0, item.id))
        logger.info(
            "STAC search | dataset=%s | collection=%s | items=%d | bbox=%s",
            dataset.key,
            collection,
            len(items),
            bounds,
        )
        return items

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _cached_asset(self, dataset: DatasetSpec, item: pystac.Item) -> Path:
        asset_key, href = _resolve_asset(item, dataset.band)
        if not href:
            msg = f"No GeoTIFF asset found for STAC item {item.id}"
            raise ProviderFetchError(provider=self.name, message=msg)

        target = self._cache_dir / dataset.key / f"{item.id}_{asset_key}.tif"
        if target.exists():
            logger.debug("Asset cache hit | item=%s | path=%s", item.id, target)
            return target
        if not href.startswith(("http://", "https://")):
            return Path(href)
        self._download(href, target)
        return target

    def _download(self, url: str, target: Path) -> None:
        """Stream *url* to *target* without loading it into memory."""
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_suffix(".part")
        try:
            with (
                httpx.Client(timeout=self.config.timeout_s, follow_redirects=True) as client,
                client.stream("GET", url) as response,
            ):
                if response.status_code in _AUTH_STATUS_CODES:
                    raise ProviderAuthError(
                        self.name, f"Access denied ({response.status_code}) for {url}"
                    )
                response.raise_for_status()
                size = 0
                with partial.open("wb") as fh:
                    for chunk in response.iter_bytes():
                        fh.write(chunk)
                        size += len(chunk)
        except ProviderAuthError:
            partial.unlink(missing_ok=True)
            raise
        except httpx.HTTPError as exc:
            partial.unlink(missing_ok=True)
            msg = f"Failed to download {url}: {exc}"
            raise ProviderFetchError(provider=self.name, message=msg, retryable=True) from exc
        partial.replace(target)
        logger.debug("Downloaded %d bytes from %s to %s", size, url, target)


def _resolve_asset(item: pystac.Item, band: str | None) -> tuple[str, str]:
    """Return ``(asset_key, href)`` of the best GeoTIFF asset of *item*."""
    assets = item.assets or {}
    if band and band in assets:
        return band, assets[band].href
    for key in _FALLBACK_ASSET_KEYS:
        if key in assets:
            return key, assets[key].href
    for key, asset in assets.items():
        if (asset.media_type or "").startswith(_GEOTIFF_MEDIA_PREFIX):
            return key, asset.href
    return "", ""
