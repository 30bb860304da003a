"""DatasetProvider abstract base class.

Defines the contract that every dataset provider must implement. The
reclassifier interacts exclusively with this interface; it never knows
which concrete provider is behind it.

Lifecycle:
    1. ``load_images(dataset, roi, date_range)``: every image of the
       dataset covering *roi*, already filtered to the acquisition window,
       ordered oldest first.
    2. ``fetch(dataset, roi, date_range)``: reduces those images to one
       raster according to ``dataset.composite`` (mosaic, mode or mean).

Concrete providers (``LocalRasterProvider``, ``StacDatasetProvider``)
implement ``load_images`` only; compositing is shared.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from forest_agreement.core.exceptions import PipelineError
from forest_agreement.models.dataset import COMPOSITE_MEAN, COMPOSITE_MODE
from forest_agreement.providers import _composite

if TYPE_CHECKING:
    from forest_agreement.models.dataset import DatasetSpec, DateRange, LandMask
    from forest_agreement.models.raster import Raster

logger = logging.getLogger("forest_agreement.providers.base")


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    """Configuration for a specific dataset provider.

    Attributes:
        name: Provider identifier (must match the registry key).
        root: Root directory of a local raster tree.
        api_base_url: Base URL of a remote API (STAC root).
        cache_dir: Directory receiving downloaded assets.
        timeout_s: Network timeout in seconds.
        extra_params: Provider-specific parameters (e.g. collection ids
            keyed by dataset key).
    """

    name: str
    root: str = ""
    api_base_url: str = ""
    cache_dir: str = ""
    timeout_s: float = 60.0
    extra_params: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            msg = "ProviderConfig.name must not be empty"
            raise ValueError(msg)


# ---------------------------------------------------------------------------
# Abstract provider
# ---------------------------------------------------------------------------


class DatasetProvider(abc.ABC):
    """Abstract base class for dataset providers.

    Example usage::

        provider = get_provider("local", ProviderConfig(name="local", root="./data"))
        raster = provider.fetch(catalog.get("JRC"), roi)
    """

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config

    @property
    def name(self) -> str:
        """Return the provider name from configuration."""
        return self._config.name

    @property
    def config(self) -> ProviderConfig:
        """Return the provider configuration (read-only)."""
        return self._config

    @abc.abstractmethod
    def load_images(
        self,
        dataset: DatasetSpec,
        roi: Any,
        date_range: DateRange | None = None,
    ) -> list[Raster]:
        """Return every image of *dataset* intersecting *roi*.

        Args:
            dataset: Catalog entry to load (``band`` selects the band).
            roi: WGS 84 shapely geometry bounding the request.
            date_range: Acquisition window; ``None`` keeps every image.

        Returns:
            Rasters windowed to the ROI bounds, oldest acquisition first.
            Empty list when nothing covers the ROI.

        Raises:
            ProviderError: On transient or permanent access errors.
        """

    def fetch(
        self,
        dataset: DatasetSpec,
        roi: Any,
        date_range: DateRange | None = None,
    ) -> Raster:
        """Return one composited raster of *dataset* over *roi*.

        ``date_range`` overrides the dataset's own window when given.

        Raises:
            NoImagesFound: If no image covers the ROI in the window.
            ProviderError: On access errors.
        """
        if dataset.composite == COMPOSITE_MODE:
            return self.fetch_label_mode_composite(dataset, roi, date_range)

        images = self._load_or_raise(dataset, roi, date_range)
        if dataset.composite == COMPOSITE_MEAN:
            raster = _composite.mean(images)
        else:
            raster = _composite.mosaic(images)
        logger.info(
            "Dataset fetched | dataset=%s | provider=%s | images=%d | composite=%s | shape=%s",
            dataset.key,
            self.name,
            len(images),
            dataset.composite,
            raster.shape,
        )
        return raster

    def fetch_label_mode_composite(
        self,
        dataset: DatasetSpec,
        roi: Any,
        date_range: DateRange | None = None,
    ) -> Raster:
        """Per-pixel most frequent label across a categorical time series."""
        images = self._load_or_raise(dataset, roi, date_range)
        raster = _composite.mode(images)
        logger.info(
            "Label mode composite | dataset=%s | provider=%s | images=%d | shape=%s",
            dataset.key,
            self.name,
            len(images),
            raster.shape,
        )
        return raster

    def fetch_land_mask(self, land_mask: LandMask, roi: Any, native_resolution_m: float) -> Raster:
        """Fetch the companion land mask of a dataset."""
        return self.fetch(land_mask.as_dataset(native_resolution_m), roi)

    def _load_or_raise(
        self,
        dataset: DatasetSpec,
        roi: Any,
        date_range: DateRange | None,
    ) -> list[Raster]:
        window = date_range or dataset.date_range
        images = self.load_images(dataset, roi, window)
        if not images:
            msg = (
                f"No images of {dataset.key} cover the region"
                + (f" within {window.to_interval()}" if window else "")
            )
            raise NoImagesFound(provider=self.name, message=msg)
        return images


# ---------------------------------------------------------------------------
# Provider exceptions
# ---------------------------------------------------------------------------


class ProviderError(PipelineError):
    """Base exception for dataset provider errors.

    Attributes:
        provider: Name of the provider that raised the error.
        message: Human-readable error description.
        retryable: Whether the caller should retry the operation.
    """

    default_stage = "provider"
    default_code = "PROVIDER_ERROR"

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        retryable: bool = False,
    ) -> None:
        self.provider = provider
        super().__init__(
            message,
            retryable=retryable,
            code=self.default_code,
            stage=self.default_stage,
        )

    def __str__(self) -> str:
        return f"[{self.provider}] {self.message}"


class ProviderAuthError(ProviderError):
    """Authentication or authorisation failure with the provider API."""

    default_code = "PROVIDER_AUTH_FAILED"

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(provider, message, retryable=False)


class ProviderFetchError(ProviderError):
    """Error while searching for or reading dataset images."""

    default_code = "PROVIDER_FETCH_FAILED"


class NoImagesFound(ProviderFetchError):
    """No image of the dataset covers the requested region and window."""

    default_code = "PROVIDER_NO_IMAGES"

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(provider, message, retryable=False)
