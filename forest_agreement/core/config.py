"""Pipeline configuration loaded from environment variables.

All configuration values have defaults matching the reference forest
agreement setup (30 m grid, 6-pixel MMU, 3x3 majority window, 5 m canopy
height threshold, 0.5 ha minimum polygon area).

Fail-fast validation:
    ``from_env()`` and ``with_overrides()`` raise ``ConfigurationError``
    if any value is out of its valid range. Bad configuration is caught
    at startup, before any dataset is fetched.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, replace

from forest_agreement.core.constants import (
    ASSET_ID_PLACEHOLDER,
    GEODATA_PLACEHOLDER,
    SQ_METRES_PER_HECTARE,
    TABLE_FORMATS,
)
from forest_agreement.core.exceptions import ValidationError

GEODATA_TYPES = ("Polygon", "Point")
EXPORT_TARGETS = ("path", "catalog")
RESAMPLING_METHODS = ("nearest", "bilinear")
STORAGE_BACKENDS = ("local", "blob")


class ConfigurationError(ValidationError):
    """Raised when configuration values are missing or out of valid range.

    Attributes:
        key: The configuration key that failed validation.
        value: The invalid value.
    """

    default_stage = "config"
    default_code = "CONFIG_VALIDATION_FAILED"

    def __init__(self, key: str, value: object, message: str) -> None:
        self.key = key
        self.value = value
        super().__init__(f"Invalid configuration {key}={value!r}: {message}")


@dataclass(frozen=True, slots=True)
class AgreementConfig:
    """Immutable pipeline configuration.

    Loaded once at startup and threaded through every stage.

    Attributes:
        target_resolution_m: Common grid resolution in metres.
        sieve_threshold_pixels: Explicit MMU in pixels. ``None`` derives it
            from ``mmu_area_ha`` and the resolution.
        mmu_area_ha: Physical minimum mapping unit in hectares.
        agreement_radius: Majority window radius in pixels (1 = 3x3).
        forest_height_min_m: Canopy height at or above which a pixel of a
            height dataset counts as forest.
        min_polygon_area_ha: Polygons below this area are flagged and left
            out of the per-polygon agreement percentage.
        majority_min_agreement: Lowest score counted as "majority of maps".
        geodata_type: Declared kind of the input geodata (``Polygon``/``Point``).
        geodata_path: Vector file holding the input geodata.
        point_buffer_ha: Target area of each buffered point.
        point_buffer_radius_m: Explicit point buffer radius; overrides
            ``point_buffer_ha`` when set.
        cluster_join_distance_m: Distance that joins geometries into one cluster.
        tile_rows: Tile rows for ROI-mode exports.
        tile_cols: Tile columns for ROI-mode exports.
        export_target: ``path`` (folder/bucket) or ``catalog`` (asset id).
        export_folder: Folder receiving exports for ``path`` targets.
        export_description: Prefix of every exported raster name.
        export_asset_id: Catalog identifier prefix for ``catalog`` targets.
        export_format: Format of the per-polygon table.
        resampling: Resampling used when aligning masks to the common grid.
        max_pixels: Pixel budget for a single statistics/export unit.
        max_workers: Worker pool size for per-unit tasks.
        provider: Dataset provider name (``local`` or ``stac``).
        provider_root: Root directory of the local provider or STAC cache.
        stac_url: STAC API root for the ``stac`` provider.
        provider_max_retries: Retries for transient provider failures.
        retry_base_seconds: Exponential backoff base between retries.
        storage: Storage adapter name (``local`` or ``blob``).
        storage_root: Root directory of the local store.
        blob_container: Container used by the blob store.
    """

    target_resolution_m: float = 30.0
    sieve_threshold_pixels: int | None = None
    mmu_area_ha: float = 0.5
    agreement_radius: int = 1
    forest_height_min_m: int = 5
    min_polygon_area_ha: float = 0.5
    majority_min_agreement: int = 6
    geodata_type: str = "Polygon"
    geodata_path: str = ""
    point_buffer_ha: float = 0.6
    point_buffer_radius_m: float | None = None
    cluster_join_distance_m: float = 10_000.0
    tile_rows: int = 2
    tile_cols: int = 2
    export_target: str = "path"
    export_folder: str = "ForestAgreementExports"
    export_description: str = "ForestAgreement_2020"
    export_asset_id: str = ""
    export_format: str = "SHP"
    resampling: str = "nearest"
    max_pixels: float = 1e13
    max_workers: int = 4
    provider: str = "local"
    provider_root: str = "./data"
    stac_url: str = ""
    provider_max_retries: int = 2
    retry_base_seconds: float = 2.0
    storage: str = "local"
    storage_root: str = "./outputs"
    blob_container: str = "forest-agreement"

    @classmethod
    def from_env(cls) -> AgreementConfig:
        """Load and validate configuration from ``FA_*`` environment variables.

        Raises:
            ConfigurationError: If a value is out of range or unparseable.
        """
        defaults = cls()
        config = cls(
            target_resolution_m=_env_float("FA_TARGET_RESOLUTION_M", defaults.target_resolution_m),
            sieve_threshold_pixels=_env_optional_int("FA_SIEVE_THRESHOLD_PIXELS"),
            mmu_area_ha=_env_float("FA_MMU_AREA_HA", defaults.mmu_area_ha),
            agreement_radius=_env_int("FA_AGREEMENT_RADIUS", defaults.agreement_radius),
            forest_height_min_m=_env_int("FA_FOREST_HEIGHT_MIN_M", defaults.forest_height_min_m),
            min_polygon_area_ha=_env_float("FA_MIN_POLYGON_AREA_HA", defaults.min_polygon_area_ha),
            majority_min_agreement=_env_int(
                "FA_MAJORITY_MIN_AGREEMENT", defaults.majority_min_agreement
            ),
            geodata_type=os.getenv("FA_GEODATA_TYPE", defaults.geodata_type),
            geodata_path=os.getenv("FA_GEODATA_PATH", defaults.geodata_path),
            point_buffer_ha=_env_float("FA_POINT_BUFFER_HA", defaults.point_buffer_ha),
            point_buffer_radius_m=_env_optional_float("FA_POINT_BUFFER_RADIUS_M"),
            cluster_join_distance_m=_env_float(
                "FA_CLUSTER_JOIN_DISTANCE_M", defaults.cluster_join_distance_m
            ),
            tile_rows=_env_int("FA_TILE_ROWS", defaults.tile_rows),
            tile_cols=_env_int("FA_TILE_COLS", defaults.tile_cols),
            export_target=os.getenv("FA_EXPORT_TARGET", defaults.export_target),
            export_folder=os.getenv("FA_EXPORT_FOLDER", defaults.export_folder),
            export_description=os.getenv("FA_EXPORT_DESCRIPTION", defaults.export_description),
            export_asset_id=os.getenv("FA_EXPORT_ASSET_ID", defaults.export_asset_id),
            export_format=os.getenv("FA_EXPORT_FORMAT", defaults.export_format),
            resampling=os.getenv("FA_RESAMPLING", defaults.resampling),
            max_pixels=_env_float("FA_MAX_PIXELS", defaults.max_pixels),
            max_workers=_env_int("FA_MAX_WORKERS", defaults.max_workers),
            provider=os.getenv("FA_PROVIDER", defaults.provider),
            provider_root=os.getenv("FA_PROVIDER_ROOT", defaults.provider_root),
            stac_url=os.getenv("FA_STAC_URL", defaults.stac_url),
            provider_max_retries=_env_int("FA_PROVIDER_MAX_RETRIES", defaults.provider_max_retries),
            retry_base_seconds=_env_float("FA_RETRY_BASE_SECONDS", defaults.retry_base_seconds),
            storage=os.getenv("FA_STORAGE", defaults.storage),
            storage_root=os.getenv("FA_STORAGE_ROOT", defaults.storage_root),
            blob_container=os.getenv("FA_BLOB_CONTAINER", defaults.blob_container),
        )
        _validate(config)
        return config

    def with_overrides(self, **overrides: object) -> AgreementConfig:
        """Return a validated copy with *overrides* applied (``None`` values ignored)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        config = replace(self, **changes)  # type: ignore[arg-type]
        _validate(config)
        return config

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def pixel_area_m2(self) -> float:
        """Nominal area of one target-resolution pixel in square metres."""
        return self.target_resolution_m * self.target_resolution_m

    @property
    def mmu_pixels(self) -> int:
        """Minimum mapping unit in pixels.

        An explicit ``sieve_threshold_pixels`` wins; otherwise the pixel
        count covering ``mmu_area_ha`` at the target resolution, rounded up
        (6 pixels at 30 m for 0.5 ha).
        """
        if self.sieve_threshold_pixels is not None:
            return self.sieve_threshold_pixels
        return math.ceil(self.mmu_area_ha * SQ_METRES_PER_HECTARE / self.pixel_area_m2)

    def require_geodata_path(self) -> str:
        """Return the geodata path, rejecting empty or placeholder values."""
        if not self.geodata_path or GEODATA_PLACEHOLDER in self.geodata_path:
            raise ConfigurationError(
                "FA_GEODATA_PATH",
                self.geodata_path,
                "specify the vector file holding your geodata before running",
            )
        return self.geodata_path

    def require_asset_id(self) -> str:
        """Return the catalog asset id, rejecting empty or placeholder values."""
        if not self.export_asset_id or ASSET_ID_PLACEHOLDER in self.export_asset_id:
            raise ConfigurationError(
                "FA_EXPORT_ASSET_ID",
                self.export_asset_id,
                "catalog exports need a real asset id",
            )
        return self.export_asset_id


# ---------------------------------------------------------------------------
# Environment parsing
# ---------------------------------------------------------------------------


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(key, raw, "must be a number") from exc


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(key, raw, "must be an integer") from exc


def _env_optional_float(key: str) -> float | None:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return None
    return _env_float(key, 0.0)


def _env_optional_int(key: str) -> int | None:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return None
    return _env_int(key, 0)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate(config: AgreementConfig) -> None:
    """Validate configuration ranges. Raises ``ConfigurationError``."""
    if config.target_resolution_m <= 0:
        raise ConfigurationError(
            "FA_TARGET_RESOLUTION_M", config.target_resolution_m, "must be > 0 (metres)"
        )

    if config.sieve_threshold_pixels is not None and config.sieve_threshold_pixels < 1:
        raise ConfigurationError(
            "FA_SIEVE_THRESHOLD_PIXELS", config.sieve_threshold_pixels, "must be >= 1 (pixels)"
        )

    if config.mmu_area_ha <= 0:
        raise ConfigurationError("FA_MMU_AREA_HA", config.mmu_area_ha, "must be > 0 (hectares)")

    if config.agreement_radius < 1:
        raise ConfigurationError(
            "FA_AGREEMENT_RADIUS", config.agreement_radius, "must be >= 1 (pixels)"
        )

    if not 0 <= config.forest_height_min_m <= 255:
        raise ConfigurationError(
            "FA_FOREST_HEIGHT_MIN_M",
            config.forest_height_min_m,
            "must be between 0 and 255 (metres)",
        )

    if config.min_polygon_area_ha < 0:
        raise ConfigurationError(
            "FA_MIN_POLYGON_AREA_HA", config.min_polygon_area_ha, "must be >= 0 (hectares)"
        )

    if config.majority_min_agreement < 1:
        raise ConfigurationError(
            "FA_MAJORITY_MIN_AGREEMENT", config.majority_min_agreement, "must be >= 1"
        )

    if config.geodata_type not in GEODATA_TYPES:
        raise ConfigurationError(
            "FA_GEODATA_TYPE", config.geodata_type, f"must be one of {', '.join(GEODATA_TYPES)}"
        )

    if config.point_buffer_ha <= 0:
        raise ConfigurationError(
            "FA_POINT_BUFFER_HA", config.point_buffer_ha, "must be > 0 (hectares)"
        )

    if config.point_buffer_radius_m is not None and config.point_buffer_radius_m <= 0:
        raise ConfigurationError(
            "FA_POINT_BUFFER_RADIUS_M", config.point_buffer_radius_m, "must be > 0 (metres)"
        )

    if config.cluster_join_distance_m <= 0:
        raise ConfigurationError(
            "FA_CLUSTER_JOIN_DISTANCE_M", config.cluster_join_distance_m, "must be > 0 (metres)"
        )

    if config.tile_rows < 1 or config.tile_cols < 1:
        raise ConfigurationError(
            "FA_TILE_ROWS/FA_TILE_COLS",
            (config.tile_rows, config.tile_cols),
            "must both be >= 1",
        )

    if config.export_target not in EXPORT_TARGETS:
        raise ConfigurationError(
            "FA_EXPORT_TARGET", config.export_target, f"must be one of {', '.join(EXPORT_TARGETS)}"
        )

    if config.export_format not in TABLE_FORMATS:
        raise ConfigurationError(
            "FA_EXPORT_FORMAT", config.export_format, f"must be one of {', '.join(TABLE_FORMATS)}"
        )

    if config.resampling not in RESAMPLING_METHODS:
        raise ConfigurationError(
            "FA_RESAMPLING", config.resampling, f"must be one of {', '.join(RESAMPLING_METHODS)}"
        )

    if config.max_pixels <= 0:
        raise ConfigurationError("FA_MAX_PIXELS", config.max_pixels, "must be > 0")

    if config.max_workers < 1:
        raise ConfigurationError("FA_MAX_WORKERS", config.max_workers, "must be >= 1")

    if config.provider_max_retries < 0:
        raise ConfigurationError(
            "FA_PROVIDER_MAX_RETRIES", config.provider_max_retries, "must be >= 0"
        )

    if config.retry_base_seconds < 0:
        raise ConfigurationError(
            "FA_RETRY_BASE_SECONDS", config.retry_base_seconds, "must be >= 0 (seconds)"
        )

    if not config.export_description:
        raise ConfigurationError(
            "FA_EXPORT_DESCRIPTION", config.export_description, "must not be empty"
        )

    if config.storage not in STORAGE_BACKENDS:
        raise ConfigurationError(
            "FA_STORAGE", config.storage, f"must be one of {', '.join(STORAGE_BACKENDS)}"
        )
