"""Dataset provider adapters.

Implements the provider-agnostic adapter pattern:
- DatasetProvider: Abstract base class defining the interface
- LocalRasterProvider: GeoTIFF tree on local disk
- StacDatasetProvider: STAC API search with an on-disk asset cache

The active provider is selected via configuration (``FA_PROVIDER``).
"""

from forest_agreement.providers.base import (
    DatasetProvider,
    NoImagesFound,
    ProviderAuthError,
    ProviderConfig,
    ProviderError,
    ProviderFetchError,
)
from forest_agreement.providers.factory import (
    LOCAL,
    STAC,
    get_provider,
    list_providers,
    provider_from_config,
    register_provider,
)

__all__ = [
    "LOCAL",
    "STAC",
    "DatasetProvider",
    "NoImagesFound",
    "ProviderAuthError",
    "ProviderConfig",
    "ProviderError",
    "ProviderFetchError",
    "get_provider",
    "list_providers",
    "provider_from_config",
    "register_provider",
]
