"""Provider factory: selects the active dataset provider by name.

The factory maintains a registry of known providers. New providers are
registered with ``register_provider`` or by adding an entry to
``_register_builtin_providers``.

Usage::

    from forest_agreement.providers.factory import get_provider

    provider = get_provider("local", ProviderConfig(name="local", root="./data"))
    raster = provider.fetch(dataset, roi)

The provider name is read from the ``FA_PROVIDER`` environment variable
via ``AgreementConfig.provider``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from forest_agreement.providers.base import DatasetProvider, ProviderConfig, ProviderError

if TYPE_CHECKING:
    from collections.abc import Callable

    from forest_agreement.core.config import AgreementConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Provider name constants
# ---------------------------------------------------------------------------

LOCAL = "local"
STAC = "stac"

# ---------------------------------------------------------------------------
# Lazy-import provider registry
# ---------------------------------------------------------------------------

# Each entry maps a provider name to a callable returning the provider
# *class*, so that pystac-client and httpx load only when STAC is selected.

_PROVIDER_REGISTRY: dict[str, Callable[[], type[DatasetProvider]]] = {}


def _register_builtin_providers() -> None:
    """Register the built-in providers (lazy import thunks)."""

    def _local() -> type[DatasetProvider]:
        from forest_agreement.providers.local import LocalRasterProvider

        return LocalRasterProvider

    def _stac() -> type[DatasetProvider]:
        from forest_agreement.providers.stac import StacDatasetProvider

        return StacDatasetProvider

    _PROVIDER_REGISTRY[LOCAL] = _local
    _PROVIDER_REGISTRY[STAC] = _stac


def _ensure_registry() -> None:
    """Initialise the provider registry once (idempotent)."""
    if not _PROVIDER_REGISTRY:
        _register_builtin_providers()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def register_provider(
    name: str,
    loader: Callable[[], type[DatasetProvider]],
) -> None:
    """Register a custom provider.

    Lets third-party or test providers be plugged in without modifying
    the factory.

    Raises:
        ValueError: If the name is empty.
    """
    if not name:
        msg = "Provider name must be non-empty"
        raise ValueError(msg)
    _ensure_registry()
    _PROVIDER_REGISTRY[name] = loader
    logger.debug("Registered dataset provider: %s", name)


def get_provider(
    name: str,
    config: ProviderConfig | None = None,
) -> DatasetProvider:
    """Create and return a dataset provider instance.

    Args:
        name: Provider identifier (``"local"``, ``"stac"``...).
        config: Optional ``ProviderConfig``. If ``None``, a default config
            with just the provider name is used.

    Raises:
        ProviderError: If the named provider is not registered or the
            config names a different provider.
    """
    _ensure_registry()

    loader = _PROVIDER_REGISTRY.get(name)
    if loader is None:
        available = ", ".join(sorted(_PROVIDER_REGISTRY))
        msg = f"Unknown dataset provider: {name!r}. Available: {available}"
        raise ProviderError(provider=name, message=msg)

    provider_cls = loader()

    if config is None:
        config = ProviderConfig(name=name)
    elif config.name != name:
        msg = f"ProviderConfig.name {config.name!r} does not match requested provider {name!r}"
        raise ProviderError(provider=name, message=msg)

    logger.info("Creating dataset provider: %s", name)
    return provider_cls(config)


def list_providers() -> list[str]:
    """Return the names of all registered providers."""
    _ensure_registry()
    return sorted(_PROVIDER_REGISTRY)


def provider_from_config(config: AgreementConfig) -> DatasetProvider:
    """Build the provider selected by the pipeline configuration."""
    provider_config = ProviderConfig(
        name=config.provider,
        root=config.provider_root,
        api_base_url=config.stac_url,
        cache_dir=config.provider_root,
    )
    return get_provider(config.provider, provider_config)
