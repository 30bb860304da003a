"""Tests for the dataset provider factory.

Covers: get_provider, list_providers, register_provider, error handling,
lazy import behaviour and config-driven switching.
"""

from __future__ import annotations

import os
import unittest
from typing import Any
from unittest.mock import patch

from forest_agreement.core.config import AgreementConfig
from forest_agreement.providers.base import DatasetProvider, ProviderConfig, ProviderError
from forest_agreement.providers.factory import (
    _PROVIDER_REGISTRY,
    LOCAL,
    STAC,
    _ensure_registry,
    get_provider,
    list_providers,
    provider_from_config,
    register_provider,
)
from forest_agreement.providers.local import LocalRasterProvider
from forest_agreement.providers.stac import StacDatasetProvider


class TestListProviders(unittest.TestCase):
    """list_providers returns known providers."""

    def test_includes_builtin_providers(self) -> None:
        providers = list_providers()
        assert LOCAL in providers
        assert STAC in providers

    def test_returns_sorted(self) -> None:
        providers = list_providers()
        assert providers == sorted(providers)


class TestGetProvider(unittest.TestCase):
    """get_provider creates the correct provider instance."""

    def test_local(self) -> None:
        provider = get_provider(LOCAL, ProviderConfig(name=LOCAL, root="/data"))
        assert isinstance(provider, LocalRasterProvider)
        assert provider.name == LOCAL
        assert str(provider.root) == "/data"

    def test_stac(self) -> None:
        cfg = ProviderConfig(name=STAC, api_base_url="https://stac.example.com")
        provider = get_provider(STAC, cfg)
        assert isinstance(provider, StacDatasetProvider)
        assert provider.config.api_base_url == "https://stac.example.com"

    def test_stac_requires_url(self) -> None:
        with self.assertRaises(ProviderError):
            get_provider(STAC)

    def test_unknown_provider_raises(self) -> None:
        with self.assertRaises(ProviderError) as ctx:
            get_provider("nonexistent_provider")
        assert "nonexistent_provider" in str(ctx.exception)
        assert "Available:" in str(ctx.exception)

    def test_default_config_when_none(self) -> None:
        provider = get_provider(LOCAL)
        assert provider.config.name == LOCAL

    def test_config_name_mismatch_raises(self) -> None:
        """ProviderConfig.name must match the requested provider name."""
        with self.assertRaises(ProviderError) as ctx:
            get_provider(LOCAL, config=ProviderConfig(name=STAC))
        assert "does not match" in str(ctx.exception)


class TestRegisterProvider(unittest.TestCase):
    """register_provider adds custom providers."""

    def setUp(self) -> None:
        _ensure_registry()
        _PROVIDER_REGISTRY.pop("test_custom", None)

    def tearDown(self) -> None:
        _PROVIDER_REGISTRY.pop("test_custom", None)

    def test_register_and_get(self) -> None:
        """Registered provider can be retrieved via get_provider."""

        class _TestProvider(DatasetProvider):
            def load_images(self, dataset: Any, roi: Any, date_range: Any = None) -> list:
                return []

        register_provider("test_custom", lambda: _TestProvider)
        assert "test_custom" in list_providers()

        provider = get_provider("test_custom")
        assert isinstance(provider, _TestProvider)

    def test_register_empty_name_raises(self) -> None:
        with self.assertRaises(ValueError):
            register_provider("", lambda: DatasetProvider)  # type: ignore[type-abstract]


class TestProviderSwitching(unittest.TestCase):
    """Provider switching via configuration."""

    def test_from_config_local(self) -> None:
        provider = provider_from_config(AgreementConfig(provider_root="/srv/forest"))
        assert isinstance(provider, LocalRasterProvider)
        assert str(provider.root) == "/srv/forest"

    @patch.dict(
        os.environ,
        {"FA_PROVIDER": STAC, "FA_STAC_URL": "https://stac.example.com"},
        clear=True,
    )
    def test_env_driven_selection(self) -> None:
        provider = provider_from_config(AgreementConfig.from_env())
        assert isinstance(provider, StacDatasetProvider)
        assert provider.name == STAC
