"""Tests for the external module registry"""

import logging
from unittest.mock import Mock

import pytest

from widgetpack import BuildConfig, External, ExternalRegistry


@pytest.fixture
def registry():
    registry = ExternalRegistry()
    registry.log = Mock(spec=logging.Logger)
    return registry


class TestExternalRegistry:
    def test_register_and_lookup(self, registry):
        registry.register("jquery", "jQuery")
        assert registry.is_external("jquery")
        assert "jquery" in registry
        assert registry.global_name_for("jquery") == "jQuery"
        assert len(registry) == 1

    def test_unknown_module(self, registry):
        """Test an unregistered identifier is bundled normally"""
        assert not registry.is_external("lodash")
        assert registry.global_name_for("lodash") is None

    def test_lookup_is_exact(self, registry):
        """Test subpaths of an external are not themselves external"""
        registry.register("@xcons/widget", "XconWidget")
        assert not registry.is_external("@xcons/widget/core")
        assert not registry.is_external("@xcons")

    def test_duplicate_last_wins(self, registry):
        """Test a repeated identifier warns and keeps the last global"""
        registry.register("jquery", "jQuery")
        registry.register("jquery", "$")
        assert registry.global_name_for("jquery") == "$"
        assert len(registry) == 1
        registry.log.warning.assert_called_once()

    def test_iteration_order(self, registry):
        registry.register("jquery", "jQuery")
        registry.register("$", "$")
        assert list(registry) == [External("jquery", "jQuery"), External("$", "$")]

    def test_global_names(self, registry):
        registry.register("jquery", "jQuery")
        registry.register("@xcons/widget", "XconWidget")
        assert registry.global_names == frozenset({"jQuery", "XconWidget"})

    def test_from_config(self):
        registry = ExternalRegistry.from_config(BuildConfig.production())
        assert registry.global_name_for("$") == "$"
        assert registry.global_name_for("@xcons/widget") == "XconWidget"
        assert len(registry) == 3

    def test_duplicate_in_config(self, caplog):
        """Test duplicate externals in configuration are not fatal"""
        config = BuildConfig.production(
            externals=[["jquery", "jQuery"], ["jquery", "$"]]
        )
        with caplog.at_level(logging.WARNING):
            registry = ExternalRegistry.from_config(config)
        assert "duplicate external" in caplog.text
        assert registry.global_name_for("jquery") == "$"
