"""Tests for the connector registry and the metric key catalogue."""

import pytest

from conftest import FakeFetcher, fake_definition
from pulse.connectors.registry import (
    ConnectorRegistry,
    DuplicateProviderError,
    UnknownProviderError,
    build_default_registry,
)
from pulse.core.metric_keys import (
    ALL_METRIC_KEYS,
    MetricFormat,
    get_metric_key,
    is_snapshot,
    keys_by_format,
)


class TestConnectorRegistry:
    def test_lookup_by_id(self):
        definition = fake_definition(FakeFetcher())
        registry = ConnectorRegistry([definition])

        assert registry.get("fake") is definition
        assert registry.has("fake")
        assert registry.find("other") is None
        assert len(registry) == 1

    def test_unknown_provider_raises(self):
        registry = ConnectorRegistry()
        with pytest.raises(UnknownProviderError) as exc:
            registry.get("paddle")
        assert str(exc.value) == 'Integration "paddle" not found'

    def test_duplicate_ids_are_rejected(self):
        registry = ConnectorRegistry([fake_definition(FakeFetcher())])
        with pytest.raises(DuplicateProviderError):
            registry.register(fake_definition(FakeFetcher()))

    def test_default_registry_has_bundled_providers(self):
        registry = build_default_registry(timeout=5, max_retries=1, lookback_days=7)

        assert [d.id for d in registry.all()] == ["stripe", "gumroad", "revenuecat"]
        assert registry.get("stripe").fetcher.lookback_days == 7
        for definition in registry.all():
            assert definition.metric_types
            assert all(get_metric_key(t) for t in definition.metric_types)


class TestMetricKeys:
    def test_lookup(self):
        mrr = get_metric_key("mrr")
        assert mrr.format == MetricFormat.CURRENCY
        assert mrr.to_dict()["label"] == "MRR"
        assert get_metric_key("nonsense") is None

    def test_formats_partition_the_catalogue(self):
        currency = keys_by_format(MetricFormat.CURRENCY)
        number = keys_by_format(MetricFormat.NUMBER)
        assert len(currency) + len(number) == len(ALL_METRIC_KEYS)

    def test_snapshot_keys(self):
        assert is_snapshot("mrr")
        assert is_snapshot("active_subscribers")
        assert not is_snapshot("revenue")
