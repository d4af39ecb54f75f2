"""
Tests for the Demand Source Registry.

Tests cover:
- Construction from static config
- Snapshot isolation (callers cannot mutate shared state)
- EMA updates on fills
- fill_rate bounds
- Enable/disable and removal
- Top sources by price
"""

import threading

import pytest

from adpod.config import DEFAULT_DEMAND_SOURCES
from adpod.demand.base import DemandSource
from adpod.demand.registry import DemandSourceRegistry


def make_source(name: str, price: float = 10.0, fill_rate: float = 0.8, **kwargs) -> DemandSource:
    return DemandSource(
        name=name,
        endpoint=f"http://demand.test/{name}",
        avg_price=price,
        fill_rate=fill_rate,
        avg_latency_ms=kwargs.pop("avg_latency_ms", 500.0),
        **kwargs,
    )


@pytest.fixture
def registry():
    """Registry with three sources."""
    return DemandSourceRegistry(
        [
            make_source("alpha", price=10.0, fill_rate=0.9),
            make_source("beta", price=20.0, fill_rate=0.1),
            make_source("gamma", price=5.0, fill_rate=0.5),
        ]
    )


class TestConstruction:
    """Tests for registry construction."""

    def test_from_config_loads_default_sources(self):
        """Test the default table is loaded."""
        registry = DemandSourceRegistry.from_config()
        assert len(registry.all()) == len(DEFAULT_DEMAND_SOURCES)
        assert registry.contains("Google AdX")

    def test_from_config_custom_entries(self):
        """Test custom config entries."""
        registry = DemandSourceRegistry.from_config(
            [{"name": "solo", "endpoint": "http://x", "avg_price": 3.0, "fill_rate": 0.4}]
        )
        source = registry.get("solo")
        assert source.avg_price == 3.0
        assert source.accepted_durations == [15, 30]

    def test_fill_rate_clamped_on_creation(self):
        """Test out-of-range fill rates are clamped."""
        assert make_source("x", fill_rate=1.7).fill_rate == 1.0
        assert make_source("y", fill_rate=-0.2).fill_rate == 0.0


class TestSnapshots:
    """Tests for snapshot isolation."""

    def test_get_returns_copy(self, registry):
        """Test mutating a snapshot does not change the registry."""
        snapshot = registry.get("alpha")
        snapshot.avg_price = 999.0
        assert registry.get("alpha").avg_price == 10.0

    def test_get_unknown_returns_none(self, registry):
        """Test unknown source lookup."""
        assert registry.get("nope") is None

    def test_snapshot_lists_enabled_only(self, registry):
        """Test the serialisable snapshot skips disabled sources."""
        registry.set_enabled("beta", False)
        names = [s["name"] for s in registry.snapshot()]
        assert names == ["alpha", "gamma"]


class TestRecordFill:
    """Tests for EMA updates."""

    def test_price_ema(self, registry):
        """Test avg_price <- avg_price * 0.95 + price * 0.05."""
        updated = registry.record_fill("alpha", 20.0)
        assert updated.avg_price == pytest.approx(10.0 * 0.95 + 20.0 * 0.05)

    def test_fill_rate_ema(self, registry):
        """Test fill_rate <- min(1, fill_rate * 0.98 + 0.02)."""
        updated = registry.record_fill("gamma", 5.0)
        assert updated.fill_rate == pytest.approx(0.5 * 0.98 + 0.02)

    def test_fill_rate_stays_bounded(self, registry):
        """Test fill_rate never exceeds 1 after many fills."""
        for _ in range(2000):
            registry.record_fill("alpha", 10.0)
        source = registry.get("alpha")
        assert 0.0 <= source.fill_rate <= 1.0

    def test_latency_ema(self, registry):
        """Test latency is folded in when given."""
        updated = registry.record_fill("alpha", 10.0, latency_ms=1500.0)
        assert updated.avg_latency_ms == pytest.approx(500.0 * 0.95 + 1500.0 * 0.05)

    def test_unknown_source_ignored(self, registry):
        """Test fills for unknown sources return None."""
        assert registry.record_fill("nope", 10.0) is None

    def test_concurrent_fills_are_atomic(self, registry):
        """Test parallel updates apply every fill."""
        def worker():
            for _ in range(250):
                registry.record_fill("gamma", 5.0)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        expected = 0.5
        for _ in range(1000):
            expected = min(1.0, expected * 0.98 + 0.02)
        assert registry.get("gamma").fill_rate == pytest.approx(expected)


class TestAdministration:
    """Tests for enable/disable, upsert and removal."""

    def test_disable_excludes_from_enabled(self, registry):
        """Test disabled sources are not listed as enabled."""
        assert registry.set_enabled("alpha", False)
        assert "alpha" not in [s.name for s in registry.enabled()]
        assert registry.contains("alpha")

    def test_set_enabled_unknown(self, registry):
        """Test toggling an unknown source."""
        assert not registry.set_enabled("nope", True)

    def test_remove(self, registry):
        """Test explicit removal."""
        assert registry.remove("beta")
        assert not registry.contains("beta")
        assert not registry.remove("beta")

    def test_upsert_replaces(self, registry):
        """Test upsert overwrites an existing entry."""
        registry.upsert(make_source("alpha", price=42.0))
        assert registry.get("alpha").avg_price == 42.0


class TestTopByPrice:
    """Tests for price ranking."""

    def test_order(self, registry):
        """Test sources are ranked by avg_price descending."""
        assert [s.name for s in registry.top_by_price(3)] == ["beta", "alpha", "gamma"]

    def test_skips_disabled(self, registry):
        """Test disabled sources are not ranked."""
        registry.set_enabled("beta", False)
        assert [s.name for s in registry.top_by_price(2)] == ["alpha", "gamma"]
