"""
Demand Source Registry.

Holds static configuration and rolling performance metrics for every demand
source. The registry is an explicitly owned store that is injected into the
planner, dispatcher and learning loop; its update methods are the only way
rolling metrics change.

Example:
    >>> registry = DemandSourceRegistry.from_config()
    >>> top = registry.top_by_price(3)
    >>> registry.record_fill("Google AdX", price=12.0)
    >>> registry.get("Google AdX").fill_rate
    0.853

Concurrency:
    All reads return copies and all writes happen under one lock, so
    concurrent pod executions observe atomic updates. A multi-instance
    deployment implements `DemandSourceStore` against a shared store with its
    own merge policy.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from .. import config
from .base import DemandSource

logger = logging.getLogger(__name__)


class DemandSourceStore(ABC):
    """Read/update interface for demand source state."""

    @abstractmethod
    def get(self, name: str) -> Optional[DemandSource]:
        """Return a snapshot of one source, or None if unknown."""
        pass

    @abstractmethod
    def all(self) -> list[DemandSource]:
        """Return snapshots of every source."""
        pass

    @abstractmethod
    def upsert(self, source: DemandSource) -> None:
        """Add or replace a source."""
        pass

    @abstractmethod
    def remove(self, name: str) -> bool:
        """Remove a source (admin operation)."""
        pass

    @abstractmethod
    def record_fill(self, name: str, price: float, latency_ms: Optional[float] = None) -> Optional[DemandSource]:
        """Apply the EMA updates for a filled slot won by `name`."""
        pass

    def contains(self, name: str) -> bool:
        """Check if a source is registered."""
        return self.get(name) is not None

    def names(self) -> list[str]:
        """Names of all registered sources."""
        return [s.name for s in self.all()]

    def enabled(self) -> list[DemandSource]:
        """Snapshots of the enabled sources."""
        return [s for s in self.all() if s.enabled]

    def top_by_price(self, count: int = config.TOP_SOURCES_PER_SLOT) -> list[DemandSource]:
        """
        Top enabled sources ranked by rolling average price.

        Ties keep registration order.
        """
        return sorted(self.enabled(), key=lambda s: s.avg_price, reverse=True)[:count]

    def snapshot(self) -> list[dict]:
        """Serializable view of enabled sources (advisor context)."""
        return [s.to_dict() for s in self.enabled()]


class DemandSourceRegistry(DemandSourceStore):
    """
    In-process demand source store.

    Attributes:
        price_decay: EMA decay applied to avg_price on fills.
        fill_decay: EMA decay applied to fill_rate on fills.
    """

    def __init__(
        self,
        sources: Optional[Iterable[DemandSource]] = None,
        price_decay: float = config.PRICE_EMA_DECAY,
        fill_decay: float = config.FILL_RATE_EMA_DECAY,
    ) -> None:
        self.price_decay = price_decay
        self.fill_decay = fill_decay
        self._lock = threading.Lock()
        self._sources: dict[str, DemandSource] = {}
        for source in sources or []:
            self._sources[source.name] = copy.deepcopy(source)

        logger.info(f"DemandSourceRegistry initialized with {len(self._sources)} sources")

    @classmethod
    def from_config(cls, entries: Optional[list[dict]] = None) -> "DemandSourceRegistry":
        """Build a registry from static config entries (defaults to config)."""
        entries = config.DEFAULT_DEMAND_SOURCES if entries is None else entries
        return cls(DemandSource.from_dict(e) for e in entries)

    def get(self, name: str) -> Optional[DemandSource]:
        with self._lock:
            source = self._sources.get(name)
            return copy.deepcopy(source) if source else None

    def all(self) -> list[DemandSource]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._sources.values()]

    def upsert(self, source: DemandSource) -> None:
        with self._lock:
            self._sources[source.name] = copy.deepcopy(source)
        logger.info(f"Demand source registered: {source.name}")

    def remove(self, name: str) -> bool:
        with self._lock:
            removed = self._sources.pop(name, None) is not None
        if removed:
            logger.info(f"Demand source removed: {name}")
        return removed

    def set_enabled(self, name: str, enabled: bool) -> bool:
        """Enable or disable a source. Returns False if unknown."""
        with self._lock:
            source = self._sources.get(name)
            if source is None:
                return False
            source.enabled = enabled
        logger.info(f"Demand source {name} {'enabled' if enabled else 'disabled'}")
        return True

    def record_fill(self, name: str, price: float, latency_ms: Optional[float] = None) -> Optional[DemandSource]:
        """
        Apply the fill updates for a winning source.

        avg_price <- avg_price * 0.95 + price * 0.05
        fill_rate <- min(1, fill_rate * 0.98 + 0.02)

        Args:
            name: Winning source.
            price: Winning bid price.
            latency_ms: Observed latency, folded into avg_latency_ms with the
                price decay when given.

        Returns:
            Updated snapshot, or None if the source is unknown.
        """
        with self._lock:
            source = self._sources.get(name)
            if source is None:
                logger.warning(f"Fill recorded for unknown source {name}")
                return None
            source.avg_price = source.avg_price * self.price_decay + price * (1 - self.price_decay)
            source.fill_rate = min(1.0, max(0.0, source.fill_rate * self.fill_decay + (1 - self.fill_decay)))
            if latency_ms is not None:
                source.avg_latency_ms = (
                    source.avg_latency_ms * self.price_decay + latency_ms * (1 - self.price_decay)
                )
            snapshot = copy.deepcopy(source)

        logger.debug(
            f"{name}: avg_price=${snapshot.avg_price:.2f}, fill_rate={snapshot.fill_rate:.3f}"
        )
        return snapshot
