"""
Position-level historical performance.

Keeps a running aggregate per ad position (preroll, midroll, postroll):
mean per-slot revenue, fill rate, sample count and the revenue each source
contributed. The planner reads it for advisor context; only the learning loop
writes to it.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_FILL_RATE_PCT = 75.0


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class HistoricalPerformance:
    """
    Aggregate performance for one position.

    Attributes:
        position: Ad position.
        avg_revenue: Running mean revenue per slot.
        avg_fill_rate: Running fill rate in [0, 1].
        fill_count: Number of filled slots.
        sample_size: Number of resolved slots.
        source_revenue: Revenue contributed per winning source.
        last_updated: Time of the last update.
    """

    position: str
    avg_revenue: float = 0.0
    avg_fill_rate: float = 0.0
    fill_count: int = 0
    sample_size: int = 0
    source_revenue: dict[str, float] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=_utc_now)

    def top_sources(self, count: int = 3) -> list[dict[str, Any]]:
        """Sources ranked by share of this position's revenue."""
        total = sum(self.source_revenue.values())
        ranked = sorted(self.source_revenue.items(), key=lambda kv: kv[1], reverse=True)[:count]
        return [
            {"name": name, "contribution": round(revenue / total, 4) if total else 0.0}
            for name, revenue in ranked
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "avg_revenue": round(self.avg_revenue, 6),
            "avg_fill_rate": round(self.avg_fill_rate, 4),
            "fill_count": self.fill_count,
            "sample_size": self.sample_size,
            "top_sources": self.top_sources(),
            "last_updated": self.last_updated.isoformat(),
        }


class PerformanceHistory:
    """Thread-safe store of `HistoricalPerformance` keyed by position."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._positions: dict[str, HistoricalPerformance] = {}

    def record(self, position: str, revenue: float, filled: bool, source: Optional[str] = None) -> HistoricalPerformance:
        """
        Fold one resolved slot into the position's aggregate.

        Args:
            position: Ad position of the opportunity.
            revenue: Revenue of the slot (0 when unfilled).
            filled: Whether the slot was filled.
            source: Winning source, if any.

        Returns:
            Snapshot of the updated aggregate.
        """
        with self._lock:
            hist = self._positions.get(position)
            if hist is None:
                hist = HistoricalPerformance(position=position)
                self._positions[position] = hist

            n = hist.sample_size
            hist.avg_revenue = (hist.avg_revenue * n + revenue) / (n + 1)
            hist.avg_fill_rate = (hist.avg_fill_rate * n + (1.0 if filled else 0.0)) / (n + 1)
            hist.sample_size = n + 1
            if filled:
                hist.fill_count += 1
                if source:
                    hist.source_revenue[source] = hist.source_revenue.get(source, 0.0) + revenue
            hist.last_updated = _utc_now()
            return replace(hist, source_revenue=dict(hist.source_revenue))

    def get(self, position: str) -> Optional[HistoricalPerformance]:
        with self._lock:
            hist = self._positions.get(position)
            if hist is None:
                return None
            return replace(hist, source_revenue=dict(hist.source_revenue))

    def fill_rate_pct(self, position: str) -> float:
        """Historical fill rate for a position in percent (75 when unknown)."""
        hist = self.get(position)
        return hist.avg_fill_rate * 100 if hist else DEFAULT_FILL_RATE_PCT

    def to_dict(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {k: v.to_dict() for k, v in self._positions.items()}
