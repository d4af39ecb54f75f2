"""
Data models for fill-rate prediction.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class Recommendation(Enum):
    """What the dispatcher should do with a source."""

    CALL = "call"
    SKIP = "skip"
    REDUCE_TIMEOUT = "reduce_timeout"

    def __str__(self) -> str:
        return self.value


@dataclass
class PredictionContext:
    """
    Features describing one (source, request) pair.

    Attributes:
        source: Demand source name.
        hour: Hour of day (0-23).
        day_of_week: Day of week (0 = Monday).
        device: Device type.
        content_category: Content category.
        floor_price: Slot floor (CPM).
        position: preroll, midroll or postroll.
        seasonality: Demand multiplier; derived from the quarter when None.
    """

    source: str
    hour: int
    day_of_week: int
    device: str = "desktop"
    content_category: str = "general"
    floor_price: float = 8.0
    position: str = "preroll"
    seasonality: Optional[float] = None

    @classmethod
    def at(cls, source: str, when: Optional[datetime] = None, **kwargs: Any) -> "PredictionContext":
        """Build a context with hour and weekday taken from `when`."""
        when = when or _utc_now()
        return cls(source=source, hour=when.hour, day_of_week=when.weekday(), **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "hour": self.hour,
            "day_of_week": self.day_of_week,
            "device": self.device,
            "content_category": self.content_category,
            "floor_price": self.floor_price,
            "position": self.position,
            "seasonality": self.seasonality,
        }


@dataclass
class PredictionFactor:
    """One additive contribution to a fill probability."""

    name: str
    impact: float
    value: Any


@dataclass
class FillPrediction:
    """
    Predicted behaviour of a source for a context.

    Attributes:
        probability: Fill probability in [0, 1].
        expected_price: Expected CPM if filled.
        expected_latency_ms: Expected response latency.
        confidence: Confidence in [0, 1], grows with sample count.
        recommendation: call, skip or reduce_timeout.
        factors: Contributions sorted by absolute impact.
    """

    probability: float
    expected_price: float
    expected_latency_ms: float
    confidence: float
    recommendation: Recommendation
    factors: list[PredictionFactor] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "probability": round(self.probability, 4),
            "expected_price": self.expected_price,
            "expected_latency_ms": self.expected_latency_ms,
            "confidence": round(self.confidence, 4),
            "recommendation": str(self.recommendation),
            "factors": [{"name": f.name, "impact": round(f.impact, 4), "value": f.value} for f in self.factors],
        }


@dataclass
class TrainingRecord:
    """Observed outcome of one source call."""

    context: PredictionContext
    filled: bool
    price: Optional[float] = None
    latency_ms: Optional[float] = None
    timestamp: datetime = field(default_factory=_utc_now)
