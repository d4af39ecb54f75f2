"""
Fill-Rate Predictor.

Scores a (demand source, context) pair for expected fill probability, price
and latency, and learns from observed outcomes.

Model:
- Base probability blends the source's baseline fill rate (learned per-source
  baseline once enough samples exist, else the registry's rolling fill rate)
  with the empirical fill rate of its most recent training records.
- Additive adjustments for hour of day, day of week, device, content
  category, ad position, floor price and seasonality; clamped to [0, 1].
- Hour and day-of-week tables and per-source baselines are re-derived from
  running bucket counts every 10th recorded outcome.

Example:
    >>> predictor = FillRatePredictor()
    >>> ctx = PredictionContext.at("Magnite", device="ctv", floor_price=9.0)
    >>> prediction = predictor.predict(source, ctx)
    >>> predictor.record_outcome(ctx, filled=True, price=10.2, latency_ms=640)

Note:
    The training buffer is an in-process ring buffer. Bucket and per-source
    aggregates are maintained on append/evict, so weight updates never rescan
    the buffer and predictions read at most a source's 50 newest records.
"""

import logging
import math
import threading
from collections import deque
from datetime import datetime, timezone
from itertools import islice
from typing import Any, Optional

from .. import config
from ..demand.base import DemandSource
from ..models import is_ctv_device
from .models import FillPrediction, PredictionContext, PredictionFactor, Recommendation, TrainingRecord

logger = logging.getLogger(__name__)

# Records considered "recent" for blending
RECENT_WINDOW = 50

# Weight update cadence and sample thresholds
UPDATE_EVERY = 10
MIN_BUCKET_SAMPLES = 10
MIN_SOURCE_SAMPLES = 20

# Recommendation thresholds
SKIP_BELOW = 0.30
REDUCE_TIMEOUT_LATENCY_MS = 1500
REDUCE_TIMEOUT_BELOW = 0.60

# Peak viewing hours carry higher latency
PEAK_HOURS = range(18, 23)
PEAK_LATENCY_MULTIPLIER = 1.10

POSITION_PRICE_MULTIPLIERS = {"midroll": 1.15, "postroll": 0.85}
CTV_PRICE_MULTIPLIER = 1.25
SCARCITY_PRICE_MULTIPLIER = 1.10

DEFAULT_DEVICE_WEIGHTS = {
    "desktop": 0.05,
    "mobile": 0.02,
    "tablet": 0.03,
    "ctv": 0.08,
    "smarttv": 0.08,
}
DEFAULT_CATEGORY_WEIGHTS = {
    "news": 0.04,
    "sports": 0.06,
    "entertainment": 0.03,
    "business": 0.07,
    "technology": 0.05,
}
DEFAULT_POSITION_WEIGHTS = {
    "preroll": 0.10,
    "midroll": 0.15,
    "postroll": -0.05,
}
DEFAULT_FLOOR_IMPACT = -0.02


def seasonality_for(when: Optional[datetime] = None) -> float:
    """
    Demand multiplier for the calendar quarter.

    Q4 holiday demand runs hot, Q1 post-holiday demand runs cold.
    """
    when = when or datetime.now(timezone.utc)
    quarter = (when.month - 1) // 3 + 1
    if quarter == 4:
        return 1.20
    if quarter == 1:
        return 0.90
    return 1.0


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if value != value:
        return low
    return max(low, min(high, value))


class _Bucket:
    """Running sample/fill counts."""

    __slots__ = ("samples", "fills")

    def __init__(self) -> None:
        self.samples = 0
        self.fills = 0

    def add(self, filled: bool) -> None:
        self.samples += 1
        self.fills += int(filled)

    def remove(self, filled: bool) -> None:
        self.samples -= 1
        self.fills -= int(filled)

    @property
    def rate(self) -> float:
        return self.fills / self.samples if self.samples else 0.0


class FillRatePredictor:
    """
    Online fill-rate model backed by a bounded training buffer.

    Attributes:
        capacity: Maximum number of training records kept.
        learning_rate: Scale applied to bucket deviations from the global rate.
        hour_weights: Learned additive adjustment per hour of day.
        day_weights: Learned additive adjustment per day of week.
        device_weights: Additive adjustment per device.
        category_weights: Additive adjustment per content category.
        position_weights: Additive adjustment per ad position.
        floor_impact: Probability change per $10 of floor.
        baseline_by_source: Learned baseline fill rate per source.
    """

    def __init__(
        self,
        capacity: int = config.TRAINING_BUFFER_CAPACITY,
        learning_rate: float = config.LEARNING_RATE,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")

        self.capacity = capacity
        self.learning_rate = learning_rate

        self.hour_weights: list[float] = [0.0] * 24
        self.day_weights: list[float] = [0.0] * 7
        self.device_weights = dict(DEFAULT_DEVICE_WEIGHTS)
        self.category_weights = dict(DEFAULT_CATEGORY_WEIGHTS)
        self.position_weights = dict(DEFAULT_POSITION_WEIGHTS)
        self.floor_impact = DEFAULT_FLOOR_IMPACT
        self.baseline_by_source: dict[str, float] = {}

        self._lock = threading.RLock()
        self._buffer: deque[TrainingRecord] = deque()
        self._by_source: dict[str, deque[TrainingRecord]] = {}
        self._global = _Bucket()
        self._sources: dict[str, _Bucket] = {}
        self._hours = [_Bucket() for _ in range(24)]
        self._days = [_Bucket() for _ in range(7)]
        self._appends = 0

        logger.info(f"FillRatePredictor initialized: capacity={capacity}, learning_rate={learning_rate}")

    def __len__(self) -> int:
        return len(self._buffer)

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict(self, source: DemandSource, context: PredictionContext) -> FillPrediction:
        """
        Predict fill probability, price and latency for a source.

        Args:
            source: Registry snapshot of the demand source.
            context: Request features.

        Returns:
            FillPrediction with probability and confidence in [0, 1].
        """
        with self._lock:
            hour = int(context.hour) % 24
            day = int(context.day_of_week) % 7
            floor = context.floor_price if math.isfinite(context.floor_price) else 0.0
            floor = max(0.0, floor)
            seasonality = context.seasonality if context.seasonality is not None else seasonality_for()

            probability = self._base_probability(source)
            factors: list[PredictionFactor] = []

            adjustments = [
                ("Hour of day", self.hour_weights[hour], hour),
                ("Day of week", self.day_weights[day], day),
                ("Device", self.device_weights.get(context.device.lower(), 0.0), context.device),
                (
                    "Content category",
                    self.category_weights.get(context.content_category.lower(), 0.0),
                    context.content_category,
                ),
                ("Ad position", self.position_weights.get(context.position.lower(), 0.0), context.position),
                ("Floor price", self.floor_impact * (floor / 10), f"${floor:.2f}"),
                ("Seasonality", (seasonality - 1) * 0.1, seasonality),
            ]
            for name, impact, value in adjustments:
                probability += impact
                factors.append(PredictionFactor(name=name, impact=impact, value=value))

            probability = _clamp(probability)
            samples = len(self._by_source.get(source.name, ()))
            confidence = min(1.0, samples / 100)

            expected_price = self._predict_price(source, context, probability)
            expected_latency = self._predict_latency(source, hour)
            recommendation = self._recommend(probability, expected_latency)

        factors.sort(key=lambda f: abs(f.impact), reverse=True)
        return FillPrediction(
            probability=probability,
            expected_price=expected_price,
            expected_latency_ms=expected_latency,
            confidence=confidence,
            recommendation=recommendation,
            factors=factors,
        )

    def _recent(self, name: str, count: int = RECENT_WINDOW) -> list[TrainingRecord]:
        records = self._by_source.get(name)
        if not records:
            return []
        return list(islice(reversed(records), count))

    def _base_probability(self, source: DemandSource) -> float:
        baseline = self.baseline_by_source.get(source.name, source.fill_rate)
        recent = self._recent(source.name)
        if not recent:
            return baseline
        recent_rate = sum(1 for r in recent if r.filled) / len(recent)
        return baseline * 0.6 + recent_rate * 0.4

    def _predict_price(self, source: DemandSource, context: PredictionContext, probability: float) -> float:
        expected = source.avg_price

        prices: list[float] = []
        records = self._by_source.get(source.name, ())
        for record in reversed(records):
            if record.filled and record.price:
                prices.append(record.price)
                if len(prices) >= RECENT_WINDOW:
                    break
        if prices:
            expected = expected * 0.5 + (sum(prices) / len(prices)) * 0.5

        expected *= POSITION_PRICE_MULTIPLIERS.get(context.position.lower(), 1.0)
        if is_ctv_device(context.device):
            expected *= CTV_PRICE_MULTIPLIER
        if probability < 0.5:
            expected *= SCARCITY_PRICE_MULTIPLIER

        return round(expected, 2)

    def _predict_latency(self, source: DemandSource, hour: int) -> float:
        expected = source.avg_latency_ms

        latencies = [r.latency_ms for r in self._recent(source.name) if r.latency_ms]
        if latencies:
            expected = expected * 0.5 + (sum(latencies) / len(latencies)) * 0.5

        if hour in PEAK_HOURS:
            expected *= PEAK_LATENCY_MULTIPLIER

        return float(round(expected))

    @staticmethod
    def _recommend(probability: float, expected_latency: float) -> Recommendation:
        if probability < SKIP_BELOW:
            return Recommendation.SKIP
        if expected_latency > REDUCE_TIMEOUT_LATENCY_MS and probability < REDUCE_TIMEOUT_BELOW:
            return Recommendation.REDUCE_TIMEOUT
        return Recommendation.CALL

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def record_outcome(
        self,
        context: PredictionContext,
        filled: bool,
        price: Optional[float] = None,
        latency_ms: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> TrainingRecord:
        """
        Append an observed outcome to the training buffer.

        Evicts the oldest record when the buffer is full and re-derives the
        weight tables every 10th append.

        Args:
            context: Context the source was called with.
            filled: Whether the source returned a usable bid.
            price: Observed bid price (CPM), if any.
            latency_ms: Observed latency, if any.
            timestamp: Observation time (defaults to now).

        Returns:
            The appended record.
        """
        record = TrainingRecord(context=context, filled=bool(filled), price=price, latency_ms=latency_ms)
        if timestamp is not None:
            record.timestamp = timestamp

        with self._lock:
            self._append(record)
            while len(self._buffer) > self.capacity:
                self._evict_oldest()

            self._appends += 1
            if self._appends % UPDATE_EVERY == 0:
                self._update_weights()

        return record

    def _append(self, record: TrainingRecord) -> None:
        self._buffer.append(record)
        self._by_source.setdefault(record.context.source, deque()).append(record)
        self._sources.setdefault(record.context.source, _Bucket()).add(record.filled)
        self._global.add(record.filled)
        self._hours[int(record.context.hour) % 24].add(record.filled)
        self._days[int(record.context.day_of_week) % 7].add(record.filled)

    def _evict_oldest(self) -> None:
        record = self._buffer.popleft()
        source_records = self._by_source.get(record.context.source)
        if source_records:
            # records are appended in order, so a source's oldest is leftmost
            source_records.popleft()
            if not source_records:
                del self._by_source[record.context.source]
        bucket = self._sources.get(record.context.source)
        if bucket is not None:
            bucket.remove(record.filled)
            if not bucket.samples:
                del self._sources[record.context.source]
        self._global.remove(record.filled)
        self._hours[int(record.context.hour) % 24].remove(record.filled)
        self._days[int(record.context.day_of_week) % 7].remove(record.filled)

    def _update_weights(self) -> None:
        if not self._global.samples:
            return
        global_rate = self._global.rate

        for hour, bucket in enumerate(self._hours):
            if bucket.samples >= MIN_BUCKET_SAMPLES:
                self.hour_weights[hour] = (bucket.rate - global_rate) * self.learning_rate

        for day, bucket in enumerate(self._days):
            if bucket.samples >= MIN_BUCKET_SAMPLES:
                self.day_weights[day] = (bucket.rate - global_rate) * self.learning_rate

        for name, bucket in self._sources.items():
            if bucket.samples >= MIN_SOURCE_SAMPLES:
                self.baseline_by_source[name] = bucket.rate

        logger.debug(
            f"Predictor weights updated: samples={self._global.samples}, "
            f"global_fill_rate={global_rate:.3f}, sources={len(self.baseline_by_source)}"
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def sample_count(self, source_name: str) -> int:
        """Number of buffered records for a source."""
        with self._lock:
            return len(self._by_source.get(source_name, ()))

    def get_analytics(self) -> dict[str, Any]:
        """
        Summarise the training buffer.

        Returns:
            Total samples, global fill rate, and per-source samples, fill
            rate and average filled price.
        """
        with self._lock:
            by_source = {}
            for name, records in self._by_source.items():
                filled = [r for r in records if r.filled]
                prices = [r.price for r in filled if r.price]
                by_source[name] = {
                    "samples": len(records),
                    "fill_rate": round(len(filled) / len(records), 4),
                    "avg_price": round(sum(prices) / len(prices), 2) if prices else 0.0,
                }
            return {
                "total_samples": len(self._buffer),
                "avg_fill_rate": round(self._global.rate, 4),
                "by_source": by_source,
            }

    def weights(self) -> dict[str, Any]:
        """Snapshot of the current model weights."""
        with self._lock:
            return {
                "hour_of_day": list(self.hour_weights),
                "day_of_week": list(self.day_weights),
                "device": dict(self.device_weights),
                "category": dict(self.category_weights),
                "position": dict(self.position_weights),
                "floor_impact": self.floor_impact,
                "baseline_by_source": dict(self.baseline_by_source),
            }

    def clear(self) -> None:
        """Drop all training data and learned tables."""
        with self._lock:
            self._buffer.clear()
            self._by_source.clear()
            self._sources.clear()
            self._global = _Bucket()
            self._hours = [_Bucket() for _ in range(24)]
            self._days = [_Bucket() for _ in range(7)]
            self._appends = 0
            self.hour_weights = [0.0] * 24
            self.day_weights = [0.0] * 7
            self.baseline_by_source.clear()
        logger.info("Predictor training data cleared")
