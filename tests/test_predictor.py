"""
Tests for the Fill-Rate Predictor.

Tests cover:
- Probability and confidence bounds (including extreme inputs)
- Base probability blending with recent outcomes
- Price and latency multipliers
- Recommendations
- Bounded training buffer and learning stability
- Weight re-derivation cadence
- Analytics
"""

import math
import random
from datetime import datetime, timezone

import pytest

from adpod.demand.base import DemandSource
from adpod.prediction.models import PredictionContext, Recommendation
from adpod.prediction.predictor import FillRatePredictor, seasonality_for


def make_source(name: str = "alpha", price: float = 10.0, fill_rate: float = 0.8, latency: float = 500.0):
    return DemandSource(
        name=name,
        endpoint="http://demand.test",
        avg_price=price,
        fill_rate=fill_rate,
        avg_latency_ms=latency,
    )


def make_context(source: str = "alpha", **kwargs) -> PredictionContext:
    defaults = {
        "hour": 10,
        "day_of_week": 2,
        "device": "other",
        "content_category": "general",
        "floor_price": 0.0,
        "position": "other",
        "seasonality": 1.0,
    }
    defaults.update(kwargs)
    return PredictionContext(source=source, **defaults)


@pytest.fixture
def predictor():
    """Predictor with a small buffer."""
    return FillRatePredictor(capacity=500)


class TestBounds:
    """Tests for output bounds."""

    @pytest.mark.parametrize(
        "floor",
        [0.0, 8.0, 1000.0, -50.0, float("inf"), float("nan")],
    )
    def test_extreme_floors(self, predictor, floor):
        """Test probability and confidence stay in [0, 1]."""
        prediction = predictor.predict(make_source(), make_context(floor_price=floor))
        assert 0.0 <= prediction.probability <= 1.0
        assert 0.0 <= prediction.confidence <= 1.0

    def test_floor_1000(self, predictor):
        """Test a $1000 floor drives probability down but not below 0."""
        prediction = predictor.predict(make_source(fill_rate=0.2), make_context(floor_price=1000.0))
        assert prediction.probability == 0.0
        assert prediction.recommendation == Recommendation.SKIP

    def test_probability_capped_at_one(self, predictor):
        """Test positive adjustments cannot exceed 1."""
        prediction = predictor.predict(
            make_source(fill_rate=1.0),
            make_context(device="ctv", content_category="business", position="midroll", seasonality=1.2),
        )
        assert prediction.probability == 1.0

    def test_out_of_range_hour_and_day(self, predictor):
        """Test hour/day outside their ranges are wrapped."""
        prediction = predictor.predict(make_source(), make_context(hour=49, day_of_week=-1))
        assert 0.0 <= prediction.probability <= 1.0


class TestBaseProbability:
    """Tests for baseline and recent-outcome blending."""

    def test_no_records_uses_fill_rate(self, predictor):
        """Test the registry fill rate is the base without history."""
        prediction = predictor.predict(make_source(fill_rate=0.6), make_context())
        assert prediction.probability == pytest.approx(0.6)
        assert prediction.confidence == 0.0

    def test_blends_recent_outcomes(self, predictor):
        """Test base = 0.6 * baseline + 0.4 * recent fill rate."""
        for i in range(10):
            predictor.record_outcome(make_context(), filled=i < 5)
        prediction = predictor.predict(make_source(fill_rate=0.8), make_context())
        # no learned baseline below 20 samples; single hour/day bucket matches the global rate
        assert prediction.probability == pytest.approx(0.6 * 0.8 + 0.4 * 0.5)

    def test_recent_window_is_per_source(self, predictor):
        """Test other sources' records do not affect a source."""
        for _ in range(30):
            predictor.record_outcome(make_context(source="other"), filled=False)
        prediction = predictor.predict(make_source(name="alpha", fill_rate=0.7), make_context())
        assert prediction.probability == pytest.approx(0.7)

    def test_confidence_grows_with_samples(self, predictor):
        """Test confidence = min(1, samples / 100)."""
        for _ in range(40):
            predictor.record_outcome(make_context(), filled=True)
        assert predictor.predict(make_source(), make_context()).confidence == pytest.approx(0.4)
        for _ in range(100):
            predictor.record_outcome(make_context(), filled=True)
        assert predictor.predict(make_source(), make_context()).confidence == 1.0


class TestAdjustments:
    """Tests for additive adjustments."""

    def test_device_weight(self, predictor):
        """Test CTV adds 0.08."""
        base = predictor.predict(make_source(fill_rate=0.5), make_context()).probability
        ctv = predictor.predict(make_source(fill_rate=0.5), make_context(device="ctv")).probability
        assert ctv - base == pytest.approx(0.08)

    def test_position_weight(self, predictor):
        """Test postroll subtracts 0.05."""
        base = predictor.predict(make_source(fill_rate=0.5), make_context()).probability
        post = predictor.predict(make_source(fill_rate=0.5), make_context(position="postroll")).probability
        assert post - base == pytest.approx(-0.05)

    def test_floor_penalty(self, predictor):
        """Test floor penalty of -0.02 per $10."""
        prediction = predictor.predict(make_source(fill_rate=0.5), make_context(floor_price=20.0))
        assert prediction.probability == pytest.approx(0.5 - 0.04)

    def test_seasonality(self, predictor):
        """Test Q4 seasonality adds (1.2 - 1) * 0.1."""
        prediction = predictor.predict(make_source(fill_rate=0.5), make_context(seasonality=1.2))
        assert prediction.probability == pytest.approx(0.52)

    def test_factors_sorted_by_impact(self, predictor):
        """Test factors are ordered by absolute impact."""
        prediction = predictor.predict(make_source(), make_context(device="ctv", position="postroll"))
        impacts = [abs(f.impact) for f in prediction.factors]
        assert impacts == sorted(impacts, reverse=True)

    def test_seasonality_for_quarters(self):
        """Test quarter multipliers."""
        assert seasonality_for(datetime(2024, 11, 1, tzinfo=timezone.utc)) == 1.2
        assert seasonality_for(datetime(2024, 2, 1, tzinfo=timezone.utc)) == 0.9
        assert seasonality_for(datetime(2024, 7, 1, tzinfo=timezone.utc)) == 1.0


class TestPriceAndLatency:
    """Tests for expected price and latency."""

    def test_midroll_ctv_price(self, predictor):
        """Test midroll and CTV multipliers stack."""
        prediction = predictor.predict(
            make_source(price=10.0, fill_rate=0.9), make_context(position="midroll", device="ctv")
        )
        assert prediction.expected_price == pytest.approx(round(10.0 * 1.15 * 1.25, 2))

    def test_scarcity_bump(self, predictor):
        """Test price bump when probability < 0.5."""
        prediction = predictor.predict(make_source(price=10.0, fill_rate=0.3), make_context())
        assert prediction.expected_price == pytest.approx(11.0)

    def test_price_blends_observed(self, predictor):
        """Test observed prices are blended 50/50."""
        for _ in range(5):
            predictor.record_outcome(make_context(), filled=True, price=20.0)
        prediction = predictor.predict(make_source(price=10.0, fill_rate=0.9), make_context())
        assert prediction.expected_price == pytest.approx(15.0)

    def test_peak_hour_latency(self, predictor):
        """Test latency is raised 10% during peak hours."""
        off_peak = predictor.predict(make_source(latency=1000.0), make_context(hour=10))
        peak = predictor.predict(make_source(latency=1000.0), make_context(hour=20))
        assert off_peak.expected_latency_ms == 1000.0
        assert peak.expected_latency_ms == 1100.0


class TestRecommendation:
    """Tests for call/skip/reduce_timeout."""

    def test_skip_low_probability(self, predictor):
        """Test p < 0.30 recommends skip."""
        prediction = predictor.predict(make_source(fill_rate=0.1), make_context())
        assert prediction.recommendation == Recommendation.SKIP

    def test_reduce_timeout_slow_and_uncertain(self, predictor):
        """Test slow sources with p < 0.60 get reduce_timeout."""
        prediction = predictor.predict(make_source(fill_rate=0.5, latency=1800.0), make_context())
        assert prediction.recommendation == Recommendation.REDUCE_TIMEOUT

    def test_call_otherwise(self, predictor):
        """Test healthy sources are called."""
        prediction = predictor.predict(make_source(fill_rate=0.9, latency=1800.0), make_context())
        assert prediction.recommendation == Recommendation.CALL


class TestLearning:
    """Tests for the bounded buffer and weight updates."""

    def test_ten_thousand_random_outcomes(self):
        """Test 10,000 random outcomes never raise and respect the cap."""
        predictor = FillRatePredictor(capacity=1000)
        rng = random.Random(3)
        sources = ["a", "b", "c", "d"]
        for _ in range(10_000):
            ctx = PredictionContext(
                source=rng.choice(sources),
                hour=rng.randint(0, 23),
                day_of_week=rng.randint(0, 6),
                device=rng.choice(["desktop", "mobile", "ctv"]),
                floor_price=rng.uniform(0, 30),
            )
            filled = rng.random() < 0.6
            predictor.record_outcome(
                ctx,
                filled=filled,
                price=rng.uniform(1, 20) if filled else None,
                latency_ms=rng.uniform(100, 2500),
            )
            assert len(predictor) <= 1000

        assert len(predictor) == 1000
        assert sum(predictor.sample_count(s) for s in sources) == 1000
        for source in sources:
            p = predictor.predict(make_source(name=source), make_context(source=source))
            assert 0.0 <= p.probability <= 1.0
            assert not math.isnan(p.probability)

    def test_default_capacity(self):
        """Test the default buffer holds 10,000 records."""
        assert FillRatePredictor().capacity == 10_000

    def test_invalid_capacity(self):
        """Test capacity must be positive."""
        with pytest.raises(ValueError):
            FillRatePredictor(capacity=0)

    def test_hour_weights_update_every_tenth(self, predictor):
        """Test hour weights are re-derived on the 10th append."""
        for i in range(9):
            predictor.record_outcome(make_context(hour=5), filled=True)
        assert predictor.hour_weights[5] == 0.0

        # 10th append: hour 3 gets 1 sample, hour 5 has 9 -> still < 10
        predictor.record_outcome(make_context(hour=3), filled=False)
        assert predictor.hour_weights[5] == 0.0

        for _ in range(10):
            predictor.record_outcome(make_context(hour=5), filled=True)
        # 20 appends: 19 fills at hour 5, global rate 19/20
        assert predictor.hour_weights[5] == pytest.approx((1.0 - 19 / 20) * predictor.learning_rate)

    def test_source_baseline_after_twenty(self, predictor):
        """Test the learned baseline appears once a source has 20 samples."""
        for i in range(20):
            predictor.record_outcome(make_context(), filled=i % 4 == 0)
        assert predictor.baseline_by_source["alpha"] == pytest.approx(0.25)

    def test_source_baseline_follows_eviction(self):
        """Test the learned baseline reflects only buffered records."""
        predictor = FillRatePredictor(capacity=40)
        for _ in range(40):
            predictor.record_outcome(make_context(), filled=True)
        assert predictor.baseline_by_source["alpha"] == 1.0

        for _ in range(20):
            predictor.record_outcome(make_context(), filled=False)
        # 20 fills evicted, 20 fills and 20 misses remain
        assert predictor.sample_count("alpha") == 40
        assert predictor.baseline_by_source["alpha"] == pytest.approx(0.5)
        assert predictor.get_analytics()["by_source"]["alpha"]["fill_rate"] == 0.5

    def test_eviction_keeps_aggregates_consistent(self):
        """Test evicted records leave the per-source counts."""
        predictor = FillRatePredictor(capacity=10)
        for _ in range(10):
            predictor.record_outcome(make_context(source="old"), filled=True)
        for _ in range(10):
            predictor.record_outcome(make_context(source="new"), filled=False)
        assert predictor.sample_count("old") == 0
        assert predictor.sample_count("new") == 10
        assert predictor.get_analytics()["avg_fill_rate"] == 0.0

    def test_clear(self, predictor):
        """Test clear drops records and learned tables."""
        for _ in range(30):
            predictor.record_outcome(make_context(), filled=True)
        predictor.clear()
        assert len(predictor) == 0
        assert predictor.baseline_by_source == {}


class TestAnalytics:
    """Tests for analytics output."""

    def test_by_source(self, predictor):
        """Test per-source samples, fill rate and price."""
        predictor.record_outcome(make_context(), filled=True, price=10.0)
        predictor.record_outcome(make_context(), filled=True, price=14.0)
        predictor.record_outcome(make_context(), filled=False)
        analytics = predictor.get_analytics()
        assert analytics["total_samples"] == 3
        stats = analytics["by_source"]["alpha"]
        assert stats["samples"] == 3
        assert stats["fill_rate"] == pytest.approx(0.6667, abs=1e-4)
        assert stats["avg_price"] == 12.0

    def test_weights_snapshot(self, predictor):
        """Test weights reflect learned tables and are detached copies."""
        for i in range(20):
            predictor.record_outcome(make_context(), filled=i % 2 == 0)
        weights = predictor.weights()

        assert len(weights["hour_of_day"]) == 24
        assert len(weights["day_of_week"]) == 7
        assert weights["baseline_by_source"] == {"alpha": pytest.approx(0.5)}
        assert weights["device"]["ctv"] == 0.08
        assert weights["floor_impact"] == -0.02

        weights["hour_of_day"][10] = 5.0
        weights["baseline_by_source"]["alpha"] = 1.0
        assert predictor.hour_weights[10] != 5.0
        assert predictor.baseline_by_source["alpha"] == pytest.approx(0.5)
