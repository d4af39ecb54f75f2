"""
Example usage of the FillRatePredictor for demand source call decisions.

This script demonstrates how to:
1. Build a registry from the default source table
2. Predict fill probability, price and latency per source
3. Feed observed outcomes back into the predictor
4. See how recommendations shift as evidence accumulates
5. Print predictor analytics
"""

import random
from datetime import datetime, timezone

from adpod.demand import DemandSourceRegistry
from adpod.prediction import FillRatePredictor, PredictionContext


def print_predictions(registry: DemandSourceRegistry, predictor: FillRatePredictor, when: datetime) -> None:
    for source in registry.enabled():
        ctx = PredictionContext.at(source.name, when, device="ctv", content_category="sports", floor_price=9.0)
        prediction = predictor.predict(source, ctx)
        top = prediction.factors[0]
        print(
            f"  {source.name:<15} p={prediction.probability:.2f} "
            f"price=${prediction.expected_price:>6.2f} latency={prediction.expected_latency_ms:>5.0f}ms "
            f"conf={prediction.confidence:.2f} -> {prediction.recommendation} "
            f"(top factor: {top.name} {top.impact:+.3f})"
        )


def main():
    """Run FillRatePredictor example."""
    print("=" * 70)
    print("Fill-Rate Predictor Example")
    print("=" * 70)
    print()

    registry = DemandSourceRegistry.from_config()
    predictor = FillRatePredictor(capacity=2000)
    when = datetime(2024, 11, 15, 20, 0, tzinfo=timezone.utc)

    # Example 1: Cold start, predictions come from registry metrics
    print("Example 1: Cold-start predictions (CTV, sports, $9 floor, 8pm)")
    print("-" * 70)
    print_predictions(registry, predictor, when)
    print()

    # Example 2: One source stops filling
    print("Example 2: Recording 200 outcomes where Magnite rarely fills")
    print("-" * 70)
    rng = random.Random(7)
    for _ in range(200):
        for source in registry.enabled():
            fill_chance = 0.05 if source.name == "Magnite" else source.fill_rate
            filled = rng.random() < fill_chance
            ctx = PredictionContext.at(source.name, when, device="ctv", content_category="sports", floor_price=9.0)
            predictor.record_outcome(
                ctx,
                filled=filled,
                price=round(source.avg_price * rng.uniform(0.8, 1.2), 2) if filled else None,
                latency_ms=source.avg_latency_ms * rng.uniform(0.6, 1.4),
            )
    print_predictions(registry, predictor, when)
    print()

    # Example 3: Analytics
    print("Example 3: Predictor analytics")
    print("-" * 70)
    analytics = predictor.get_analytics()
    print(f"  Total samples: {analytics['total_samples']}")
    print(f"  Global fill rate: {analytics['avg_fill_rate']:.1%}")
    for name, stats in analytics["by_source"].items():
        print(f"  {name:<15} samples={stats['samples']} fill={stats['fill_rate']:.1%} avg=${stats['avg_price']:.2f}")
    print()


if __name__ == "__main__":
    main()
