"""
Learning Loop.

Turns every resolved slot into training data and rolling-metric updates:

1. One TrainingRecord per attempted source (filled = the source returned a
   bid) goes to the Fill-Rate Predictor.
2. The winning source's registry entry gets its EMA updates.
3. The position-level history folds in the slot's revenue and fill.

This is the only write path into the registry, predictor and history; the
auction code never mutates them directly.
"""

import logging
from typing import Optional

from ..demand.base import SourceAttempt
from ..demand.registry import DemandSourceStore
from ..models import Opportunity, Slot
from ..prediction.models import PredictionContext
from ..prediction.predictor import FillRatePredictor, seasonality_for
from .history import PerformanceHistory

logger = logging.getLogger(__name__)


class LearningLoop:
    """
    Feeds slot outcomes back into the shared learning state.

    Attributes:
        registry: Demand source store.
        predictor: Fill-rate predictor.
        history: Position-level performance history.
        slots_recorded: Number of slots processed.
    """

    def __init__(
        self,
        registry: DemandSourceStore,
        predictor: FillRatePredictor,
        history: Optional[PerformanceHistory] = None,
    ) -> None:
        self.registry = registry
        self.predictor = predictor
        self.history = history or PerformanceHistory()
        self.slots_recorded = 0

    @staticmethod
    def context_for(source: str, slot: Slot, opportunity: Opportunity) -> PredictionContext:
        """Prediction context for calling `source` on `slot`."""
        return PredictionContext.at(
            source,
            opportunity.timestamp,
            device=opportunity.device,
            content_category=opportunity.category,
            floor_price=slot.floor,
            position=opportunity.position,
            seasonality=seasonality_for(opportunity.timestamp),
        )

    def record_slot(self, slot: Slot, opportunity: Opportunity, attempts: list[SourceAttempt]) -> None:
        """
        Learn from a resolved slot.

        Args:
            slot: Slot with its outcome set.
            opportunity: Opportunity the pod was built for.
            attempts: Per-source results of the slot's fan-out.

        Raises:
            ValueError: If the slot has not been resolved.
        """
        outcome = slot.outcome
        if outcome is None:
            raise ValueError(f"Slot {slot.index} has no outcome to learn from")

        for attempt in attempts:
            self.predictor.record_outcome(
                self.context_for(attempt.source, slot, opportunity),
                filled=attempt.filled,
                price=attempt.bid.price if attempt.bid else None,
                latency_ms=attempt.latency_ms,
                timestamp=opportunity.timestamp,
            )

        winner = outcome.winner if outcome.filled else None
        if winner is not None:
            self.registry.record_fill(winner.source, winner.price, latency_ms=winner.latency_ms)

        self.history.record(
            opportunity.position,
            revenue=outcome.revenue,
            filled=outcome.filled,
            source=winner.source if winner else None,
        )
        self.slots_recorded += 1

        logger.debug(
            f"Learned from slot {slot.index}: {len(attempts)} attempt(s), "
            f"filled={outcome.filled}, winner={winner.source if winner else None}"
        )
