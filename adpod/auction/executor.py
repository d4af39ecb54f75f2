"""
Pod Executor.

Runs a `PodStrategy` slot by slot:

    Pending -> Dispatched -> Filled | Failed(no bids) | Failed(below floor)

Slots run strictly in order because each slot's eligible bids depend on the
exclusions accumulated from earlier winners. Within a slot the candidate
sources are called in parallel through the `BidDispatcher`.

Per source, the Fill-Rate Predictor decides how the call is made:
- call: effective timeout = min(source timeout, slot timeout)
- reduce_timeout: effective timeout * 0.75
- skip: not called, unless every candidate is skip

A failure in one slot never aborts the pod; later slots still execute. Every
resolved slot is handed to the Learning Loop.
"""

import logging
from typing import Optional

from .. import config
from ..demand.base import BidRequest, SourceAttempt
from ..demand.registry import DemandSourceStore
from ..learning.loop import LearningLoop
from ..models import FailureReason, Opportunity, PodResult, PodState, PodStrategy, Slot, SlotOutcome, SlotState
from ..prediction.models import Recommendation
from ..prediction.predictor import FillRatePredictor
from .creative import CreativeFetcher
from .dispatcher import BidDispatcher, SourceCall
from .engine import AuctionEngine, CompetitiveSeparation, SlotFailure

logger = logging.getLogger(__name__)


class PodExecutor:
    """
    Executes pod strategies against live (or simulated) demand.

    Attributes:
        dispatcher: Parallel bid fan-out.
        engine: Per-slot auction.
        learning: Learning loop fed after every slot.
        predictor: Consulted for per-source call recommendations.
        registry: Demand source store (read only).
        creative_fetcher: Resolves winner creatives when set.
        honor_skip: Whether skip recommendations are applied.
    """

    def __init__(
        self,
        dispatcher: BidDispatcher,
        engine: AuctionEngine,
        learning: LearningLoop,
        predictor: FillRatePredictor,
        registry: DemandSourceStore,
        creative_fetcher: Optional[CreativeFetcher] = None,
        honor_skip: bool = True,
        reduced_timeout_factor: float = config.REDUCED_TIMEOUT_FACTOR,
    ) -> None:
        self.dispatcher = dispatcher
        self.engine = engine
        self.learning = learning
        self.predictor = predictor
        self.registry = registry
        self.creative_fetcher = creative_fetcher
        self.honor_skip = honor_skip
        self.reduced_timeout_factor = reduced_timeout_factor

    async def execute(self, strategy: PodStrategy, opportunity: Opportunity) -> PodResult:
        """
        Execute every slot of a strategy.

        Args:
            strategy: Planned pod.
            opportunity: Opportunity the pod was planned for.

        Returns:
            PodResult summarising fills, revenue and failures.
        """
        strategy.state = PodState.EXECUTING
        separation = CompetitiveSeparation()

        logger.info(
            f"Executing {strategy.origin} pod for {opportunity.position}: {strategy.slot_count} slot(s), "
            f"soft latency ceiling {strategy.total_timeout_ms}ms"
        )

        for slot in strategy.slots:
            attempts = await self._run_slot(slot, opportunity, separation)
            try:
                self.learning.record_slot(slot, opportunity, attempts)
            except Exception as e:
                logger.error(f"Learning update failed for slot {slot.index}: {e}")

        strategy.state = PodState.COMPLETED
        result = PodResult.from_strategy(strategy, position=opportunity.position)

        logger.info(
            f"Pod complete: {result.slots_filled}/{result.slots_attempted} filled, "
            f"revenue=${result.total_revenue:.4f}"
        )
        return result

    def plan_calls(self, slot: Slot, opportunity: Opportunity) -> list[SourceCall]:
        """
        Decide which sources to call for a slot and under which timeout.

        Disabled and unknown sources are never called. Effective timeouts
        never exceed the slot's timeout.
        """
        candidates: list[tuple[SourceCall, Recommendation]] = []
        for name in slot.sources:
            source = self.registry.get(name)
            if source is None or not source.enabled:
                logger.debug(f"Slot {slot.index}: {name} unknown or disabled, not called")
                continue

            timeout_ms = min(source.timeout_ms, slot.timeout_ms)
            prediction = self.predictor.predict(
                source, LearningLoop.context_for(name, slot, opportunity)
            )
            if prediction.recommendation == Recommendation.REDUCE_TIMEOUT:
                timeout_ms = int(timeout_ms * self.reduced_timeout_factor)
            candidates.append((SourceCall(source=source, timeout_ms=max(1, timeout_ms)), prediction.recommendation))

        if not self.honor_skip:
            return [call for call, _ in candidates]

        calls = [call for call, rec in candidates if rec != Recommendation.SKIP]
        skipped = len(candidates) - len(calls)
        if not calls:
            # every candidate is skip: call them all
            return [call for call, _ in candidates]
        if skipped:
            logger.debug(f"Slot {slot.index}: skipped {skipped} low-fill source(s)")
        return calls

    async def _run_slot(
        self,
        slot: Slot,
        opportunity: Opportunity,
        separation: CompetitiveSeparation,
    ) -> list[SourceAttempt]:
        attempts: list[SourceAttempt] = []
        attempted: list[str] = []

        try:
            slot.mark_dispatched()
            calls = self.plan_calls(slot, opportunity)
            attempted = [c.source.name for c in calls]

            request = BidRequest(
                floor=slot.floor,
                duration=slot.duration,
                position=opportunity.position,
                category=opportunity.category,
                device=opportunity.device,
                excluded_advertisers=separation.excluded_advertisers,
                excluded_categories=separation.excluded_categories,
            )
            attempts = await self.dispatcher.dispatch(request, calls)
            bids = [a.bid for a in attempts if a.bid is not None]

            try:
                auction = self.engine.evaluate_bids(bids, slot, separation)
            except SlotFailure as e:
                logger.info(f"Slot {slot.index} failed: {e.reason}")
                outcome = SlotOutcome(
                    state=SlotState.FAILED,
                    failure_reason=e.reason,
                    detail=str(e),
                    attempted_sources=attempted,
                    bid_count=len(bids),
                )
            else:
                creative_fallback = False
                if self.creative_fetcher is not None:
                    creative = await self.creative_fetcher.resolve(auction.winner, slot.duration)
                    creative_fallback = creative.is_fallback
                outcome = SlotOutcome(
                    state=SlotState.FILLED,
                    winner=auction.winner,
                    clearing_price=auction.clearing_price,
                    attempted_sources=attempted,
                    bid_count=len(bids),
                    creative_fallback=creative_fallback,
                )
        except Exception as e:
            logger.error(f"Error executing slot {slot.index}: {e}")
            outcome = SlotOutcome(
                state=SlotState.FAILED,
                failure_reason=FailureReason.ERROR,
                detail=str(e),
                attempted_sources=attempted,
            )

        slot.resolve(outcome)
        return attempts
