"""
Ad Pod Optimizer.

Top-level orchestrator that wires every component into one engine and runs
opportunities end to end.

Flow per opportunity:
1. Check that at least one demand source is enabled
2. Plan the pod (advisor or deterministic fallback)
3. Execute slots sequentially, bids per slot in parallel
4. Learn from every slot (registry, predictor, position history)
5. Emit the PodResult to the outcome sink

Runs against simulated demand (paper mode, the default) or live HTTP demand
sources.

Example:
    >>> optimizer = AdPodOptimizer(paper_mode=True)
    >>> result = await optimizer.run(Opportunity(position="midroll", max_ad_duration=60))
    >>> result.slots_filled
    2
    >>> await optimizer.close()
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from . import config
from .auction.creative import CreativeFetcher
from .auction.dispatcher import BidDispatcher
from .auction.engine import AuctionEngine
from .auction.executor import PodExecutor
from .demand.base import BidClient
from .demand.http import HttpBidClient
from .demand.paper import PaperBidClient
from .demand.registry import DemandSourceRegistry, DemandSourceStore
from .learning.history import PerformanceHistory
from .learning.loop import LearningLoop
from .learning.sink import LoggingOutcomeSink, OutcomeSink
from .models import Opportunity, PodResult
from .planner.advisor import HttpStrategyAdvisor, StrategyAdvisor
from .planner.planner import StrategyPlanner
from .prediction.predictor import FillRatePredictor

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class NoDemandSourcesError(Exception):
    """Raised when no enabled demand source exists; the opportunity cannot be sold."""

    pass


@dataclass
class EngineState:
    """
    Running totals for the optimizer.

    Attributes:
        pods_run: Pods executed.
        slots_attempted: Slots attempted across all pods.
        slots_filled: Slots filled across all pods.
        total_revenue: Revenue across all pods.
        advisor_strategies: Pods planned from advisor output.
        fallback_strategies: Pods planned by the fallback.
        last_error: Last systemic error.
        start_time: When the optimizer was created.
    """

    pods_run: int = 0
    slots_attempted: int = 0
    slots_filled: int = 0
    total_revenue: float = 0.0
    advisor_strategies: int = 0
    fallback_strategies: int = 0
    last_error: Optional[str] = None
    start_time: datetime = field(default_factory=_utc_now)

    @property
    def fill_rate(self) -> float:
        return self.slots_filled / self.slots_attempted if self.slots_attempted else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert state to dictionary."""
        return {
            "pods_run": self.pods_run,
            "slots_attempted": self.slots_attempted,
            "slots_filled": self.slots_filled,
            "fill_rate": round(self.fill_rate, 4),
            "total_revenue": round(self.total_revenue, 6),
            "advisor_strategies": self.advisor_strategies,
            "fallback_strategies": self.fallback_strategies,
            "last_error": self.last_error,
            "start_time": self.start_time.isoformat(),
            "uptime_seconds": int((_utc_now() - self.start_time).total_seconds()),
        }


class AdPodOptimizer:
    """
    Main orchestrator for ad pod planning, auctions and learning.

    Attributes:
        paper_mode: If True, demand is simulated (default: True).
        registry: Shared demand source store.
        predictor: Shared fill-rate predictor.
        history: Position-level history.
        planner: Strategy planner.
        executor: Pod executor.
        sink: Receiver of per-pod results.
        state: Running totals.
    """

    def __init__(
        self,
        paper_mode: bool = True,
        registry: Optional[DemandSourceStore] = None,
        predictor: Optional[FillRatePredictor] = None,
        client: Optional[BidClient] = None,
        advisor: Optional[StrategyAdvisor] = None,
        sink: Optional[OutcomeSink] = None,
        creative_fetcher: Optional[CreativeFetcher] = None,
        planner_enabled: bool = True,
        seed: Optional[int] = None,
    ) -> None:
        """
        Initialize the optimizer.

        Args:
            paper_mode: Simulate demand when no client is given.
            registry: Demand source store (default: built from config).
            predictor: Fill-rate predictor (default: new, empty).
            client: Demand transport (default: paper or HTTP by mode).
            advisor: Strategy advisor (default: HTTP advisor when an
                endpoint is configured, else none).
            sink: Outcome sink (default: logging).
            creative_fetcher: Resolve winner creatives when given.
            planner_enabled: Consult the advisor at all.
            seed: Random seed for the paper client.
        """
        self.paper_mode = paper_mode
        self.registry = registry or DemandSourceRegistry.from_config()
        self.predictor = predictor or FillRatePredictor()
        self.history = PerformanceHistory()

        if client is None:
            client = PaperBidClient(seed=seed) if paper_mode else HttpBidClient()
        self.client = client

        if advisor is None and config.ADVISOR_ENDPOINT:
            advisor = HttpStrategyAdvisor(config.ADVISOR_ENDPOINT)
        self.advisor = advisor

        self.learning = LearningLoop(self.registry, self.predictor, self.history)
        self.planner = StrategyPlanner(
            self.registry,
            self.predictor,
            advisor=advisor,
            history=self.history,
            enabled=planner_enabled,
        )
        self.dispatcher = BidDispatcher(client)
        self.engine = AuctionEngine(self.registry)
        self.executor = PodExecutor(
            self.dispatcher,
            self.engine,
            self.learning,
            self.predictor,
            self.registry,
            creative_fetcher=creative_fetcher,
        )
        self.sink = sink or LoggingOutcomeSink()
        self.state = EngineState()

        mode_str = "PAPER" if paper_mode else "LIVE"
        logger.info(
            f"AdPodOptimizer initialized in {mode_str} mode: "
            f"{len(self.registry.enabled())} enabled source(s), advisor={'on' if advisor else 'off'}"
        )

    async def run(self, opportunity: Opportunity) -> PodResult:
        """
        Plan, execute and learn from one opportunity.

        Args:
            opportunity: Ad break to monetise.

        Returns:
            PodResult for the executed pod.

        Raises:
            NoDemandSourcesError: If no demand source is enabled.
        """
        if not self.registry.enabled():
            self.state.last_error = "no enabled demand sources"
            logger.critical(f"No enabled demand sources: cannot sell {opportunity.position} opportunity")
            raise NoDemandSourcesError("No enabled demand sources available")

        strategy = await self.planner.build_strategy(opportunity)
        if strategy.origin == "advisor":
            self.state.advisor_strategies += 1
        else:
            self.state.fallback_strategies += 1

        result = await self.executor.execute(strategy, opportunity)

        self.state.pods_run += 1
        self.state.slots_attempted += result.slots_attempted
        self.state.slots_filled += result.slots_filled
        self.state.total_revenue += result.total_revenue

        self.sink.emit(result)
        return result

    def get_status(self) -> dict[str, Any]:
        """
        Get engine status.

        Returns:
            Dictionary with running totals, source snapshot, predictor
            analytics and weights, and position analytics.
        """
        return {
            "engine_state": self.state.to_dict(),
            "sources": [s.to_dict() for s in self.registry.all()],
            "predictor": self.predictor.get_analytics(),
            "weights": self.predictor.weights(),
            "positions": self.history.to_dict(),
            "dispatch": {
                "calls": self.dispatcher.calls_made,
                "timeouts": self.dispatcher.timeouts,
                "errors": self.dispatcher.errors,
            },
        }

    async def close(self) -> None:
        """Release transports."""
        await self.client.close()
        if self.advisor is not None:
            await self.advisor.close()
        if self.executor.creative_fetcher is not None:
            self.executor.creative_fetcher.close()
