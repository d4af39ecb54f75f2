"""
Strategy Planner.

Turns an opportunity into a `PodStrategy`: how many slots, their durations,
floors, timeouts and candidate demand sources.

Flow:
1. Assemble advisor context (opportunity, user value, position history,
   enabled-source snapshot).
2. Ask the strategy advisor, bounded by a timeout.
3. Sanitise whatever comes back (slot count, durations, floors, timeouts,
   unknown sources).
4. On any advisor failure, build a deterministic fallback instead.
5. Fill in per-slot price/fill estimates from the Fill-Rate Predictor.

Advisor failures are logged and absorbed; `build_strategy` never raises
because of the advisor.

Example:
    >>> planner = StrategyPlanner(registry, predictor, advisor=HttpStrategyAdvisor(url))
    >>> strategy = await planner.build_strategy(opportunity)
    >>> strategy.slot_count
    2
"""

import asyncio
import json
import logging
import math
import re
from typing import Any, Optional

from .. import config
from ..demand.registry import DemandSourceStore
from ..learning.history import PerformanceHistory
from ..learning.loop import LearningLoop
from ..models import Opportunity, PodStrategy, Slot
from ..prediction.predictor import FillRatePredictor
from .advisor import AdvisorContext, AdvisorFailure, StrategyAdvisor

logger = logging.getLogger(__name__)

DEFAULT_USER_VALUE = 2.50
DEFAULT_COMPLETION_RATE = 0.75

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def fallback_durations(position: str, time_available: int) -> list[int]:
    """
    Slot durations for the rule-based fallback.

    Args:
        position: Ad position.
        time_available: Ad break budget in seconds.

    Returns:
        One duration per slot.
    """
    position = (position or "").lower()
    if position == "midroll":
        if time_available >= 60:
            return [30, 30]
        return [30] if time_available >= 30 else [15]
    if position == "preroll":
        if time_available >= 45:
            return [15, 30]
        return [30] if time_available >= 30 else [15]
    return [30] if time_available >= 30 else [15]


def estimate_user_value(opportunity: Opportunity) -> float:
    """Lifetime value if known, else engagement score / 10, else a default."""
    user = opportunity.user
    if user.ltv is not None:
        return float(user.ltv)
    if user.ad_engagement_score is not None:
        return user.ad_engagement_score / 10
    return DEFAULT_USER_VALUE


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_float(value: Any, default: float) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def parse_strategy_payload(payload: Any) -> dict[str, Any]:
    """
    Decode an advisor answer into a strategy dict.

    Accepts a dict, JSON text (markdown code fences are stripped) or either of
    those wrapped under a "strategy" key.

    Raises:
        AdvisorFailure: If the payload is not a strategy object.
    """
    if isinstance(payload, dict) and "strategy" in payload and "sequence" not in payload:
        payload = payload["strategy"]

    if isinstance(payload, (str, bytes)):
        text = payload.decode() if isinstance(payload, bytes) else payload
        text = _FENCE_RE.sub("", text).strip()
        try:
            payload = json.loads(text)
        except ValueError as e:
            raise AdvisorFailure(f"Unparsable advisor output: {e}") from e
        if isinstance(payload, dict) and "strategy" in payload and "sequence" not in payload:
            payload = payload["strategy"]

    if not isinstance(payload, dict):
        raise AdvisorFailure(f"Advisor returned {type(payload).__name__}, expected object")
    return payload


class StrategyPlanner:
    """
    Builds pod strategies from the advisor or a deterministic fallback.

    Attributes:
        registry: Demand source store (read only).
        predictor: Fill-rate predictor (read only).
        advisor: External strategy advisor; None means always fall back.
        history: Position history (read only).
        revenue_targets: Per-position fallback floors (CPM).
        advisor_timeout_ms: Bound on one advisor call.
        enabled: When False the advisor is never consulted.
    """

    def __init__(
        self,
        registry: DemandSourceStore,
        predictor: FillRatePredictor,
        advisor: Optional[StrategyAdvisor] = None,
        history: Optional[PerformanceHistory] = None,
        revenue_targets: Optional[dict[str, float]] = None,
        advisor_timeout_ms: int = config.ADVISOR_TIMEOUT_MS,
        enabled: bool = True,
    ) -> None:
        self.registry = registry
        self.predictor = predictor
        self.advisor = advisor
        self.history = history or PerformanceHistory()
        self.revenue_targets = dict(revenue_targets or config.REVENUE_TARGETS)
        self.advisor_timeout_ms = advisor_timeout_ms
        self.enabled = enabled

        self.advisor_calls = 0
        self.advisor_failures = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def build_strategy(self, opportunity: Opportunity) -> PodStrategy:
        """
        Plan the pod for an opportunity.

        Args:
            opportunity: Ad break to monetise.

        Returns:
            A sanitised PodStrategy (1-3 slots, one duration per slot).
        """
        strategy: Optional[PodStrategy] = None

        if self.enabled and self.advisor is not None:
            self.advisor_calls += 1
            try:
                strategy = await self._advise(opportunity)
            except asyncio.TimeoutError:
                self.advisor_failures += 1
                logger.warning(
                    f"AdvisorFailure: no answer within {self.advisor_timeout_ms}ms, using fallback strategy"
                )
            except AdvisorFailure as e:
                self.advisor_failures += 1
                logger.warning(f"AdvisorFailure: {e}, using fallback strategy")
            except Exception as e:
                self.advisor_failures += 1
                logger.warning(f"AdvisorFailure: unexpected advisor error {e!r}, using fallback strategy")

        if strategy is None:
            strategy = self.fallback_strategy(opportunity)

        self._estimate(strategy, opportunity)

        logger.info(
            f"Strategy ({strategy.origin}) for {opportunity.position}: {strategy.slot_count} slot(s) "
            f"{strategy.durations}, expected revenue ${strategy.expected_revenue:.4f}"
        )
        return strategy

    def build_context(self, opportunity: Opportunity) -> AdvisorContext:
        """Context handed to the advisor."""
        hist = self.history.get(opportunity.position)
        return AdvisorContext(
            position=opportunity.position,
            video_length=opportunity.video_length,
            time_available=opportunity.max_ad_duration,
            content_category=opportunity.category,
            device=opportunity.device,
            user_value=estimate_user_value(opportunity),
            fill_rate_history=self.history.fill_rate_pct(opportunity.position),
            historical_performance=hist.to_dict() if hist else None,
            sources=self.registry.snapshot(),
        )

    def fallback_floor(self, opportunity: Opportunity) -> float:
        """Configured revenue target for the position, raised for CTV."""
        floor = self.revenue_targets.get(opportunity.position.lower(), config.DEFAULT_REVENUE_TARGET)
        if opportunity.is_ctv:
            floor *= config.CTV_FLOOR_MULTIPLIER
        return round(_clamp(floor, config.MIN_FLOOR, config.MAX_FLOOR), 2)

    def top_sources(self) -> list[str]:
        return [s.name for s in self.registry.top_by_price(config.TOP_SOURCES_PER_SLOT)]

    def fallback_strategy(self, opportunity: Opportunity) -> PodStrategy:
        """
        Deterministic rule-based strategy.

        Same opportunity and registry state always give the same plan.
        """
        durations = fallback_durations(opportunity.position, opportunity.max_ad_duration)
        floor = self.fallback_floor(opportunity)
        sources = self.top_sources()

        slots = [
            Slot(
                index=i + 1,
                duration=duration,
                floor=floor,
                timeout_ms=config.DEFAULT_SLOT_TIMEOUT_MS,
                sources=list(sources),
            )
            for i, duration in enumerate(durations)
        ]
        return PodStrategy(
            slots=slots,
            expected_completion_rate=DEFAULT_COMPLETION_RATE,
            rationale=(
                f"Fallback rule-based strategy: {len(slots)} slot(s) for {opportunity.position} "
                f"position with {opportunity.max_ad_duration}s available time"
            ),
            origin="fallback",
        )

    def sanitize(self, raw: dict[str, Any], opportunity: Opportunity) -> PodStrategy:
        """
        Force an advisor strategy into the allowed shape.

        Args:
            raw: Decoded advisor strategy.
            opportunity: Opportunity being planned.

        Returns:
            PodStrategy with origin "advisor".

        Raises:
            AdvisorFailure: If the strategy has no usable slot count.
        """
        sequence = raw.get("sequence")
        if not isinstance(sequence, list):
            sequence = []

        slot_count = raw.get("slotCount", raw.get("slot_count", len(sequence) or None))
        try:
            slot_count = int(slot_count)
        except (TypeError, ValueError):
            raise AdvisorFailure(f"Invalid slot count {slot_count!r}")
        slot_count = int(_clamp(slot_count, config.MIN_SLOTS, config.MAX_SLOTS))

        durations = raw.get("durations")
        if not isinstance(durations, list) or len(durations) != slot_count:
            durations = [config.DEFAULT_SLOT_DURATION] * slot_count
        durations = [
            int(d) if isinstance(d, (int, float)) and d > 0 else config.DEFAULT_SLOT_DURATION
            for d in durations
        ]

        sequence = [s for s in sequence if isinstance(s, dict)][:slot_count]
        default_floor = self.fallback_floor(opportunity)
        while len(sequence) < slot_count:
            sequence.append({})

        known = {s.name for s in self.registry.enabled()}
        top = self.top_sources()

        slots = []
        for i, entry in enumerate(sequence):
            floor = _clamp(_as_float(entry.get("floor"), default_floor), config.MIN_FLOOR, config.MAX_FLOOR)
            timeout = _clamp(
                _as_float(entry.get("timeout", entry.get("timeout_ms")), config.DEFAULT_SLOT_TIMEOUT_MS),
                config.MIN_SLOT_TIMEOUT_MS,
                config.MAX_SLOT_TIMEOUT_MS,
            )

            requested = entry.get("sources")
            requested = requested if isinstance(requested, list) else []
            sources = [s for s in requested if isinstance(s, str) and s in known]
            dropped = [s for s in requested if s not in sources]
            if dropped:
                logger.warning(f"Slot {i + 1}: dropped unknown sources {dropped}")
            if not sources:
                sources = list(top)

            slots.append(
                Slot(
                    index=i + 1,
                    duration=durations[i],
                    floor=round(floor, 2),
                    timeout_ms=int(timeout),
                    sources=sources,
                )
            )

        completion = _clamp(
            _as_float(raw.get("expectedCompletionRate"), DEFAULT_COMPLETION_RATE), 0.0, 1.0
        )
        return PodStrategy(
            slots=slots,
            expected_completion_rate=completion,
            rationale=str(raw.get("reasoning", raw.get("rationale", ""))),
            origin="advisor",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _advise(self, opportunity: Opportunity) -> PodStrategy:
        context = self.build_context(opportunity)
        payload = await asyncio.wait_for(
            self.advisor.advise(context),
            timeout=self.advisor_timeout_ms / 1000.0,
        )
        return self.sanitize(parse_strategy_payload(payload), opportunity)

    def _estimate(self, strategy: PodStrategy, opportunity: Opportunity) -> None:
        """Fill slot estimates and pod expected revenue from the predictor."""
        expected_revenue = 0.0
        for slot in strategy.slots:
            miss_probability = 1.0
            best_price = 0.0
            for name in slot.sources:
                source = self.registry.get(name)
                if source is None:
                    continue
                prediction = self.predictor.predict(source, LearningLoop.context_for(name, slot, opportunity))
                miss_probability *= 1 - prediction.probability
                best_price = max(best_price, prediction.expected_price)

            slot.fill_probability = round(1 - miss_probability, 4)
            slot.expected_price = round(best_price, 2)
            expected_revenue += slot.expected_price * slot.fill_probability / 1000

        strategy.expected_revenue = round(expected_revenue, 6)
