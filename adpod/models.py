"""
Data models for the ad pod engine.

Defines the opportunity handed in by the caller, the pod strategy and its
slots (with their state machines), and the per-pod result emitted to the
outcome sink.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .demand.base import Bid


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def is_ctv_device(device: str) -> bool:
    """Check if a device string denotes connected TV inventory."""
    device = (device or "").lower()
    return device == "ctv" or "tv" in device


class SlotState(Enum):
    """Slot lifecycle: PENDING -> DISPATCHED -> FILLED | FAILED."""

    PENDING = "pending"
    DISPATCHED = "dispatched"
    FILLED = "filled"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class PodState(Enum):
    """Pod lifecycle: BUILDING -> EXECUTING -> COMPLETED."""

    BUILDING = "building"
    EXECUTING = "executing"
    COMPLETED = "completed"

    def __str__(self) -> str:
        return self.value


class FailureReason(Enum):
    """Why a slot was not filled."""

    NO_BIDS = "no bids received"
    BELOW_FLOOR = "all bids below floor"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


@dataclass
class UserContext:
    """Viewer context supplied with an opportunity."""

    id: str = "anonymous"
    segments: list[str] = field(default_factory=list)
    ltv: Optional[float] = None
    ad_engagement_score: Optional[float] = None


@dataclass
class Opportunity:
    """
    An ad break to monetise.

    Attributes:
        position: preroll, midroll or postroll.
        video_length: Content length in seconds.
        max_ad_duration: Time budget for the break in seconds.
        category: Content category.
        device: Device type (desktop, mobile, ctv, ...).
        user: Viewer context.
        timestamp: When the opportunity occurs (defaults to now).
    """

    position: str
    max_ad_duration: int
    category: str = "general"
    device: str = "desktop"
    video_length: int = 300
    user: UserContext = field(default_factory=UserContext)
    timestamp: datetime = field(default_factory=_utc_now)

    @property
    def is_ctv(self) -> bool:
        return is_ctv_device(self.device)


@dataclass
class SlotOutcome:
    """Resolved result of a slot."""

    state: SlotState
    winner: Optional[Bid] = None
    clearing_price: float = 0.0
    failure_reason: Optional[FailureReason] = None
    detail: str = ""
    attempted_sources: list[str] = field(default_factory=list)
    bid_count: int = 0
    creative_fallback: bool = False

    @property
    def filled(self) -> bool:
        return self.state == SlotState.FILLED

    @property
    def revenue(self) -> float:
        """Revenue of a single impression at the clearing CPM."""
        return self.clearing_price / 1000 if self.filled else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": str(self.state),
            "winner": self.winner.to_dict() if self.winner else None,
            "clearing_price": self.clearing_price,
            "failure_reason": str(self.failure_reason) if self.failure_reason else None,
            "detail": self.detail,
            "attempted_sources": list(self.attempted_sources),
            "bid_count": self.bid_count,
            "creative_fallback": self.creative_fallback,
        }


@dataclass
class Slot:
    """
    One ad slot in a pod.

    Attributes:
        index: 1-based position in the pod.
        duration: Creative duration in seconds.
        floor: Minimum acceptable CPM.
        timeout_ms: Time budget for the slot's bid fan-out.
        sources: Candidate demand source names.
        expected_price: Planner estimate of the clearing CPM.
        fill_probability: Planner estimate of fill probability.
        state: Current lifecycle state.
        outcome: Resolved outcome (set exactly once).
    """

    index: int
    duration: int
    floor: float
    timeout_ms: int
    sources: list[str] = field(default_factory=list)
    expected_price: float = 0.0
    fill_probability: float = 0.0
    state: SlotState = SlotState.PENDING
    outcome: Optional[SlotOutcome] = None

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not None

    def mark_dispatched(self) -> None:
        if self.state != SlotState.PENDING:
            raise RuntimeError(f"Slot {self.index} cannot be dispatched from state {self.state}")
        self.state = SlotState.DISPATCHED

    def resolve(self, outcome: SlotOutcome) -> None:
        """
        Record the slot's outcome.

        Raises:
            RuntimeError: If the slot has already been resolved.
        """
        if self.outcome is not None:
            raise RuntimeError(f"Slot {self.index} already resolved as {self.outcome.state}")
        if outcome.state not in (SlotState.FILLED, SlotState.FAILED):
            raise ValueError(f"Slot outcome must be terminal, got {outcome.state}")
        self.outcome = outcome
        self.state = outcome.state

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot": self.index,
            "duration": self.duration,
            "floor": self.floor,
            "timeout": self.timeout_ms,
            "sources": list(self.sources),
            "expected_price": self.expected_price,
            "fill_probability": self.fill_probability,
            "state": str(self.state),
            "outcome": self.outcome.to_dict() if self.outcome else None,
        }


@dataclass
class PodStrategy:
    """
    Ordered slot plan for one opportunity.

    Attributes:
        slots: Slots in play order.
        expected_revenue: Estimated revenue (sum of price * p / 1000).
        expected_completion_rate: Estimated completion rate.
        rationale: Why this plan was chosen.
        origin: "advisor" or "fallback".
        state: Pod lifecycle state.
    """

    slots: list[Slot]
    expected_revenue: float = 0.0
    expected_completion_rate: float = 0.75
    rationale: str = ""
    origin: str = "fallback"
    state: PodState = PodState.BUILDING

    @property
    def slot_count(self) -> int:
        return len(self.slots)

    @property
    def durations(self) -> list[int]:
        return [s.duration for s in self.slots]

    @property
    def total_timeout_ms(self) -> int:
        """Soft latency ceiling for the pod."""
        return sum(s.timeout_ms for s in self.slots)

    def to_dict(self) -> dict[str, Any]:
        return {
            "slotCount": self.slot_count,
            "durations": self.durations,
            "sequence": [s.to_dict() for s in self.slots],
            "expectedRevenue": self.expected_revenue,
            "expectedCompletionRate": self.expected_completion_rate,
            "reasoning": self.rationale,
            "origin": self.origin,
            "state": str(self.state),
        }


@dataclass
class PodResult:
    """
    Outcome of one executed pod (the record emitted to the outcome sink).
    """

    slots_attempted: int
    slots_filled: int = 0
    total_revenue: float = 0.0
    total_duration: int = 0
    per_slot_winner: dict[int, Optional[str]] = field(default_factory=dict)
    failure_reasons: dict[int, str] = field(default_factory=dict)
    flagged_creatives: list[int] = field(default_factory=list)
    position: str = ""
    strategy_origin: str = ""
    created_at: datetime = field(default_factory=_utc_now)

    @property
    def completion_rate(self) -> float:
        if self.slots_attempted == 0:
            return 0.0
        return self.slots_filled / self.slots_attempted

    @classmethod
    def from_strategy(cls, strategy: PodStrategy, position: str = "") -> "PodResult":
        """Summarise an executed strategy."""
        result = cls(slots_attempted=strategy.slot_count, position=position, strategy_origin=strategy.origin)
        for slot in strategy.slots:
            outcome = slot.outcome
            if outcome is not None and outcome.filled:
                result.slots_filled += 1
                result.total_revenue += outcome.revenue
                result.total_duration += slot.duration
                result.per_slot_winner[slot.index] = outcome.winner.source if outcome.winner else None
                if outcome.creative_fallback:
                    result.flagged_creatives.append(slot.index)
            else:
                result.per_slot_winner[slot.index] = None
                reason = outcome.failure_reason if outcome else FailureReason.ERROR
                result.failure_reasons[slot.index] = str(reason)
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "slotsAttempted": self.slots_attempted,
            "slotsFilled": self.slots_filled,
            "totalRevenue": round(self.total_revenue, 6),
            "totalDuration": self.total_duration,
            "completionRate": round(self.completion_rate, 4),
            "perSlotWinner": {str(k): v for k, v in self.per_slot_winner.items()},
            "failureReasons": {str(k): v for k, v in self.failure_reasons.items()},
            "flaggedCreatives": list(self.flagged_creatives),
            "position": self.position,
            "strategyOrigin": self.strategy_origin,
            "createdAt": self.created_at.isoformat(),
        }
