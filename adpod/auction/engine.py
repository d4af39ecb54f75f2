"""
Auction Engine for ad pod slots.

Selects a winner among a slot's bids and forms its price.

Scoring:
    score = 0.70 * price / 20 + 0.20 * source fill rate + 0.10 * latency score
    where the latency score decays linearly from 1 at 0ms to 0 at 2000ms.
    Ties go to the higher price, then the lower latency, then source name.

Pricing (second price):
    - two or more eligible bids: runner-up price + $0.01
    - a single eligible bid: 95% of its own price
    The clearing price never exceeds the winner's own bid.

Competitive separation:
    Bids whose advertiser domain or category already won an earlier slot of
    the same pod are dropped before scoring.

Example:
    >>> engine = AuctionEngine(registry)
    >>> separation = CompetitiveSeparation()
    >>> result = engine.evaluate_bids(bids, slot, separation)
    >>> result.clearing_price <= result.winner.price
    True
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .. import config
from ..demand.base import Bid
from ..demand.registry import DemandSourceStore
from ..models import FailureReason, Slot

logger = logging.getLogger(__name__)

DEFAULT_FILL_CONFIDENCE = 0.5


class SlotFailure(Exception):
    """Base exception for a slot that cannot be filled."""

    reason: FailureReason = FailureReason.ERROR

    def __init__(self, message: str, bid_count: int = 0) -> None:
        super().__init__(message)
        self.bid_count = bid_count


class NoBidsForSlot(SlotFailure):
    """Raised when no eligible bid is left for a slot."""

    reason = FailureReason.NO_BIDS


class BelowFloor(SlotFailure):
    """Raised when the winning bid does not meet the slot floor."""

    reason = FailureReason.BELOW_FLOOR


def _norm(value: Optional[str]) -> Optional[str]:
    return value.strip().lower() if value else None


@dataclass
class CompetitiveSeparation:
    """
    Exclusion set accumulated across the slots of one pod.

    Attributes:
        advertisers: Advertiser domains that already won a slot.
        categories: Categories that already won a slot.
    """

    advertisers: set[str] = field(default_factory=set)
    categories: set[str] = field(default_factory=set)

    def is_excluded(self, bid: Bid) -> bool:
        """Check if a bid conflicts with an earlier winner."""
        domain = _norm(bid.advertiser_domain)
        category = _norm(bid.category)
        return (domain is not None and domain in self.advertisers) or (
            category is not None and category in self.categories
        )

    def filter(self, bids: Iterable[Bid]) -> list[Bid]:
        """Bids that survive the exclusion set."""
        return [b for b in bids if not self.is_excluded(b)]

    def record_winner(self, bid: Bid) -> None:
        """Add a winner's domain and category to the exclusion set."""
        domain = _norm(bid.advertiser_domain)
        category = _norm(bid.category)
        if domain:
            self.advertisers.add(domain)
        if category:
            self.categories.add(category)

    @property
    def excluded_advertisers(self) -> list[str]:
        return sorted(self.advertisers)

    @property
    def excluded_categories(self) -> list[str]:
        return sorted(self.categories)


@dataclass
class ScoredBid:
    """A bid with its composite score."""

    bid: Bid
    score: float
    price_score: float
    fill_score: float
    latency_score: float


@dataclass
class AuctionResult:
    """
    Winning bid and its clearing price.

    Attributes:
        winner: Winning bid.
        clearing_price: Price the winner pays.
        runner_up_price: Highest price among the other eligible bids.
        eligible_bids: Bids left after competitive separation.
        excluded_count: Bids dropped by competitive separation.
        scored: All eligible bids with scores, best first.
    """

    winner: Bid
    clearing_price: float
    runner_up_price: Optional[float]
    eligible_bids: list[Bid]
    excluded_count: int = 0
    scored: list[ScoredBid] = field(default_factory=list)


def clearing_price(winner_price: float, other_prices: list[float]) -> float:
    """
    Second-price clearing rule.

    Args:
        winner_price: The winning bid's price.
        other_prices: Prices of the other eligible bids.

    Returns:
        Runner-up + $0.01 when there are other bids, else 95% of the
        winner's price; capped at the winner's price and rounded to cents.
    """
    if other_prices:
        price = max(other_prices) + config.CLEARING_INCREMENT
    else:
        price = winner_price * config.SINGLE_BID_HAIRCUT
    return min(round(price, 2), winner_price)


class AuctionEngine:
    """
    Scores bids, picks a winner and forms the clearing price for a slot.

    Attributes:
        registry: Read-only source of per-source fill rates.
        price_normalizer: CPM that maps to a price score of 1.0.
        latency_ceiling_ms: Latency at which the latency score reaches 0.
    """

    def __init__(
        self,
        registry: Optional[DemandSourceStore] = None,
        price_normalizer: float = config.PRICE_NORMALIZER,
        latency_ceiling_ms: float = config.LATENCY_CEILING_MS,
    ) -> None:
        self.registry = registry
        self.price_normalizer = price_normalizer
        self.latency_ceiling_ms = latency_ceiling_ms

    def _fill_confidence(self, source_name: str) -> float:
        if self.registry is None:
            return DEFAULT_FILL_CONFIDENCE
        source = self.registry.get(source_name)
        return source.fill_rate if source else DEFAULT_FILL_CONFIDENCE

    def score_bid(self, bid: Bid) -> ScoredBid:
        """Composite score of a single bid."""
        price_score = bid.price / self.price_normalizer
        fill_score = self._fill_confidence(bid.source)
        latency_score = max(0.0, 1 - bid.latency_ms / self.latency_ceiling_ms)
        score = (
            config.PRICE_WEIGHT * price_score
            + config.FILL_CONFIDENCE_WEIGHT * fill_score
            + config.LATENCY_WEIGHT * latency_score
        )
        return ScoredBid(
            bid=bid,
            score=score,
            price_score=price_score,
            fill_score=fill_score,
            latency_score=latency_score,
        )

    def rank(self, bids: Iterable[Bid]) -> list[ScoredBid]:
        """Score bids and order them best first."""
        scored = [self.score_bid(b) for b in bids]
        scored.sort(key=lambda s: (-s.score, -s.bid.price, s.bid.latency_ms, s.bid.source))
        return scored

    def evaluate_bids(
        self,
        bids: list[Bid],
        slot: Slot,
        separation: Optional[CompetitiveSeparation] = None,
    ) -> AuctionResult:
        """
        Run the slot auction.

        On success the winner is added to `separation`.

        Args:
            bids: Normalised bids received for the slot.
            slot: Slot being auctioned (floor is read from it).
            separation: Pod exclusion set (a fresh one when omitted).

        Returns:
            AuctionResult with the winner and its clearing price.

        Raises:
            NoBidsForSlot: If no bid survives competitive separation.
            BelowFloor: If the best-scoring bid is priced under the floor.
        """
        separation = separation if separation is not None else CompetitiveSeparation()

        eligible = separation.filter(bids)
        excluded_count = len(bids) - len(eligible)
        if excluded_count:
            logger.info(f"Slot {slot.index}: {excluded_count} bid(s) dropped by competitive separation")

        if not eligible:
            detail = "all bids excluded by competitive separation" if bids else "no bids received"
            raise NoBidsForSlot(f"Slot {slot.index}: {detail}", bid_count=len(bids))

        scored = self.rank(eligible)
        winner = scored[0].bid

        if winner.price < slot.floor:
            logger.info(
                f"Slot {slot.index}: best bid {winner.source} ${winner.price:.2f} "
                f"below floor ${slot.floor:.2f}"
            )
            raise BelowFloor(
                f"Slot {slot.index}: all bids below floor ${slot.floor:.2f}",
                bid_count=len(bids),
            )

        others = [s.bid.price for s in scored[1:]]
        price = clearing_price(winner.price, others)
        separation.record_winner(winner)

        logger.info(
            f"Slot {slot.index}: {winner.source} wins at ${price:.2f} "
            f"(bid ${winner.price:.2f}, {len(eligible)} eligible)"
        )

        return AuctionResult(
            winner=winner,
            clearing_price=price,
            runner_up_price=max(others) if others else None,
            eligible_bids=eligible,
            excluded_count=excluded_count,
            scored=scored,
        )
