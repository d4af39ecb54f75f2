"""
Core demand-side abstractions for bid requests.

This module defines the demand source record kept by the registry, the
canonical bid produced by every response shape, the uniform bid request sent
to sources, and the abstract client interface that concrete demand source
transports implement.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


class SourceError(Exception):
    """Base exception for a failed call to a single demand source."""

    def __init__(self, message: str, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source


class SourceTimeout(SourceError):
    """Raised when a demand source does not answer within its timeout."""

    pass


class MalformedBidResponse(SourceError):
    """Raised when a demand source answers with an unusable payload."""

    pass


@dataclass
class DemandSource:
    """
    A demand source and its rolling performance metrics.

    Attributes:
        name: Unique source name, used as identity everywhere.
        endpoint: URL the bid request is posted to.
        avg_price: Rolling average winning CPM (EMA).
        fill_rate: Rolling fill rate in [0, 1] (EMA).
        avg_latency_ms: Typical response time in milliseconds.
        accepted_durations: Creative durations (seconds) the source can fill.
        competitive_categories: Advertiser categories this source competes in.
        timeout_ms: Per-call timeout in milliseconds.
        enabled: Whether the source may be called.
    """

    name: str
    endpoint: str
    avg_price: float
    fill_rate: float
    avg_latency_ms: float
    accepted_durations: list[int] = field(default_factory=lambda: [15, 30])
    competitive_categories: list[str] = field(default_factory=list)
    timeout_ms: int = 1500
    enabled: bool = True

    def __post_init__(self) -> None:
        self.fill_rate = min(1.0, max(0.0, float(self.fill_rate)))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DemandSource":
        """Build a source from a static config entry."""
        return cls(
            name=data["name"],
            endpoint=data.get("endpoint", ""),
            avg_price=float(data.get("avg_price", 0.0)),
            fill_rate=float(data.get("fill_rate", 0.0)),
            avg_latency_ms=float(data.get("avg_latency_ms", 1000.0)),
            accepted_durations=list(data.get("accepted_durations", [15, 30])),
            competitive_categories=list(data.get("competitive_categories", [])),
            timeout_ms=int(data.get("timeout_ms", 1500)),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert source to dictionary."""
        return {
            "name": self.name,
            "endpoint": self.endpoint,
            "avg_price": round(self.avg_price, 4),
            "fill_rate": round(self.fill_rate, 4),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "accepted_durations": list(self.accepted_durations),
            "competitive_categories": list(self.competitive_categories),
            "timeout_ms": self.timeout_ms,
            "enabled": self.enabled,
        }


@dataclass
class Bid:
    """
    Canonical bid, whatever shape the source answered with.

    Attributes:
        source: Name of the demand source that produced the bid.
        price: Bid CPM.
        creative_ref: Creative URL or markup reference.
        advertiser_domain: Advertiser domain, used for competitive separation.
        category: Advertiser category, used for competitive separation.
        deal_id: Private marketplace deal id (optional).
        latency_ms: Observed response latency.
        creative_markup: Inline creative (e.g. VAST XML) when supplied.
        notice_url: Win notification URL (seat-bid responses).
        seat: Seat id (seat-bid responses).
        bid_id: Bid id assigned by the responder.
    """

    source: str
    price: float
    creative_ref: str = ""
    advertiser_domain: Optional[str] = None
    category: Optional[str] = None
    deal_id: Optional[str] = None
    latency_ms: float = 0.0
    creative_markup: Optional[str] = None
    notice_url: Optional[str] = None
    seat: Optional[str] = None
    bid_id: Optional[str] = None

    @property
    def has_inline_creative(self) -> bool:
        """Check if the bid carries its creative inline."""
        return bool(self.creative_markup)

    def to_dict(self) -> dict[str, Any]:
        """Convert bid to dictionary."""
        return {
            "source": self.source,
            "price": self.price,
            "creative_ref": self.creative_ref,
            "advertiser_domain": self.advertiser_domain,
            "category": self.category,
            "deal_id": self.deal_id,
            "latency_ms": round(self.latency_ms, 1),
        }


@dataclass
class SourceAttempt:
    """
    Result of calling one demand source for one slot.

    Attributes:
        source: Source name.
        bid: Normalised bid, or None for no bid.
        latency_ms: Observed latency (None if the call never completed).
        timeout_ms: Effective timeout the call ran under.
        error: Failure description when the call failed.
    """

    source: str
    bid: Optional[Bid] = None
    latency_ms: Optional[float] = None
    timeout_ms: int = 0
    error: Optional[str] = None

    @property
    def filled(self) -> bool:
        return self.bid is not None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class BidRequest:
    """Uniform bid request sent to every demand source of a slot."""

    floor: float
    duration: int
    position: str
    category: str
    device: str
    excluded_advertisers: list[str] = field(default_factory=list)
    excluded_categories: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """Wire representation of the request."""
        return {
            "floor": self.floor,
            "duration": self.duration,
            "position": self.position,
            "category": self.category,
            "device": self.device,
            "excludedAdvertisers": list(self.excluded_advertisers),
            "excludedCategories": list(self.excluded_categories),
        }


class BidClient(ABC):
    """
    Abstract transport to a single demand source.

    Implementations return the raw response payload; normalisation into a
    `Bid` happens in one place (`adpod.demand.adapter`). Returning None or an
    empty payload means "no bid". Transport failures should raise
    `SourceError`; timeouts are enforced by the dispatcher.
    """

    @abstractmethod
    async def request_bid(self, source: DemandSource, request: BidRequest) -> Optional[dict[str, Any]]:
        """
        Send a bid request to the source.

        Args:
            source: Source being called.
            request: Uniform bid request.

        Returns:
            Raw response payload, or None for no bid.
        """
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None
