"""
Demand side of the ad pod engine.

This module provides:
- DemandSource / Bid / BidRequest: core demand-side records
- BidClient: abstract transport to a demand source
- HttpBidClient: httpx transport for real endpoints
- PaperBidClient: simulated demand for offline runs and tests
- DemandSourceRegistry: rolling per-source metrics store
- normalize_bid: seat-bid / simplified response adapter

Usage:
    from adpod.demand import DemandSourceRegistry, HttpBidClient

    registry = DemandSourceRegistry.from_config()
    client = HttpBidClient()
"""

from .adapter import (
    SeatBidResponse,
    SimpleBidResponse,
    normalize_bid,
    parse_bid_response,
    to_bids,
)
from .base import (
    Bid,
    BidClient,
    BidRequest,
    DemandSource,
    MalformedBidResponse,
    SourceAttempt,
    SourceError,
    SourceTimeout,
)
from .http import HttpBidClient
from .paper import PaperBidClient, PaperSourceProfile
from .registry import DemandSourceRegistry, DemandSourceStore

__all__ = [
    # Records
    "DemandSource",
    "Bid",
    "BidRequest",
    "SourceAttempt",
    # Exceptions
    "SourceError",
    "SourceTimeout",
    "MalformedBidResponse",
    # Clients
    "BidClient",
    "HttpBidClient",
    "PaperBidClient",
    "PaperSourceProfile",
    # Registry
    "DemandSourceStore",
    "DemandSourceRegistry",
    # Adapter
    "SeatBidResponse",
    "SimpleBidResponse",
    "parse_bid_response",
    "to_bids",
    "normalize_bid",
]
