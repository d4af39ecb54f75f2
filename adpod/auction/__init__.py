"""
Slot auctions and pod execution.

This module provides:
- AuctionEngine: scoring, second-price clearing, competitive separation
- BidDispatcher: parallel, failure-isolated bid fan-out
- PodExecutor: sequential slot execution with learning feedback
- CreativeFetcher: winner creative retrieval with fallback
- FederatedExchange: direct multi-exchange second-price auction
"""

from .creative import CreativeFetcher, CreativeRetrievalFailure, ResolvedCreative, fallback_creative
from .dispatcher import BidDispatcher, SourceCall
from .engine import (
    AuctionEngine,
    AuctionResult,
    BelowFloor,
    CompetitiveSeparation,
    NoBidsForSlot,
    ScoredBid,
    SlotFailure,
    clearing_price,
)
from .executor import PodExecutor
from .federated import ExchangeConfig, FederatedAuctionResult, FederatedExchange

__all__ = [
    # Engine
    "AuctionEngine",
    "AuctionResult",
    "ScoredBid",
    "CompetitiveSeparation",
    "clearing_price",
    # Exceptions
    "SlotFailure",
    "NoBidsForSlot",
    "BelowFloor",
    "CreativeRetrievalFailure",
    # Execution
    "BidDispatcher",
    "SourceCall",
    "PodExecutor",
    # Creative
    "CreativeFetcher",
    "ResolvedCreative",
    "fallback_creative",
    # Federated
    "ExchangeConfig",
    "FederatedExchange",
    "FederatedAuctionResult",
]
