"""
Bid response normalisation.

Demand sources answer with one of two shapes:

- a standard seat-bid structure::

    {"seatbid": [{"seat": "s1", "bid": [{"price": 11.2, "adm": "...",
      "nurl": "...", "adomain": ["x.example"], "cat": ["IAB2"],
      "dealid": "d-1"}]}]}

- a simplified object::

    {"price": 11.2, "creativeRef": "...", "advertiserDomain": "x.example",
     "category": "auto", "dealId": "d-1"}

Both are parsed into a tagged variant (`SeatBidResponse` / `SimpleBidResponse`)
and then converted by `to_bids` into canonical `Bid` objects. Nothing else in
the engine reads raw payloads.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from .base import Bid, MalformedBidResponse

logger = logging.getLogger(__name__)


@dataclass
class SeatBidResponse:
    """Standard seat-bid response: seats, each with one or more bids."""

    seats: list[dict[str, Any]] = field(default_factory=list)
    kind: Literal["seatbid"] = "seatbid"


@dataclass
class SimpleBidResponse:
    """Simplified single-bid response object."""

    price: float
    creative_ref: str
    advertiser_domain: Optional[str] = None
    category: Optional[str] = None
    deal_id: Optional[str] = None
    kind: Literal["simple"] = "simple"


BidResponse = Union[SeatBidResponse, SimpleBidResponse]


def _parse_price(value: Any, source: str) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise MalformedBidResponse(f"Unparsable price {value!r}", source=source)
    if not math.isfinite(price) or price < 0:
        raise MalformedBidResponse(f"Invalid price {value!r}", source=source)
    return price


def _first(value: Any) -> Optional[str]:
    """First element of a list-valued field, or the value itself."""
    if isinstance(value, (list, tuple)):
        return str(value[0]) if value else None
    return str(value) if value else None


def parse_bid_response(payload: Any, source: str = "") -> Optional[BidResponse]:
    """
    Classify a raw payload into one of the two response shapes.

    Args:
        payload: Decoded JSON body returned by the source.
        source: Source name, for error reporting.

    Returns:
        Tagged response, or None when the payload is an explicit no-bid.

    Raises:
        MalformedBidResponse: If the payload matches neither shape.
    """
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise MalformedBidResponse(f"Expected object, got {type(payload).__name__}", source=source)
    if not payload or payload.get("nobid"):
        return None

    if "seatbid" in payload:
        seats = payload.get("seatbid") or []
        if not isinstance(seats, list):
            raise MalformedBidResponse("seatbid must be a list", source=source)
        if not seats:
            return None
        return SeatBidResponse(seats=seats)

    price = payload.get("price", payload.get("cpm"))
    if price is None:
        raise MalformedBidResponse("Response carries neither seatbid nor price", source=source)

    creative_ref = (
        payload.get("creativeRef")
        or payload.get("creative_ref")
        or payload.get("vastUrl")
        or payload.get("vast_url")
        or ""
    )
    return SimpleBidResponse(
        price=_parse_price(price, source),
        creative_ref=str(creative_ref),
        advertiser_domain=payload.get("advertiserDomain") or payload.get("advertiser_domain"),
        category=payload.get("category"),
        deal_id=payload.get("dealId") or payload.get("deal_id"),
    )


def to_bids(response: Optional[BidResponse], source: str, latency_ms: float) -> list[Bid]:
    """
    Convert a tagged response into canonical bids.

    Args:
        response: Parsed response (None for no bid).
        source: Source name the bids are attributed to.
        latency_ms: Observed latency of the call.

    Returns:
        All bids carried by the response (empty for no bid).
    """
    if response is None:
        return []

    if isinstance(response, SimpleBidResponse):
        is_markup = "<VAST" in response.creative_ref
        return [
            Bid(
                source=source,
                price=response.price,
                creative_ref=response.creative_ref,
                advertiser_domain=response.advertiser_domain,
                category=response.category,
                deal_id=response.deal_id,
                latency_ms=latency_ms,
                creative_markup=response.creative_ref if is_markup else None,
            )
        ]

    bids: list[Bid] = []
    for seat in response.seats:
        if not isinstance(seat, dict):
            raise MalformedBidResponse("seatbid entry must be an object", source=source)
        for raw in seat.get("bid") or []:
            if not isinstance(raw, dict) or "price" not in raw:
                raise MalformedBidResponse("seat bid without price", source=source)
            adm = raw.get("adm") or ""
            nurl = raw.get("nurl")
            is_markup = "<VAST" in adm
            bids.append(
                Bid(
                    source=source,
                    price=_parse_price(raw["price"], source),
                    creative_ref=adm or nurl or "",
                    advertiser_domain=_first(raw.get("adomain")),
                    category=_first(raw.get("cat")),
                    deal_id=raw.get("dealid"),
                    latency_ms=latency_ms,
                    creative_markup=adm if is_markup else None,
                    notice_url=nurl,
                    seat=seat.get("seat"),
                    bid_id=raw.get("id"),
                )
            )
    return bids


def normalize_bid(payload: Any, source: str, latency_ms: float) -> Optional[Bid]:
    """
    Normalise a single source's payload to at most one bid.

    A seat-bid response may carry several bids; a source gets one entry in a
    slot auction, so the highest-priced one is kept.

    Raises:
        MalformedBidResponse: If the payload cannot be interpreted.
    """
    bids = to_bids(parse_bid_response(payload, source), source, latency_ms)
    if not bids:
        return None
    best = max(bids, key=lambda b: b.price)
    logger.debug(f"{source}: normalised {len(bids)} bid(s), best ${best.price:.2f}")
    return best
