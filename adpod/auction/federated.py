"""
Federated exchange auction.

Variant of the slot auction that talks to programmatic exchanges directly:

1. Build one unified seat-bid request per opportunity (second-price flag,
   tmax, video impression constraints, site/content with category mapping,
   device, privacy regs).
2. Send it in parallel to every exchange that has credentials. Settle-all:
   one exchange failing never aborts collection.
3. Flatten every returned seat-bid into one list and apply the second-price
   rule across the union.
4. Resolve the winner's creative (inline markup, one fetch, or fallback).

Example:
    >>> exchange = FederatedExchange(credentials={"magnite": "key"})
    >>> result = await exchange.run_auction(opportunity, floor=2.0)
    >>> result.winner.source, result.clearing_price
    ('magnite', 7.51)
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from .. import config
from ..demand.adapter import parse_bid_response, to_bids
from ..demand.base import Bid, SourceError
from ..models import FailureReason, Opportunity, is_ctv_device
from .creative import CreativeFetcher, ResolvedCreative
from .engine import clearing_price

logger = logging.getLogger(__name__)

OPENRTB_VERSION = "2.6"

CONTENT_CATEGORY_MAP = {
    "comedy": "IAB1-5",
    "entertainment": "IAB1-2",
    "technology": "IAB19",
    "cooking": "IAB8-5",
    "sports": "IAB17",
    "documentary": "IAB1-2",
    "news": "IAB12",
}
DEFAULT_CONTENT_CATEGORY = "IAB1"

# OpenRTB device types
DEVICE_TYPES = {"mobile": 4, "phone": 4, "tablet": 5, "desktop": 2}
CTV_DEVICE_TYPE = 3

START_DELAYS = {"preroll": 0, "midroll": -1, "postroll": -2}


@dataclass
class ExchangeConfig:
    """
    Static description of one exchange.

    Attributes:
        exchange_id: Key used for credentials.
        name: Display name, used as the bid source.
        endpoint: Seat-bid endpoint.
        max_bid_timeout_ms: Exchange-specific response budget.
    """

    exchange_id: str
    name: str
    endpoint: str
    max_bid_timeout_ms: int = 1000

    def auth_headers(self, credential: str) -> dict[str, str]:
        if self.exchange_id == "google_adx":
            return {"Authorization": f"Bearer {credential}"}
        if self.exchange_id == "amazon_dsp":
            return {"Authorization": f"AWS4-HMAC-SHA256 {credential}"}
        if self.exchange_id == "trade_desk":
            return {"TTD-Auth": credential}
        return {"X-API-Key": credential}


DEFAULT_EXCHANGES = [
    ExchangeConfig("google_adx", "Google Ad Exchange", "https://googleads.g.doubleclick.net/pagead/ads", 1000),
    ExchangeConfig("amazon_dsp", "Amazon DSP", "https://aax-us-east.amazon-adsystem.com/e/rtb/v2", 800),
    ExchangeConfig("trade_desk", "The Trade Desk", "https://rtb.thetradedesk.com/bid/v1", 1200),
    ExchangeConfig("magnite", "Magnite (Rubicon)", "https://exchange.rubiconproject.com/rtb/bid", 1000),
    ExchangeConfig("pubmatic", "PubMatic", "https://image2.pubmatic.com/AdServer/AdServerServlet", 900),
    ExchangeConfig("openx", "OpenX", "https://rtb.openx.net/rtb/v1", 1000),
]


@dataclass
class FederatedAuctionResult:
    """
    Outcome of one federated auction.

    Attributes:
        auction_id: Request id sent to every exchange.
        winner: Highest-priced bid, if it met the floor.
        clearing_price: Second-price clearing CPM (0 without a winner).
        runner_up_price: Next-highest price, if any.
        bids: Every bid collected, highest price first.
        responded: Exchanges that answered.
        failed: Exchange name -> failure description.
        failure_reason: Why there is no winner.
        creative: Resolved winner creative.
    """

    auction_id: str
    winner: Optional[Bid] = None
    clearing_price: float = 0.0
    runner_up_price: Optional[float] = None
    bids: list[Bid] = field(default_factory=list)
    responded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    failure_reason: Optional[FailureReason] = None
    creative: Optional[ResolvedCreative] = None

    @property
    def filled(self) -> bool:
        return self.winner is not None

    @property
    def total_bidders(self) -> int:
        return len(self.bids)

    @property
    def creative_flagged(self) -> bool:
        """True when the fallback creative had to be used."""
        return bool(self.creative and self.creative.is_fallback)

    def to_dict(self) -> dict[str, Any]:
        return {
            "auction_id": self.auction_id,
            "winner": self.winner.to_dict() if self.winner else None,
            "clearing_price": self.clearing_price,
            "runner_up_price": self.runner_up_price,
            "total_bidders": self.total_bidders,
            "responded": list(self.responded),
            "failed": dict(self.failed),
            "failure_reason": str(self.failure_reason) if self.failure_reason else None,
            "creative_flagged": self.creative_flagged,
        }


def map_content_category(category: str) -> str:
    return CONTENT_CATEGORY_MAP.get((category or "").lower(), DEFAULT_CONTENT_CATEGORY)


def device_type(device: str) -> int:
    if is_ctv_device(device):
        return CTV_DEVICE_TYPE
    return DEVICE_TYPES.get((device or "").lower(), DEVICE_TYPES["desktop"])


class FederatedExchange:
    """
    Direct multi-exchange second-price auction.

    Attributes:
        exchanges: Known exchanges.
        credentials: exchange_id -> credential; exchanges without one are skipped.
        timeout_ms: Auction-wide tmax.
        floor: Default floor when none is given.
        gdpr_applies: Value of regs.ext.gdpr.
        us_privacy: Value of regs.ext.us_privacy.
    """

    def __init__(
        self,
        exchanges: Optional[list[ExchangeConfig]] = None,
        credentials: Optional[dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        creative_fetcher: Optional[CreativeFetcher] = None,
        timeout_ms: int = config.FEDERATED_TIMEOUT_MS,
        floor: float = config.FEDERATED_DEFAULT_FLOOR,
        gdpr_applies: bool = False,
        us_privacy: str = "1---",
    ) -> None:
        self.exchanges = list(exchanges if exchanges is not None else DEFAULT_EXCHANGES)
        self.credentials = dict(credentials if credentials is not None else config.EXCHANGE_CREDENTIALS)
        self.timeout_ms = timeout_ms
        self.floor = floor
        self.gdpr_applies = gdpr_applies
        self.us_privacy = us_privacy
        self.creative_fetcher = creative_fetcher or CreativeFetcher()

        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def credentialed(self) -> list[ExchangeConfig]:
        """Exchanges that have a credential configured."""
        active = []
        for exchange in self.exchanges:
            if self.credentials.get(exchange.exchange_id):
                active.append(exchange)
            else:
                logger.debug(f"Skipping {exchange.name}: no credentials configured")
        return active

    def build_bid_request(
        self,
        opportunity: Opportunity,
        auction_id: str,
        floor: Optional[float] = None,
        excluded_advertisers: Optional[list[str]] = None,
        excluded_categories: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """
        Unified seat-bid request for an opportunity.

        Args:
            opportunity: Ad break being sold.
            auction_id: Request id.
            floor: Impression floor (CPM); defaults to the configured floor.
            excluded_advertisers: Blocked advertiser domains (badv).
            excluded_categories: Blocked categories (bcat).
        """
        category = map_content_category(opportunity.category)
        floor = self.floor if floor is None else floor
        request = {
            "id": auction_id,
            "at": 2,
            "tmax": self.timeout_ms,
            "cur": ["USD"],
            "imp": [
                {
                    "id": "1",
                    "video": {
                        "mimes": ["video/mp4", "video/webm"],
                        "minduration": 15,
                        "maxduration": max(15, opportunity.max_ad_duration),
                        "protocols": [2, 3, 5, 6, 7, 8],
                        "w": 1920,
                        "h": 1080,
                        "startdelay": START_DELAYS.get(opportunity.position.lower(), 0),
                        "placement": 1,
                        "linearity": 1,
                        "sequence": 1,
                    },
                    "bidfloor": round(floor, 2),
                    "bidfloorcur": "USD",
                    "secure": 1,
                }
            ],
            "site": {
                "cat": [category],
                "content": {
                    "cat": [category],
                    "len": opportunity.video_length,
                    "livestream": 0,
                },
            },
            "device": {
                "devicetype": device_type(opportunity.device),
                "w": 1920,
                "h": 1080,
            },
            "user": {"id": opportunity.user.id},
            "regs": {
                "ext": {
                    "gdpr": 1 if self.gdpr_applies else 0,
                    "us_privacy": self.us_privacy,
                }
            },
        }
        if excluded_advertisers:
            request["badv"] = list(excluded_advertisers)
        if excluded_categories:
            request["bcat"] = list(excluded_categories)
        return request

    async def _send(self, exchange: ExchangeConfig, payload: dict[str, Any]) -> list[Bid]:
        headers = {
            "Content-Type": "application/json",
            "X-Openrtb-Version": OPENRTB_VERSION,
            "X-Request-ID": f"req_{uuid.uuid4().hex[:12]}",
            **exchange.auth_headers(self.credentials[exchange.exchange_id]),
        }
        timeout = min(exchange.max_bid_timeout_ms, self.timeout_ms) / 1000.0
        started = time.perf_counter()

        try:
            response = await self._get_client().post(exchange.endpoint, json=payload, headers=headers, timeout=timeout)
        except httpx.HTTPError as e:
            raise SourceError(f"{exchange.name} transport error: {e}", source=exchange.name) from e

        latency_ms = (time.perf_counter() - started) * 1000
        if response.status_code == 204:
            return []
        if response.status_code >= 400:
            raise SourceError(f"{exchange.name} returned HTTP {response.status_code}", source=exchange.name)

        try:
            body = response.json()
        except ValueError as e:
            raise SourceError(f"{exchange.name} returned non-JSON body", source=exchange.name) from e

        bids = to_bids(parse_bid_response(body, exchange.name), exchange.name, latency_ms)
        logger.info(f"{exchange.name} responded: {len(bids)} bid(s) in {latency_ms:.0f}ms")
        return bids

    async def run_auction(
        self,
        opportunity: Opportunity,
        floor: Optional[float] = None,
        duration: int = 30,
    ) -> FederatedAuctionResult:
        """
        Run one federated second-price auction.

        Args:
            opportunity: Ad break being sold.
            floor: Minimum acceptable CPM.
            duration: Slot duration, used for the fallback creative.

        Returns:
            FederatedAuctionResult (no winner when nothing met the floor).
        """
        floor = self.floor if floor is None else floor
        auction_id = f"auction_{int(time.time() * 1000)}_{uuid.uuid4().hex[:16]}"
        result = FederatedAuctionResult(auction_id=auction_id)

        exchanges = self.credentialed()
        if not exchanges:
            logger.warning("Federated auction skipped: no exchange has credentials")
            result.failure_reason = FailureReason.NO_BIDS
            return result

        payload = self.build_bid_request(opportunity, auction_id, floor=floor)
        logger.info(f"Starting federated auction {auction_id} across {len(exchanges)} exchange(s)")

        outcomes = await asyncio.gather(
            *(
                asyncio.wait_for(self._send(ex, payload), timeout=self.timeout_ms / 1000.0)
                for ex in exchanges
            ),
            return_exceptions=True,
        )

        bids: list[Bid] = []
        for exchange, outcome in zip(exchanges, outcomes):
            if isinstance(outcome, asyncio.TimeoutError):
                result.failed[exchange.name] = "timeout"
                logger.warning(f"{exchange.name}: no response within {self.timeout_ms}ms")
            elif isinstance(outcome, BaseException):
                result.failed[exchange.name] = str(outcome)
                logger.warning(f"{exchange.name}: {outcome}")
            else:
                result.responded.append(exchange.name)
                bids.extend(outcome)

        bids.sort(key=lambda b: b.price, reverse=True)
        result.bids = bids

        if not bids:
            logger.info(f"Auction {auction_id}: no bids received from any exchange")
            result.failure_reason = FailureReason.NO_BIDS
            return result

        winner = bids[0]
        if winner.price < floor:
            logger.info(f"Auction {auction_id}: best bid ${winner.price:.2f} below floor ${floor:.2f}")
            result.failure_reason = FailureReason.BELOW_FLOOR
            return result

        others = [b.price for b in bids[1:]]
        result.winner = winner
        result.runner_up_price = others[0] if others else None
        result.clearing_price = clearing_price(winner.price, others)
        result.creative = await self.creative_fetcher.resolve(winner, duration)

        logger.info(
            f"Auction {auction_id}: {winner.source} wins at ${result.clearing_price:.2f} "
            f"({len(bids)} bid(s), creative {'fallback' if result.creative_flagged else 'ok'})"
        )
        return result

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self.creative_fetcher.close()
