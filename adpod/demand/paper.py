"""
Paper demand source simulator.

Implements BidClient but answers bid requests from configurable profiles
instead of the network. Useful for:
- Strategy development and testing
- Offline pod simulations
- Exercising timeouts and failure isolation without real endpoints

Features:
- Per-source fill probability, price and price jitter
- Seat-bid or simplified response shapes
- Simulated latency (optionally slept for real)
- Injected failures (errors, malformed payloads)
- Request history for assertions
"""

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from .base import BidClient, BidRequest, DemandSource, SourceError

logger = logging.getLogger(__name__)


@dataclass
class PaperSourceProfile:
    """
    Behaviour of one simulated demand source.

    Attributes:
        fill_probability: Chance of answering with a bid.
        price: Mean bid CPM.
        price_jitter: Uniform +/- jitter applied to the price.
        latency_ms: Simulated response latency.
        advertiser_domains: Domains to draw from (round robin).
        categories: Categories to draw from (round robin).
        shape: Response shape to answer with.
        error_rate: Chance of raising SourceError instead of answering.
        malformed_rate: Chance of answering with an unusable payload.
        respect_exclusions: Skip excluded advertisers/categories when choosing.
        inline_creative: Answer with inline VAST markup instead of a URL.
    """

    fill_probability: float = 1.0
    price: float = 10.0
    price_jitter: float = 0.0
    latency_ms: float = 100.0
    advertiser_domains: list[str] = field(default_factory=lambda: ["advertiser.example"])
    categories: list[str] = field(default_factory=lambda: ["general"])
    shape: Literal["simple", "seatbid"] = "simple"
    error_rate: float = 0.0
    malformed_rate: float = 0.0
    respect_exclusions: bool = False
    inline_creative: bool = False


class PaperBidClient(BidClient):
    """
    Simulated demand source client.

    Attributes:
        profiles: Behaviour per source name.
        default_profile: Used for sources without a profile.
        sleep: Whether to actually sleep for the simulated latency.
        requests: History of (source name, request) pairs received.

    Example:
        >>> client = PaperBidClient({"Magnite": PaperSourceProfile(price=9.5)}, seed=7)
        >>> payload = await client.request_bid(source, request)
    """

    def __init__(
        self,
        profiles: Optional[dict[str, PaperSourceProfile]] = None,
        default_profile: Optional[PaperSourceProfile] = None,
        seed: Optional[int] = None,
        sleep: bool = False,
    ) -> None:
        self.profiles = dict(profiles or {})
        self.default_profile = default_profile or PaperSourceProfile()
        self.sleep = sleep
        self.requests: list[tuple[str, BidRequest]] = []
        self._rng = random.Random(seed)
        self._counter = 0

    def profile_for(self, name: str) -> PaperSourceProfile:
        return self.profiles.get(name, self.default_profile)

    def _pick(self, options: list[str], excluded: list[str], profile: PaperSourceProfile) -> Optional[str]:
        if not options:
            return None
        candidates = [o for o in options if o not in excluded] if profile.respect_exclusions else options
        if not candidates:
            return None
        return candidates[self._counter % len(candidates)]

    async def request_bid(self, source: DemandSource, request: BidRequest) -> Optional[dict[str, Any]]:
        profile = self.profile_for(source.name)
        self.requests.append((source.name, request))
        self._counter += 1

        if self.sleep and profile.latency_ms > 0:
            await asyncio.sleep(profile.latency_ms / 1000.0)

        if self._rng.random() < profile.error_rate:
            raise SourceError(f"{source.name} simulated failure", source=source.name)
        if self._rng.random() < profile.malformed_rate:
            return {"unexpected": "payload"}
        if self._rng.random() >= profile.fill_probability:
            return None

        domain = self._pick(profile.advertiser_domains, request.excluded_advertisers, profile)
        category = self._pick(profile.categories, request.excluded_categories, profile)
        if profile.respect_exclusions and (domain is None or category is None):
            return None

        jitter = self._rng.uniform(-profile.price_jitter, profile.price_jitter) if profile.price_jitter else 0.0
        price = round(max(0.0, profile.price + jitter), 2)
        bid_id = uuid.uuid4().hex[:12]
        creative_url = f"https://creatives.example/{source.name.replace(' ', '_').lower()}/{bid_id}.xml"
        creative = (
            f'<VAST version="4.0"><Ad id="{bid_id}"/></VAST>' if profile.inline_creative else creative_url
        )

        logger.debug(f"{source.name}: paper bid ${price:.2f} ({domain}, {category})")

        if profile.shape == "seatbid":
            return {
                "id": bid_id,
                "seatbid": [
                    {
                        "seat": source.name,
                        "bid": [
                            {
                                "id": bid_id,
                                "price": price,
                                "adm": creative,
                                "nurl": f"https://win.example/{bid_id}",
                                "adomain": [domain] if domain else [],
                                "cat": [category] if category else [],
                            }
                        ],
                    }
                ],
            }
        return {
            "price": price,
            "creativeRef": creative,
            "advertiserDomain": domain,
            "category": category,
            "dealId": None,
        }

    def reset(self) -> None:
        """Clear request history."""
        self.requests.clear()
        self._counter = 0
