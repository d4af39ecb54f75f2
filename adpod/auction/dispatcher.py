"""
Bid Dispatcher.

Fans one slot's bid request out to its candidate sources in parallel. Every
call runs under its own `asyncio.wait_for` timeout; a timeout, transport
error or malformed payload from one source becomes a no-bid attempt for that
source and never affects the others.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

from ..demand.adapter import normalize_bid
from ..demand.base import BidClient, BidRequest, DemandSource, SourceAttempt, SourceError

logger = logging.getLogger(__name__)


@dataclass
class SourceCall:
    """A source to call and the timeout it runs under."""

    source: DemandSource
    timeout_ms: int


class BidDispatcher:
    """
    Parallel, failure-isolated bid fan-out.

    Attributes:
        client: Transport used for every source.
        calls_made: Total source calls issued.
        timeouts: Calls that hit their timeout.
        errors: Calls that failed with a transport or payload error.
    """

    def __init__(self, client: BidClient) -> None:
        self.client = client
        self.calls_made = 0
        self.timeouts = 0
        self.errors = 0

    async def dispatch(self, request: BidRequest, calls: list[SourceCall]) -> list[SourceAttempt]:
        """
        Call every source and collect one attempt per source.

        Args:
            request: Uniform bid request for the slot.
            calls: Sources with their effective timeouts.

        Returns:
            Attempts in the order of `calls`.
        """
        if not calls:
            return []
        attempts = await asyncio.gather(*(self._call(request, call) for call in calls))

        filled = sum(1 for a in attempts if a.filled)
        logger.debug(f"Dispatched to {len(calls)} source(s): {filled} bid(s)")
        return list(attempts)

    async def _call(self, request: BidRequest, call: SourceCall) -> SourceAttempt:
        source = call.source
        self.calls_made += 1
        started = time.perf_counter()

        try:
            payload = await asyncio.wait_for(
                self.client.request_bid(source, request),
                timeout=call.timeout_ms / 1000.0,
            )
            latency_ms = (time.perf_counter() - started) * 1000
            bid = normalize_bid(payload, source.name, latency_ms)
        except asyncio.TimeoutError:
            self.timeouts += 1
            logger.warning(f"{source.name}: no response within {call.timeout_ms}ms")
            return SourceAttempt(
                source=source.name,
                latency_ms=float(call.timeout_ms),
                timeout_ms=call.timeout_ms,
                error="timeout",
            )
        except SourceError as e:
            self.errors += 1
            logger.warning(f"{source.name}: {type(e).__name__}: {e}")
            return SourceAttempt(
                source=source.name,
                latency_ms=(time.perf_counter() - started) * 1000,
                timeout_ms=call.timeout_ms,
                error=str(e),
            )
        except Exception as e:
            self.errors += 1
            logger.warning(f"{source.name}: unexpected error {e!r}")
            return SourceAttempt(
                source=source.name,
                latency_ms=(time.perf_counter() - started) * 1000,
                timeout_ms=call.timeout_ms,
                error=repr(e),
            )

        if bid is not None:
            logger.debug(f"{source.name}: bid ${bid.price:.2f} in {latency_ms:.0f}ms")
        return SourceAttempt(source=source.name, bid=bid, latency_ms=latency_ms, timeout_ms=call.timeout_ms)
