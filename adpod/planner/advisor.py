"""
Strategy advisor contract.

The advisor is an external collaborator that proposes a pod strategy for an
opportunity. The engine only depends on `advise(context) -> strategy`; how
the advisor reasons about it (prompting, models, rules) lives outside.

The shipped `HttpStrategyAdvisor` posts the context as JSON and returns the
decoded body. Transport errors are retried with tenacity; the planner bounds
the whole call with its own timeout.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .. import config

logger = logging.getLogger(__name__)

# Retry configuration
RETRY_MIN_WAIT = 0.05  # seconds
RETRY_MAX_WAIT = 0.5  # seconds


class AdvisorFailure(Exception):
    """Raised when the advisor errors, times out or returns unusable output."""

    pass


@dataclass
class AdvisorContext:
    """
    Everything the advisor is told about an opportunity.

    Attributes:
        position: preroll, midroll or postroll.
        video_length: Content length in seconds.
        time_available: Ad break budget in seconds.
        content_category: Content category.
        device: Device type.
        user_value: Estimated value of the viewer.
        fill_rate_history: Historical fill rate for the position (percent).
        historical_performance: Position history snapshot, if any.
        sources: Enabled demand source snapshot.
    """

    position: str
    video_length: int
    time_available: int
    content_category: str
    device: str
    user_value: float
    fill_rate_history: float
    historical_performance: Optional[dict[str, Any]] = None
    sources: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "videoLength": self.video_length,
            "timeAvailable": self.time_available,
            "contentCategory": self.content_category,
            "device": self.device,
            "userValue": round(self.user_value, 2),
            "fillRateHistory": round(self.fill_rate_history, 1),
            "historicalPerformance": self.historical_performance,
            "demandSources": self.sources,
        }


StrategyPayload = Union[dict[str, Any], str]


class StrategyAdvisor(ABC):
    """Proposes a pod strategy for an opportunity."""

    @abstractmethod
    async def advise(self, context: AdvisorContext) -> StrategyPayload:
        """
        Propose a strategy.

        Args:
            context: Opportunity, history and source snapshot.

        Returns:
            Strategy as a dict, or as JSON text (optionally fenced).

        Raises:
            AdvisorFailure: If no strategy can be produced.
        """
        pass

    async def close(self) -> None:
        return None


class HttpStrategyAdvisor(StrategyAdvisor):
    """
    Advisor reached over HTTP.

    Attributes:
        endpoint: URL the context is posted to.
        timeout: Per-attempt timeout in seconds.
        max_attempts: Attempts made on transport errors.
    """

    def __init__(
        self,
        endpoint: str = config.ADVISOR_ENDPOINT,
        timeout: float = config.ADVISOR_TIMEOUT_MS / 1000.0,
        max_attempts: int = config.ADVISOR_MAX_ATTEMPTS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not endpoint:
            raise ValueError("Advisor endpoint is required")
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        @retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.1, min=RETRY_MIN_WAIT, max=RETRY_MAX_WAIT),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        async def _post_with_retry() -> httpx.Response:
            response = await self._get_client().post(self.endpoint, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response

        return await _post_with_retry()

    async def advise(self, context: AdvisorContext) -> StrategyPayload:
        try:
            response = await self._post(context.to_dict())
        except httpx.HTTPError as e:
            raise AdvisorFailure(f"Advisor request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            # some advisors answer with plain (possibly fenced) JSON text
            return response.text

        if isinstance(data, dict) and "strategy" in data:
            return data["strategy"]
        return data

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
