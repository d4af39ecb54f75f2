"""
HTTP transport for demand source endpoints.

Posts the uniform bid request as JSON to the source's endpoint and returns
the decoded body. HTTP 204 is a no-bid; other non-2xx statuses, transport
errors and undecodable bodies raise `SourceError`.
"""

import logging
from typing import Any, Optional

import httpx

from .base import BidClient, BidRequest, DemandSource, MalformedBidResponse, SourceError, SourceTimeout

logger = logging.getLogger(__name__)


class HttpBidClient(BidClient):
    """
    httpx-based demand source client.

    One `httpx.AsyncClient` is shared by all sources; the per-call timeout is
    the source's own timeout. The dispatcher additionally bounds the call.

    Example:
        >>> client = HttpBidClient()
        >>> payload = await client.request_bid(source, request)
        >>> await client.close()
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, headers: Optional[dict[str, str]] = None):
        self._client = client
        self._owns_client = client is None
        self.headers = {
            "Content-Type": "application/json",
            "User-Agent": "AdPodEngine/1.0",
            **(headers or {}),
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers=self.headers)
        return self._client

    async def request_bid(self, source: DemandSource, request: BidRequest) -> Optional[dict[str, Any]]:
        client = self._get_client()
        timeout = source.timeout_ms / 1000.0

        try:
            response = await client.post(source.endpoint, json=request.to_payload(), timeout=timeout)
        except httpx.TimeoutException as e:
            raise SourceTimeout(f"{source.name} timed out after {source.timeout_ms}ms", source=source.name) from e
        except httpx.HTTPError as e:
            raise SourceError(f"{source.name} transport error: {e}", source=source.name) from e

        if response.status_code == 204:
            return None
        if response.status_code >= 400:
            raise SourceError(f"{source.name} returned HTTP {response.status_code}", source=source.name)

        try:
            return response.json()
        except ValueError as e:
            raise MalformedBidResponse(f"{source.name} returned non-JSON body", source=source.name) from e

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
