"""
Creative retrieval for winning bids.

A winning bid either carries its creative inline (VAST markup) or only a
reference (creative URL or win-notice URL). References get one synchronous
fetch with `requests`, run off the event loop via `asyncio.to_thread`. When
the fetch fails, a minimal fallback VAST descriptor is substituted so the
slot still resolves as filled, and the result is flagged for creative
quality tracking.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from xml.sax.saxutils import escape

import requests

from .. import config
from ..demand.base import Bid

logger = logging.getLogger(__name__)

FALLBACK_MEDIA_URL = "https://commondatastorage.googleapis.com/gtv-videos-bucket/sample/BigBuckBunny.mp4"
FALLBACK_IMPRESSION_URL = "https://example.com/impression"


class CreativeRetrievalFailure(Exception):
    """Raised when a creative reference cannot be fetched."""

    pass


@dataclass
class ResolvedCreative:
    """
    Creative ready for playback.

    Attributes:
        markup: VAST document.
        source_url: URL it was fetched from, if any.
        is_fallback: True when the fallback descriptor was substituted.
    """

    markup: str
    source_url: Optional[str] = None
    is_fallback: bool = False


def _format_duration(seconds: int) -> str:
    return f"{seconds // 3600:02d}:{(seconds % 3600) // 60:02d}:{seconds % 60:02d}"


def fallback_creative(bid: Bid, duration: int = 30) -> str:
    """
    Minimal VAST descriptor used when the real creative is unavailable.

    Args:
        bid: Winning bid.
        duration: Slot duration in seconds.
    """
    ad_id = escape(bid.bid_id or "fallback")
    impression = bid.notice_url or FALLBACK_IMPRESSION_URL
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<VAST version="4.0">\n'
        f'  <Ad id="{ad_id}">\n'
        "    <InLine>\n"
        f"      <AdSystem>{escape(bid.source)}</AdSystem>\n"
        "      <AdTitle>Fallback Video Ad</AdTitle>\n"
        f"      <Impression><![CDATA[{impression}]]></Impression>\n"
        "      <Creatives>\n"
        "        <Creative>\n"
        "          <Linear>\n"
        f"            <Duration>{_format_duration(duration)}</Duration>\n"
        "            <MediaFiles>\n"
        '              <MediaFile delivery="progressive" type="video/mp4" width="1920" height="1080">\n'
        f"                <![CDATA[{FALLBACK_MEDIA_URL}]]>\n"
        "              </MediaFile>\n"
        "            </MediaFiles>\n"
        "          </Linear>\n"
        "        </Creative>\n"
        "      </Creatives>\n"
        "    </InLine>\n"
        "  </Ad>\n"
        "</VAST>"
    )


class CreativeFetcher:
    """
    Resolves a winning bid to playable creative markup.

    Attributes:
        timeout: Fetch timeout in seconds.
        fetches: Number of fetches attempted.
        failures: Number of fetches that fell back.
    """

    def __init__(
        self,
        timeout: float = config.CREATIVE_FETCH_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()
        self.fetches = 0
        self.failures = 0

    def fetch(self, url: str) -> str:
        """
        Fetch a creative document.

        Raises:
            CreativeRetrievalFailure: On transport errors, HTTP errors or an
                empty body.
        """
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise CreativeRetrievalFailure(f"Creative fetch from {url} failed: {e}") from e

        body = response.text.strip()
        if not body:
            raise CreativeRetrievalFailure(f"Creative fetch from {url} returned an empty body")
        return body

    @staticmethod
    def reference_for(bid: Bid) -> Optional[str]:
        """URL to fetch for a bid without inline markup."""
        for ref in (bid.creative_ref, bid.notice_url):
            if ref and ref.startswith(("http://", "https://")):
                return ref
        return None

    async def resolve(self, bid: Bid, duration: int = 30) -> ResolvedCreative:
        """
        Resolve a bid's creative, falling back when it cannot be fetched.

        Args:
            bid: Winning bid.
            duration: Slot duration, used by the fallback descriptor.

        Returns:
            ResolvedCreative; `is_fallback` marks substituted creatives.
        """
        if bid.has_inline_creative:
            return ResolvedCreative(markup=bid.creative_markup)

        url = self.reference_for(bid)
        try:
            if url is None:
                raise CreativeRetrievalFailure(f"{bid.source}: winning bid carries no creative reference")
            self.fetches += 1
            markup = await asyncio.to_thread(self.fetch, url)
        except CreativeRetrievalFailure as e:
            self.failures += 1
            logger.warning(f"CreativeRetrievalFailure: {e}; substituting fallback creative")
            return ResolvedCreative(markup=fallback_creative(bid, duration), source_url=url, is_fallback=True)

        logger.debug(f"{bid.source}: creative fetched from {url}")
        return ResolvedCreative(markup=markup, source_url=url)

    def close(self) -> None:
        self.session.close()
