"""
URL Prober

Checks whether a candidate stream URL is serving live audio right now by
requesting a small byte range and waiting for the first body bytes.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from config import settings
from errors import FetchStatusError, FetchTimeout, NoDataReceived

logger = logging.getLogger(__name__)

LIVE_STATUS_CODES = (200, 206)


@dataclass
class ProbeResult:
    url: str
    is_live: bool
    elapsed: float
    reason: Optional[str] = None


class StreamProber:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        connect_timeout: float = settings.PROBE_CONNECT_TIMEOUT,
        first_byte_timeout: float = settings.PROBE_FIRST_BYTE_TIMEOUT,
        range_bytes: int = settings.PROBE_RANGE_BYTES,
        user_agent: str = settings.DEFAULT_USER_AGENT
    ):
        self.http_client = http_client
        self.connect_timeout = connect_timeout
        self.first_byte_timeout = first_byte_timeout
        self.range_bytes = range_bytes
        self.user_agent = user_agent

    async def probe(
        self,
        url: str,
        connect_timeout: Optional[float] = None,
        first_byte_timeout: Optional[float] = None
    ) -> bool:
        """Return True only if ``url`` delivered body bytes within budget"""
        result = await self.check(url, connect_timeout, first_byte_timeout)
        return result.is_live

    async def check(
        self,
        url: str,
        connect_timeout: Optional[float] = None,
        first_byte_timeout: Optional[float] = None
    ) -> ProbeResult:
        """Probe ``url`` and report liveness with elapsed time and failure reason.

        Never raises (cancellation aside). The upstream response is closed as
        soon as the first chunk arrives or the probe fails.
        """
        connect_timeout = connect_timeout if connect_timeout is not None else self.connect_timeout
        first_byte_timeout = first_byte_timeout if first_byte_timeout is not None else self.first_byte_timeout
        loop = asyncio.get_event_loop()
        started = loop.time()

        headers = {
            'User-Agent': self.user_agent,
            'Accept': '*/*',
            'Accept-Encoding': 'identity',
            'Range': f"bytes=0-{self.range_bytes - 1}"
        }

        try:
            request = self.http_client.build_request(
                'GET', url, headers=headers, timeout=httpx.Timeout(connect_timeout))
            try:
                response = await asyncio.wait_for(
                    self.http_client.send(request, stream=True), timeout=connect_timeout)
            except (asyncio.TimeoutError, httpx.TimeoutException):
                raise FetchTimeout(f"No response within {connect_timeout}s")

            try:
                if response.status_code not in LIVE_STATUS_CODES:
                    raise FetchStatusError(response.status_code, url)
                try:
                    chunk = await asyncio.wait_for(
                        self._first_chunk(response), timeout=first_byte_timeout)
                except (asyncio.TimeoutError, httpx.TimeoutException):
                    raise NoDataReceived(f"No data within {first_byte_timeout}s")
                if not chunk:
                    raise NoDataReceived("Upstream closed without sending data")
            finally:
                await response.aclose()

        except Exception as e:
            elapsed = loop.time() - started
            reason = f"{type(e).__name__}: {e}"
            logger.info(f"Probe failed for {url} after {elapsed:.2f}s ({reason})")
            return ProbeResult(url=url, is_live=False, elapsed=elapsed, reason=reason)

        elapsed = loop.time() - started
        logger.debug(f"Probe succeeded for {url} in {elapsed:.2f}s")
        return ProbeResult(url=url, is_live=True, elapsed=elapsed)

    @staticmethod
    async def _first_chunk(response: httpx.Response) -> bytes:
        async for chunk in response.aiter_raw():
            if chunk:
                return chunk
        return b""
