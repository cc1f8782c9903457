"""
Source Resolver

Periodically re-derives the primary stream URL from the source page and keeps
the active URL pointed at something that is actually live.
"""

import asyncio
import logging
import re
from typing import Optional, Protocol

import httpx

from config import settings
from errors import AllBackupsExhausted, ExtractionMiss, FetchStatusError, FetchTimeout
from failover import FailoverSelector
from prober import StreamProber
from source_state import BackupList, SourceStateCell

logger = logging.getLogger(__name__)

MP3_URL_PATTERN = r"https://[^\"'\s]+\.mp3[^\"'\s]*"


class CandidateExtractor(Protocol):
    def extract(self, body: str) -> Optional[str]:
        ...


class RegexCandidateExtractor:
    """Returns the first substring of the page matching ``pattern``"""

    def __init__(self, pattern: str = MP3_URL_PATTERN):
        self.pattern = re.compile(pattern)

    def extract(self, body: str) -> Optional[str]:
        match = self.pattern.search(body)
        return match.group(0) if match else None


class SourceResolver:
    def __init__(
        self,
        state: SourceStateCell,
        backups: BackupList,
        prober: StreamProber,
        selector: FailoverSelector,
        http_client: httpx.AsyncClient,
        page_url: str = settings.SOURCE_PAGE_URL,
        extractor: Optional[CandidateExtractor] = None,
        interval: float = settings.RESOLVE_INTERVAL,
        page_timeout: float = settings.PAGE_FETCH_TIMEOUT,
        user_agent: str = settings.DEFAULT_USER_AGENT
    ):
        self.state = state
        self.backups = backups
        self.prober = prober
        self.selector = selector
        self.http_client = http_client
        self.page_url = page_url
        self.extractor = extractor or RegexCandidateExtractor()
        self.interval = interval
        self.page_timeout = page_timeout
        self.user_agent = user_agent
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self):
        """Resolve once immediately, then every ``interval`` seconds"""
        self._running = True
        self._task = asyncio.create_task(self._periodic_resolve())
        logger.info(
            f"Source resolver started (page: {self.page_url}, interval: {self.interval}s)")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Source resolver stopped")

    async def _periodic_resolve(self):
        while self._running:
            try:
                await self.resolve_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic source resolution: {e}")
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break

    async def resolve_once(self):
        """One resolution cycle. Never raises except on cancellation."""
        logger.info("Attempting to update stream URL...")
        try:
            candidate = await self.discover_candidate()
            logger.info(f"Found candidate stream URL: {candidate}")
            if await self.prober.probe(candidate):
                self.state.adopt_primary(candidate)
                logger.info("Stream URL updated successfully")
                return
            logger.info("Candidate URL is not live, verifying current source")
        except (FetchTimeout, FetchStatusError, ExtractionMiss, httpx.HTTPError) as e:
            logger.warning(f"Source page resolution failed: {type(e).__name__}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error resolving stream URL: {type(e).__name__}: {e}")

        try:
            await self.verify_current()
        except Exception as e:
            logger.error(f"Error verifying current stream URL: {type(e).__name__}: {e}")

    async def discover_candidate(self) -> str:
        """Fetch the source page and extract a candidate stream URL"""
        try:
            response = await self.http_client.get(
                self.page_url,
                headers={'User-Agent': self.user_agent},
                timeout=self.page_timeout,
                follow_redirects=True
            )
        except httpx.TimeoutException as e:
            raise FetchTimeout(f"Source page timed out: {e}")

        if not response.is_success:
            raise FetchStatusError(response.status_code, self.page_url)

        candidate = self.extractor.extract(response.text)
        if not candidate:
            raise ExtractionMiss(f"No stream URL found in {self.page_url}")
        return candidate

    async def verify_current(self):
        """Keep the active URL if it is live, otherwise fail over"""
        current = self.state.active_url
        if await self.prober.probe(current):
            logger.info(f"Current stream URL still live: {current}")
            return
        logger.warning(f"Current stream URL is dead, failing over: {current}")
        try:
            await self.selector.select_backup(self.state, self.backups)
        except AllBackupsExhausted as e:
            logger.warning(f"Failover exhausted: {e}; keeping {self.state.active_url}")
