"""
Source Manager

Owns the process-wide stream engine: shared HTTP clients, the current-source
state cell, and the prober / failover / resolver / relay components wired
around it.
"""

import logging
from typing import List, Optional

import httpx

from config import settings
from failover import FailoverSelector
from prober import StreamProber
from relay import RelayHandler
from resolver import CandidateExtractor, SourceResolver
from source_state import BackupList, SourceStateCell

logger = logging.getLogger(__name__)


class SourceManager:
    def __init__(
        self,
        backup_urls: Optional[List[str]] = None,
        page_url: Optional[str] = None,
        extractor: Optional[CandidateExtractor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.backups = BackupList(backup_urls if backup_urls is not None else settings.BACKUP_STREAM_URLS)
        self.state = SourceStateCell.from_backups(self.backups)

        # Probe and page client: short-lived requests, fail fast
        self.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=settings.PROBE_CONNECT_TIMEOUT,
                read=settings.PAGE_FETCH_TIMEOUT,
                write=settings.PAGE_FETCH_TIMEOUT,
                pool=10.0
            ),
            follow_redirects=True,
            max_redirects=5,
            limits=httpx.Limits(
                max_keepalive_connections=10,
                max_connections=50,
                keepalive_expiry=30.0
            ),
            transport=transport
        )

        # Relay client: one long-lived connection per listener, never reused
        self.relay_client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                settings.RELAY_TIMEOUT,
                read=settings.RELAY_READ_TIMEOUT
            ),
            follow_redirects=True,
            max_redirects=5,
            limits=httpx.Limits(
                max_keepalive_connections=0,
                max_connections=100
            ),
            transport=transport
        )

        self.prober = StreamProber(self.http_client)
        self.selector = FailoverSelector(self.prober)
        self.resolver = SourceResolver(
            self.state,
            self.backups,
            self.prober,
            self.selector,
            self.http_client,
            page_url=page_url or settings.SOURCE_PAGE_URL,
            extractor=extractor
        )
        self.relay = RelayHandler(
            self.state,
            self.backups,
            self.prober,
            self.selector,
            self.relay_client
        )

    async def start(self):
        """Start periodic source resolution"""
        await self.resolver.start()
        logger.info(
            f"Source manager started with {len(self.backups)} backup source(s), active: {self.state.active_url}")

    async def stop(self):
        await self.resolver.stop()
        await self.http_client.aclose()
        await self.relay_client.aclose()
        logger.info("Source manager stopped")
