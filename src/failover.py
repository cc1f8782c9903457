"""
Failover Selector

Finds a working stream URL when the active one is dead: the last-known-good
URL first, then one full rotation through the backup list starting after the
persisted cursor.
"""

import logging

from errors import AllBackupsExhausted
from prober import StreamProber
from source_state import BackupList, SourceStateCell, SourceTier, StreamSource

logger = logging.getLogger(__name__)


class FailoverSelector:
    def __init__(self, prober: StreamProber):
        self.prober = prober

    async def select_backup(self, state: SourceStateCell, backups: BackupList) -> StreamSource:
        """Switch the active URL to a live candidate and return it.

        Raises AllBackupsExhausted when nothing probes live; the state is
        left untouched in that case so callers keep the last-set URL.
        """
        snapshot = state.snapshot
        attempts = 0

        last_good = snapshot.last_known_good_url
        if last_good and last_good != snapshot.active_url:
            attempts += 1
            if await self.prober.probe(last_good):
                logger.info(f"Last known good source recovered: {last_good}")
                state.update(active_url=last_good)
                tier = SourceTier.BACKUP if any(s.url == last_good for s in backups) else SourceTier.PRIMARY
                return StreamSource(url=last_good, tier=tier)

        total = len(backups)
        start = snapshot.backup_cursor % total if total else 0
        cursor = start
        for _ in range(total):
            cursor = (cursor + 1) % total
            candidate = backups[cursor]
            attempts += 1
            logger.info(f"Trying backup #{cursor}: {candidate.url}")
            if await self.prober.probe(candidate.url):
                state.update(active_url=candidate.url, backup_cursor=cursor)
                logger.info(f"Failover to backup #{cursor} successful")
                return candidate

        logger.warning(
            f"All {total} backup source(s) failed, keeping {state.active_url}")
        raise AllBackupsExhausted(attempts)
