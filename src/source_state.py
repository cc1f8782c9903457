"""
Current-source bookkeeping shared by the resolver and the relay.

The state is a small immutable record held in a cell. Writers always swap in a
complete new record without awaiting in between, so concurrent tasks on the
event loop can never observe a half-updated state.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)


class SourceTier(str, Enum):
    PRIMARY = "primary"  # discovered from the source page
    BACKUP = "backup"  # configured fallback list


@dataclass(frozen=True)
class StreamSource:
    url: str
    tier: SourceTier = SourceTier.BACKUP


class BackupList:
    """Ordered, fixed sequence of fallback sources"""

    def __init__(self, urls: Iterable[str]):
        self._sources: Tuple[StreamSource, ...] = tuple(
            StreamSource(url=url, tier=SourceTier.BACKUP) for url in urls)

    def __len__(self) -> int:
        return len(self._sources)

    def __getitem__(self, index: int) -> StreamSource:
        return self._sources[index]

    def __iter__(self) -> Iterator[StreamSource]:
        return iter(self._sources)

    def __repr__(self) -> str:
        return f"BackupList({[s.url for s in self._sources]!r})"


@dataclass(frozen=True)
class CurrentSourceState:
    active_url: str
    backup_cursor: int = 0
    last_known_good_url: Optional[str] = None


class SourceStateCell:
    """Single-owner mutable cell around CurrentSourceState.

    Only touched from the event loop thread; no lock is needed because
    ``update`` never suspends.
    """

    def __init__(self, initial: CurrentSourceState):
        self._state = initial

    @classmethod
    def from_backups(cls, backups: BackupList) -> "SourceStateCell":
        """Start on the first backup entry until a resolution succeeds"""
        if not len(backups):
            raise ValueError("At least one backup stream URL is required")
        return cls(CurrentSourceState(active_url=backups[0].url, backup_cursor=0))

    @property
    def snapshot(self) -> CurrentSourceState:
        return self._state

    @property
    def active_url(self) -> str:
        return self._state.active_url

    def update(self, **changes) -> CurrentSourceState:
        """Replace the whole record with the given fields changed"""
        previous = self._state
        self._state = replace(previous, **changes)
        if previous.active_url != self._state.active_url:
            logger.info(
                f"Active source changed: {previous.active_url} -> {self._state.active_url}")
        return self._state

    def adopt_primary(self, url: str) -> CurrentSourceState:
        """Make a freshly discovered URL active, remembering the previous one"""
        previous = self._state
        if previous.active_url == url:
            return previous
        return self.update(active_url=url, last_known_good_url=previous.active_url)
