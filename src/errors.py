"""Error kinds raised inside the source resolution and relay engine."""

from typing import Optional


class RelayError(Exception):
    """Base class for stream engine errors"""


class FetchTimeout(RelayError):
    """An upstream did not answer within its time budget"""


class FetchStatusError(RelayError):
    """An upstream answered with a status other than 2xx/206"""

    def __init__(self, status_code: int, url: Optional[str] = None):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Unexpected status {status_code}" + (f" from {url}" if url else ""))


class NoDataReceived(RelayError):
    """Headers arrived but no body bytes followed in time"""


class ExtractionMiss(RelayError):
    """The source page did not contain a stream URL"""


class AllBackupsExhausted(RelayError):
    """Every failover candidate probed dead"""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"No live source after {attempts} probe(s)")


class ClientDisconnected(RelayError):
    """The relay client went away before the stream started"""


class UpstreamStreamError(RelayError):
    """The upstream connection failed while relaying"""
