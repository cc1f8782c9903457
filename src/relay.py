"""
Relay Handler

Per-request byte-for-byte relay of the active upstream to one client. Each
request owns exactly one upstream connection, held by a RelaySession that is
released on every exit path.
"""

import asyncio
import logging
import re
import uuid
from contextlib import AsyncExitStack
from typing import AsyncIterator, Dict, Optional

import httpx
from fastapi import Request, Response
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from config import settings
from errors import (
    AllBackupsExhausted,
    ClientDisconnected,
    FetchStatusError,
    NoDataReceived,
    UpstreamStreamError,
)
from failover import FailoverSelector
from prober import StreamProber
from source_state import BackupList, SourceStateCell

logger = logging.getLogger(__name__)

MOBILE_UA_PATTERN = re.compile(
    r"Mobile|Android|iPhone|iPad|iPod|Opera Mini|IEMobile", re.IGNORECASE)

STREAM_RESPONSE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Transfer-Encoding": "chunked",
    "X-Content-Type-Options": "nosniff",
    "Accept-Ranges": "none",
}


def is_mobile_user_agent(user_agent: Optional[str]) -> bool:
    return bool(user_agent and MOBILE_UA_PATTERN.search(user_agent))


class RelaySession:
    """One upstream connection plus the task reading it.

    Chunks are handed over through a bounded queue; ``None`` marks the end of
    the upstream body and an UpstreamStreamError instance marks a failure.
    ``aclose`` may be called any number of times from any exit path.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        url: str,
        headers: Dict[str, str],
        timeout: httpx.Timeout,
        queue_size: int = settings.RELAY_QUEUE_CHUNKS
    ):
        self.http_client = http_client
        self.url = url
        self.headers = headers
        self.timeout = timeout
        self.response: Optional[httpx.Response] = None
        self._chunks: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._stack = AsyncExitStack()

    async def open(self) -> httpx.Response:
        """Connect upstream and start reading; raises before any client bytes exist"""
        request = self.http_client.build_request(
            'GET', self.url, headers=self.headers, timeout=self.timeout)
        try:
            response = await self.http_client.send(request, stream=True, follow_redirects=True)
        except httpx.HTTPError as e:
            raise UpstreamStreamError(f"{type(e).__name__}: {e}") from e

        self._stack.push_async_callback(response.aclose)
        if not response.is_success:
            raise FetchStatusError(response.status_code, self.url)

        logger.info(
            f"Provider connected: {response.status_code}, Content-Type: {response.headers.get('content-type')}")
        reader = asyncio.create_task(self._pump(response))
        # Cancel the reader before closing the response it reads from
        self._stack.callback(reader.cancel)
        self.response = response
        return response

    async def _pump(self, response: httpx.Response):
        try:
            async for chunk in response.aiter_bytes():
                if chunk:
                    await self._chunks.put(chunk)
        except Exception as e:
            await self._chunks.put(UpstreamStreamError(f"{type(e).__name__}: {e}"))
            return
        await self._chunks.put(None)

    async def next_chunk(self) -> Optional[bytes]:
        item = await self._chunks.get()
        if isinstance(item, UpstreamStreamError):
            raise item
        return item

    async def aclose(self):
        # Shielded so a cancelled caller cannot interrupt the release
        await asyncio.shield(self._stack.aclose())


class RelayHandler:
    def __init__(
        self,
        state: SourceStateCell,
        backups: BackupList,
        prober: StreamProber,
        selector: FailoverSelector,
        http_client: httpx.AsyncClient,
        relay_timeout: float = settings.RELAY_TIMEOUT,
        mobile_relay_timeout: float = settings.MOBILE_RELAY_TIMEOUT,
        read_timeout: float = settings.RELAY_READ_TIMEOUT,
        first_byte_timeout: float = settings.FIRST_BYTE_TIMEOUT,
        keepalive_interval: float = settings.KEEPALIVE_INTERVAL,
        user_agent: str = settings.DEFAULT_USER_AGENT
    ):
        self.state = state
        self.backups = backups
        self.prober = prober
        self.selector = selector
        self.http_client = http_client
        self.relay_timeout = relay_timeout
        self.mobile_relay_timeout = mobile_relay_timeout
        self.read_timeout = read_timeout
        self.first_byte_timeout = first_byte_timeout
        self.keepalive_interval = keepalive_interval
        self.user_agent = user_agent

    async def ensure_live_source(self) -> str:
        """Re-probe the active URL, failing over first if it is dead.

        Returns the URL to relay; on exhaustion this is the unverified
        last-set URL.
        """
        current = self.state.active_url
        if await self.prober.probe(current):
            return current

        logger.warning(f"Active stream URL failed probe before relay: {current}")
        try:
            source = await self.selector.select_backup(self.state, self.backups)
            return source.url
        except AllBackupsExhausted as e:
            logger.warning(f"{e}; relaying unverified URL {self.state.active_url}")
            return self.state.active_url

    def upstream_headers(self, mobile: bool) -> Dict[str, str]:
        headers = {
            'User-Agent': self.user_agent,
            'Accept': '*/*',
            'Accept-Encoding': 'identity;q=1, *;q=0',
            'Range': 'bytes=0-'
        }
        if mobile:
            headers['Cache-Control'] = 'no-cache, no-store'
            headers['X-Session-ID'] = uuid.uuid4().hex
        return headers

    def upstream_timeout(self, mobile: bool) -> httpx.Timeout:
        connect = self.mobile_relay_timeout if mobile else self.relay_timeout
        return httpx.Timeout(connect, read=self.read_timeout)

    async def handle_stream(self, request: Request) -> Response:
        mobile = is_mobile_user_agent(request.headers.get('user-agent'))
        url = await self.ensure_live_source()
        logger.info(
            f"Stream request received ({'mobile' if mobile else 'desktop'}), using URL: {url}")

        session = RelaySession(
            self.http_client,
            url,
            headers=self.upstream_headers(mobile),
            timeout=self.upstream_timeout(mobile)
        )

        try:
            await session.open()
            first_chunk = await self._await_first_chunk(request, session)
        except NoDataReceived as e:
            await session.aclose()
            logger.warning(f"No data from radio stream {url}: {e}")
            return PlainTextResponse("Radio stream timed out", status_code=504)
        except ClientDisconnected:
            await session.aclose()
            logger.info("Client disconnected before stream started")
            return Response(status_code=200, media_type="audio/mpeg")
        except (UpstreamStreamError, FetchStatusError) as e:
            await session.aclose()
            logger.error(f"Error connecting to radio stream: {e}")
            return PlainTextResponse("Error connecting to radio stream", status_code=500)
        except Exception as e:
            await session.aclose()
            logger.error(f"Unexpected error opening radio stream: {type(e).__name__}: {e}")
            return PlainTextResponse("Error connecting to radio stream", status_code=500)

        return StreamingResponse(
            self._relay(request, session, first_chunk),
            status_code=200,
            media_type="audio/mpeg",
            headers=STREAM_RESPONSE_HEADERS,
            # Runs even if the body iterator never started
            background=BackgroundTask(session.aclose)
        )

    async def _await_first_chunk(self, request: Request, session: RelaySession) -> bytes:
        chunk_task = asyncio.ensure_future(session.next_chunk())
        disconnect_task = asyncio.ensure_future(wait_for_disconnect(request))
        try:
            done, _ = await asyncio.wait(
                {chunk_task, disconnect_task},
                timeout=self.first_byte_timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            chunk_task.cancel()
            disconnect_task.cancel()

        if chunk_task in done:
            chunk = chunk_task.result()
            if not chunk:
                raise NoDataReceived("Upstream closed before sending data")
            return chunk
        if disconnect_task in done:
            raise ClientDisconnected()
        raise NoDataReceived(f"No data within {self.first_byte_timeout}s")

    async def _relay(self, request: Request, session: RelaySession, first_chunk: bytes) -> AsyncIterator[bytes]:
        bytes_served = 0
        chunk_task: Optional[asyncio.Future] = None
        disconnect_task = asyncio.ensure_future(wait_for_disconnect(request))
        try:
            yield first_chunk
            bytes_served += len(first_chunk)

            while True:
                if chunk_task is None:
                    chunk_task = asyncio.ensure_future(session.next_chunk())
                done, _ = await asyncio.wait(
                    {chunk_task, disconnect_task},
                    timeout=self.keepalive_interval,
                    return_when=asyncio.FIRST_COMPLETED
                )

                if chunk_task in done:
                    finished, chunk_task = chunk_task, None
                    chunk = finished.result()
                    if chunk is None:
                        logger.info(f"Upstream stream ended after {bytes_served} bytes")
                        break
                    yield chunk
                    bytes_served += len(chunk)
                elif disconnect_task in done:
                    raise ClientDisconnected()
                else:
                    # Idle upstream: empty write keeps intermediaries from timing out
                    logger.debug("Sending keep-alive to client")
                    yield b""

        except ClientDisconnected:
            logger.info(f"Client disconnected, cleaning up stream ({bytes_served} bytes served)")
        except UpstreamStreamError as e:
            # Headers are already on the wire; all we can do is end the body
            logger.warning(f"Stream error after {bytes_served} bytes, ending response: {e}")
        except (ConnectionResetError, ConnectionError, BrokenPipeError) as e:
            logger.info(f"Client connection dropped: {type(e).__name__}")
        finally:
            if chunk_task is not None:
                chunk_task.cancel()
            disconnect_task.cancel()
            await session.aclose()


async def wait_for_disconnect(request: Request):
    """Block until the ASGI server reports the client has gone away"""
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return
