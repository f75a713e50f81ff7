"""Transport bridge: how encoded chunks reach the streaming server.

===========  ===============================================================
Mode         Channel
===========  ===============================================================
``Relay``    WebSocket to the relay, target parameters in the URL query
``Proxy``    WebSocket to a user-hosted proxy, same parameters
``Direct``   Streaming HTTP ``PUT`` straight to the server's mount point
===========  ===============================================================

Every transport exposes ``connect`` / ``send`` / ``disconnect`` and reports
an unsolicited close through its ``on_closed(reason, detail)`` callback.

``Direct`` sends ``Expect: 100-continue`` so the server answers the headers
before any audio is queued.  There is still no explicit success signal: the
connection counts as established if the request has not failed within
:data:`~livecast.core.config.DIRECT_CONNECT_GRACE` seconds.  After that, the
server ending or breaking its reply is reported through ``on_closed``.
"""

import asyncio
from typing import AsyncIterator, Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import aiohttp
from loguru import logger

from .config import (
    DEFAULT_USER_AGENT,
    DIRECT_CONNECT_GRACE,
    ServerProfile,
    StreamingConfig,
    StreamingMode,
)
from .errors import CloseReason, ConnectError, ProtocolAuthError, WriteError
from .protocol import SourceTarget, close_reason_for, source_headers

CONNECT_TIMEOUT = 10.0

ClosedCallback = Callable[[CloseReason, str], None]


def channel_url(base_url: str, target: SourceTarget) -> str:
    """Append the target's channel-establishment parameters to *base_url*."""
    parts = urlsplit(base_url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query += list(target.to_query().items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def redact(url: str) -> str:
    """*url* with the ``pass`` parameter masked, for logging."""
    parts = urlsplit(url)
    query = [(k, '***' if k == 'pass' else v) for k, v in parse_qsl(parts.query, keep_blank_values=True)]
    return urlunsplit(parts._replace(query=urlencode(query)))


class Transport:
    """Base class for streaming channels."""

    mode: StreamingMode

    def __init__(self, on_closed: Optional[ClosedCallback] = None) -> None:
        self.on_closed = on_closed
        self.close_reason: Optional[CloseReason] = None
        self.close_detail = ''
        self._connected = False
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, profile: ServerProfile, config: StreamingConfig) -> None:
        raise NotImplementedError

    async def send(self, chunk: bytes) -> None:
        raise NotImplementedError

    async def disconnect(self) -> None:
        raise NotImplementedError

    def _closed_by_peer(self, reason: CloseReason, detail: str) -> None:
        """Record an unsolicited close and notify the owner once."""
        was_connected, self._connected = self._connected, False
        if self._closing or self.close_reason is not None:
            return
        self.close_reason = reason
        self.close_detail = detail
        logger.debug(f'{self.mode.value} channel closed: {reason.value} {detail}')
        if was_connected and self.on_closed is not None:
            self.on_closed(reason, detail)


class WebSocketTransport(Transport):
    """A WebSocket channel to a relay or proxy."""

    def __init__(
        self,
        on_closed: Optional[ClosedCallback] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        super().__init__(on_closed)
        self.connect_timeout = connect_timeout
        self.server_response = ''
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._watcher: Optional[asyncio.Task] = None

    def base_url(self, config: StreamingConfig) -> str:
        raise NotImplementedError

    async def connect(self, profile: ServerProfile, config: StreamingConfig) -> None:
        """Open the channel.

        Raises:
            ConnectError: If the relay/proxy cannot be reached.
        """
        if self._ws is not None:
            await self.disconnect()
        self._closing = False
        self.close_reason = None
        self.close_detail = ''

        url = channel_url(self.base_url(config), SourceTarget.from_profile(profile))
        logger.debug(f'Opening {self.mode.value} channel {redact(url)}')
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(self._session.ws_connect(url), self.connect_timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as error:
            await self._close_session()
            detail = str(error) or type(error).__name__
            raise ConnectError(f'{self.mode.value} channel to {self.base_url(config)} failed: {detail}') from error

        self._connected = True
        self._watcher = asyncio.ensure_future(self._watch(self._ws))

    async def _watch(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        detail = ''
        while True:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                self.server_response = msg.data
                logger.info(f'Server response: {msg.data.strip()}')
            elif msg.type == aiohttp.WSMsgType.CLOSE:
                detail = msg.extra or ''
                break
            elif msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                break
            elif msg.type == aiohttp.WSMsgType.ERROR:
                detail = str(ws.exception() or '')
                break
        if not self._closing:
            self._closed_by_peer(close_reason_for(ws.close_code), detail)

    async def send(self, chunk: bytes) -> None:
        ws = self._ws
        if not self._connected or ws is None or ws.closed:
            raise WriteError('Channel is closed', reason=self.close_reason)
        try:
            await ws.send_bytes(chunk)
        except (ConnectionError, aiohttp.ClientError, RuntimeError) as error:
            raise WriteError(f'Send failed: {error}') from error

    async def disconnect(self) -> None:
        """Close the channel.  Calling it again is a no-op."""
        self._closing = True
        self._connected = False
        if self.close_reason is None:
            self.close_reason = CloseReason.OPERATOR

        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
        await self._close_session()

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()


class RelayTransport(WebSocketTransport):
    mode = StreamingMode.RELAY

    def base_url(self, config: StreamingConfig) -> str:
        return config.relay_url


class ProxyTransport(WebSocketTransport):
    mode = StreamingMode.PROXY

    def base_url(self, config: StreamingConfig) -> str:
        return config.proxy_url


class DirectTransport(Transport):
    """Streaming ``PUT`` of the encoded audio to ``http://host:port/mount``."""

    mode = StreamingMode.DIRECT

    def __init__(
        self,
        on_closed: Optional[ClosedCallback] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        grace: float = DIRECT_CONNECT_GRACE,
        user_agent: str = DEFAULT_USER_AGENT,
        stream_name: str = 'livecast Live',
    ) -> None:
        super().__init__(on_closed)
        self.connect_timeout = connect_timeout
        self.grace = grace
        self.user_agent = user_agent
        self.stream_name = stream_name
        self._session: Optional[aiohttp.ClientSession] = None
        self._request: Optional[asyncio.Task] = None
        self._queue: 'asyncio.Queue[Optional[bytes]]' = asyncio.Queue()
        self._finished = asyncio.Event()

    async def connect(self, profile: ServerProfile, config: StreamingConfig) -> None:
        """Start the upload and wait out the grace period.

        Raises:
            ProtocolAuthError: If the server rejects the credentials in time.
            ConnectError: If the request fails within the grace period.
        """
        if self._request is not None:
            await self.disconnect()
        self._closing = False
        self.close_reason = None
        self.close_detail = ''
        self._queue = asyncio.Queue()
        self._finished = asyncio.Event()

        target = SourceTarget.from_profile(profile)
        url = f'http://{target.host}:{target.port}{target.mount}'
        headers = source_headers(target, user_agent=self.user_agent, stream_name=self.stream_name)
        del headers['Host']

        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout),
        )
        self._request = asyncio.ensure_future(self._upload(url, headers))
        done, _ = await asyncio.wait({self._request}, timeout=self.grace)
        if self._request in done:
            request, self._request = self._request, None
            await self._close_session()
            error = request.exception()
            if error is None:
                raise ConnectError(f'Server at {url} ended the upload immediately')
            raise error

        self._connected = True
        self._request.add_done_callback(self._upload_finished)
        logger.debug(f'Direct upload to {url} running')

    async def _body(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def _upload(self, url: str, headers: dict) -> None:
        try:
            # headers go out at once; the body waits for 100 Continue
            async with self._session.put(url, data=self._body(), headers=headers, expect100=True) as response:
                if response.status in (401, 403):
                    raise ProtocolAuthError(f'Server rejected credentials: {response.status} {response.reason}')
                if response.status >= 400:
                    raise ConnectError(f'Server refused the stream: {response.status} {response.reason}')
                await self._watch_response(response)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as error:
            raise ConnectError(f'Direct upload to {url} failed: {error or type(error).__name__}') from error

    async def _watch_response(self, response: aiohttp.ClientResponse) -> None:
        """Keep uploading until :meth:`disconnect`.

        The server never ends its reply while it accepts audio, so a reply
        that reaches EOF (or breaks) means the upload was dropped.
        """
        finished = asyncio.ensure_future(self._finished.wait())
        eof = asyncio.ensure_future(response.content.read())
        try:
            done, _ = await asyncio.wait({finished, eof}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            finished.cancel()
            eof.cancel()
        if finished in done:
            if eof.done() and not eof.cancelled():
                eof.exception()
            return
        error = eof.exception()
        if error is not None:
            raise error
        raise ConnectError('Server closed the upload')

    def _upload_finished(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._closing:
            return
        error = task.exception()
        reason = CloseReason.AUTH_FAILED if isinstance(error, ProtocolAuthError) else CloseReason.NETWORK
        self._closed_by_peer(reason, str(error or 'Upload ended'))

    async def send(self, chunk: bytes) -> None:
        if not self._connected:
            raise WriteError('Upload is not running', reason=self.close_reason)
        self._queue.put_nowait(chunk)

    async def disconnect(self) -> None:
        """End the upload.  Calling it again is a no-op."""
        self._closing = True
        self._connected = False
        if self.close_reason is None:
            self.close_reason = CloseReason.OPERATOR

        request, self._request = self._request, None
        if request is not None:
            self._queue.put_nowait(None)
            self._finished.set()
            try:
                await asyncio.wait_for(request, self.grace)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
            except ConnectError as error:
                logger.debug(f'Direct upload ended with: {error}')
        await self._close_session()

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()


TRANSPORTS = {
    StreamingMode.RELAY: RelayTransport,
    StreamingMode.PROXY: ProxyTransport,
    StreamingMode.DIRECT: DirectTransport,
}


def create_transport(mode: StreamingMode, on_closed: Optional[ClosedCallback] = None, **options) -> Transport:
    """Instantiate the transport for *mode*."""
    return TRANSPORTS[StreamingMode.parse(mode)](on_closed=on_closed, **options)
