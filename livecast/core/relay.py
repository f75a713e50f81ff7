"""WebSocket-to-TCP relay for Icecast / Shoutcast sources.

Clients open ``/stream?host=..&port=..&user=..&pass=..&mount=..&type=..``
as a WebSocket.  For each channel the relay opens a TCP connection to the
target, writes the source handshake and then copies every binary frame to
the socket unchanged.

The first bytes the target answers with are forwarded to the client as a
text frame.  If they contain an authentication rejection the channel is
closed with code 1008; any upstream socket failure closes it with 1011.

``/metadata`` performs a now-playing title update on behalf of the client,
``/healthz`` reports liveness.
"""

import asyncio
from typing import Optional

from aiohttp import WSMsgType, web
from loguru import logger

from .config import RelaySettings
from .errors import LivecastError
from .metadata import update_metadata
from .protocol import (
    AUTH_FAILED_MESSAGE,
    CLOSE_AUTH_FAILED,
    CLOSE_UPSTREAM_ERROR,
    UPSTREAM_ERROR_MESSAGE,
    SourceTarget,
    build_handshake,
    is_auth_rejection,
)

READ_SIZE = 4096

RELAY_SETTINGS = web.AppKey('relay_settings', RelaySettings)


class RelayChannel:
    """One client channel bridged to one upstream TCP connection."""

    def __init__(self, ws: web.WebSocketResponse, target: SourceTarget, settings: RelaySettings) -> None:
        self.ws = ws
        self.target = target
        self.settings = settings
        self.bytes_forwarded = 0
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def label(self) -> str:
        return f'{self.target.host}:{self.target.port}{self.target.mount}'

    async def run(self) -> None:
        try:
            reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.target.host, self.target.port),
                self.settings.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as error:
            logger.warning(f'Upstream connection to {self.label} failed: {error or type(error).__name__}')
            await self._close(CLOSE_UPSTREAM_ERROR, UPSTREAM_ERROR_MESSAGE)
            return

        logger.info(f'Connected to {self.target.type.value} server {self.label}')
        monitor = asyncio.ensure_future(self._watch_upstream(reader))
        try:
            self._writer.write(build_handshake(self.target, self.settings))
            await self._writer.drain()
            async for msg in self.ws:
                if msg.type == WSMsgType.BINARY:
                    self._writer.write(msg.data)
                    await self._writer.drain()
                    self.bytes_forwarded += len(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(f'Client channel error: {self.ws.exception()}')
                    break
        except (ConnectionError, OSError) as error:
            logger.warning(f'Upstream write to {self.label} failed: {error}')
            await self._close(CLOSE_UPSTREAM_ERROR, UPSTREAM_ERROR_MESSAGE)
        finally:
            monitor.cancel()
            await self._close_upstream()
            logger.info(f'Channel to {self.label} closed ({self.bytes_forwarded} bytes forwarded)')

    async def _watch_upstream(self, reader: asyncio.StreamReader) -> None:
        try:
            first = await reader.read(READ_SIZE)
            if first:
                response = first.decode('latin-1')
                logger.debug(f'Upstream response from {self.label}: {response.strip()!r}')
                await self.ws.send_str(response)
                if is_auth_rejection(first):
                    logger.warning(f'Authentication failed on {self.label}')
                    await self._close(CLOSE_AUTH_FAILED, AUTH_FAILED_MESSAGE)
                    return
            while first:
                first = await reader.read(READ_SIZE)
            logger.warning(f'Upstream {self.label} closed the connection')
            await self._close(CLOSE_UPSTREAM_ERROR, 'Upstream Closed')
        except (ConnectionError, OSError) as error:
            logger.warning(f'Upstream read from {self.label} failed: {error}')
            await self._close(CLOSE_UPSTREAM_ERROR, UPSTREAM_ERROR_MESSAGE)

    async def _close(self, code: int, message: str) -> None:
        if not self.ws.closed:
            await self.ws.close(code=code, message=message.encode('utf-8'))

    async def _close_upstream(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def stream_handler(request: web.Request) -> web.StreamResponse:
    try:
        target = SourceTarget.from_query(request.query)
    except ValueError as error:
        return web.Response(status=400, text=str(error))

    ws = web.WebSocketResponse()
    if not ws.can_prepare(request).ok:
        return web.Response(status=426, text='Expected WebSocket upgrade')
    await ws.prepare(request)

    await RelayChannel(ws, target, request.app[RELAY_SETTINGS]).run()
    return ws


async def metadata_handler(request: web.Request) -> web.Response:
    title = request.query.get('title') or request.query.get('song')
    try:
        target = SourceTarget.from_query(request.query, default_user='admin')
    except ValueError as error:
        return web.json_response({'success': False, 'error': str(error)}, status=400)
    if not title:
        return web.json_response({'success': False, 'error': 'Missing title'}, status=400)

    try:
        status = await update_metadata(target, title, timeout=request.app[RELAY_SETTINGS].connect_timeout)
    except LivecastError as error:
        logger.warning(f'Metadata update for {target.host}:{target.port} failed: {error}')
        return web.json_response({'success': False, 'error': str(error)}, status=502)
    return web.json_response({'success': True, 'status': status})


async def healthz_handler(request: web.Request) -> web.Response:
    return web.json_response({'status': 'ok'})


def create_app(settings: Optional[RelaySettings] = None) -> web.Application:
    """Build the relay application."""
    app = web.Application()
    app[RELAY_SETTINGS] = settings or RelaySettings()
    app.router.add_get('/stream', stream_handler)
    app.router.add_get('/metadata', metadata_handler)
    app.router.add_get('/healthz', healthz_handler)
    return app


def run_relay(settings: Optional[RelaySettings] = None) -> None:
    """Serve the relay until interrupted."""
    settings = settings or RelaySettings()
    logger.info(f'Relay listening on ws://{settings.host}:{settings.port}/stream')
    web.run_app(create_app(settings), host=settings.host, port=settings.port, print=None)
