"""Now-playing title updates for Icecast and Shoutcast targets."""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import quote, urlencode

import aiohttp
from loguru import logger

from .config import ProtocolKind
from .errors import MetadataError, ProtocolAuthError
from .protocol import SourceTarget, basic_auth

METADATA_TIMEOUT = 10.0


@dataclass(frozen=True)
class MetadataRequest:
    url: str
    headers: Dict[str, str]


def build_metadata_request(target: SourceTarget, title: str) -> MetadataRequest:
    """Build the admin request that sets the current song title.

    Icecast::

        http://host:port/admin/metadata?mode=updinfo&mount=/live&song=Title

    authenticated as ``user:pass``.  Shoutcast::

        http://host:port/admin.cgi?mode=updinfo&pass=secret&song=Title&sid=1

    authenticated as ``admin:pass``.
    """
    base = f'http://{target.host}:{target.port}'
    if target.type is ProtocolKind.SHOUTCAST:
        query = urlencode(
            {'mode': 'updinfo', 'pass': target.password, 'song': title, 'sid': '1'},
            quote_via=quote,
        )
        url = f'{base}/admin.cgi?{query}'
        auth = basic_auth('admin', target.password)
    else:
        query = urlencode(
            {'mode': 'updinfo', 'mount': target.mount, 'song': title},
            quote_via=quote,
            safe='/',
        )
        url = f'{base}/admin/metadata?{query}'
        auth = basic_auth(target.user, target.password)
    return MetadataRequest(url=url, headers={'Authorization': auth})


async def update_metadata(
    target: SourceTarget,
    title: str,
    session: Optional[aiohttp.ClientSession] = None,
    timeout: float = METADATA_TIMEOUT,
) -> int:
    """Push *title* to the target server.

    Args:
        target: Server and credentials
        title: New now-playing title
        session: Optional client session to reuse
        timeout: Total request timeout in seconds

    Returns:
        The HTTP status of the server reply

    Raises:
        ProtocolAuthError: If the server answers 401/403
        MetadataError: On any other failure
    """
    request = build_metadata_request(target, title)
    owns_session = session is None
    if owns_session:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout))
    try:
        async with session.get(request.url, headers=request.headers) as response:
            body = await response.text(errors='replace')
            if response.status in (401, 403):
                raise ProtocolAuthError(f'Metadata update rejected: {response.status} {response.reason}')
            if response.status >= 400:
                raise MetadataError(
                    f'Metadata update failed: {response.status} {body.strip()[:200]}',
                    status=response.status,
                )
            logger.debug(f'Metadata updated on {target.host}:{target.port}: {title!r}')
            return response.status
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as error:
        raise MetadataError(f'Metadata update failed: {error}') from error
    finally:
        if owns_session:
            await session.close()
