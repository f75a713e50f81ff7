"""Error taxonomy for the broadcast session engine.

Every failure that can cross a component boundary is expressed as one of the
classes below.  Library errors (``OSError``, ``aiohttp.ClientError``,
``asyncio.TimeoutError``) are caught where they happen and re-raised as the
matching taxonomy error so that :class:`~livecast.core.session.BroadcastSession`
only has to handle :class:`LivecastError`.
"""

from enum import Enum
from typing import Optional


class CloseReason(str, Enum):
    """Why a transport channel was closed."""

    OPERATOR = "operator"
    AUTH_FAILED = "auth_failed"
    UPSTREAM_ERROR = "upstream_error"
    NETWORK = "network"


class LivecastError(Exception):
    """Base class for all engine errors."""


class DeviceAccessError(LivecastError):
    """The input device could not be opened (permission denied / no device)."""


class ConnectError(LivecastError):
    """Channel or TCP establishment failed before any audio was sent."""


class ProtocolAuthError(ConnectError):
    """The target server rejected the source handshake."""


class UnsupportedCodecError(LivecastError):
    """No codec in the fallback chain is available in the runtime."""


class WriteError(LivecastError):
    """Sending a chunk on an established transport failed."""

    def __init__(self, message: str, reason: Optional[CloseReason] = None) -> None:
        super().__init__(message)
        self.reason = reason or CloseReason.NETWORK


class MetadataError(LivecastError):
    """A now-playing title update was refused or could not be delivered."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class SessionStateError(LivecastError):
    """The requested operation is not allowed in the current session state."""
