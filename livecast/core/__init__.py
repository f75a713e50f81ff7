"""Core broadcast engine for livecast."""

from .capture import AudioTap, CaptureGraph
from .config import AppConfig
from .encoder import EncoderPipeline, negotiate_format
from .errors import (
    CloseReason,
    ConnectError,
    DeviceAccessError,
    LivecastError,
    ProtocolAuthError,
    SessionStateError,
    UnsupportedCodecError,
    WriteError,
)
from .log import SessionLog
from .session import BroadcastSession, SessionState
from .storage import StorageManager, format_file_name
from .transport import create_transport

__all__ = [
    "AppConfig",
    "AudioTap",
    "BroadcastSession",
    "CaptureGraph",
    "CloseReason",
    "ConnectError",
    "DeviceAccessError",
    "EncoderPipeline",
    "LivecastError",
    "ProtocolAuthError",
    "SessionLog",
    "SessionState",
    "SessionStateError",
    "StorageManager",
    "UnsupportedCodecError",
    "WriteError",
    "create_transport",
    "format_file_name",
    "negotiate_format",
]
