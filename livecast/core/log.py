"""Operator-facing session log for livecast.

:class:`SessionLog` keeps an append-only list of :class:`LogEntry` records for
the lifetime of the process.  Every entry is also forwarded to loguru at the
matching level and, when a path is given, appended as one JSON line to a log
file next to the recordings.

Example log lines::

    {"timestamp":"2026-02-23T14:30:22","severity":"info","message":"Initializing connection via RELAY..."}
    {"timestamp":"2026-02-23T14:30:23","severity":"success","message":"Streaming started: MP3 [audio/mpeg] @ 128kbps"}
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from loguru import logger


class Severity(str, Enum):
    INFO = 'info'
    WARNING = 'warning'
    ERROR = 'error'
    SUCCESS = 'success'


# loguru has a native SUCCESS level
_LOGURU_LEVELS = {
    Severity.INFO: 'INFO',
    Severity.WARNING: 'WARNING',
    Severity.ERROR: 'ERROR',
    Severity.SUCCESS: 'SUCCESS',
}


@dataclass(frozen=True)
class LogEntry:
    message: str
    severity: Severity = Severity.INFO
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            'timestamp': _iso(self.timestamp),
            'severity': self.severity.value,
            'message': self.message,
        }


class SessionLog:
    """Append-only log of session events.

    Thread-safe: entries may be added from the event loop and from the
    capture thread.  A single :class:`threading.Lock` serialises appends.

    Args:
        log_path: Optional ``.jsonl`` file that mirrors every entry.  Parent
            directories are created automatically.
    """

    def __init__(self, log_path: Optional[Path] = None) -> None:
        self._entries: List[LogEntry] = []
        self._listeners: List[Callable[[LogEntry], None]] = []
        self._lock = threading.Lock()
        self._log_path: Optional[Path] = None
        if log_path is not None:
            log_path = Path(log_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_path = log_path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def entries(self) -> List[LogEntry]:
        """Snapshot of all entries in insertion order."""
        with self._lock:
            return list(self._entries)

    def subscribe(self, listener: Callable[[LogEntry], None]) -> None:
        """Call *listener* for every entry added from now on."""
        self._listeners.append(listener)

    def add(self, message: str, severity: Severity = Severity.INFO) -> LogEntry:
        entry = LogEntry(message=message, severity=Severity(severity))
        with self._lock:
            self._entries.append(entry)
            if self._log_path is not None:
                with self._log_path.open('a', encoding='utf-8') as fh:
                    fh.write(json.dumps(entry.to_dict(), ensure_ascii=False) + '\n')

        logger.log(_LOGURU_LEVELS[entry.severity], message)
        for listener in list(self._listeners):
            listener(entry)
        return entry

    def info(self, message: str) -> LogEntry:
        return self.add(message, Severity.INFO)

    def warning(self, message: str) -> LogEntry:
        return self.add(message, Severity.WARNING)

    def error(self, message: str) -> LogEntry:
        return self.add(message, Severity.ERROR)

    def success(self, message: str) -> LogEntry:
        return self.add(message, Severity.SUCCESS)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _iso(dt: datetime) -> str:
    """Return a compact ISO 8601 string for *dt*."""
    return dt.replace(microsecond=0).isoformat()
