"""Utility tests for livecast."""

import io
from datetime import datetime

from rich.console import Console

from livecast.cli.utils import console, format_log_entry, make_codec_table, make_device_table
from livecast.core.encoder import GENERIC_FORMAT, MP3_FORMAT
from livecast.core.log import LogEntry, Severity


def _render(renderable) -> str:
    out = Console(file=io.StringIO(), width=120, color_system=None)
    out.print(renderable)
    return out.file.getvalue()


def test_console_available():
    """Test that console is available."""
    assert console is not None
    assert hasattr(console, 'print')


def test_format_log_entry():
    entry = LogEntry("Recording saved: show.webm", Severity.SUCCESS, datetime(2024, 1, 5, 3, 4, 5))
    text = format_log_entry(entry)
    assert "03:04:05" in text
    assert "[success]" in text
    assert text.endswith("Recording saved: show.webm")


def test_codec_table_marks_fallbacks():
    rendered = _render(make_codec_table([
        ("MP3", MP3_FORMAT, MP3_FORMAT),
        ("AAC", MP3_FORMAT, GENERIC_FORMAT),
        ("OPUS", MP3_FORMAT, None),
    ]))
    assert "audio/x-matroska (fallback)" in rendered
    assert "unavailable" in rendered


def test_device_table_marks_default():
    rendered = _render(make_device_table([
        {"id": 3, "name": "USB Microphone", "driver": "usb", "channels": 1, "rate": 44100, "is_default": True},
    ]))
    assert "USB Microphone" in rendered
    assert "DEFAULT" in rendered
    assert "USB" in rendered
