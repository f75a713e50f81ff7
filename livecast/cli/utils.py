"""CLI utilities for livecast.

This module provides the themed Rich console, tables, the live level meter
and the printer that mirrors session log entries to the terminal.
"""

import os
from contextlib import contextmanager
from typing import Iterable, List

from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table
from rich.theme import Theme

from livecast.core.log import LogEntry, Severity

# Create themed console for consistent output
_theme = Theme(
    {
        "info": "cyan",
        "success": "green",
        "warning": "yellow",
        "error": "bold red",
        "debug": "dim white",
    }
)

console = Console(theme=_theme)

_SEVERITY_MARKS = {
    Severity.INFO: "[info]•[/info]",
    Severity.SUCCESS: "[success]✓[/success]",
    Severity.WARNING: "[warning]![/warning]",
    Severity.ERROR: "[error]✗[/error]",
}


def make_device_table(devices: List[dict]) -> Table:
    """Build a Rich Table from the device list returned by CaptureGraph.list_devices().

    Args:
        devices: List of dicts with keys: id, name, driver, channels, rate, is_default

    Returns:
        Configured Rich Table ready to print.
    """
    table = Table(show_header=True, header_style="bold", show_lines=False, expand=False)
    table.add_column("ID", style="cyan", width=4, justify="right")
    table.add_column("Name", min_width=30)
    table.add_column("Driver", style="dim", width=8)
    table.add_column("Ch", justify="right", style="dim", width=4)
    table.add_column("Rate", justify="right", style="dim", width=12)
    table.add_column("", width=9)

    for d in devices:
        default_mark = "[bold green]DEFAULT[/bold green]" if d.get("is_default") else ""
        table.add_row(
            str(d["id"]),
            d["name"],
            d.get("driver", "").upper(),
            str(d.get("channels", "")),
            f"{d.get('rate', '')} Hz",
            default_mark,
        )
    return table


def make_codec_table(rows: Iterable[tuple]) -> Table:
    """Table of ``(codec, requested format, resolved format or None)`` rows."""
    table = Table(show_header=True, header_style="bold", expand=False)
    table.add_column("Codec", style="cyan")
    table.add_column("Native")
    table.add_column("Resolves to")
    for codec, native, resolved in rows:
        if resolved is None:
            resolved_str = "[error]unavailable[/error]"
        elif resolved == native:
            resolved_str = f"[success]{resolved}[/success]"
        else:
            resolved_str = f"[warning]{resolved} (fallback)[/warning]"
        table.add_row(codec, str(native), resolved_str)
    return table


def make_level_progress() -> Progress:
    """Create a Rich Progress instance repurposed as a stereo level meter.

    Usage::

        with make_level_progress() as progress:
            left = progress.add_task("L", total=100, level_text="0%")
            right = progress.add_task("R", total=100, level_text="0%")
            while streaming:
                l, r = graph.meter()
                progress.update(left, completed=l * 100, level_text=f"{l:.0%}")
                progress.update(right, completed=r * 100, level_text=f"{r:.0%}")

    Returns:
        Configured Rich Progress instance (0-100 scale, one row per channel).
    """
    return Progress(
        TextColumn("📈 {task.description}"),
        BarColumn(
            bar_width=50,
            complete_style="green",
            finished_style="red",
            pulse_style="yellow",
        ),
        TextColumn("[bold]{task.fields[level_text]}[/bold]"),
        console=console,
        transient=False,
        expand=False,
    )


def format_log_entry(entry: LogEntry) -> str:
    """Console markup for one session log entry."""
    mark = _SEVERITY_MARKS.get(entry.severity, "•")
    return f"[dim]{entry.timestamp:%H:%M:%S}[/dim] {mark} {entry.message}"


def print_log_entry(entry: LogEntry) -> None:
    console.print(format_log_entry(entry), highlight=False)


@contextmanager
def suppress_stderr():
    """Context manager to suppress stderr output from libraries like ALSA, JACK.

    Used to hide debug/warning messages from audio subsystems that pollute
    terminal output.
    """
    # Save original stderr file descriptor
    original_stderr_fd = os.dup(2)
    try:
        # Open /dev/null and redirect stderr to it
        null_fd = os.open(os.devnull, os.O_WRONLY)
        os.dup2(null_fd, 2)
        os.close(null_fd)
        yield
    finally:
        # Restore original stderr
        os.dup2(original_stderr_fd, 2)
        os.close(original_stderr_fd)


__all__ = [
    "console",
    "suppress_stderr",
    "make_device_table",
    "make_codec_table",
    "make_level_progress",
    "format_log_entry",
    "print_log_entry",
]
