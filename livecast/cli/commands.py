"""CLI commands for livecast.

This module provides all command-line interface commands using Typer.
"""

import asyncio
import signal
import sys
from contextlib import nullcontext
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from livecast.core.capture import CaptureGraph
from livecast.core.config import (
    CONFIG_FILE,
    AppConfig,
    Codec,
    RelaySettings,
    StreamingMode,
    validate_bitrate,
)
from livecast.core.encoder import NATIVE_FORMATS, negotiate_format, probe_codec_support
from livecast.core.errors import LivecastError
from livecast.core.log import SessionLog
from livecast.core.metadata import update_metadata
from livecast.core.protocol import SourceTarget
from livecast.core.relay import run_relay
from livecast.core.session import BroadcastSession, SessionState, format_duration
from livecast.core.storage import StorageManager
from livecast.cli.utils import (
    console,
    make_codec_table,
    make_device_table,
    make_level_progress,
    print_log_entry,
    suppress_stderr,
)

app = typer.Typer(help="Live audio broadcasting to Icecast and Shoutcast servers")

REFRESH_INTERVAL = 0.1


def _configure_logging(verbose: bool) -> None:
    """Configure loguru log level based on verbose flag."""
    logger.remove()
    if verbose:
        logger.add(sys.stderr, level="DEBUG")
    else:
        logger.add(sys.stderr, level="WARNING")


def _quiet(verbose: bool):
    return nullcontext() if verbose else suppress_stderr()


def _fail(message: str) -> None:
    console.print(f"[error]✗ {message}[/error]")
    raise typer.Exit(code=1)


def _load_config() -> AppConfig:
    try:
        return AppConfig()
    except (ValueError, OSError) as e:
        _fail(f"Invalid {CONFIG_FILE}: {e}")


@app.command()
def list_devices(
    driver: Optional[str] = typer.Option(
        None, help="Filter by driver type: pulse, alsa, jack, usb, default"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug output from audio libraries"
    ),
):
    """List all available input audio devices."""
    with _quiet(verbose):
        devices = CaptureGraph.list_devices(driver_filter=driver)

    title = "Available Input Devices"
    if driver:
        title += f" (filtered by: {driver})"
    console.print(Panel(make_device_table(devices), title=f"[bold]{title}[/bold]"))


def _session_grid(session: BroadcastSession) -> Table:
    state_styles = {
        SessionState.IDLE: "dim",
        SessionState.CONNECTING: "warning",
        SessionState.CONNECTED: "success",
        SessionState.ERROR: "error",
    }
    grid = Table.grid(padding=(0, 1))
    grid.add_column(style="dim", justify="right")
    grid.add_column()
    style = state_styles[session.state]
    grid.add_row("State:", f"[{style}]{session.state.value}[/{style}]")
    if session.is_connected:
        grid.add_row("On air:", format_duration(session.stream_seconds))
    if session.is_recording:
        grid.add_row("Recording:", f"[error]●[/error] {format_duration(session.record_seconds)}")
    return grid


async def _open_input(graph: CaptureGraph, device_id: Optional[int], input_file: Optional[Path],
                      loop_playback: bool, verbose: bool) -> None:
    if input_file is not None:
        await graph.initialize_from_file(str(input_file), loop_playback=loop_playback)
        return
    with _quiet(verbose):
        await graph.initialize(device_id)


async def _run_session(session: BroadcastSession, duration: Optional[int], connect: bool,
                       record: bool, title: str) -> int:
    """Drive *session* with a live meter until Ctrl+C, *duration* or failure."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGINT, stop.set)
        loop.add_signal_handler(signal.SIGTERM, stop.set)
    except (NotImplementedError, RuntimeError):
        pass

    if connect:
        launch = session.run_launch_automation()
    else:
        launch = session.start_recording() if record else asyncio.sleep(0)
    launch_task = asyncio.ensure_future(launch)

    progress = make_level_progress()
    left = progress.add_task("L", total=100, level_text="  0%")
    right = progress.add_task("R", total=100, level_text="  0%")
    started = loop.time()
    exit_code = 0

    def render():
        return Panel(Group(_session_grid(session), progress), title=f"[bold]🎙 {title}[/bold]", border_style="green")

    try:
        with Live(render(), console=console, refresh_per_second=10, transient=False) as live:
            while not stop.is_set():
                if duration and loop.time() - started >= duration:
                    break
                if launch_task.done() and session.state is SessionState.ERROR:
                    exit_code = 1
                    break
                if launch_task.done() and not connect and not session.is_recording:
                    exit_code = 1
                    break
                level_l, level_r = session.graph.meter()
                progress.update(left, completed=level_l * 100, level_text=f"{level_l:4.0%}")
                progress.update(right, completed=level_r * 100, level_text=f"{level_r:4.0%}")
                live.update(render())
                try:
                    await asyncio.wait_for(stop.wait(), REFRESH_INTERVAL)
                except asyncio.TimeoutError:
                    pass
    finally:
        if not launch_task.done():
            launch_task.cancel()
        await session.shutdown()
    if stop.is_set():
        console.print("[warning]⏹ Stopped by user[/warning]")
    return exit_code


@app.command()
def broadcast(
    profile: Optional[str] = typer.Option(None, help="Server profile id or name (default: active profile)"),
    mode: Optional[str] = typer.Option(None, help="Streaming mode: RELAY, PROXY or DIRECT"),
    codec: Optional[str] = typer.Option(None, help="Streaming codec: MP3, AAC, OGG or OPUS"),
    bitrate: Optional[int] = typer.Option(None, help="Streaming bitrate in kbps"),
    device_id: Optional[int] = typer.Option(None, help="Audio device ID (default: configured or system default)"),
    input_file: Optional[Path] = typer.Option(None, help="Broadcast an audio file instead of a device"),
    loop_playback: bool = typer.Option(False, "--loop", help="Loop --input-file"),
    record: bool = typer.Option(False, "--record", help="Also record the broadcast"),
    duration: Optional[int] = typer.Option(None, help="Stop after this many seconds"),
    title: Optional[str] = typer.Option(None, help="Live title pushed as stream metadata"),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug output from audio libraries"
    ),
):
    """Broadcast to a streaming server, with a live level meter."""
    _configure_logging(verbose)
    app_config = _load_config()
    try:
        server = app_config.get_profile(profile)
        streaming = app_config.get_streaming_config()
        if mode:
            streaming = replace(streaming, mode=StreamingMode.parse(mode))
        if codec:
            streaming = replace(streaming, codec=Codec.parse(codec))
        if bitrate:
            streaming = replace(streaming, bitrate=validate_bitrate(bitrate))
        stream_behavior = replace(app_config.get_stream_behavior(), auto_connect_on_launch=True)
        if title:
            stream_behavior = replace(stream_behavior, live_title=title)
        record_behavior = app_config.get_record_behavior()
        if record:
            record_behavior = replace(record_behavior, start_on_launch=True)
        graph_config = app_config.get_graph_config()
    except ValueError as e:
        _fail(str(e))

    log_path = app_config.get_log_path()
    console.print(f"[dim]📝 Session log: {log_path}[/dim]")
    console.print(
        f"[info]Target:[/info] {server.name} ({server.type.value} {server.host}:{server.port}{server.normalized_mount}) "
        f"via {streaming.mode.value}, {streaming.codec.value} @ {streaming.bitrate}kbps"
    )

    async def run() -> int:
        graph = CaptureGraph(graph_config)
        session_log = SessionLog(log_path)
        session_log.subscribe(print_log_entry)
        await _open_input(graph, device_id, input_file, loop_playback, verbose)
        session = BroadcastSession(
            server,
            graph,
            streaming=streaming,
            recording=app_config.get_recording_config(),
            stream_behavior=stream_behavior,
            record_behavior=record_behavior,
            log=session_log,
        )
        return await _run_session(session, duration, connect=True, record=record, title="Broadcast")

    try:
        exit_code = asyncio.run(run())
    except LivecastError as e:
        _fail(str(e))
    except KeyboardInterrupt:
        console.print("[warning]⏹ Broadcast interrupted by user[/warning]")
        return
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command()
def record(
    codec: Optional[str] = typer.Option(None, help="Recording codec: MP3, AAC, OGG or OPUS"),
    bitrate: Optional[int] = typer.Option(None, help="Recording bitrate in kbps"),
    device_id: Optional[int] = typer.Option(None, help="Audio device ID (default: configured or system default)"),
    input_file: Optional[Path] = typer.Option(None, help="Record an audio file instead of a device"),
    duration: Optional[int] = typer.Option(
        None, help="Recording duration in seconds. Leave empty for continuous recording."
    ),
    output: Optional[str] = typer.Option(None, help="Output directory for recordings"),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug output from audio libraries"
    ),
):
    """Record the processed input to a file without streaming."""
    _configure_logging(verbose)
    app_config = _load_config()
    try:
        recording = app_config.get_recording_config()
        if codec:
            recording = replace(recording, codec=Codec.parse(codec))
        if bitrate:
            recording = replace(recording, bitrate=validate_bitrate(bitrate))
        record_behavior = app_config.get_record_behavior()
        if output:
            record_behavior = replace(record_behavior, directory=output)
        graph_config = app_config.get_graph_config()
    except ValueError as e:
        _fail(str(e))

    log_path = app_config.get_log_path(Path(record_behavior.directory))
    console.print(f"[dim]📝 Session log: {log_path}[/dim]")

    async def run() -> int:
        graph = CaptureGraph(graph_config)
        session_log = SessionLog(log_path)
        session_log.subscribe(print_log_entry)
        await _open_input(graph, device_id, input_file, False, verbose)
        session = BroadcastSession(
            app_config.get_profile(),
            graph,
            recording=recording,
            record_behavior=record_behavior,
            log=session_log,
        )
        code = await _run_session(session, duration, connect=False, record=True, title="Recording")
        if session.last_recording is None:
            return 1
        return code

    try:
        exit_code = asyncio.run(run())
    except LivecastError as e:
        _fail(str(e))
    except KeyboardInterrupt:
        console.print("[warning]⏹ Recording interrupted by user[/warning]")
        return
    if exit_code:
        raise typer.Exit(code=exit_code)
    console.print("[success]✓ Recording completed[/success]")


@app.command()
def relay(
    host: Optional[str] = typer.Option(None, help="Interface to listen on"),
    port: Optional[int] = typer.Option(None, help="Port to listen on"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
):
    """Run the WebSocket-to-Icecast relay."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")
    app_config = _load_config()
    try:
        settings: RelaySettings = app_config.get_relay_settings()
        if host:
            settings = replace(settings, host=host)
        if port:
            settings = replace(settings, port=port)
    except ValueError as e:
        _fail(str(e))

    console.print(f"[info]Relay listening on ws://{settings.host}:{settings.port}/stream (Ctrl+C to stop)[/info]")
    run_relay(settings)


@app.command()
def metadata(
    title: str = typer.Argument(..., help="Now-playing title"),
    profile: Optional[str] = typer.Option(None, help="Server profile id or name (default: active profile)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
):
    """Push a now-playing title to the streaming server."""
    _configure_logging(verbose)
    app_config = _load_config()
    try:
        server = app_config.get_profile(profile)
    except ValueError as e:
        _fail(str(e))

    try:
        asyncio.run(update_metadata(SourceTarget.from_profile(server), title))
    except LivecastError as e:
        _fail(str(e))
    console.print(f'[success]✓ Metadata updated on {server.name}: "{title}"[/success]')


@app.command()
def recordings(
    delete: Optional[str] = typer.Option(None, help="Delete the recording with this file name"),
    output: Optional[str] = typer.Option(None, help="Recordings directory"),
):
    """List (or delete) saved recordings."""
    app_config = _load_config()
    storage = StorageManager(output or app_config.get_record_behavior().directory)

    if delete:
        if not storage.delete_recording(delete):
            _fail(f"Recording not found: {delete}")
        console.print(f"[success]✓ Deleted {delete}[/success]")
        return

    items = storage.list_recordings()
    if not items:
        console.print(f"[dim]No recordings in {storage.storage_dir}[/dim]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("Format")
    table.add_column("Size", justify="right")
    for item in items:
        table.add_row(item["name"], item["format"], f"{item['size'] / 1024:.1f} KiB")
    console.print(Panel(table, title=f"[bold]Recordings in {storage.storage_dir}[/bold]"))


@app.command()
def status(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug output from audio libraries"
    ),
):
    """Show devices, the active server profile and encoder support."""
    _configure_logging(verbose)
    app_config = _load_config()

    console.rule("[bold]📋 livecast Status[/bold]")
    console.print()
    try:
        with _quiet(verbose):
            devices = CaptureGraph.list_devices()
        console.print(Panel(make_device_table(devices), title="[bold]Available Input Devices[/bold]"))
    except (IOError, OSError) as e:
        console.print(f"[error]✗ Error listing devices: {e}[/error]")

    try:
        server = app_config.get_profile()
        streaming = app_config.get_streaming_config()
    except ValueError as e:
        _fail(str(e))

    grid = Table.grid(padding=(0, 1))
    grid.add_column(style="dim", justify="right")
    grid.add_column()
    grid.add_row("Profile:", f"{server.name} ({server.id})")
    grid.add_row("Server:", f"{server.type.value} {server.host}:{server.port}{server.normalized_mount}")
    grid.add_row("Mode:", streaming.mode.value)
    grid.add_row("Stream:", f"{streaming.codec.value} @ {streaming.bitrate}kbps")
    if streaming.mode is StreamingMode.RELAY:
        grid.add_row("Relay:", streaming.relay_url)
    elif streaming.mode is StreamingMode.PROXY:
        grid.add_row("Proxy:", streaming.proxy_url)
    config_path = Path.cwd() / CONFIG_FILE
    grid.add_row("Config:", str(config_path) if config_path.exists() else "[dim]defaults[/dim]")
    console.print(Panel(grid, title="[bold]Active Profile[/bold]"))

    support = probe_codec_support()
    rows = []
    for item in Codec:
        try:
            resolved = negotiate_format(item, support)
        except LivecastError:
            resolved = None
        rows.append((item.value, NATIVE_FORMATS[item], resolved))
    console.print(Panel(make_codec_table(rows), title="[bold]Encoder Support[/bold]"))
