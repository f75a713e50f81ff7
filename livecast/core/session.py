"""Broadcast session state machine.

:class:`BroadcastSession` ties one :class:`~livecast.core.capture.CaptureGraph`
to the encoder pipeline, a transport and the recording store::

    Idle ──connect──▶ Connecting ──ok──▶ Connected ──disconnect──▶ Idle
                          │                  │
                          └──fail──▶ Error ◀─┘ (write error / server close)

``Error`` is transient: the next :meth:`BroadcastSession.connect` clears it.
Recording is an independent toggle with its own encoder and timer.

Every :class:`~livecast.core.errors.LivecastError` raised by a collaborator
is caught here, written to the session log and turned into a state change.
"""

import asyncio
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .capture import CaptureGraph
from .config import (
    LAUNCH_SETTLE_DELAY,
    AudioGraphConfig,
    RecordBehavior,
    RecordingConfig,
    ServerProfile,
    StreamBehavior,
    StreamingConfig,
    StreamingMode,
)
from .encoder import NATIVE_FORMATS, AudioFormat, CodecSupport, EncoderPipeline
from .errors import (
    CloseReason,
    ConnectError,
    LivecastError,
    ProtocolAuthError,
    SessionStateError,
    UnsupportedCodecError,
    WriteError,
)
from .log import SessionLog
from .metadata import update_metadata
from .protocol import SourceTarget
from .storage import StorageManager
from .transport import Transport, create_transport

FORWARD_STOP_TIMEOUT = 5.0


class SessionState(str, Enum):
    IDLE = 'Idle'
    CONNECTING = 'Connecting'
    CONNECTED = 'Connected'
    ERROR = 'Error'


class DurationTimer:
    """Counts whole seconds while running."""

    def __init__(self, interval: float = 1.0) -> None:
        self.interval = interval
        self.seconds = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        self.stop()
        self.seconds = 0
        self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.seconds += 1

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()


def format_duration(seconds: int) -> str:
    """``HH:MM:SS`` for a number of seconds."""
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    return f'{hours:02d}:{minutes:02d}:{secs:02d}'


class BroadcastSession:
    """One operator session: stream to a server, optionally record.

    Args:
        profile: Target server
        graph: Capture graph feeding both encoders
        streaming: Codec, bitrate and transport mode for streaming
        recording: Codec and bitrate for recordings
        stream_behavior: Live title and launch automation for streaming
        record_behavior: File naming, directory and recording automation
        log: Session log; a fresh in-memory one when omitted
        pipeline: Encoder pipeline; built on *graph* when omitted
        support: Codec support set used when building the pipeline
        transport_factory: ``(mode, on_closed=...) -> Transport``
        storage: Recording store; built on ``record_behavior.directory``
        metadata_updater: ``async (target, title) -> status``
    """

    def __init__(
        self,
        profile: ServerProfile,
        graph: CaptureGraph,
        streaming: Optional[StreamingConfig] = None,
        recording: Optional[RecordingConfig] = None,
        stream_behavior: Optional[StreamBehavior] = None,
        record_behavior: Optional[RecordBehavior] = None,
        log: Optional[SessionLog] = None,
        pipeline: Optional[EncoderPipeline] = None,
        support: Optional[CodecSupport] = None,
        transport_factory: Callable[..., Transport] = create_transport,
        storage: Optional[StorageManager] = None,
        metadata_updater: Callable = update_metadata,
    ) -> None:
        self.profile = profile
        self.graph = graph
        self.streaming = streaming or StreamingConfig()
        self.recording = recording or RecordingConfig()
        self.stream_behavior = stream_behavior or StreamBehavior()
        self.record_behavior = record_behavior or RecordBehavior()
        self.log = log or SessionLog()
        self.pipeline = pipeline or EncoderPipeline(graph, support)
        self.storage = storage or StorageManager(self.record_behavior.directory)
        self._transport_factory = transport_factory
        self._metadata_updater = metadata_updater

        self._state = SessionState.IDLE
        self._transport: Optional[Transport] = None
        self._forward_task: Optional[asyncio.Task] = None
        self._title_task: Optional[asyncio.Task] = None
        self._failure_task: Optional[asyncio.Task] = None
        self._recording_starting = False
        self._launched = False
        self.stream_timer = DurationTimer()
        self.record_timer = DurationTimer()
        self.stream_format: Optional[AudioFormat] = None
        self.record_format: Optional[AudioFormat] = None
        self.last_recording: Optional[Path] = None
        self.last_error: Optional[LivecastError] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def is_recording(self) -> bool:
        return self.pipeline.recording.running

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    @property
    def stream_seconds(self) -> int:
        return self.stream_timer.seconds

    @property
    def record_seconds(self) -> int:
        return self.record_timer.seconds

    def _set_state(self, state: SessionState) -> None:
        self._state = state

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Open the transport and start streaming.

        Returns:
            True once the session is ``Connected``; False on failure (the
            session is then in ``Error`` with the reason logged).
        """
        if self._state in (SessionState.CONNECTING, SessionState.CONNECTED):
            self.log.warning(f'Already {self._state.value.lower()}')
            return False

        mode = self.streaming.mode
        self._set_state(SessionState.CONNECTING)
        self.last_error = None
        self.log.info(f'Initializing connection via {mode.value}...')

        transport = self._transport_factory(mode, on_closed=self._on_transport_closed)
        self._transport = transport
        try:
            await transport.connect(self.profile, self.streaming)
            if self._state is not SessionState.CONNECTING:
                # disconnect() ran while the channel was opening
                await transport.disconnect()
                return False
            self.log.info('Connected to streaming node.')

            self.stream_format = await self.pipeline.start_streaming_encoder(
                self.streaming.codec, self.streaming.bitrate,
            )
            if not transport.connected:
                raise self._closed_error(transport)
        except LivecastError as error:
            if self._state is not SessionState.CONNECTING:
                await transport.disconnect()
                return False
            await self._teardown_stream()
            self._fail(error)
            return False

        if self._state is not SessionState.CONNECTING:
            # disconnect() ran while the encoder was starting
            await self._teardown_stream()
            await transport.disconnect()
            return False

        self._forward_task = asyncio.ensure_future(self._forward(transport))
        self._set_state(SessionState.CONNECTED)
        self.stream_timer.start()

        codec = self.streaming.codec
        self.log.success(f'Streaming started: {codec.value} [{self.stream_format}] @ {self.streaming.bitrate}kbps')
        if self.stream_format != NATIVE_FORMATS[codec]:
            self.log.warning(f'Streaming codec fallback: requested {NATIVE_FORMATS[codec]}, using {self.stream_format}')

        self._title_task = asyncio.ensure_future(self._push_title_later())

        if self.record_behavior.start_on_connect and not self.is_recording and not self._recording_starting:
            self.log.info('Auto-start record triggered by connection.')
            await self._auto_start_recording()
        return True

    async def disconnect(self) -> None:
        """Stop streaming and close the transport.  Safe to call twice."""
        if self._state is SessionState.IDLE and self._transport is None:
            return
        was_connected = self._state is SessionState.CONNECTED
        self._set_state(SessionState.IDLE)
        await self._teardown_stream()
        if was_connected:
            self.log.warning('Disconnected from server')
            await self._after_disconnect()

    async def _after_disconnect(self) -> None:
        if self.record_behavior.stop_on_disconnect and self.is_recording:
            self.log.info('Auto-stop record triggered by disconnection.')
            await self.stop_recording()

    async def _forward(self, transport: Transport) -> None:
        """Write streaming chunks to *transport* in production order."""
        try:
            async for chunk in self.pipeline.streaming.chunks():
                await transport.send(chunk)
        except WriteError as error:
            self._schedule_failure(error)

    def _on_transport_closed(self, reason: CloseReason, detail: str) -> None:
        if reason is CloseReason.OPERATOR or self._state is not SessionState.CONNECTED:
            return
        if reason is CloseReason.AUTH_FAILED:
            error: LivecastError = ProtocolAuthError(f'Authentication failed: {detail or "server rejected the source"}')
        else:
            error = WriteError(f'Connection closed by server: {detail or reason.value}', reason=reason)
        self._schedule_failure(error)

    def _schedule_failure(self, error: LivecastError) -> None:
        if self._failure_task is None or self._failure_task.done():
            self._failure_task = asyncio.ensure_future(self._handle_stream_failure(error))

    async def _handle_stream_failure(self, error: LivecastError) -> None:
        if self._state is not SessionState.CONNECTED:
            return
        self.log.error(f'Stream interrupted: {error}')
        self._set_state(SessionState.IDLE)
        await self._teardown_stream()
        self._fail(error, prefix=None)
        await self._after_disconnect()

    async def _teardown_stream(self) -> None:
        self.stream_timer.stop()
        title_task, self._title_task = self._title_task, None
        if title_task is not None:
            title_task.cancel()

        await self.pipeline.stop_streaming_encoder()
        forward_task, self._forward_task = self._forward_task, None
        if forward_task is not None and forward_task is not asyncio.current_task():
            try:
                await asyncio.wait_for(forward_task, FORWARD_STOP_TIMEOUT)
            except asyncio.TimeoutError:
                pass

        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.disconnect()

    def _closed_error(self, transport: Transport) -> LivecastError:
        if transport.close_reason is CloseReason.AUTH_FAILED:
            return ProtocolAuthError(f'Authentication failed: {transport.close_detail or "server rejected the source"}')
        return ConnectError(f'Connection closed by server: {transport.close_detail or transport.close_reason}')

    def _fail(self, error: LivecastError, prefix: Optional[str] = 'Connection failed') -> None:
        self.last_error = error
        self._set_state(SessionState.ERROR)
        if prefix:
            self.log.error(f'{prefix}: {error}')
        hint = self.hint_for(error)
        if hint:
            self.log.warning(f'Hint: {hint}')

    def hint_for(self, error: LivecastError) -> str:
        """Operator hint for a streaming failure."""
        mode = self.streaming.mode
        target = f'{self.profile.host}:{self.profile.port}'
        if isinstance(error, UnsupportedCodecError):
            return 'Install ffmpeg with the required encoders or choose another codec.'
        if isinstance(error, ProtocolAuthError):
            return f'{target} rejected the source login; check the password, user and mount point.'
        if isinstance(error, WriteError) and error.reason is CloseReason.UPSTREAM_ERROR:
            return f'The relay could not reach {target}; check the server address and that the port is open.'
        if mode is StreamingMode.RELAY:
            return f'Ensure the relay at {self.streaming.relay_url} is running and the relay URL is correct.'
        if mode is StreamingMode.PROXY:
            return f'Ensure the proxy at {self.streaming.proxy_url} is running.'
        return 'Direct transfer needs a server that accepts streaming PUT requests; try relay mode.'

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def start_recording(self) -> Optional[AudioFormat]:
        """Start the recording encoder.

        Returns:
            The resolved format, or ``None`` if the encoder could not start.

        Raises:
            SessionStateError: If a recording is already active.
        """
        if self.is_recording or self._recording_starting:
            self.log.warning('Recording already in progress')
            raise SessionStateError('A recording is already active')

        self._recording_starting = True
        try:
            fmt = await self.pipeline.start_recording_encoder(self.recording.codec, self.recording.bitrate)
        except LivecastError as error:
            self.log.error(f'Recording failed to start: {error}')
            return None
        finally:
            self._recording_starting = False

        self.record_format = fmt
        self.record_timer.start()
        codec = self.recording.codec
        self.log.info(f'Recording started: {codec.value} [{fmt}] @ {self.recording.bitrate}kbps')
        if fmt != NATIVE_FORMATS[codec]:
            self.log.warning(f'Recording codec fallback: requested {NATIVE_FORMATS[codec]}, using {fmt}')
        return fmt

    async def stop_recording(self) -> Optional[Path]:
        """Stop recording and save the file.  No-op when not recording."""
        if not self.is_recording:
            return None
        fmt = self.record_format
        blob = await self.pipeline.stop_recording_encoder()
        self.record_timer.stop()
        try:
            path = self.storage.save_recording(blob, self.record_behavior.file_name_pattern, fmt.extension)
        except OSError as error:
            self.log.error(f'Could not save recording: {error}')
            return None
        self.last_recording = path
        self.log.success(f'Recording saved: {path.name}')
        return path

    async def _auto_start_recording(self) -> None:
        try:
            await self.start_recording()
        except SessionStateError:
            pass

    # ------------------------------------------------------------------
    # Metadata, automation and graph control
    # ------------------------------------------------------------------

    async def update_metadata(self, title: str) -> bool:
        """Push *title* as the now-playing title of the target server."""
        try:
            await self._metadata_updater(SourceTarget.from_profile(self.profile), title)
        except LivecastError as error:
            self.log.warning(f'Metadata update failed: {error}')
            return False
        self.log.success(f'Metadata updated: "{title}"')
        return True

    async def _push_title_later(self) -> None:
        title = self.stream_behavior.live_title
        if not title:
            return
        await asyncio.sleep(self.stream_behavior.title_update_delay)
        if self.is_connected:
            await self.update_metadata(title)

    async def run_launch_automation(self, settle_delay: float = LAUNCH_SETTLE_DELAY) -> None:
        """Run launch automation once, after *settle_delay* seconds."""
        if self._launched:
            return
        self._launched = True
        await asyncio.sleep(settle_delay)

        if self.stream_behavior.auto_connect_on_launch and self._state in (SessionState.IDLE, SessionState.ERROR):
            self.log.info('Auto-connect on launch: initiating connection...')
            await self.connect()
        if self.record_behavior.start_on_launch and not self.is_recording and not self._recording_starting:
            self.log.info('Auto-record on launch: starting recording...')
            await self._auto_start_recording()

    def apply_graph_config(self, config: AudioGraphConfig) -> None:
        self.graph.set_config(config)

    async def shutdown(self) -> None:
        """Disconnect, finish any recording and release the device."""
        await self.disconnect()
        await self.stop_recording()
        await self.graph.dispose()
