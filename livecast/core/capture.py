"""Capture and processing graph for livecast.

This module owns the input device and the fixed processing chain
(gain → compressor → 5-band EQ → output tap).

Main public classes
-------------------
:class:`CaptureGraph`
    Opens a PyAudio input device (or an audio file) and runs every captured
    block through :class:`~livecast.core.processing.ProcessingChain`.  The
    processed signal is fanned out to any number of :class:`AudioTap`
    readers.

:class:`AudioTap`
    A read handle on the graph output.  Each encoder owns one tap, so the
    recording and streaming encoders never share buffering state.

Threading
---------
PyAudio delivers audio on a PortAudio callback thread.  The callback only
hands the raw bytes to the asyncio loop with ``call_soon_threadsafe``; all
processing and all configuration changes happen on the loop, so a live
:meth:`CaptureGraph.set_config` never races with the chain.
"""

import asyncio
from pathlib import Path
from typing import List, Optional, Set, Tuple

import numpy as np
import pyaudio
import soundfile as sf
from loguru import logger

from .config import BLOCK_SIZE, DEFAULT_RATE, MAX_CHANNELS, AudioGraphConfig, with_gain
from .errors import DeviceAccessError
from .processing import ProcessingChain, detect_driver_type, pcm16_to_float, to_channels


class AudioTap:
    """Continuous read handle on the graph's processed output.

    Iterate it to receive float32 blocks shaped ``(frames, channels)``.
    Iteration ends once the tap (or the graph) is closed.
    """

    def __init__(self, graph: 'CaptureGraph') -> None:
        self._graph = graph
        self._queue: 'asyncio.Queue[Optional[np.ndarray]]' = asyncio.Queue()
        self._closed = False

    @property
    def rate(self) -> int:
        return self._graph.rate

    @property
    def channels(self) -> int:
        return self._graph.channels

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, block: np.ndarray) -> None:
        if not self._closed:
            self._queue.put_nowait(block)

    async def read(self) -> Optional[np.ndarray]:
        """Return the next block, or ``None`` once the tap is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def __aiter__(self) -> 'AudioTap':
        return self

    async def __anext__(self) -> np.ndarray:
        block = await self.read()
        if block is None:
            raise StopAsyncIteration
        return block

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._graph._detach(self)
        self._queue.put_nowait(None)


class CaptureGraph:
    """Input device plus processing chain with a fan-out output tap."""

    def __init__(self, config: Optional[AudioGraphConfig] = None, block_size: int = BLOCK_SIZE) -> None:
        self._config = config or AudioGraphConfig()
        self._block_size = block_size
        self._rate = DEFAULT_RATE
        self._channels = MAX_CHANNELS
        self._chain: Optional[ProcessingChain] = None
        self._taps: Set[AudioTap] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._audio_interface = None
        self._audio_stream = None
        self._file_task: Optional[asyncio.Task] = None
        self._device_name = ''

    # ------------------------------------------------------------------
    # Device enumeration
    # ------------------------------------------------------------------

    @staticmethod
    def list_devices(driver_filter: Optional[str] = None, audio=None) -> List[dict]:
        """List all available input audio devices.

        Args:
            driver_filter: Optional driver type to filter by ('pulse', 'alsa', 'jack', 'usb', 'default')
            audio: Optional PyAudio instance to reuse

        Returns:
            List of dicts with keys: id, name, driver, channels, rate, is_default
        """
        owns_interface = audio is None
        if owns_interface:
            audio = pyaudio.PyAudio()
        try:
            try:
                default_device_id = int(audio.get_default_input_device_info()['index'])
            except (IOError, OSError):
                default_device_id = -1

            devices = []
            for i in range(audio.get_device_count()):
                device_info = audio.get_device_info_by_index(i)
                if device_info.get('maxInputChannels', 0) <= 0:
                    continue
                name = device_info.get('name', 'Unknown')
                driver = detect_driver_type(name)
                if driver_filter and driver != driver_filter.lower():
                    continue
                devices.append({
                    'id': i,
                    'name': name,
                    'driver': driver,
                    'channels': int(device_info.get('maxInputChannels', 0)),
                    'rate': int(device_info.get('defaultSampleRate', 0)),
                    'is_default': i == default_device_id,
                })
            return devices
        finally:
            if owns_interface:
                audio.terminate()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def rate(self) -> int:
        return self._rate

    @property
    def channels(self) -> int:
        return self._channels

    @property
    def device_name(self) -> str:
        return self._device_name

    @property
    def config(self) -> AudioGraphConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._chain is not None

    async def initialize(self, device_id: Optional[int] = None) -> 'CaptureGraph':
        """Open *device_id* (system default when ``None``) and start capturing.

        Re-initializing switches the device; open taps stay attached.

        Raises:
            DeviceAccessError: If the device cannot be opened.
        """
        self._close_input()
        self._loop = asyncio.get_running_loop()
        if device_id is None:
            device_id = self._config.device_id
        try:
            await self._loop.run_in_executor(None, self._open_device, device_id)
        except (IOError, OSError, ValueError) as error:
            self._close_input()
            self._chain = None
            raise DeviceAccessError(f"Cannot open input device {device_id if device_id is not None else 'default'}: {error}") from error

        logger.info(f'Capture started on {self._device_name} ({self._rate} Hz, {self._channels} ch)')
        return self

    def _open_device(self, device_id: Optional[int]) -> None:
        self._audio_interface = pyaudio.PyAudio()
        if device_id is None:
            device_info = self._audio_interface.get_default_input_device_info()
            device_id = int(device_info['index'])
        else:
            device_info = self._audio_interface.get_device_info_by_index(device_id)

        max_channels = int(device_info.get('maxInputChannels', 0))
        if max_channels <= 0:
            raise ValueError(f"device {device_id} has no input channels")

        # Keep the running rate when taps are attached so encoders stay valid
        if not self._taps:
            self._rate = int(device_info.get('defaultSampleRate', DEFAULT_RATE))
        self._channels = min(MAX_CHANNELS, max_channels)
        self._device_name = device_info.get('name', 'Unknown')
        self._chain = ProcessingChain(self._rate, self._channels, self._config)

        self._audio_stream = self._audio_interface.open(
            format=pyaudio.paInt16,
            channels=self._channels,
            rate=self._rate,
            input=True,
            input_device_index=device_id,
            frames_per_buffer=self._block_size,
            stream_callback=self._fill_buffer,
        )

    async def initialize_from_file(self, path: str, loop_playback: bool = False) -> 'CaptureGraph':
        """Use an audio file as the input, played back in real time.

        Raises:
            DeviceAccessError: If the file cannot be read.
        """
        self._close_input()
        self._loop = asyncio.get_running_loop()
        try:
            info = sf.info(str(path))
        except (RuntimeError, OSError) as error:
            raise DeviceAccessError(f"Cannot open input file {path}: {error}") from error

        if not self._taps:
            self._rate = int(info.samplerate)
        elif info.samplerate != self._rate:
            logger.warning(f'Input file rate {info.samplerate} Hz differs from running rate {self._rate} Hz')
        self._channels = min(MAX_CHANNELS, info.channels)
        self._device_name = Path(path).name
        self._chain = ProcessingChain(self._rate, self._channels, self._config)
        self._file_task = asyncio.ensure_future(self._play_file(str(path), loop_playback))
        logger.info(f'Capture started from file {self._device_name} ({self._rate} Hz, {self._channels} ch)')
        return self

    async def _play_file(self, path: str, loop_playback: bool) -> None:
        block_duration = self._block_size / self._rate
        next_time = self._loop.time()
        while True:
            for block in sf.blocks(path, blocksize=self._block_size, dtype='float32', always_2d=True):
                self.push(to_channels(block, self._channels))
                next_time += block_duration
                await asyncio.sleep(max(0.0, next_time - self._loop.time()))
            if not loop_playback:
                break
        logger.info(f'Input file {self._device_name} finished')

    def _fill_buffer(
        self,
        in_data: bytes,
        frame_count: int,
        time_info: object,
        status_flags: object,
    ) -> tuple:
        """PortAudio callback: hand the block over to the event loop."""
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._handle_pcm, in_data)
        return None, pyaudio.paContinue

    def _handle_pcm(self, in_data: bytes) -> None:
        if self._chain is None:
            return
        self.push(pcm16_to_float(in_data, self._channels))

    def push(self, block: np.ndarray) -> np.ndarray:
        """Process one input block and deliver it to every tap."""
        if self._chain is None:
            self._chain = ProcessingChain(self._rate, self._channels, self._config)
        processed = self._chain.process(to_channels(np.asarray(block, dtype=np.float32), self._channels))
        for tap in list(self._taps):
            tap._put(processed)
        return processed

    # ------------------------------------------------------------------
    # Live control
    # ------------------------------------------------------------------

    def set_config(self, config: AudioGraphConfig) -> None:
        """Apply *config* to the live chain; changes are smoothed, not stepped."""
        self._config = config
        if self._chain is not None:
            self._chain.configure(config)

    def set_gain(self, gain: float) -> None:
        self.set_config(with_gain(self._config, gain))

    def tap(self) -> AudioTap:
        """Attach a new reader to the output."""
        tap = AudioTap(self)
        self._taps.add(tap)
        return tap

    def _detach(self, tap: AudioTap) -> None:
        self._taps.discard(tap)

    def meter(self) -> Tuple[float, float]:
        """Return ``(left, right)`` loudness in 0-1."""
        if self._chain is None:
            return 0.0, 0.0
        return self._chain.meter.levels()

    def _close_input(self) -> None:
        if self._file_task is not None:
            self._file_task.cancel()
            self._file_task = None
        stream, self._audio_stream = self._audio_stream, None
        if stream is not None:
            try:
                stream.stop_stream()
                stream.close()
            except (IOError, OSError) as error:
                logger.debug(f'Error closing input stream: {error}')
        interface, self._audio_interface = self._audio_interface, None
        if interface is not None:
            interface.terminate()

    async def dispose(self) -> None:
        """Release the device and close every tap.  Safe to call twice."""
        self._close_input()
        for tap in list(self._taps):
            tap.close()
        if self._chain is not None:
            logger.info('Capture graph disposed')
        self._chain = None
