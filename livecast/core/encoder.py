"""Encoder pipeline for livecast.

Two independent consumers of the capture graph's output tap:

- the *recording encoder* buffers ~1000 ms chunks until it is stopped and
  then returns the complete file as one ``bytes`` blob;
- the *streaming encoder* emits ~500 ms chunks, in production order, for
  delivery to the transport bridge.

Both run an ``ffmpeg`` subprocess fed with float32 PCM on stdin.  The
encoded stdout is collected and sliced into chunks on a fixed timeslice.

Codec negotiation
-----------------
The requested codec's native format is tried first.  When the runtime lacks
it, the fallback order is:

==================  ===========================================
Requested           Fallback chain
==================  ===========================================
``OGG``             generic OGG → Opus in WebM → generic container
anything else       Opus in WebM → generic container
==================  ===========================================

The resolved :class:`AudioFormat` is always reported back so the caller can
derive the file extension or log the discrepancy.
"""

import asyncio
import subprocess
from dataclasses import dataclass
from functools import lru_cache
from typing import AsyncIterator, Callable, Dict, FrozenSet, Iterable, List, Optional

import numpy as np
from loguru import logger

from .capture import AudioTap, CaptureGraph
from .config import RECORDING_TIMESLICE, STREAMING_TIMESLICE, Codec, validate_bitrate
from .errors import SessionStateError, UnsupportedCodecError

READ_SIZE = 4096
STOP_TIMEOUT = 5.0


@dataclass(frozen=True)
class AudioFormat:
    """A container/codec pair the runtime can produce."""

    mime: str
    muxer: str
    encoder: str
    extension: str

    def __str__(self) -> str:
        return self.mime


MP3_FORMAT = AudioFormat('audio/mpeg', 'mp3', 'libmp3lame', 'mp3')
AAC_FORMAT = AudioFormat('audio/aac', 'adts', 'aac', 'aac')
OGG_OPUS_FORMAT = AudioFormat('audio/ogg;codecs=opus', 'ogg', 'libopus', 'ogg')
WEBM_OPUS_FORMAT = AudioFormat('audio/webm;codecs=opus', 'webm', 'libopus', 'webm')
GENERIC_OGG_FORMAT = AudioFormat('audio/ogg', 'ogg', 'libvorbis', 'ogg')
GENERIC_FORMAT = AudioFormat('audio/x-matroska', 'matroska', 'pcm_s16le', 'mka')

NATIVE_FORMATS: Dict[Codec, AudioFormat] = {
    Codec.MP3: MP3_FORMAT,
    Codec.AAC: AAC_FORMAT,
    Codec.OGG: OGG_OPUS_FORMAT,
    Codec.OPUS: WEBM_OPUS_FORMAT,
}


class CodecSupport:
    """The muxers and encoders available in the runtime."""

    def __init__(self, encoders: Iterable[str] = (), muxers: Iterable[str] = ()) -> None:
        self.encoders: FrozenSet[str] = frozenset(encoders)
        self.muxers: FrozenSet[str] = frozenset(muxers)

    def supports(self, fmt: AudioFormat) -> bool:
        return fmt.encoder in self.encoders and fmt.muxer in self.muxers

    @classmethod
    def of(cls, *formats: AudioFormat) -> 'CodecSupport':
        """Support set covering exactly *formats*."""
        return cls((f.encoder for f in formats), (f.muxer for f in formats))


def _parse_ffmpeg_listing(output: str) -> List[str]:
    """Extract the name column from ``ffmpeg -encoders`` / ``-muxers`` output."""
    names = []
    body = output.split('--\n', 1)[-1] if '--\n' in output else output
    for line in body.splitlines():
        parts = line.split()
        if len(parts) >= 2:
            names.extend(parts[1].split(','))
    return names


@lru_cache(maxsize=None)
def probe_codec_support(ffmpeg: str = 'ffmpeg') -> CodecSupport:
    """Ask *ffmpeg* which encoders and muxers it offers (cached).

    A missing executable yields an empty support set.
    """
    listings = {}
    for flag in ('-encoders', '-muxers'):
        try:
            result = subprocess.run(
                [ffmpeg, '-hide_banner', flag], check=True, capture_output=True, text=True,
            )
        except FileNotFoundError:
            logger.warning(f"'{ffmpeg}' not found; no encoders available")
            return CodecSupport()
        except subprocess.CalledProcessError as e:
            logger.error(f"ffmpeg {flag} failed: {e.stderr}")
            return CodecSupport()
        listings[flag] = _parse_ffmpeg_listing(result.stdout)
    support = CodecSupport(listings['-encoders'], listings['-muxers'])
    logger.debug(f'ffmpeg offers {len(support.encoders)} encoders, {len(support.muxers)} muxers')
    return support


def negotiate_format(codec: Codec, support: CodecSupport) -> AudioFormat:
    """Resolve *codec* to a format the runtime can produce.

    Raises:
        UnsupportedCodecError: If not even the generic container is available.
    """
    codec = Codec.parse(codec)
    requested = NATIVE_FORMATS[codec]
    if support.supports(requested):
        return requested

    chain = [WEBM_OPUS_FORMAT, GENERIC_FORMAT]
    if codec is Codec.OGG:
        chain.insert(0, GENERIC_OGG_FORMAT)
    for candidate in chain:
        if candidate != requested and support.supports(candidate):
            logger.warning(f'Codec fallback: requested {requested}, using {candidate}')
            return candidate

    raise UnsupportedCodecError(f'No encoder available for {codec.value} or any fallback format')


async def spawn_ffmpeg(
    fmt: AudioFormat,
    bitrate_kbps: int,
    rate: int,
    channels: int,
    ffmpeg: str = 'ffmpeg',
    live: bool = False,
):
    """Start an ffmpeg process reading f32le PCM on stdin, writing *fmt* on stdout."""
    cmd = [
        ffmpeg, '-hide_banner', '-loglevel', 'error',
        '-f', 'f32le', '-ar', str(rate), '-ac', str(channels), '-i', 'pipe:0',
        '-c:a', fmt.encoder,
    ]
    if not fmt.encoder.startswith('pcm_'):
        cmd += ['-b:a', f'{bitrate_kbps}k']
    if live:
        cmd += ['-flush_packets', '1']
    cmd += ['-f', fmt.muxer, 'pipe:1']
    logger.debug(f"Spawning encoder: {' '.join(cmd)}")
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )


class Encoder:
    """One encoder process fed from its own tap, output sliced into timed chunks."""

    timeslice = RECORDING_TIMESLICE
    live = False

    def __init__(
        self,
        graph: CaptureGraph,
        support: Optional[CodecSupport] = None,
        spawn: Callable = spawn_ffmpeg,
    ) -> None:
        self._graph = graph
        self._support = support
        self._spawn = spawn
        self._tap: Optional[AudioTap] = None
        self._process = None
        self._tasks: List[asyncio.Task] = []
        self._pending = bytearray()
        self.codec: Optional[Codec] = None
        self.bitrate: Optional[int] = None
        self.format: Optional[AudioFormat] = None

    @property
    def running(self) -> bool:
        return self._process is not None

    def _resolve_support(self) -> CodecSupport:
        if self._support is None:
            self._support = probe_codec_support()
        return self._support

    async def _start(self, codec: Codec, bitrate_kbps: int) -> AudioFormat:
        if self.running:
            raise SessionStateError(f'{type(self).__name__} is already running')
        bitrate_kbps = validate_bitrate(bitrate_kbps)
        fmt = negotiate_format(codec, self._resolve_support())

        tap = self._graph.tap()
        try:
            process = await self._spawn(fmt, bitrate_kbps, tap.rate, tap.channels, live=self.live)
        except OSError as error:
            tap.close()
            raise UnsupportedCodecError(f'Cannot start encoder for {fmt}: {error}') from error

        self._tap = tap
        self._process = process
        self._pending = bytearray()
        self.codec = Codec.parse(codec)
        self.bitrate = bitrate_kbps
        self.format = fmt
        self._tasks = [
            asyncio.ensure_future(self._feed(tap, process)),
            asyncio.ensure_future(self._drain(process)),
            asyncio.ensure_future(self._tick()),
        ]
        logger.info(f'{type(self).__name__} started: {self.codec.value} [{fmt}] @ {bitrate_kbps}kbps')
        return fmt

    async def _feed(self, tap: AudioTap, process) -> None:
        try:
            async for block in tap:
                process.stdin.write(samples_to_bytes(block))
                await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as error:
            logger.error(f'Encoder input closed unexpectedly: {error}')
        finally:
            try:
                process.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                pass

    async def _drain(self, process) -> None:
        while True:
            data = await process.stdout.read(READ_SIZE)
            if not data:
                break
            self._pending.extend(data)

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.timeslice)
            self._flush()

    def _flush(self) -> None:
        if self._pending:
            chunk = bytes(self._pending)
            self._pending.clear()
            self._emit(chunk)

    def _emit(self, chunk: bytes) -> None:
        raise NotImplementedError

    async def _stop(self) -> bool:
        """Stop the process; returns ``False`` when nothing was running."""
        process, self._process = self._process, None
        if process is None:
            return False

        feeder, drainer, ticker = self._tasks
        self._tasks = []
        ticker.cancel()
        if self._tap is not None:
            self._tap.close()
            self._tap = None
        try:
            results = await asyncio.wait_for(
                asyncio.gather(feeder, drainer, return_exceptions=True), STOP_TIMEOUT,
            )
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f'Encoder I/O failed: {result!r}')
            await asyncio.wait_for(process.wait(), STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning('Encoder did not finish in time, killing it')
            feeder.cancel()
            drainer.cancel()
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        self._flush()
        logger.info(f'{type(self).__name__} stopped')
        return True


class RecordingEncoder(Encoder):
    """Buffers ~1 s chunks until stopped, then returns the whole file."""

    timeslice = RECORDING_TIMESLICE

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._chunks: List[bytes] = []

    async def start(self, codec: Codec, bitrate_kbps: int) -> AudioFormat:
        self._chunks = []
        return await self._start(codec, bitrate_kbps)

    def _emit(self, chunk: bytes) -> None:
        self._chunks.append(chunk)

    @property
    def buffered_bytes(self) -> int:
        return sum(len(c) for c in self._chunks) + len(self._pending)

    async def stop(self) -> bytes:
        """Return the completed recording; ``b''`` if none was running."""
        if not await self._stop():
            return b''
        blob = b''.join(self._chunks)
        self._chunks = []
        return blob


class StreamingEncoder(Encoder):
    """Emits ~500 ms chunks in production order.

    Chunks go either to the ``on_chunk`` callback given to :meth:`start` or,
    without a callback, to the async iterator returned by :meth:`chunks`.
    """

    timeslice = STREAMING_TIMESLICE
    live = True

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._queue: 'asyncio.Queue[Optional[bytes]]' = asyncio.Queue()
        self._on_chunk: Optional[Callable[[bytes], None]] = None

    async def start(
        self,
        codec: Codec,
        bitrate_kbps: int,
        on_chunk: Optional[Callable[[bytes], None]] = None,
    ) -> AudioFormat:
        self._queue = asyncio.Queue()
        self._on_chunk = on_chunk
        return await self._start(codec, bitrate_kbps)

    def _emit(self, chunk: bytes) -> None:
        if self._on_chunk is not None:
            self._on_chunk(chunk)
        else:
            self._queue.put_nowait(chunk)

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield chunks until the encoder is stopped.

        The sequence is not restartable; start the encoder again for a new one.
        """
        queue = self._queue
        while True:
            chunk = await queue.get()
            if chunk is None:
                return
            yield chunk

    async def stop(self) -> None:
        if await self._stop():
            self._queue.put_nowait(None)


class EncoderPipeline:
    """The recording and streaming encoders sharing one capture graph."""

    def __init__(
        self,
        graph: CaptureGraph,
        support: Optional[CodecSupport] = None,
        spawn: Callable = spawn_ffmpeg,
    ) -> None:
        self.recording = RecordingEncoder(graph, support, spawn)
        self.streaming = StreamingEncoder(graph, support, spawn)

    async def start_recording_encoder(self, codec: Codec, bitrate_kbps: int) -> AudioFormat:
        return await self.recording.start(codec, bitrate_kbps)

    async def stop_recording_encoder(self) -> bytes:
        return await self.recording.stop()

    async def start_streaming_encoder(
        self,
        codec: Codec,
        bitrate_kbps: int,
        on_chunk: Optional[Callable[[bytes], None]] = None,
    ) -> AudioFormat:
        return await self.streaming.start(codec, bitrate_kbps, on_chunk)

    async def stop_streaming_encoder(self) -> None:
        await self.streaming.stop()


def samples_to_bytes(block: np.ndarray) -> bytes:
    """Little-endian float32 bytes as fed to the encoder."""
    return block.astype('<f4', copy=False).tobytes()
