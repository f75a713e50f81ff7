"""Shared test fixtures for livecast tests."""

import asyncio

import numpy as np
import pytest

from livecast.core.config import ServerProfile, StreamingMode
from livecast.core.encoder import (
    GENERIC_FORMAT,
    MP3_FORMAT,
    WEBM_OPUS_FORMAT,
    CodecSupport,
)
from livecast.core.errors import WriteError
from livecast.core.transport import Transport


class FakeStdin:
    def __init__(self, process):
        self._process = process
        self.closed = False

    def write(self, data):
        self._process.received.append(bytes(data))
        # one "encoded" packet per input block
        self._process.output.put_nowait(b'pkt%d;' % len(self._process.received))

    async def drain(self):
        pass

    def close(self):
        if not self.closed:
            self.closed = True
            self._process.output.put_nowait(b'')


class FakeStdout:
    def __init__(self, process):
        self._process = process

    async def read(self, n=-1):
        return await self._process.output.get()


class FakeProcess:
    """Stands in for an ffmpeg subprocess."""

    def __init__(self, fmt, bitrate, rate, channels, live):
        self.format = fmt
        self.bitrate = bitrate
        self.rate = rate
        self.channels = channels
        self.live = live
        self.received = []
        self.output = asyncio.Queue()
        self.stdin = FakeStdin(self)
        self.stdout = FakeStdout(self)
        self.returncode = None
        self.killed = False

    async def wait(self):
        self.returncode = 0
        return 0

    def kill(self):
        self.killed = True


class FakeSpawn:
    """Replacement for ``spawn_ffmpeg`` that records every process."""

    def __init__(self, error=None):
        self.processes = []
        self.error = error

    async def __call__(self, fmt, bitrate_kbps, rate, channels, live=False):
        if self.error is not None:
            raise self.error
        process = FakeProcess(fmt, bitrate_kbps, rate, channels, live)
        self.processes.append(process)
        return process


class FakeTransport(Transport):
    """In-memory transport recording every chunk."""

    mode = StreamingMode.RELAY

    def __init__(self, on_closed=None, connect_error=None, send_error=None):
        super().__init__(on_closed)
        self.connect_error = connect_error
        self.send_error = send_error
        self.sent = []
        self.connect_calls = 0
        self.disconnect_calls = 0

    async def connect(self, profile, config):
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        self._closing = False
        self._connected = True

    async def send(self, chunk):
        if self.send_error is not None:
            raise self.send_error
        if not self._connected:
            raise WriteError('Channel is closed')
        self.sent.append(chunk)

    async def disconnect(self):
        self.disconnect_calls += 1
        self._closing = True
        self._connected = False


class FakeMetadata:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def __call__(self, target, title):
        self.calls.append((target, title))
        if self.error is not None:
            raise self.error
        return 200


def transport_factory(transport):
    """Factory handing out *transport*, wired to the session's close callback."""

    def factory(mode, on_closed=None):
        transport.on_closed = on_closed
        return transport

    return factory


def silence(frames=1024, channels=2):
    return np.zeros((frames, channels), dtype=np.float32)


def tone(frames=1024, channels=2, rate=48000, frequency=440.0, amplitude=0.5):
    t = np.arange(frames) / rate
    mono = (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)
    return np.repeat(mono[:, np.newaxis], channels, axis=1)


@pytest.fixture
def fake_spawn():
    return FakeSpawn()


@pytest.fixture
def basic_support():
    """ffmpeg build with MP3, Opus/WebM and the generic container only."""
    return CodecSupport.of(MP3_FORMAT, WEBM_OPUS_FORMAT, GENERIC_FORMAT)


@pytest.fixture
def profile():
    return ServerProfile(
        id='main',
        name='Main Station',
        host='radio.example.com',
        port=8000,
        password='secret',
        mount='/live',
    )


@pytest.fixture
def fast_encoders(monkeypatch):
    """Shrink encoder timeslices so chunks flow within a test."""
    from livecast.core.encoder import RecordingEncoder, StreamingEncoder

    monkeypatch.setattr(StreamingEncoder, 'timeslice', 0.01)
    monkeypatch.setattr(RecordingEncoder, 'timeslice', 0.01)
