"""Encoder pipeline tests for livecast."""

import asyncio

import pytest
from loguru import logger

from conftest import FakeProcess, FakeSpawn, silence
from livecast.core import encoder as encoder_module
from livecast.core.capture import CaptureGraph
from livecast.core.config import Codec
from livecast.core.encoder import (
    AAC_FORMAT,
    GENERIC_FORMAT,
    GENERIC_OGG_FORMAT,
    MP3_FORMAT,
    OGG_OPUS_FORMAT,
    WEBM_OPUS_FORMAT,
    CodecSupport,
    EncoderPipeline,
    _parse_ffmpeg_listing,
    negotiate_format,
)
from livecast.core.errors import SessionStateError, UnsupportedCodecError


def test_native_format_when_supported():
    support = CodecSupport.of(MP3_FORMAT, AAC_FORMAT, OGG_OPUS_FORMAT, WEBM_OPUS_FORMAT)
    assert negotiate_format(Codec.MP3, support) == MP3_FORMAT
    assert negotiate_format(Codec.AAC, support) == AAC_FORMAT
    assert negotiate_format(Codec.OGG, support) == OGG_OPUS_FORMAT
    assert negotiate_format('opus', support) == WEBM_OPUS_FORMAT


def test_ogg_fallback_chain():
    """OGG falls back to generic OGG, then Opus/WebM, then the generic container."""
    vorbis_only = CodecSupport(["libvorbis", "pcm_s16le"], ["ogg", "matroska"])
    assert negotiate_format(Codec.OGG, vorbis_only) == GENERIC_OGG_FORMAT
    assert negotiate_format(Codec.OGG, CodecSupport.of(WEBM_OPUS_FORMAT, GENERIC_FORMAT)) == WEBM_OPUS_FORMAT
    assert negotiate_format(Codec.OGG, CodecSupport.of(GENERIC_FORMAT)) == GENERIC_FORMAT


def test_other_codecs_skip_generic_ogg():
    support = CodecSupport.of(GENERIC_OGG_FORMAT, GENERIC_FORMAT)
    assert negotiate_format(Codec.AAC, support) == GENERIC_FORMAT


def test_fallback_is_logged():
    messages = []
    sink_id = logger.add(messages.append, level="WARNING")
    try:
        resolved = negotiate_format(Codec.AAC, CodecSupport.of(WEBM_OPUS_FORMAT))
    finally:
        logger.remove(sink_id)

    assert resolved == WEBM_OPUS_FORMAT
    assert resolved != AAC_FORMAT
    assert any("audio/aac" in str(m) and "audio/webm;codecs=opus" in str(m) for m in messages)


def test_no_format_available():
    with pytest.raises(UnsupportedCodecError):
        negotiate_format(Codec.MP3, CodecSupport())


def test_parse_ffmpeg_listing():
    output = (
        "Encoders:\n"
        " V..... = Video\n"
        " A..... = Audio\n"
        " ------\n"
        " A....D aac                  AAC (Advanced Audio Coding)\n"
        " A....D libmp3lame           libmp3lame MP3 (MPEG audio layer 3)\n"
        " A....D libopus              libopus Opus\n"
    )
    names = _parse_ffmpeg_listing(output)
    assert {"aac", "libmp3lame", "libopus"} <= set(names)


def test_streaming_chunks_in_order(basic_support, fast_encoders):
    async def scenario():
        graph = CaptureGraph()
        spawn = FakeSpawn()
        pipeline = EncoderPipeline(graph, basic_support, spawn)
        fmt = await pipeline.start_streaming_encoder(Codec.MP3, 128)

        for _ in range(3):
            graph.push(silence())
            await asyncio.sleep(0.02)

        chunks = []

        async def collect():
            async for chunk in pipeline.streaming.chunks():
                chunks.append(chunk)

        collector = asyncio.ensure_future(collect())
        await asyncio.sleep(0.02)
        await pipeline.stop_streaming_encoder()
        await asyncio.wait_for(collector, 1)
        return fmt, spawn, chunks

    fmt, spawn, chunks = asyncio.run(scenario())

    assert fmt == MP3_FORMAT
    process = spawn.processes[0]
    assert process.live is True
    assert process.bitrate == 128
    assert len(process.received) == 3
    assert b"".join(chunks) == b"pkt1;pkt2;pkt3;"


def test_stop_twice_is_safe(basic_support):
    async def scenario():
        pipeline = EncoderPipeline(CaptureGraph(), basic_support, FakeSpawn())
        await pipeline.start_streaming_encoder(Codec.MP3, 64)
        await pipeline.stop_streaming_encoder()
        await pipeline.stop_streaming_encoder()
        return await pipeline.stop_recording_encoder()

    assert asyncio.run(scenario()) == b""


def test_second_start_rejected(basic_support):
    async def scenario():
        spawn = FakeSpawn()
        pipeline = EncoderPipeline(CaptureGraph(), basic_support, spawn)
        await pipeline.start_recording_encoder(Codec.OPUS, 96)
        with pytest.raises(SessionStateError):
            await pipeline.start_recording_encoder(Codec.OPUS, 96)
        running = pipeline.recording.running
        await pipeline.stop_recording_encoder()
        return running, spawn

    running, spawn = asyncio.run(scenario())
    assert running
    assert len(spawn.processes) == 1


def test_recording_returns_whole_blob(basic_support, fast_encoders):
    async def scenario():
        graph = CaptureGraph()
        pipeline = EncoderPipeline(graph, basic_support, FakeSpawn())
        fmt = await pipeline.start_recording_encoder(Codec.OPUS, 128)
        graph.push(silence())
        graph.push(silence())
        await asyncio.sleep(0.05)
        return fmt, await pipeline.stop_recording_encoder()

    fmt, blob = asyncio.run(scenario())
    assert fmt == WEBM_OPUS_FORMAT
    assert blob == b"pkt1;pkt2;"


def test_invalid_bitrate_rejected(basic_support):
    async def scenario():
        pipeline = EncoderPipeline(CaptureGraph(), basic_support, FakeSpawn())
        await pipeline.start_streaming_encoder(Codec.MP3, 100)

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_missing_encoder_binary(basic_support):
    async def scenario():
        graph = CaptureGraph()
        pipeline = EncoderPipeline(graph, basic_support, FakeSpawn(error=FileNotFoundError("ffmpeg")))
        with pytest.raises(UnsupportedCodecError):
            await pipeline.start_streaming_encoder(Codec.MP3, 128)
        return pipeline.streaming.running, len(graph._taps)

    running, taps = asyncio.run(scenario())
    assert not running
    assert taps == 0


class HangingProcess(FakeProcess):
    """ffmpeg that never exits on its own."""

    def __init__(self, *args):
        super().__init__(*args)
        self._exited = asyncio.Event()

    async def wait(self):
        await self._exited.wait()
        self.returncode = -9
        return self.returncode

    def kill(self):
        super().kill()
        self._exited.set()


class DeadStdout:
    async def read(self, n=-1):
        raise ConnectionResetError("encoder output gone")


def test_stuck_encoder_is_killed_and_reaped(basic_support, monkeypatch):
    monkeypatch.setattr(encoder_module, "STOP_TIMEOUT", 0.05)
    processes = []

    async def spawn(fmt, bitrate_kbps, rate, channels, live=False):
        process = HangingProcess(fmt, bitrate_kbps, rate, channels, live)
        processes.append(process)
        return process

    async def scenario():
        pipeline = EncoderPipeline(CaptureGraph(), basic_support, spawn)
        await pipeline.start_recording_encoder(Codec.OPUS, 128)
        return await pipeline.stop_recording_encoder(), pipeline.recording.running

    blob, running = asyncio.run(scenario())
    assert blob == b""
    assert not running
    assert processes[0].killed
    assert processes[0].returncode == -9


def test_encoder_output_failure_does_not_escape_stop(basic_support):
    messages = []

    async def spawn(fmt, bitrate_kbps, rate, channels, live=False):
        process = FakeProcess(fmt, bitrate_kbps, rate, channels, live)
        process.stdout = DeadStdout()
        return process

    async def scenario():
        pipeline = EncoderPipeline(CaptureGraph(), basic_support, spawn)
        await pipeline.start_streaming_encoder(Codec.MP3, 128)
        await asyncio.sleep(0.01)
        await pipeline.stop_streaming_encoder()
        await pipeline.stop_streaming_encoder()
        return pipeline.streaming.running

    sink_id = logger.add(lambda m: messages.append(m.record["message"]), level="ERROR")
    try:
        running = asyncio.run(scenario())
    finally:
        logger.remove(sink_id)
    assert not running
    assert any("encoder output gone" in m for m in messages)
