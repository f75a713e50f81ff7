"""Processing chain tests for livecast."""

import cmath
import math

import numpy as np
import pytest

from conftest import silence, tone
from livecast.core.config import (
    AudioGraphConfig,
    CompressorSettings,
    EqualizerSettings,
    EQ_PRESETS,
    with_compressor,
    with_equalizer_enabled,
    with_gain,
    with_preset,
)
from livecast.core.processing import (
    LevelMeter,
    ProcessingChain,
    SmoothedValue,
    band_kinds,
    biquad_coefficients,
    detect_driver_type,
    effective_band_gains,
    effective_compressor,
    pcm16_to_float,
    to_channels,
)

RATE = 48000


def _magnitude(b, a, frequency, rate=RATE):
    z = cmath.exp(-1j * 2 * math.pi * frequency / rate)
    return abs((b[0] + b[1] * z + b[2] * z * z) / (a[0] + a[1] * z + a[2] * z * z))


def _rms(block):
    return float(np.sqrt(np.mean(np.square(block, dtype=np.float64))))


def test_disabled_compressor_is_passthrough():
    stored = CompressorSettings(enabled=False, threshold=-40, ratio=8)
    effective = effective_compressor(stored)
    assert effective.threshold == 0
    assert effective.ratio == 1

    enabled = CompressorSettings(enabled=True, threshold=-40, ratio=8)
    assert effective_compressor(enabled) == enabled


def test_disabled_equalizer_is_flat():
    stored = EqualizerSettings(enabled=False, preset="Bass Boost", gains=EQ_PRESETS["Bass Boost"])
    assert effective_band_gains(stored) == (0.0, 0.0, 0.0, 0.0, 0.0)
    assert effective_band_gains(EqualizerSettings(enabled=True, gains=EQ_PRESETS["Bass Boost"]))[0] == 6.0


def test_band_layout():
    assert band_kinds() == ("lowshelf", "peaking", "peaking", "peaking", "highshelf")


@pytest.mark.parametrize("kind", ["lowshelf", "peaking", "highshelf"])
def test_zero_gain_biquad_is_identity(kind):
    b, a = biquad_coefficients(kind, 1000, 0.0, RATE)
    assert np.allclose(b, a)


def test_peaking_gain_at_centre():
    b, a = biquad_coefficients("peaking", 1000, 6.0, RATE)
    assert _magnitude(b, a, 1000) == pytest.approx(10 ** (6 / 20), rel=1e-6)
    assert _magnitude(b, a, 20) == pytest.approx(1.0, abs=0.01)


def test_shelves_boost_their_side():
    b, a = biquad_coefficients("lowshelf", 60, 6.0, RATE)
    assert _magnitude(b, a, 10) > 1.8
    assert _magnitude(b, a, 10000) == pytest.approx(1.0, abs=0.01)

    b, a = biquad_coefficients("highshelf", 12000, -6.0, RATE)
    assert _magnitude(b, a, 20000) < 0.7
    assert _magnitude(b, a, 100) == pytest.approx(1.0, abs=0.01)


def test_unknown_filter_kind():
    with pytest.raises(ValueError):
        biquad_coefficients("notch", 1000, 0.0, RATE)


def test_default_chain_is_passthrough():
    chain = ProcessingChain(RATE, 2)
    block = tone(amplitude=0.5)
    for _ in range(5):
        out = chain.process(block)
    assert np.allclose(out, block, atol=1e-6)


def test_disabled_eq_with_preset_is_passthrough():
    config = with_preset(AudioGraphConfig(), "Bass Boost")
    chain = ProcessingChain(RATE, 2, config)
    block = tone(amplitude=0.3, frequency=60)
    for _ in range(20):
        out = chain.process(block)
    assert np.allclose(out, block, atol=1e-6)


def test_gain_change_is_smoothed():
    chain = ProcessingChain(RATE, 2)
    block = tone(amplitude=0.25)
    chain.configure(with_gain(AudioGraphConfig(), 2.0))

    first = chain.process(block)
    assert _rms(block) < _rms(first) < 2 * _rms(block)

    for _ in range(100):
        out = chain.process(block)
    assert _rms(out) == pytest.approx(2 * _rms(block), rel=1e-3)


def test_enabled_compressor_reduces_loud_signal():
    config = with_compressor(AudioGraphConfig(), enabled=True, threshold=-24, ratio=12)
    chain = ProcessingChain(RATE, 2, config)
    block = tone(amplitude=0.5)
    for _ in range(200):
        out = chain.process(block)
    assert chain.compressor.reduction_db > 10
    assert _rms(out) < 0.5 * _rms(block)


def test_enabled_eq_changes_signal():
    config = with_preset(with_equalizer_enabled(AudioGraphConfig(), True), "Bass Boost")
    chain = ProcessingChain(RATE, 2, config)
    # one full cycle per block keeps the input continuous
    block = tone(frames=1200, amplitude=0.2, frequency=40)
    for _ in range(100):
        out = chain.process(block)
    assert _rms(out) > 1.3 * _rms(block)


def test_level_meter():
    meter = LevelMeter(2)
    meter.update(silence())
    assert meter.levels() == (0.0, 0.0)

    for _ in range(20):
        meter.update(tone(amplitude=0.5))
    left, right = meter.levels()
    assert 0.0 < left <= 1.0
    assert left == pytest.approx(right)


def test_mono_meter_reports_both_sides():
    meter = LevelMeter(1)
    for _ in range(10):
        meter.update(tone(channels=1, amplitude=0.5))
    left, right = meter.levels()
    assert left == right > 0


def test_smoothed_value_converges():
    value = SmoothedValue(0.0)
    value.set_target(1.0)
    start, end = value.advance(0.1)
    assert start == 0.0
    assert end == pytest.approx(1 - math.exp(-1))
    for _ in range(50):
        value.advance(0.1)
    assert value.settled
    assert value.value == 1.0


def test_pcm_conversion_and_channel_mapping():
    pcm = np.array([0, 16384, -32768, 32767], dtype=np.int16).tobytes()
    block = pcm16_to_float(pcm, 2)
    assert block.shape == (2, 2)
    assert block[0, 1] == pytest.approx(0.5)
    assert block[1, 0] == -1.0

    mono = np.ones((4, 1), dtype=np.float32)
    assert to_channels(mono, 2).shape == (4, 2)
    assert to_channels(np.ones((4, 2)), 1).shape == (4, 1)


def test_detect_driver_type():
    """Test audio driver type detection."""
    assert detect_driver_type("PulseAudio") == "pulse"
    assert detect_driver_type("ALSA") == "alsa"
    assert detect_driver_type("JACK") == "jack"
    assert detect_driver_type("USB Device") == "usb"
    assert detect_driver_type("Unknown") == "default"
