"""Audio processing utilities for livecast.

This module holds the signal-processing building blocks of the capture
graph: parameter smoothing, the block-based dynamics compressor, the
five-band biquad equalizer, the spectrum level meter, and driver detection
for device listings.

All processors work on float32 blocks shaped ``(frames, channels)`` and keep
their own state between blocks, so they can be fed an endless stream.
"""

import math
from typing import Optional, Tuple

import numpy as np
from scipy.signal import lfilter

from .config import (
    EQ_FREQUENCIES,
    SMOOTHING_TIME_CONSTANT,
    AudioGraphConfig,
    CompressorSettings,
    EqualizerSettings,
)

# Meter analyser parameters
FFT_SIZE = 256
METER_MIN_DB = -100.0
METER_MAX_DB = -30.0
METER_SMOOTHING = 0.8

EQ_Q = 1.0


def effective_compressor(settings: CompressorSettings) -> CompressorSettings:
    """Return the settings the compressor stage actually runs with.

    A disabled compressor is threshold 0 dB, ratio 1:1: a passthrough.
    """
    if settings.enabled:
        return settings
    return CompressorSettings(
        enabled=False,
        threshold=0.0,
        ratio=1.0,
        attack=settings.attack,
        release=settings.release,
    )


def effective_band_gains(settings: EqualizerSettings) -> Tuple[float, ...]:
    """Return the per-band gains in dB; all zero when the EQ is disabled."""
    if settings.enabled:
        return tuple(settings.gains)
    return tuple(0.0 for _ in EQ_FREQUENCIES)


def smoothing_coefficient(duration: float, time_constant: float = SMOOTHING_TIME_CONSTANT) -> float:
    """Fraction of the remaining distance covered after *duration* seconds."""
    if time_constant <= 0:
        return 1.0
    return 1.0 - math.exp(-duration / time_constant)


class SmoothedValue:
    """A parameter that approaches its target exponentially.

    Equivalent to setting a target with a time constant: each call to
    :meth:`advance` moves the value towards the target by the amount the
    exponential covers in the given duration.
    """

    def __init__(self, value: float, time_constant: float = SMOOTHING_TIME_CONSTANT) -> None:
        self.value = float(value)
        self.target = float(value)
        self._time_constant = time_constant

    def set_target(self, target: float) -> None:
        self.target = float(target)

    def advance(self, duration: float) -> Tuple[float, float]:
        """Advance by *duration* seconds and return ``(start, end)`` values."""
        start = self.value
        self.value += (self.target - self.value) * smoothing_coefficient(duration, self._time_constant)
        if abs(self.target - self.value) < 1e-6:
            self.value = self.target
        return start, self.value

    @property
    def settled(self) -> bool:
        return self.value == self.target


def ramp(block: np.ndarray, start: float, end: float) -> np.ndarray:
    """Multiply *block* by a linear gain ramp from *start* to *end*."""
    if start == end:
        return block if start == 1.0 else block * np.float32(start)
    envelope = np.linspace(start, end, block.shape[0], endpoint=False, dtype=np.float32)
    return block * envelope[:, np.newaxis]


def db_to_linear(db: float) -> float:
    return 10.0 ** (db / 20.0)


def linear_to_db(value: float, floor: float = -120.0) -> float:
    if value <= 0:
        return floor
    return max(floor, 20.0 * math.log10(value))


# ----------------------------------------------------------------------
# Biquad design (RBJ audio EQ cookbook)
# ----------------------------------------------------------------------

def biquad_coefficients(kind: str, frequency: float, gain_db: float, rate: int, q: float = EQ_Q):
    """Design a biquad filter.

    Args:
        kind: ``'lowshelf'``, ``'peaking'`` or ``'highshelf'``
        frequency: Centre / corner frequency in Hz
        gain_db: Boost or cut in dB
        rate: Sample rate in Hz
        q: Quality factor of peaking filters (shelves use slope 1)

    Returns:
        Normalised ``(b, a)`` coefficient arrays
    """
    a_gain = 10.0 ** (gain_db / 40.0)
    # Keep the corner below Nyquist for low sample rates
    frequency = min(frequency, rate * 0.45)
    w0 = 2.0 * math.pi * frequency / rate
    cos_w0 = math.cos(w0)
    sin_w0 = math.sin(w0)

    if kind == 'peaking':
        alpha = sin_w0 / (2.0 * q)
        b = [1 + alpha * a_gain, -2 * cos_w0, 1 - alpha * a_gain]
        a = [1 + alpha / a_gain, -2 * cos_w0, 1 - alpha / a_gain]
    elif kind in ('lowshelf', 'highshelf'):
        alpha = sin_w0 / 2.0 * math.sqrt(2.0)  # shelf slope S = 1
        sqrt_a = 2.0 * math.sqrt(a_gain) * alpha
        if kind == 'lowshelf':
            b = [
                a_gain * ((a_gain + 1) - (a_gain - 1) * cos_w0 + sqrt_a),
                2 * a_gain * ((a_gain - 1) - (a_gain + 1) * cos_w0),
                a_gain * ((a_gain + 1) - (a_gain - 1) * cos_w0 - sqrt_a),
            ]
            a = [
                (a_gain + 1) + (a_gain - 1) * cos_w0 + sqrt_a,
                -2 * ((a_gain - 1) + (a_gain + 1) * cos_w0),
                (a_gain + 1) + (a_gain - 1) * cos_w0 - sqrt_a,
            ]
        else:
            b = [
                a_gain * ((a_gain + 1) + (a_gain - 1) * cos_w0 + sqrt_a),
                -2 * a_gain * ((a_gain - 1) + (a_gain + 1) * cos_w0),
                a_gain * ((a_gain + 1) + (a_gain - 1) * cos_w0 - sqrt_a),
            ]
            a = [
                (a_gain + 1) - (a_gain - 1) * cos_w0 + sqrt_a,
                2 * ((a_gain - 1) - (a_gain + 1) * cos_w0),
                (a_gain + 1) - (a_gain - 1) * cos_w0 - sqrt_a,
            ]
    else:
        raise ValueError(f"Unknown filter type: {kind}")

    b = np.asarray(b, dtype=np.float64) / a[0]
    a = np.asarray(a, dtype=np.float64) / a[0]
    return b, a


def band_kinds(count: int = len(EQ_FREQUENCIES)) -> Tuple[str, ...]:
    """Filter type per band: shelving at the edges, peaking in between."""
    return tuple(
        'lowshelf' if i == 0 else 'highshelf' if i == count - 1 else 'peaking'
        for i in range(count)
    )


class BiquadBand:
    """One equalizer band with smoothed gain and persistent filter state."""

    def __init__(self, kind: str, frequency: float, rate: int, channels: int) -> None:
        self.kind = kind
        self.frequency = frequency
        self._rate = rate
        self._gain = SmoothedValue(0.0)
        self._zi = np.zeros((2, channels))
        self._coefficients = biquad_coefficients(kind, frequency, 0.0, rate)

    @property
    def gain(self) -> float:
        return self._gain.value

    def set_gain(self, gain_db: float) -> None:
        self._gain.set_target(gain_db)

    def process(self, block: np.ndarray) -> np.ndarray:
        if not self._gain.settled:
            _, gain = self._gain.advance(block.shape[0] / self._rate)
            self._coefficients = biquad_coefficients(self.kind, self.frequency, gain, self._rate)
        elif self._gain.value == 0.0:
            # Flat band; keep filter state decaying without coloring the signal
            self._zi *= 0.0
            return block
        b, a = self._coefficients
        out, self._zi = lfilter(b, a, block, axis=0, zi=self._zi)
        return out.astype(np.float32)


class Equalizer:
    """Five-band equalizer: low-shelf, three peaking bands, high-shelf."""

    def __init__(self, rate: int, channels: int) -> None:
        kinds = band_kinds()
        self.bands = [
            BiquadBand(kind, freq, rate, channels)
            for kind, freq in zip(kinds, EQ_FREQUENCIES)
        ]

    def configure(self, settings: EqualizerSettings) -> None:
        for band, gain in zip(self.bands, effective_band_gains(settings)):
            band.set_gain(gain)

    def process(self, block: np.ndarray) -> np.ndarray:
        for band in self.bands:
            block = band.process(block)
        return block


class Compressor:
    """Block-based feed-forward dynamics compressor.

    The level of each block is its RMS in dBFS.  Above the threshold the gain
    computer reduces by ``(level - threshold) * (1 - 1 / ratio)`` dB.  The
    reduction follows the target with the attack coefficient when it grows and
    the release coefficient when it shrinks, and is ramped across the block.
    """

    def __init__(self, rate: int) -> None:
        self._rate = rate
        self._threshold = SmoothedValue(0.0)
        self._ratio = SmoothedValue(1.0)
        self._attack = 0.003
        self._release = 0.25
        self._reduction_db = 0.0

    @property
    def reduction_db(self) -> float:
        """Current gain reduction (positive dB)."""
        return self._reduction_db

    def configure(self, settings: CompressorSettings) -> None:
        settings = effective_compressor(settings)
        self._threshold.set_target(settings.threshold)
        self._ratio.set_target(settings.ratio)
        self._attack = settings.attack
        self._release = settings.release

    def process(self, block: np.ndarray) -> np.ndarray:
        duration = block.shape[0] / self._rate
        self._threshold.advance(duration)
        self._ratio.advance(duration)
        threshold = self._threshold.value
        ratio = self._ratio.value

        rms = float(np.sqrt(np.mean(np.square(block, dtype=np.float64)))) if block.size else 0.0
        level = linear_to_db(rms)
        target = 0.0
        if ratio > 1.0 and level > threshold:
            target = (level - threshold) * (1.0 - 1.0 / ratio)

        time_constant = self._attack if target > self._reduction_db else self._release
        previous = self._reduction_db
        self._reduction_db += (target - previous) * smoothing_coefficient(duration, time_constant)
        return ramp(block, db_to_linear(-previous), db_to_linear(-self._reduction_db))


class LevelMeter:
    """Spectrum-average loudness estimate per channel, in 0-1."""

    def __init__(self, channels: int, fft_size: int = FFT_SIZE) -> None:
        self._fft_size = fft_size
        self._window = np.blackman(fft_size).astype(np.float32)
        self._smoothed = np.zeros((fft_size // 2, channels))
        self._levels: Tuple[float, ...] = tuple(0.0 for _ in range(channels))

    def update(self, block: np.ndarray) -> None:
        frames = block[-self._fft_size:]
        if frames.shape[0] < self._fft_size:
            frames = np.pad(frames, ((self._fft_size - frames.shape[0], 0), (0, 0)))
        spectrum = np.abs(np.fft.rfft(frames * self._window[:, np.newaxis], axis=0))[: self._fft_size // 2]
        spectrum /= self._fft_size
        self._smoothed = METER_SMOOTHING * self._smoothed + (1.0 - METER_SMOOTHING) * spectrum

        with np.errstate(divide='ignore'):
            db = 20.0 * np.log10(self._smoothed)
        scaled = 255.0 * (db - METER_MIN_DB) / (METER_MAX_DB - METER_MIN_DB)
        byte_values = np.clip(np.nan_to_num(scaled, neginf=0.0), 0.0, 255.0)
        average = byte_values.mean(axis=0)
        self._levels = tuple(float(min(1.0, value / 128.0)) for value in average)

    def levels(self) -> Tuple[float, float]:
        """Return ``(left, right)``; a mono input reports the same value twice."""
        if len(self._levels) == 1:
            return self._levels[0], self._levels[0]
        return self._levels[0], self._levels[1]


class ProcessingChain:
    """The fixed chain: input gain, compressor, equalizer.

    :meth:`configure` may be called at any time; parameter changes are
    smoothed over :data:`~livecast.core.config.SMOOTHING_TIME_CONSTANT`.
    """

    def __init__(self, rate: int, channels: int, config: Optional[AudioGraphConfig] = None) -> None:
        self.rate = rate
        self.channels = channels
        self._gain = SmoothedValue(1.0)
        self.compressor = Compressor(rate)
        self.equalizer = Equalizer(rate, channels)
        self.meter = LevelMeter(channels)
        self.config = config or AudioGraphConfig()
        self.configure(self.config, immediate=True)

    def configure(self, config: AudioGraphConfig, immediate: bool = False) -> None:
        self.config = config
        self._gain.set_target(config.gain)
        if immediate:
            self._gain.value = config.gain
        self.compressor.configure(config.compressor)
        self.equalizer.configure(config.equalizer)

    def process(self, block: np.ndarray) -> np.ndarray:
        start, end = self._gain.advance(block.shape[0] / self.rate)
        out = ramp(block, start, end)
        out = self.compressor.process(out)
        out = self.equalizer.process(out)
        out = np.clip(out, -1.0, 1.0).astype(np.float32, copy=False)
        self.meter.update(out)
        return out


def pcm16_to_float(data: bytes, channels: int) -> np.ndarray:
    """Convert interleaved int16 bytes to a ``(frames, channels)`` float32 block."""
    samples = np.frombuffer(data, dtype=np.int16).astype(np.float32) / 32768.0
    return samples.reshape(-1, channels)


def to_channels(block: np.ndarray, channels: int) -> np.ndarray:
    """Up- or down-mix *block* to *channels* columns."""
    if block.ndim == 1:
        block = block[:, np.newaxis]
    current = block.shape[1]
    if current == channels:
        return block
    if current == 1:
        return np.repeat(block, channels, axis=1)
    if channels == 1:
        return block.mean(axis=1, keepdims=True)
    return block[:, :channels]


def detect_driver_type(device_name: str) -> str:
    """Detect the audio driver type from device name.

    Args:
        device_name: The name of the audio device

    Returns:
        Driver type: 'pulse', 'alsa', 'jack', 'usb' or 'default'
    """
    name_lower = device_name.lower()

    if 'pulse' in name_lower or 'pipewire' in name_lower:
        return 'pulse'
    elif 'alsa' in name_lower or 'hw:' in name_lower or 'plughw' in name_lower:
        return 'alsa'
    elif 'jack' in name_lower:
        return 'jack'
    elif 'usb' in name_lower:
        return 'usb'
    else:
        return 'default'
