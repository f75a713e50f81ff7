"""Configuration management for livecast.

This module provides the configuration constants, the typed configuration
records used by the engine, and the :class:`AppConfig` class which merges
defaults with values from an optional YAML file (``.livecast.yml`` in the
working directory).

Configuration records
---------------------
All records are frozen dataclasses.  They are never mutated in place; the
``with_*`` helpers return an updated copy::

    graph = AudioGraphConfig()
    graph = with_gain(graph, 1.4)
    graph = with_preset(graph, 'Broadcast')
    graph = with_band_gain(graph, 2, -3.0)   # preset becomes 'Manual'

Configuration file
------------------
.. code-block:: yaml

    active_profile: main
    profiles:
      - id: main
        name: Main Station
        type: Icecast
        host: radio.example.com
        port: 8000
        user: source
        password: hackme
        mount: /live
    streaming:
      codec: MP3
      bitrate: 128
      mode: RELAY            # RELAY, PROXY or DIRECT
      relay_url: ws://relay.example.com:8080/stream
    recording:
      codec: OPUS
      bitrate: 128
    record_behavior:
      file_name_pattern: "show_%Y%m%d-%H%M%S"
      directory: recordings/
      start_on_connect: true
    dsp:
      gain: 1.2
      compressor: {enabled: true, threshold: -18, ratio: 4}
      equalizer: {enabled: true, preset: Broadcast}
    relay:
      port: 8080
      shoutcast_line_ending: "\\r\\n"
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

CONFIG_FILE = '.livecast.yml'

# Audio capture parameters
BLOCK_SIZE = 1024  # frames per capture block
MAX_CHANNELS = 2
DEFAULT_RATE = 48000

# Encoder timeslices (seconds)
RECORDING_TIMESLICE = 1.0
STREAMING_TIMESLICE = 0.5

# Parameter smoothing time constant (seconds)
SMOOTHING_TIME_CONSTANT = 0.1

# Launch automation settle delay (seconds)
LAUNCH_SETTLE_DELAY = 1.0

# Direct transfer: how long to wait for an early rejection (seconds)
DIRECT_CONNECT_GRACE = 1.0

BITRATES = (8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 256, 320)

EQ_FREQUENCIES = (60, 250, 1000, 4000, 12000)

EQ_PRESETS: Dict[str, Tuple[float, ...]] = {
    'Flat': (0, 0, 0, 0, 0),
    'Broadcast': (3, 1, -1, 2, 4),
    'Bass Boost': (6, 4, 0, 0, 0),
    'Voice Presence': (-4, -2, 0, 3, 2),
    'Loudness': (5, -2, 0, -2, 5),
}
MANUAL_PRESET = 'Manual'

DEFAULT_FILE_NAME_PATTERN = 'livecast_%Y%m%d-%H%M%S'
DEFAULT_RECORDING_DIR = 'recordings/'
LOG_FILE = 'session.jsonl'

DEFAULT_RELAY_URL = 'ws://localhost:8080/stream'
DEFAULT_PROXY_URL = 'ws://localhost:8888'
DEFAULT_USER_AGENT = 'livecast/1.0'


class ProtocolKind(str, Enum):
    ICECAST = 'Icecast'
    SHOUTCAST = 'Shoutcast'

    @classmethod
    def parse(cls, value: Any) -> 'ProtocolKind':
        if isinstance(value, cls):
            return value
        for kind in cls:
            if str(value).lower() == kind.value.lower():
                return kind
        raise ValueError(f"Unknown protocol type: {value!r} (expected Icecast or Shoutcast)")


class Codec(str, Enum):
    MP3 = 'MP3'
    AAC = 'AAC'
    OGG = 'OGG'
    OPUS = 'OPUS'

    @classmethod
    def parse(cls, value: Any) -> 'Codec':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValueError(f"Unknown codec: {value!r} (expected MP3, AAC, OGG or OPUS)") from None


class StreamingMode(str, Enum):
    RELAY = 'RELAY'
    PROXY = 'PROXY'
    DIRECT = 'DIRECT'

    @classmethod
    def parse(cls, value: Any) -> 'StreamingMode':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValueError(f"Unknown streaming mode: {value!r} (expected RELAY, PROXY or DIRECT)") from None


def validate_bitrate(kbps: int) -> int:
    """Return *kbps* if it belongs to the supported bitrate set.

    Raises:
        ValueError: If the bitrate is not one of :data:`BITRATES`.
    """
    kbps = int(kbps)
    if kbps not in BITRATES:
        raise ValueError(f"Unsupported bitrate {kbps} kbps (choose one of {', '.join(map(str, BITRATES))})")
    return kbps


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not low <= value <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {value}")


# ----------------------------------------------------------------------
# Server profile
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ServerProfile:
    """Target streaming server."""

    id: str = 'default'
    name: str = 'Main Station'
    type: ProtocolKind = ProtocolKind.ICECAST
    host: str = 'streaming.example.com'
    port: int = 8000
    password: str = 'password'
    mount: str = '/stream'
    user: str = 'source'

    def __post_init__(self) -> None:
        _check_range('port', self.port, 1, 65535)

    @property
    def normalized_mount(self) -> str:
        return self.mount if self.mount.startswith('/') else f'/{self.mount}'

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServerProfile':
        """Build a profile from a YAML mapping.

        ``address`` is accepted as an alias of ``host``.
        """
        host = data.get('host', data.get('address'))
        if not host:
            raise ValueError("Server profile requires a 'host'")
        return cls(
            id=str(data.get('id', data.get('name', 'default'))),
            name=str(data.get('name', 'Main Station')),
            type=ProtocolKind.parse(data.get('type', ProtocolKind.ICECAST)),
            host=str(host),
            port=int(data.get('port', 8000)),
            password=str(data.get('password', '')),
            mount=str(data.get('mount', '/stream')),
            user=str(data.get('user', 'source')),
        )


# ----------------------------------------------------------------------
# Audio graph
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class CompressorSettings:
    enabled: bool = False
    threshold: float = -24.0  # dB
    ratio: float = 12.0
    attack: float = 0.003  # seconds
    release: float = 0.25  # seconds

    def __post_init__(self) -> None:
        _check_range('threshold', self.threshold, -100.0, 0.0)
        _check_range('ratio', self.ratio, 1.0, 20.0)
        _check_range('attack', self.attack, 0.0, 1.0)
        _check_range('release', self.release, 0.0, 1.0)


@dataclass(frozen=True)
class EqualizerSettings:
    enabled: bool = False
    preset: str = 'Flat'
    gains: Tuple[float, ...] = EQ_PRESETS['Flat']

    def __post_init__(self) -> None:
        if len(self.gains) != len(EQ_FREQUENCIES):
            raise ValueError(f"Equalizer needs exactly {len(EQ_FREQUENCIES)} band gains, got {len(self.gains)}")
        for gain in self.gains:
            _check_range('band gain', gain, -12.0, 12.0)
        object.__setattr__(self, 'gains', tuple(float(g) for g in self.gains))

    @property
    def bands(self) -> Tuple[Tuple[int, float], ...]:
        """(frequency, gain) pairs in chain order."""
        return tuple(zip(EQ_FREQUENCIES, self.gains))


@dataclass(frozen=True)
class AudioGraphConfig:
    device_id: Optional[int] = None
    gain: float = 1.0
    compressor: CompressorSettings = field(default_factory=CompressorSettings)
    equalizer: EqualizerSettings = field(default_factory=EqualizerSettings)

    def __post_init__(self) -> None:
        _check_range('gain', self.gain, 0.0, 2.0)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AudioGraphConfig':
        comp = data.get('compressor') or {}
        eq = dict(data.get('equalizer') or {})
        preset = eq.get('preset', 'Flat')
        if 'gains' in eq:
            gains = tuple(eq['gains'])
        elif preset in EQ_PRESETS:
            gains = EQ_PRESETS[preset]
        else:
            raise ValueError(f"Unknown equalizer preset: {preset!r}")
        return cls(
            device_id=data.get('device_id'),
            gain=float(data.get('gain', 1.0)),
            compressor=CompressorSettings(**{k: comp[k] for k in comp if k in CompressorSettings.__dataclass_fields__}),
            equalizer=EqualizerSettings(enabled=bool(eq.get('enabled', False)), preset=str(preset), gains=gains),
        )


def with_device(config: AudioGraphConfig, device_id: Optional[int]) -> AudioGraphConfig:
    return replace(config, device_id=device_id)


def with_gain(config: AudioGraphConfig, gain: float) -> AudioGraphConfig:
    return replace(config, gain=float(gain))


def with_compressor(config: AudioGraphConfig, **changes: Any) -> AudioGraphConfig:
    """Return *config* with compressor fields replaced (``enabled``, ``threshold``, ...)."""
    return replace(config, compressor=replace(config.compressor, **changes))


def with_equalizer_enabled(config: AudioGraphConfig, enabled: bool) -> AudioGraphConfig:
    return replace(config, equalizer=replace(config.equalizer, enabled=enabled))


def with_preset(config: AudioGraphConfig, preset: str) -> AudioGraphConfig:
    """Apply a named EQ preset to all five bands."""
    if preset not in EQ_PRESETS:
        raise ValueError(f"Unknown equalizer preset: {preset!r}")
    return replace(config, equalizer=replace(config.equalizer, preset=preset, gains=EQ_PRESETS[preset]))


def with_band_gain(config: AudioGraphConfig, index: int, gain: float) -> AudioGraphConfig:
    """Set one band's gain; the preset name switches to ``Manual``."""
    if not 0 <= index < len(EQ_FREQUENCIES):
        raise ValueError(f"Band index out of range: {index}")
    gains = list(config.equalizer.gains)
    gains[index] = float(gain)
    return replace(
        config,
        equalizer=replace(config.equalizer, preset=MANUAL_PRESET, gains=tuple(gains)),
    )


# ----------------------------------------------------------------------
# Streaming / recording / behaviour
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class StreamingConfig:
    codec: Codec = Codec.MP3
    bitrate: int = 128
    mode: StreamingMode = StreamingMode.RELAY
    relay_url: str = DEFAULT_RELAY_URL
    proxy_url: str = DEFAULT_PROXY_URL

    def __post_init__(self) -> None:
        validate_bitrate(self.bitrate)


@dataclass(frozen=True)
class RecordingConfig:
    codec: Codec = Codec.OPUS
    bitrate: int = 128

    def __post_init__(self) -> None:
        validate_bitrate(self.bitrate)


@dataclass(frozen=True)
class StreamBehavior:
    live_title: str = 'Live on livecast'
    title_update_delay: float = 0.0
    auto_connect_on_launch: bool = False
    # Persisted and displayed but never consulted by the connection logic.
    reconnect_enabled: bool = True
    reconnect_delay: float = 5.0

    def __post_init__(self) -> None:
        _check_range('title_update_delay', self.title_update_delay, 0.0, 20.0)


@dataclass(frozen=True)
class RecordBehavior:
    file_name_pattern: str = DEFAULT_FILE_NAME_PATTERN
    directory: str = DEFAULT_RECORDING_DIR
    start_on_connect: bool = False
    stop_on_disconnect: bool = False
    start_on_launch: bool = False


@dataclass(frozen=True)
class RelaySettings:
    """Settings of the server-side relay process."""

    host: str = '0.0.0.0'
    port: int = 8080
    public: bool = False
    stream_name: str = 'livecast Live'
    user_agent: str = DEFAULT_USER_AGENT
    shoutcast_line_ending: str = '\r\n'
    connect_timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.shoutcast_line_ending not in ('\r\n', '\n'):
            raise ValueError("shoutcast_line_ending must be '\\r\\n' or '\\n'")


def _build(cls, data: Any, **parsers):
    """Instantiate dataclass *cls* from the known keys of mapping *data*."""
    if not isinstance(data, dict):
        return cls()
    kwargs = {}
    for key in cls.__dataclass_fields__:
        if key in data:
            parser = parsers.get(key)
            kwargs[key] = parser(data[key]) if parser else data[key]
    return cls(**kwargs)


class AppConfig:
    """Application configuration management."""

    def __init__(self) -> None:
        """Initialize configuration with defaults."""
        self._config: Dict[str, Any] = {
            'profiles': [],
            'active_profile': None,
            'streaming': {},
            'recording': {},
            'stream_behavior': {},
            'record_behavior': {},
            'dsp': {},
            'relay': {},
        }
        self._load_yaml_config()

    def _load_yaml_config(self) -> None:
        """Load optional YAML configuration from project root."""
        config_path = Path.cwd() / CONFIG_FILE
        if not config_path.exists():
            return

        content = yaml.safe_load(config_path.read_text(encoding='utf-8'))
        if not content:
            return

        if not isinstance(content, dict):
            raise ValueError(f"Configuration in {CONFIG_FILE} must be a mapping")

        for key, value in content.items():
            self._config[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value.

        Args:
            key: Configuration key
            value: Configuration value
        """
        self._config[key] = value

    def get_profiles(self) -> List[ServerProfile]:
        """Return all configured server profiles (a default one if none)."""
        raw = self._config.get('profiles') or []
        if not isinstance(raw, list):
            raise ValueError("'profiles' must be a list")
        profiles = [ServerProfile.from_dict(item) for item in raw]
        return profiles or [ServerProfile()]

    def get_profile(self, profile_id: Optional[str] = None) -> ServerProfile:
        """Return the active profile, or the one named by *profile_id*.

        Raises:
            ValueError: If *profile_id* does not match any profile.
        """
        profiles = self.get_profiles()
        wanted = profile_id or self._config.get('active_profile')
        if not wanted:
            return profiles[0]
        for profile in profiles:
            if profile.id == wanted or profile.name == wanted:
                return profile
        raise ValueError(f"No server profile named {wanted!r}")

    def get_graph_config(self) -> AudioGraphConfig:
        dsp = self._config.get('dsp')
        return AudioGraphConfig.from_dict(dsp) if isinstance(dsp, dict) else AudioGraphConfig()

    def get_streaming_config(self) -> StreamingConfig:
        return _build(
            StreamingConfig, self._config.get('streaming'),
            codec=Codec.parse, mode=StreamingMode.parse, bitrate=int,
        )

    def get_recording_config(self) -> RecordingConfig:
        return _build(RecordingConfig, self._config.get('recording'), codec=Codec.parse, bitrate=int)

    def get_stream_behavior(self) -> StreamBehavior:
        return _build(StreamBehavior, self._config.get('stream_behavior'), title_update_delay=float)

    def get_record_behavior(self) -> RecordBehavior:
        return _build(RecordBehavior, self._config.get('record_behavior'))

    def get_relay_settings(self) -> RelaySettings:
        return _build(RelaySettings, self._config.get('relay'), port=int, public=bool)

    def get_recording_dir(self) -> Path:
        """Get the recording directory as Path object (created if missing)."""
        path = Path(self.get_record_behavior().directory)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_log_path(self, output_dir: Optional[Path] = None) -> Path:
        """Return the session log file path.

        The file name is taken from the ``log.file`` key in ``.livecast.yml``
        when present, otherwise from :data:`LOG_FILE`.  The file is placed
        inside *output_dir* (defaults to :meth:`get_recording_dir`).
        """
        log_config = self._config.get('log')
        log_file = LOG_FILE
        if isinstance(log_config, dict):
            log_file = log_config.get('file', LOG_FILE)
        base = Path(output_dir) if output_dir is not None else self.get_recording_dir()
        return base / log_file
