"""
Configuration module for Resilient Stream Recorder.
Loads settings from YAML file and provides typed configuration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class StreamConfig:
    """Source stream settings."""
    url: str


@dataclass
class RecordingConfig:
    """Recording session settings."""
    output_dir: str = "./recordings"
    duration_minutes: float = 60.0
    final_name: str = ""  # Empty means recording_<session_id>.mp4
    extension: str = "mp4"  # Container used for segment files


@dataclass
class CaptureConfig:
    """ffmpeg capture settings."""
    ffmpeg_path: str = "ffmpeg"
    min_viable_seconds: float = 5.0  # Faster exits are treated as rejected connections
    reconnect_delay_max: int = 2  # ffmpeg -reconnect_delay_max
    terminate_timeout: float = 5.0  # seconds to wait after SIGTERM before SIGKILL
    idle_log_interval: float = 30.0  # seconds without output before debug heartbeat


@dataclass
class ProbeConfig:
    """Stream availability probe settings."""
    timeout: float = 3.0  # HEAD request timeout
    ffprobe_path: str = "ffprobe"
    deep_timeout: float = 10.0  # hard limit on one ffprobe run
    deep_io_timeout: float = 5.0  # ffprobe -timeout, converted to microseconds


@dataclass
class MonitorConfig:
    """Outage monitoring settings."""
    fast_interval: float = 2.0
    deep_rearm_delay: float = 1.0
    deep_enabled: bool = True
    max_outage_seconds: float = 0.0  # 0 = wait forever


@dataclass
class MergeConfig:
    """Segment concatenation settings."""
    ffmpeg_path: str = "ffmpeg"
    timeout: float = 3600.0


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/recorder.log"
    max_size_mb: int = 10
    backup_count: int = 5
    status_interval: float = 5.0  # seconds between status lines, 0 disables


@dataclass
class Config:
    """Main configuration container."""
    stream: StreamConfig
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        """Ensure the log directory exists."""
        if self.logging.file:
            Path(self.logging.file).parent.mkdir(parents=True, exist_ok=True)


def as_bool(value: Any, default: bool) -> bool:
    """Parse bool from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "y", "on"):
            return True
        if text in ("0", "false", "no", "n", "off"):
            return False
    return default


def as_float(value: Any, default: float) -> float:
    """Parse float from YAML value with safe fallbacks."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return default
    return default


def as_int(value: Any, default: int) -> int:
    """Parse int from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(float(text.replace(",", ".")))
        except ValueError:
            return default
    return default


def load_config(config_path: str = "config.yaml") -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file.

    Returns:
        Config object with all settings.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If required fields are missing.
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Please create a config.yaml file. See config.example.yaml for reference."
        )

    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    if not data:
        raise ValueError("Configuration file is empty")

    stream_data = data.get('stream') or {}
    url = str(stream_data.get('url') or '').strip()
    if not url:
        raise ValueError("Missing required field: stream.url")

    recording_data = data.get('recording') or {}
    recording_config = RecordingConfig(
        output_dir=str(recording_data.get('output_dir', './recordings')),
        duration_minutes=as_float(recording_data.get('duration_minutes'), 60.0),
        final_name=str(recording_data.get('final_name') or ''),
        extension=str(recording_data.get('extension') or 'mp4').lstrip('.'),
    )

    capture_data = data.get('capture') or {}
    capture_config = CaptureConfig(
        ffmpeg_path=capture_data.get('ffmpeg_path', 'ffmpeg'),
        min_viable_seconds=as_float(capture_data.get('min_viable_seconds'), 5.0),
        reconnect_delay_max=max(0, as_int(capture_data.get('reconnect_delay_max'), 2)),
        terminate_timeout=as_float(capture_data.get('terminate_timeout'), 5.0),
        idle_log_interval=as_float(capture_data.get('idle_log_interval'), 30.0),
    )

    probe_data = data.get('probe') or {}
    probe_config = ProbeConfig(
        timeout=as_float(probe_data.get('timeout'), 3.0),
        ffprobe_path=probe_data.get('ffprobe_path', 'ffprobe'),
        deep_timeout=as_float(probe_data.get('deep_timeout'), 10.0),
        deep_io_timeout=as_float(probe_data.get('deep_io_timeout'), 5.0),
    )

    monitor_data = data.get('monitor') or {}
    monitor_config = MonitorConfig(
        fast_interval=as_float(monitor_data.get('fast_interval'), 2.0),
        deep_rearm_delay=as_float(monitor_data.get('deep_rearm_delay'), 1.0),
        deep_enabled=as_bool(monitor_data.get('deep_enabled'), True),
        max_outage_seconds=max(0.0, as_float(monitor_data.get('max_outage_seconds'), 0.0)),
    )

    merge_data = data.get('merge') or {}
    merge_config = MergeConfig(
        ffmpeg_path=merge_data.get('ffmpeg_path', capture_config.ffmpeg_path),
        timeout=as_float(merge_data.get('timeout'), 3600.0),
    )

    logging_data = data.get('logging') or {}
    logging_config = LoggingConfig(
        level=logging_data.get('level', 'INFO'),
        file=logging_data.get('file', './logs/recorder.log'),
        max_size_mb=as_int(logging_data.get('max_size_mb'), 10),
        backup_count=as_int(logging_data.get('backup_count'), 5),
        status_interval=max(0.0, as_float(logging_data.get('status_interval'), 5.0)),
    )

    return Config(
        stream=StreamConfig(url=url),
        recording=recording_config,
        capture=capture_config,
        probe=probe_config,
        monitor=monitor_config,
        merge=merge_config,
        logging=logging_config,
    )


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# Resilient Stream Recorder Configuration

stream:
  url: https://example.com/live/stream.ts

recording:
  output_dir: ./recordings
  duration_minutes: 90
  final_name: ""  # Empty = recording_<session_id>.mp4
  extension: mp4

capture:
  ffmpeg_path: ffmpeg
  min_viable_seconds: 5  # Shorter captures count as failed connections
  reconnect_delay_max: 2
  terminate_timeout: 5
  idle_log_interval: 30

probe:
  timeout: 3  # HEAD request timeout
  ffprobe_path: ffprobe
  deep_timeout: 10
  deep_io_timeout: 5

monitor:
  fast_interval: 2  # Seconds between HEAD checks during an outage
  deep_rearm_delay: 1  # Pause between ffprobe runs
  deep_enabled: true
  max_outage_seconds: 0  # 0 = wait forever for the stream to return

merge:
  ffmpeg_path: ffmpeg
  timeout: 3600

logging:
  level: INFO  # DEBUG, INFO, WARNING, ERROR
  file: ./logs/recorder.log
  max_size_mb: 10
  backup_count: 5
  status_interval: 5
"""
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)


if __name__ == '__main__':
    create_example_config()
    print("Created config.example.yaml")
