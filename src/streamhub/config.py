"""
Configuration module for streamhub.
Loads settings from YAML file and provides typed configuration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List

import yaml


@dataclass
class ServerConfig:
    """HTTP API / WebSocket listener."""
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class MediaServerConfig:
    """External RTMP media server integration."""
    # Local URL ffmpeg reads a live stream from; {stream_path} is /app/key
    playback_url_template: str = "rtmp://127.0.0.1:1935{stream_path}"
    # nginx-rtmp style control endpoint, empty to disable stream drop
    control_url: str = ""
    # Publish hook rejects keys not listed here; empty list allows all
    allowed_stream_keys: List[str] = field(default_factory=list)
    # Public URLs reported to the dashboard
    public_rtmp_url: str = "rtmp://localhost:1935"
    public_playback_url: str = "http://localhost:8000"


@dataclass
class FFmpegConfig:
    """ffmpeg executable and process control."""
    path: str = "ffmpeg"
    stop_grace_period: float = 5.0  # seconds between SIGTERM and SIGKILL


@dataclass
class RecordingConfig:
    """Recording settings."""
    enabled: bool = True
    output_dir: str = "./recordings"


@dataclass
class ForwardingConfig:
    """Forwarding (relay) settings."""
    destinations_file: str = "./data/destinations.json"
    default_max_retries: int = 3
    default_retry_delay_ms: int = 5000


@dataclass
class TelegramConfig:
    """Optional Telegram notification channel."""
    enabled: bool = False
    api_id: int = 0
    api_hash: str = ""
    channel_id: int = 0
    session_name: str = "streamhub"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/streamhub.log"
    max_size_mb: int = 10
    backup_count: int = 5
    ffmpeg_output: bool = False  # If True, log every ffmpeg output line at DEBUG


@dataclass
class Config:
    """Main configuration container."""
    server: ServerConfig = field(default_factory=ServerConfig)
    media_server: MediaServerConfig = field(default_factory=MediaServerConfig)
    ffmpeg: FFmpegConfig = field(default_factory=FFmpegConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    forwarding: ForwardingConfig = field(default_factory=ForwardingConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def playback_url(self, stream_path: str) -> str:
        """Local playback URL for a stream path, usable as ffmpeg input."""
        return self.media_server.playback_url_template.format(stream_path=stream_path)


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


def config_from_dict(data: dict) -> Config:
    """
    Build configuration from an already parsed mapping.

    Args:
        data: Parsed YAML document.

    Returns:
        Config object with all settings.

    Raises:
        ValueError: If an enabled section misses required fields.
    """
    server_data = data.get('server') or {}
    server_config = ServerConfig(
        host=str(server_data.get('host', '0.0.0.0')),
        port=as_int(server_data.get('port'), 3000),
    )

    media_data = data.get('media_server') or {}
    media_config = MediaServerConfig(
        playback_url_template=media_data.get(
            'playback_url_template', 'rtmp://127.0.0.1:1935{stream_path}'
        ),
        control_url=(media_data.get('control_url') or '').rstrip('/'),
        allowed_stream_keys=[str(k) for k in (media_data.get('allowed_stream_keys') or [])],
        public_rtmp_url=media_data.get('public_rtmp_url', 'rtmp://localhost:1935'),
        public_playback_url=media_data.get('public_playback_url', 'http://localhost:8000'),
    )
    if '{stream_path}' not in media_config.playback_url_template:
        raise ValueError("media_server.playback_url_template must contain {stream_path}")

    ffmpeg_data = data.get('ffmpeg') or {}
    ffmpeg_config = FFmpegConfig(
        path=ffmpeg_data.get('path', 'ffmpeg'),
        stop_grace_period=max(0.0, as_float(ffmpeg_data.get('stop_grace_period'), 5.0)),
    )

    recording_data = data.get('recording') or {}
    recording_config = RecordingConfig(
        enabled=as_bool(recording_data.get('enabled'), True),
        output_dir=recording_data.get('output_dir', './recordings'),
    )

    forwarding_data = data.get('forwarding') or {}
    forwarding_config = ForwardingConfig(
        destinations_file=forwarding_data.get('destinations_file', './data/destinations.json'),
        default_max_retries=max(0, as_int(forwarding_data.get('default_max_retries'), 3)),
        default_retry_delay_ms=max(0, as_int(forwarding_data.get('default_retry_delay_ms'), 5000)),
    )

    telegram_data = data.get('telegram') or {}
    telegram_config = TelegramConfig(
        enabled=as_bool(telegram_data.get('enabled'), False),
        api_id=as_int(telegram_data.get('api_id'), 0),
        api_hash=str(telegram_data.get('api_hash', '')),
        channel_id=as_int(telegram_data.get('channel_id'), 0),
        session_name=telegram_data.get('session_name', 'streamhub'),
    )
    if telegram_config.enabled:
        for field_name in ('api_id', 'api_hash', 'channel_id'):
            if not getattr(telegram_config, field_name):
                raise ValueError(f"Missing required field: telegram.{field_name}")

    logging_data = data.get('logging') or {}
    logging_config = LoggingConfig(
        level=logging_data.get('level', 'INFO'),
        file=logging_data.get('file', './logs/streamhub.log'),
        max_size_mb=as_int(logging_data.get('max_size_mb'), 10),
        backup_count=as_int(logging_data.get('backup_count'), 5),
        ffmpeg_output=as_bool(logging_data.get('ffmpeg_output'), False),
    )

    return Config(
        server=server_config,
        media_server=media_config,
        ffmpeg=ffmpeg_config,
        recording=recording_config,
        forwarding=forwarding_config,
        telegram=telegram_config,
        logging=logging_config,
    )


def load_config(config_path: str = "config.yaml") -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file.

    Returns:
        Config object with all settings.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If the file is empty or required fields are missing.
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

    return config_from_dict(data)


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# streamhub configuration

server:
  host: 0.0.0.0
  port: 3000

media_server:
  # ffmpeg input for a live stream, {stream_path} is /app/key
  playback_url_template: "rtmp://127.0.0.1:1935{stream_path}"
  # nginx-rtmp control module, used by POST /api/streams/{key}/stop
  control_url: http://127.0.0.1:8080/control
  allowed_stream_keys: []  # empty = accept any key
  public_rtmp_url: rtmp://localhost:1935
  public_playback_url: http://localhost:8000

ffmpeg:
  path: ffmpeg
  stop_grace_period: 5  # seconds before SIGKILL

recording:
  enabled: true
  output_dir: ./recordings

forwarding:
  destinations_file: ./data/destinations.json
  default_max_retries: 3
  default_retry_delay_ms: 5000

telegram:
  enabled: false
  api_id: YOUR_API_ID  # Get from https://my.telegram.org
  api_hash: YOUR_API_HASH
  channel_id: -1001234567890
  session_name: streamhub

logging:
  level: INFO  # DEBUG, INFO, WARNING, ERROR
  file: ./logs/streamhub.log
  max_size_mb: 10
  backup_count: 5
  ffmpeg_output: false  # Log every ffmpeg output line at DEBUG
"""
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)


if __name__ == '__main__':
    create_example_config()
    print("Created config.example.yaml")
