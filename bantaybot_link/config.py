"""Configuration loader for bantaybot-link."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from . import constants
from .core.models import DeviceAddress


@dataclass(slots=True)
class DeviceConfig:
    device_id: str = constants.DEFAULT_DEVICE_ID
    main_host: str = constants.DEFAULT_MAIN_HOST
    main_port: int = constants.DEFAULT_MAIN_PORT
    status_path: str = constants.DEFAULT_STATUS_PATH
    camera_host: str = constants.DEFAULT_CAMERA_HOST
    camera_port: int = constants.DEFAULT_CAMERA_PORT
    socket_path: str = constants.DEFAULT_SOCKET_PATH

    @property
    def main_address(self) -> DeviceAddress:
        return DeviceAddress(self.main_host, self.main_port, self.status_path)

    @property
    def camera_address(self) -> DeviceAddress:
        return DeviceAddress(self.camera_host, self.camera_port, self.socket_path)


@dataclass(slots=True)
class LocalConfig:
    poll_interval_seconds: float = 2.0
    connect_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 5.0
    reconnect_interval_seconds: float = 3.0
    max_reconnect_attempts: int = 5
    poll_failure_threshold: int = 2


@dataclass(slots=True)
class CloudConfig:
    broker_host: str = "localhost"
    broker_port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = False
    topic_prefix: str = constants.DEFAULT_TOPIC_PREFIX
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 5.0
    presence_stale_seconds: float = constants.PRESENCE_STALE_SECONDS


@dataclass(slots=True)
class DiscoveryConfig:
    probe_timeout_seconds: float = 2.0
    batch_size: int = 10


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class LinkConfig:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    local: LocalConfig = field(default_factory=LocalConfig)
    cloud: CloudConfig = field(default_factory=CloudConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    raw: ConfigParser = field(default_factory=ConfigParser)
    path: Path = constants.DEFAULT_CONFIG_PATH


def _split_host_port(value: str, fallback_port: int) -> tuple[str, int]:
    if ":" not in value:
        return value, fallback_port
    host_part, port_part = value.rsplit(":", 1)
    try:
        return host_part, int(port_part)
    except ValueError:
        return value, fallback_port


def _normalise_path(value: str, default: str) -> str:
    value = value.strip()
    if not value:
        return default
    return value if value.startswith("/") else "/" + value


def load_config(path: Optional[Path] = None) -> LinkConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "device": {
                "device_id": constants.DEFAULT_DEVICE_ID,
                "main_host": constants.DEFAULT_MAIN_HOST,
                "main_port": str(constants.DEFAULT_MAIN_PORT),
                "status_path": constants.DEFAULT_STATUS_PATH,
                "camera_host": constants.DEFAULT_CAMERA_HOST,
                "camera_port": str(constants.DEFAULT_CAMERA_PORT),
                "socket_path": constants.DEFAULT_SOCKET_PATH,
            },
            "local": {
                "poll_interval_seconds": "2.0",
                "connect_timeout_seconds": "5.0",
                "request_timeout_seconds": "5.0",
                "reconnect_interval_seconds": "3.0",
                "max_reconnect_attempts": "5",
                "poll_failure_threshold": "2",
            },
            "cloud": {
                "broker_host": constants.DEFAULT_BROKER_HOST,
                "use_tls": "false",
                "topic_prefix": constants.DEFAULT_TOPIC_PREFIX,
                "connect_timeout_seconds": "10.0",
                "read_timeout_seconds": "5.0",
                "presence_stale_seconds": str(constants.PRESENCE_STALE_SECONDS),
            },
            "discovery": {
                "probe_timeout_seconds": "2.0",
                "batch_size": "10",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    broker_host, broker_port = _split_host_port(
        parser.get("cloud", "broker_host"),
        parser.getint("cloud", "broker_port", fallback=1883),
    )
    parser.set("cloud", "broker_host", broker_host)
    parser.set("cloud", "broker_port", str(broker_port))

    device = DeviceConfig(
        device_id=parser.get("device", "device_id").strip()
        or constants.DEFAULT_DEVICE_ID,
        main_host=parser.get("device", "main_host").strip(),
        main_port=parser.getint(
            "device", "main_port", fallback=constants.DEFAULT_MAIN_PORT
        ),
        status_path=_normalise_path(
            parser.get("device", "status_path"), constants.DEFAULT_STATUS_PATH
        ),
        camera_host=parser.get("device", "camera_host").strip(),
        camera_port=parser.getint(
            "device", "camera_port", fallback=constants.DEFAULT_CAMERA_PORT
        ),
        socket_path=_normalise_path(
            parser.get("device", "socket_path"), constants.DEFAULT_SOCKET_PATH
        ),
    )

    local_defaults = LocalConfig()
    local = LocalConfig(
        poll_interval_seconds=max(
            0.1,
            parser.getfloat(
                "local",
                "poll_interval_seconds",
                fallback=local_defaults.poll_interval_seconds,
            ),
        ),
        connect_timeout_seconds=max(
            0.1,
            parser.getfloat(
                "local",
                "connect_timeout_seconds",
                fallback=local_defaults.connect_timeout_seconds,
            ),
        ),
        request_timeout_seconds=max(
            0.1,
            parser.getfloat(
                "local",
                "request_timeout_seconds",
                fallback=local_defaults.request_timeout_seconds,
            ),
        ),
        reconnect_interval_seconds=max(
            0.0,
            parser.getfloat(
                "local",
                "reconnect_interval_seconds",
                fallback=local_defaults.reconnect_interval_seconds,
            ),
        ),
        max_reconnect_attempts=max(
            0,
            parser.getint(
                "local",
                "max_reconnect_attempts",
                fallback=local_defaults.max_reconnect_attempts,
            ),
        ),
        poll_failure_threshold=max(
            1,
            parser.getint(
                "local",
                "poll_failure_threshold",
                fallback=local_defaults.poll_failure_threshold,
            ),
        ),
    )

    cloud = CloudConfig(
        broker_host=broker_host,
        broker_port=broker_port,
        username=parser.get("cloud", "username", fallback=None),
        password=parser.get("cloud", "password", fallback=None),
        use_tls=parser.getboolean("cloud", "use_tls", fallback=False),
        topic_prefix=parser.get("cloud", "topic_prefix").strip("/")
        or constants.DEFAULT_TOPIC_PREFIX,
        connect_timeout_seconds=max(
            0.1, parser.getfloat("cloud", "connect_timeout_seconds", fallback=10.0)
        ),
        read_timeout_seconds=max(
            0.1, parser.getfloat("cloud", "read_timeout_seconds", fallback=5.0)
        ),
        presence_stale_seconds=max(
            1.0,
            parser.getfloat(
                "cloud",
                "presence_stale_seconds",
                fallback=constants.PRESENCE_STALE_SECONDS,
            ),
        ),
    )

    discovery = DiscoveryConfig(
        probe_timeout_seconds=max(
            0.1, parser.getfloat("discovery", "probe_timeout_seconds", fallback=2.0)
        ),
        batch_size=max(1, parser.getint("discovery", "batch_size", fallback=10)),
    )

    log_path_value = parser.get(
        "logging", "path", fallback=str(constants.DEFAULT_LOG_PATH)
    ).strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return LinkConfig(
        device=device,
        local=local,
        cloud=cloud,
        discovery=discovery,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )


def save_config(config: LinkConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
