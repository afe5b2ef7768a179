from pathlib import Path

from bantaybot_link import constants
from bantaybot_link.config import load_config, save_config


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "bantaybot-link.cfg"
    config = load_config(config_path)

    assert config.device.device_id == constants.DEFAULT_DEVICE_ID
    assert config.device.main_address.http_url() == (
        f"http://{constants.DEFAULT_MAIN_HOST}:81/status"
    )
    assert config.device.camera_address.ws_url() == (
        f"ws://{constants.DEFAULT_CAMERA_HOST}:80/ws"
    )
    assert config.local.poll_interval_seconds == 2.0
    assert config.local.connect_timeout_seconds == 5.0
    assert config.local.reconnect_interval_seconds == 3.0
    assert config.local.max_reconnect_attempts == 5
    assert config.local.poll_failure_threshold == 2
    assert config.cloud.broker_host == "localhost"
    assert config.cloud.broker_port == 1883
    assert config.cloud.presence_stale_seconds == 30.0
    assert config.health.enabled is False
    assert config.path == config_path


def test_load_config_parses_broker_host_with_port(tmp_path: Path) -> None:
    config_path = tmp_path / "bantaybot-link.cfg"
    config_path.write_text("[cloud]\nbroker_host = localhost:61198\n", encoding="utf-8")

    config = load_config(config_path)

    assert config.cloud.broker_host == "localhost"
    assert config.cloud.broker_port == 61198
    assert config.raw.get("cloud", "broker_host") == "localhost"
    assert config.raw.get("cloud", "broker_port") == "61198"


def test_load_config_overrides_defaults(tmp_path: Path) -> None:
    config_file = tmp_path / "bantaybot-link.cfg"
    config_file.write_text(
        """
[device]
device_id = FIELD-7
main_host = 192.168.1.20
main_port = 8081
status_path = state
camera_host = 192.168.1.21

[local]
poll_interval_seconds = 1.5
max_reconnect_attempts = 8

[cloud]
topic_prefix = /farm/bots/
username = bot
password = secret
"""
    )

    config = load_config(config_file)

    assert config.device.device_id == "FIELD-7"
    assert str(config.device.main_address) == "192.168.1.20:8081/state"
    assert config.device.camera_address.host == "192.168.1.21"
    assert config.local.poll_interval_seconds == 1.5
    assert config.local.max_reconnect_attempts == 8
    assert config.cloud.topic_prefix == "farm/bots"
    assert config.cloud.username == "bot"
    assert config.cloud.password == "secret"


def test_load_config_clamps_out_of_range_values(tmp_path: Path) -> None:
    config_file = tmp_path / "bantaybot-link.cfg"
    config_file.write_text(
        """
[local]
poll_interval_seconds = 0
max_reconnect_attempts = -3
poll_failure_threshold = 0

[discovery]
batch_size = 0
"""
    )

    config = load_config(config_file)

    assert config.local.poll_interval_seconds == 0.1
    assert config.local.max_reconnect_attempts == 0
    assert config.local.poll_failure_threshold == 1
    assert config.discovery.batch_size == 1


def test_save_config_round_trips_changes(tmp_path: Path) -> None:
    config_file = tmp_path / "nested" / "bantaybot-link.cfg"
    config = load_config(config_file)
    config.raw.set("device", "main_host", "10.0.0.5")

    save_config(config)
    reloaded = load_config(config_file)

    assert reloaded.device.main_host == "10.0.0.5"
