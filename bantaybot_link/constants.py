"""Constants used across the bantaybot-link package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "bantaybot-link"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".bantaybot" / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".bantaybot" / "logs" / f"{APP_NAME}.log"

DEFAULT_DEVICE_ID = "BANTAY"

# Main control board: sensors, audio, servos. Served over plain HTTP.
DEFAULT_MAIN_HOST = "172.24.26.193"
DEFAULT_MAIN_PORT = 81
DEFAULT_STATUS_PATH = "/status"
DEFAULT_COMMAND_PATH = "/command"

# Camera board: detection and camera controls. Pushes frames over a websocket.
DEFAULT_CAMERA_HOST = "172.24.26.144"
DEFAULT_CAMERA_PORT = 80
DEFAULT_SOCKET_PATH = "/ws"
DEFAULT_STREAM_PATH = "/stream"

DEFAULT_BROKER_HOST = "localhost:1883"
DEFAULT_TOPIC_PREFIX = "bantaybot"

MAIN_MDNS_HOSTNAME = "bantaybot-main.local"
CAMERA_MDNS_HOSTNAME = "bantaybot-camera.local"

TOTAL_AUDIO_TRACKS = 7
SKIP_TRACK = 3

PRESENCE_STALE_SECONDS = 30.0
