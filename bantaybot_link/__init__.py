"""Hybrid local/cloud connectivity layer for the BantayBot field robot."""

from .command_names import CommandNames
from .commands import CommandRouter
from .connection import ConnectionManager, ConnectionState
from .core.models import Command, CommandResult, ConnectionMode, DeviceAddress
from .telemetry import TelemetryCache

__all__ = [
    "Command",
    "CommandNames",
    "CommandResult",
    "CommandRouter",
    "ConnectionManager",
    "ConnectionMode",
    "ConnectionState",
    "DeviceAddress",
    "TelemetryCache",
]
