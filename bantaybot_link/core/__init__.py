"""Core primitives for bantaybot-link."""

from .models import (
    ChannelHealth,
    Command,
    CommandResult,
    ConnectionMode,
    DeviceAddress,
    DeviceEndpoint,
    TelemetrySnapshot,
    TelemetryValue,
)
from .observers import EventStream, Observer, Subscription
from .protocols import DocumentCallback, DocumentStore

__all__ = [
    "ChannelHealth",
    "Command",
    "CommandResult",
    "ConnectionMode",
    "DeviceAddress",
    "DeviceEndpoint",
    "DocumentCallback",
    "DocumentStore",
    "EventStream",
    "Observer",
    "Subscription",
    "TelemetrySnapshot",
    "TelemetryValue",
]
