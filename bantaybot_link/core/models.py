"""Domain models for connectivity, telemetry and commands."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

TelemetryValue = Union[bool, int, float]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionMode(str, Enum):
    """Which transport is authoritative for commands and telemetry."""

    LOCAL = "local"
    REMOTE = "remote"
    NONE = "none"


@dataclass(slots=True)
class DeviceAddress:
    host: str
    port: int
    path: str = "/"

    @classmethod
    def parse(cls, value: str, *, default_port: int = 80) -> "DeviceAddress":
        """Parse ``host[:port][/path]`` into an address."""

        text = value.strip()
        if "://" in text:
            text = text.split("://", 1)[1]

        path = "/"
        if "/" in text:
            text, rest = text.split("/", 1)
            path = "/" + rest

        host = text
        port = default_port
        if ":" in text:
            host_part, port_part = text.rsplit(":", 1)
            try:
                port = int(port_part)
            except ValueError as exc:
                raise ValueError(f"Invalid port in address {value!r}") from exc
            host = host_part

        if not host:
            raise ValueError(f"Missing host in address {value!r}")

        return cls(host=host, port=port, path=path)

    def http_url(self, path: Optional[str] = None) -> str:
        target = path if path is not None else self.path
        if not target.startswith("/"):
            target = "/" + target
        return f"http://{self.host}:{self.port}{target}"

    def ws_url(self) -> str:
        path = self.path if self.path.startswith("/") else "/" + self.path
        return f"ws://{self.host}:{self.port}{path}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}{self.path}"


@dataclass(frozen=True, slots=True)
class DeviceEndpoint:
    """A controller found during discovery."""

    address: DeviceAddress
    kind: str


@dataclass(frozen=True, slots=True)
class TelemetrySnapshot:
    """Last-known device state produced from a single inbound message."""

    fields: Mapping[str, TelemetryValue]
    timestamp: datetime = field(default_factory=_utcnow)
    source: str = "unknown"

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def __getitem__(self, name: str) -> TelemetryValue:
        return self.fields[name]

    def __contains__(self, name: object) -> bool:
        return name in self.fields

    def as_dict(self) -> Dict[str, Any]:
        return {
            **self.fields,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(timespec="milliseconds"),
        }


@dataclass(frozen=True, slots=True)
class Command:
    name: str
    value: Any = None
    timestamp: datetime = field(default_factory=_utcnow)

    def as_frame(self) -> Dict[str, Any]:
        """Wire frame understood by the on-device socket handler."""

        return {
            "command": self.name,
            "value": self.value,
            "timestamp": int(self.timestamp.timestamp() * 1000),
        }


@dataclass(frozen=True, slots=True)
class CommandResult:
    success: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "CommandResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str) -> "CommandResult":
        return cls(success=False, error=error)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class ChannelHealth:
    connected: bool = False
    last_error: Optional[str] = None
    reconnect_attempts: int = 0

    def copy(self) -> "ChannelHealth":
        return replace(self)
