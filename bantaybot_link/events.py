"""Event payloads published by the connectivity layer.

Each payload is a frozen dataclass carrying a ``kind`` discriminator so a
consumer that receives a mix of them can ``match`` on the kind safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Literal, Mapping, Optional, Union

from .core.models import ConnectionMode


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ConnectionChanged:
    mode: ConnectionMode
    connected: bool
    state: str = ""
    kind: Literal["connection"] = "connection"

    def as_dict(self) -> dict[str, Any]:
        return {"mode": self.mode.value, "connected": self.connected}


@dataclass(frozen=True, slots=True)
class ChannelStatusChanged:
    channel: str
    connected: bool
    error: Optional[str] = None
    kind: Literal["channel"] = "channel"


@dataclass(frozen=True, slots=True)
class DetectionAlert:
    alert_type: str
    payload: Mapping[str, Any]
    received_at: datetime = field(default_factory=_utcnow)
    kind: Literal["alert"] = "alert"

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))


@dataclass(frozen=True, slots=True)
class PresenceChanged:
    device_id: str
    online: bool
    last_seen: Optional[datetime] = None
    kind: Literal["presence"] = "presence"


LinkEvent = Union[ConnectionChanged, ChannelStatusChanged, DetectionAlert, PresenceChanged]
