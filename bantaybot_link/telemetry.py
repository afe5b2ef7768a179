"""Telemetry schema validation and the last-known snapshot cache."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from .core.models import TelemetrySnapshot, TelemetryValue
from .core.observers import EventStream, Observer, Subscription

LOGGER = logging.getLogger(__name__)


class TelemetryParseError(RuntimeError):
    """Raised when a telemetry message is malformed or missing fields."""


@dataclass(frozen=True, slots=True)
class FieldRule:
    kind: str  # "number", "integer" or "boolean"
    aliases: Tuple[str, ...] = ()


TELEMETRY_FIELDS: Dict[str, FieldRule] = {
    "soilHumidity": FieldRule("number"),
    "soilTemperature": FieldRule("number", ("soilTemp",)),
    "soilConductivity": FieldRule("number"),
    "ph": FieldRule("number"),
    "temperature": FieldRule("number"),
    "humidity": FieldRule("number"),
    "motion": FieldRule("boolean", ("motionDetected",)),
    "distance": FieldRule("number"),
    "currentTrack": FieldRule("integer", ("track",)),
    "volume": FieldRule("number"),
    "servoActive": FieldRule("boolean"),
    "leftArmAngle": FieldRule("number"),
    "rightArmAngle": FieldRule("number"),
    "headAngle": FieldRule("number"),
    "detectionEnabled": FieldRule("boolean"),
    "birdsDetectedToday": FieldRule("integer"),
    "detectionSensitivity": FieldRule("number"),
}


def _coerce(name: str, rule: FieldRule, value: Any) -> TelemetryValue:
    if rule.kind == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        raise TelemetryParseError(f"Field {name!r} expects a boolean, got {value!r}")

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TelemetryParseError(f"Field {name!r} expects a number, got {value!r}")

    if isinstance(value, float) and not math.isfinite(value):
        raise TelemetryParseError(f"Field {name!r} expects a finite number, got {value!r}")

    if rule.kind == "integer":
        if isinstance(value, float):
            if not value.is_integer():
                raise TelemetryParseError(
                    f"Field {name!r} expects an integer, got {value!r}"
                )
            return int(value)
        return value

    return value


def _decode(payload: Any) -> Mapping[str, Any]:
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise TelemetryParseError("Telemetry payload is not valid UTF-8") from exc

    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise TelemetryParseError(f"Telemetry payload is not JSON: {exc}") from exc

    if not isinstance(payload, Mapping):
        raise TelemetryParseError(
            f"Telemetry payload must be an object, got {type(payload).__name__}"
        )

    return payload


def parse_snapshot(
    payload: Any,
    *,
    source: str,
    now: Optional[datetime] = None,
) -> TelemetrySnapshot:
    """Validate ``payload`` and build a snapshot from the known fields.

    Fields absent from the payload stay absent; nothing is defaulted.

    Raises:
        TelemetryParseError: If the payload is not a JSON object, a known
            field carries the wrong type, or no known field is present.
    """

    data = _decode(payload)
    fields: Dict[str, TelemetryValue] = {}

    for name, rule in TELEMETRY_FIELDS.items():
        for key in (name, *rule.aliases):
            if key not in data:
                continue
            value = data[key]
            if value is None:
                break
            fields[name] = _coerce(name, rule, value)
            break

    if not fields:
        raise TelemetryParseError("Telemetry payload is missing required fields")

    return TelemetrySnapshot(
        fields=fields,
        timestamp=now or datetime.now(timezone.utc),
        source=source,
    )


class TelemetryCache:
    """Holds the most recent snapshot and fans it out to subscribers.

    Only the live transport writes here; every update fully replaces the
    previous snapshot and subscribers see updates in arrival order.
    """

    def __init__(self) -> None:
        self._snapshot: Optional[TelemetrySnapshot] = None
        self._stream: EventStream[TelemetrySnapshot] = EventStream("telemetry")

    @property
    def snapshot(self) -> Optional[TelemetrySnapshot]:
        return self._snapshot

    async def update(self, snapshot: TelemetrySnapshot) -> None:
        self._snapshot = snapshot
        LOGGER.debug(
            "Telemetry snapshot from %s with %d fields",
            snapshot.source,
            len(snapshot.fields),
        )
        await self._stream.emit(snapshot)

    def subscribe(self, callback: Observer[TelemetrySnapshot]) -> Subscription:
        return self._stream.subscribe(callback)

    def clear(self) -> None:
        self._snapshot = None
