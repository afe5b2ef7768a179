"""In-memory history of telemetry samples and detection alerts."""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional

from .core.models import TelemetrySnapshot
from .core.observers import EventStream, Subscription
from .events import DetectionAlert
from .telemetry import TelemetryCache

LOGGER = logging.getLogger(__name__)

ENVIRONMENT_FIELDS = ("temperature", "humidity", "soilHumidity", "soilTemperature")


@dataclass(frozen=True, slots=True)
class MotionEvent:
    timestamp: datetime
    distance: Optional[float] = None


class TelemetryHistory:
    """Keeps throttled environment samples and every motion event."""

    def __init__(
        self, max_entries: int = 100, *, sample_interval: float = 60.0
    ) -> None:
        self.sample_interval = sample_interval
        self._samples: Deque[TelemetrySnapshot] = deque(maxlen=max_entries)
        self._motion: Deque[MotionEvent] = deque(maxlen=max_entries)
        self._latest: Optional[TelemetrySnapshot] = None

    def record(self, snapshot: TelemetrySnapshot) -> None:
        self._latest = snapshot

        if snapshot.get("motion") is True:
            distance = snapshot.get("distance")
            self._motion.appendleft(
                MotionEvent(snapshot.timestamp, float(distance) if distance is not None else None)
            )

        if not any(name in snapshot for name in ENVIRONMENT_FIELDS):
            return
        if self._samples:
            elapsed = (snapshot.timestamp - self._samples[0].timestamp).total_seconds()
            if elapsed < self.sample_interval:
                return
        self._samples.appendleft(snapshot)

    def entries(self) -> List[TelemetrySnapshot]:
        """Environment samples, newest first."""

        return list(self._samples)

    def motion_events(self) -> List[MotionEvent]:
        return list(self._motion)

    def latest(self) -> Optional[TelemetrySnapshot]:
        return self._latest

    def clear(self) -> None:
        self._samples.clear()
        self._motion.clear()
        self._latest = None

    def attach(self, cache: TelemetryCache) -> Subscription:
        return cache.subscribe(self.record)


class DetectionHistory:
    """Bounded log of detection alerts, newest first."""

    def __init__(self, max_entries: int = 100) -> None:
        self._alerts: Deque[DetectionAlert] = deque(maxlen=max_entries)

    def record(self, alert: DetectionAlert) -> None:
        self._alerts.appendleft(alert)
        LOGGER.debug("Recorded %s alert", alert.alert_type)

    def entries(self) -> List[DetectionAlert]:
        return list(self._alerts)

    def today(self, now: Optional[datetime] = None) -> List[DetectionAlert]:
        current = now or datetime.now(timezone.utc)
        start = current.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1)
        return [
            alert
            for alert in self._alerts
            if start <= alert.received_at.astimezone(current.tzinfo) < end
        ]

    def statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        todays = self.today(current)

        hourly = [0] * 24
        for alert in todays:
            hourly[alert.received_at.astimezone(current.tzinfo).hour] += 1

        peak_hour = max(range(24), key=lambda hour: (hourly[hour], -hour))
        return {
            "total": len(self._alerts),
            "today": len(todays),
            "by_type": dict(Counter(alert.alert_type for alert in self._alerts)),
            "hourly": hourly,
            "peak_hour": peak_hour if hourly[peak_hour] else None,
            "last": self._alerts[0] if self._alerts else None,
        }

    def clear(self) -> None:
        self._alerts.clear()

    def attach(self, stream: EventStream[DetectionAlert]) -> Subscription:
        return stream.subscribe(self.record)
