"""Tests for telemetry validation and the snapshot cache."""

import json
from datetime import datetime, timezone

import pytest

from bantaybot_link.core.models import TelemetrySnapshot
from bantaybot_link.telemetry import TelemetryCache, TelemetryParseError, parse_snapshot


def test_parse_snapshot_keeps_known_fields_only():
    now = datetime(2026, 3, 14, tzinfo=timezone.utc)

    snapshot = parse_snapshot(
        {"soilHumidity": 55, "motion": False, "firmware": "1.2", "type": "sensor_data"},
        source="poll",
        now=now,
    )

    assert dict(snapshot.fields) == {"soilHumidity": 55, "motion": False}
    assert snapshot.timestamp == now
    assert snapshot.source == "poll"
    assert "temperature" not in snapshot
    assert snapshot.get("temperature") is None


def test_parse_snapshot_accepts_json_text_and_bytes():
    payload = json.dumps({"humidity": 61.5, "currentTrack": 2.0})

    from_text = parse_snapshot(payload, source="socket")
    from_bytes = parse_snapshot(payload.encode("utf-8"), source="socket")

    assert from_text["humidity"] == 61.5
    assert from_bytes["currentTrack"] == 2
    assert isinstance(from_bytes["currentTrack"], int)


def test_parse_snapshot_resolves_aliases_and_integer_booleans():
    snapshot = parse_snapshot(
        {"motionDetected": 1, "soilTemp": 21.5, "track": 4}, source="cloud"
    )

    assert snapshot["motion"] is True
    assert snapshot["soilTemperature"] == 21.5
    assert snapshot["currentTrack"] == 4


def test_parse_snapshot_skips_null_fields():
    snapshot = parse_snapshot({"soilHumidity": None, "ph": 6.8}, source="poll")

    assert "soilHumidity" not in snapshot
    assert snapshot["ph"] == 6.8


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        b"\xff\xfe",
        [1, 2, 3],
        {"firmware": "1.2"},
        {"soilHumidity": "wet"},
        {"motion": "yes"},
        {"motion": 2},
        {"currentTrack": 2.5},
        {"volume": True},
        '{"soilHumidity": NaN}',
        '{"currentTrack": Infinity}',
        {"temperature": float("-inf")},
    ],
)
def test_parse_snapshot_rejects_malformed_payloads(payload):
    with pytest.raises(TelemetryParseError):
        parse_snapshot(payload, source="poll")


def test_snapshot_is_read_only():
    snapshot = parse_snapshot({"soilHumidity": 55}, source="poll")

    with pytest.raises(TypeError):
        snapshot.fields["soilHumidity"] = 1  # type: ignore[index]


def test_snapshot_as_dict():
    snapshot = TelemetrySnapshot(
        {"soilHumidity": 55},
        timestamp=datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc),
        source="poll",
    )

    assert snapshot.as_dict() == {
        "soilHumidity": 55,
        "source": "poll",
        "timestamp": "2026-03-14T09:30:00.000+00:00",
    }


@pytest.mark.asyncio
async def test_cache_replaces_snapshot_and_notifies_in_order():
    cache = TelemetryCache()
    seen = []
    subscription = cache.subscribe(lambda snapshot: seen.append(snapshot["soilHumidity"]))

    assert cache.snapshot is None

    await cache.update(parse_snapshot({"soilHumidity": 55, "motion": True}, source="poll"))
    await cache.update(parse_snapshot({"soilHumidity": 50}, source="poll"))

    assert seen == [55, 50]
    assert "motion" not in cache.snapshot

    subscription.unsubscribe()
    await cache.update(parse_snapshot({"soilHumidity": 45}, source="poll"))
    assert seen == [55, 50]

    cache.clear()
    assert cache.snapshot is None
