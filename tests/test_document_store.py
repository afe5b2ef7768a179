import asyncio
import json

import pytest

from bantaybot_link.adapters import (
    DocumentStoreError,
    MQTTConnectionError,
    MqttDocumentStore,
)
from bantaybot_link.config import CloudConfig


class FakeMQTT:
    def __init__(self, *, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.handler = None
        self.connect_handlers = []
        self.disconnect_handlers = []
        self.subscriptions: list[tuple[str, int]] = []
        self.unsubscriptions: list[str] = []
        self.published: list[tuple[str, bytes, int, bool]] = []
        self.retained: dict[str, bytes] = {}
        self.connected = False

    async def connect(self) -> None:
        if self.fail_connect:
            raise MQTTConnectionError("Timed out connecting to MQTT broker")
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    def set_message_handler(self, handler) -> None:
        self.handler = handler

    def register_connect_handler(self, handler) -> None:
        self.connect_handlers.append(handler)

    def register_disconnect_handler(self, handler) -> None:
        self.disconnect_handlers.append(handler)

    def subscribe(self, topic: str, qos: int = 1) -> None:
        self.subscriptions.append((topic, qos))
        payload = self.retained.get(topic)
        if payload is not None and self.handler is not None:
            asyncio.get_running_loop().call_soon(self._deliver, topic, payload)

    def unsubscribe(self, topic: str) -> None:
        self.unsubscriptions.append(topic)

    def publish(self, topic: str, payload: bytes, qos: int = 1, retain: bool = False) -> None:
        if not self.connected:
            raise MQTTConnectionError("MQTT client not connected")
        self.published.append((topic, payload, qos, retain))
        if retain:
            self.retained[topic] = payload

    def _deliver(self, topic: str, payload: bytes) -> None:
        asyncio.ensure_future(self.handler(topic, payload))

    async def deliver(self, topic: str, payload: bytes) -> None:
        await self.handler(topic, payload)


def _store(client=None):
    client = client or FakeMQTT()
    config = CloudConfig(topic_prefix="bantaybot")
    return MqttDocumentStore(config, client=client), client


@pytest.mark.asyncio
async def test_connect_failure_raises_store_error():
    store, _ = _store(FakeMQTT(fail_connect=True))

    with pytest.raises(DocumentStoreError):
        await store.connect()

    assert store.connected is False


@pytest.mark.asyncio
async def test_write_publishes_retained_json():
    store, client = _store()
    await store.connect()

    await store.write("devices/BANTAY/status", {"soilHumidity": 40})

    topic, payload, qos, retain = client.published[0]
    assert topic == "bantaybot/devices/BANTAY/status"
    assert json.loads(payload) == {"soilHumidity": 40}
    assert (qos, retain) == (1, True)


@pytest.mark.asyncio
async def test_write_rejects_unserialisable_document():
    store, client = _store()
    await store.connect()

    with pytest.raises(DocumentStoreError):
        await store.write("devices/BANTAY", {"when": object()})

    assert client.published == []


@pytest.mark.asyncio
async def test_write_without_connection_raises_store_error():
    store, _ = _store()

    with pytest.raises(DocumentStoreError):
        await store.write("devices/BANTAY", {})


@pytest.mark.asyncio
async def test_append_creates_unique_documents():
    store, client = _store()
    await store.connect()

    first = await store.append("commands/BANTAY/pending", {"action": "STOP_AUDIO"})
    second = await store.append("commands/BANTAY/pending", {"action": "STOP_MOVEMENT"})

    assert first != second
    topics = [topic for topic, *_ in client.published]
    assert topics == [
        f"bantaybot/commands/BANTAY/pending/{first}",
        f"bantaybot/commands/BANTAY/pending/{second}",
    ]


@pytest.mark.asyncio
async def test_read_returns_retained_document():
    store, client = _store()
    await store.connect()
    await store.write("devices/BANTAY/status", {"soilHumidity": 40})

    document = await store.read("devices/BANTAY/status", timeout=1.0)

    assert document == {"soilHumidity": 40}
    assert client.unsubscriptions == ["bantaybot/devices/BANTAY/status"]


@pytest.mark.asyncio
async def test_read_missing_document_returns_none():
    store, _ = _store()
    await store.connect()

    assert await store.read("devices/UNKNOWN/status", timeout=0.05) is None


@pytest.mark.asyncio
async def test_subscribe_is_reference_counted():
    store, client = _store()
    await store.connect()
    received = []

    first = store.subscribe("devices/BANTAY", received.append)
    second = store.subscribe("devices/BANTAY", received.append)
    assert client.subscriptions == [("bantaybot/devices/BANTAY", 1)]

    await client.deliver("bantaybot/devices/BANTAY", b'{"last_seen": 1}')
    assert received == [{"last_seen": 1}, {"last_seen": 1}]

    first.unsubscribe()
    assert client.unsubscriptions == []
    second.unsubscribe()
    assert client.unsubscriptions == ["bantaybot/devices/BANTAY"]


@pytest.mark.asyncio
async def test_empty_payload_is_deleted_document_and_bad_json_dropped():
    store, client = _store()
    await store.connect()
    received = []
    store.subscribe("devices/BANTAY", received.append)

    await client.deliver("bantaybot/devices/BANTAY", b"not json")
    await client.deliver("bantaybot/devices/BANTAY", b"[1, 2]")
    await client.deliver("bantaybot/devices/BANTAY", b"")

    assert received == [None]


@pytest.mark.asyncio
async def test_subscriptions_restored_after_reconnect():
    store, client = _store()
    store.subscribe("devices/BANTAY/status", lambda document: None)
    assert client.subscriptions == []

    await store.connect()
    assert client.subscriptions == [("bantaybot/devices/BANTAY/status", 1)]

    for handler in client.connect_handlers:
        handler(0)
    assert client.subscriptions[-1] == ("bantaybot/devices/BANTAY/status", 1)
    assert len(client.subscriptions) == 2


@pytest.mark.asyncio
async def test_close_drops_watchers():
    store, client = _store()
    await store.connect()
    received = []
    store.subscribe("devices/BANTAY", received.append)

    await store.close()
    await store.connect()
    await client.deliver("bantaybot/devices/BANTAY", b'{"last_seen": 1}')

    assert received == []
    assert len(client.connect_handlers) == 1
