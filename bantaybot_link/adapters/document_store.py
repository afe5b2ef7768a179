"""Document store over retained MQTT messages."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import paho.mqtt.client as mqtt

from ..config import CloudConfig
from ..core.observers import Subscription
from ..core.protocols import DocumentCallback
from .mqtt import MQTTClient, MQTTConnectionError

LOGGER = logging.getLogger(__name__)


class DocumentStoreError(RuntimeError):
    """Raised when the cloud document store cannot serve a request."""


@dataclass(slots=True)
class _Watcher:
    topic: str
    callback: DocumentCallback


class MqttDocumentStore:
    """Cloud documents kept as retained JSON messages.

    The document at ``devices/BANTAY/status`` lives on the topic
    ``<topic_prefix>/devices/BANTAY/status``. An empty retained payload is
    a deleted document and is delivered as ``None``.
    """

    def __init__(
        self,
        config: CloudConfig,
        *,
        client: Optional[MQTTClient] = None,
        client_id: Optional[str] = None,
    ) -> None:
        self.config = config
        self._client = client or MQTTClient(
            config, client_id=client_id or f"bantaybot-link-{uuid.uuid4().hex[:8]}"
        )
        self._watchers: List[_Watcher] = []
        self._topic_refs: Dict[str, int] = {}
        self._connected = False
        self._handlers_registered = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._client.set_message_handler(self._handle_message)
        try:
            await self._client.connect()
        except MQTTConnectionError as exc:
            raise DocumentStoreError(str(exc)) from exc

        if not self._handlers_registered:
            self._client.register_connect_handler(self._resubscribe)
            self._client.register_disconnect_handler(self._on_disconnect)
            self._handlers_registered = True
        self._connected = True

        for topic in list(self._topic_refs):
            self._subscribe_topic(topic)

    async def close(self) -> None:
        self._watchers.clear()
        self._topic_refs.clear()
        self._connected = False
        self._client.set_message_handler(None)
        await self._client.disconnect()

    async def read(self, path: str, timeout: float = 5.0) -> Optional[dict[str, Any]]:
        """Return the retained document at ``path``.

        ``None`` is returned when no retained message arrives within
        ``timeout`` seconds.
        """

        topic = self._topic(path)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Optional[dict[str, Any]]] = loop.create_future()

        def _resolve(document: Optional[dict[str, Any]]) -> None:
            if not future.done():
                future.set_result(document)

        watcher = self._add_watcher(topic, _resolve)
        try:
            # Always re-send SUBSCRIBE so the broker replays the retained message.
            self._subscribe_topic(topic)
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.debug("No retained document at %s after %.1fs", topic, timeout)
            return None
        finally:
            self._remove_watcher(watcher)

    async def write(self, path: str, data: Mapping[str, Any]) -> None:
        try:
            payload = json.dumps(dict(data)).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise DocumentStoreError(f"Document for {path} is not serialisable") from exc

        try:
            self._client.publish(self._topic(path), payload, qos=1, retain=True)
        except MQTTConnectionError as exc:
            raise DocumentStoreError(str(exc)) from exc

    async def append(self, collection: str, data: Mapping[str, Any]) -> str:
        document_id = uuid.uuid4().hex
        await self.write(f"{collection.strip('/')}/{document_id}", data)
        return document_id

    def subscribe(self, path: str, callback: DocumentCallback) -> Subscription:
        topic = self._topic(path)
        watcher = self._add_watcher(topic, callback)
        if self._topic_refs[topic] == 1:
            try:
                self._subscribe_topic(topic)
            except DocumentStoreError:
                self._remove_watcher(watcher)
                raise
        return Subscription(lambda: self._remove_watcher(watcher))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _topic(self, path: str) -> str:
        return f"{self.config.topic_prefix}/{path.strip('/')}"

    def _add_watcher(self, topic: str, callback: DocumentCallback) -> _Watcher:
        watcher = _Watcher(topic, callback)
        self._watchers.append(watcher)
        self._topic_refs[topic] = self._topic_refs.get(topic, 0) + 1
        return watcher

    def _remove_watcher(self, watcher: _Watcher) -> None:
        try:
            self._watchers.remove(watcher)
        except ValueError:
            return

        remaining = self._topic_refs.get(watcher.topic, 1) - 1
        if remaining > 0:
            self._topic_refs[watcher.topic] = remaining
            return

        self._topic_refs.pop(watcher.topic, None)
        if not self._connected:
            return
        try:
            self._client.unsubscribe(watcher.topic)
        except MQTTConnectionError as exc:
            LOGGER.debug("Unsubscribe from %s failed: %s", watcher.topic, exc)

    def _subscribe_topic(self, topic: str) -> None:
        if not self._connected:
            return
        try:
            self._client.subscribe(topic, qos=1)
        except MQTTConnectionError as exc:
            raise DocumentStoreError(str(exc)) from exc

    def _resubscribe(self, rc: int) -> None:
        for topic in list(self._topic_refs):
            try:
                self._subscribe_topic(topic)
            except DocumentStoreError as exc:
                LOGGER.warning("Failed to restore subscription %s: %s", topic, exc)

    def _on_disconnect(self, rc: int) -> None:
        if rc != 0:
            LOGGER.warning("Document store lost its broker connection (rc=%s)", rc)

    async def _handle_message(self, topic: str, payload: bytes) -> None:
        document: Optional[dict[str, Any]] = None
        if payload:
            try:
                decoded = json.loads(payload.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                LOGGER.warning("Dropping non-JSON document on %s", topic)
                return
            if not isinstance(decoded, dict):
                LOGGER.warning("Dropping non-object document on %s", topic)
                return
            document = decoded

        for watcher in list(self._watchers):
            if not mqtt.topic_matches_sub(watcher.topic, topic):
                continue
            try:
                result = watcher.callback(document)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Document subscriber for %s failed", topic)
