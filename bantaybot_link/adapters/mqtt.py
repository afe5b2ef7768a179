"""Thin asyncio facade over the paho-mqtt network thread.

paho runs its own thread once ``loop_start()`` is called; every callback it
makes is hopped onto the event loop with ``call_soon_threadsafe`` before
any of our state is touched.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from typing import Awaitable, Callable, List, Optional

import paho.mqtt.client as mqtt

from ..config import CloudConfig

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
StatusHandler = Callable[[int], None]

RECONNECT_MIN_DELAY = 1
RECONNECT_MAX_DELAY = 30


class MQTTConnectionError(RuntimeError):
    """Raised when the broker cannot be reached or refuses an operation."""


def _reason_code(value) -> int:
    """paho v2 hands out ``ReasonCode`` objects; everything else here wants ints."""

    return int(getattr(value, "value", value))


class MQTTClient:
    """One broker session used by the cloud document store."""

    def __init__(
        self,
        config: CloudConfig,
        *,
        client_id: str,
        keepalive: int = 60,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = keepalive

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Future[int]] = None
        self._gone: Optional[asyncio.Event] = None
        self._connected = False
        self._message_handler: Optional[MessageHandler] = None
        self._inbox: Optional[asyncio.Queue[tuple[str, bytes]]] = None
        self._dispatcher: Optional[asyncio.Task[None]] = None
        self._on_up: List[StatusHandler] = []
        self._on_down: List[StatusHandler] = []

    def is_connected(self) -> bool:
        return self._connected

    async def connect(self, timeout: Optional[float] = None) -> None:
        """Open the session and wait for a successful CONNACK.

        Raises:
            MQTTConnectionError: On timeout or a non-zero CONNACK code.
        """

        limit = self.config.connect_timeout_seconds if timeout is None else timeout
        self._loop = asyncio.get_running_loop()
        self._connack = self._loop.create_future()
        self._gone = asyncio.Event()
        self._start_dispatcher()

        client = self._build_client()
        self._client = client
        LOGGER.info(
            "Connecting to MQTT broker %s:%s as %s",
            self.config.broker_host,
            self.config.broker_port,
            self.client_id,
        )
        client.connect_async(self.config.broker_host, self.config.broker_port, self.keepalive)
        client.loop_start()

        try:
            rc = await asyncio.wait_for(asyncio.shield(self._connack), timeout=limit)
        except asyncio.TimeoutError as exc:
            self._abandon(client)
            await self._stop_dispatcher()
            raise MQTTConnectionError(
                f"No CONNACK from {self.config.broker_host} within {limit:.1f}s"
            ) from exc

        if rc != 0:
            self._abandon(client)
            await self._stop_dispatcher()
            raise MQTTConnectionError(f"MQTT broker refused the connection (rc={rc})")

    async def disconnect(self, timeout: float = 5.0) -> None:
        client = self._client
        if client is None:
            return

        client.disconnect()
        try:
            if self._gone is not None:
                await asyncio.wait_for(self._gone.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Broker did not acknowledge the disconnect in %.1fs", timeout)
        finally:
            self._abandon(client)
        self._connected = False
        await self._stop_dispatcher()

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        info = self._require_client().publish(topic, payload, qos=qos, retain=retain)
        self._check(info.rc, "Publish to", topic)

    def subscribe(self, topic: str, qos: int = 1) -> None:
        rc, _ = self._require_client().subscribe(topic, qos=qos)
        self._check(rc, "Subscribe to", topic)

    def unsubscribe(self, topic: str) -> None:
        rc, _ = self._require_client().unsubscribe(topic)
        self._check(rc, "Unsubscribe from", topic)

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_connect_handler(self, handler: StatusHandler) -> None:
        self._on_up.append(handler)

    def register_disconnect_handler(self, handler: StatusHandler) -> None:
        self._on_down.append(handler)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        client.enable_logger(LOGGER)
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        if self.config.use_tls:
            client.tls_set()
        client.reconnect_delay_set(RECONNECT_MIN_DELAY, RECONNECT_MAX_DELAY)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def _abandon(self, client: mqtt.Client) -> None:
        client.loop_stop()
        if self._client is client:
            self._client = None

    def _require_client(self) -> mqtt.Client:
        if self._client is None:
            raise MQTTConnectionError("MQTT client not connected")
        return self._client

    @staticmethod
    def _check(rc: int, action: str, topic: str) -> None:
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"{action} {topic} failed (rc={rc})")

    def _call_in_loop(self, callback, *args) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(callback, *args)

    # paho network thread ----------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._call_in_loop(self._connack_received, _reason_code(reason_code))

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code, properties=None
    ) -> None:
        self._call_in_loop(self._connection_lost, _reason_code(reason_code))

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        if self._message_handler is not None:
            self._call_in_loop(self._enqueue, message.topic, bytes(message.payload))

    # event loop ---------------------------------------------------------
    def _connack_received(self, rc: int) -> None:
        if self._connack is not None and not self._connack.done():
            self._connack.set_result(rc)

        if rc != 0:
            LOGGER.error("MQTT broker returned CONNACK rc=%s", rc)
            self._connected = False
            return

        # Also reached after paho's own automatic reconnects.
        LOGGER.info("MQTT session established")
        self._connected = True
        for handler in list(self._on_up):
            handler(rc)

    def _connection_lost(self, rc: int) -> None:
        LOGGER.info("MQTT session closed (rc=%s)", rc)
        self._connected = False
        if self._gone is not None:
            self._gone.set()
        for handler in list(self._on_down):
            handler(rc)

    def _enqueue(self, topic: str, payload: bytes) -> None:
        if self._inbox is not None:
            self._inbox.put_nowait((topic, payload))

    def _start_dispatcher(self) -> None:
        if self._dispatcher is not None and not self._dispatcher.done():
            return
        self._inbox = asyncio.Queue()
        self._dispatcher = asyncio.create_task(self._dispatch_messages(self._inbox))

    async def _stop_dispatcher(self) -> None:
        task, self._dispatcher = self._dispatcher, None
        self._inbox = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _dispatch_messages(self, inbox: asyncio.Queue[tuple[str, bytes]]) -> None:
        # One consumer keeps handler calls in broker arrival order.
        while True:
            topic, payload = await inbox.get()
            handler = self._message_handler
            if handler is None:
                continue
            try:
                result = handler(topic, payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Handler for MQTT message on %s failed", topic)
