"""Connection arbitration between the local and cloud channels.

This module decides which transport is authoritative ("mode"). Arbitration
is local first: a reachability probe, then a bounded local connect, then
the cloud relay as a fallback. Exactly one channel feeds the telemetry
cache at any time.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .core.models import ConnectionMode
from .core.observers import EventStream, Subscription
from .events import ChannelStatusChanged, ConnectionChanged, DetectionAlert, PresenceChanged

if TYPE_CHECKING:
    from .cloud import CloudChannel
    from .config import LinkConfig
    from .health import HealthReporter
    from .local import LocalChannel
    from .probe import DeviceProbe
    from .telemetry import TelemetryCache

LOGGER = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Arbitration state."""

    IDLE = "idle"
    """Constructed, ``initialize()`` not called yet."""

    CONNECTING_LOCAL = "connecting_local"
    """Probing and connecting the local channel."""

    CONNECTING_REMOTE = "connecting_remote"
    """Local attempt failed; connecting the cloud relay."""

    LOCAL = "local"
    """Local channel is authoritative."""

    REMOTE = "remote"
    """Cloud relay is authoritative."""

    DISCONNECTED = "disconnected"
    """No channel is authoritative."""


MODE_DESCRIPTIONS = {
    ConnectionMode.LOCAL: "Connected locally (same network)",
    ConnectionMode.REMOTE: "Connected remotely (via cloud)",
    ConnectionMode.NONE: "Not connected",
}


class ConnectionManager:
    """Arbitrates the authoritative channel and owns its bindings.

    Collaborators are injected so tests can substitute fakes for any of
    them. The manager is the only writer of the mode and the only component
    that binds a channel to the telemetry cache.
    """

    def __init__(
        self,
        *,
        local: LocalChannel,
        cloud: CloudChannel,
        probe: DeviceProbe,
        cache: TelemetryCache,
        device_id: str,
        connect_timeout: float = 5.0,
        probe_timeout: Optional[float] = None,
        health: Optional[HealthReporter] = None,
    ) -> None:
        self._local = local
        self._cloud = cloud
        self._probe = probe
        self._cache = cache
        self._device_id = device_id
        self._connect_timeout = connect_timeout
        self._probe_timeout = probe_timeout
        self._health = health

        self.events: EventStream[ConnectionChanged] = EventStream("connection")
        self.alerts: EventStream[DetectionAlert] = EventStream("alerts")
        self.presence: EventStream[PresenceChanged] = EventStream("presence")

        self._mode = ConnectionMode.NONE
        self._state = ConnectionState.IDLE
        self._connected = False
        self._initializing = False
        self._local_bindings: List[Subscription] = []
        self._cloud_bindings: List[Subscription] = []

        self._channel_links = [
            self._local.status.subscribe(self._on_local_status),
            self._cloud.status.subscribe(self._on_cloud_status),
        ]

    @property
    def mode(self) -> ConnectionMode:
        return self._mode

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def initializing(self) -> bool:
        return self._initializing

    @property
    def local(self) -> LocalChannel:
        return self._local

    @property
    def cloud(self) -> CloudChannel:
        return self._cloud

    def connection_info(self) -> Dict[str, Any]:
        return {
            "mode": self._mode.value,
            "connected": self._connected,
            "state": self._state.value,
            "description": MODE_DESCRIPTIONS[self._mode],
        }

    async def initialize(self) -> ConnectionMode:
        """Run arbitration. A call made while one is in flight is a no-op."""

        if self._initializing:
            LOGGER.debug("Arbitration already in progress")
            return self._mode

        self._initializing = True
        try:
            await self._teardown()
            await self._arbitrate()
        finally:
            self._initializing = False
        return self._mode

    async def reconnect(self) -> ConnectionMode:
        """Tear down the live channel and arbitrate from scratch."""

        if self._initializing:
            LOGGER.debug("Reconnect ignored, arbitration already in progress")
            return self._mode

        LOGGER.info("Reconnecting (was %s)", self._mode.value)
        return await self.initialize()

    async def switch_to_remote(self) -> bool:
        """Manual override: make the cloud relay authoritative."""

        if self._initializing:
            return False

        self._initializing = True
        try:
            await self._teardown()
            await self._set_state(ConnectionState.CONNECTING_REMOTE)
            if await self._try_remote():
                await self._settle(ConnectionMode.REMOTE, ConnectionState.REMOTE, True)
                return True
            await self._settle(ConnectionMode.NONE, ConnectionState.DISCONNECTED, False)
            return False
        finally:
            self._initializing = False

    async def switch_to_local(self) -> bool:
        """Manual override: make the local channel authoritative."""

        if self._initializing:
            return False

        self._initializing = True
        try:
            await self._teardown()
            await self._set_state(ConnectionState.CONNECTING_LOCAL)
            if await self._try_local():
                await self._settle(ConnectionMode.LOCAL, ConnectionState.LOCAL, True)
                return True
            await self._settle(ConnectionMode.NONE, ConnectionState.DISCONNECTED, False)
            return False
        finally:
            self._initializing = False

    async def disconnect(self) -> None:
        await self._teardown()
        await self._settle(ConnectionMode.NONE, ConnectionState.DISCONNECTED, False)

    def apply_config(self, config: LinkConfig) -> None:
        """Take a new configuration snapshot; used from the next connect on."""

        self._device_id = config.device.device_id
        self._connect_timeout = config.local.connect_timeout_seconds
        self._local.apply_config(config)
        self._cloud.device_id = config.device.device_id
        self._cloud.read_timeout = config.cloud.read_timeout_seconds
        self._cloud.presence_stale_seconds = config.cloud.presence_stale_seconds

    async def close(self) -> None:
        await self._teardown()
        for link in self._channel_links:
            link.unsubscribe()
        self._channel_links.clear()
        self.events.clear()
        self.alerts.clear()
        self.presence.clear()

    # ------------------------------------------------------------------
    # Arbitration
    # ------------------------------------------------------------------
    async def _arbitrate(self) -> None:
        await self._set_state(ConnectionState.CONNECTING_LOCAL)
        if await self._try_local():
            await self._settle(ConnectionMode.LOCAL, ConnectionState.LOCAL, True)
            return

        await self._set_state(ConnectionState.CONNECTING_REMOTE)
        if await self._try_remote():
            await self._settle(ConnectionMode.REMOTE, ConnectionState.REMOTE, True)
            return

        await self._settle(ConnectionMode.NONE, ConnectionState.DISCONNECTED, False)

    async def _try_local(self) -> bool:
        address = self._local.client.address
        timeout = self._probe_timeout or self._connect_timeout
        if not await self._probe.probe(address, timeout):
            LOGGER.info("Local probe of %s failed", address)
            return False

        # Bound before connecting so the immediate poll reaches the cache.
        self._bind_local()
        try:
            async with asyncio.timeout(self._connect_timeout):
                ok = await self._local.connect()
        except asyncio.TimeoutError:
            LOGGER.info(
                "Local connect did not complete within %.1fs", self._connect_timeout
            )
            ok = False

        if not ok:
            await self._teardown_local()
            return False
        return True

    async def _try_remote(self) -> bool:
        if not await self._cloud.connect():
            return False

        try:
            self._cloud_bindings = [
                self._cloud.subscribe_to_telemetry(self._device_id, self._cache.update),
                self._cloud.subscribe_to_presence(self._device_id, self.presence.emit),
            ]
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Cloud subscriptions failed: %s", exc)
            await self._teardown_cloud()
            return False
        return True

    def _bind_local(self) -> None:
        self._local_bindings = [
            self._local.telemetry.subscribe(self._cache.update),
            self._local.alerts.subscribe(self.alerts.emit),
        ]

    async def _teardown(self) -> None:
        await self._teardown_local()
        await self._teardown_cloud()

    async def _teardown_local(self) -> None:
        if not self._local_bindings:
            return
        for binding in self._local_bindings:
            binding.unsubscribe()
        self._local_bindings = []
        await self._local.disconnect()

    async def _teardown_cloud(self) -> None:
        bindings, self._cloud_bindings = self._cloud_bindings, []
        for binding in bindings:
            binding.unsubscribe()
        if bindings or self._cloud.connected:
            await self._cloud.disconnect()

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------
    async def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            LOGGER.debug("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        if self._health is not None:
            await self._health.set_agent_state(
                state.value, healthy=state != ConnectionState.DISCONNECTED
            )

    async def _settle(
        self, mode: ConnectionMode, state: ConnectionState, connected: bool
    ) -> None:
        self._mode = mode
        self._connected = connected
        await self._set_state(state)
        LOGGER.info("Connection mode %s (connected=%s)", mode.value, connected)
        await self.events.emit(ConnectionChanged(mode, connected, state.value))

    async def _on_local_status(self, event: ChannelStatusChanged) -> None:
        if self._health is not None:
            await self._health.update_channel(
                f"local.{event.channel}", self._local.health()[event.channel]
            )

        if self._state != ConnectionState.LOCAL or not self._local_bindings:
            return

        connected = self._local.fully_connected
        if connected == self._connected:
            return
        self._connected = connected
        LOGGER.info("Local connectivity %s", "restored" if connected else "lost")
        await self.events.emit(
            ConnectionChanged(ConnectionMode.LOCAL, connected, self._state.value)
        )

    async def _on_cloud_status(self, event: ChannelStatusChanged) -> None:
        if self._health is not None:
            await self._health.update_channel("cloud", self._cloud.health)
