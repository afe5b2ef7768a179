"""Main application entry-point for bantaybot-link."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Optional

from . import constants
from .adapters import MqttDocumentStore
from .cloud import CloudChannel
from .commands import CommandRouter
from .config import LinkConfig, load_config
from .connection import ConnectionManager
from .core.models import CommandResult, ConnectionMode
from .core.observers import Subscription
from .core.protocols import DocumentStore
from .events import ConnectionChanged, DetectionAlert, PresenceChanged
from .health import HealthReporter, HealthServer
from .history import DetectionHistory, TelemetryHistory
from .local import LocalChannel
from .logging import configure_logging
from .probe import DeviceProbe
from .telemetry import TelemetryCache

LOGGER = logging.getLogger(__name__)


class BantayLinkApp:
    """Wires the connectivity layer together and runs it as a service.

    Collaborators can be injected for testing; anything not given is built
    from the configuration.
    """

    def __init__(
        self,
        config: Optional[LinkConfig] = None,
        *,
        store: Optional[DocumentStore] = None,
        local: Optional[LocalChannel] = None,
        probe: Optional[DeviceProbe] = None,
    ) -> None:
        self._config = config or load_config()
        config = self._config

        self.cache = TelemetryCache()
        self.telemetry_history = TelemetryHistory()
        self.detection_history = DetectionHistory()
        self.health = HealthReporter()

        self.local = local or LocalChannel.from_config(config)
        self.cloud = CloudChannel(
            store
            or MqttDocumentStore(config.cloud, client_id=_build_client_id(config)),
            device_id=config.device.device_id,
            read_timeout=config.cloud.read_timeout_seconds,
            presence_stale_seconds=config.cloud.presence_stale_seconds,
        )
        self.probe = probe or DeviceProbe(
            timeout=config.discovery.probe_timeout_seconds,
            batch_size=config.discovery.batch_size,
        )
        self.manager = ConnectionManager(
            local=self.local,
            cloud=self.cloud,
            probe=self.probe,
            cache=self.cache,
            device_id=config.device.device_id,
            connect_timeout=config.local.connect_timeout_seconds,
            health=self.health,
        )
        self.router = CommandRouter.for_manager(self.manager)

        self._subscriptions: list[Subscription] = []
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def config(self) -> LinkConfig:
        return self._config

    @property
    def mode(self) -> ConnectionMode:
        return self.manager.mode

    async def send_command(self, name: str, value: Any = None) -> CommandResult:
        return await self.router.send_command(name, value)

    def apply_config(self, config: LinkConfig) -> None:
        self._config = config
        self.manager.apply_config(config)

    async def run(self) -> None:
        """Start services and idle until :meth:`request_shutdown`."""

        self._shutdown_event = asyncio.Event()
        LOGGER.info("bantaybot-link starting with config: %s", self._config.path)

        await self.start_services()
        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("bantaybot-link received shutdown signal")
            raise
        finally:
            await self.stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[LinkConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("bantaybot-link received shutdown signal")

    async def start_services(self) -> ConnectionMode:
        self._subscriptions = [
            self.telemetry_history.attach(self.cache),
            self.detection_history.attach(self.manager.alerts),
            self.manager.events.subscribe(self._on_connection_changed),
            self.manager.alerts.subscribe(self._on_alert),
            self.manager.presence.subscribe(self._on_presence),
        ]
        await self._start_health_server()

        mode = await self.manager.initialize()
        if mode == ConnectionMode.NONE:
            LOGGER.warning("No channel available; running disconnected until reconnect")
        return mode

    async def stop_services(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        await self.manager.close()
        await self.local.close()
        await self.probe.close()
        await self._stop_health_server()

    async def _start_health_server(self) -> None:
        settings = self._config.health
        if not settings.enabled:
            return

        server = HealthServer(
            self.health,
            settings.host,
            settings.port,
            info_provider=self.manager.connection_info,
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self.health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self.health.update("health-endpoint", True, None)

    async def _stop_health_server(self) -> None:
        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

    async def _on_connection_changed(self, event: ConnectionChanged) -> None:
        LOGGER.info(
            "Connection %s: %s",
            "up" if event.connected else "down",
            self.manager.connection_info()["description"],
        )

    def _on_alert(self, alert: DetectionAlert) -> None:
        LOGGER.info("Detection alert: %s %s", alert.alert_type, dict(alert.payload))

    def _on_presence(self, event: PresenceChanged) -> None:
        LOGGER.info(
            "Device %s is %s", event.device_id, "online" if event.online else "offline"
        )


def _build_client_id(config: LinkConfig) -> str:
    suffix = config.device.device_id or str(os.getpid())
    return f"{constants.APP_NAME}-{suffix}-{os.getpid()}"
