"""Health reporting for the bantaybot-link service.

Channels and the connection manager push their state into a
:class:`HealthReporter`; :class:`HealthServer` publishes it over HTTP so a
supervisor (systemd watchdog script, container probe) can poll it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aiohttp import web

from .core.models import ChannelHealth

LOGGER = logging.getLogger(__name__)

InfoProvider = Callable[[], Dict[str, Any]]

REPORTER_KEY: web.AppKey["HealthReporter"] = web.AppKey("reporter")
INFO_KEY: web.AppKey[Optional[InfoProvider]] = web.AppKey("info_provider")


def _stamp() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class HealthEntry:
    name: str
    healthy: bool
    detail: Optional[str] = None
    reconnect_attempts: Optional[int] = None
    updated_at: datetime = field(default_factory=_stamp)

    def to_json(self) -> Dict[str, object]:
        body: Dict[str, object] = {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }
        if self.reconnect_attempts is not None:
            body["reconnectAttempts"] = self.reconnect_attempts
        return body


class HealthReporter:
    """Latest known status per component plus the link arbitration state.

    Component entries are informational. Only the link state decides
    whether the service reports ``degraded``: a dropped socket while the
    poll channel still works is not an outage.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, HealthEntry] = {}
        self._link: Optional[HealthEntry] = None
        self._started = time.monotonic()
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        await self._store(HealthEntry(name, healthy, detail))

    async def update_channel(self, name: str, health: ChannelHealth) -> None:
        await self._store(
            HealthEntry(
                name,
                health.connected,
                health.last_error,
                reconnect_attempts=health.reconnect_attempts,
            )
        )

    async def set_agent_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        # ``detail`` carries the state name when nothing more specific is given.
        async with self._lock:
            self._link = HealthEntry("link", healthy, detail or state)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            entries = sorted(self._entries.values(), key=lambda entry: entry.name)
            link = self._link

        degraded = link is not None and not link.healthy
        report: Dict[str, object] = {
            "status": "degraded" if degraded else "ok",
            "uptimeSeconds": round(time.monotonic() - self._started, 1),
            "components": [entry.to_json() for entry in entries],
        }
        if link is not None:
            report["linkState"] = {
                "state": link.detail,
                "healthy": link.healthy,
                "updatedAt": link.updated_at.isoformat(timespec="seconds"),
            }
        return report

    async def _store(self, entry: HealthEntry) -> None:
        async with self._lock:
            self._entries[entry.name] = entry


async def _healthz(request: web.Request) -> web.Response:
    report = await request.app[REPORTER_KEY].snapshot()
    return web.json_response(report, status=503 if report["status"] != "ok" else 200)


async def _connection(request: web.Request) -> web.Response:
    provider = request.app[INFO_KEY]
    if provider is None:
        raise web.HTTPNotFound(
            text='{"error": "unavailable"}', content_type="application/json"
        )
    return web.json_response(provider())


def build_health_app(
    reporter: HealthReporter, info_provider: Optional[InfoProvider] = None
) -> web.Application:
    app = web.Application()
    app[REPORTER_KEY] = reporter
    app[INFO_KEY] = info_provider
    app.add_routes([web.get("/healthz", _healthz), web.get("/connection", _connection)])
    return app


class HealthServer:
    """Serves ``/healthz`` and ``/connection`` on a private aiohttp runner."""

    def __init__(
        self,
        reporter: HealthReporter,
        host: str,
        port: int,
        *,
        info_provider: Optional[InfoProvider] = None,
    ) -> None:
        self.host = host
        self._requested_port = port
        self._reporter = reporter
        self._info_provider = info_provider
        self._runner: Optional[web.AppRunner] = None

    @property
    def port(self) -> int:
        """Bound port; differs from the requested one when that was 0."""

        if self._runner is None:
            return self._requested_port
        for address in self._runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return self._requested_port

    async def start(self) -> None:
        runner = web.AppRunner(
            build_health_app(self._reporter, self._info_provider), access_log=None
        )
        await runner.setup()
        try:
            await web.TCPSite(runner, self.host, self._requested_port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        LOGGER.info("Health endpoint listening on http://%s:%s/healthz", self.host, self.port)

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
