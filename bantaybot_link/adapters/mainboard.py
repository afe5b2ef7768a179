"""HTTP client for the main control board."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

import aiohttp

from .. import constants
from ..core.models import Command, CommandResult, DeviceAddress, TelemetrySnapshot
from ..telemetry import TelemetryParseError, parse_snapshot

LOGGER = logging.getLogger(__name__)


class MainBoardClient:
    """Non-blocking access to the main board's ``/status`` and action endpoints.

    The address is read on every request, so replacing :attr:`address`
    takes effect on the next call without rebuilding the client.
    """

    def __init__(
        self,
        address: DeviceAddress,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout: float = 5.0,
    ) -> None:
        self.address = address
        self.request_timeout = request_timeout

        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None

    async def fetch_status(self, timeout: Optional[float] = None) -> TelemetrySnapshot:
        """Fetch and validate the board status.

        Raises:
            asyncio.TimeoutError: If the request exceeds ``timeout``.
            aiohttp.ClientError: On network errors or a non-2xx response.
            TelemetryParseError: If the body is not a valid telemetry object.
        """

        session = await self._ensure_session()
        url = self.address.http_url()
        limit = timeout if timeout is not None else self.request_timeout

        try:
            async with asyncio.timeout(limit):
                async with session.get(url) as response:
                    response.raise_for_status()
                    body = await response.read()
        except asyncio.TimeoutError:
            LOGGER.debug("Main board status timed out after %.1fs (url=%s)", limit, url)
            raise

        return parse_snapshot(body, source="poll")

    async def send_action(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Invoke an action endpoint such as ``/play`` or ``/move-arms``.

        A non-2xx answer becomes a failed result. Network errors and
        timeouts propagate to the caller.
        """

        query = {key: str(value) for key, value in (params or {}).items()}
        return await self._call("GET", endpoint, timeout, params=query or None)

    async def send_command(
        self, command: Command, timeout: Optional[float] = None
    ) -> CommandResult:
        """POST a command frame to the board's command endpoint.

        Used for hardware with no dedicated action endpoint (head stepper,
        individual servos, audio stop, reset).
        """

        return await self._call(
            "POST", constants.DEFAULT_COMMAND_PATH, timeout, json=command.as_frame()
        )

    async def _call(
        self,
        method: str,
        endpoint: str,
        timeout: Optional[float],
        **request: Any,
    ) -> CommandResult:
        session = await self._ensure_session()
        url = self.address.http_url(endpoint)
        limit = timeout if timeout is not None else self.request_timeout

        async with asyncio.timeout(limit):
            async with session.request(method, url, **request) as response:
                detail = (await response.text()).strip()
                if response.status >= 400:
                    LOGGER.warning(
                        "Main board %s %s failed with status %d: %s",
                        method,
                        endpoint,
                        response.status,
                        detail,
                    )
                    return CommandResult.failed(f"HTTP {response.status}")

        LOGGER.debug("Main board %s %s accepted: %s", method, endpoint, detail)
        return CommandResult.ok()

    async def current_track(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            snapshot = await self.fetch_status(timeout)
        except TelemetryParseError:
            return None
        value = snapshot.get("currentTrack")
        return int(value) if value is not None else None

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=None)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session
