"""Direct same-network channel to the robot's two controllers.

The main board is polled over HTTP (:class:`PollChannel`); the camera board
pushes frames over a websocket (:class:`SocketChannel`). :class:`LocalChannel`
owns both and only reports itself connected when both are healthy.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, Mapping, Optional, Union

import aiohttp

from . import constants
from .adapters.mainboard import MainBoardClient
from .command_names import CommandNames
from .config import LinkConfig, LocalConfig
from .core.models import (
    ChannelHealth,
    Command,
    CommandResult,
    DeviceAddress,
    TelemetrySnapshot,
)
from .core.observers import EventStream
from .events import ChannelStatusChanged, DetectionAlert
from .telemetry import TelemetryParseError, parse_snapshot

LOGGER = logging.getLogger(__name__)

TELEMETRY_FRAME_TYPES = frozenset({"sensor_data", "camera_status"})
ALERT_FRAME_TYPES = frozenset({"bird_detection", "motion_alert"})

HEAD_DIRECTIONS = {
    "left": CommandNames.ROTATE_HEAD_LEFT,
    "center": CommandNames.ROTATE_HEAD_CENTER,
    "right": CommandNames.ROTATE_HEAD_RIGHT,
}


def next_track_after(current: int) -> int:
    """Track that follows ``current``, skipping the reserved track and wrapping."""

    track = current + 1
    if track == constants.SKIP_TRACK:
        track += 1
    if track > constants.TOTAL_AUDIO_TRACKS:
        track = 1
    if track == constants.SKIP_TRACK:
        track += 1
    return track


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class PollChannel:
    """Periodic ``GET /status`` against the main board."""

    name = "poll"

    def __init__(
        self,
        client: MainBoardClient,
        *,
        interval: float = 2.0,
        failure_threshold: int = 2,
    ) -> None:
        self.client = client
        self.interval = interval
        self.failure_threshold = max(1, failure_threshold)

        self.telemetry: EventStream[TelemetrySnapshot] = EventStream("poll.telemetry")
        self.status: EventStream[ChannelStatusChanged] = EventStream("poll.status")

        self._health = ChannelHealth()
        self._failure_streak = 0
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def connected(self) -> bool:
        return self._health.connected

    @property
    def health(self) -> ChannelHealth:
        return self._health.copy()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, interval: Optional[float] = None) -> bool:
        """Poll once immediately, then keep polling every ``interval`` seconds.

        Returns whether the immediate poll succeeded.
        """

        await self.stop()
        if interval is not None:
            self.interval = interval

        ok = await self.poll_once()
        self._task = asyncio.create_task(self._poll_loop())
        return ok

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._failure_streak = 0
        await self._set_connected(False, None)

    async def poll_once(self) -> bool:
        try:
            snapshot = await self.client.fetch_status()
        except asyncio.CancelledError:
            raise
        except aiohttp.ClientResponseError as exc:
            # The board answered, so reachability is not in question.
            self._failure_streak = 0
            self._health.last_error = f"HTTP {exc.status}"
            LOGGER.warning("Main board status returned HTTP %d", exc.status)
            return False
        except TelemetryParseError as exc:
            self._failure_streak = 0
            self._health.last_error = str(exc)
            LOGGER.warning("Dropping malformed main board status: %s", exc)
            return False
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            await self._record_unreachable(_describe(exc))
            return False

        self._failure_streak = 0
        self._health.last_error = None
        await self._set_connected(True, None)
        await self.telemetry.emit(snapshot)
        return True

    async def _record_unreachable(self, error: str) -> None:
        self._failure_streak += 1
        self._health.last_error = error
        LOGGER.debug(
            "Main board unreachable (%d/%d): %s",
            self._failure_streak,
            self.failure_threshold,
            error,
        )
        if self._failure_streak >= self.failure_threshold:
            await self._set_connected(False, error)

    async def _set_connected(self, connected: bool, error: Optional[str]) -> None:
        if self._health.connected == connected:
            return
        self._health.connected = connected
        if connected:
            LOGGER.info("Main board connected at %s", self.client.address)
        else:
            LOGGER.warning("Main board connection lost: %s", error or "stopped")
        await self.status.emit(ChannelStatusChanged(self.name, connected, error))

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(max(self.interval, 0.1))
            await self.poll_once()


class SocketChannel:
    """Persistent websocket to the camera board with bounded reconnects."""

    name = "socket"

    def __init__(
        self,
        address: DeviceAddress,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        reconnect_interval: float = 3.0,
        max_reconnect_attempts: int = 5,
        connect_timeout: float = 5.0,
    ) -> None:
        self.address = address
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.connect_timeout = connect_timeout

        self.telemetry: EventStream[TelemetrySnapshot] = EventStream("socket.telemetry")
        self.alerts: EventStream[DetectionAlert] = EventStream("socket.alerts")
        self.status: EventStream[ChannelStatusChanged] = EventStream("socket.status")

        self._session = session
        self._owns_session = session is None
        self._health = ChannelHealth()
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._supervisor: Optional[asyncio.Task[None]] = None
        self._first_outcome: Optional[asyncio.Future[bool]] = None
        self._connecting = False

    @property
    def connected(self) -> bool:
        return self._health.connected

    @property
    def health(self) -> ChannelHealth:
        return self._health.copy()

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def reconnecting(self) -> bool:
        return self._supervisor is not None and not self._supervisor.done()

    async def connect(self, address: Optional[DeviceAddress] = None) -> bool:
        """Open the socket and wait for the first handshake outcome.

        A call made while another is in flight is rejected with ``False``.
        Calling this after the reconnect cap was hit resets the counter.
        """

        if address is not None:
            self.address = address
        if self._connecting:
            LOGGER.debug("Socket connect already in progress")
            return False
        if self.is_open:
            return True

        self._connecting = True
        try:
            await self._cancel_supervisor()
            self._health.reconnect_attempts = 0
            loop = asyncio.get_running_loop()
            self._first_outcome = loop.create_future()
            self._supervisor = asyncio.create_task(self._supervise())
            return await asyncio.shield(self._first_outcome)
        finally:
            self._connecting = False

    async def send(self, message: Union[Command, Mapping[str, Any]]) -> bool:
        """Write one JSON frame if the socket is open. Nothing is queued."""

        ws = self._ws
        if ws is None or ws.closed:
            LOGGER.debug("Socket closed, dropping outbound frame")
            return False

        frame = message.as_frame() if isinstance(message, Command) else dict(message)
        try:
            await ws.send_json(frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Socket send failed: %s", exc)
            return False
        return True

    async def disconnect(self) -> None:
        await self._cancel_supervisor()
        await self._mark_disconnected(None)

    async def close(self) -> None:
        await self.disconnect()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=None)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _cancel_supervisor(self) -> None:
        task, self._supervisor = self._supervisor, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            with contextlib.suppress(Exception):
                await ws.close()
        self._resolve_first(False)

    def _resolve_first(self, outcome: bool) -> None:
        future = self._first_outcome
        if future is not None and not future.done():
            future.set_result(outcome)

    async def _supervise(self) -> None:
        while True:
            error = await self._run_once()
            await self._mark_disconnected(error)

            if self._health.reconnect_attempts >= self.max_reconnect_attempts:
                LOGGER.warning(
                    "Camera board socket gave up after %d reconnect attempts",
                    self._health.reconnect_attempts,
                )
                return

            self._health.reconnect_attempts += 1
            LOGGER.info(
                "Reconnecting camera board socket in %.1fs (attempt %d/%d)",
                self.reconnect_interval,
                self._health.reconnect_attempts,
                self.max_reconnect_attempts,
            )
            await asyncio.sleep(self.reconnect_interval)

    async def _run_once(self) -> Optional[str]:
        session = await self._ensure_session()
        url = self.address.ws_url()

        try:
            async with asyncio.timeout(self.connect_timeout):
                ws = await session.ws_connect(url)
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            error = _describe(exc)
            LOGGER.debug("Camera board socket handshake failed: %s", error)
            self._health.last_error = error
            self._resolve_first(False)
            return error

        self._ws = ws
        self._health.reconnect_attempts = 0
        self._health.last_error = None
        await self._mark_connected()
        self._resolve_first(True)

        error: Optional[str] = "closed by peer"
        try:
            async for message in ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_frame(message.data)
                elif message.type == aiohttp.WSMsgType.ERROR:
                    error = _describe(ws.exception() or RuntimeError("websocket error"))
                    break
        finally:
            self._ws = None
            if not ws.closed:
                with contextlib.suppress(Exception):
                    await ws.close()

        self._health.last_error = error
        return error

    async def _mark_connected(self) -> None:
        if self._health.connected:
            return
        self._health.connected = True
        LOGGER.info("Camera board socket connected at %s", self.address.ws_url())
        await self.status.emit(ChannelStatusChanged(self.name, True))

    async def _mark_disconnected(self, error: Optional[str]) -> None:
        if not self._health.connected:
            return
        self._health.connected = False
        LOGGER.warning("Camera board socket disconnected: %s", error or "stopped")
        await self.status.emit(ChannelStatusChanged(self.name, False, error))

    async def _handle_frame(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Dropping malformed socket frame: %.80s", raw)
            return

        if not isinstance(message, dict):
            LOGGER.warning("Dropping socket frame that is not an object")
            return

        frame_type = message.get("type")
        if frame_type in TELEMETRY_FRAME_TYPES:
            try:
                snapshot = parse_snapshot(message, source="socket")
            except TelemetryParseError as exc:
                LOGGER.warning("Dropping %s frame: %s", frame_type, exc)
                return
            await self.telemetry.emit(snapshot)
        elif frame_type in ALERT_FRAME_TYPES:
            payload = {key: value for key, value in message.items() if key != "type"}
            await self.alerts.emit(DetectionAlert(alert_type=frame_type, payload=payload))
        else:
            LOGGER.info("Ignoring socket frame of type %r", frame_type)


class LocalChannel:
    """Both local sub-channels plus the local half of the command table."""

    def __init__(
        self,
        main: DeviceAddress,
        camera: DeviceAddress,
        *,
        config: LocalConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.client = MainBoardClient(
            main, session=session, request_timeout=config.request_timeout_seconds
        )
        self.poll = PollChannel(
            self.client,
            interval=config.poll_interval_seconds,
            failure_threshold=config.poll_failure_threshold,
        )
        self.socket = SocketChannel(
            camera,
            session=session,
            reconnect_interval=config.reconnect_interval_seconds,
            max_reconnect_attempts=config.max_reconnect_attempts,
            connect_timeout=config.connect_timeout_seconds,
        )

        self.telemetry: EventStream[TelemetrySnapshot] = EventStream("local.telemetry")
        self.alerts: EventStream[DetectionAlert] = EventStream("local.alerts")
        self.status: EventStream[ChannelStatusChanged] = EventStream("local.status")

        self._links = [
            self.poll.telemetry.subscribe(self.telemetry.emit),
            self.socket.telemetry.subscribe(self.telemetry.emit),
            self.socket.alerts.subscribe(self.alerts.emit),
            self.poll.status.subscribe(self.status.emit),
            self.socket.status.subscribe(self.status.emit),
        ]

    @classmethod
    def from_config(
        cls, config: LinkConfig, *, session: Optional[aiohttp.ClientSession] = None
    ) -> "LocalChannel":
        return cls(
            config.device.main_address,
            config.device.camera_address,
            config=config.local,
            session=session,
        )

    @property
    def fully_connected(self) -> bool:
        return self.poll.connected and self.socket.connected

    def health(self) -> Dict[str, ChannelHealth]:
        return {"poll": self.poll.health, "socket": self.socket.health}

    async def connect(self) -> bool:
        """Start both sub-channels; true only if both came up."""

        poll_ok, socket_ok = await asyncio.gather(
            self.poll.start(), self.socket.connect()
        )
        if poll_ok and socket_ok:
            return True
        LOGGER.info(
            "Local channel partially connected (poll=%s, socket=%s)",
            poll_ok,
            socket_ok,
        )
        return False

    async def disconnect(self) -> None:
        await asyncio.gather(self.poll.stop(), self.socket.disconnect())

    async def close(self) -> None:
        await self.disconnect()
        for link in self._links:
            link.unsubscribe()
        await self.socket.close()
        await self.client.close()

    def apply_config(self, config: LinkConfig) -> None:
        """Swap addresses and timings; running loops pick them up on their next cycle."""

        self.client.address = config.device.main_address
        self.client.request_timeout = config.local.request_timeout_seconds
        self.poll.interval = config.local.poll_interval_seconds
        self.poll.failure_threshold = config.local.poll_failure_threshold
        self.socket.address = config.device.camera_address
        self.socket.reconnect_interval = config.local.reconnect_interval_seconds
        self.socket.max_reconnect_attempts = config.local.max_reconnect_attempts
        self.socket.connect_timeout = config.local.connect_timeout_seconds

    # ------------------------------------------------------------------
    # Main board actions (HTTP)
    # ------------------------------------------------------------------
    async def play_track(self, track: int) -> CommandResult:
        return await self.client.send_action("/play", {"track": int(track)})

    async def next_track(self) -> CommandResult:
        current = await self.client.current_track()
        if current is None:
            return CommandResult.failed("could not get current track")
        return await self.play_track(next_track_after(current))

    async def set_volume(self, level: Any) -> CommandResult:
        return await self.client.send_action("/volume", {"level": level})

    async def move_arms(self) -> CommandResult:
        return await self.client.send_action("/move-arms")

    async def stop_movement(self) -> CommandResult:
        return await self.client.send_action("/stop")

    async def sound_alarm(self) -> CommandResult:
        played = await self.next_track()
        moved = await self.move_arms()
        if played.success and moved.success:
            return CommandResult.ok()
        return CommandResult.failed(played.error or moved.error or "alarm failed")

    async def stop_audio(self) -> CommandResult:
        return await self.client.send_command(Command(CommandNames.STOP_AUDIO))

    async def set_servo_angle(self, servo: str, angle: float) -> CommandResult:
        return await self.client.send_command(
            Command(CommandNames.SET_SERVO_ANGLE, {"servo": servo, "angle": angle})
        )

    async def rotate_head(self, direction: str) -> CommandResult:
        name = HEAD_DIRECTIONS.get(direction.lower())
        if name is None:
            return CommandResult.failed(f"unknown head direction {direction!r}")
        return await self.client.send_command(Command(name))

    async def reset_system(self) -> CommandResult:
        return await self.client.send_command(Command(CommandNames.RESET_SYSTEM))

    # ------------------------------------------------------------------
    # Camera board actions (socket frames)
    # ------------------------------------------------------------------
    async def toggle_detection(self) -> CommandResult:
        return await self._send_frame(CommandNames.TOGGLE_DETECTION)

    async def set_sensitivity(self, value: Any) -> CommandResult:
        return await self._send_frame(CommandNames.SET_SENSITIVITY, value)

    async def set_brightness(self, value: Any) -> CommandResult:
        return await self._send_frame(CommandNames.SET_BRIGHTNESS, value)

    async def set_contrast(self, value: Any) -> CommandResult:
        return await self._send_frame(CommandNames.SET_CONTRAST, value)

    async def set_resolution(self, value: Any) -> CommandResult:
        return await self._send_frame(CommandNames.SET_RESOLUTION, value)

    async def toggle_grayscale(self) -> CommandResult:
        return await self._send_frame(CommandNames.TOGGLE_GRAYSCALE)

    async def _send_frame(self, name: str, value: Any = None) -> CommandResult:
        if await self.socket.send(Command(name, value)):
            return CommandResult.ok()
        return CommandResult.failed("socket not connected")
