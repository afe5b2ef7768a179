"""Command routing for bantaybot-link.

One semantic entry point, :meth:`CommandRouter.send_command`, regardless of
which channel is live. Local commands map to a :class:`LocalChannel` call;
remote commands are appended to the cloud pending list unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping

from .command_names import CommandNames
from .core.models import CommandResult, ConnectionMode

if TYPE_CHECKING:
    from .cloud import CloudChannel
    from .connection import ConnectionManager
    from .local import LocalChannel

LOGGER = logging.getLogger(__name__)

LocalCall = Callable[["LocalChannel", Any], Awaitable[CommandResult]]


async def _set_servo_angle(channel: LocalChannel, value: Any) -> CommandResult:
    if isinstance(value, Mapping):
        servo, angle = value.get("servo"), value.get("angle")
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        servo, angle = value
    else:
        servo = angle = None

    if servo is None or angle is None:
        return CommandResult.failed("invalid value")
    return await channel.set_servo_angle(str(servo), angle)


LOCAL_COMMANDS: Dict[str, LocalCall] = {
    CommandNames.SOUND_ALARM: lambda channel, value: channel.sound_alarm(),
    CommandNames.PLAY_TRACK: lambda channel, value: channel.play_track(value),
    CommandNames.NEXT_TRACK: lambda channel, value: channel.next_track(),
    CommandNames.SET_VOLUME: lambda channel, value: channel.set_volume(value),
    CommandNames.STOP_AUDIO: lambda channel, value: channel.stop_audio(),
    CommandNames.MOVE_ARMS: lambda channel, value: channel.move_arms(),
    CommandNames.STOP_MOVEMENT: lambda channel, value: channel.stop_movement(),
    CommandNames.SET_SERVO_ANGLE: _set_servo_angle,
    CommandNames.ROTATE_HEAD_LEFT: lambda channel, value: channel.rotate_head("left"),
    CommandNames.ROTATE_HEAD_CENTER: lambda channel, value: channel.rotate_head("center"),
    CommandNames.ROTATE_HEAD_RIGHT: lambda channel, value: channel.rotate_head("right"),
    CommandNames.TOGGLE_DETECTION: lambda channel, value: channel.toggle_detection(),
    CommandNames.SET_SENSITIVITY: lambda channel, value: channel.set_sensitivity(value),
    CommandNames.SET_BRIGHTNESS: lambda channel, value: channel.set_brightness(value),
    CommandNames.SET_CONTRAST: lambda channel, value: channel.set_contrast(value),
    CommandNames.SET_RESOLUTION: lambda channel, value: channel.set_resolution(value),
    CommandNames.TOGGLE_GRAYSCALE: lambda channel, value: channel.toggle_grayscale(),
    CommandNames.RESET_SYSTEM: lambda channel, value: channel.reset_system(),
}

KNOWN_COMMANDS = frozenset(LOCAL_COMMANDS) | frozenset(CommandNames.COMPOSITE)


class CommandRouter:
    """Dispatches semantic commands to whichever channel is live."""

    def __init__(
        self,
        *,
        local: LocalChannel,
        cloud: CloudChannel,
        mode: Callable[[], ConnectionMode],
    ) -> None:
        self._local = local
        self._cloud = cloud
        self._mode = mode

    @classmethod
    def for_manager(cls, manager: ConnectionManager) -> "CommandRouter":
        return cls(local=manager.local, cloud=manager.cloud, mode=lambda: manager.mode)

    async def send_command(self, name: str, value: Any = None) -> CommandResult:
        """Send ``name`` over the live channel. Never raises for transport errors."""

        command = name.strip().upper()
        if command not in KNOWN_COMMANDS:
            LOGGER.warning("Rejected unknown command %r", name)
            return CommandResult.failed("unknown command")

        if command in CommandNames.VALUE_REQUIRED and value is None:
            return CommandResult.failed("missing value")

        mode = self._mode()
        if mode == ConnectionMode.NONE:
            LOGGER.info("Command %s rejected, no active connection", command)
            return CommandResult.failed("no active connection")

        constituents = CommandNames.COMPOSITE.get(command)
        if constituents is not None:
            return await self._fan_out(command, constituents, value, mode)
        return await self._dispatch(command, value, mode)

    async def _fan_out(
        self, command: str, constituents: tuple[str, ...], value: Any, mode: ConnectionMode
    ) -> CommandResult:
        errors = []
        for part in constituents:
            result = await self._dispatch(part, value, mode)
            if not result.success:
                errors.append(f"{part}: {result.error}")

        if errors:
            LOGGER.warning("Composite command %s partially failed: %s", command, errors)
            return CommandResult.failed("; ".join(errors))
        return CommandResult.ok()

    async def _dispatch(self, command: str, value: Any, mode: ConnectionMode) -> CommandResult:
        try:
            if mode == ConnectionMode.LOCAL:
                return await LOCAL_COMMANDS[command](self._local, value)

            if await self._cloud.send_command(command, value):
                return CommandResult.ok()
            return CommandResult.failed("cloud write failed")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            LOGGER.warning("Command %s failed over %s: %s", command, mode.value, error)
            return CommandResult.failed(error)
