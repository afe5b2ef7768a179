"""Tests for the command router."""

import pytest

from bantaybot_link.cloud import CloudChannel
from bantaybot_link.commands import KNOWN_COMMANDS, CommandRouter
from bantaybot_link.command_names import CommandNames
from bantaybot_link.core.models import CommandResult, ConnectionMode

from conftest import FakeDocumentStore


class RecordingLocal:
    """Records every local action; main board calls and socket frames can fail."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.socket_open = True
        self.raise_on: set[str] = set()
        self.fail_on: set[str] = set()

    def _record(self, name, *args) -> CommandResult:
        self.calls.append((name, *args))
        if name in self.raise_on:
            raise ConnectionResetError("board went away")
        if name in self.fail_on:
            return CommandResult.failed("HTTP 500")
        return CommandResult.ok()

    def _frame(self, name, *args) -> CommandResult:
        if not self.socket_open:
            self.calls.append((name, *args))
            return CommandResult.failed("socket not connected")
        return self._record(name, *args)

    async def sound_alarm(self):
        return self._record("sound_alarm")

    async def play_track(self, track):
        return self._record("play_track", track)

    async def next_track(self):
        return self._record("next_track")

    async def set_volume(self, level):
        return self._record("set_volume", level)

    async def move_arms(self):
        return self._record("move_arms")

    async def stop_movement(self):
        return self._record("stop_movement")

    async def stop_audio(self):
        return self._record("stop_audio")

    async def set_servo_angle(self, servo, angle):
        return self._record("set_servo_angle", servo, angle)

    async def rotate_head(self, direction):
        return self._record("rotate_head", direction)

    async def toggle_detection(self):
        return self._frame("toggle_detection")

    async def set_sensitivity(self, value):
        return self._frame("set_sensitivity", value)

    async def set_brightness(self, value):
        return self._frame("set_brightness", value)

    async def set_contrast(self, value):
        return self._frame("set_contrast", value)

    async def set_resolution(self, value):
        return self._frame("set_resolution", value)

    async def toggle_grayscale(self):
        return self._frame("toggle_grayscale")

    async def reset_system(self):
        return self._record("reset_system")


def _router(mode: ConnectionMode, store=None):
    local = RecordingLocal()
    store = store or FakeDocumentStore()
    cloud = CloudChannel(store, device_id="BANTAY")
    state = {"mode": mode}
    router = CommandRouter(local=local, cloud=cloud, mode=lambda: state["mode"])
    return router, local, store, state


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", list(ConnectionMode))
async def test_unknown_command_rejected_without_transport_call(mode):
    router, local, store, _ = _router(mode)

    result = await router.send_command("FOO")

    assert result.as_dict() == {"success": False, "error": "unknown command"}
    assert local.calls == []
    assert store.appended == []


@pytest.mark.asyncio
async def test_no_active_connection():
    router, local, store, _ = _router(ConnectionMode.NONE)

    result = await router.send_command(CommandNames.SOUND_ALARM)

    assert result == CommandResult.failed("no active connection")
    assert local.calls == []
    assert store.appended == []


@pytest.mark.asyncio
async def test_missing_value_rejected():
    router, local, _, _ = _router(ConnectionMode.LOCAL)

    result = await router.send_command(CommandNames.SET_VOLUME)

    assert result.error == "missing value"
    assert local.calls == []


@pytest.mark.asyncio
async def test_sound_alarm_follows_live_channel():
    router, local, store, state = _router(ConnectionMode.LOCAL)

    assert (await router.send_command("sound_alarm")).success
    assert local.calls == [("sound_alarm",)]
    assert store.appended == []

    state["mode"] = ConnectionMode.REMOTE
    assert (await router.send_command(CommandNames.SOUND_ALARM)).success
    assert local.calls == [("sound_alarm",)]
    assert store.appended[0][1]["action"] == "SOUND_ALARM"


@pytest.mark.asyncio
async def test_remote_set_volume_writes_pending_document():
    router, _, store, _ = _router(ConnectionMode.REMOTE)

    result = await router.send_command(CommandNames.SET_VOLUME, 0.5)

    assert result.success
    assert len(store.appended) == 1
    collection, document = store.appended[0]
    assert collection == "commands/BANTAY/pending"
    assert document["action"] == "SET_VOLUME"
    assert document["params"] == {"volume": 0.5}
    assert document["status"] == "pending"


@pytest.mark.asyncio
async def test_remote_write_failure_reported():
    store = FakeDocumentStore()
    store.fail_append = True
    router, _, _, _ = _router(ConnectionMode.REMOTE, store)

    result = await router.send_command(CommandNames.MOVE_ARMS)

    assert result == CommandResult.failed("cloud write failed")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "name, value, expected",
    [
        (CommandNames.PLAY_TRACK, 4, ("play_track", 4)),
        (CommandNames.NEXT_TRACK, None, ("next_track",)),
        (CommandNames.ROTATE_HEAD_RIGHT, None, ("rotate_head", "right")),
        (CommandNames.SET_SENSITIVITY, 2, ("set_sensitivity", 2)),
        (CommandNames.TOGGLE_GRAYSCALE, None, ("toggle_grayscale",)),
        (CommandNames.SET_SERVO_ANGLE, {"servo": "left", "angle": 30}, ("set_servo_angle", "left", 30)),
        (CommandNames.SET_SERVO_ANGLE, ("right", 120), ("set_servo_angle", "right", 120)),
    ],
)
async def test_local_command_table(name, value, expected):
    router, local, _, _ = _router(ConnectionMode.LOCAL)

    result = await router.send_command(name, value)

    assert result.success
    assert local.calls == [expected]


@pytest.mark.asyncio
async def test_camera_command_fails_while_socket_closed():
    router, local, _, _ = _router(ConnectionMode.LOCAL)
    local.socket_open = False

    result = await router.send_command(CommandNames.TOGGLE_DETECTION)

    assert result == CommandResult.failed("socket not connected")
    assert local.calls == [("toggle_detection",)]


@pytest.mark.asyncio
async def test_invalid_servo_value():
    router, local, _, _ = _router(ConnectionMode.LOCAL)

    result = await router.send_command(CommandNames.SET_SERVO_ANGLE, 45)

    assert result == CommandResult.failed("invalid value")
    assert local.calls == []


@pytest.mark.asyncio
async def test_stop_all_fans_out_locally_and_reports_partial_failure():
    router, local, _, _ = _router(ConnectionMode.LOCAL)
    local.fail_on = {"stop_audio"}

    result = await router.send_command(CommandNames.STOP_ALL)

    assert local.calls == [("stop_audio",), ("stop_movement",)]
    assert result.success is False
    assert result.error == "STOP_AUDIO: HTTP 500"


@pytest.mark.asyncio
async def test_stop_all_fans_out_remotely():
    router, _, store, _ = _router(ConnectionMode.REMOTE)

    result = await router.send_command(CommandNames.STOP_ALL)

    assert result.success
    assert [document["action"] for _, document in store.appended] == [
        "STOP_AUDIO",
        "STOP_MOVEMENT",
    ]


@pytest.mark.asyncio
async def test_transport_exception_becomes_failed_result():
    router, local, _, _ = _router(ConnectionMode.LOCAL)
    local.raise_on.add("move_arms")

    result = await router.send_command(CommandNames.MOVE_ARMS)

    assert result == CommandResult.failed("board went away")


def test_every_command_name_is_routable():
    names = {
        value
        for key, value in vars(CommandNames).items()
        if key.isupper() and isinstance(value, str)
    }

    assert names == set(KNOWN_COMMANDS)
