import asyncio
import copy
import json
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web

from bantaybot_link.core.models import DeviceAddress
from bantaybot_link.core.observers import Subscription


class FakeBoard:
    """aiohttp app standing in for both BantayBot controllers."""

    def __init__(self) -> None:
        self.status_payload: Any = {"soilHumidity": 55, "motion": False, "currentTrack": 1}
        self.status_code = 200
        self.status_delay = 0.0
        self.accept_sockets = True
        self.handshakes = 0
        self.requests: List[tuple[str, Dict[str, str]]] = []
        self.frames: List[dict] = []
        self.commands: List[dict] = []
        self.sockets: List[web.WebSocketResponse] = []
        self.host = "127.0.0.1"
        self.port = 0
        self._runner: Optional[web.AppRunner] = None

    def address(self, path: str = "/status") -> DeviceAddress:
        return DeviceAddress(self.host, self.port, path)

    async def start(self, port: int) -> None:
        app = web.Application()
        app.router.add_get("/status", self._status)
        app.router.add_get("/stream", self._stream)
        app.router.add_get("/ws", self._ws)
        for action in ("/play", "/volume", "/move-arms", "/stop"):
            app.router.add_get(action, self._action)
        app.router.add_post("/command", self._command)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, port)
        await site.start()
        self.port = port

    async def stop(self) -> None:
        await self.close_sockets()
        if self._runner is not None:
            await self._runner.cleanup()

    async def push(self, frame: Any) -> None:
        for ws in list(self.sockets):
            if isinstance(frame, str):
                await ws.send_str(frame)
            else:
                await ws.send_json(frame)

    async def close_sockets(self) -> None:
        for ws in list(self.sockets):
            await ws.close()
        self.sockets.clear()

    def paths(self) -> List[str]:
        return [path for path, _ in self.requests]

    async def _status(self, request: web.Request) -> web.StreamResponse:
        self.requests.append((request.path, dict(request.query)))
        if self.status_delay:
            await asyncio.sleep(self.status_delay)
        if self.status_code != 200:
            return web.Response(status=self.status_code, text="error")
        if isinstance(self.status_payload, str):
            return web.Response(text=self.status_payload, content_type="application/json")
        return web.json_response(copy.deepcopy(self.status_payload))

    async def _stream(self, request: web.Request) -> web.StreamResponse:
        self.requests.append((request.path, dict(request.query)))
        return web.Response(body=b"--frame", content_type="multipart/x-mixed-replace")

    async def _action(self, request: web.Request) -> web.StreamResponse:
        self.requests.append((request.path, dict(request.query)))
        return web.Response(text="OK")

    async def _command(self, request: web.Request) -> web.StreamResponse:
        self.requests.append((request.path, dict(request.query)))
        if self.status_code != 200:
            return web.Response(status=self.status_code, text="error")
        self.commands.append(await request.json())
        return web.Response(text="OK")

    async def _ws(self, request: web.Request) -> web.StreamResponse:
        self.handshakes += 1
        if not self.accept_sockets:
            return web.Response(status=503, text="busy")

        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        async for message in ws:
            if message.type == web.WSMsgType.TEXT:
                self.frames.append(json.loads(message.data))
        if ws in self.sockets:
            self.sockets.remove(ws)
        return ws


@pytest_asyncio.fixture
async def board(unused_tcp_port_factory):
    server = FakeBoard()
    await server.start(unused_tcp_port_factory())
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def camera_board(unused_tcp_port_factory):
    server = FakeBoard()
    await server.start(unused_tcp_port_factory())
    yield server
    await server.stop()


class FakeDocumentStore:
    """In-memory stand-in for the cloud document store."""

    def __init__(self, *, fail_connect: bool = False, fail_read: bool = False) -> None:
        self.fail_connect = fail_connect
        self.fail_read = fail_read
        self.fail_append = False
        self.documents: Dict[str, dict] = {}
        self.appended: List[tuple[str, dict]] = []
        self.watchers: List[tuple[str, Any]] = []
        self.connect_calls = 0
        self.close_calls = 0

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise ConnectionError("broker unreachable")

    async def close(self) -> None:
        self.close_calls += 1
        self.watchers.clear()

    async def read(self, path: str, timeout: float = 5.0) -> Optional[dict]:
        if self.fail_read:
            raise ConnectionError("read failed")
        return self.documents.get(path)

    async def write(self, path: str, data) -> None:
        self.documents[path] = dict(data)

    async def append(self, collection: str, data) -> str:
        if self.fail_append:
            raise PermissionError("permission denied")
        document_id = f"doc{len(self.appended) + 1}"
        self.appended.append((collection, dict(data)))
        self.documents[f"{collection}/{document_id}"] = dict(data)
        return document_id

    def subscribe(self, path: str, callback) -> Subscription:
        entry = (path, callback)
        self.watchers.append(entry)

        def _remove() -> None:
            if entry in self.watchers:
                self.watchers.remove(entry)

        return Subscription(_remove)

    async def push(self, path: str, document: Optional[dict]) -> None:
        if document is not None:
            self.documents[path] = document
        for watched, callback in list(self.watchers):
            if watched == path:
                result = callback(document)
                if asyncio.iscoroutine(result):
                    await result


@pytest.fixture
def document_store():
    return FakeDocumentStore()


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it is true or fail the test."""

    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(interval)
