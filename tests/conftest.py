from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.frames import Close
from websockets.protocol import State

from browser_relay.errors import TargetNotFound
from browser_relay.schemas import TargetInfo
from browser_relay.session.controller import TargetSessionController
from browser_relay.session.events import EventBus
from browser_relay.store import MemoryStore


class FakeSession:
    def __init__(self, target_id: int, host: "FakeHost") -> None:
        self.target_id = target_id
        self._host = host
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.detached = False

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self.sent.append((method, params or {}))
        if method == "Runtime.evaluate":
            return {"result": {"type": "object", "objectId": "document-1"}}
        if method == "Runtime.callFunctionOn":
            if self._host.script_exception:
                return {"exceptionDetails": {"text": "Uncaught", "exception": {"description": self._host.script_exception}}}
            return {"result": {"type": "boolean", "value": self._host.element_found}}
        if method == "Accessibility.getFullAXTree":
            return {"nodes": [{"nodeId": "1", "role": {"value": "RootWebArea"}}]}
        return {}

    async def detach(self) -> None:
        self.detached = True
        if self._host.fail_detach:
            raise RuntimeError("Debugger is not attached to the tab")


class FakeHost:
    def __init__(self) -> None:
        self.targets: dict[int, TargetInfo] = {}
        self.next_id = 100
        self.attach_calls: list[tuple[int, str]] = []
        self.sessions: list[FakeSession] = []
        self.updates: list[tuple[int, str | None, bool]] = []
        self.focused: list[int] = []
        self.notifications: list[tuple[int, dict[str, Any]]] = []
        self.element_found = True
        self.script_exception: str | None = None
        self.fail_detach = False

    def add_target(self, url: str, title: str = "") -> TargetInfo:
        target = TargetInfo(id=self.next_id, url=url, title=title)
        self.targets[target.id] = target
        self.next_id += 1
        return target

    async def create_target(self, url: str, active: bool = True) -> TargetInfo:
        target = self.add_target(url)
        target.active = active
        return target

    async def update_target(self, target_id: int, url: str | None = None, active: bool = False) -> TargetInfo:
        if target_id not in self.targets:
            raise TargetNotFound(target_id)
        self.updates.append((target_id, url, active))
        target = self.targets[target_id]
        if url:
            target.url = url
        if active:
            for other in self.targets.values():
                other.active = other.id == target_id
        return target

    async def get_target(self, target_id: int) -> TargetInfo | None:
        return self.targets.get(target_id)

    async def query_targets(self) -> list[TargetInfo]:
        return list(self.targets.values())

    async def focus_window(self, target_id: int) -> None:
        self.focused.append(target_id)

    async def capture_visible(self, target_id: int) -> str:
        return "data:image/png;base64,iVBORw0KGgo="

    async def attach(self, target_id: int, protocol_version: str) -> FakeSession:
        self.attach_calls.append((target_id, protocol_version))
        session = FakeSession(target_id, self)
        self.sessions.append(session)
        return session

    async def notify_target(self, target_id: int, message: dict[str, Any]) -> None:
        self.notifications.append((target_id, message))


class FakeWebSocket:
    def __init__(self) -> None:
        self.state = State.OPEN
        self.sent: list[str] = []
        self.close_calls: list[tuple[int, str]] = []
        self.incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.state is not State.OPEN:
            raise ConnectionClosed(None, None)
        self.sent.append(message)

    async def recv(self) -> str:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            if isinstance(item, ConnectionClosed):
                self.state = State.CLOSED
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls.append((code, reason))
        if self.state is State.OPEN:
            self.state = State.CLOSED
            self.incoming.put_nowait(ConnectionClosed(Close(code, reason), Close(code, reason)))

    def feed(self, frame: dict[str, Any] | str) -> None:
        self.incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self, code: int | None = None) -> None:
        """Simulate the server going away (no close frame when code is None)."""
        rcvd = Close(code, "") if code is not None else None
        self.incoming.put_nowait(ConnectionClosed(rcvd, None))

    def fail(self, error: Exception) -> None:
        """Make the next recv() raise an error other than ConnectionClosed."""
        self.incoming.put_nowait(error)

    def frames(self) -> list[dict[str, Any]]:
        return [json.loads(message) for message in self.sent]


class FakeConnector:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.sockets: list[FakeWebSocket] = []
        self.failures = 0

    async def __call__(self, url: str) -> FakeWebSocket:
        self.calls.append(url)
        if self.failures:
            self.failures -= 1
            raise OSError("Connection refused")
        websocket = FakeWebSocket()
        self.sockets.append(websocket)
        return websocket


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def controller(host: FakeHost, events: EventBus) -> TargetSessionController:
    return TargetSessionController(host, events)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
