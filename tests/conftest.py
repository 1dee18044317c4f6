from __future__ import annotations

import asyncio
import json
import socket

import pytest
import pytest_asyncio
from websockets.asyncio.server import serve

from courier.errors import DeliveryError
from courier.memory.claims import ClaimCoordinator
from courier.memory.inbox import MailboxStore
from courier.memory.records import Request
from courier.memory.responses import ResponseStore


@pytest.fixture
def store(tmp_path):
    return MailboxStore(tmp_path / "data" / ".pending")


@pytest.fixture
def claims(store):
    return ClaimCoordinator(store)


@pytest.fixture
def responses(tmp_path):
    return ResponseStore(tmp_path / "data" / ".responses", source="worker")


@pytest.fixture
def make_request():
    def _make(request_id, timestamp=1000, content="hi", agent_id="unified", metadata=None):
        return Request(
            id=request_id,
            content=content,
            timestamp=timestamp,
            agent_id=agent_id,
            metadata=metadata or {},
        )
    return _make


@pytest.fixture
def closed_url():
    """A ws:// URL nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    return f"ws://127.0.0.1:{port}"


class Relay:
    """In-process relay hub that records every frame it receives."""

    def __init__(self, ack=False):
        self.ack = ack
        self.frames = []
        self.received = asyncio.Event()
        self.server = None
        self.url = None

    async def handler(self, connection):
        async for message in connection:
            frame = json.loads(message)
            self.frames.append(frame)
            self.received.set()
            if self.ack:
                await connection.send(json.dumps({"type": "ack", "requestId": frame.get("requestId")}))

    async def start(self):
        self.server = await serve(self.handler, "127.0.0.1", 0)
        port = self.server.sockets[0].getsockname()[1]
        self.url = f"ws://127.0.0.1:{port}"
        return self

    async def wait_for_frames(self, count=1, timeout=3.0):
        async def _wait():
            while len(self.frames) < count:
                self.received.clear()
                await self.received.wait()
        await asyncio.wait_for(_wait(), timeout)
        # give a stray duplicate a chance to show up
        await asyncio.sleep(0.05)
        return self.frames

    async def close(self):
        self.server.close()
        await self.server.wait_closed()


@pytest_asyncio.fixture
async def relay():
    hub = await Relay().start()
    yield hub
    await hub.close()


@pytest_asyncio.fixture
async def acking_relay():
    hub = await Relay(ack=True).start()
    yield hub
    await hub.close()


class RecordingChannel:
    """Stand-in delivery channel; fails the first `failures` calls."""

    def __init__(self, failures=0):
        self.failures = failures
        self.frames = []
        self.calls = 0

    async def deliver(self, frame):
        self.calls += 1
        if self.calls <= self.failures:
            raise DeliveryError(f"simulated failure {self.calls}")
        self.frames.append(frame)


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def flaky_channel():
    return RecordingChannel(failures=1)


@pytest.fixture
def dead_channel():
    return RecordingChannel(failures=1000)
