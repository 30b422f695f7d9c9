"""
Fixtures e fakes compartilhados pelos testes do relay.

FakeClientSocket e FakeUpstreamSocket imitam a superfície usada de
websockets.asyncio (send, close, state, iteração assíncrona).
"""

import asyncio
import json
import os
import sys

import pytest
from prometheus_client import CollectorRegistry
from websockets.exceptions import ConnectionClosedOK
from websockets.protocol import State

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from relay.lifecycle import SessionLifecycle
from relay.metrics import RelayMetrics
from relay.router import MessageRouter
from relay.session_registry import SessionRegistry
from relay.upstream import UpstreamConnector

_CLOSE = object()


class FakeClientSocket:
    """Socket do cliente: guarda tudo que foi enviado."""

    def __init__(self):
        self.state = State.OPEN
        self.sent = []
        self.close_calls = []
        self.remote_address = ("127.0.0.1", 50000)

    async def send(self, data):
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

    async def close(self, code=1000, reason=""):
        self.close_calls.append((code, reason))
        self.state = State.CLOSED

    @property
    def messages(self):
        return [json.loads(m) for m in self.sent]

    @property
    def types(self):
        return [m["type"] for m in self.messages]


class FakeUpstreamSocket:
    """Socket upstream: frames injetados via feed(), iteração até close()."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

    def feed(self, frame):
        self._incoming.put_nowait(frame)

    def fail(self, error):
        self._incoming.put_nowait(error)

    async def close(self, code=1000, reason=""):
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._incoming.get()
        if frame is _CLOSE:
            raise StopAsyncIteration
        if isinstance(frame, BaseException):
            self.closed = True
            raise frame
        return frame


class FakeConnect:
    """Substitui websockets.asyncio.client.connect."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []
        self.sockets = []

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        socket = FakeUpstreamSocket()
        self.sockets.append(socket)
        return socket

    @property
    def socket(self):
        return self.sockets[-1]


async def wait_until(predicate, timeout=1.0):
    """Cede o event loop até a condição ser verdadeira."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def metrics():
    return RelayMetrics(registry=CollectorRegistry())


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def fake_connect():
    return FakeConnect()


@pytest.fixture
def connector(fake_connect, metrics):
    return UpstreamConnector(
        api_key="test-api-key",
        base_url="wss://upstream.test/v1/convai/conversation",
        connect_fn=fake_connect,
        metrics=metrics,
    )


@pytest.fixture
def lifecycle(registry, connector, metrics):
    return SessionLifecycle(registry, connector, sweep_interval=60, idle_timeout=300, metrics=metrics)


@pytest.fixture
def router(registry, connector, lifecycle, metrics):
    return MessageRouter(registry, connector, lifecycle, metrics=metrics)


@pytest.fixture
def client():
    return FakeClientSocket()


@pytest.fixture
def session(registry, client, metrics):
    metrics.session_started()
    return registry.create(client, session_id="session-1")
