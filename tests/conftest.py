import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosedError

from studenthub_msg.relay import create_app
from studenthub_msg.store import ConversationStore

_CLOSED = object()


class FakeSocket:
    """Scripted stand-in for a websockets client connection."""

    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.close_code = None
        self.close_reason = None

    @property
    def closed(self):
        return self.close_code is not None

    @property
    def envelopes(self):
        return [json.loads(raw) for raw in self.sent]

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedError(None, None)
        self.sent.append(data)

    def feed(self, envelope):
        self.incoming.put_nowait(envelope if isinstance(envelope, str) else json.dumps(envelope))

    def drop(self, code=1006):
        """Simulate the server side going away."""
        self.close_code = code
        self.incoming.put_nowait(_CLOSED)

    async def close(self, code=1000, reason=""):
        if not self.closed:
            self.close_code = code
            self.close_reason = reason
            self.incoming.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Replaces websockets.connect; hands out sockets or raises, in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("connection refused")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


async def eventually(predicate, timeout=2.0):
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def store():
    return ConversationStore()


@pytest.fixture
def conversation(store):
    return store.find_or_create_conversation("u1", "u2")


@pytest.fixture
def app(store):
    return create_app(store)


@pytest.fixture
def sleeper():
    return SleepRecorder()
