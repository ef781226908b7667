"""Fake bridge endpoints shared by the test modules.

``FakeWebSocket`` stands in for one websockets client connection to an app;
``FakeNetwork`` replaces ``websockets.connect`` and hands out a fresh
``FakeWebSocket`` for every URL that has a fake app listening on it.
"""

import asyncio
import json
from unittest.mock import patch

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

BACKEND_STATE = "plugin:mcp-bridge|get_backend_state"

_EOF = object()
_DROP = object()


def ok(value=None):
    return {"result": value}


def err(message):
    return {"error": message}


async def until(condition, rounds=200):
    """Yield to the event loop until condition() holds."""
    for _ in range(rounds):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class FakeWebSocket:
    """Simulates the plugin side of one connection.

    replies maps a command name to a callable taking the request args and
    returning a response body ({"result": ...} / {"error": ...}) or None to
    stay silent. identifier=None simulates an older plugin without
    get_backend_state; handshake=False never answers the handshake.
    """

    def __init__(self, replies=None, identifier="com.example.app", handshake=True):
        self.sent = []
        self.replies = dict(replies or {})
        self.identifier = identifier
        self.handshake = handshake
        self.closed = False
        self._incoming = asyncio.Queue()

    @property
    def commands(self):
        return [msg["command"] for msg in self.sent if not self._is_handshake(msg)]

    def requests(self, command):
        return [msg for msg in self.sent if msg["command"] == command]

    @staticmethod
    def _is_handshake(msg):
        return msg["command"] == "invoke_tauri" and msg["args"].get("command") == BACKEND_STATE

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        msg = json.loads(data)
        self.sent.append(msg)
        body = None
        if self._is_handshake(msg):
            if not self.handshake:
                return
            if self.identifier is None:
                body = err(f"Unsupported Tauri command: {BACKEND_STATE}")
            else:
                body = ok({"app": {"identifier": self.identifier, "name": "Example"}})
        elif msg["command"] in self.replies:
            body = self.replies[msg["command"]](msg["args"])
        if body is not None:
            self.push({"id": msg["id"], **body})

    def push(self, frame):
        self._incoming.put_nowait(json.dumps(frame) if isinstance(frame, dict) else frame)

    def drop(self):
        """Simulate the app going away without a close handshake."""
        self._incoming.put_nowait(_DROP)

    async def close(self):
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_EOF)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _EOF:
            raise StopAsyncIteration
        if item is _DROP:
            self.closed = True
            raise ConnectionClosedError(None, None)
        return item


class FakeNetwork:
    """Routes ws:// URLs to fake apps; any other URL refuses the connection."""

    def __init__(self):
        self.apps = {}
        self.sockets = {}
        self.attempts = []
        self.connect_delay = 0.0

    def listen(self, port, host="localhost", **options):
        url = f"ws://{host}:{port}"
        self.apps[url] = options
        self.sockets.setdefault(url, [])
        return url

    def shutdown(self, port, host="localhost"):
        self.apps.pop(f"ws://{host}:{port}", None)

    def socket(self, port, host="localhost", index=-1):
        return self.sockets[f"ws://{host}:{port}"][index]

    async def connect(self, url, **kwargs):
        self.attempts.append(url)
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if url not in self.apps:
            raise ConnectionRefusedError(111, f"Connect call failed {url}")
        ws = FakeWebSocket(**self.apps[url])
        self.sockets[url].append(ws)
        return ws


@pytest.fixture
def network():
    net = FakeNetwork()
    with patch("websockets.connect", new=net.connect):
        yield net
