import json
from types import SimpleNamespace

import pytest


class FakeSocket:
    """Stands in for a server-side websocket connection."""

    def __init__(self, incoming=(), fail=False, path="/"):
        self.incoming = list(incoming)
        self.fail = fail
        self.sent = []
        self.closed = False
        self.remote_address = ("127.0.0.1", 50000)
        self.request = SimpleNamespace(path=path)

    async def send(self, raw):
        if self.fail:
            raise ConnectionError("socket is closing")
        self.sent.append(raw)

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for message in self.incoming:
            yield message

    async def close(self):
        self.closed = True

    def frames(self):
        return [json.loads(raw) for raw in self.sent]

    def kinds(self):
        return [frame["kind"] for frame in self.frames()]


@pytest.fixture
def fake_socket():
    return FakeSocket
