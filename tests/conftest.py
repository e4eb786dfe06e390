import json
import threading

import pytest
from prometheus_client import CollectorRegistry

from headlag_monitor.metrics import MetricsSink


class FakeConnection:
    """Stands in for a websockets sync connection.

    `frames` are returned by recv() in order: dicts/lists are JSON-encoded,
    strings are returned as-is and exceptions are raised. Once the script is
    exhausted recv() sets `cancel` (when given) and times out, which ends the
    receive loop cleanly.
    """

    def __init__(self, frames=(), cancel=None):
        self.incoming = list(frames)
        self.sent = []
        self.closed = False
        self.cancel = cancel

    def send(self, message):
        self.sent.append(message)

    def recv(self, timeout=None):
        if not self.incoming:
            if self.cancel is not None:
                self.cancel.set()
            raise TimeoutError
        item = self.incoming.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, (dict, list)):
            return json.dumps(item)
        return item

    def close(self):
        self.closed = True

    def sent_json(self):
        return [json.loads(m) for m in self.sent]


class FakeConnector:
    def __init__(self, conn):
        self.conn = conn
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if isinstance(self.conn, BaseException):
            raise self.conn
        return self.conn


class RecordingDispatcher:
    def __init__(self):
        self.offered = []

    def offer(self, request):
        self.offered.append(request)
        return True


class FakeTokenCache:
    def __init__(self, token="jwt-token"):
        self.token = token
        self.invalidations = 0
        self.calls = 0

    def get_token(self, session_credential):
        self.calls += 1
        return self.token

    def invalidate(self):
        self.invalidations += 1


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def sink(registry):
    return MetricsSink(registry=registry)


@pytest.fixture
def cancel():
    return threading.Event()
