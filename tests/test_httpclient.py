import http.client
import io
import ssl
import urllib.error
import urllib.request

import pytest

from headlag_monitor import httpclient
from headlag_monitor.errors import TransportError
from headlag_monitor.httpclient import http_request, with_query


class FakeResponse:
    def __init__(self, body=b"{}", status=200, read_error=None):
        self.body = body
        self.status = status
        self.read_error = read_error
        self.headers = http.client.HTTPMessage()

    def read(self):
        if self.read_error is not None:
            raise self.read_error
        return self.body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def fake_urlopen(outcome):
    def urlopen(req, timeout=None):
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome
    return urlopen


def test_success(monkeypatch):
    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen(FakeResponse(b'{"ok": true}')))

    result = http_request("https://api.test/x")

    assert result.status == 200
    assert result.json() == {"ok": True}


def test_http_error_status_is_returned(monkeypatch):
    err = urllib.error.HTTPError("https://api.test/x", 503, "unavailable", http.client.HTTPMessage(),
                                 io.BytesIO(b"down"))
    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen(err))

    result = http_request("https://api.test/x")

    assert result.status == 503
    assert result.text() == "down"


@pytest.mark.parametrize("outcome", [
    urllib.error.URLError("no route"),
    TimeoutError("timed out"),
    ConnectionResetError("reset"),
    ssl.SSLError("handshake failure"),
    http.client.BadStatusLine("GARBAGE\r\n"),
    http.client.RemoteDisconnected("closed"),
    FakeResponse(read_error=http.client.IncompleteRead(b"par", 10)),
])
def test_broken_responses_raise_transport_error(monkeypatch, outcome):
    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen(outcome))

    with pytest.raises(TransportError):
        http_request("https://api.test/x")


def test_json_body_sets_content_type(monkeypatch):
    seen = {}

    def urlopen(req, timeout=None):
        seen["req"] = req
        return FakeResponse()

    monkeypatch.setattr(urllib.request, "urlopen", urlopen)
    http_request("https://api.test/x", method="POST", json_body={"a": 1})

    req = seen["req"]
    assert req.get_method() == "POST"
    assert req.data == b'{"a": 1}'
    assert req.get_header("Content-type") == "application/json"
    assert req.get_header("User-agent") == httpclient.USER_AGENT


def test_with_query():
    assert with_query("https://api.test/x", {"a": 1, "b": "c d"}) == "https://api.test/x?a=1&b=c+d"
