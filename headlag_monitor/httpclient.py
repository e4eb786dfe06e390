"""
Small urllib wrapper used by the token exchange, metadata checks and REST pollers.

Non-2xx responses are returned, not raised: callers classify status codes
themselves. Only failures to get any response raise TransportError.
"""

import http.client
import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from headlag_monitor.errors import TransportError

LOG = logging.getLogger("headlag_monitor.httpclient")

USER_AGENT = "headlag-monitor/1.0"
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36")
DEFAULT_TIMEOUT_S = 10


@dataclass
class HttpResult:
    status: int
    body: bytes
    elapsed_ms: float
    headers: Dict[str, str] = field(default_factory=dict)

    def json(self) -> object:
        return json.loads(self.body.decode("utf-8"))

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def with_query(url: str, params: Mapping[str, object]) -> str:
    return f"{url}?{urllib.parse.urlencode({k: str(v) for k, v in params.items()})}"


def http_request(
    url: str,
    method: str = "GET",
    headers: Optional[Mapping[str, str]] = None,
    json_body: Optional[object] = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> HttpResult:
    data = None
    hdrs = {"User-Agent": USER_AGENT, "Accept": "application/json"}
    if headers:
        hdrs.update(headers)
    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        hdrs.setdefault("Content-Type", "application/json")

    req = urllib.request.Request(url, data=data, headers=hdrs, method=method)
    t0 = time.monotonic()
    # URLError, timeouts, resets and TLS failures are OSErrors; garbled responses are HTTPExceptions
    try:
        try:
            with urllib.request.urlopen(req, timeout=timeout_s) as resp:
                body = resp.read()
                status = resp.status
                resp_headers = dict(resp.headers.items())
        except urllib.error.HTTPError as e:
            body = e.read() or b""
            status = e.code
            resp_headers = dict(e.headers.items()) if e.headers else {}
    except (http.client.HTTPException, OSError) as e:
        elapsed = (time.monotonic() - t0) * 1000.0
        LOG.debug("%s %s failed after %.0fms: %s", method, url, elapsed, e)
        raise TransportError(f"{method} {url} failed: {e}") from e

    elapsed = (time.monotonic() - t0) * 1000.0
    return HttpResult(status=status, body=body, elapsed_ms=elapsed, headers=resp_headers)


def classify_status(status_code: int) -> str:
    """Error label for the REST error counters; 0 means no response at all."""
    if status_code >= 500:
        return "server_error"
    if status_code >= 400:
        return "client_error"
    if status_code == 0:
        return "timeout_error"
    return "request_error"
