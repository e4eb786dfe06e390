"""
Error taxonomy for the probe.

Per-connection errors (transport, protocol, auth, rate limit) end the current
stream attempt and are handled by the reconnection supervisor. PayloadError is
per-frame: the receive loop skips the frame and keeps the connection.
"""

from typing import Optional


class MonitorError(Exception):
    """Base class for every error raised by the probe core."""


class TransportError(MonitorError):
    """Dial, read or write failure, or a connection closed by the peer."""


class ProtocolError(MonitorError):
    """Bad handshake ack, rejected subscription, or a terminated stream."""


class AuthError(MonitorError):
    """The issuer or a vendor rejected our credential (401/403 or equivalent)."""


class RateLimitedError(MonitorError):
    """The remote side asked us to slow down (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PayloadError(MonitorError):
    """A single frame could not be turned into events."""


def error_kind(exc: BaseException) -> str:
    """Short label used for the error counter."""
    if isinstance(exc, AuthError):
        return "auth"
    if isinstance(exc, RateLimitedError):
        return "rate_limit"
    if isinstance(exc, ProtocolError):
        return "protocol"
    if isinstance(exc, PayloadError):
        return "payload"
    return "connection"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None
