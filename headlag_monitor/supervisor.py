"""
Reconnection supervisor: keeps one StreamClient alive until shutdown.

    auth failure     -> token_cache.invalidate(), sleep auth_delay
    rate limited     -> sleep max(rate_limit_delay, Retry-After), backoff untouched
    anything else    -> sleep current backoff, then double it (capped)
    reached STREAMING -> backoff back to base
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from headlag_monitor.errors import AuthError, RateLimitedError, error_kind

LOG = logging.getLogger("headlag_monitor.supervisor")


@dataclass(frozen=True)
class BackoffPolicy:
    base: float = 5.0
    maximum: float = 60.0
    auth_delay: float = 30.0
    rate_limit_delay: float = 120.0

    def __post_init__(self) -> None:
        if self.base <= 0 or self.maximum < self.base:
            raise ValueError("backoff needs 0 < base <= maximum")
        if self.auth_delay < 0 or self.rate_limit_delay < 0:
            raise ValueError("delays must be >= 0")


class ReconnectSupervisor:
    def __init__(
        self,
        client,
        cancel: threading.Event,
        policy: BackoffPolicy = BackoffPolicy(),
        token_cache=None,
        sink=None,
        sleep: Optional[Callable[[float], bool]] = None,
    ) -> None:
        self.client = client
        self.cancel = cancel
        self.policy = policy
        self.token_cache = token_cache
        self.sink = sink if sink is not None else client.sink
        # returns True when cancelled during the wait, like Event.wait
        self._sleep = sleep or cancel.wait
        self.backoff = policy.base
        self.delays: List[float] = []
        self.attempts = 0

    @property
    def name(self) -> str:
        return self.client.name

    def _reset(self) -> None:
        if self.backoff != self.policy.base:
            LOG.debug("[%s] backoff reset to %.0fs", self.name, self.policy.base)
        self.backoff = self.policy.base

    def next_delay(self, exc: BaseException) -> float:
        """Delay before the next attempt after `exc`; advances the exponential counter."""
        if isinstance(exc, AuthError):
            if self.token_cache is not None:
                self.token_cache.invalidate()
            return self.policy.auth_delay

        if isinstance(exc, RateLimitedError):
            return max(self.policy.rate_limit_delay, exc.retry_after or 0)

        delay = self.backoff
        self.backoff = min(self.backoff * 2, self.policy.maximum)
        return delay

    def run(self) -> None:
        LOG.info("[%s] supervisor started", self.name)
        while not self.cancel.is_set():
            self.attempts += 1
            try:
                self.client.run(self.cancel, on_streaming=self._reset)
            except Exception as e:  # MonitorError, plus anything the client did not wrap
                err = e
            else:
                self._reset()
                break

            kind = error_kind(err)
            self.sink.record_error(self.name, "all", kind)
            delay = self.next_delay(err)
            self.delays.append(delay)

            if isinstance(err, AuthError):
                LOG.error("[%s] Authentication failed: %s. Retrying in %.0fs...", self.name, err, delay)
            elif isinstance(err, RateLimitedError):
                LOG.warning("[%s] Rate limited: %s. Waiting %.0fs...", self.name, err, delay)
            else:
                LOG.warning("[%s] Connection error: %s. Reconnecting in %.0fs...", self.name, err, delay)

            if self._sleep(delay):
                break

        LOG.info("[%s] supervisor stopped after %d attempt(s)", self.name, self.attempts)
