"""
Triggered check dispatcher.

Stream threads offer CheckRequests; a single worker thread drains them, waits
a short pre-check delay so the provider has time to index the new token, then
runs every registered check. offer() never blocks a stream: when the queue is
full the new request is dropped and counted.
"""

import logging
import queue
import threading
from typing import Callable, Iterable, List, Optional

from headlag_monitor.models import CheckRequest

LOG = logging.getLogger("headlag_monitor.dispatcher")

DEFAULT_CAPACITY = 500
DEFAULT_PRE_CHECK_DELAY_S = 2.0

Check = Callable[[CheckRequest], None]


class CheckDispatcher:
    def __init__(
        self,
        sink,
        checks: Iterable[Check] = (),
        capacity: int = DEFAULT_CAPACITY,
        pre_check_delay_s: float = DEFAULT_PRE_CHECK_DELAY_S,
        poll_interval_s: float = 1.0,
        on_idle: Optional[Callable[[], None]] = None,
        on_stop: Optional[Callable[[], None]] = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.sink = sink
        self.checks: List[Check] = list(checks)
        self.capacity = capacity
        self.pre_check_delay_s = pre_check_delay_s
        self.poll_interval_s = poll_interval_s
        self.on_idle = on_idle
        self.on_stop = on_stop

        self._queue: "queue.Queue[CheckRequest]" = queue.Queue(maxsize=capacity)
        self._counter_lock = threading.Lock()
        self.dropped = 0
        self.processed = 0
        self.failed = 0

    def add_check(self, check: Check) -> None:
        self.checks.append(check)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, request: CheckRequest) -> bool:
        """Enqueue without blocking. Returns False when the request was dropped."""
        try:
            self._queue.put_nowait(request)
            return True
        except queue.Full:
            with self._counter_lock:
                self.dropped += 1
            self.sink.record_dispatch_drop()
            LOG.warning("[checks] Queue full, skipping %s from %s", request.address, request.source or "?")
            return False

    def start(self, cancel: threading.Event) -> threading.Thread:
        t = threading.Thread(target=self.run, args=(cancel,), name="check-dispatcher", daemon=True)
        t.start()
        return t

    def run(self, cancel: threading.Event) -> None:
        LOG.info("[checks] worker started (%d check(s), capacity %d)", len(self.checks), self.capacity)
        try:
            while not cancel.is_set():
                try:
                    request = self._queue.get(timeout=self.poll_interval_s)
                except queue.Empty:
                    self._idle()
                    continue

                # let the provider index the token first; shutdown interrupts the wait
                if self.pre_check_delay_s and cancel.wait(self.pre_check_delay_s):
                    break
                self.process(request)
                self._idle()
        finally:
            if self.on_stop is not None:
                self.on_stop()
            LOG.info("[checks] worker stopped: processed=%d failed=%d dropped=%d",
                     self.processed, self.failed, self.dropped)

    def process(self, request: CheckRequest) -> None:
        for check in self.checks:
            try:
                check(request)
            except Exception as e:
                self.failed += 1
                LOG.warning("[checks] %s failed for %s: %s",
                            getattr(check, "name", type(check).__name__), request.address, e)
        self.processed += 1

    def _idle(self) -> None:
        if self.on_idle is None:
            return
        try:
            self.on_idle()
        except Exception as e:
            LOG.warning("[checks] periodic hook failed: %s", e)
