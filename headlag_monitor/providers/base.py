"""
Common control flow for every provider stream.

A vendor subclass supplies the wire details:
    open_transport()   -> dial with the vendor's url/headers/subprotocols
    handshake(conn)    -> init/ack exchange (default: none)
    subscribe(conn)    -> one subscription per instrument, all-or-nothing
    envelope(message)  -> (frame type, body) for one decoded JSON frame
    parse_frame(body)  -> NormalizedEvents from a data frame

run() walks DISCONNECTED -> CONNECTING -> HANDSHAKING -> SUBSCRIBING ->
STREAMING and returns only when the cancel event is set. Any other exit is an
exception for the ReconnectSupervisor to classify.
"""

import enum
import json
import logging
import threading
import time
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus, InvalidURI
from websockets.sync.client import connect as ws_connect

from headlag_monitor.errors import (AuthError, MonitorError, PayloadError, ProtocolError, RateLimitedError,
                                    TransportError, error_kind, parse_retry_after)
from headlag_monitor.lag import DEFAULT_LAG_POLICY, LagPolicy, compute_lag
from headlag_monitor.models import CheckRequest, LagMeasurement, MonitoredInstrument, NormalizedEvent, now_ms

LOG = logging.getLogger("headlag_monitor.stream")


class StreamState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"


class FrameType(enum.Enum):
    PING = "ping"
    DATA = "data"
    ERROR = "error"
    CONTROL = "control"  # acks, welcome, subscription confirmations
    UNKNOWN = "unknown"


Envelope = Tuple[FrameType, Any]

# raised by vendor hooks reading a frame of unexpected shape
MALFORMED_FRAME_ERRORS = (TypeError, ValueError, KeyError, AttributeError, IndexError)


def handshake_error(exc: InvalidStatus) -> MonitorError:
    status = exc.response.status_code
    if status in (401, 403):
        return AuthError(f"handshake rejected ({status})")
    if status == 429:
        retry_after = parse_retry_after(exc.response.headers.get("Retry-After"))
        return RateLimitedError("handshake rate limited (429)", retry_after=retry_after)
    return TransportError(f"handshake failed with HTTP {status}")


def closed_error(name: str, exc: ConnectionClosed) -> MonitorError:
    # graphql-transport-ws closes with 4401/4403 on bad credentials, 4429 when throttled
    code = exc.rcvd.code if exc.rcvd is not None else None
    if code in (4401, 4403):
        return AuthError(f"[{name}] connection closed: unauthorized ({code})")
    if code == 4429:
        return RateLimitedError(f"[{name}] connection closed: rate limited ({code})")
    return TransportError(f"[{name}] connection closed: {exc}")


class StreamClient:
    """Base class; see module docstring for the hooks a vendor overrides."""

    name = "stream"
    url = ""
    subprotocols: Optional[Sequence[str]] = None
    origin: Optional[str] = None

    open_timeout_s = 10.0
    ack_timeout_s = 10.0
    recv_timeout_s = 1.0  # how often the receive loop re-checks the cancel event
    idle_timeout_s = 60.0  # silence longer than this is a dead connection
    keepalive_interval_s: Optional[float] = None
    subscribe_pause_s = 0.0
    slow_lag_ms = 5000.0

    def __init__(
        self,
        sink,
        instruments: Iterable[MonitoredInstrument] = (),
        lag_policy: LagPolicy = DEFAULT_LAG_POLICY,
        dispatcher=None,
        connector: Optional[Callable[..., Any]] = None,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self.sink = sink
        self.instruments: List[MonitoredInstrument] = list(instruments)
        self.lag_policy = lag_policy
        self.dispatcher = dispatcher
        self._connector = connector or ws_connect
        self._clock_ms = clock_ms
        self._state = StreamState.DISCONNECTED
        self._state_lock = threading.Lock()
        self.state_history: List[StreamState] = []
        self.frames_received = 0
        self.measurements = 0
        self.last_measurement: Optional[LagMeasurement] = None

    # ───── state ─────
    @property
    def state(self) -> StreamState:
        return self._state

    def _set_state(self, state: StreamState) -> None:
        with self._state_lock:
            self._state = state
            self.state_history.append(state)
        LOG.debug("[%s] state=%s", self.name, state.value)

    # ───── vendor hooks ─────
    def credentials(self) -> None:
        """Fetch whatever the connection needs before dialing. Raise AuthError when absent."""

    def headers(self) -> dict:
        return {}

    def open_transport(self):
        try:
            return self._connector(
                self.url,
                additional_headers=self.headers() or None,
                subprotocols=list(self.subprotocols) if self.subprotocols else None,
                origin=self.origin,
                open_timeout=self.open_timeout_s,
            )
        except InvalidStatus as e:
            raise handshake_error(e) from e
        except (InvalidURI, InvalidHandshake) as e:
            raise TransportError(f"dial {self.url} failed: {e}") from e
        except (OSError, TimeoutError) as e:
            raise TransportError(f"dial {self.url} failed: {e}") from e

    def handshake(self, conn) -> None:
        pass

    def subscribe(self, conn) -> None:
        raise NotImplementedError

    def envelope(self, message: Any) -> Envelope:
        raise NotImplementedError

    def parse_frame(self, body: Any) -> List[NormalizedEvent]:
        raise NotImplementedError

    def pong(self, body: Any) -> Optional[dict]:
        return None

    def keepalive_frame(self) -> Optional[dict]:
        return None

    def on_error_frame(self, body: Any) -> None:
        """Log a vendor error frame. Raise to end the connection when the stream is terminated."""
        LOG.warning("[%s] error frame: %s", self.name, body)
        self.sink.record_error(self.name, "all", "error_frame")

    def check_request(self, event: NormalizedEvent, received_at_ms: int) -> Optional[CheckRequest]:
        if not event.address:
            return None
        return CheckRequest(
            address=event.address,
            chain_id=event.chain_id,
            discovered_at_ms=received_at_ms,
            symbol=event.symbol,
            name=event.name,
            source=self.name,
        )

    # ───── plumbing shared by subclasses ─────
    def send_json(self, conn, message: dict) -> None:
        try:
            conn.send(json.dumps(message))
        except ConnectionClosed as e:
            raise TransportError(f"[{self.name}] send failed: connection closed") from e
        except OSError as e:
            raise TransportError(f"[{self.name}] send failed: {e}") from e

    def recv_json(self, conn, timeout_s: float) -> Any:
        """Blocking read used during handshakes; timeout is a protocol failure."""
        try:
            raw = conn.recv(timeout=timeout_s)
        except TimeoutError as e:
            raise ProtocolError(f"[{self.name}] no handshake reply within {timeout_s:.0f}s") from e
        except ConnectionClosed as e:
            raise closed_error(self.name, e) from e
        try:
            return json.loads(raw)
        except ValueError as e:
            raise ProtocolError(f"[{self.name}] unreadable handshake reply: {raw!r:.100}") from e

    # ───── main entry ─────
    def run(self, cancel: threading.Event, on_streaming: Optional[Callable[[], None]] = None) -> None:
        self._set_state(StreamState.CONNECTING)
        try:
            self.credentials()
            conn = self.open_transport()
        except BaseException:
            self._set_state(StreamState.DISCONNECTED)
            raise

        try:
            self._set_state(StreamState.HANDSHAKING)
            self.handshake(conn)

            self._set_state(StreamState.SUBSCRIBING)
            self.subscribe(conn)

            self._set_state(StreamState.STREAMING)
            LOG.info("[%s] streaming %d instrument(s)", self.name, len(self.instruments))
            if on_streaming is not None:
                on_streaming()

            self._receive_loop(conn, cancel)
        finally:
            try:
                conn.close()
            except Exception as e:
                LOG.debug("[%s] close failed: %s", self.name, e)
            self._set_state(StreamState.DISCONNECTED)

    def _receive_loop(self, conn, cancel: threading.Event) -> None:
        last_frame = time.monotonic()
        last_keepalive = last_frame

        while not cancel.is_set():
            if self.keepalive_interval_s is not None and time.monotonic() - last_keepalive >= self.keepalive_interval_s:
                frame = self.keepalive_frame()
                if frame is not None:
                    self.send_json(conn, frame)
                last_keepalive = time.monotonic()

            try:
                raw = conn.recv(timeout=self.recv_timeout_s)
            except TimeoutError:
                if time.monotonic() - last_frame > self.idle_timeout_s:
                    raise TransportError(f"[{self.name}] no frames for {self.idle_timeout_s:.0f}s")
                continue
            except ConnectionClosed as e:
                raise closed_error(self.name, e) from e

            received_at = self._clock_ms()
            last_frame = time.monotonic()
            self.frames_received += 1
            self.handle_frame(conn, raw, received_at)

    def handle_frame(self, conn, raw: Any, received_at_ms: int) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            LOG.debug("[%s] skipping non-JSON frame: %r", self.name, raw[:100] if raw else raw)
            return

        try:
            kind, body = self._frame_call(self.envelope, message)
        except PayloadError as e:
            self._skip_frame(e)
            return

        if kind is FrameType.PING:
            reply = self.pong(body)
            if reply is not None:
                self.send_json(conn, reply)
            return

        if kind is FrameType.ERROR:
            self.on_error_frame(body)
            return

        if kind is not FrameType.DATA:
            return

        try:
            events = self._frame_call(self.parse_frame, body)
        except PayloadError as e:
            self._skip_frame(e)
            return

        for event in events:
            self.process_event(event, received_at_ms)

    def _frame_call(self, hook: Callable[[Any], Any], arg: Any) -> Any:
        # wrong-shaped JSON skips the frame; Auth/Protocol errors still end the connection
        try:
            return hook(arg)
        except MALFORMED_FRAME_ERRORS as e:
            raise PayloadError(f"{type(e).__name__}: {e}") from e

    def _skip_frame(self, exc: PayloadError) -> None:
        LOG.debug("[%s] skipping malformed frame: %s", self.name, exc)
        self.sink.record_error(self.name, "all", error_kind(exc))

    def process_event(self, event: NormalizedEvent, received_at_ms: int) -> None:
        if not event.tx_id or not event.timestamp_ms:
            LOG.debug("[%s] dropping incomplete event on %s", self.name, event.chain)
            return

        lag = compute_lag(event.timestamp_ms, received_at_ms, self.lag_policy)
        if lag is not None:
            self.measurements += 1
            self.last_measurement = LagMeasurement(self.name, event.chain, lag, received_at_ms)
            if event.is_discovery:
                self.sink.record_discovery_latency(self.name, event.chain, lag)
                LOG.info("[%s][%s] new %s %s (%s) discovery lag=%.0fms",
                         self.name, event.chain, event.kind, event.address, event.symbol or "?", lag)
            else:
                self.sink.record_lag(self.name, event.chain, lag)
                log = LOG.info if lag > self.slow_lag_ms else LOG.debug
                log("[%s][%s] lag=%.2fs block=%s tx=%s", self.name, event.chain,
                    lag / 1000.0, event.block_number if event.block_number is not None else "-",
                    event.tx_id[:12])

        if event.block_number is not None:
            self.sink.record_block_number(self.name, event.chain, event.block_number)

        if event.first_sighting and self.dispatcher is not None:
            request = self.check_request(event, received_at_ms)
            if request is not None:
                self.dispatcher.offer(request)
