"""
GeckoTerminal swap feed over ActionCable (Rails pub/sub framing).

No credential; the cable only checks Origin. The server greets with
{"type": "welcome"}, pings every few seconds and wraps channel payloads as
{"identifier": "<json channel id>", "message": {...}}. block_timestamp is ms.
"""

import json
import logging
import time
from typing import Any, List

from headlag_monitor.errors import PayloadError, ProtocolError
from headlag_monitor.models import KIND_SWAP, NormalizedEvent
from headlag_monitor.providers.base import Envelope, FrameType, StreamClient

LOG = logging.getLogger("headlag_monitor.providers.geckoterminal")

GECKO_WS_URL = "wss://cables.geckoterminal.com/cable"
GECKO_ORIGIN = "https://www.geckoterminal.com"


def channel_identifier(pool_id: str) -> str:
    return json.dumps({"channel": "SwapChannel", "pool_id": pool_id}, separators=(",", ":"))


class GeckoTerminalStream(StreamClient):
    name = "geckoterminal"
    url = GECKO_WS_URL
    origin = GECKO_ORIGIN
    subscribe_pause_s = 0.1
    slow_lag_ms = 10000.0

    def handshake(self, conn) -> None:
        welcome = self.recv_json(conn, self.ack_timeout_s)
        kind = welcome.get("type") if isinstance(welcome, dict) else None
        if kind != "welcome":
            raise ProtocolError(f"[geckoterminal] expected welcome, got {kind!r}")

    def subscribe(self, conn) -> None:
        for inst in self.instruments:
            self.send_json(conn, {"command": "subscribe",
                                  "identifier": channel_identifier(inst.address)})
            if self.subscribe_pause_s:
                time.sleep(self.subscribe_pause_s)
        LOG.info("[geckoterminal] Subscribed to %d pools", len(self.instruments))

    def envelope(self, message: Any) -> Envelope:
        if not isinstance(message, dict):
            return FrameType.UNKNOWN, message
        kind = message.get("type")
        if kind == "ping":
            return FrameType.PING, message
        if kind == "reject_subscription":
            return FrameType.ERROR, message
        if kind == "disconnect":
            raise ProtocolError(f"[geckoterminal] server disconnect: {message.get('reason')}")
        if kind in ("welcome", "confirm_subscription"):
            return FrameType.CONTROL, message
        if message.get("message") is not None:
            return FrameType.DATA, message
        return FrameType.UNKNOWN, message

    def pong(self, body: Any) -> dict:
        return {"type": "pong"}

    def parse_frame(self, body: Any) -> List[NormalizedEvent]:
        message = body.get("message")
        if not isinstance(message, dict) or message.get("type") != "newSwap":
            return []
        try:
            channel = json.loads(body.get("identifier") or "")
        except ValueError as e:
            raise PayloadError(f"bad channel identifier {body.get('identifier')!r}") from e

        pool_id = str(channel.get("pool_id") or "") if isinstance(channel, dict) else ""
        inst = next((i for i in self.instruments if i.address == pool_id), None)
        if inst is None:
            return []

        data = message.get("data")
        if not isinstance(data, dict):
            raise PayloadError("newSwap without data")
        block_ts = data.get("block_timestamp")
        if not isinstance(block_ts, (int, float)) or block_ts <= 0:
            return []
        return [NormalizedEvent(
            chain=inst.chain,
            timestamp_ms=int(block_ts),
            tx_id=str(data.get("tx_hash") or ""),
            kind=KIND_SWAP,
            address=pool_id,
        )]
