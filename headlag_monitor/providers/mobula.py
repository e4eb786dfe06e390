"""
Mobula streams.

fast-trade: one subscribe frame listing every pool; trades carry `date`, the
on-chain time in ms. We ping every 25s with {"event": "ping"}.

pulse-v2: new token/pool creations across chains; `createdAt` is ISO 8601.
Each first sighting is handed to the check dispatcher for metadata lookups.
"""

import datetime as dt
import logging
from typing import Any, Iterable, List, Optional, Set

from headlag_monitor.errors import AuthError, PayloadError
from headlag_monitor.instruments import PULSE_CHAINS, chain_from_blockchain, find_by_address
from headlag_monitor.models import KIND_CREATED, KIND_TRADE, NormalizedEvent
from headlag_monitor.providers.base import Envelope, FrameType, StreamClient

LOG = logging.getLogger("headlag_monitor.providers.mobula")

MOBULA_WS_URL = "wss://api.mobula.io"
MOBULA_PULSE_WS_URL = "wss://pulse-v2-api.mobula.io"

MAX_SEEN_TOKENS = 10_000


def _as_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise PayloadError(f"{field} is not a number: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise PayloadError(f"{field} is not a number: {value!r}")


def parse_iso8601_ms(value: str) -> int:
    """'2024-05-01T12:00:00.123Z' -> epoch ms."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError as e:
        raise PayloadError(f"bad timestamp {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return int(parsed.timestamp() * 1000)


class MobulaTradeStream(StreamClient):
    name = "mobula"
    url = MOBULA_WS_URL
    keepalive_interval_s = 25.0

    def __init__(self, sink, api_key: str, instruments: Iterable = (), **kwargs) -> None:
        super().__init__(sink, instruments, **kwargs)
        self.api_key = api_key

    def credentials(self) -> None:
        if not self.api_key:
            raise AuthError("MOBULA_API_KEY not set")

    def subscribe(self, conn) -> None:
        items = [{"blockchain": inst.blockchain, "address": inst.address}
                 for inst in self.instruments]
        self.send_json(conn, {
            "type": "fast-trade",
            "authorization": self.api_key,
            "payload": {"assetMode": False, "items": items},
        })
        LOG.info("[mobula] Subscribed to %d pools", len(items))

    def keepalive_frame(self) -> Optional[dict]:
        return {"event": "ping"}

    def envelope(self, message: Any) -> Envelope:
        if isinstance(message, list):
            return FrameType.DATA, message
        if not isinstance(message, dict):
            return FrameType.UNKNOWN, message
        if "error" in message:
            return FrameType.ERROR, message
        if "status" in message:
            if message["status"] in ("success", "ok"):
                return FrameType.CONTROL, message
            return FrameType.ERROR, message
        if message.get("event") in ("ping", "pong") or message.get("type") in ("ping", "pong"):
            return FrameType.CONTROL, message
        if "hash" in message or "date" in message:
            return FrameType.DATA, message
        return FrameType.UNKNOWN, message

    def on_error_frame(self, body: Any) -> None:
        text = str(body.get("error", body) if isinstance(body, dict) else body)
        if "unauthorized" in text.lower() or "invalid api key" in text.lower():
            raise AuthError(f"[mobula] server rejected API key: {text}")
        super().on_error_frame(body)

    def parse_frame(self, body: Any) -> List[NormalizedEvent]:
        trades = body if isinstance(body, list) else [body]
        events = []
        for trade in trades:
            if not isinstance(trade, dict):
                continue
            tx_hash = trade.get("hash") or ""
            date = trade.get("date")
            if not tx_hash or not date:
                continue

            chain = chain_from_blockchain(str(trade.get("blockchain") or ""))
            if not chain:
                inst = find_by_address(self.instruments, str(trade.get("pair") or ""))
                chain = inst.chain if inst else "unknown"

            events.append(NormalizedEvent(
                chain=chain,
                timestamp_ms=_as_int(date, "date"),
                tx_id=str(tx_hash),
                kind=KIND_TRADE,
                address=str(trade.get("pair") or ""),
            ))
        return events


class MobulaPulseStream(StreamClient):
    name = "mobula-pulse"
    url = MOBULA_PULSE_WS_URL
    idle_timeout_s = 120.0

    def __init__(self, sink, api_key: str, chains: Iterable[str] = PULSE_CHAINS, **kwargs) -> None:
        super().__init__(sink, (), **kwargs)
        self.api_key = api_key
        self.chains = list(chains)
        self._seen: Set[str] = set()

    def credentials(self) -> None:
        if not self.api_key:
            raise AuthError("MOBULA_API_KEY not set")

    def headers(self) -> dict:
        return {"Authorization": self.api_key}

    def subscribe(self, conn) -> None:
        self.send_json(conn, {
            "type": "pulse-v2",
            "authorization": self.api_key,
            "payload": {
                "model": "default",
                "assetMode": True,
                "chainId": self.chains,
                "compressed": False,
                "views": [{"name": "new", "sortBy": "created_at", "sortOrder": "desc", "limit": 50}],
            },
        })
        LOG.info("[mobula-pulse] Subscribed to new pools on %s",
                 ", ".join(chain_from_blockchain(c) for c in self.chains))

    def envelope(self, message: Any) -> Envelope:
        if not isinstance(message, dict):
            return FrameType.UNKNOWN, message
        kind = message.get("type")
        if kind == "new-token":
            return FrameType.DATA, message.get("payload")
        if kind == "ping":
            return FrameType.PING, message
        if kind == "error":
            return FrameType.ERROR, message
        if kind in ("update-token", "pong", "init", "sync"):
            return FrameType.CONTROL, message
        return FrameType.UNKNOWN, message

    def parse_frame(self, body: Any) -> List[NormalizedEvent]:
        if not isinstance(body, dict):
            raise PayloadError("new-token frame without payload")
        outer = body.get("token") or {}
        token = outer.get("token") if isinstance(outer, dict) else None
        if not isinstance(token, dict):
            raise PayloadError("new-token frame without token")

        address = str(token.get("address") or "")
        created_at = token.get("createdAt") or ""
        if not address or not created_at:
            return []

        chain_id = str(token.get("chainId") or "")
        key = f"{chain_id}:{address}"
        first = key not in self._seen
        if first:
            if len(self._seen) >= MAX_SEEN_TOKENS:
                self._seen.clear()
            self._seen.add(key)

        return [NormalizedEvent(
            chain=chain_from_blockchain(chain_id),
            timestamp_ms=parse_iso8601_ms(str(created_at)),
            tx_id=address,
            kind=KIND_CREATED,
            address=address,
            chain_id=chain_id,
            symbol=str(token.get("symbol") or ""),
            name=str(token.get("name") or ""),
            first_sighting=first,
        )]
