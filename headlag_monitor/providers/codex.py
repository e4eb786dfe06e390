"""
Codex GraphQL subscriptions over graphql-transport-ws.

    -> connection_init {"Authorization": ...}
    <- connection_ack            (within ack_timeout_s, anything else is a ProtocolError)
    -> subscribe {id, payload: {query, variables}}   one per pool
    <- next / error / complete / ping / ka

Event timestamps are unix seconds.
"""

import logging
import time
from typing import Any, Iterable, List, Set

from headlag_monitor.errors import AuthError, PayloadError, ProtocolError
from headlag_monitor.instruments import (LAUNCHPAD_NETWORK_IDS, chain_from_network_id, chain_id_from_network_id)
from headlag_monitor.models import KIND_CREATED, KIND_DEPLOYED, KIND_SWAP, NormalizedEvent
from headlag_monitor.providers.base import Envelope, FrameType, StreamClient

LOG = logging.getLogger("headlag_monitor.providers.codex")

CODEX_WS_URL = "wss://graph.codex.io/graphql"

POOL_EVENTS_QUERY = """subscription OnPoolEvents($address: String!, $networkId: Int!) {
  onEventsCreated(address: $address, networkId: $networkId) {
    address
    networkId
    events {
      blockNumber
      timestamp
      transactionHash
      eventType
    }
  }
}"""

LAUNCHPAD_EVENTS_QUERY = """subscription OnLaunchpadEvents($networkFilter: [Int!]) {
  onLaunchpadTokenEventBatch(networkFilter: $networkFilter) {
    networkId
    eventType
    token {
      address
      name
      symbol
      createdAt
    }
    launchpadName
  }
}"""

LAUNCHPAD_EVENT_TYPES = {"Deployed": KIND_DEPLOYED, "Created": KIND_CREATED}
MAX_SEEN_TOKENS = 10_000

AUTH_MARKERS = ("unauthorized", "unauthenticated", "forbidden", "401", "403", "invalid token", "jwt")


class CodexStream(StreamClient):
    """graphql-transport-ws framing shared by both Codex subscriptions."""

    url = CODEX_WS_URL
    subprotocols = ("graphql-transport-ws",)

    def authorization(self) -> str:
        raise NotImplementedError

    def handshake(self, conn) -> None:
        self.send_json(conn, {"type": "connection_init",
                              "payload": {"Authorization": self.authorization()}})
        ack = self.recv_json(conn, self.ack_timeout_s)
        kind = ack.get("type") if isinstance(ack, dict) else None
        if kind != "connection_ack":
            raise ProtocolError(f"[{self.name}] expected connection_ack, got {kind!r}")
        LOG.info("[%s] connection acknowledged", self.name)

    def envelope(self, message: Any) -> Envelope:
        if not isinstance(message, dict):
            return FrameType.UNKNOWN, message
        kind = message.get("type")
        if kind == "next":
            return FrameType.DATA, message.get("payload")
        if kind == "ping":
            return FrameType.PING, message
        if kind in ("error", "complete"):
            return FrameType.ERROR, message
        if kind in ("ka", "pong", "connection_ack"):
            return FrameType.CONTROL, message
        return FrameType.UNKNOWN, message

    def pong(self, body: Any) -> dict:
        return {"type": "pong"}

    def on_error_frame(self, body: Any) -> None:
        sub_id = body.get("id", "?")
        if body.get("type") == "complete":
            raise ProtocolError(f"[{self.name}] server completed subscription {sub_id}")
        text = str(body.get("payload", "")).lower()
        if any(marker in text for marker in AUTH_MARKERS):
            raise AuthError(f"[{self.name}] subscription {sub_id} rejected: {body.get('payload')}")
        super().on_error_frame(body)

    @staticmethod
    def _data(body: Any, field: str) -> Any:
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            raise PayloadError("next frame without data")
        return body["data"].get(field)


class CodexEventsStream(CodexStream):
    """
    onEventsCreated for the head-lag pools, authenticated with the bearer token
    the TokenCache derives from the Defined.fi session credential.
    """

    name = "codex"
    subscribe_pause_s = 0.1

    def __init__(self, sink, token_cache, session_credential: str, instruments: Iterable = (), **kwargs) -> None:
        super().__init__(sink, instruments, **kwargs)
        self.token_cache = token_cache
        self.session_credential = session_credential
        self._token = ""

    def credentials(self) -> None:
        self._token = self.token_cache.get_token(self.session_credential)

    def authorization(self) -> str:
        return f"Bearer {self._token}"

    def subscribe(self, conn) -> None:
        for i, inst in enumerate(self.instruments):
            self.send_json(conn, {
                "type": "subscribe",
                "id": f"headlag_{i}",
                "payload": {
                    "query": POOL_EVENTS_QUERY,
                    "variables": {"address": inst.address, "networkId": inst.network_id},
                },
            })
            if self.subscribe_pause_s:
                time.sleep(self.subscribe_pause_s)
        LOG.info("[codex] Subscribed to %d pools", len(self.instruments))

    def parse_frame(self, body: Any) -> List[NormalizedEvent]:
        batch = self._data(body, "onEventsCreated")
        if not isinstance(batch, dict):
            return []
        chain = chain_from_network_id(batch.get("networkId"))
        events = []
        for event in batch.get("events") or []:
            if not isinstance(event, dict) or event.get("eventType") != "Swap":
                continue
            timestamp = event.get("timestamp")
            if not isinstance(timestamp, (int, float)) or timestamp <= 0:
                continue
            block = event.get("blockNumber")
            events.append(NormalizedEvent(
                chain=chain,
                timestamp_ms=int(timestamp * 1000),
                tx_id=str(event.get("transactionHash") or ""),
                kind=KIND_SWAP,
                block_number=int(block) if isinstance(block, (int, float)) and block > 0 else None,
                address=str(batch.get("address") or ""),
            ))
        return events


class CodexLaunchpadStream(CodexStream):
    """New launchpad tokens (Pump.fun, Four.meme, Zora...) for discovery latency."""

    name = "codex-launchpad"
    idle_timeout_s = 120.0  # Deployed events can be sparse

    def __init__(self, sink, api_key: str, network_ids: Iterable[int] = LAUNCHPAD_NETWORK_IDS, **kwargs) -> None:
        super().__init__(sink, (), **kwargs)
        self.api_key = api_key
        self.network_ids = list(network_ids)
        self._seen: Set[str] = set()

    def credentials(self) -> None:
        if not self.api_key:
            raise AuthError("CODEX_API_KEY not set")

    def authorization(self) -> str:
        return self.api_key

    def subscribe(self, conn) -> None:
        self.send_json(conn, {
            "type": "subscribe",
            "id": "launchpad_monitor",
            "payload": {
                "query": LAUNCHPAD_EVENTS_QUERY,
                "variables": {"networkFilter": self.network_ids},
            },
        })
        LOG.info("[codex-launchpad] Subscribed to %d networks", len(self.network_ids))

    def parse_frame(self, body: Any) -> List[NormalizedEvent]:
        batch = self._data(body, "onLaunchpadTokenEventBatch")
        events = []
        for event in batch or []:
            if not isinstance(event, dict):
                continue
            kind = LAUNCHPAD_EVENT_TYPES.get(event.get("eventType"))
            token = event.get("token")
            if kind is None or not isinstance(token, dict):
                continue
            network_id = event.get("networkId")
            address = str(token.get("address") or "")
            created_at = token.get("createdAt")
            if not address or not isinstance(network_id, int):
                continue

            key = f"{network_id}:{address}"
            if key in self._seen:
                continue
            if len(self._seen) >= MAX_SEEN_TOKENS:
                self._seen.clear()
            self._seen.add(key)

            if not isinstance(created_at, (int, float)) or created_at <= 0:
                continue
            LOG.debug("[codex-launchpad] %s %s via %s", event.get("eventType"), address,
                      event.get("launchpadName") or "?")
            events.append(NormalizedEvent(
                chain=chain_from_network_id(network_id),
                timestamp_ms=int(created_at * 1000),
                tx_id=address,
                kind=kind,
                address=address,
                chain_id=chain_id_from_network_id(network_id),
                symbol=str(token.get("symbol") or ""),
                name=str(token.get("name") or ""),
                first_sighting=True,
            ))
        return events
