"""Value types passed between stream clients, the lag calculator and the sinks."""

import time
from dataclasses import dataclass
from typing import Optional

# Event kinds. Trades feed the head-lag gauge, creations feed discovery latency.
KIND_SWAP = "swap"
KIND_TRADE = "trade"
KIND_CREATED = "created"
KIND_DEPLOYED = "deployed"

DISCOVERY_KINDS = frozenset({KIND_CREATED, KIND_DEPLOYED})


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class MonitoredInstrument:
    """
    One monitored pool/pair.

    `address` is the provider-side identifier (pool address, or GeckoTerminal's
    numeric pool id), `blockchain` the Mobula-style chain id ("evm:1",
    "solana") and `network_id` the Codex numeric network id.
    """

    label: str
    chain: str
    address: str
    blockchain: str = ""
    network_id: int = 0


@dataclass(frozen=True)
class NormalizedEvent:
    """
    A provider event reduced to what the lag calculation needs.

    `timestamp_ms` is the on-chain instant in epoch milliseconds; parsers of
    second-precision sources multiply before building the event. `tx_id` is the
    transaction hash; creation events that carry none use the created address.
    """

    chain: str
    timestamp_ms: int
    tx_id: str
    kind: str = KIND_SWAP
    block_number: Optional[int] = None
    address: str = ""
    chain_id: str = ""
    symbol: str = ""
    name: str = ""
    first_sighting: bool = False

    @property
    def is_discovery(self) -> bool:
        return self.kind in DISCOVERY_KINDS


@dataclass(frozen=True)
class LagMeasurement:
    provider: str
    chain: str
    lag_ms: float
    received_at_ms: int


@dataclass(frozen=True)
class CheckRequest:
    """A deferred metadata lookup for an address a stream just reported."""

    address: str
    chain_id: str
    discovered_at_ms: int
    symbol: str = ""
    name: str = ""
    source: str = ""
