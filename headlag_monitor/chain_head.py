"""
Chain head reference pollers (web3).

For each configured RPC endpoint we poll the latest block and export
  - chain_head_block_number: the node's head
  - chain_head_lag_seconds:  wall clock now - latest block timestamp

Next to indexed_block_number (what the Codex stream reports) this shows how
far an aggregator's index trails the chain itself.

Config file (endpoints.json)
----------------------------
A JSON object where each key is a group name and the value is a dict of
endpointName -> url:

{
  "mainnets": {
    "eth-public": "https://ethereum-rpc.publicnode.com",
    "base-public": "https://mainnet.base.org"
  }
}
"""

import json
import logging
import pathlib
import threading
import time
from typing import Dict, Optional

from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from headlag_monitor.instruments import CHAIN_BY_EVM_CHAIN_ID

LOG = logging.getLogger("headlag_monitor.chain_head")

DEFAULT_POLL_INTERVAL_S = 2.0
RECONNECT_INTERVAL_S = 30.0


# ────────── helpers ──────────
def chain_name_from_chain_id(chain_id: Optional[int]) -> str:
    if chain_id is None:
        return "unknown"
    return CHAIN_BY_EVM_CHAIN_ID.get(chain_id, f"chain_{chain_id}")


def make_web3(url: str, timeout_s: int = 10) -> Web3:
    w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout_s}))
    # BNB and other PoA chains return a long extraData field
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


def get_chain_id(w3: Web3) -> Optional[int]:
    """
    Only trust eth_chainId for the chain id. If the gateway blocks it, return
    None rather than guessing from net_version.
    """
    try:
        return int(w3.eth.chain_id)
    except Exception as e:
        LOG.debug("eth.chain_id failed: %s", e)

    try:
        resp = w3.provider.make_request("eth_chainId", [])
    except Exception as e:
        LOG.debug("raw eth_chainId failed: %s", e)
        return None
    val = resp.get("result") if isinstance(resp, dict) else None
    if isinstance(val, str) and val.startswith("0x"):
        try:
            return int(val, 16)
        except ValueError:
            return None
    return None


# ────────── config ──────────
def load_endpoints(group: str, config_path: pathlib.Path) -> Dict[str, str]:
    """RPC endpoints of one group; entries that are not http(s) URLs are skipped with a warning."""
    try:
        data = json.loads(config_path.read_text())
    except FileNotFoundError as exc:
        raise SystemExit(f"Endpoints file not found: {config_path}") from exc
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Invalid JSON in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise SystemExit(f"{config_path} must be an object of group -> endpoints")
    endpoints = data.get(group)
    if endpoints is None:
        raise SystemExit(f"No group '{group}' in {config_path} (groups: {', '.join(sorted(data)) or 'none'})")
    if not isinstance(endpoints, dict):
        raise SystemExit(f"Group '{group}' in {config_path} must map endpoint name -> RPC url")

    usable = {name: url for name, url in endpoints.items()
              if isinstance(url, str) and url.startswith(("http://", "https://"))}
    for name in endpoints.keys() - usable.keys():
        LOG.warning("[%s] skipping endpoint with unusable url: %r", name, endpoints[name])
    if not usable:
        raise SystemExit(f"Group '{group}' in {config_path} has no http(s) endpoints")
    return usable


# ───────── poller ─────────
class ChainHeadPoller:
    """One thread per endpoint; records head block number and head lag."""

    def __init__(
        self,
        name: str,
        url: str,
        sink,
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
        w3: Optional[Web3] = None,
        clock=time.time,
    ) -> None:
        self.name = name
        self.url = url
        self.sink = sink
        self.interval_s = interval_s
        self.w3 = w3
        self._clock = clock
        self.chain: Optional[str] = None
        self.last_block_number: Optional[int] = None
        self.failures = 0

    def connect(self) -> None:
        if self.w3 is None:
            self.w3 = make_web3(self.url)
        # quick connectivity test
        _ = self.w3.eth.block_number
        self.chain = chain_name_from_chain_id(get_chain_id(self.w3))
        LOG.info("[%s] connected, chain=%s", self.name, self.chain)

    def poll_once(self) -> float:
        """Fetch the latest block; returns the head lag in seconds."""
        t0 = self._clock()
        block = self.w3.eth.get_block("latest", False)
        t1 = self._clock()

        bn = int(block["number"])
        lag = t1 - int(block["timestamp"])
        self.last_block_number = bn
        self.sink.record_chain_head(self.name, self.chain or "unknown", bn, lag)

        LOG.debug("[%s] block=%s latency=%.2fms lag=%.1fs", self.name, bn, (t1 - t0) * 1000.0, lag)
        return lag

    def run(self, cancel: threading.Event) -> None:
        while not cancel.is_set():
            if self.chain is None:
                try:
                    self.connect()
                except Exception as e:
                    LOG.warning("[%s] Skipping due to connection issue: %s (retry in %.0fs)",
                                self.name, e, RECONNECT_INTERVAL_S)
                    self.w3 = None
                    if cancel.wait(RECONNECT_INTERVAL_S):
                        break
                    continue

            try:
                self.poll_once()
            except Exception as e:
                self.failures += 1
                LOG.warning("[%s] RPC polling failed: %s", self.name, e)

            if cancel.wait(self.interval_s):
                break
