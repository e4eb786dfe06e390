"""
REST / GraphQL / quote API latency pollers.

Every interval each probe issues one request and records latency + status
code, or a classified error (server_error, client_error, timeout_error,
request_error). A poller never raises: one slow vendor cannot stall the rest.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from headlag_monitor.errors import TransportError
from headlag_monitor.httpclient import classify_status, http_request, with_query
from headlag_monitor.instruments import SOLANA_NETWORK_ID

LOG = logging.getLogger("headlag_monitor.rest_probes")

MOBULA_REST_URL = "https://api.mobula.io/api/1/market/history/pair"
CODEX_GRAPHQL_URL = "https://graph.codex.io/graphql"

JUPITER_QUOTE_URL = "https://public.jupiterapi.com/quote"
MOBULA_SWAP_QUOTE_URL = "https://api.mobula.io/api/2/swap/quoting"
OPENOCEAN_QUOTE_URL = "https://open-api.openocean.finance/v3"
PARASWAP_QUOTE_URL = "https://apiv5.paraswap.io/prices"
KYBERSWAP_QUOTE_URL = "https://aggregator-api.kyberswap.com"
LIFI_QUOTE_URL = "https://li.quest/v1/quote"

DUMMY_EVM_WALLET = "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045"
DUMMY_SOLANA_WALLET = "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH"

REST_INTERVAL_S = 20
QUOTE_INTERVAL_S = 30

# (chain, mobula blockchain, codex network id, pool)
REST_POOLS = (
    ("solana", "solana", SOLANA_NETWORK_ID, "7qbRF6YsyGuLUVs6Y1q64bdVrfe4ZcUUz1JRdoVNUJnm"),
    ("bnb", "56", 56, "0x58f876857a02d6762e0101bb5c46a8c1ed44dc16"),
    ("base", "base", 8453, "0x4c36388be6f416a29c8d8eee81c771ce6be14b18"),
    ("monad", "monad", 143, "0x659bD0BC4167BA25c62E05656F78043E7eD4a9da"),
)

GET_BARS_QUERY = """query GetPoolBars($address: String!, $networkId: Int!, $from: Int!, $to: Int!) {
  getBars(symbol: "", address: $address, networkId: $networkId, resolution: "1",
          from: $from, to: $to, currencyCode: "USD") { t o h l c v }
}"""


@dataclass(frozen=True)
class QuoteChain:
    name: str
    chain_id: str
    kyber_key: str
    token_in: str  # USDC
    token_out: str  # wrapped native
    amount: str  # 100 USDC in base units
    decimals: int


SOLANA_QUOTE = QuoteChain(
    name="solana", chain_id="solana", kyber_key="",
    token_in="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    token_out="So11111111111111111111111111111111111111112",
    amount="100000000", decimals=6)

EVM_QUOTE_CHAINS = (
    QuoteChain("ethereum", "1", "ethereum",
               "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
               "100000000", 6),
    QuoteChain("base", "8453", "base",
               "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "0x4200000000000000000000000000000000000006",
               "100000000", 6),
    QuoteChain("bnb", "56", "bsc",
               "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c",
               "100000000000000000000", 18),
    QuoteChain("arbitrum", "42161", "arbitrum",
               "0xaf88d065e77c8cC2239327C5EDb3A432268e5831", "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
               "100000000", 6),
)


@dataclass
class Probe:
    """One request to time. `query` and `body` are built per call so time windows stay current."""

    provider: str
    endpoint: str
    chain: str
    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[Callable[[], dict]] = None
    query: Optional[Callable[[], dict]] = None

    def request_url(self) -> str:
        return with_query(self.url, self.query()) if self.query else self.url


@dataclass
class ProbeResult:
    probe: Probe
    status: int
    latency_ms: float
    error_type: str = ""

    @property
    def ok(self) -> bool:
        return not self.error_type


# ───────── probe catalogues ─────────
def mobula_rest_probes(api_key: str, now: Callable[[], float] = time.time) -> List[Probe]:
    def history_query(pool: str, blockchain: str) -> Callable[[], dict]:
        def build() -> dict:
            to_ms = int(now() * 1000)
            return {"address": pool, "blockchain": blockchain, "period": "1min",
                    "from": to_ms - 3600 * 1000, "to": to_ms, "amount": 5}
        return build

    return [Probe(provider="mobula", endpoint="market_data", chain=chain, url=MOBULA_REST_URL,
                  headers={"Authorization": api_key}, query=history_query(pool, blockchain))
            for chain, blockchain, _network_id, pool in REST_POOLS]


def codex_rest_probes(api_key: str, now: Callable[[], float] = time.time) -> List[Probe]:
    def bars_body(pool: str, network_id: int) -> Callable[[], dict]:
        def build() -> dict:
            to = int(now())
            return {"query": GET_BARS_QUERY,
                    "variables": {"address": pool, "networkId": network_id, "from": to - 3600, "to": to}}
        return build

    return [Probe(provider="codex", endpoint="graphql", chain=chain, url=CODEX_GRAPHQL_URL,
                  method="POST", headers={"Authorization": api_key}, body=bars_body(pool, network_id))
            for chain, _blockchain, network_id, pool in REST_POOLS]


def quote_probes(mobula_api_key: str = "") -> List[Probe]:
    probes = [Probe(
        provider="jupiter", endpoint="quote", chain="solana",
        url=with_query(JUPITER_QUOTE_URL, {
            "inputMint": SOLANA_QUOTE.token_in, "outputMint": SOLANA_QUOTE.token_out,
            "amount": SOLANA_QUOTE.amount, "slippageBps": 50}),
    )]

    if mobula_api_key:
        # MobulaRouter is deployed on Solana, Base and Arbitrum only
        for chain_id, chain in (("solana", SOLANA_QUOTE), ("evm:8453", EVM_QUOTE_CHAINS[1]),
                                ("evm:42161", EVM_QUOTE_CHAINS[3])):
            wallet = DUMMY_SOLANA_WALLET if chain.name == "solana" else DUMMY_EVM_WALLET
            probes.append(Probe(
                provider="mobula", endpoint="quote", chain=chain.name,
                url=with_query(MOBULA_SWAP_QUOTE_URL, {
                    "chainId": chain_id, "tokenIn": chain.token_in, "tokenOut": chain.token_out,
                    "amount": 100, "walletAddress": wallet, "slippage": 1}),
                headers={"Authorization": mobula_api_key},
            ))

    for chain in EVM_QUOTE_CHAINS:
        probes.extend([
            Probe(provider="openocean", endpoint="quote", chain=chain.name,
                  url=with_query(f"{OPENOCEAN_QUOTE_URL}/{chain.chain_id}/quote", {
                      "inTokenAddress": chain.token_in, "outTokenAddress": chain.token_out,
                      "amount": chain.amount, "gasPrice": 5})),
            Probe(provider="paraswap", endpoint="quote", chain=chain.name,
                  url=with_query(PARASWAP_QUOTE_URL, {
                      "srcToken": chain.token_in, "destToken": chain.token_out, "amount": chain.amount,
                      "srcDecimals": chain.decimals, "destDecimals": 18, "network": chain.chain_id})),
            Probe(provider="lifi", endpoint="quote", chain=chain.name,
                  url=with_query(LIFI_QUOTE_URL, {
                      "fromChain": chain.chain_id, "toChain": chain.chain_id,
                      "fromToken": chain.token_in, "toToken": chain.token_out,
                      "fromAmount": chain.amount, "fromAddress": DUMMY_EVM_WALLET})),
            Probe(provider="kyberswap", endpoint="quote", chain=chain.name,
                  url=with_query(f"{KYBERSWAP_QUOTE_URL}/{chain.kyber_key}/api/v1/routes", {
                      "tokenIn": chain.token_in, "tokenOut": chain.token_out, "amountIn": chain.amount})),
        ])
    return probes


# ───────── poller ─────────
class LatencyPoller:
    """
    Runs a fixed list of probes every `interval_s` until cancelled.

    kind="rest" records into the rest_api_* metrics, kind="quote" into quote_api_*.
    """

    def __init__(self, name: str, sink, probes: List[Probe], interval_s: float,
                 kind: str = "rest", timeout_s: float = 10, request=http_request) -> None:
        if kind not in ("rest", "quote"):
            raise ValueError(f"unknown poller kind {kind!r}")
        self.name = name
        self.sink = sink
        self.probes = probes
        self.interval_s = interval_s
        self.kind = kind
        self.timeout_s = timeout_s
        self._request = request
        self.rounds = 0

    def run_probe(self, probe: Probe) -> ProbeResult:
        t0 = time.monotonic()
        try:
            resp = self._request(probe.request_url(), method=probe.method, headers=probe.headers,
                                 json_body=probe.body() if probe.body else None, timeout_s=self.timeout_s)
        except TransportError as e:
            latency = (time.monotonic() - t0) * 1000.0
            LOG.debug("[%s][%s][%s] %s", probe.provider, probe.chain, probe.endpoint, e)
            return ProbeResult(probe, 0, latency, classify_status(0))

        if resp.status >= 400:
            return ProbeResult(probe, resp.status, resp.elapsed_ms, classify_status(resp.status))
        return ProbeResult(probe, resp.status, resp.elapsed_ms)

    def record(self, result: ProbeResult) -> None:
        p = result.probe
        if self.kind == "rest":
            if result.ok:
                self.sink.record_rest_latency(p.provider, p.endpoint, p.chain, result.latency_ms, result.status)
            else:
                self.sink.record_rest_error(p.provider, p.endpoint, p.chain, result.error_type)
        else:
            if result.ok:
                self.sink.record_quote_latency(p.provider, p.chain, result.latency_ms, result.status)
            else:
                self.sink.record_quote_error(p.provider, p.chain, result.error_type)

        mark = "ok" if result.ok else result.error_type
        log = LOG.info if result.ok else LOG.warning
        log("[%s][%s][%s] %s | latency=%.0fms status=%d", self.name, p.provider, p.chain,
            mark, result.latency_ms, result.status)

    def run_once(self) -> List[ProbeResult]:
        results = []
        for probe in self.probes:
            try:
                result = self.run_probe(probe)
            except Exception as e:
                LOG.warning("[%s][%s][%s] probe failed: %s", self.name, probe.provider, probe.chain, e)
                result = ProbeResult(probe, 0, 0.0, "request_error")
            self.record(result)
            results.append(result)
        self.rounds += 1
        return results

    def run(self, cancel: threading.Event) -> None:
        LOG.info("[%s] polling %d endpoint(s) every %.0fs", self.name, len(self.probes), self.interval_s)
        while not cancel.is_set():
            started = time.monotonic()
            try:
                self.run_once()
            except Exception as e:
                LOG.warning("[%s] polling round failed: %s", self.name, e)
            remaining = self.interval_s - (time.monotonic() - started)
            if cancel.wait(max(remaining, 0.0)):
                break
        LOG.info("[%s] stopped", self.name)
