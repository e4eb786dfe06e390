"""
Aggregator Head-Lag Monitor

What it does
------------
Connects to several blockchain-data providers at once and measures how long
after an on-chain event each one delivers it:
- WebSocket push feeds (Mobula fast-trade, Codex onEventsCreated, GeckoTerminal
  SwapChannel): head lag per chain
- New-token feeds (Mobula Pulse, Codex launchpad): discovery latency, plus a
  metadata coverage check per new token
- REST / quote APIs: request latency and error classes
- Optional chain RPC endpoints (endpoints.json): the chain's own head

Everything is exported as Prometheus metrics on :2112/metrics (METRICS_PORT).

Usage
-----
    headlag-monitor
    headlag-monitor --providers mobula,geckoterminal --no-quotes
    headlag-monitor --endpoints endpoints.json --group mainnets
    headlag-monitor --policies policies.json --log-level DEBUG

Credentials (env or .env)
-------------------------
MOBULA_API_KEY, CODEX_API_KEY, DEFINED_SESSION_COOKIE, MONITOR_REGION.
A missing key disables the providers that need it.
"""

import argparse
import logging
import pathlib
import signal
import threading
from typing import Dict, List, Optional, Sequence

from headlag_monitor.chain_head import ChainHeadPoller, load_endpoints
from headlag_monitor.checks import CodexMetadata, JupiterMetadata, MetadataCoverageCheck, MobulaMetadata
from headlag_monitor.config import PROVIDERS, Settings, load_policies, load_settings
from headlag_monitor.dispatcher import CheckDispatcher
from headlag_monitor.instruments import GECKO_POOLS, HEAD_LAG_POOLS
from headlag_monitor.metrics import MetricsSink
from headlag_monitor.providers import (CodexEventsStream, CodexLaunchpadStream, GeckoTerminalStream,
                                       MobulaPulseStream, MobulaTradeStream, StreamClient)
from headlag_monitor.rest_probes import (QUOTE_INTERVAL_S, REST_INTERVAL_S, LatencyPoller, codex_rest_probes,
                                         mobula_rest_probes, quote_probes)
from headlag_monitor.supervisor import ReconnectSupervisor
from headlag_monitor.token_cache import TokenCache

LOG = logging.getLogger("headlag_monitor")


def build_streams(settings: Settings, enabled: Sequence[str], sink: MetricsSink, policies,
                  token_cache: TokenCache, dispatcher: CheckDispatcher) -> List[StreamClient]:
    streams: List[StreamClient] = []

    def lag(name: str):
        return policies[name].lag

    if "mobula" in enabled:
        if settings.mobula_api_key:
            streams.append(MobulaTradeStream(sink, settings.mobula_api_key, HEAD_LAG_POOLS,
                                             lag_policy=lag("mobula")))
        else:
            LOG.info("MOBULA_API_KEY not set. Skipping Mobula fast-trade stream.")

    if "mobula-pulse" in enabled:
        if settings.mobula_api_key:
            streams.append(MobulaPulseStream(sink, settings.mobula_api_key,
                                             lag_policy=lag("mobula-pulse"), dispatcher=dispatcher))
        else:
            LOG.info("MOBULA_API_KEY not set. Skipping Mobula Pulse stream.")

    if "codex" in enabled:
        if settings.defined_session_cookie:
            streams.append(CodexEventsStream(sink, token_cache, settings.defined_session_cookie,
                                             HEAD_LAG_POOLS, lag_policy=lag("codex")))
        else:
            LOG.info("DEFINED_SESSION_COOKIE not set. Skipping Codex stream.")

    if "codex-launchpad" in enabled:
        if settings.codex_api_key:
            streams.append(CodexLaunchpadStream(sink, settings.codex_api_key,
                                                lag_policy=lag("codex-launchpad"), dispatcher=dispatcher))
        else:
            LOG.info("CODEX_API_KEY not set. Skipping Codex launchpad stream.")

    if "geckoterminal" in enabled:
        streams.append(GeckoTerminalStream(sink, GECKO_POOLS, lag_policy=lag("geckoterminal")))

    return streams


def build_pollers(settings: Settings, sink: MetricsSink, rest: bool, quotes: bool) -> List[LatencyPoller]:
    pollers = []
    if rest:
        if settings.mobula_api_key:
            pollers.append(LatencyPoller("mobula-rest", sink, mobula_rest_probes(settings.mobula_api_key),
                                         REST_INTERVAL_S, kind="rest"))
        else:
            LOG.info("MOBULA_API_KEY not set. Skipping Mobula REST monitor.")
        if settings.codex_api_key:
            pollers.append(LatencyPoller("codex-rest", sink, codex_rest_probes(settings.codex_api_key),
                                         REST_INTERVAL_S, kind="rest"))
        else:
            LOG.info("CODEX_API_KEY not set. Skipping Codex REST monitor.")
    if quotes:
        pollers.append(LatencyPoller("quote-api", sink, quote_probes(settings.mobula_api_key),
                                     QUOTE_INTERVAL_S, kind="quote", timeout_s=15))
    return pollers


def log_summary(sink: MetricsSink, supervisors: List[ReconnectSupervisor]) -> None:
    LOG.info("Head-lag summary at shutdown:")
    hdr = (
        f"{'Provider':<18}"
        f"{'Frames':>10} "
        f"{'Samples':>10} "
        f"{'Attempts':>9} "
        f"{'State':>14}  "
        "Last lag per chain (ms)"
    )
    LOG.info(hdr)
    LOG.info("=" * len(hdr))
    last = sink.last_lags()
    for sup in supervisors:
        c = sup.client
        lags = ", ".join(f"{chain}={value:.0f}" for (provider, chain), value in sorted(last.items())
                         if provider == c.name) or "-"
        LOG.info(f"[{c.name:<16}]{c.frames_received:>10} {c.measurements:>10} {sup.attempts:>9} "
                 f"{c.state.value:>14}  {lags}")


def run(
    settings: Settings,
    providers: Sequence[str],
    policies,
    endpoints: Optional[Dict[str, str]] = None,
    rest: bool = True,
    quotes: bool = True,
    serve_metrics: bool = True,
    cancel: Optional[threading.Event] = None,
) -> None:
    cancel = cancel or threading.Event()
    sink = MetricsSink(region=settings.region)
    token_cache = TokenCache()

    coverage_providers = [MobulaMetadata(settings.mobula_api_key), JupiterMetadata()]
    if settings.defined_session_cookie:
        coverage_providers.insert(1, CodexMetadata(token_cache, settings.defined_session_cookie))
    coverage = MetadataCoverageCheck(sink, coverage_providers)
    dispatcher = CheckDispatcher(sink, [coverage], on_idle=coverage.tick, on_stop=coverage.report)

    if serve_metrics:
        sink.serve(settings.metrics_port)

    threads: List[threading.Thread] = [dispatcher.start(cancel)]

    supervisors = []
    for client in build_streams(settings, providers, sink, policies, token_cache, dispatcher):
        sup = ReconnectSupervisor(client, cancel, policies[client.name].backoff,
                                  token_cache=token_cache if client.name == "codex" else None, sink=sink)
        supervisors.append(sup)
        t = threading.Thread(target=sup.run, name=f"stream-{client.name}", daemon=True)
        t.start()
        threads.append(t)

    for poller in build_pollers(settings, sink, rest, quotes):
        t = threading.Thread(target=poller.run, args=(cancel,), name=poller.name, daemon=True)
        t.start()
        threads.append(t)

    for name, url in (endpoints or {}).items():
        poller = ChainHeadPoller(name, url, sink)
        t = threading.Thread(target=poller.run, args=(cancel,), name=f"head-{name}", daemon=True)
        t.start()
        threads.append(t)

    LOG.info("Started %d stream(s), %d thread(s) total. Ctrl+C to stop.", len(supervisors), len(threads))

    # wake periodically so the main thread still sees signals
    while not cancel.wait(1.0):
        pass

    LOG.info("Shutting down...")
    for t in threads:
        t.join(timeout=15)
        if t.is_alive():
            LOG.warning("Thread %s did not stop in time", t.name)
    log_summary(sink, supervisors)


# ─────────── argparse & config ───────────
def parse_providers(value: str) -> List[str]:
    names = [n.strip() for n in value.split(",") if n.strip()]
    unknown = [n for n in names if n not in PROVIDERS]
    if unknown:
        raise argparse.ArgumentTypeError(
            f"unknown provider(s): {', '.join(unknown)} (known: {', '.join(PROVIDERS)})")
    return names


def cli(argv: Optional[Sequence[str]] = None) -> None:
    p = argparse.ArgumentParser(
        description="Measure head lag and discovery latency of blockchain-data aggregators.")
    p.add_argument(
        "--providers",
        type=parse_providers,
        default=list(PROVIDERS),
        help=f"Comma-separated stream providers to run (default: {','.join(PROVIDERS)})",
    )
    p.add_argument("--no-rest", action="store_true", help="Disable the REST latency pollers.")
    p.add_argument("--no-quotes", action="store_true", help="Disable the quote API pollers.")
    p.add_argument(
        "--endpoints",
        type=pathlib.Path,
        default=None,
        help="Path to endpoints.json with chain RPC endpoints for head-of-chain reference.",
    )
    p.add_argument("--group", default="mainnets", help="Group name in endpoints.json (default: mainnets)")
    p.add_argument(
        "--policies",
        type=pathlib.Path,
        default=None,
        help="JSON file overriding per-provider backoff and lag policies.",
    )
    p.add_argument("--env-file", type=pathlib.Path, default=pathlib.Path(".env"),
                   help="Optional .env file with credentials (default: ./.env)")
    p.add_argument("--log-level", default="INFO",
                   choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level (default: INFO)")

    args = p.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    settings = load_settings(args.env_file)
    policies = load_policies(args.policies)

    endpoints = None
    if args.endpoints is not None:
        LOG.info("Loading endpoints from %s (group=%s)", args.endpoints, args.group)
        endpoints = load_endpoints(args.group, args.endpoints)

    cancel = threading.Event()

    def stop(signum, _frame):
        LOG.info("Received %s", signal.Signals(signum).name)
        cancel.set()

    signal.signal(signal.SIGINT, stop)
    signal.signal(signal.SIGTERM, stop)

    LOG.info("Region: %s | metrics port: %d", settings.region or "default", settings.metrics_port)
    run(
        settings=settings,
        providers=args.providers,
        policies=policies,
        endpoints=endpoints,
        rest=not args.no_rest,
        quotes=not args.no_quotes,
        cancel=cancel,
    )
