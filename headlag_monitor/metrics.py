"""
Prometheus metrics sink.

Each MetricsSink owns its own CollectorRegistry, so several sinks can coexist
(tests build one per case). Metric names match the dashboards:

- all_aggregator_latency_milliseconds{aggregator,chain,region}   gauge
- pool_discovery_latency_milliseconds{aggregator,chain,region}   gauge
- head_lag_errors_total{aggregator,chain,error_type}              counter
- metadata_coverage{provider,chain,field}                         gauge 0/1
- metadata_coverage_checks_total{provider,chain,field,present}    counter
- metadata_response_milliseconds{provider,chain}                  histogram
- rest_api_latency_milliseconds{aggregator,endpoint,chain}        histogram
- rest_api_errors_total / rest_api_status_codes_total
- quote_api_latency_milliseconds{provider,chain}                  histogram
- quote_api_errors_total / quote_api_status_codes_total
- indexed_block_number{aggregator,chain}                          gauge
- chain_head_block_number{endpoint,chain} / chain_head_lag_seconds
- check_queue_dropped_total                                       counter
"""

import logging
import threading
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

LOG = logging.getLogger("headlag_monitor.metrics")

REST_BUCKETS = (50, 100, 200, 500, 1000, 2000, 5000, 10000)
QUOTE_BUCKETS = (50, 100, 200, 300, 500, 750, 1000, 1500, 2000, 3000, 5000)


class MetricsSink:
    def __init__(self, registry: Optional[CollectorRegistry] = None, region: str = "") -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self.region = region or "default"
        reg = self.registry

        self.head_lag = Gauge(
            "all_aggregator_latency_milliseconds",
            "Head lag in milliseconds for all aggregators by blockchain and source",
            ["aggregator", "chain", "region"], registry=reg)
        self.discovery_latency = Gauge(
            "pool_discovery_latency_milliseconds",
            "Time from pool creation on-chain to first detection",
            ["aggregator", "chain", "region"], registry=reg)
        self.head_lag_errors = Counter(
            "head_lag_errors",
            "Errors seen while measuring head lag",
            ["aggregator", "chain", "error_type"], registry=reg)

        self.metadata_coverage = Gauge(
            "metadata_coverage",
            "Whether the last checked token had the field (1) or not (0)",
            ["provider", "chain", "field"], registry=reg)
        self.metadata_checks = Counter(
            "metadata_coverage_checks",
            "Metadata field checks by outcome",
            ["provider", "chain", "field", "present"], registry=reg)
        self.metadata_latency = Histogram(
            "metadata_response_milliseconds",
            "Metadata lookup response time in milliseconds",
            ["provider", "chain"], buckets=REST_BUCKETS, registry=reg)

        self.rest_latency = Histogram(
            "rest_api_latency_milliseconds",
            "REST API response latency in milliseconds",
            ["aggregator", "endpoint", "chain"], buckets=REST_BUCKETS, registry=reg)
        self.rest_errors = Counter(
            "rest_api_errors",
            "Total number of REST API errors",
            ["aggregator", "endpoint", "chain", "error_type"], registry=reg)
        self.rest_status = Counter(
            "rest_api_status_codes",
            "REST API responses by status code",
            ["aggregator", "endpoint", "chain", "status_code"], registry=reg)

        self.quote_latency = Histogram(
            "quote_api_latency_milliseconds",
            "Quote API response latency in milliseconds",
            ["provider", "chain"], buckets=QUOTE_BUCKETS, registry=reg)
        self.quote_errors = Counter(
            "quote_api_errors",
            "Total number of Quote API errors",
            ["provider", "chain", "error_type"], registry=reg)
        self.quote_status = Counter(
            "quote_api_status_codes",
            "Quote API responses by status code",
            ["provider", "chain", "status_code"], registry=reg)

        self.indexed_block = Gauge(
            "indexed_block_number",
            "Latest block number reported by an aggregator stream",
            ["aggregator", "chain"], registry=reg)
        self.chain_head_block = Gauge(
            "chain_head_block_number",
            "Latest block number reported by a chain RPC endpoint",
            ["endpoint", "chain"], registry=reg)
        self.chain_head_lag = Gauge(
            "chain_head_lag_seconds",
            "Wall clock minus latest block timestamp on a chain RPC endpoint",
            ["endpoint", "chain"], registry=reg)

        self.dispatch_dropped = Counter(
            "check_queue_dropped",
            "Check requests dropped because the queue was full", registry=reg)

        # last forwarded value per (aggregator, chain); handy for summaries and tests
        self._lock = threading.Lock()
        self.last_lag: Dict[tuple, float] = {}

    # ───── head lag ─────
    def record_lag(self, provider: str, chain: str, lag_ms: float) -> None:
        self.head_lag.labels(provider, chain, self.region).set(lag_ms)
        with self._lock:
            self.last_lag[(provider, chain)] = lag_ms

    def last_lags(self) -> Dict[tuple, float]:
        with self._lock:
            return dict(self.last_lag)

    def record_error(self, provider: str, chain: str, error_kind: str) -> None:
        self.head_lag_errors.labels(provider, chain, error_kind).inc()

    def record_discovery_latency(self, provider: str, chain: str, latency_ms: float) -> None:
        self.discovery_latency.labels(provider, chain, self.region).set(latency_ms)

    def record_block_number(self, provider: str, chain: str, block_number: int) -> None:
        self.indexed_block.labels(provider, chain).set(block_number)

    # ───── metadata ─────
    def record_metadata_coverage(self, provider: str, chain: str, field: str, present: bool) -> None:
        self.metadata_coverage.labels(provider, chain, field).set(1 if present else 0)
        self.metadata_checks.labels(provider, chain, field, "true" if present else "false").inc()

    def record_metadata_latency(self, provider: str, chain: str, latency_ms: float) -> None:
        self.metadata_latency.labels(provider, chain).observe(latency_ms)

    # ───── REST / quote ─────
    def record_rest_latency(self, provider: str, endpoint: str, chain: str, latency_ms: float, status_code: int) -> None:
        self.rest_latency.labels(provider, endpoint, chain).observe(latency_ms)
        self.rest_status.labels(provider, endpoint, chain, str(status_code)).inc()

    def record_rest_error(self, provider: str, endpoint: str, chain: str, error_type: str) -> None:
        self.rest_errors.labels(provider, endpoint, chain, error_type).inc()

    def record_quote_latency(self, provider: str, chain: str, latency_ms: float, status_code: int) -> None:
        self.quote_latency.labels(provider, chain).observe(latency_ms)
        self.quote_status.labels(provider, chain, str(status_code)).inc()

    def record_quote_error(self, provider: str, chain: str, error_type: str) -> None:
        self.quote_errors.labels(provider, chain, error_type).inc()

    # ───── chain head / dispatcher ─────
    def record_chain_head(self, endpoint: str, chain: str, block_number: int, lag_seconds: float) -> None:
        self.chain_head_block.labels(endpoint, chain).set(block_number)
        self.chain_head_lag.labels(endpoint, chain).set(lag_seconds)

    def record_dispatch_drop(self) -> None:
        self.dispatch_dropped.inc()

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        start_http_server(port, addr=addr, registry=self.registry)
        LOG.info("Metrics exposed on %s:%d/metrics", addr, port)
