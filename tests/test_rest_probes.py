import http.client

import pytest

from headlag_monitor.errors import TransportError
from headlag_monitor.httpclient import HttpResult, classify_status
from headlag_monitor.rest_probes import (LatencyPoller, Probe, codex_rest_probes, mobula_rest_probes,
                                         quote_probes)


def responder(status=200, elapsed_ms=80.0, exc=None):
    calls = []

    def request(url, method="GET", headers=None, json_body=None, timeout_s=10):
        calls.append({"url": url, "method": method, "headers": headers, "body": json_body})
        if exc is not None:
            raise exc
        return HttpResult(status=status, body=b"{}", elapsed_ms=elapsed_ms)

    request.calls = calls
    return request


PROBE = Probe(provider="mobula", endpoint="market_data", chain="solana", url="https://example.test/api")


@pytest.mark.parametrize("status, expected", [
    (0, "timeout_error"),
    (302, "request_error"),
    (404, "client_error"),
    (429, "client_error"),
    (503, "server_error"),
])
def test_classify_status(status, expected):
    assert classify_status(status) == expected


def test_successful_probe_records_latency_and_status(sink):
    poller = LatencyPoller("rest", sink, [PROBE], interval_s=20, request=responder(200, 80.0))

    results = poller.run_once()

    assert results[0].ok
    labels = {"aggregator": "mobula", "endpoint": "market_data", "chain": "solana"}
    assert sink.registry.get_sample_value("rest_api_latency_milliseconds_count", labels) == 1
    assert sink.registry.get_sample_value("rest_api_latency_milliseconds_sum", labels) == 80.0
    assert sink.registry.get_sample_value("rest_api_status_codes_total", dict(labels, status_code="200")) == 1
    assert poller.rounds == 1


def test_server_error_records_error_not_latency(sink):
    poller = LatencyPoller("rest", sink, [PROBE], interval_s=20, request=responder(503))

    result = poller.run_once()[0]

    assert result.error_type == "server_error"
    labels = {"aggregator": "mobula", "endpoint": "market_data", "chain": "solana"}
    assert sink.registry.get_sample_value("rest_api_errors_total", dict(labels, error_type="server_error")) == 1
    assert sink.registry.get_sample_value("rest_api_latency_milliseconds_count", labels) is None


def test_transport_failure_is_timeout_error(sink):
    probe = Probe(provider="jupiter", endpoint="quote", chain="solana", url="https://example.test/quote")
    poller = LatencyPoller("quotes", sink, [probe], interval_s=30, kind="quote",
                           request=responder(exc=TransportError("timed out")))

    result = poller.run_once()[0]

    assert result.status == 0
    assert sink.registry.get_sample_value(
        "quote_api_errors_total", {"provider": "jupiter", "chain": "solana", "error_type": "timeout_error"}) == 1


def test_quote_success_records_quote_metrics(sink):
    probe = Probe(provider="kyberswap", endpoint="quote", chain="base", url="https://example.test/routes")
    poller = LatencyPoller("quotes", sink, [probe], interval_s=30, kind="quote", request=responder(200, 250.0))

    poller.run_once()

    assert sink.registry.get_sample_value(
        "quote_api_latency_milliseconds_count", {"provider": "kyberswap", "chain": "base"}) == 1
    assert sink.registry.get_sample_value(
        "quote_api_status_codes_total", {"provider": "kyberswap", "chain": "base", "status_code": "200"}) == 1


def test_one_failing_probe_does_not_stop_the_round(sink):
    calls = []

    def flaky(url, **kwargs):
        calls.append(url)
        if "first" in url:
            raise TransportError("refused")
        return HttpResult(status=200, body=b"", elapsed_ms=10.0)

    probes = [Probe("a", "x", "solana", "https://first.test"), Probe("b", "x", "solana", "https://second.test")]
    results = LatencyPoller("rest", sink, probes, interval_s=20, request=flaky).run_once()

    assert [r.ok for r in results] == [False, True]
    assert len(calls) == 2


def test_unexpected_request_exception_is_recorded_and_round_continues(sink):
    calls = []

    def garbled(url, **kwargs):
        calls.append(url)
        if "first" in url:
            raise http.client.BadStatusLine("GARBAGE\r\n")
        return HttpResult(status=200, body=b"", elapsed_ms=10.0)

    probes = [Probe("a", "x", "solana", "https://first.test"), Probe("b", "x", "solana", "https://second.test")]
    results = LatencyPoller("rest", sink, probes, interval_s=20, request=garbled).run_once()

    assert [r.error_type for r in results] == ["request_error", ""]
    assert sink.registry.get_sample_value(
        "rest_api_errors_total",
        {"aggregator": "a", "endpoint": "x", "chain": "solana", "error_type": "request_error"}) == 1


def test_run_survives_failed_round(sink, cancel, monkeypatch):
    poller = LatencyPoller("rest", sink, [PROBE], interval_s=0, request=responder())
    rounds = []

    def flaky_round():
        rounds.append(1)
        if len(rounds) == 1:
            raise RuntimeError("metrics backend gone")
        cancel.set()
        return []

    monkeypatch.setattr(poller, "run_once", flaky_round)
    poller.run(cancel)

    assert len(rounds) == 2


def test_run_stops_on_cancel(sink, cancel):
    request = responder()

    def stop_after_first(url, **kwargs):
        cancel.set()
        return request(url, **kwargs)

    poller = LatencyPoller("rest", sink, [PROBE], interval_s=60, request=stop_after_first)
    poller.run(cancel)

    assert poller.rounds == 1


def test_unknown_kind_rejected(sink):
    with pytest.raises(ValueError):
        LatencyPoller("x", sink, [], interval_s=1, kind="graphql")


def test_mobula_probe_window_is_rebuilt_per_call():
    now = [1_700_000_000.0]
    probe = mobula_rest_probes("key", now=lambda: now[0])[0]

    first = probe.request_url()
    now[0] += 20
    second = probe.request_url()

    assert first != second
    assert "to=1700000020000" in second
    assert "from=1699996420000" in second
    assert probe.headers == {"Authorization": "key"}


def test_codex_probe_body():
    probes = codex_rest_probes("api-key", now=lambda: 1_700_000_000)
    assert [p.chain for p in probes] == ["solana", "bnb", "base", "monad"]

    body = probes[0].body()
    assert probes[0].method == "POST"
    assert body["variables"]["networkId"] == 1399811149
    assert body["variables"]["to"] - body["variables"]["from"] == 3600


def test_quote_catalogue():
    without_key = quote_probes()
    with_key = quote_probes("mobula-key")

    assert len(without_key) == 17
    assert {p.provider for p in without_key} == {"jupiter", "openocean", "paraswap", "lifi", "kyberswap"}
    mobula = [p for p in with_key if p.provider == "mobula"]
    assert [p.chain for p in mobula] == ["solana", "base", "arbitrum"]
    assert all(p.headers == {"Authorization": "mobula-key"} for p in mobula)
