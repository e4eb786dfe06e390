import pytest

from headlag_monitor.errors import AuthError, ProtocolError, RateLimitedError, TransportError
from headlag_monitor.supervisor import BackoffPolicy, ReconnectSupervisor

from conftest import FakeTokenCache

STREAMING = "streaming"


class ScriptedClient:
    """Each run() consumes one script step: an exception to raise, STREAMING
    followed by an exception, or nothing left (cancel and return cleanly)."""

    name = "fake"

    def __init__(self, sink, steps):
        self.sink = sink
        self.steps = list(steps)
        self.runs = 0

    def run(self, cancel, on_streaming=None):
        self.runs += 1
        if not self.steps:
            cancel.set()
            return
        step = self.steps.pop(0)
        if isinstance(step, tuple) and step[0] == STREAMING:
            on_streaming()
            step = step[1]
        raise step


def make_supervisor(sink, cancel, steps, policy=None, token_cache=None):
    sleeps = []

    def fake_sleep(delay):
        sleeps.append(delay)
        return cancel.is_set()

    client = ScriptedClient(sink, steps)
    sup = ReconnectSupervisor(client, cancel, policy or BackoffPolicy(base=5, maximum=15),
                              token_cache=token_cache, sleep=fake_sleep)
    return sup, sleeps


def test_backoff_doubles_and_caps(sink, cancel):
    sup, sleeps = make_supervisor(sink, cancel, [TransportError("x")] * 4)
    sup.run()

    assert sup.delays == [5, 10, 15, 15]
    assert sleeps == sup.delays
    assert sink.registry.get_sample_value(
        "head_lag_errors_total", {"aggregator": "fake", "chain": "all", "error_type": "connection"}) == 4


def test_rate_limit_uses_fixed_delay_and_keeps_counter(sink, cancel):
    steps = [TransportError("x"), RateLimitedError("429"), TransportError("x")]
    sup, _ = make_supervisor(sink, cancel, steps,
                             policy=BackoffPolicy(base=5, maximum=60, rate_limit_delay=120))
    sup.run()

    assert sup.delays == [5, 120, 10]


def test_rate_limit_honours_larger_retry_after(sink, cancel):
    sup, _ = make_supervisor(sink, cancel, [RateLimitedError("429", retry_after=300)],
                             policy=BackoffPolicy(base=5, maximum=60, rate_limit_delay=120))
    sup.run()

    assert sup.delays == [300]


def test_backoff_resets_after_streaming(sink, cancel):
    steps = [TransportError("a"), TransportError("b"), (STREAMING, TransportError("c")), TransportError("d")]
    sup, _ = make_supervisor(sink, cancel, steps, policy=BackoffPolicy(base=5, maximum=60))
    sup.run()

    assert sup.delays == [5, 10, 5, 10]


def test_auth_failure_invalidates_token_cache(sink, cancel):
    cache = FakeTokenCache()
    sup, _ = make_supervisor(sink, cancel, [AuthError("401"), TransportError("x")],
                             policy=BackoffPolicy(base=5, maximum=60, auth_delay=30), token_cache=cache)
    sup.run()

    assert cache.invalidations == 1
    assert sup.delays == [30, 5]
    assert sink.registry.get_sample_value(
        "head_lag_errors_total", {"aggregator": "fake", "chain": "all", "error_type": "auth"}) == 1


def test_clean_return_exits_without_sleeping(sink, cancel):
    sup, sleeps = make_supervisor(sink, cancel, [])
    sup.run()

    assert sup.attempts == 1
    assert sleeps == []


def test_cancel_during_sleep_stops_loop(sink, cancel):
    client = ScriptedClient(sink, [ProtocolError("bad ack")] * 10)

    def cancelled_sleep(delay):
        cancel.set()
        return True

    sup = ReconnectSupervisor(client, cancel, BackoffPolicy(), sleep=cancelled_sleep)
    sup.run()

    assert client.runs == 1
    assert sup.delays == [5.0]


def test_unwrapped_exception_is_treated_as_connection_error(sink, cancel):
    sup, _ = make_supervisor(sink, cancel, [OSError("reset")])
    sup.run()

    assert sup.delays == [5]


@pytest.mark.parametrize("kwargs", [
    {"base": 0},
    {"base": 10, "maximum": 5},
    {"auth_delay": -1},
])
def test_invalid_backoff_policy(kwargs):
    with pytest.raises(ValueError):
        BackoffPolicy(**kwargs)
