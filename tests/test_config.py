import json

import pytest

from headlag_monitor.config import DEFAULT_POLICIES, load_policies, load_settings, policy_with_overrides
from headlag_monitor.lag import LagPolicy


def test_settings_from_environ():
    settings = load_settings(environ={
        "MOBULA_API_KEY": " mkey ",
        "CODEX_API_KEY": "ckey",
        "DEFINED_SESSION_COOKIE": "cookie",
        "MONITOR_REGION": "eu-west",
        "METRICS_PORT": "9100",
    })

    assert settings.mobula_api_key == "mkey"
    assert settings.codex_api_key == "ckey"
    assert settings.defined_session_cookie == "cookie"
    assert settings.region == "eu-west"
    assert settings.metrics_port == 9100


def test_settings_defaults():
    settings = load_settings(environ={})
    assert settings.mobula_api_key == ""
    assert settings.metrics_port == 2112


def test_bad_metrics_port():
    with pytest.raises(SystemExit, match="METRICS_PORT"):
        load_settings(environ={"METRICS_PORT": "http"})


def test_env_file_does_not_override_process_env(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("MOBULA_API_KEY=from-file\nCODEX_API_KEY=codex-from-file\n")
    monkeypatch.setenv("MOBULA_API_KEY", "from-env")
    # record the key so teardown removes what load_dotenv writes
    monkeypatch.setenv("CODEX_API_KEY", "")
    monkeypatch.delenv("CODEX_API_KEY")

    settings = load_settings(env_file)

    assert settings.mobula_api_key == "from-env"
    assert settings.codex_api_key == "codex-from-file"


def test_default_policies():
    policies = load_policies()
    assert policies["codex"].backoff.base == 30.0
    assert policies["codex"].backoff.maximum == 300.0
    assert policies["mobula"].backoff.base == 5.0
    assert policies["codex-launchpad"].lag.skew_tolerance_ms == 0
    assert policies["mobula"].lag == LagPolicy()


def test_policy_overrides_keep_unset_fields():
    policy = policy_with_overrides(DEFAULT_POLICIES["codex"], {"backoff_base": 10, "negative": "absolute"})

    assert policy.backoff.base == 10.0
    assert policy.backoff.maximum == 300.0
    assert policy.lag.negative == "absolute"
    assert policy.lag.ceiling_ms == 120_000


def test_policy_unknown_field():
    with pytest.raises(ValueError, match="bogus"):
        policy_with_overrides(DEFAULT_POLICIES["mobula"], {"bogus": 1})


def write(tmp_path, data):
    path = tmp_path / "policies.json"
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)
    return path


def test_load_policies_file(tmp_path):
    policies = load_policies(write(tmp_path, {"geckoterminal": {"skew_tolerance_ms": 2000}}))

    assert policies["geckoterminal"].lag.skew_tolerance_ms == 2000
    assert policies["mobula"] == DEFAULT_POLICIES["mobula"]


@pytest.mark.parametrize("content, match", [
    ("{oops", "Invalid JSON"),
    (["codex"], "must be an object"),
    ({"binance": {}}, "Unknown provider"),
    ({"codex": 5}, "must be an object"),
    ({"codex": {"negative": "sometimes"}}, "Bad policy"),
    ({"codex": {"backoff_base": 0}}, "Bad policy"),
    ({"codex": {"backoff_base": "soon"}}, "Bad policy"),
])
def test_load_policies_errors(tmp_path, content, match):
    with pytest.raises(SystemExit, match=match):
        load_policies(write(tmp_path, content))


def test_load_policies_missing_file(tmp_path):
    with pytest.raises(SystemExit, match="not found"):
        load_policies(tmp_path / "missing.json")
