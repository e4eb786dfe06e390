"""
Runtime configuration.

Credentials come from the process environment, falling back to a `.env` file
in the working directory (process env wins). A missing key disables the
providers that need it.

Per-provider policies (reconnect backoff, lag bounds) have built-in defaults
and can be overridden with a JSON file:

{
  "codex": {"backoff_base": 30, "backoff_max": 300, "rate_limit_delay": 120},
  "geckoterminal": {"negative": "absolute", "skew_tolerance_ms": 2000}
}
"""

import json
import logging
import os
import pathlib
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

from headlag_monitor.lag import LagPolicy
from headlag_monitor.supervisor import BackoffPolicy

LOG = logging.getLogger("headlag_monitor.config")

DEFAULT_METRICS_PORT = 2112

PROVIDERS = ("mobula", "mobula-pulse", "codex", "codex-launchpad", "geckoterminal")


@dataclass(frozen=True)
class Settings:
    mobula_api_key: str = ""
    codex_api_key: str = ""
    defined_session_cookie: str = ""
    coingecko_api_key: str = ""
    region: str = ""
    metrics_port: int = DEFAULT_METRICS_PORT


def load_settings(env_file: Optional[pathlib.Path] = pathlib.Path(".env"),
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    if environ is None:
        if env_file is not None and env_file.exists():
            load_dotenv(env_file, override=False)
            LOG.debug("Loaded %s", env_file)
        environ = os.environ

    def get(key: str) -> str:
        return (environ.get(key) or "").strip()

    port_raw = get("METRICS_PORT")
    try:
        port = int(port_raw) if port_raw else DEFAULT_METRICS_PORT
    except ValueError as exc:
        raise SystemExit(f"METRICS_PORT must be an integer, got {port_raw!r}") from exc

    return Settings(
        mobula_api_key=get("MOBULA_API_KEY"),
        codex_api_key=get("CODEX_API_KEY"),
        defined_session_cookie=get("DEFINED_SESSION_COOKIE"),
        coingecko_api_key=get("COINGECKO_API_KEY"),
        region=get("MONITOR_REGION"),
        metrics_port=port,
    )


# ───────── provider policies ─────────
@dataclass(frozen=True)
class ProviderPolicy:
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    lag: LagPolicy = field(default_factory=LagPolicy)


DEFAULT_POLICIES: Dict[str, ProviderPolicy] = {
    "mobula": ProviderPolicy(),
    "mobula-pulse": ProviderPolicy(),
    "geckoterminal": ProviderPolicy(),
    # token exchange is rate limited; back off harder
    "codex": ProviderPolicy(backoff=BackoffPolicy(base=30.0, maximum=300.0, auth_delay=30.0, rate_limit_delay=120.0)),
    # creation timestamps are second precision; anything negative is noise
    "codex-launchpad": ProviderPolicy(lag=LagPolicy(skew_tolerance_ms=0)),
}

BACKOFF_KEYS = {"backoff_base": "base", "backoff_max": "maximum",
                "auth_delay": "auth_delay", "rate_limit_delay": "rate_limit_delay"}
LAG_KEYS = {"ceiling_ms": "ceiling_ms", "skew_tolerance_ms": "skew_tolerance_ms", "negative": "negative"}


def policy_with_overrides(base: ProviderPolicy, overrides: Mapping[str, object]) -> ProviderPolicy:
    unknown = set(overrides) - set(BACKOFF_KEYS) - set(LAG_KEYS)
    if unknown:
        raise ValueError(f"unknown policy field(s): {', '.join(sorted(unknown))}")
    backoff = replace(base.backoff, **{BACKOFF_KEYS[k]: float(v) for k, v in overrides.items() if k in BACKOFF_KEYS})
    lag_fields = {}
    for k, v in overrides.items():
        if k in LAG_KEYS:
            lag_fields[LAG_KEYS[k]] = v if k == "negative" else float(v)
    return ProviderPolicy(backoff=backoff, lag=replace(base.lag, **lag_fields))


def load_policies(path: Optional[pathlib.Path] = None) -> Dict[str, ProviderPolicy]:
    policies = dict(DEFAULT_POLICIES)
    if path is None:
        return policies

    try:
        data = json.loads(path.read_text())
    except FileNotFoundError as exc:
        raise SystemExit(f"Policy file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Invalid JSON in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise SystemExit(f"{path} must be an object of provider -> policy fields")

    for provider, overrides in data.items():
        if provider not in policies:
            raise SystemExit(f"Unknown provider '{provider}' in {path} (known: {', '.join(PROVIDERS)})")
        if not isinstance(overrides, dict):
            raise SystemExit(f"Policy for '{provider}' must be an object in {path}")
        try:
            policies[provider] = policy_with_overrides(policies[provider], overrides)
        except (TypeError, ValueError) as exc:
            raise SystemExit(f"Bad policy for '{provider}' in {path}: {exc}") from exc
    return policies
