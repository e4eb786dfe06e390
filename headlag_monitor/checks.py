"""
Metadata coverage checks run by the dispatcher for each newly discovered token.

For every provider we record whether logo / description / twitter / website
are present, plus the lookup latency, and keep running totals that are
rendered as a summary table every 50 checks, every 5 minutes and on shutdown.
"""

import datetime as dt
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from headlag_monitor.errors import AuthError, MonitorError, RateLimitedError
from headlag_monitor.httpclient import BROWSER_USER_AGENT, HttpResult, http_request, with_query
from headlag_monitor.instruments import chain_from_blockchain, is_solana, network_id_from_chain_id
from headlag_monitor.models import CheckRequest

LOG = logging.getLogger("headlag_monitor.checks")

MOBULA_TOKEN_DETAILS_URL = "https://api.mobula.io/api/2/token/details"
CODEX_GRAPHQL_URL = "https://graph.codex.io/graphql"
JUPITER_TOKEN_PAGE_URL = "https://jup.ag/tokens/"

NEXT_DATA_START = '<script id="__NEXT_DATA__" type="application/json">'
NEXT_DATA_END = "</script>"

COVERAGE_FIELDS = ("logo", "description", "twitter", "website")
REPORT_EVERY_CHECKS = 50
REPORT_INTERVAL_S = 5 * 60

CODEX_TOKEN_QUERY = """query GetToken($address: String!, $networkId: Int!) {
  token(input: { address: $address, networkId: $networkId }) {
    address
    name
    symbol
    info {
      imageThumbUrl
      imageSmallUrl
      imageLargeUrl
      description
    }
    socialLinks {
      twitter
      website
      telegram
    }
  }
}"""


@dataclass
class MetadataResult:
    has_logo: bool = False
    has_name: bool = False
    has_symbol: bool = False
    has_description: bool = False
    has_twitter: bool = False
    has_website: bool = False
    has_telegram: bool = False
    logo_url: str = ""
    response_ms: float = 0.0
    error: str = ""

    def field(self, name: str) -> bool:
        return bool(getattr(self, f"has_{name}"))


def _present(value) -> bool:
    return isinstance(value, str) and value.strip() != ""


def _status_error(resp: HttpResult) -> Optional[MetadataResult]:
    if resp.status == 200:
        return None
    return MetadataResult(response_ms=resp.elapsed_ms, error=f"status_{resp.status}")


# ───────── providers ─────────
class MobulaMetadata:
    provider = "mobula"

    def __init__(self, api_key: str = "", timeout_s: float = 10, request=http_request) -> None:
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._request = request

    def lookup(self, req: CheckRequest) -> Optional[MetadataResult]:
        blockchain = "solana" if req.chain_id == "solana:solana" else req.chain_id
        url = with_query(MOBULA_TOKEN_DETAILS_URL, {"address": req.address, "blockchain": blockchain})
        headers = {"Authorization": self.api_key} if self.api_key else {}
        try:
            resp = self._request(url, headers=headers, timeout_s=self.timeout_s)
        except MonitorError as e:
            return MetadataResult(error=f"request_error: {e}")

        failed = _status_error(resp)
        if failed:
            return failed
        try:
            data = resp.json()["data"]
        except (ValueError, KeyError, TypeError) as e:
            return MetadataResult(response_ms=resp.elapsed_ms, error=f"parse_error: {e}")
        if not isinstance(data, dict):
            return MetadataResult(response_ms=resp.elapsed_ms, error="token_not_found")

        socials = data.get("socials") or {}
        return MetadataResult(
            has_logo=_present(data.get("logo")),
            has_name=_present(data.get("name")),
            has_symbol=_present(data.get("symbol")),
            has_description=_present(data.get("description")),
            has_twitter=_present(socials.get("twitter")),
            has_website=_present(socials.get("website")),
            has_telegram=_present(socials.get("telegram")),
            logo_url=str(data.get("logo") or ""),
            response_ms=resp.elapsed_ms,
        )


class CodexMetadata:
    """
    Codex `token` query, authenticated with the cached bearer token.

    Without a session credential the check is skipped (lookup returns None).
    A 401 invalidates the cached token so the next lookup exchanges a new one.
    """

    provider = "codex"

    def __init__(self, token_cache, session_credential: str, timeout_s: float = 10, request=http_request) -> None:
        self.token_cache = token_cache
        self.session_credential = session_credential
        self.timeout_s = timeout_s
        self._request = request

    def lookup(self, req: CheckRequest) -> Optional[MetadataResult]:
        network_id = network_id_from_chain_id(req.chain_id)
        if network_id == 0:
            return MetadataResult(error="unsupported_chain")

        try:
            token = self.token_cache.get_token(self.session_credential)
        except AuthError as e:
            LOG.debug("[meta][codex] skipped: %s", e)
            return None
        except RateLimitedError as e:
            return MetadataResult(error=f"jwt_rate_limited: {e}")
        except MonitorError as e:
            return MetadataResult(error=f"jwt_token_error: {e}")

        body = {"query": CODEX_TOKEN_QUERY,
                "variables": {"address": req.address, "networkId": network_id}}
        try:
            resp = self._request(CODEX_GRAPHQL_URL, method="POST",
                                 headers={"Authorization": f"Bearer {token}"},
                                 json_body=body, timeout_s=self.timeout_s)
        except MonitorError as e:
            return MetadataResult(error=f"request_error: {e}")

        if resp.status in (401, 403):
            self.token_cache.invalidate()
        failed = _status_error(resp)
        if failed:
            return failed

        try:
            payload = resp.json()
        except ValueError as e:
            return MetadataResult(response_ms=resp.elapsed_ms, error=f"parse_error: {e}")
        if not isinstance(payload, dict):
            return MetadataResult(response_ms=resp.elapsed_ms, error="parse_error: not an object")
        errors = payload.get("errors")
        if errors:
            first = errors[0]
            message = first.get("message", first) if isinstance(first, dict) else first
            return MetadataResult(response_ms=resp.elapsed_ms, error=f"graphql_error: {message}")

        data = (payload.get("data") or {}).get("token")
        if not isinstance(data, dict) or not data.get("address"):
            return MetadataResult(response_ms=resp.elapsed_ms, error="token_not_found")

        info = data.get("info") or {}
        links = data.get("socialLinks") or {}
        images = [info.get("imageLargeUrl"), info.get("imageSmallUrl"), info.get("imageThumbUrl")]
        logo = next((u for u in images if _present(u)), "")
        return MetadataResult(
            has_logo=bool(logo),
            has_name=_present(data.get("name")),
            has_symbol=_present(data.get("symbol")),
            has_description=_present(info.get("description")),
            has_twitter=_present(links.get("twitter")),
            has_website=_present(links.get("website")),
            has_telegram=_present(links.get("telegram")),
            logo_url=logo,
            response_ms=resp.elapsed_ms,
        )


def extract_next_data(html: str) -> Optional[dict]:
    start = html.find(NEXT_DATA_START)
    if start == -1:
        return None
    start += len(NEXT_DATA_START)
    end = html.find(NEXT_DATA_END, start)
    if end == -1:
        return None
    try:
        data = json.loads(html[start:end])
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class JupiterMetadata:
    """Scrapes the jup.ag token page; Solana only, no description or socials."""

    provider = "jupiter"

    def __init__(self, timeout_s: float = 10, request=http_request) -> None:
        self.timeout_s = timeout_s
        self._request = request

    def lookup(self, req: CheckRequest) -> Optional[MetadataResult]:
        if not is_solana(req.chain_id):
            return None
        headers = {"User-Agent": BROWSER_USER_AGENT, "Accept": "text/html,application/xhtml+xml"}
        try:
            resp = self._request(JUPITER_TOKEN_PAGE_URL + req.address, headers=headers, timeout_s=self.timeout_s)
        except MonitorError as e:
            return MetadataResult(error=f"request_error: {e}")

        failed = _status_error(resp)
        if failed:
            return failed

        next_data = extract_next_data(resp.text())
        if next_data is None:
            return MetadataResult(response_ms=resp.elapsed_ms, error="next_data_not_found")

        queries = (((next_data.get("props") or {}).get("pageProps") or {})
                   .get("dehydratedState") or {}).get("queries") or []
        token = None
        for q in queries:
            data = ((q or {}).get("state") or {}).get("data")
            if isinstance(data, dict) and data.get("id") == req.address:
                token = data
                break
        if token is None:
            return MetadataResult(response_ms=resp.elapsed_ms, error="token_not_found")

        return MetadataResult(
            has_logo=_present(token.get("icon")),
            has_name=_present(token.get("name")),
            has_symbol=_present(token.get("symbol")),
            logo_url=str(token.get("icon") or ""),
            response_ms=resp.elapsed_ms,
        )


# ───────── aggregation ─────────
class ProviderCoverage:
    def __init__(self, provider: str) -> None:
        self.provider = provider
        self.total_checks = 0
        self.errors = 0
        self.total_latency_ms = 0.0
        self.counts: Dict[str, int] = {f: 0 for f in
                                       ("logo", "name", "symbol", "description", "twitter", "website", "telegram")}

    def pct(self, field: str) -> float:
        ok = self.total_checks - self.errors
        return 100.0 * self.counts[field] / ok if ok > 0 else 0.0

    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.total_checks if self.total_checks else 0.0


class CoverageStats:
    """Thread-safe running totals per provider."""

    def __init__(self, providers: Iterable[str] = ("mobula", "codex", "jupiter")) -> None:
        self._lock = threading.Lock()
        self.by_provider: Dict[str, ProviderCoverage] = {p: ProviderCoverage(p) for p in providers}

    def update(self, provider: str, result: MetadataResult) -> None:
        with self._lock:
            stats = self.by_provider.setdefault(provider, ProviderCoverage(provider))
            stats.total_checks += 1
            stats.total_latency_ms += result.response_ms
            if result.error:
                stats.errors += 1
                return
            for field in stats.counts:
                if result.field(field):
                    stats.counts[field] += 1

    def total_checks(self, provider: str) -> int:
        with self._lock:
            stats = self.by_provider.get(provider)
            return stats.total_checks if stats else 0

    def render(self) -> List[str]:
        hdr = (
            f"{'Provider':<10}"
            f"{'Checks':>8} "
            f"{'Logo':>7} "
            f"{'Name':>7} "
            f"{'Symbol':>7} "
            f"{'Desc':>7} "
            f"{'Twitter':>8} "
            f"{'Website':>8} "
            f"{'Telegram':>9} "
            f"{'AvgMs':>8} "
            f"{'Errors':>7}"
        )
        lines = [hdr, "=" * len(hdr)]
        with self._lock:
            for stats in self.by_provider.values():
                if stats.total_checks == 0:
                    lines.append(f"{stats.provider:<10}{0:>8} " + " ".join(f"{'-':>7}" for _ in range(4))
                                 + f" {'-':>8} {'-':>8} {'-':>9} {'-':>8} {0:>7}")
                    continue
                lines.append(
                    f"{stats.provider:<10}{stats.total_checks:>8} "
                    f"{stats.pct('logo'):>6.1f}% {stats.pct('name'):>6.1f}% "
                    f"{stats.pct('symbol'):>6.1f}% {stats.pct('description'):>6.1f}% "
                    f"{stats.pct('twitter'):>7.1f}% {stats.pct('website'):>7.1f}% "
                    f"{stats.pct('telegram'):>8.1f}% {stats.avg_latency_ms():>8.0f} {stats.errors:>7}"
                )
        return lines


class MetadataCoverageCheck:
    """Dispatcher check: query every provider for one token and record coverage."""

    name = "metadata-coverage"

    def __init__(
        self,
        sink,
        providers: Iterable,
        stats: Optional[CoverageStats] = None,
        report_every: int = REPORT_EVERY_CHECKS,
        report_interval_s: float = REPORT_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sink = sink
        self.providers = list(providers)
        self.stats = stats or CoverageStats(p.provider for p in self.providers)
        self.report_every = report_every
        self.report_interval_s = report_interval_s
        self._clock = clock
        self._last_report = clock()
        self.checks_run = 0

    def __call__(self, req: CheckRequest) -> None:
        chain = chain_from_blockchain(req.chain_id)
        marks = []
        for provider in self.providers:
            try:
                result = provider.lookup(req)
            except Exception as e:
                LOG.warning("[meta][%s] lookup failed for %s: %s", provider.provider, req.address, e)
                result = MetadataResult(error=f"exception: {e}")
            if result is None:
                marks.append(f"{provider.provider[0].upper()}:-")
                continue

            self.stats.update(provider.provider, result)
            for field in COVERAGE_FIELDS:
                self.sink.record_metadata_coverage(provider.provider, chain, field, result.field(field))
            self.sink.record_metadata_latency(provider.provider, chain, result.response_ms)
            if result.error:
                LOG.debug("[meta][%s] %s: %s", provider.provider, req.address, result.error)
            marks.append(provider.provider[0].upper() + ":" + "".join(
                "Y" if result.field(f) else "n" for f in ("logo", "description", "twitter")))

        self.checks_run += 1
        LOG.info("[meta] %s/%s | %s", req.symbol or req.address[:8], chain, " | ".join(marks))

        if self.report_every and self.checks_run % self.report_every == 0:
            self.report()

    def tick(self) -> None:
        if self._clock() - self._last_report >= self.report_interval_s:
            self.report()

    def report(self) -> None:
        self._last_report = self._clock()
        LOG.info("Metadata coverage - %s UTC", dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%d %H:%M:%S"))
        for line in self.stats.render():
            LOG.info(line)
