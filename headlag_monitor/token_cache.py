"""
Bearer-token cache for the Defined.fi / Codex session credential.

The long-lived session cookie is exchanged for a short-lived JWT. The JWT is
cached until it is within `safety_margin` of its `exp` claim, or until a
stream reports an auth failure and calls invalidate().

Readers take no lock: the cached state is one immutable CachedToken swapped
in a single assignment, so a reader sees either the old or the new token,
never a mix. Refreshes are serialized by a lock with the freshness test
repeated after acquiring it, so N concurrent cold callers trigger one
exchange.
"""

import datetime as dt
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import jwt

from headlag_monitor.errors import AuthError, ProtocolError, RateLimitedError, TransportError, parse_retry_after
from headlag_monitor.httpclient import BROWSER_USER_AGENT, http_request

LOG = logging.getLogger("headlag_monitor.token_cache")

DEFINED_API_URL = "https://www.defined.fi/api"
CREATE_TOKEN_MUTATION = "mutation CreateApiToken { createApiTokens(input: { count: 1 }) { token } }"

DEFAULT_SAFETY_MARGIN_S = 60 * 60  # renew 1h before expiry
DEFAULT_VALIDITY_S = 24 * 60 * 60  # when exp cannot be decoded


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float
    refreshed_at: float


def decode_jwt_expiry(token: str) -> float:
    """Epoch seconds of the `exp` claim. Signature is not verified: we are not the audience."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise ValueError(f"cannot decode JWT: {e}") from e
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)) or exp <= 0:
        raise ValueError("no expiration in JWT")
    return float(exp)


class DefinedTokenIssuer:
    """Exchanges a Defined.fi session cookie for a Codex API JWT."""

    def __init__(self, url: str = DEFINED_API_URL, timeout_s: float = 10) -> None:
        self.url = url
        self.timeout_s = timeout_s

    def __call__(self, session_credential: str) -> str:
        headers = {
            "Accept-Language": "en-US,en;q=0.9",
            "Origin": "https://www.defined.fi",
            "Referer": "https://www.defined.fi/",
            "User-Agent": BROWSER_USER_AGENT,
            "Cookie": f"session={session_credential}",
        }
        body = {"operationName": "CreateApiToken",
                "query": CREATE_TOKEN_MUTATION, "variables": {}}
        resp = http_request(self.url, method="POST", headers=headers,
                            json_body=body, timeout_s=self.timeout_s)

        if resp.status == 429:
            retry_after = parse_retry_after(resp.headers.get("Retry-After"))
            raise RateLimitedError("token exchange rate limited (429)", retry_after=retry_after)
        if resp.status in (401, 403):
            raise AuthError(f"token exchange rejected session credential ({resp.status})")
        if resp.status != 200:
            raise TransportError(f"token exchange unexpected status {resp.status}: {resp.text()[:100]}")

        try:
            payload = resp.json()
            tokens = payload["data"]["createApiTokens"]
        except (ValueError, KeyError, TypeError) as e:
            raise ProtocolError(f"token exchange: unexpected response body: {e}") from e
        if not tokens or not isinstance(tokens[0], dict) or not tokens[0].get("token"):
            raise ProtocolError("token exchange: no token returned")
        return str(tokens[0]["token"])


class TokenCache:
    def __init__(
        self,
        exchange: Optional[Callable[[str], str]] = None,
        safety_margin_s: float = DEFAULT_SAFETY_MARGIN_S,
        default_validity_s: float = DEFAULT_VALIDITY_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange or DefinedTokenIssuer()
        self.safety_margin_s = safety_margin_s
        self.default_validity_s = default_validity_s
        self._clock = clock
        self._refresh_lock = threading.Lock()
        self._cached: Optional[CachedToken] = None
        self.exchange_count = 0

    @property
    def cached(self) -> Optional[CachedToken]:
        return self._cached

    def _fresh(self, cached: Optional[CachedToken]) -> bool:
        return cached is not None and self._clock() < cached.expires_at - self.safety_margin_s

    def get_token(self, session_credential: str) -> str:
        cached = self._cached
        if self._fresh(cached):
            return cached.token

        with self._refresh_lock:
            cached = self._cached
            if self._fresh(cached):
                return cached.token

            if not session_credential:
                raise AuthError("no session credential configured")

            # exchange errors propagate without touching the cache
            token = self._exchange(session_credential)
            self.exchange_count += 1

            now = self._clock()
            try:
                expires_at = decode_jwt_expiry(token)
            except ValueError as e:
                LOG.warning("[token] Could not decode token expiration: %s. Will cache for %.0fh.",
                            e, self.default_validity_s / 3600)
                expires_at = now + self.default_validity_s

            self._cached = CachedToken(token=token, expires_at=expires_at, refreshed_at=now)

        LOG.info("[token] Bearer token refreshed. Expires in %.1fh (at %s)",
                 (expires_at - now) / 3600,
                 dt.datetime.fromtimestamp(expires_at, tz=dt.timezone.utc).strftime("%Y-%m-%d %H:%M:%S"))
        return token

    def invalidate(self) -> None:
        if self._cached is not None:
            LOG.info("[token] Cached bearer token invalidated")
        self._cached = None
