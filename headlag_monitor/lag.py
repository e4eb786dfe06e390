"""
Head-lag computation.

lag = receipt instant - on-chain instant, both in epoch milliseconds.

A value outside [-skew_tolerance_ms, ceiling_ms] is a backfilled or stale
event, not indexation lag, and is never forwarded. Negative values inside the
tolerance are small clock skew; how they are reported is a per-provider policy.
"""

import logging
from dataclasses import dataclass
from typing import Optional

LOG = logging.getLogger("headlag_monitor.lag")

DEFAULT_CEILING_MS = 120_000  # 2 minutes
DEFAULT_SKEW_TOLERANCE_MS = 1_000

NEGATIVE_KEEP = "keep"
NEGATIVE_CLAMP = "clamp"
NEGATIVE_ABSOLUTE = "absolute"
NEGATIVE_MODES = (NEGATIVE_KEEP, NEGATIVE_CLAMP, NEGATIVE_ABSOLUTE)


@dataclass(frozen=True)
class LagPolicy:
    ceiling_ms: float = DEFAULT_CEILING_MS
    skew_tolerance_ms: float = DEFAULT_SKEW_TOLERANCE_MS
    negative: str = NEGATIVE_KEEP

    def __post_init__(self) -> None:
        if self.negative not in NEGATIVE_MODES:
            raise ValueError(
                f"negative must be one of {NEGATIVE_MODES}, got {self.negative!r}")
        if self.ceiling_ms <= 0:
            raise ValueError("ceiling_ms must be positive")
        if self.skew_tolerance_ms < 0:
            raise ValueError("skew_tolerance_ms must be >= 0")


DEFAULT_LAG_POLICY = LagPolicy()


def compute_lag(event_ms: float, receipt_ms: float, policy: LagPolicy = DEFAULT_LAG_POLICY) -> Optional[float]:
    """
    Return the lag in milliseconds, or None when the sample must be dropped.

    >>> compute_lag(1_000, 1_150)
    150
    >>> compute_lag(1_000, -4_000) is None
    True
    """
    lag = receipt_ms - event_ms

    if lag > policy.ceiling_ms:
        LOG.debug("dropping lag %.0fms above ceiling %.0fms",
                  lag, policy.ceiling_ms)
        return None

    if lag < 0:
        if -lag > policy.skew_tolerance_ms:
            LOG.debug("dropping lag %.0fms below skew tolerance -%.0fms",
                      lag, policy.skew_tolerance_ms)
            return None
        if policy.negative == NEGATIVE_CLAMP:
            return 0
        if policy.negative == NEGATIVE_ABSOLUTE:
            return -lag

    return lag
