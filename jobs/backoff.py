from __future__ import annotations

import random

DEFAULT_BASE_SECONDS = 10
DEFAULT_CAP_SECONDS = 1800


def compute_backoff(
    attempts: int,
    base: float = DEFAULT_BASE_SECONDS,
    cap: float = DEFAULT_CAP_SECONDS,
) -> float:
    """
    Delay before a failed job becomes claimable again.

    min(base * 2^(attempts-1), cap). attempts is the count after the
    claim that just failed, so it is always >= 1.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")

    # keep the exponent bounded so huge attempt counts don't overflow
    exponent = min(attempts - 1, 32)
    return min(base * (2 ** exponent), cap)


def jittered(seconds: float, ratio: float = 0.1) -> float:
    """Spread a sleep by +/- ratio so idle workers don't poll in lockstep."""
    if seconds <= 0:
        return 0.0
    spread = seconds * ratio
    return max(0.0, seconds + random.uniform(-spread, spread))
