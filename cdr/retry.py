from __future__ import annotations


def backoff_delay(attempt: int, base_s: float, cap_s: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at cap_s.

    `attempt` is 0 for the wait after the first failure.
    """
    return min(float(cap_s), float(base_s) * (2 ** max(0, int(attempt))))
