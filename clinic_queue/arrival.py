from __future__ import annotations

"""Arrival model for the demo generator.

Patients walking up to the kiosk are modelled as a Poisson process with rate
λ (patients/second): inter-arrival times are i.i.d. Exponential(λ). The
generator samples a waiting time, sleeps, and issues one ticket.
"""

import random

from .models import Triage

# Rough emergency-department mix, most patients low acuity.
DEFAULT_TRIAGE_WEIGHTS: dict[Triage | None, float] = {
    Triage.RED: 0.02,
    Triage.ORANGE: 0.08,
    Triage.YELLOW: 0.20,
    Triage.GREEN: 0.30,
    Triage.BLUE: 0.10,
    None: 0.30,
}


def sample_exponential_interarrival(*, rate_per_sec: float, rng: random.Random | None = None) -> float:
    """Sample the next inter-arrival time (seconds) for a Poisson process.

    Args:
        rate_per_sec: λ, the arrival rate in patients/second. Must be > 0.
        rng: optional RNG (useful for deterministic tests).
    """
    if rate_per_sec <= 0:
        raise ValueError("rate_per_sec must be > 0")

    r = rng or random
    return float(r.expovariate(rate_per_sec))


def sample_triage(
    *,
    weights: dict[Triage | None, float] | None = None,
    rng: random.Random | None = None,
) -> Triage | None:
    w = weights or DEFAULT_TRIAGE_WEIGHTS
    if any(v < 0 for v in w.values()) or sum(w.values()) <= 0:
        raise ValueError("triage weights must be non-negative and not all zero")
    r = rng or random
    levels = list(w.keys())
    return r.choices(levels, weights=[w[k] for k in levels], k=1)[0]
