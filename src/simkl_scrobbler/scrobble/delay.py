from __future__ import annotations

import math
from dataclasses import dataclass

MIN_THRESHOLD = 0.1
MAX_THRESHOLD = 1.0
DEFAULT_THRESHOLD = 0.8
MIN_RUNTIME_MINUTES = 5.0
MS_PER_MINUTE = 60_000


@dataclass(frozen=True, slots=True)
class DelayPlan:
    fire: bool
    wait_ms: int
    threshold: float


def clamp_threshold(threshold: float | str | None) -> float:
    """
    Effective threshold, always within [0.1, 1.0].

    Unparseable or NaN input falls back to the default; +/-inf clamp to the bounds.
    """
    try:
        t = float(threshold)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_THRESHOLD
    if math.isnan(t):
        return DEFAULT_THRESHOLD
    return max(MIN_THRESHOLD, min(MAX_THRESHOLD, t))


def plan(
    runtime_minutes: float,
    threshold: float | str | None,
    *,
    min_runtime_minutes: float = MIN_RUNTIME_MINUTES,
) -> DelayPlan:
    """
    How long to wait after playback starts before marking the item watched.

    Content shorter than `min_runtime_minutes` (trailers, clips) never fires.
    """
    t = clamp_threshold(threshold)
    try:
        runtime = float(runtime_minutes)
    except (TypeError, ValueError):
        return DelayPlan(fire=False, wait_ms=0, threshold=t)
    if not math.isfinite(runtime) or runtime < float(min_runtime_minutes):
        return DelayPlan(fire=False, wait_ms=0, threshold=t)
    return DelayPlan(fire=True, wait_ms=int(round(runtime * MS_PER_MINUTE * t)), threshold=t)
