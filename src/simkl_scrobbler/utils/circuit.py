from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from simkl_scrobbler.config import get_settings


@dataclass(frozen=True, slots=True)
class CircuitState:
    state: str  # closed|open|half_open
    failures: int
    opened_at: float
    half_open_inflight: bool


class CircuitCall:
    """One guarded remote call; the caller reports how it went."""

    __slots__ = ("allowed", "outcome")

    def __init__(self, allowed: bool) -> None:
        self.allowed = allowed
        self.outcome: bool | None = None

    def succeeded(self) -> None:
        self.outcome = True

    def failed(self) -> None:
        self.outcome = False


class Circuit:
    """
    Breaker shared by every client of one remote service (simkl, anilist).

    After CB_FAIL_THRESHOLD consecutive failures calls are refused for
    CB_COOLDOWN_SEC; then a single trial call decides between closing and
    re-opening. Calls go through `attempt()`, which always settles the call:
    a call that ends without reporting an outcome (cancelled by a step timeout
    or store shutdown, or raising) counts as a failure, so a half-open trial
    can never stay in flight.
    """

    _registry: dict[str, Circuit] = {}
    _reg_lock = threading.Lock()

    def __init__(self, service: str, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.service = str(service)
        self._clock = clock
        self._lock = threading.Lock()
        self._state = "closed"
        self._failures = 0
        self._opened_at = 0.0
        self._trial_inflight = False

    @classmethod
    def get(cls, service: str) -> Circuit:
        with cls._reg_lock:
            c = cls._registry.get(service)
            if c is None:
                c = cls._registry[service] = cls(service)
            return c

    @classmethod
    def reset_all(cls) -> None:
        with cls._reg_lock:
            cls._registry.clear()

    def snapshot(self) -> CircuitState:
        with self._lock:
            return CircuitState(self._state, self._failures, self._opened_at, self._trial_inflight)

    @contextmanager
    def attempt(self) -> Iterator[CircuitCall]:
        call = CircuitCall(self._acquire())
        try:
            yield call
        finally:
            if call.allowed:
                self._settle(bool(call.outcome))

    def _acquire(self) -> bool:
        with self._lock:
            if self._state == "open":
                cooldown = float(get_settings().cb_cooldown_sec)
                if self._clock() - self._opened_at < cooldown:
                    return False
                self._state = "half_open"
                self._trial_inflight = False
            if self._state == "half_open":
                if self._trial_inflight:
                    return False
                self._trial_inflight = True
            return True

    def _settle(self, ok: bool) -> None:
        with self._lock:
            trial = self._state == "half_open"
            self._trial_inflight = False
            if ok:
                self._state = "closed"
                self._failures = 0
                self._opened_at = 0.0
                return
            self._failures += 1
            threshold = max(1, int(get_settings().cb_fail_threshold))
            if trial or self._failures >= threshold:
                self._state = "open"
                self._opened_at = self._clock()
