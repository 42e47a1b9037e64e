from __future__ import annotations

import pytest

from simkl_scrobbler.config import get_settings
from simkl_scrobbler.utils.circuit import Circuit


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _call(c: Circuit, ok: bool | None) -> bool:
    with c.attempt() as call:
        if call.allowed and ok is not None:
            if ok:
                call.succeeded()
            else:
                call.failed()
        return call.allowed


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    monkeypatch.setenv("CB_FAIL_THRESHOLD", "2")
    monkeypatch.setenv("CB_COOLDOWN_SEC", "30")
    get_settings.cache_clear()
    return FakeClock()


def test_opens_after_threshold_and_refuses_until_cooldown(clock: FakeClock) -> None:
    c = Circuit("unit", clock=clock)
    assert _call(c, True) is True
    assert _call(c, False) is True
    assert c.snapshot().state == "closed"
    assert _call(c, False) is True
    assert c.snapshot().state == "open"
    assert _call(c, True) is False
    clock.now += 29
    assert _call(c, True) is False


def test_success_resets_failure_count(clock: FakeClock) -> None:
    c = Circuit("unit", clock=clock)
    _call(c, False)
    _call(c, True)
    _call(c, False)
    assert c.snapshot().state == "closed"
    assert c.snapshot().failures == 1


def test_half_open_allows_one_trial(clock: FakeClock) -> None:
    c = Circuit("unit", clock=clock)
    _call(c, False)
    _call(c, False)
    clock.now += 30
    with c.attempt() as trial:
        assert trial.allowed
        assert c.snapshot().state == "half_open"
        assert _call(c, True) is False
        trial.succeeded()
    assert c.snapshot().state == "closed"
    assert _call(c, True) is True


def test_failed_trial_reopens(clock: FakeClock) -> None:
    c = Circuit("unit", clock=clock)
    _call(c, False)
    _call(c, False)
    clock.now += 30
    assert _call(c, False) is True
    snap = c.snapshot()
    assert snap.state == "open"
    assert snap.half_open_inflight is False
    assert snap.opened_at == clock.now


def test_unsettled_trial_counts_as_failure_and_is_released(clock: FakeClock) -> None:
    c = Circuit("unit", clock=clock)
    _call(c, False)
    _call(c, False)
    clock.now += 30
    with pytest.raises(RuntimeError):
        with c.attempt() as trial:
            assert trial.allowed
            raise RuntimeError("interrupted")
    assert c.snapshot().state == "open"
    assert c.snapshot().half_open_inflight is False
    clock.now += 30
    assert _call(c, True) is True
    assert c.snapshot().state == "closed"


def test_registry_is_per_service() -> None:
    c = Circuit.get("simkl")
    assert Circuit.get("simkl") is c
    assert Circuit.get("anilist") is not c
    Circuit.reset_all()
    assert Circuit.get("simkl") is not c
