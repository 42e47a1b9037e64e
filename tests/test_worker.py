from __future__ import annotations

import asyncio

from simkl_scrobbler.queue.interfaces import Delivery
from simkl_scrobbler.scrobble.executor import ScrobbleExecutor
from simkl_scrobbler.scrobble.registry import PendingJobRegistry
from simkl_scrobbler.scrobble.worker import ScrobbleWorker
from tests._helpers.fakes import FakePrimary, FakeSecondary, anime_spec, movie_spec


def _worker(primary: FakePrimary, *, fence: bool = True) -> tuple[ScrobbleWorker, PendingJobRegistry]:
    reg = PendingJobRegistry()
    executor = ScrobbleExecutor(primary=primary, secondary=FakeSecondary(ok=False))
    return ScrobbleWorker(executor=executor, registry=reg, supersede_fence=fence), reg


def test_success_acks_and_clears_registry() -> None:
    primary = FakePrimary()
    worker, reg = _worker(primary)
    reg.record("user-a", "job-1")
    done = asyncio.run(worker(Delivery("job-1", movie_spec("user-a").to_payload())))
    assert done is True
    assert reg.lookup("user-a") is None
    assert len(primary.calls) == 1


def test_partial_failure_is_terminal() -> None:
    worker, reg = _worker(FakePrimary())
    reg.record("user-a", "job-1")
    spec = anime_spec("user-a", secondary_credential="ani", secondary_id=5)
    assert asyncio.run(worker(Delivery("job-1", spec.to_payload()))) is True
    assert reg.lookup("user-a") is None


def test_superseded_job_is_skipped_by_fence() -> None:
    primary = FakePrimary()
    worker, reg = _worker(primary)
    reg.record("user-a", "job-2")
    done = asyncio.run(worker(Delivery("job-1", movie_spec("user-a").to_payload())))
    assert done is True
    assert primary.calls == []
    assert reg.lookup("user-a") == "job-2"


def test_fence_disabled_runs_superseded_job_without_dropping_successor() -> None:
    primary = FakePrimary()
    worker, reg = _worker(primary, fence=False)
    reg.record("user-a", "job-2")
    asyncio.run(worker(Delivery("job-1", movie_spec("user-a").to_payload())))
    assert len(primary.calls) == 1
    assert reg.lookup("user-a") == "job-2"


def test_missing_registry_entry_does_not_block_execution() -> None:
    primary = FakePrimary()
    worker, _ = _worker(primary)
    assert asyncio.run(worker(Delivery("job-1", movie_spec("user-a").to_payload()))) is True
    assert len(primary.calls) == 1


def test_total_failure_with_attempts_left_keeps_handle() -> None:
    worker, reg = _worker(FakePrimary(ok=False))
    reg.record("user-a", "job-1")
    d = Delivery("job-1", movie_spec("user-a").to_payload(), attempt=1, max_attempts=3)
    assert asyncio.run(worker(d)) is False
    assert reg.lookup("user-a") == "job-1"


def test_total_failure_on_final_attempt_clears_handle() -> None:
    worker, reg = _worker(FakePrimary(ok=False))
    reg.record("user-a", "job-1")
    d = Delivery("job-1", movie_spec("user-a").to_payload(), attempt=3, max_attempts=3)
    assert asyncio.run(worker(d)) is False
    assert reg.lookup("user-a") is None


def test_unreadable_payload_is_dropped() -> None:
    worker, _ = _worker(FakePrimary())
    assert asyncio.run(worker(Delivery("job-x", "{not json"))) is True
    assert asyncio.run(worker(Delivery("job-y", '{"content_kind": "movie"}'))) is True
