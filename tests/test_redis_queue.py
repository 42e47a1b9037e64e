from __future__ import annotations

import asyncio
import uuid

import pytest

from simkl_scrobbler.config import get_settings
from simkl_scrobbler.queue.interfaces import Delivery
from simkl_scrobbler.queue.redis_queue import RedisDelayQueue
from tests._helpers.redis import redis_available, redis_client, redis_url

pytestmark = pytest.mark.skipif(not redis_available(), reason="redis not reachable (set REDIS_URL)")


@pytest.fixture
def prefix(monkeypatch: pytest.MonkeyPatch):
    p = f"scrobble-test-{uuid.uuid4().hex[:8]}"
    monkeypatch.setenv("REDIS_QUEUE_PREFIX", p)
    monkeypatch.setenv("REDIS_POLL_INTERVAL_MS", "50")
    get_settings.cache_clear()
    yield p
    r = redis_client()
    if r is not None:
        for key in r.scan_iter(f"{p}:*"):
            r.delete(key)


async def _wait_for(cond, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not cond():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.02)


def test_delayed_job_is_delivered(prefix: str) -> None:
    seen: list[Delivery] = []

    async def consumer(d: Delivery) -> bool:
        seen.append(d)
        return True

    async def main() -> dict:
        q = RedisDelayQueue(redis_url=redis_url())
        await q.start(consumer)
        await q.enqueue_delayed("job-1", '{"k": 1}', 100)
        await _wait_for(lambda: len(seen) == 1)
        await asyncio.sleep(0.1)
        snap = await q.snapshot()
        await q.stop()
        return snap

    snap = asyncio.run(main())
    assert [(d.job_id, d.payload, d.attempt) for d in seen] == [("job-1", '{"k": 1}', 1)]
    assert snap["counts"]["delayed"] == 0
    assert snap["counts"]["running"] == 0
    r = redis_client()
    assert r is not None and not r.exists(f"{prefix}:job:job-1:meta")


def test_cancel_before_fire_removes_job(prefix: str) -> None:
    seen: list[str] = []

    async def consumer(d: Delivery) -> bool:
        seen.append(d.job_id)
        return True

    async def main() -> tuple[bool, bool]:
        q = RedisDelayQueue(redis_url=redis_url())
        await q.start(consumer)
        await q.enqueue_delayed("job-1", "p", 300)
        first = await q.cancel("job-1")
        second = await q.cancel("job-1")
        await asyncio.sleep(0.6)
        await q.stop()
        return first, second

    assert asyncio.run(main()) == (True, False)
    assert seen == []


def test_cancel_while_running_is_refused(prefix: str) -> None:
    started = []

    async def main() -> bool:
        release = asyncio.Event()

        async def consumer(d: Delivery) -> bool:
            started.append(d.job_id)
            await release.wait()
            return True

        q = RedisDelayQueue(redis_url=redis_url())
        await q.start(consumer)
        await q.enqueue_delayed("job-1", "p", 0)
        await _wait_for(lambda: started == ["job-1"])
        refused = await q.cancel("job-1")
        release.set()
        await asyncio.sleep(0.1)
        await q.stop()
        return refused

    assert asyncio.run(main()) is False


def test_final_failure_goes_to_dead_letter(prefix: str, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCROBBLE_MAX_ATTEMPTS", "2")
    get_settings.cache_clear()
    attempts: list[int] = []

    async def consumer(d: Delivery) -> bool:
        attempts.append(d.attempt)
        return False

    async def main() -> dict:
        q = RedisDelayQueue(redis_url=redis_url())
        await q.start(consumer)
        await q.enqueue_delayed("job-1", "p", 0)
        await _wait_for(lambda: len(attempts) == 2)
        await asyncio.sleep(0.1)
        snap = await q.snapshot()
        await q.stop()
        return snap

    snap = asyncio.run(main())
    assert attempts == [1, 2]
    assert snap["counts"]["dead_letter"] == 1
    assert snap["dead_letter"][0].startswith("job-1|failed_after:2|")
