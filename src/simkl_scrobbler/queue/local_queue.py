from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from simkl_scrobbler.config import get_settings
from simkl_scrobbler.ops import audit
from simkl_scrobbler.utils.log import logger

from .interfaces import Delivery, JobConsumer, JobStore, QueueStatus


@dataclass(frozen=True, slots=True)
class LocalQueueConfig:
    concurrency: int
    max_attempts: int
    base_backoff_ms: int
    backoff_cap_ms: int
    dlq_max: int


@dataclass(slots=True)
class _LocalJob:
    job_id: str
    payload: str
    due: float
    attempt: int = 1
    timer: asyncio.TimerHandle | None = None


class LocalDelayQueue(JobStore):
    """
    In-process fallback job store built on event-loop timers.

    Notes:
    - Not durable: pending scrobbles are lost on restart (flagged in the status banner).
    - Not multi-instance safe; it is the fallback when Redis is unavailable.
    - A job stays cancellable until it holds a worker slot, like the ready set in Redis.
    """

    def __init__(
        self,
        *,
        concurrency: int | None = None,
        max_attempts: int | None = None,
    ) -> None:
        s = get_settings()
        self._cfg = LocalQueueConfig(
            concurrency=max(1, int(concurrency or getattr(s, "scrobble_worker_concurrency", 5) or 5)),
            max_attempts=max(1, int(max_attempts or getattr(s, "scrobble_max_attempts", 1) or 1)),
            base_backoff_ms=max(0, int(getattr(s, "redis_queue_backoff_ms", 5_000) or 0)),
            backoff_cap_ms=max(0, int(getattr(s, "redis_queue_backoff_cap_ms", 300_000) or 0)),
            dlq_max=max(1, int(getattr(s, "redis_dlq_max", 50) or 50)),
        )
        self._pending: dict[str, _LocalJob] = {}
        # Due jobs waiting for a worker slot; still cancellable.
        self._ready: dict[str, _LocalJob] = {}
        self._running: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._dead: deque[dict[str, Any]] = deque(maxlen=self._cfg.dlq_max)
        self._consumer: JobConsumer | None = None
        self._sem: asyncio.Semaphore | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopping = False

    def status(self) -> QueueStatus:
        return QueueStatus(
            mode="local",
            redis_configured=False,
            redis_ok=False,
            detail="local in-process queue active",
            banner="Redis unavailable; pending scrobbles are not durable",
        )

    async def start(self, consumer: JobConsumer) -> None:
        if self._consumer is not None:
            return
        self._stopping = False
        self._consumer = consumer
        self._loop = asyncio.get_running_loop()
        self._sem = asyncio.Semaphore(self._cfg.concurrency)
        for job in list(self._pending.values()):
            self._arm(job)
        logger.info("queue_backend_started", queue_mode="local", concurrency=self._cfg.concurrency)
        audit.emit("queue.backend_started", outcome="ok", meta={"mode": "local"})

    async def stop(self) -> None:
        self._stopping = True
        for job in self._pending.values():
            if job.timer is not None:
                job.timer.cancel()
                job.timer = None
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            with suppress(asyncio.CancelledError, Exception):
                await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        for job in self._ready.values():
            self._pending[job.job_id] = job
        self._ready.clear()
        self._running.clear()
        self._consumer = None
        self._loop = None

    async def enqueue_delayed(self, job_id: str, payload: str, delay_ms: int) -> None:
        job_id = str(job_id or "").strip()
        if not job_id:
            raise ValueError("job_id is required")
        prior = self._pending.pop(job_id, None) or self._ready.pop(job_id, None)
        if prior is not None and prior.timer is not None:
            prior.timer.cancel()
        job = _LocalJob(job_id=job_id, payload=str(payload), due=time.time() + max(0, int(delay_ms)) / 1000.0)
        self._pending[job_id] = job
        if self._consumer is not None:
            self._arm(job)
        logger.info("queue_submit", queue_mode="local", job_id=job_id, delay_ms=int(delay_ms))

    async def cancel(self, job_id: str) -> bool:
        job = self._pending.pop(str(job_id), None) or self._ready.pop(str(job_id), None)
        if job is None:
            return False
        if job.timer is not None:
            job.timer.cancel()
        logger.info("queue_cancel", queue_mode="local", job_id=str(job_id))
        return True

    async def snapshot(self) -> dict[str, Any]:
        return {
            "mode": "local",
            "counts": {
                "delayed": len(self._pending),
                "ready": len(self._ready),
                "running": len(self._running),
                "dead_letter": len(self._dead),
            },
            "dead_letter": list(self._dead),
        }

    def _arm(self, job: _LocalJob) -> None:
        assert self._loop is not None
        if job.timer is not None:
            job.timer.cancel()
        delay = max(0.0, job.due - time.time())
        job.timer = self._loop.call_later(delay, self._fire, job.job_id)

    def _fire(self, job_id: str) -> None:
        job = self._pending.pop(job_id, None)
        if job is None or self._stopping:
            return
        job.timer = None
        self._ready[job_id] = job
        task = asyncio.create_task(self._deliver(job), name=f"queue.local.deliver:{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, job: _LocalJob) -> None:
        assert self._sem is not None and self._consumer is not None
        delivery = Delivery(
            job_id=job.job_id,
            payload=job.payload,
            attempt=job.attempt,
            max_attempts=self._cfg.max_attempts,
        )
        try:
            async with self._sem:
                if self._ready.get(job.job_id) is not job:
                    logger.info("queue_skip_cancelled", queue_mode="local", job_id=job.job_id)
                    return
                del self._ready[job.job_id]
                self._running.add(job.job_id)
                try:
                    done = bool(await self._consumer(delivery))
                except asyncio.CancelledError:
                    raise
                except Exception as ex:
                    logger.warning("queue_consumer_error", queue_mode="local", job_id=job.job_id, error=str(ex))
                    done = False
        finally:
            self._running.discard(job.job_id)

        if done:
            return
        if delivery.final:
            self._dead_letter(job, reason=f"failed_after:{job.attempt}")
            return
        self._defer(job)

    def _defer(self, job: _LocalJob) -> None:
        att = max(1, int(job.attempt))
        delay_ms = min(self._cfg.backoff_cap_ms, self._cfg.base_backoff_ms * (2 ** max(0, att - 1)))
        job.attempt = att + 1
        job.due = time.time() + delay_ms / 1000.0
        self._pending[job.job_id] = job
        if not self._stopping and self._loop is not None:
            self._arm(job)
        logger.info(
            "queue_deferred",
            queue_mode="local",
            job_id=job.job_id,
            attempt=int(job.attempt),
            delay_ms=int(delay_ms),
        )

    def _dead_letter(self, job: _LocalJob, *, reason: str) -> None:
        self._dead.appendleft({"job_id": job.job_id, "reason": reason, "ts_ms": int(time.time() * 1000)})
        logger.warning("queue_dead_letter", queue_mode="local", job_id=job.job_id, reason=reason)
        audit.emit("queue.dead_letter", job_id=job.job_id, outcome="dead_letter", meta={"mode": "local", "reason": reason})
