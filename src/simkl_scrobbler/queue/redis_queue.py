from __future__ import annotations

import asyncio
import os
import secrets
import socket
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import NoScriptError

from simkl_scrobbler.config import get_settings
from simkl_scrobbler.errors import JobStoreUnavailable
from simkl_scrobbler.ops import audit
from simkl_scrobbler.utils.log import logger

from .interfaces import Delivery, JobConsumer, JobStore, QueueStatus


def _now_ms() -> int:
    return int(time.time() * 1000)


# KEYS[1]=delayed zset, KEYS[2]=ready zset
# ARGV[1]=now_ms, ARGV[2]=batch size
_MOVE_DUE_LUA = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, job_id in ipairs(due) do
  local score = redis.call('ZSCORE', KEYS[1], job_id)
  redis.call('ZREM', KEYS[1], job_id)
  redis.call('ZADD', KEYS[2], score, job_id)
end
return #due
"""

# KEYS[1]=ready zset, KEYS[2]=running zset
# ARGV[1]=job key prefix, ARGV[2]=lock_ttl_ms, ARGV[3]=token, ARGV[4]=now_ms
_CLAIM_LUA = """
local items = redis.call('ZRANGE', KEYS[1], 0, 0)
if (not items) or (#items == 0) then
  return nil
end
local job_id = items[1]
local lock_key = ARGV[1] .. job_id .. ':lock'
local ok = redis.call('SET', lock_key, ARGV[3], 'NX', 'PX', tonumber(ARGV[2]))
if not ok then
  return nil
end
redis.call('ZREM', KEYS[1], job_id)
redis.call('ZADD', KEYS[2], tonumber(ARGV[4]) + tonumber(ARGV[2]), job_id)
return job_id
"""

# KEYS[1]=delayed zset, KEYS[2]=ready zset, KEYS[3]=job meta hash
# ARGV[1]=job_id
_CANCEL_LUA = """
local removed = redis.call('ZREM', KEYS[1], ARGV[1]) + redis.call('ZREM', KEYS[2], ARGV[1])
if removed > 0 then
  redis.call('DEL', KEYS[3])
end
return removed
"""

# KEYS[1]=running zset, KEYS[2]=ready zset
# ARGV[1]=now_ms, ARGV[2]=job key prefix
_RECLAIM_LUA = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 50)
local n = 0
for _, job_id in ipairs(expired) do
  if redis.call('EXISTS', ARGV[2] .. job_id .. ':lock') == 0 then
    redis.call('ZREM', KEYS[1], job_id)
    redis.call('ZADD', KEYS[2], tonumber(ARGV[1]), job_id)
    n = n + 1
  end
end
return n
"""

_RELEASE_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
else
  return 0
end
"""


@dataclass(frozen=True, slots=True)
class RedisQueueConfig:
    prefix: str
    consumer: str
    concurrency: int
    lock_ttl_ms: int
    max_attempts: int
    base_backoff_ms: int
    backoff_cap_ms: int
    poll_interval_ms: int
    job_meta_ttl_ms: int
    dlq_max: int


class RedisDelayQueue(JobStore):
    """
    Durable delayed-job store on Redis.

    Layout:
    - delayed zset (score = due ms) holds armed jobs
    - ready zset holds due jobs waiting for a worker slot
    - running zset (score = lease deadline) + per-job lock key while a job executes
    - per-job meta hash holds the payload and attempt counter

    A job is cancellable while it sits in delayed or ready. Moves, claims and
    cancels are single Lua scripts, so cancel and claim never both win.
    Jobs whose lock expired (worker crash) are put back on ready.
    """

    def __init__(self, *, redis_url: str, client: Any | None = None) -> None:
        self._redis_url = str(redis_url or "").strip()
        self._client = client
        self._consumer: JobConsumer | None = None
        self._tasks: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._sem: asyncio.Semaphore | None = None
        self._stopping = False
        self._healthy = False
        self._sha: dict[str, str] = {}
        self._lock_token_by_job: dict[str, str] = {}

        s = get_settings()
        prefix = str(getattr(s, "redis_queue_prefix", "scrobble") or "scrobble").strip().strip(":") or "scrobble"
        self._cfg = RedisQueueConfig(
            prefix=prefix,
            consumer=f"{prefix}:{_consumer_id()}",
            concurrency=max(1, int(getattr(s, "scrobble_worker_concurrency", 5) or 5)),
            lock_ttl_ms=max(10_000, int(getattr(s, "redis_lock_ttl_ms", 120_000) or 120_000)),
            max_attempts=max(1, int(getattr(s, "scrobble_max_attempts", 1) or 1)),
            base_backoff_ms=max(0, int(getattr(s, "redis_queue_backoff_ms", 5_000) or 0)),
            backoff_cap_ms=max(0, int(getattr(s, "redis_queue_backoff_cap_ms", 300_000) or 0)),
            poll_interval_ms=max(50, int(getattr(s, "redis_poll_interval_ms", 500) or 500)),
            job_meta_ttl_ms=max(60_000, int(getattr(s, "redis_job_meta_ttl_ms", 7 * 24 * 3600_000) or 0)),
            dlq_max=max(1, int(getattr(s, "redis_dlq_max", 50) or 50)),
        )

    def _redis(self):
        if self._client is not None:
            return self._client
        if not self._redis_url:
            return None
        try:
            self._client = aioredis.Redis.from_url(self._redis_url, decode_responses=True)
            return self._client
        except Exception as ex:
            # Do not log the URL (may contain credentials).
            logger.warning("queue_redis_init_failed", error=str(ex))
            return None

    def _require(self):
        r = self._redis()
        if r is None:
            raise JobStoreUnavailable("redis_unavailable")
        return r

    async def ping(self) -> bool:
        r = self._redis()
        if r is None:
            return False
        try:
            return bool(await r.ping())
        except Exception:
            return False

    def status(self) -> QueueStatus:
        if not self._redis_url and self._client is None:
            return QueueStatus(
                mode="redis",
                redis_configured=False,
                redis_ok=False,
                detail="REDIS_URL not set",
                banner="Redis not configured",
            )
        if self._healthy:
            return QueueStatus(
                mode="redis",
                redis_configured=True,
                redis_ok=True,
                detail="redis queue active",
                banner=None,
            )
        return QueueStatus(
            mode="redis",
            redis_configured=True,
            redis_ok=False,
            detail="redis unreachable; scheduling will fail until it recovers",
            banner="Redis unavailable",
        )

    async def start(self, consumer: JobConsumer) -> None:
        if self._tasks:
            return
        self._stopping = False
        self._consumer = consumer
        self._sem = asyncio.Semaphore(self._cfg.concurrency)
        self._healthy = await self.ping()
        await self._prepare_scripts()

        self._tasks.append(asyncio.create_task(self._health_loop(), name="queue.redis.health"))
        self._tasks.append(asyncio.create_task(self._delayed_mover_loop(), name="queue.redis.delayed"))
        self._tasks.append(asyncio.create_task(self._consume_loop(), name="queue.redis.consume"))

        logger.info("queue_backend_started", queue_mode="redis", prefix=self._cfg.prefix)
        audit.emit("queue.backend_started", outcome="ok", meta={"mode": "redis", "prefix": self._cfg.prefix})

    async def stop(self) -> None:
        self._stopping = True
        for t in list(self._tasks):
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        # In-flight deliveries finish; their locks expire otherwise and the jobs are reclaimed.
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self._inflight.clear()
        self._consumer = None
        if self._client is not None and self._redis_url:
            with suppress(Exception):
                await self._client.aclose()
            self._client = None

    async def enqueue_delayed(self, job_id: str, payload: str, delay_ms: int) -> None:
        job_id = str(job_id or "").strip()
        if not job_id:
            raise ValueError("job_id is required")
        r = self._require()
        due = _now_ms() + max(0, int(delay_ms))
        try:
            async with r.pipeline(transaction=True) as pipe:
                pipe.hset(
                    self._job_meta_key(job_id),
                    mapping={
                        "job_id": job_id,
                        "payload": str(payload),
                        "attempts": "0",
                        "created_ms": str(_now_ms()),
                        "due_ms": str(due),
                    },
                )
                pipe.pexpire(self._job_meta_key(job_id), self._cfg.job_meta_ttl_ms + max(0, int(delay_ms)))
                pipe.zadd(self._delayed_key(), {job_id: float(due)})
                await pipe.execute()
        except Exception as ex:
            raise JobStoreUnavailable(f"redis enqueue failed: {ex}") from ex
        logger.info("queue_submit", queue_mode="redis", job_id=job_id, delay_ms=int(delay_ms))

    async def cancel(self, job_id: str) -> bool:
        job_id = str(job_id or "").strip()
        if not job_id:
            return False
        r = self._require()
        try:
            removed = await self._eval(
                "cancel",
                r,
                [self._delayed_key(), self._ready_key(), self._job_meta_key(job_id)],
                [job_id],
            )
        except Exception as ex:
            raise JobStoreUnavailable(f"redis cancel failed: {ex}") from ex
        ok = int(removed or 0) > 0
        logger.info("queue_cancel", queue_mode="redis", job_id=job_id, removed=ok)
        return ok

    async def snapshot(self) -> dict[str, Any]:
        r = self._redis()
        if r is None:
            return {"mode": "redis", "ok": False, "detail": "redis unavailable"}
        try:
            delayed = int(await r.zcard(self._delayed_key()) or 0)
            ready = int(await r.zcard(self._ready_key()) or 0)
            running = int(await r.zcard(self._running_key()) or 0)
            dlq = [str(x) for x in (await r.lrange(self._dlq_key(), 0, 9) or [])]
        except Exception as ex:
            return {"mode": "redis", "ok": False, "detail": str(ex)}
        return {
            "mode": "redis",
            "ok": True,
            "counts": {"delayed": delayed, "ready": ready, "running": running, "dead_letter": len(dlq)},
            "dead_letter": dlq,
        }

    async def _health_loop(self) -> None:
        while not self._stopping:
            ok = await self.ping()
            if ok != self._healthy:
                logger.info("queue_redis_health_changed", queue_mode="redis", redis_ok=bool(ok))
            self._healthy = bool(ok)
            await asyncio.sleep(2.0)

    async def _delayed_mover_loop(self) -> None:
        """Move due jobs from delayed to ready; put back jobs whose lease expired."""
        interval = float(self._cfg.poll_interval_ms) / 1000.0
        while not self._stopping:
            try:
                r = self._require()
                now = _now_ms()
                moved = await self._eval("move_due", r, [self._delayed_key(), self._ready_key()], [str(now), "100"])
                reclaimed = await self._eval(
                    "reclaim", r, [self._running_key(), self._ready_key()], [str(now), self._job_key_prefix()]
                )
                if int(reclaimed or 0):
                    logger.warning("queue_reclaimed_expired", queue_mode="redis", count=int(reclaimed))
                await asyncio.sleep(interval if not int(moved or 0) else 0)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.warning("queue_mover_error", queue_mode="redis", error=str(ex))
                await asyncio.sleep(2.0)

    async def _consume_loop(self) -> None:
        """
        Claim ready jobs and deliver them, at most `concurrency` at a time.

        A job leaves ready only together with acquiring its lock.
        """
        assert self._sem is not None
        interval = float(self._cfg.poll_interval_ms) / 1000.0
        while not self._stopping:
            await self._sem.acquire()
            try:
                job_id, token = await self._claim_one()
            except asyncio.CancelledError:
                self._sem.release()
                raise
            except Exception as ex:
                self._sem.release()
                logger.warning("queue_consume_error", queue_mode="redis", error=str(ex))
                await asyncio.sleep(1.0)
                continue
            if not job_id:
                self._sem.release()
                await asyncio.sleep(interval)
                continue
            self._lock_token_by_job[job_id] = token
            task = asyncio.create_task(self._deliver(job_id), name=f"queue.redis.deliver:{job_id}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _deliver(self, job_id: str) -> None:
        assert self._sem is not None
        try:
            r = self._require()
            payload = await r.hget(self._job_meta_key(job_id), "payload")
            if payload is None:
                logger.warning("queue_job_meta_missing", queue_mode="redis", job_id=job_id)
                await self._finish(job_id, drop_meta=True)
                return
            attempt = int(await r.hincrby(self._job_meta_key(job_id), "attempts", 1))
            delivery = Delivery(
                job_id=job_id,
                payload=str(payload),
                attempt=attempt,
                max_attempts=self._cfg.max_attempts,
            )
            logger.info("queue_claimed", queue_mode="redis", job_id=job_id, attempt=attempt)
            done = False
            if self._consumer is not None:
                try:
                    done = bool(await self._consumer(delivery))
                except asyncio.CancelledError:
                    raise
                except Exception as ex:
                    logger.warning("queue_consumer_error", queue_mode="redis", job_id=job_id, error=str(ex))
                    done = False
            if done:
                await self._finish(job_id, drop_meta=True)
            elif delivery.final:
                await self._send_to_dlq(job_id=job_id, reason=f"failed_after:{attempt}")
                await self._finish(job_id, drop_meta=True)
            else:
                await self._defer(job_id, attempt=attempt)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            # Lock expiry hands the job back to the reclaim loop.
            logger.warning("queue_deliver_error", queue_mode="redis", job_id=job_id, error=str(ex))
        finally:
            self._sem.release()

    async def _defer(self, job_id: str, *, attempt: int) -> None:
        r = self._require()
        att = max(1, int(attempt or 1))
        delay_ms = min(self._cfg.backoff_cap_ms, self._cfg.base_backoff_ms * (2 ** max(0, att - 1)))
        due = _now_ms() + int(delay_ms)
        await r.zadd(self._delayed_key(), {job_id: float(due)})
        await self._finish(job_id, drop_meta=False)
        logger.info(
            "queue_deferred",
            queue_mode="redis",
            job_id=job_id,
            attempt=int(att),
            delay_ms=int(delay_ms),
        )

    async def _send_to_dlq(self, *, job_id: str, reason: str) -> None:
        r = self._require()
        with suppress(Exception):
            await r.lpush(self._dlq_key(), f"{job_id}|{reason}|{_now_ms()}")
            await r.ltrim(self._dlq_key(), 0, self._cfg.dlq_max - 1)
        logger.warning("queue_dead_letter", queue_mode="redis", job_id=job_id, reason=reason)
        audit.emit("queue.dead_letter", job_id=job_id, outcome="dead_letter", meta={"mode": "redis", "reason": reason})

    async def _finish(self, job_id: str, *, drop_meta: bool) -> None:
        r = self._require()
        token = self._lock_token_by_job.pop(job_id, "")
        await r.zrem(self._running_key(), job_id)
        if drop_meta:
            await r.delete(self._job_meta_key(job_id))
        if token:
            with suppress(Exception):
                await r.eval(_RELEASE_LUA, 1, self._lock_key(job_id), token)

    async def _prepare_scripts(self) -> None:
        r = self._redis()
        if r is None:
            return
        self._sha = {}
        for name, lua in _SCRIPTS.items():
            try:
                self._sha[name] = await r.script_load(lua)
            except Exception as ex:
                logger.warning("queue_script_load_failed", queue_mode="redis", script=name, error=str(ex))

    async def _eval(self, name: str, r: Any, keys: list[str], args: list[str]) -> Any:
        sha = self._sha.get(name)
        if sha:
            try:
                return await r.evalsha(sha, len(keys), *keys, *args)
            except NoScriptError:
                # Redis restarted and lost its script cache.
                self._sha.pop(name, None)
        return await r.eval(_SCRIPTS[name], len(keys), *keys, *args)

    async def _claim_one(self) -> tuple[str, str]:
        r = self._require()
        token = _lock_token(self._cfg.consumer)
        jid = await self._eval(
            "claim",
            r,
            [self._ready_key(), self._running_key()],
            [self._job_key_prefix(), str(int(self._cfg.lock_ttl_ms)), token, str(_now_ms())],
        )
        return str(jid or "").strip(), token

    def _delayed_key(self) -> str:
        return f"{self._cfg.prefix}:queue:delayed"

    def _ready_key(self) -> str:
        return f"{self._cfg.prefix}:queue:ready"

    def _running_key(self) -> str:
        return f"{self._cfg.prefix}:queue:running"

    def _dlq_key(self) -> str:
        return f"{self._cfg.prefix}:queue:dlq"

    def _job_key_prefix(self) -> str:
        return f"{self._cfg.prefix}:job:"

    def _lock_key(self, job_id: str) -> str:
        return f"{self._cfg.prefix}:job:{job_id}:lock"

    def _job_meta_key(self, job_id: str) -> str:
        return f"{self._cfg.prefix}:job:{job_id}:meta"


_SCRIPTS = {
    "move_due": _MOVE_DUE_LUA,
    "claim": _CLAIM_LUA,
    "cancel": _CANCEL_LUA,
    "reclaim": _RECLAIM_LUA,
}


def _consumer_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _lock_token(consumer: str) -> str:
    return f"{consumer}:{secrets.token_hex(8)}"
