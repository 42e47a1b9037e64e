from __future__ import annotations

from contextlib import suppress

from simkl_scrobbler.config import get_settings
from simkl_scrobbler.ops import audit
from simkl_scrobbler.utils.log import logger

from .interfaces import JobStore
from .local_queue import LocalDelayQueue
from .redis_queue import RedisDelayQueue

_MODES = {"auto", "redis", "local"}


def queue_mode() -> str:
    mode = str(getattr(get_settings(), "queue_mode", "auto") or "auto").strip().lower()
    if mode == "fallback":
        mode = "local"
    return mode if mode in _MODES else "auto"


async def build_job_store() -> JobStore:
    """
    Pick the job store backend from QUEUE_MODE.

    - redis: always Redis (startup fails fast in settings if REDIS_URL is missing)
    - local: in-process timers
    - auto: Redis when configured and reachable now, otherwise local
    """
    s = get_settings()
    mode = queue_mode()
    redis_url = str(getattr(s, "redis_url", "") or "").strip()

    if mode == "local":
        store: JobStore = LocalDelayQueue()
    elif mode == "redis":
        store = RedisDelayQueue(redis_url=redis_url)
    elif redis_url:
        candidate = RedisDelayQueue(redis_url=redis_url)
        if await candidate.ping():
            store = candidate
        else:
            logger.warning("queue_redis_unreachable_using_local", queue_mode="auto")
            with suppress(Exception):
                await candidate.stop()
            store = LocalDelayQueue()
    else:
        store = LocalDelayQueue()

    st = store.status()
    logger.info("queue_backend_selected", queue_mode=mode, backend=st.mode, redis_configured=bool(redis_url))
    audit.emit(
        "queue.backend_selected",
        outcome="ok",
        meta={"queue_mode": mode, "backend": st.mode, "redis_configured": bool(redis_url)},
    )
    return store
