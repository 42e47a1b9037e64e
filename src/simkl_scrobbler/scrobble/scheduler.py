from __future__ import annotations

import itertools
import secrets
import time
from collections.abc import Callable

from simkl_scrobbler.errors import JobStoreUnavailable
from simkl_scrobbler.ops import audit
from simkl_scrobbler.queue.interfaces import JobStore
from simkl_scrobbler.utils.log import logger

from .models import JobSpec, user_digest
from .registry import PendingJobRegistry

_seq = itertools.count(1)


def new_job_id(user_key: str, *, now_ms: int | None = None) -> str:
    ms = int(now_ms if now_ms is not None else time.time() * 1000)
    return f"scrobble-{user_digest(user_key)}-{ms}-{next(_seq)}-{secrets.token_hex(3)}"


class ScrobbleScheduler:
    """
    Debounced scheduling: at most one pending scrobble per user, latest wins.

    The wait itself is owned by the job store; `schedule` returns as soon as the
    job is armed.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        registry: PendingJobRegistry,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._registry = registry
        self._clock = clock

    @property
    def registry(self) -> PendingJobRegistry:
        return self._registry

    async def schedule(self, user_key: str, spec: JobSpec, wait_ms: int) -> str:
        if spec.user_key != user_key:
            raise ValueError("spec.user_key does not match user_key")
        wait_ms = max(0, int(wait_ms))
        tag = user_digest(user_key)

        async with self._registry.locked(user_key):
            old = self._registry.lookup(user_key)
            if old:
                await self._cancel_prior(user_key, old, tag=tag)

            now = self._clock()
            job_id = new_job_id(user_key, now_ms=int(now * 1000))
            # Must be recorded before enqueue; the store may fire the job at once.
            self._registry.record(user_key, job_id, fire_at=now + wait_ms / 1000.0)
            try:
                await self._store.enqueue_delayed(job_id, spec.to_payload(), wait_ms)
            except Exception as ex:
                # The prior job was already asked to cancel; leave no handle at all.
                self._registry.clear(user_key, job_id)
                logger.error("scrobble_enqueue_failed", user_id=tag, job_id=job_id, error=str(ex))
                audit.emit(
                    "scrobble.enqueue_failed",
                    user_id=tag,
                    job_id=job_id,
                    outcome="error",
                    meta={"error": str(ex)},
                )
                if isinstance(ex, JobStoreUnavailable):
                    raise
                raise JobStoreUnavailable(f"enqueue failed: {ex}") from ex

        logger.info(
            "scrobble_scheduled",
            user_id=tag,
            job_id=job_id,
            replaced=old or None,
            wait_ms=wait_ms,
            content_kind=spec.content_kind.value,
            label=spec.label,
        )
        audit.emit(
            "scrobble.scheduled",
            user_id=tag,
            job_id=job_id,
            outcome="ok",
            meta={"wait_ms": wait_ms, "replaced": old or "", "content_kind": spec.content_kind.value},
        )
        return job_id

    async def cancel_pending(self, user_key: str) -> bool:
        """Cancel the user's pending scrobble, if any. True only if a pre-fire job was removed."""
        tag = user_digest(user_key)
        async with self._registry.locked(user_key):
            old = self._registry.lookup(user_key)
            if not old:
                return False
            cancelled = await self._cancel_prior(user_key, old, tag=tag)
            self._registry.clear(user_key, old)
        return cancelled

    async def _cancel_prior(self, user_key: str, job_id: str, *, tag: str) -> bool:
        try:
            cancelled = bool(await self._store.cancel(job_id))
        except JobStoreUnavailable:
            raise
        except Exception as ex:
            raise JobStoreUnavailable(f"cancel failed: {ex}") from ex
        if cancelled:
            logger.info("scrobble_superseded", user_id=tag, job_id=job_id)
            audit.emit("scrobble.superseded", user_id=tag, job_id=job_id, outcome="cancelled")
        else:
            # Already fired (or gone); a running job is left to finish.
            logger.warning("scrobble_cancel_race", user_id=tag, job_id=job_id)
            audit.emit("scrobble.cancel_race", user_id=tag, job_id=job_id, outcome="not_cancelled")
        return cancelled
