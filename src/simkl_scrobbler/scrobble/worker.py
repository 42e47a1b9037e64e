from __future__ import annotations

from simkl_scrobbler.ops import audit
from simkl_scrobbler.queue.interfaces import Delivery
from simkl_scrobbler.utils.log import logger

from .executor import ScrobbleExecutor
from .models import JobSpec, Outcome, OutcomeStatus
from .registry import PendingJobRegistry


class ScrobbleWorker:
    """
    Job store consumer: fired job -> executor -> registry cleanup.

    Returns True (done) for success, partial failure, superseded and unreadable jobs.
    A total failure returns False so the store can retry or dead-letter it; the
    registry is cleared once no further attempt will follow.
    """

    def __init__(
        self,
        *,
        executor: ScrobbleExecutor,
        registry: PendingJobRegistry,
        supersede_fence: bool = True,
    ) -> None:
        self._executor = executor
        self._registry = registry
        self._fence = bool(supersede_fence)

    async def __call__(self, delivery: Delivery) -> bool:
        job_id = str(delivery.job_id)
        try:
            spec = JobSpec.from_payload(delivery.payload)
        except ValueError as ex:
            logger.error("scrobble_payload_invalid", job_id=job_id, error=str(ex))
            audit.emit("scrobble.payload_invalid", job_id=job_id, outcome="dropped", meta={"error": str(ex)})
            return True

        tag = spec.user_tag
        if self._fence:
            current = self._registry.lookup(spec.user_key)
            if current is not None and current != job_id:
                logger.info("scrobble_skipped_superseded", user_id=tag, job_id=job_id, current_job_id=current)
                audit.emit(
                    "scrobble.skipped_superseded",
                    user_id=tag,
                    job_id=job_id,
                    outcome="skipped",
                    meta={"current_job_id": current},
                )
                return True

        outcome = await self._executor.run(spec)
        self._report(spec, job_id, outcome, delivery)

        if outcome.status is OutcomeStatus.total_failure:
            if delivery.final:
                self._registry.clear(spec.user_key, job_id)
            return False
        self._registry.clear(spec.user_key, job_id)
        return True

    def _report(self, spec: JobSpec, job_id: str, outcome: Outcome, delivery: Delivery) -> None:
        tag = spec.user_tag
        fields = {
            "user_id": tag,
            "job_id": job_id,
            "status": outcome.status.value,
            "content_kind": spec.content_kind.value,
            "label": spec.label,
            "attempt": int(delivery.attempt),
        }
        if outcome.status is OutcomeStatus.success:
            logger.info("scrobble_executed", **fields)
        elif outcome.status is OutcomeStatus.partial_failure:
            logger.warning("scrobble_partial_failure", detail=outcome.detail, **fields)
        else:
            logger.error("scrobble_total_failure", detail=outcome.detail, final=delivery.final, **fields)
        audit.emit(
            "scrobble.executed",
            user_id=tag,
            job_id=job_id,
            outcome=outcome.status.value,
            meta={
                "content_kind": spec.content_kind.value,
                "attempt": int(delivery.attempt),
                "detail": outcome.detail,
            },
        )
