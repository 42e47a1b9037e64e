from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class QueueStatus:
    mode: str  # "redis" | "local"
    redis_configured: bool
    redis_ok: bool
    detail: str
    banner: str | None = None


@dataclass(frozen=True, slots=True)
class Delivery:
    """A due job handed to the consumer."""

    job_id: str
    payload: str
    attempt: int = 1
    max_attempts: int = 1

    @property
    def final(self) -> bool:
        return int(self.attempt) >= int(self.max_attempts)


# Returns True when the job is done (ack). False asks the store to retry it,
# or dead-letter it when the delivery was the final attempt.
JobConsumer = Callable[[Delivery], Awaitable[bool]]


class JobStore(Protocol):
    """
    Durable delayed-job store.

    - `enqueue_delayed` arms a job that becomes due after `delay_ms`.
    - `cancel` removes a job only while it has not fired; returns True if removed.
    - Due jobs are delivered to the consumer passed to `start`, with bounded concurrency.
    """

    def status(self) -> QueueStatus: ...

    async def start(self, consumer: JobConsumer) -> None: ...
    async def stop(self) -> None: ...

    async def enqueue_delayed(self, job_id: str, payload: str, delay_ms: int) -> None: ...

    async def cancel(self, job_id: str) -> bool: ...

    async def snapshot(self) -> dict[str, Any]: ...
