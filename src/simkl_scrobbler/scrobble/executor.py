from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from simkl_scrobbler.utils.log import logger

from .models import ContentKind, JobSpec, Outcome, OutcomeStatus, StepReport, StepStatus


class PrimaryService(Protocol):
    async def scrobble_movie(self, remote_id: int, credential: str) -> bool: ...

    async def scrobble_episode(
        self, remote_id: int, season: int, episode: int, credential: str
    ) -> bool: ...

    async def scrobble_anime(self, remote_id: int, episode: int, credential: str) -> bool: ...


class SecondaryService(Protocol):
    async def resolve_id_by_mal(self, mal_id: int, credential: str) -> int | None: ...

    async def update_progress(self, media_id: int, episode: int, credential: str) -> bool: ...


StepResult = tuple[StepStatus, str]


@dataclass(frozen=True, slots=True)
class ScrobbleStep:
    name: str
    required: bool
    call: Callable[[], Awaitable[StepResult]]


def _ok(flag: bool, *, failed: str) -> StepResult:
    return (StepStatus.ok, "") if flag else (StepStatus.failed, failed)


class ScrobbleExecutor:
    """
    Runs the ordered steps for one job.

    Required steps run first; a required failure stops the run (TOTAL_FAILURE).
    Optional steps can only downgrade a success to PARTIAL_FAILURE.
    Every step is time-bounded and never raises out of `run`.
    """

    def __init__(
        self,
        *,
        primary: PrimaryService,
        secondary: SecondaryService | None = None,
        step_timeout_sec: float = 20.0,
    ) -> None:
        self._primary = primary
        self._secondary = secondary
        self._timeout = max(0.01, float(step_timeout_sec))

    def steps_for(self, spec: JobSpec) -> list[ScrobbleStep]:
        p = self._primary
        cred = spec.primary_credential
        if spec.content_kind is ContentKind.movie:

            async def _movie() -> StepResult:
                return _ok(await p.scrobble_movie(spec.remote_id, cred), failed="simkl rejected movie")

            return [ScrobbleStep("simkl.scrobble_movie", True, _movie)]

        if spec.content_kind is ContentKind.episode:

            async def _episode() -> StepResult:
                ok = await p.scrobble_episode(
                    spec.remote_id, int(spec.season or 0), int(spec.episode_number or 0), cred
                )
                return _ok(ok, failed="simkl rejected episode")

            return [ScrobbleStep("simkl.scrobble_episode", True, _episode)]

        async def _anime() -> StepResult:
            ok = await p.scrobble_anime(spec.remote_id, int(spec.episode_number or 0), cred)
            return _ok(ok, failed="simkl rejected anime episode")

        steps = [ScrobbleStep("simkl.scrobble_anime", True, _anime)]
        if spec.secondary_credential and self._secondary is not None:
            steps.append(ScrobbleStep("anilist.update_progress", False, lambda: self._anilist(spec)))
        return steps

    async def _anilist(self, spec: JobSpec) -> StepResult:
        if self._secondary is None:
            return StepStatus.skipped, "no secondary client"
        cred = str(spec.secondary_credential or "")
        media_id = spec.secondary_id
        if not media_id and spec.secondary_hint_id:
            media_id = await self._secondary.resolve_id_by_mal(int(spec.secondary_hint_id), cred)
        if not media_id:
            return StepStatus.skipped, "anilist id unresolved"
        ok = await self._secondary.update_progress(int(media_id), int(spec.episode_number or 0), cred)
        return _ok(ok, failed="anilist progress update failed")

    async def _run_step(self, step: ScrobbleStep, *, user_tag: str) -> StepReport:
        try:
            status, detail = await asyncio.wait_for(step.call(), timeout=self._timeout)
        except asyncio.TimeoutError:
            status, detail = StepStatus.failed, f"timed out after {self._timeout:g}s"
        except Exception as ex:
            logger.warning("scrobble_step_error", step=step.name, user_id=user_tag, error=str(ex))
            status, detail = StepStatus.failed, f"error: {type(ex).__name__}"
        return StepReport(name=step.name, required=step.required, status=status, detail=detail)

    async def run(self, spec: JobSpec) -> Outcome:
        reports: list[StepReport] = []
        for step in self.steps_for(spec):
            rep = await self._run_step(step, user_tag=spec.user_tag)
            reports.append(rep)
            if step.required and rep.status is not StepStatus.ok:
                return Outcome(
                    status=OutcomeStatus.total_failure,
                    detail=f"{step.name}: {rep.detail or rep.status.value}",
                    steps=tuple(reports),
                )
        failed = [r for r in reports if not r.required and r.status is StepStatus.failed]
        if failed:
            return Outcome(
                status=OutcomeStatus.partial_failure,
                detail="; ".join(f"{r.name}: {r.detail}" for r in failed),
                steps=tuple(reports),
            )
        return Outcome(status=OutcomeStatus.success, detail="", steps=tuple(reports))
