from __future__ import annotations

import asyncio

from simkl_scrobbler.scrobble.executor import ScrobbleExecutor
from simkl_scrobbler.scrobble.models import ContentKind, JobSpec, OutcomeStatus, StepStatus
from tests._helpers.fakes import FakePrimary, FakeSecondary, anime_spec, movie_spec


def _run(executor: ScrobbleExecutor, spec: JobSpec):
    return asyncio.run(executor.run(spec))


def test_movie_success() -> None:
    primary = FakePrimary()
    out = _run(ScrobbleExecutor(primary=primary), movie_spec(remote_id=55))
    assert out.status is OutcomeStatus.success
    assert primary.calls == [("movie", 55, "simkl-token")]
    assert [s.name for s in out.steps] == ["simkl.scrobble_movie"]


def test_episode_passes_season_and_number() -> None:
    primary = FakePrimary()
    spec = JobSpec(
        user_key="user-a",
        content_kind=ContentKind.episode,
        remote_id=77,
        primary_credential="tok",
        season=2,
        episode_number=5,
    )
    out = _run(ScrobbleExecutor(primary=primary), spec)
    assert out.status is OutcomeStatus.success
    assert primary.calls == [("episode", 77, 2, 5, "tok")]


def test_primary_rejection_is_total_failure() -> None:
    out = _run(ScrobbleExecutor(primary=FakePrimary(ok=False)), movie_spec())
    assert out.status is OutcomeStatus.total_failure
    assert out.primary_ok is False
    assert out.steps[0].status is StepStatus.failed


def test_anime_without_secondary_credential_only_hits_primary() -> None:
    secondary = FakeSecondary()
    out = _run(ScrobbleExecutor(primary=FakePrimary(), secondary=secondary), anime_spec())
    assert out.status is OutcomeStatus.success
    assert len(out.steps) == 1
    assert secondary.resolve_calls == [] and secondary.update_calls == []


def test_anime_resolves_hint_and_updates_progress() -> None:
    primary = FakePrimary()
    secondary = FakeSecondary(resolved=9001)
    spec = anime_spec(secondary_credential="ani-tok", secondary_hint_id=12, episode_number=4)
    out = _run(ScrobbleExecutor(primary=primary, secondary=secondary), spec)

    assert out.status is OutcomeStatus.success
    assert primary.calls == [("anime", 303, 4, "simkl-token")]
    assert secondary.resolve_calls == [12]
    assert secondary.update_calls == [(9001, 4, "ani-tok")]
    assert [s.status for s in out.steps] == [StepStatus.ok, StepStatus.ok]


def test_known_secondary_id_skips_resolution() -> None:
    secondary = FakeSecondary()
    spec = anime_spec(secondary_credential="ani-tok", secondary_id=555, secondary_hint_id=12)
    _run(ScrobbleExecutor(primary=FakePrimary(), secondary=secondary), spec)
    assert secondary.resolve_calls == []
    assert secondary.update_calls[0][0] == 555


def test_unresolved_secondary_is_skipped_not_failed() -> None:
    secondary = FakeSecondary(resolved=None)
    spec = anime_spec(secondary_credential="ani-tok", secondary_hint_id=12)
    out = _run(ScrobbleExecutor(primary=FakePrimary(), secondary=secondary), spec)
    assert out.status is OutcomeStatus.success
    assert out.steps[1].status is StepStatus.skipped
    assert secondary.update_calls == []


def test_no_hint_and_no_id_is_skipped() -> None:
    secondary = FakeSecondary()
    spec = anime_spec(secondary_credential="ani-tok")
    out = _run(ScrobbleExecutor(primary=FakePrimary(), secondary=secondary), spec)
    assert out.status is OutcomeStatus.success
    assert out.steps[1].status is StepStatus.skipped
    assert secondary.resolve_calls == []


def test_secondary_failure_is_partial() -> None:
    spec = anime_spec(secondary_credential="ani-tok", secondary_id=555)
    out = _run(ScrobbleExecutor(primary=FakePrimary(), secondary=FakeSecondary(ok=False)), spec)
    assert out.status is OutcomeStatus.partial_failure
    assert out.primary_ok is True
    assert "anilist.update_progress" in out.detail


def test_primary_failure_stops_before_secondary() -> None:
    secondary = FakeSecondary()
    spec = anime_spec(secondary_credential="ani-tok", secondary_id=555)
    out = _run(ScrobbleExecutor(primary=FakePrimary(ok=False), secondary=secondary), spec)
    assert out.status is OutcomeStatus.total_failure
    assert secondary.update_calls == []
    assert len(out.steps) == 1


def test_step_exception_becomes_failed_step() -> None:
    out = _run(ScrobbleExecutor(primary=FakePrimary(exc=RuntimeError("boom"))), movie_spec())
    assert out.status is OutcomeStatus.total_failure
    assert out.steps[0].detail == "error: RuntimeError"


def test_step_timeout_is_bounded() -> None:
    executor = ScrobbleExecutor(primary=FakePrimary(delay_s=5.0), step_timeout_sec=0.05)
    out = _run(executor, movie_spec())
    assert out.status is OutcomeStatus.total_failure
    assert "timed out" in out.steps[0].detail


def test_outcome_as_dict() -> None:
    out = _run(ScrobbleExecutor(primary=FakePrimary()), movie_spec())
    d = out.as_dict()
    assert d["status"] == "success"
    assert d["steps"][0] == {
        "name": "simkl.scrobble_movie",
        "required": True,
        "status": "ok",
        "detail": "",
    }


def test_anilist_step_without_client_is_skipped() -> None:
    executor = ScrobbleExecutor(primary=FakePrimary())
    spec = anime_spec(secondary_credential="ani", secondary_id=5)
    assert [s.name for s in executor.steps_for(spec)] == ["simkl.scrobble_anime"]
    assert asyncio.run(executor._anilist(spec)) == (StepStatus.skipped, "no secondary client")
