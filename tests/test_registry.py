from __future__ import annotations

import asyncio

from simkl_scrobbler.scrobble.registry import PendingJobRegistry


def test_record_overwrites_and_lookup() -> None:
    reg = PendingJobRegistry(clock=lambda: 100.0)
    assert reg.lookup("u1") is None
    reg.record("u1", "job-1", fire_at=160.0)
    reg.record("u1", "job-2", fire_at=170.0)
    assert reg.lookup("u1") == "job-2"
    h = reg.handle("u1")
    assert h is not None and h.armed_at == 100.0 and h.fire_at == 170.0
    assert len(reg) == 1


def test_clear_is_idempotent() -> None:
    reg = PendingJobRegistry()
    reg.record("u1", "job-1")
    assert reg.clear("u1") is True
    assert reg.clear("u1") is False
    assert reg.clear("never-seen") is False
    assert reg.lookup("u1") is None


def test_clear_with_job_id_only_removes_matching_entry() -> None:
    reg = PendingJobRegistry()
    reg.record("u1", "job-2")
    assert reg.clear("u1", "job-1") is False
    assert reg.lookup("u1") == "job-2"
    assert reg.clear("u1", "job-2") is True
    assert "u1" not in reg


def test_same_user_sections_are_serialised() -> None:
    reg = PendingJobRegistry()
    order: list[str] = []

    async def section(name: str) -> None:
        async with reg.locked("u1"):
            order.append(f"{name}:in")
            await asyncio.sleep(0.01)
            order.append(f"{name}:out")

    async def main() -> None:
        await asyncio.gather(section("a"), section("b"))

    asyncio.run(main())
    assert order in (
        ["a:in", "a:out", "b:in", "b:out"],
        ["b:in", "b:out", "a:in", "a:out"],
    )
    # lock table does not grow with users that are no longer active
    assert reg._locks == {}


def test_distinct_users_do_not_contend() -> None:
    reg = PendingJobRegistry()

    async def main() -> bool:
        both_in = asyncio.Event()
        first_in = asyncio.Event()

        async def holder() -> None:
            async with reg.locked("u1"):
                first_in.set()
                await asyncio.wait_for(both_in.wait(), timeout=1.0)

        async def other() -> None:
            await first_in.wait()
            async with reg.locked("u2"):
                both_in.set()

        await asyncio.gather(holder(), other())
        return both_in.is_set()

    assert asyncio.run(main()) is True
