from __future__ import annotations

import asyncio

import pytest

from config.settings import ConfigError
from simkl_scrobbler.config import get_settings
from simkl_scrobbler.queue.local_queue import LocalDelayQueue
from simkl_scrobbler.queue.manager import build_job_store, queue_mode
from simkl_scrobbler.queue.redis_queue import RedisDelayQueue


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("local", "local"), ("fallback", "local"), ("REDIS", "redis"), ("auto", "auto"), ("weird", "auto")],
)
def test_queue_mode_normalisation(monkeypatch: pytest.MonkeyPatch, raw: str, expected: str) -> None:
    monkeypatch.setenv("QUEUE_MODE", raw)
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:6379/0")
    get_settings.cache_clear()
    assert queue_mode() == expected


def test_local_mode_builds_local_store() -> None:
    store = asyncio.run(build_job_store())
    assert isinstance(store, LocalDelayQueue)


def test_auto_without_redis_url_is_local(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUEUE_MODE", "auto")
    monkeypatch.delenv("REDIS_URL", raising=False)
    get_settings.cache_clear()
    assert isinstance(asyncio.run(build_job_store()), LocalDelayQueue)


def test_auto_with_unreachable_redis_falls_back(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUEUE_MODE", "auto")
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
    get_settings.cache_clear()
    store = asyncio.run(build_job_store())
    assert isinstance(store, LocalDelayQueue)
    assert store.status().banner


def test_redis_mode_uses_redis_store(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUEUE_MODE", "redis")
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
    get_settings.cache_clear()
    assert isinstance(asyncio.run(build_job_store()), RedisDelayQueue)


def test_redis_mode_requires_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUEUE_MODE", "redis")
    monkeypatch.delenv("REDIS_URL", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ConfigError):
        get_settings()
