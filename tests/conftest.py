from __future__ import annotations

import pytest

from config.settings import get_settings
from simkl_scrobbler.utils.circuit import Circuit

TEST_ENCRYPTION_KEY = "test-encryption-key-0123456789"


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("scrobbler_test")
    (root / "logs").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("SCROBBLER_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setenv("SIMKL_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("QUEUE_MODE", "local")
    monkeypatch.setenv("REDIS_QUEUE_BACKOFF_MS", "0")
    monkeypatch.delenv("STRICT_SECRETS", raising=False)
    monkeypatch.delenv("ENV", raising=False)
    get_settings.cache_clear()
    Circuit.reset_all()
