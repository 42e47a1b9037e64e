from __future__ import annotations

import json
from pathlib import Path

import pytest

from simkl_scrobbler.config import get_settings
from simkl_scrobbler.ops import audit


def _read_audit(log_dir: Path) -> list[dict]:
    path = log_dir / "audit.jsonl"
    if not path.exists():
        return []
    rows = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        rows.append(json.loads(line))
    return rows


def test_emit_appends_jsonl_record() -> None:
    audit.emit("scrobble.scheduled", user_id="abc123", job_id="job-1", outcome="ok", meta={"wait_ms": 10})
    log_dir = Path(get_settings().log_dir)
    rows = _read_audit(log_dir)
    assert rows[-1]["event"] == "scrobble.scheduled"
    assert rows[-1]["user_id"] == "abc123"
    assert rows[-1]["job_id"] == "job-1"
    assert rows[-1]["meta"] == {"wait_ms": 10}
    assert list(log_dir.glob("audit-*.log"))


def test_credentials_never_reach_audit() -> None:
    audit.emit(
        "scrobble.executed",
        outcome="success",
        meta={
            "primary_credential": "simkl-plain-token",
            "detail": "Bearer abcdef123456",
            "steps": ["a", "b"],
        },
    )
    text = (Path(get_settings().log_dir) / "audit.jsonl").read_text(encoding="utf-8")
    assert "simkl-plain-token" not in text
    assert "abcdef123456" not in text
    row = json.loads(text.strip().splitlines()[-1])
    assert row["meta"]["primary_credential"] == {"redacted": True}
    assert row["meta"]["steps"] == {"count": 2}


def test_disabled_audit_writes_nothing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUDIT_ENABLED", "0")
    get_settings.cache_clear()
    audit.emit("server.started", outcome="ok")
    assert _read_audit(Path(get_settings().log_dir)) == []
