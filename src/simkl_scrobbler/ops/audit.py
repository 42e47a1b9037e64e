from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any

from simkl_scrobbler.config import get_settings
from simkl_scrobbler.utils.log import _redact_str

_lock = Lock()

# Never written to the audit trail, even if a caller passes them.
_AUDIT_SECRET_KEYS = {
    "token",
    "credential",
    "primary_credential",
    "secondary_credential",
    "anilist_token",
    "payload",
    "user_key",
}


def _audit_dir() -> Path:
    return Path(get_settings().log_dir)


def _audit_path(ts: datetime) -> Path:
    return _audit_dir() / f"audit-{ts:%Y%m%d}.log"


def _audit_path_latest() -> Path:
    return _audit_dir() / "audit.jsonl"


def _scrub_meta_safe(meta: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for kk, vv in meta.items():
        kks = str(kk)
        if kks.strip().lower() in _AUDIT_SECRET_KEYS:
            out[kks] = {"redacted": True}
            continue
        if isinstance(vv, str):
            if len(vv) > 200:
                out[kks] = {"redacted": True, "len": len(vv)}
            else:
                out[kks] = _redact_str(vv)
            continue
        if isinstance(vv, dict):
            out[kks] = {"keys": len(vv)}
            continue
        if isinstance(vv, (list, tuple)):
            out[kks] = {"count": len(vv)}
            continue
        out[kks] = vv
    return out


def _write_record(rec: dict[str, Any]) -> None:
    ts = datetime.now(tz=timezone.utc)
    daily = _audit_path(ts)
    latest = _audit_path_latest()
    daily.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(rec, ensure_ascii=False, separators=(",", ":"))
    with _lock:
        with daily.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
        with latest.open("a", encoding="utf-8") as f:
            f.write(line + "\n")


def emit(
    event_type: str,
    *,
    user_id: str | None = None,
    job_id: str | None = None,
    outcome: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """
    Append-only audit log (newline-delimited JSON), daily rotated by date.

    `user_id` is the short user digest, never the raw user key.
    """
    if not bool(get_settings().audit_enabled):
        return
    ts = datetime.now(tz=timezone.utc)
    rec: dict[str, Any] = {
        "ts": ts.isoformat(),
        "event": str(event_type),
        "outcome": str(outcome or "unknown"),
    }
    if user_id:
        rec["user_id"] = str(user_id)
    if job_id:
        rec["job_id"] = str(job_id)
    if meta:
        rec["meta"] = _scrub_meta_safe(meta)
    _write_record(rec)
