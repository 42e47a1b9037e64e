from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ContentKind(str, Enum):
    movie = "movie"
    episode = "episode"
    anime_episode = "anime-episode"


class OutcomeStatus(str, Enum):
    success = "success"
    partial_failure = "partial_failure"
    total_failure = "total_failure"


class StepStatus(str, Enum):
    ok = "ok"
    failed = "failed"
    skipped = "skipped"


def user_digest(user_key: str) -> str:
    """Short stable tag for a user key; safe for logs, audit records and Redis keys."""
    return hashlib.sha256(str(user_key).encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class JobSpec:
    """
    One pending scrobble.

    `user_key` is the user's stored (encrypted) token; it identifies the user and is
    never logged. Credentials are already decrypted.
    """

    user_key: str
    content_kind: ContentKind
    remote_id: int
    primary_credential: str
    season: int | None = None
    episode_number: int | None = None
    secondary_credential: str | None = None
    secondary_id: int | None = None
    secondary_hint_id: int | None = None
    label: str = ""

    def __post_init__(self) -> None:
        kind = ContentKind(self.content_kind)
        object.__setattr__(self, "content_kind", kind)
        if not str(self.user_key or "").strip():
            raise ValueError("user_key is required")
        if not str(self.primary_credential or "").strip():
            raise ValueError("primary_credential is required")
        if kind is ContentKind.episode and (self.season is None or self.episode_number is None):
            raise ValueError("episode jobs require season and episode_number")
        if kind is ContentKind.anime_episode and self.episode_number is None:
            raise ValueError("anime-episode jobs require episode_number")

    @property
    def user_tag(self) -> str:
        return user_digest(self.user_key)

    def to_payload(self) -> str:
        d = asdict(self)
        d["content_kind"] = self.content_kind.value
        return json.dumps(d, separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_payload(cls, payload: str | bytes) -> JobSpec:
        """Raises ValueError for anything that is not a valid serialized JobSpec."""
        try:
            d = json.loads(payload)
        except (TypeError, json.JSONDecodeError) as ex:
            raise ValueError("job payload is not valid JSON") from ex
        if not isinstance(d, dict):
            raise ValueError("job payload must be an object")
        known = {f for f in cls.__dataclass_fields__}
        try:
            return cls(**{k: v for k, v in d.items() if k in known})
        except TypeError as ex:
            raise ValueError(f"job payload is incomplete: {ex}") from ex


@dataclass(frozen=True, slots=True)
class PendingJobHandle:
    job_id: str
    armed_at: float
    fire_at: float


@dataclass(frozen=True, slots=True)
class StepReport:
    name: str
    required: bool
    status: StepStatus
    detail: str = ""


@dataclass(frozen=True, slots=True)
class Outcome:
    status: OutcomeStatus
    detail: str = ""
    steps: tuple[StepReport, ...] = field(default_factory=tuple)

    @property
    def primary_ok(self) -> bool:
        return self.status is not OutcomeStatus.total_failure

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "detail": self.detail,
            "steps": [
                {"name": s.name, "required": s.required, "status": s.status.value, "detail": s.detail}
                for s in self.steps
            ],
        }
