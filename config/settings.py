from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)


def _is_production_env() -> bool:
    env = str(os.environ.get("ENV") or os.environ.get("APP_ENV") or "").strip().lower()
    return env in {"prod", "production"}


def _secret_value(secret: SecretStr | None) -> str:
    try:
        return secret.get_secret_value() if secret else ""
    except Exception:
        return ""


def _validate_secrets(s: Settings) -> None:
    """
    Hard-fail only when explicitly requested (STRICT_SECRETS=1) or in production.
    """
    strict = bool(int(os.environ.get("STRICT_SECRETS", "0") or "0"))
    prod = _is_production_env()

    missing: list[str] = []
    if not _secret_value(s.secret.encryption_key):
        missing.append("ENCRYPTION_KEY")
    if not str(s.secret.simkl_client_id or "").strip():
        missing.append("SIMKL_CLIENT_ID")

    if missing:
        if prod or strict:
            raise ConfigError(
                "Missing required configuration: "
                + ", ".join(sorted(set(missing)))
                + ". Set them via environment variables or `.env.secrets`."
            )
        logging.getLogger("simkl_scrobbler").warning(
            "missing_secrets_detected",
            extra={"missing": sorted(set(missing)), "strict_secrets": False, "production": prod},
        )

    mode = str(s.public.queue_mode or "auto").strip().lower()
    if mode == "redis" and not str(s.secret.redis_url or "").strip():
        raise ConfigError("QUEUE_MODE=redis requires REDIS_URL")


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub = s.public.model_dump()
    pub_s: dict[str, Any] = {}
    for k, v in pub.items():
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(s.secret.model_fields.keys()):
        v = getattr(s.secret, k, None)
        if v is None:
            sec[k] = "UNSET"
        elif isinstance(v, SecretStr):
            sec[k] = "SET" if v.get_secret_value() else "UNSET"
        else:
            sec[k] = "SET" if str(v).strip() else "UNSET"

    strict = bool(int(os.environ.get("STRICT_SECRETS", "0") or "0"))
    return {
        "strict_secrets": strict,
        "public": pub_s,
        "secrets": sec,
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    public = PublicConfig()
    secret = SecretConfig()
    s = Settings(public=public, secret=secret)
    _validate_secrets(s)
    return s
