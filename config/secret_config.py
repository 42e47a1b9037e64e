from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecretConfig(BaseSettings):
    """
    Sensitive config.

    This module is safe to commit: it contains *no* secrets, only loading logic.
    Real secret values should come from:
      - environment variables (preferred in production)
      - optional local `.env.secrets` file (developer convenience)
    """

    model_config = SettingsConfigDict(
        env_file=".env.secrets",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Key for the per-user tokens embedded in addon URLs (AES-192, padded to 24 bytes).
    encryption_key: SecretStr | None = Field(default=None, alias="ENCRYPTION_KEY")

    # Simkl API application credentials
    simkl_client_id: str | None = Field(default=None, alias="SIMKL_CLIENT_ID")
    simkl_client_secret: SecretStr | None = Field(default=None, alias="SIMKL_CLIENT_SECRET")

    # storage / external URLs (treat as sensitive by default)
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
