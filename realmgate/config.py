from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from realmgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Deployment settings, built once at process start and passed to services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/realmgate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=1)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    shared_fs_root: str = env_field("/srv/realmgate", "SHARED_FS_ROOT")
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field(
        "localhost", "JWT_ISSUER", description="Server host written to the iss claim"
    )
    jwt_leeway_seconds: int = env_field(
        0, "JWT_LEEWAY_SECONDS", ge=0, description="Clock skew tolerated on exp"
    )
    default_session_lifetime: int = env_field(
        60 * 60, "DEFAULT_SESSION_LIFETIME", ge=1,
        description="Session lifetime in seconds for newly bootstrapped clients",
    )
    default_refresh_token_lifetime: int = env_field(
        60 * 60 * 24 * 30, "DEFAULT_REFRESH_TOKEN_LIFETIME", ge=1,
        description="Refresh token lifetime in seconds for newly bootstrapped realms",
    )
    default_refresh_token_reuse_limit: int = env_field(
        3, "DEFAULT_REFRESH_TOKEN_REUSE_LIMIT", ge=0
    )
    default_max_concurrent_sessions: int = env_field(
        1, "DEFAULT_MAX_CONCURRENT_SESSIONS", ge=1
    )
    master_realm_id: str | None = env_field(
        None, "MASTER_REALM_ID",
        description="Admins of this realm may administer every realm",
    )
    session_purge_interval_seconds: int = env_field(
        300, "SESSION_PURGE_INTERVAL_SECONDS", ge=0,
        description="Interval of the expired session sweeper, 0 disables it",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    cors_allow_origins: str = env_field(
        "", "CORS_ALLOW_ORIGINS", description="Comma separated list of allowed origins"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("master_realm_id")
    @classmethod
    def _blank_master_realm(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens must survive restarts, so a generated key is persisted
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/realmgate"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup_failed", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
