"""Environment-driven settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


ROOT = Path(__file__).resolve().parents[1]
_TRUE = ("1", "true", "yes")


def load_env_file(path: Path) -> None:
    """Load KEY=VALUE lines into os.environ without overriding existing keys."""
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _get(env: Mapping[str, str], key: str, default: str = "") -> str:
    return (env.get(key) or default).strip()


@dataclass(frozen=True)
class Settings:
    env: str = "dev"
    log_level: str = "INFO"
    use_db: bool = False
    database_url: str = ""
    db_pool_min: int = 1
    db_pool_max: int = 10
    db_statement_timeout_ms: int = 5000
    storage_lock_timeout: float = 5.0
    collaborator_timeout: float = 10.0
    workflow_max_depth: int = 5
    email_provider: str = "log"
    email_from: str = ""
    postmark_api_token: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""

    @property
    def is_dev(self) -> bool:
        return self.env == "dev"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        settings = cls(
            env=_get(env, "FORGE_ENV", "dev").lower() or "dev",
            log_level=_get(env, "FORGE_LOG_LEVEL", "INFO").upper(),
            use_db=_get(env, "USE_DB").lower() in _TRUE,
            database_url=_get(env, "DATABASE_URL"),
            db_pool_min=int(_get(env, "FORGE_DB_POOL_MIN", "1")),
            db_pool_max=int(_get(env, "FORGE_DB_POOL_MAX", "10")),
            db_statement_timeout_ms=int(_get(env, "FORGE_DB_STATEMENT_TIMEOUT_MS", "5000")),
            storage_lock_timeout=float(_get(env, "FORGE_STORAGE_LOCK_TIMEOUT", "5")),
            collaborator_timeout=float(_get(env, "FORGE_COLLABORATOR_TIMEOUT", "10")),
            workflow_max_depth=int(_get(env, "FORGE_WORKFLOW_MAX_DEPTH", "5")),
            email_provider=_get(env, "FORGE_EMAIL_PROVIDER", "log").lower(),
            email_from=_get(env, "FORGE_EMAIL_FROM"),
            postmark_api_token=_get(env, "POSTMARK_API_TOKEN"),
            smtp_host=_get(env, "SMTP_HOST"),
            smtp_port=int(_get(env, "SMTP_PORT", "587")),
            smtp_username=_get(env, "SMTP_USERNAME"),
            smtp_password=_get(env, "SMTP_PASSWORD"),
        )
        if settings.use_db and not settings.database_url:
            raise RuntimeError("DATABASE_URL is required when USE_DB=1")
        if settings.email_provider not in {"log", "postmark", "smtp"}:
            raise RuntimeError(f"Unknown FORGE_EMAIL_PROVIDER: {settings.email_provider}")
        if settings.workflow_max_depth < 1:
            raise RuntimeError("FORGE_WORKFLOW_MAX_DEPTH must be at least 1")
        return settings
