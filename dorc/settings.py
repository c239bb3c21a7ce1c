from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DORC_DB_PATH", "dorc.db")
    log_level: str = os.getenv("DORC_LOG_LEVEL", "INFO")

    # Rollout timing
    dependency_timeout_s: float = _env_float("DORC_DEPENDENCY_TIMEOUT_S", 120.0)
    stabilization_s: float = _env_float("DORC_STABILIZATION_S", 30.0)
    # containers without a health check are only watched for process exit
    liveness_interval_s: float = _env_float("DORC_LIVENESS_INTERVAL_S", 5.0)
    liveness_retries: int = _env_int("DORC_LIVENESS_RETRIES", 3)

    # Docker runtime
    docker_network: str = os.getenv("DORC_DOCKER_NETWORK", "dorc")
    start_poll_s: float = _env_float("DORC_START_POLL_S", 0.5)
    start_max_wait_s: int = _env_int("DORC_START_MAX_WAIT_S", 60)

    # Operator API
    api_user: str = os.getenv("DORC_API_USER", "admin")
    api_password: str = os.getenv("DORC_API_PASSWORD", "change-me")
    recover_on_startup: bool = _env_bool("DORC_RECOVER_ON_STARTUP", True)

    # Email alerting (optional)
    enable_email: bool = _env_bool("DORC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("DORC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("DORC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("DORC_SMTP_USER")
    smtp_password: str | None = os.getenv("DORC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("DORC_EMAIL_FROM")
    email_to: str | None = os.getenv("DORC_EMAIL_TO")


settings = Settings()
