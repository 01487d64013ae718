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
    db_path: str = os.getenv("CDR_DB_PATH", "cdr.db")
    backend: str = os.getenv("CDR_BACKEND", "docker")  # docker|memory
    app_name: str = os.getenv("CDR_APP_NAME", "app")
    poll_interval_s: float = _env_float("CDR_POLL_INTERVAL_S", 5.0)

    # Observer
    observer_retries: int = _env_int("CDR_OBSERVER_RETRIES", 3)
    backoff_base_s: float = _env_float("CDR_BACKOFF_BASE_S", 0.5)
    backoff_cap_s: float = _env_float("CDR_BACKOFF_CAP_S", 8.0)

    # Executor
    action_timeout_s: float = _env_float("CDR_ACTION_TIMEOUT_S", 30.0)
    action_retries: int = _env_int("CDR_ACTION_RETRIES", 3)

    # Reconciler
    max_verify_attempts: int = _env_int("CDR_MAX_VERIFY_ATTEMPTS", 10)
    verify_interval_s: float = _env_float("CDR_VERIFY_INTERVAL_S", 2.0)

    # Docker backend
    docker_network: str = os.getenv("CDR_DOCKER_NETWORK", "cdr")
    health_path: str = os.getenv("CDR_HEALTH_PATH", "/health")
    health_timeout_s: float = _env_float("CDR_HEALTH_TIMEOUT_S", 2.0)
    start_grace_s: int = _env_int("CDR_START_GRACE_S", 20)

    # API
    admin_user: str = os.getenv("CDR_ADMIN_USER", "admin")
    admin_password: str = os.getenv("CDR_ADMIN_PASSWORD", "change-me")

    # Pipeline trigger
    webhook_secret: str | None = os.getenv("CDR_WEBHOOK_SECRET")
    deploy_branch: str = os.getenv("CDR_DEPLOY_BRANCH", "main")
    image_repository: str = os.getenv("CDR_IMAGE_REPOSITORY", "flask-app")
    tag_strategy: str = os.getenv("CDR_TAG_STRATEGY", "sha")  # sha|latest
    default_replicas: int = _env_int("CDR_DEFAULT_REPLICAS", 1)
    default_port: int = _env_int("CDR_DEFAULT_PORT", 5000)

    # Email alerting (optional)
    enable_email: bool = _env_bool("CDR_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("CDR_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("CDR_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("CDR_SMTP_USER")
    smtp_password: str | None = os.getenv("CDR_SMTP_PASSWORD")
    email_from: str | None = os.getenv("CDR_EMAIL_FROM")
    email_to: str | None = os.getenv("CDR_EMAIL_TO")


settings = Settings()
