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
    db_path: str = os.getenv("PDC_DB_PATH", "pdc.db")
    backend: str = os.getenv("PDC_BACKEND", "memory")  # memory|docker
    default_strategy: str = os.getenv("PDC_DEFAULT_STRATEGY", "canary")
    default_capacity: int = _env_int("PDC_DEFAULT_CAPACITY", 4)

    # Docker backend
    docker_network: str = os.getenv("PDC_DOCKER_NETWORK", "pdc")
    internal_port: int = _env_int("PDC_INTERNAL_PORT", 8000)
    health_path: str = os.getenv("PDC_HEALTH_PATH", "/health")
    gateway_timeout_s: int = _env_int("PDC_GATEWAY_TIMEOUT_S", 10)

    # Health gate
    health_timeout_s: float = _env_float("PDC_HEALTH_TIMEOUT_S", 120.0)
    poll_interval_s: float = _env_float("PDC_POLL_INTERVAL_S", 2.0)

    # Orchestration retries (bounded exponential backoff)
    retry_attempts: int = _env_int("PDC_RETRY_ATTEMPTS", 4)
    retry_base_delay_s: float = _env_float("PDC_RETRY_BASE_DELAY_S", 0.5)
    retry_max_delay_s: float = _env_float("PDC_RETRY_MAX_DELAY_S", 8.0)

    # API auth for mutating verbs; disabled while no password is set.
    admin_user: str = os.getenv("PDC_ADMIN_USER", "admin")
    admin_password: str | None = os.getenv("PDC_ADMIN_PASSWORD")

    # Email alerting (optional)
    enable_email: bool = _env_bool("PDC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("PDC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("PDC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("PDC_SMTP_USER")
    smtp_password: str | None = os.getenv("PDC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("PDC_EMAIL_FROM")
    email_to: str | None = os.getenv("PDC_EMAIL_TO")


settings = Settings()
