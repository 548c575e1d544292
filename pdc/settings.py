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


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("PDC_DB_PATH", "pdc.db")
    db_timeout_s: int = _env_int("PDC_DB_TIMEOUT_S", 5)
    resync_interval_s: int = _env_int("PDC_RESYNC_INTERVAL_S", 30)
    workers: int = _env_int("PDC_WORKERS", 4)
    controller_enabled: bool = _env_bool("PDC_CONTROLLER_ENABLED", True)
    host: str = os.getenv("PDC_HOST", "0.0.0.0")
    port: int = _env_int("PDC_PORT", 8000)

    # Requeue / backoff
    analysis_poll_interval_s: int = _env_int("PDC_ANALYSIS_POLL_INTERVAL_S", 10)
    weight_verify_interval_s: int = _env_int("PDC_WEIGHT_VERIFY_INTERVAL_S", 2)
    backoff_base_s: int = _env_int("PDC_BACKOFF_BASE_S", 1)
    backoff_max_s: int = _env_int("PDC_BACKOFF_MAX_S", 300)

    # Bounded timeout for every backend call (routers, metric providers, webhooks).
    request_timeout_s: int = _env_int("PDC_REQUEST_TIMEOUT_S", 10)

    # Upper bound on the replicas one rollout may hold across its replica sets. 0 = unlimited.
    replica_quota: int = _env_int("PDC_REPLICA_QUOTA", 0)

    # Email notifications (optional)
    enable_email: bool = _env_bool("PDC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("PDC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("PDC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("PDC_SMTP_USER")
    smtp_password: str | None = os.getenv("PDC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("PDC_EMAIL_FROM")


settings = Settings()
