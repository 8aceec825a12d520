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
    db_path: str = os.getenv("FCC_DB_PATH", "fcc.db")
    fleet_id: str = os.getenv("FCC_FLEET_ID", "default")
    poll_interval_s: int = _env_int("FCC_POLL_INTERVAL_S", 5)
    docker_network: str = os.getenv("FCC_DOCKER_NETWORK", "fcc")
    worker_port: int = _env_int("FCC_WORKER_PORT", 8080)
    gateway_timeout_s: int = _env_int("FCC_GATEWAY_TIMEOUT_S", 10)

    # Initial capacity, used only when the state store is empty
    min_size: int = _env_int("FCC_MIN_SIZE", 1)
    max_size: int = _env_int("FCC_MAX_SIZE", 10)
    desired: int = _env_int("FCC_DESIRED", 2)
    image: str = os.getenv("FCC_IMAGE", "fcc-worker:latest")

    # Health checks
    health_path: str = os.getenv("FCC_HEALTH_PATH", "/health")
    health_interval_s: float = _env_float("FCC_HEALTH_INTERVAL_S", 5.0)
    health_timeout_s: float = _env_float("FCC_HEALTH_TIMEOUT_S", 2.0)
    healthy_threshold: int = _env_int("FCC_HEALTHY_THRESHOLD", 3)
    unhealthy_threshold: int = _env_int("FCC_UNHEALTHY_THRESHOLD", 2)

    # Locking
    lock_lease_s: float = _env_float("FCC_LOCK_LEASE_S", 30.0)

    # Provisioning / draining
    provision_attempts: int = _env_int("FCC_PROVISION_ATTEMPTS", 3)
    provision_backoff_s: float = _env_float("FCC_PROVISION_BACKOFF_S", 1.0)
    drain_timeout_s: float = _env_float("FCC_DRAIN_TIMEOUT_S", 30.0)

    # State store
    # Fernet key (urlsafe base64). The store refuses to write without one.
    state_key: str | None = os.getenv("FCC_STATE_KEY")
    block_public_access: bool = _env_bool("FCC_BLOCK_PUBLIC_ACCESS", True)

    # Operator API (HTTP basic). Mutations are denied when unset.
    admin_user: str | None = os.getenv("FCC_ADMIN_USER")
    admin_password: str | None = os.getenv("FCC_ADMIN_PASSWORD")

    # Email alerting (optional)
    enable_email: bool = _env_bool("FCC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("FCC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("FCC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("FCC_SMTP_USER")
    smtp_password: str | None = os.getenv("FCC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("FCC_EMAIL_FROM")
    email_to: str | None = os.getenv("FCC_EMAIL_TO")


settings = Settings()
