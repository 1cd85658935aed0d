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


def _env_list(name: str, default: str = "") -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    # Discovery
    project_ids: tuple[str, ...] = _env_list("CRP_PROJECT_IDS")
    region: str = os.getenv("CRP_REGION", "us-central1")
    poll_interval_s: int = _env_int("CRP_POLL_INTERVAL_S", 30)
    directory: str = os.getenv("CRP_DIRECTORY", "cloudrun")  # cloudrun|docker
    label_namespace: str = os.getenv("CRP_LABEL_NAMESPACE", "traefik")

    # Credentials
    # Outside Cloud Run (no K_SERVICE) the metadata server is usually absent, so default to dev mode there.
    dev_mode: bool = _env_bool("CRP_DEV_MODE", False) or not os.getenv("K_SERVICE")
    token_ttl_s: int = _env_int("CRP_TOKEN_TTL_S", 55 * 60)
    token_fetch_timeout_s: int = _env_int("CRP_TOKEN_FETCH_TIMEOUT_S", 5)
    fetch_workers: int = _env_int("CRP_FETCH_WORKERS", 8)

    # User auth (forwardAuth against the identity service)
    user_auth_enabled: bool = _env_bool("CRP_USER_AUTH_ENABLED", False)
    identity_marker: str = os.getenv("CRP_IDENTITY_MARKER", "home-index")
    auth_check_middlewares: tuple[str, ...] = _env_list(
        "CRP_AUTH_CHECK_MIDDLEWARES", "lab1-auth-check,lab2-auth-check,lab3-auth-check"
    )

    # Handoff / output
    handoff_timeout_s: int = _env_int("CRP_HANDOFF_TIMEOUT_S", 60)
    output_file: str = os.getenv("CRP_OUTPUT_FILE", "")
    environment: str = os.getenv("CRP_ENVIRONMENT", "stg")

    # Event journal
    db_path: str = os.getenv("CRP_DB_PATH", "crp.db")
    events_enabled: bool = _env_bool("CRP_EVENTS_ENABLED", True)
    log_level: str = os.getenv("CRP_LOG_LEVEL", "INFO")


settings = Settings()
