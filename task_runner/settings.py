from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    run_workers: int = field(default_factory=lambda: _env_int("RUN_WORKERS", 4))
    submit_workers: int = field(
        default_factory=lambda: _env_int("SUBMIT_WORKERS", 2)
    )
    shared_pool: bool = field(default_factory=lambda: _env_bool("SHARED_POOL"))

    infra_retries: int = field(default_factory=lambda: _env_int("INFRA_RETRIES", 2))
    retry_backoff_sec: float = field(
        default_factory=lambda: _env_float("RETRY_BACKOFF_SEC", 0.5)
    )

    task_store: str = field(default_factory=lambda: os.getenv("TASK_STORE", "memory"))
    redis_url: str = field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    use_fake_redis: bool = field(default_factory=lambda: _env_bool("FAKE_REDIS"))
    task_ttl_sec: int = field(default_factory=lambda: _env_int("TASK_TTL_SEC", 0))

    sandbox: str = field(default_factory=lambda: os.getenv("SANDBOX", "local"))
    sandbox_url: str = field(
        default_factory=lambda: os.getenv("SANDBOX_URL", "http://localhost:2000")
    )

    question_api_url: str | None = field(
        default_factory=lambda: os.getenv("QUESTION_API_URL") or None
    )
    problem_data_dir: str = field(
        default_factory=lambda: os.getenv("PROBLEM_DATA_DIR", "data/problems")
    )

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    host: str = field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("PORT", 8080))


def get_settings() -> Settings:
    return Settings()
