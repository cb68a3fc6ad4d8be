import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip() not in {"0", "false", "False", "no", "NO"}


@dataclass(frozen=True)
class Settings:
    scheduler_enabled: bool = True
    tick_seconds: float = 30.0
    batch_size: int = 100
    max_workers: int = 4
    claim_ttl_seconds: int = 120
    max_steps_per_tick: int = 25
    step_max_attempts: int = 3
    step_retry_base_seconds: float = 1.0
    step_retry_max_seconds: float = 30.0
    inbox_batch_size: int = 50
    inbox_max_retries: int = 10
    webhook_timeout_seconds: float = 30.0


def load_settings() -> Settings:
    return Settings(
        scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
        tick_seconds=_env_float("SCHEDULER_TICK_SECONDS", 30.0),
        batch_size=_env_int("SCHEDULER_BATCH_SIZE", 100),
        max_workers=_env_int("SCHEDULER_MAX_WORKERS", 4),
        claim_ttl_seconds=_env_int("CLAIM_TTL_SECONDS", 120),
        max_steps_per_tick=_env_int("MAX_STEPS_PER_TICK", 25),
        step_max_attempts=_env_int("STEP_MAX_ATTEMPTS", 3),
        step_retry_base_seconds=_env_float("STEP_RETRY_BASE_SECONDS", 1.0),
        step_retry_max_seconds=_env_float("STEP_RETRY_MAX_SECONDS", 30.0),
        inbox_batch_size=_env_int("TRIGGER_INBOX_BATCH_SIZE", 50),
        inbox_max_retries=_env_int("TRIGGER_INBOX_MAX_RETRIES", 10),
        webhook_timeout_seconds=_env_float("WEBHOOK_TIMEOUT_SECONDS", 30.0),
    )
