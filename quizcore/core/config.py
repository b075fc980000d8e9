import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database (optional; in-memory stores are used when unset)
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Civil calendar used for streak days and week boundaries
    APP_TIMEZONE: str = "Europe/Chisinau"

    # Idempotency ledger
    IDEMPOTENCY_TTL_SECONDS: int = 60
    IDEMPOTENCY_BACKOFF_SECONDS: float = 0.1

    # Submission guardrails
    SUBMISSION_MIN_INTERVAL_SECONDS: int = 30
    MAX_QUESTIONS_PER_QUIZ: int = 50

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate configuration values the core depends on.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("quizcore")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []
    try:
        ZoneInfo(cfg.APP_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        problems.append(f"APP_TIMEZONE={cfg.APP_TIMEZONE!r} is not a known timezone")

    positive_keys = [
        "IDEMPOTENCY_TTL_SECONDS",
        "IDEMPOTENCY_BACKOFF_SECONDS",
        "SUBMISSION_MIN_INTERVAL_SECONDS",
        "MAX_QUESTIONS_PER_QUIZ",
    ]
    for key in positive_keys:
        value = getattr(cfg, key, None)
        if value is None or value <= 0:
            problems.append(f"{key} must be positive (got {value!r})")

    if problems:
        message = f"Invalid configuration: {'; '.join(problems)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)
        return False

    return True
