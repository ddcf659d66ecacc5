import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600  # seconds

    # Contended writes (allowance consumption, plan reassignment)
    LEDGER_MAX_ATTEMPTS: int = 8
    LEDGER_RETRY_BASE_DELAY_MS: int = 10
    LEDGER_RETRY_MAX_DELAY_MS: int = 500

    # Plans
    PLAN_RETROACTIVE_GRACE_DAYS: int = 7

    # Invoices
    INVOICE_NUMBER_PREFIX: str = "INV"
    DEFAULT_CURRENCY: str = "EUR"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("taxportal")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []

    if not (getattr(cfg, "DATABASE_URL", None) or getattr(cfg, "TEST_DATABASE_URL", None)):
        problems.append("Missing required configuration: DATABASE_URL")

    if int(getattr(cfg, "LEDGER_MAX_ATTEMPTS", 0)) < 1:
        problems.append("LEDGER_MAX_ATTEMPTS must be at least 1")

    if int(getattr(cfg, "PLAN_RETROACTIVE_GRACE_DAYS", 0)) < 0:
        problems.append("PLAN_RETROACTIVE_GRACE_DAYS must not be negative")

    for message in problems:
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
